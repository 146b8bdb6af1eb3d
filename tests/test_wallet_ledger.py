import asyncio
import uuid
import pytest
from campus_fulfillment.core.errors import (
    InsufficientFunds, InvalidAmount, InvalidTransition, NotFound, ValidationError,
)
from campus_fulfillment.models.wallet import ReservationStatus, WalletPool

def assert_conserved(summary):
    assert summary["balance"] == summary["credited"] - summary["finalized_debits"] - summary["held"]

@pytest.mark.asyncio
async def test_new_agent_has_empty_wallet(make_agent, wallet_ledger):
    agent = await make_agent()
    wallet = await wallet_ledger.get_wallet(agent.id)
    assert wallet["customer_funds"] == 0
    assert wallet["delivery_earnings"] == 0
    assert wallet["total_balance"] == 0

@pytest.mark.asyncio
async def test_pools_are_independent(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "customer_funds", 5000, reference="funding-1")
    wallet = await wallet_ledger.credit(agent.id, WalletPool.DELIVERY_EARNINGS, 300)

    assert wallet["customer_funds"] == 5000
    assert wallet["delivery_earnings"] == 300
    assert wallet["total_balance"] == 5300

    with pytest.raises(InsufficientFunds) as exc:
        await wallet_ledger.reserve(agent.id, "delivery_earnings", 400)
    assert exc.value.details["pool"] == "delivery_earnings"
    assert await wallet_ledger.get_balance(agent.id, "delivery_earnings") == 300

@pytest.mark.asyncio
async def test_reserve_release_finalize_conserve_balance(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "customer_funds", 10000)

    kept = await wallet_ledger.reserve(agent.id, "customer_funds", 3000)
    returned = await wallet_ledger.reserve(agent.id, "customer_funds", 2000)
    summary = await wallet_ledger.pool_summary(agent.id, "customer_funds")
    assert summary["held"] == 5000
    assert summary["balance"] == 5000
    assert_conserved(summary)

    await wallet_ledger.finalize(kept.id)
    await wallet_ledger.release(returned.id)
    summary = await wallet_ledger.pool_summary(agent.id, "customer_funds")
    assert summary == {
        "pool": "customer_funds",
        "credited": 10000,
        "finalized_debits": 3000,
        "held": 0,
        "balance": 7000,
    }

@pytest.mark.asyncio
async def test_reservation_settles_once(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "delivery_earnings", 1000)
    reservation = await wallet_ledger.reserve(agent.id, "delivery_earnings", 600)
    assert reservation.status == ReservationStatus.HELD

    released = await wallet_ledger.release(reservation.id)
    assert released.status == ReservationStatus.RELEASED

    with pytest.raises(InvalidTransition):
        await wallet_ledger.release(reservation.id)
    with pytest.raises(InvalidTransition):
        await wallet_ledger.finalize(reservation.id)
    assert await wallet_ledger.get_balance(agent.id, "delivery_earnings") == 1000

@pytest.mark.asyncio
async def test_concurrent_reserves_never_overdraw(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "customer_funds", 10000)

    results = await asyncio.gather(
        *(wallet_ledger.reserve(agent.id, "customer_funds", 3000) for _ in range(5)),
        return_exceptions=True,
    )

    held = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(held) == 3
    assert all(isinstance(e, InsufficientFunds) for e in refused)

    summary = await wallet_ledger.pool_summary(agent.id, "customer_funds")
    assert summary["balance"] == 1000
    assert summary["held"] == 9000
    assert_conserved(summary)

@pytest.mark.asyncio
async def test_amount_validation(make_agent, wallet_ledger):
    agent = await make_agent()
    with pytest.raises(InvalidAmount):
        await wallet_ledger.credit(agent.id, "customer_funds", 0)
    with pytest.raises(InvalidAmount):
        await wallet_ledger.reserve(agent.id, "customer_funds", -5)
    with pytest.raises(ValidationError):
        await wallet_ledger.credit(agent.id, "customer_funds", 12.5)
    with pytest.raises(ValidationError):
        await wallet_ledger.credit(agent.id, "savings", 100)

@pytest.mark.asyncio
async def test_duplicate_credit_reference_rejected(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "customer_funds", 2500, reference="funding-7")
    with pytest.raises(ValidationError):
        await wallet_ledger.credit(agent.id, "customer_funds", 2500, reference="funding-7")
    assert await wallet_ledger.get_balance(agent.id, "customer_funds") == 2500

@pytest.mark.asyncio
async def test_entries_journal_every_movement(make_agent, wallet_ledger):
    agent = await make_agent()
    await wallet_ledger.credit(agent.id, "delivery_earnings", 800)
    reservation = await wallet_ledger.reserve(agent.id, "delivery_earnings", 500)
    await wallet_ledger.finalize(reservation.id)

    entries = await wallet_ledger.list_entries(agent.id)
    assert sorted(e["kind"] for e in entries) == ["credit", "finalize", "reserve"]
    assert all(e["pool"] == "delivery_earnings" for e in entries)

@pytest.mark.asyncio
async def test_release_unknown_reservation(wallet_ledger):
    with pytest.raises(NotFound):
        await wallet_ledger.release(uuid.uuid4())

@pytest.mark.asyncio
async def test_overlong_credit_reference_rejected(make_agent, wallet_ledger):
    agent = await make_agent()
    with pytest.raises(ValidationError):
        await wallet_ledger.credit(agent.id, "customer_funds", 100, reference="x" * 65)
    assert await wallet_ledger.get_balance(agent.id, "customer_funds") == 0

    wallet = await wallet_ledger.credit(agent.id, "customer_funds", 100, reference="x" * 64)
    assert wallet["customer_funds"] == 100
