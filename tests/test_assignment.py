import asyncio
import uuid
import pytest
from campus_fulfillment.core.errors import (
    AlreadyClaimed, CapacityExceeded, FulfillmentError, Forbidden, InvalidTransition, NotFound,
)

@pytest.mark.asyncio
async def test_claim_assigns_order(make_agent, make_order, assignment_service):
    agent = await make_agent()
    order = await make_order()

    claimed = await assignment_service.claim_order(order["id"], agent.id)

    assert claimed["status"] == "accepted"
    assert claimed["delivery_agent_id"] == str(agent.id)
    assert await assignment_service.active_count(agent.id) == 1

@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(make_agent, make_order, assignment_service, order_service):
    agents = [await make_agent() for _ in range(5)]
    order = await make_order()

    results = await asyncio.gather(
        *(assignment_service.claim_order(order["id"], agent.id) for agent in agents),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert all(isinstance(e, AlreadyClaimed) for e in losers)

    stored = await order_service.get_order(order["id"])
    assert stored["delivery_agent_id"] == winners[0]["delivery_agent_id"]

@pytest.mark.asyncio
async def test_capacity_cap(make_agent, make_order, assignment_service, order_service):
    agent = await make_agent()
    orders = [await make_order() for _ in range(3)]
    await assignment_service.claim_order(orders[0]["id"], agent.id)
    await assignment_service.claim_order(orders[1]["id"], agent.id)

    with pytest.raises(CapacityExceeded) as exc:
        await assignment_service.claim_order(orders[2]["id"], agent.id)
    assert exc.value.details["active_count"] == 2

    untouched = await order_service.get_order(orders[2]["id"])
    assert untouched["status"] == "pending"
    assert untouched["delivery_agent_id"] is None

@pytest.mark.asyncio
async def test_concurrent_claims_by_one_agent_respect_cap(make_agent, make_order, assignment_service):
    agent = await make_agent()
    orders = [await make_order() for _ in range(4)]

    results = await asyncio.gather(
        *(assignment_service.claim_order(o["id"], agent.id) for o in orders),
        return_exceptions=True,
    )

    assert sum(isinstance(r, dict) for r in results) == 2
    assert all(isinstance(r, CapacityExceeded) for r in results if not isinstance(r, dict))
    assert await assignment_service.active_count(agent.id) == 2

@pytest.mark.asyncio
async def test_delivered_order_frees_capacity(make_agent, make_order, assignment_service, order_service):
    agent = await make_agent()
    first, second, third = [await make_order() for _ in range(3)]
    await assignment_service.claim_order(first["id"], agent.id)
    await assignment_service.claim_order(second["id"], agent.id)
    for status in ("preparing", "ready", "picked_up", "delivered"):
        await order_service.advance(first["id"], status, agent.id)

    claimed = await assignment_service.claim_order(third["id"], agent.id)
    assert claimed["delivery_agent_id"] == str(agent.id)

@pytest.mark.asyncio
async def test_offline_agent_cannot_claim(make_agent, make_order, assignment_service):
    agent = await make_agent(available=False)
    order = await make_order()
    with pytest.raises(Forbidden):
        await assignment_service.claim_order(order["id"], agent.id)

@pytest.mark.asyncio
async def test_claim_of_cancelled_order(make_agent, make_order, assignment_service, order_service):
    agent = await make_agent()
    order = await make_order()
    await order_service.cancel_order(order["id"])

    with pytest.raises(InvalidTransition):
        await assignment_service.claim_order(order["id"], agent.id)

@pytest.mark.asyncio
async def test_claim_unknown_order_or_agent(make_agent, make_order, assignment_service):
    agent = await make_agent()
    order = await make_order()
    with pytest.raises(NotFound):
        await assignment_service.claim_order(uuid.uuid4(), agent.id)
    with pytest.raises(NotFound):
        await assignment_service.claim_order(order["id"], uuid.uuid4())

@pytest.mark.asyncio
async def test_cancel_racing_claim_settles_one_way(make_agent, make_order, assignment_service, order_service):
    agent = await make_agent()
    order = await make_order()

    claim, cancel = await asyncio.gather(
        assignment_service.claim_order(order["id"], agent.id),
        order_service.cancel_order(order["id"]),
        return_exceptions=True,
    )

    outcomes = [r for r in (claim, cancel) if isinstance(r, dict)]
    assert len(outcomes) == 1
    assert all(isinstance(r, FulfillmentError) for r in (claim, cancel) if not isinstance(r, dict))

    stored = await order_service.get_order(order["id"])
    if isinstance(claim, dict):
        assert stored["status"] == "accepted"
    else:
        assert stored["status"] == "cancelled"
        assert stored["delivery_agent_id"] is None

@pytest.mark.asyncio
async def test_toggle_availability_and_summary(make_agent, assignment_service):
    agent = await make_agent(available=False)
    summary = await assignment_service.get_agent_summary(agent.id)
    assert summary["can_claim"] is False
    assert summary["max_active_orders"] == 2

    await assignment_service.toggle_availability(agent.id, True)
    summary = await assignment_service.get_agent_summary(agent.id)
    assert summary["is_available"] is True
    assert summary["can_claim"] is True
    assert summary["active_count"] == 0

    with pytest.raises(NotFound):
        await assignment_service.toggle_availability(uuid.uuid4(), True)

@pytest.mark.asyncio
async def test_capacity_checked_before_availability(make_agent, make_order, assignment_service):
    agent = await make_agent()
    orders = [await make_order() for _ in range(3)]
    await assignment_service.claim_order(orders[0]["id"], agent.id)
    await assignment_service.claim_order(orders[1]["id"], agent.id)
    await assignment_service.toggle_availability(agent.id, False)

    with pytest.raises(CapacityExceeded):
        await assignment_service.claim_order(orders[2]["id"], agent.id)
