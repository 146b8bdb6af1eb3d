"""Agent withdrawals against the payout gateway.

A withdrawal reserves the amount in the wallet ledger, records the request
as ``processing`` and calls the gateway once, bounded by a timeout:

    pending -> processing -> completed   reservation finalized
                          -> failed      reservation released (balance restored)

A failed withdrawal is never retried here; the agent submits a new request.
Requests left in ``processing`` by a crash are settled by
``reconcile_stale_withdrawals`` using the gateway's view of the transfer.
"""
import asyncio
import logging
import re
from datetime import timedelta
from sqlalchemy import select, update
from campus_fulfillment.core.errors import (
    BankNotVerified, FulfillmentError, GatewayError, InvalidAmount, InvalidTransition,
    NotFound, ValidationError,
)
from campus_fulfillment.core.validation import parse_uuid
from campus_fulfillment.models.agent import DeliveryAgent
from campus_fulfillment.models.base_model import utcnow
from campus_fulfillment.models.payout import AgentPayoutProfile, WithdrawalRequest, WithdrawalStatus
from campus_fulfillment.models.wallet import WalletPool
from campus_fulfillment.services.paystack_gateway import (
    ACCEPTED_TRANSFER_STATES, FAILED_TRANSFER_STATES, OTP_TRANSFER_STATE,
)
from campus_fulfillment.services.wallet_ledger import WalletLedger, parse_pool

logger = logging.getLogger(__name__)

WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.FAILED: set(),
}

TRANSFER_REASONS = {
    WalletPool.CUSTOMER_FUNDS: "Food purchase funds",
    WalletPool.DELIVERY_EARNINGS: "Delivery earnings",
}

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")
BANK_CODE_PATTERN = re.compile(r"^\d{3,6}$")


def assert_withdrawal_transition(old: WithdrawalStatus, new: WithdrawalStatus) -> None:
    if new not in WITHDRAWAL_TRANSITIONS.get(old, set()):
        raise InvalidTransition(f"Illegal withdrawal transition: {old.value} -> {new.value}")


def mask_account(account_number: str) -> str:
    return f"******{account_number[-4:]}" if account_number else "<none>"


class PayoutReconciler:
    def __init__(self, session_factory, wallet_ledger: WalletLedger, gateway, gateway_timeout: float = 30.0):
        self.session_factory = session_factory
        self.wallet_ledger = wallet_ledger
        self.gateway = gateway
        self.gateway_timeout = gateway_timeout

    async def _call_gateway(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.gateway_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Payout gateway call exceeded {self.gateway_timeout}s")
            raise GatewayError("Payout gateway timed out")

    async def _get_agent(self, session, agent_id) -> DeliveryAgent:
        result = await session.execute(select(DeliveryAgent).where(DeliveryAgent.id == agent_id))
        agent = result.scalars().first()
        if not agent:
            logger.warning(f"Delivery agent not found: {agent_id}")
            raise NotFound(f"Delivery agent {agent_id} not found")
        return agent

    async def _get_profile(self, session, user_id):
        result = await session.execute(
            select(AgentPayoutProfile)
            .where(AgentPayoutProfile.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_payout_profile(self, agent_id) -> dict:
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            agent = await self._get_agent(session, agent_id)
            profile = await self._get_profile(session, agent.user_id)
            if not profile:
                raise NotFound("No bank details on file")
            return profile.to_dict()

    async def set_payout_profile(self, agent_id, account_number: str, bank_code: str) -> dict:
        """Store bank details; changing them drops any earlier verification."""
        agent_id = parse_uuid(agent_id, "agent_id")
        account_number = str(account_number or "").strip()
        bank_code = str(bank_code or "").strip()
        if not ACCOUNT_NUMBER_PATTERN.match(account_number):
            raise ValidationError("Account number must be 10 digits")
        if not BANK_CODE_PATTERN.match(bank_code):
            raise ValidationError("Bank code must be 3 to 6 digits")

        async with self.session_factory() as session:
            try:
                agent = await self._get_agent(session, agent_id)
                profile = await self._get_profile(session, agent.user_id)
                if profile is None:
                    profile = AgentPayoutProfile(
                        user_id=agent.user_id, account_number=account_number, bank_code=bank_code,
                    )
                    session.add(profile)
                elif (profile.account_number, profile.bank_code) != (account_number, bank_code):
                    profile.account_number = account_number
                    profile.bank_code = bank_code
                    profile.account_name = None
                    profile.recipient_code = None
                await session.commit()
                logger.info(f"Payout profile saved for agent {agent_id}: {mask_account(account_number)}/{bank_code}")
                return profile.to_dict()
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Saving payout profile for agent {agent_id} failed: {str(e)}", exc_info=True)
                raise

    async def register_payee(self, agent_id) -> dict:
        """Register the stored bank account with the gateway (payee verification).

        Has no financial side effect, so callers may retry it freely.
        """
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            agent = await self._get_agent(session, agent_id)
            profile = await self._get_profile(session, agent.user_id)
        if not profile:
            raise ValidationError("Add bank details before verifying")
        if profile.verified:
            logger.info(f"Agent {agent_id} payee already registered")
            return profile.to_dict()

        account_name = profile.account_name
        if not account_name:
            try:
                account_name = await self._call_gateway(
                    self.gateway.resolve_account(profile.account_number, profile.bank_code)
                )
            except GatewayError as e:
                logger.warning(f"Account resolution failed for {mask_account(profile.account_number)}: {e.message}")
                account_name = None
        name = account_name or f"Agent {str(agent_id)[:8]}"

        recipient_code = await self._call_gateway(
            self.gateway.register_payee(profile.account_number, profile.bank_code, name)
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(AgentPayoutProfile)
                    .where(AgentPayoutProfile.id == profile.id)
                    .where(AgentPayoutProfile.account_number == profile.account_number)
                    .where(AgentPayoutProfile.bank_code == profile.bank_code)
                    .values(recipient_code=recipient_code, account_name=account_name, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ValidationError("Bank details changed during verification, verify again")
                await session.commit()
                profile = await self._get_profile(session, agent.user_id)
                logger.info(f"Payee registered for agent {agent_id}: {mask_account(profile.account_number)}")
                return profile.to_dict()
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Storing recipient code for agent {agent_id} failed: {str(e)}", exc_info=True)
                raise

    async def _transition(self, session, withdrawal_id, old: WithdrawalStatus, new: WithdrawalStatus, **values) -> bool:
        assert_withdrawal_transition(old, new)
        result = await session.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id)
            .where(WithdrawalRequest.status == old)
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _load_withdrawal(self, session, withdrawal_id) -> WithdrawalRequest:
        result = await session.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalars().first()
        if not withdrawal:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def _settle(self, withdrawal: WithdrawalRequest, outcome: WithdrawalStatus,
                      gateway_reference: str = None, error_message: str = None) -> bool:
        """Move a processing withdrawal to its terminal state and settle the reservation.

        Returns False when another worker already settled it.
        """
        async with self.session_factory() as session:
            try:
                moved = await self._transition(
                    session, withdrawal.id, WithdrawalStatus.PROCESSING, outcome,
                    processed_at=utcnow(), gateway_reference=gateway_reference, error_message=error_message,
                )
                if not moved:
                    await session.rollback()
                    logger.warning(f"Withdrawal {withdrawal.id} was already settled elsewhere")
                    return False
                if outcome == WithdrawalStatus.COMPLETED:
                    await self.wallet_ledger.finalize(withdrawal.reservation_id, session=session)
                else:
                    await self.wallet_ledger.release(withdrawal.reservation_id, session=session)
                await session.commit()
                return True
            except Exception as e:
                await session.rollback()
                logger.error(f"Settling withdrawal {withdrawal.id} as {outcome.value} failed: {str(e)}", exc_info=True)
                raise

    async def request_withdrawal(self, agent_id, pool, amount: int) -> dict:
        agent_id = parse_uuid(agent_id, "agent_id")
        pool = parse_pool(pool)

        async with self.session_factory() as session:
            agent = await self._get_agent(session, agent_id)
            profile = await self._get_profile(session, agent.user_id)
        if not profile or not profile.verified:
            logger.warning(f"Withdrawal by agent {agent_id} refused: bank not verified")
            raise BankNotVerified("Verify your bank account before withdrawing")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Amount must be an integer number of minor units")
        if amount <= 0:
            raise InvalidAmount("Amount must be greater than zero")

        async with self.session_factory() as session:
            try:
                reservation = await self.wallet_ledger.reserve(agent_id, pool, amount, session=session)
                withdrawal = WithdrawalRequest(
                    agent_id=agent_id, amount=amount, pool=pool,
                    status=WithdrawalStatus.PENDING, reservation_id=reservation.id,
                )
                session.add(withdrawal)
                await session.flush()
                await self._transition(session, withdrawal.id, WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)
                await session.commit()
                withdrawal = await self._load_withdrawal(session, withdrawal.id)
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Creating withdrawal for agent {agent_id} failed: {str(e)}", exc_info=True)
                raise
        logger.info(f"Withdrawal {withdrawal.id} processing: {amount} from {pool.value} for agent {agent_id}")

        try:
            gateway_reference = await self._call_gateway(self.gateway.initiate_transfer(
                profile.recipient_code, amount, str(withdrawal.id), TRANSFER_REASONS[pool],
            ))
        except Exception as e:
            error_message = e.message if isinstance(e, GatewayError) else "Unexpected payout gateway error"
            if not isinstance(e, GatewayError):
                logger.error(f"Unexpected error calling gateway for withdrawal {withdrawal.id}", exc_info=True)
            await self._settle(withdrawal, WithdrawalStatus.FAILED, error_message=error_message)
            logger.warning(f"Withdrawal {withdrawal.id} failed and {amount} returned to {pool.value}: {error_message}")
            raise GatewayError(f"Withdrawal failed: {error_message}", withdrawal_id=str(withdrawal.id))

        await self._settle(withdrawal, WithdrawalStatus.COMPLETED, gateway_reference=gateway_reference)
        logger.info(f"Withdrawal {withdrawal.id} completed, gateway reference {gateway_reference}")
        return await self.get_withdrawal(withdrawal.id)

    async def get_withdrawal(self, withdrawal_id, agent_id=None) -> dict:
        withdrawal_id = parse_uuid(withdrawal_id, "withdrawal_id")
        async with self.session_factory() as session:
            withdrawal = await self._load_withdrawal(session, withdrawal_id)
        if agent_id is not None and withdrawal.agent_id != parse_uuid(agent_id, "agent_id"):
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal.to_dict()

    async def list_withdrawals(self, agent_id, status=None) -> list:
        agent_id = parse_uuid(agent_id, "agent_id")
        query = select(WithdrawalRequest).where(WithdrawalRequest.agent_id == agent_id)
        if status:
            try:
                query = query.where(WithdrawalRequest.status == WithdrawalStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown withdrawal status '{status}'")
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(WithdrawalRequest.created_at.desc()))
            return [w.to_dict() for w in result.scalars().all()]

    async def reconcile_stale_withdrawals(self, older_than_seconds: int = 600) -> dict:
        """Settle withdrawals stuck in ``processing`` using the gateway's record."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.status == WithdrawalStatus.PROCESSING)
                .where(WithdrawalRequest.updated_at < cutoff)
            )
            stale = result.scalars().all()

        summary = {"checked": len(stale), "completed": 0, "failed": 0, "skipped": 0}
        for withdrawal in stale:
            try:
                state = await self._call_gateway(self.gateway.fetch_transfer(str(withdrawal.id)))
            except GatewayError as e:
                if e.details.get("gateway_status") != 404:
                    logger.warning(f"Could not check withdrawal {withdrawal.id} at gateway: {e.message}")
                    summary["skipped"] += 1
                    continue
                state = "not_found"

            if state in ACCEPTED_TRANSFER_STATES:
                settled = await self._settle(withdrawal, WithdrawalStatus.COMPLETED, gateway_reference=str(withdrawal.id))
                summary["completed" if settled else "skipped"] += 1
            elif state in FAILED_TRANSFER_STATES or state in (OTP_TRANSFER_STATE, "not_found"):
                settled = await self._settle(
                    withdrawal, WithdrawalStatus.FAILED, error_message=f"Transfer {state} at gateway",
                )
                summary["failed" if settled else "skipped"] += 1
            else:
                logger.warning(f"Withdrawal {withdrawal.id} has unrecognised gateway state '{state}'")
                summary["skipped"] += 1

        if stale:
            logger.info(f"Stale withdrawal sweep: {summary}")
        return summary

    async def run_reconciliation_loop(self, interval_seconds: int = 300, stale_after_seconds: int = 600):
        """Sweep stale withdrawals every ``interval_seconds``."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.reconcile_stale_withdrawals(stale_after_seconds)
            except Exception as e:
                logger.error(f"Stale withdrawal sweep failed: {str(e)}", exc_info=True)
