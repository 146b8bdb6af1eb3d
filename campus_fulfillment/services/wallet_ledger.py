"""Two-pool agent wallet ledger.

Each agent has a ``customer_funds`` pool (money advanced to buy food on a
customer's behalf) and a ``delivery_earnings`` pool (the agent's own
delivery fees). Balances only move through the operations here:

    credit    pool += amount
    reserve   pool -= amount, only if pool >= amount   (returns a handle)
    release   held reservation -> released, pool += amount
    finalize  held reservation -> finalized, no balance change

Every balance check is part of the UPDATE statement that moves the money,
so concurrent callers cannot both spend the same balance. Every movement
is journalled in ``wallet_entries``; for each pool
``balance == credited - finalized - held`` at all times.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from campus_fulfillment.core.errors import (
    InsufficientFunds, InvalidAmount, InvalidTransition, NotFound, ValidationError,
)
from campus_fulfillment.models.base_model import utcnow
from campus_fulfillment.models.wallet import (
    AgentWallet, WalletPool, WalletReservation, ReservationStatus, WalletEntry, EntryKind,
    REFERENCE_MAX_LENGTH,
)

logger = logging.getLogger(__name__)


def parse_pool(value) -> WalletPool:
    if isinstance(value, WalletPool):
        return value
    try:
        return WalletPool(value)
    except ValueError:
        allowed = ", ".join(p.value for p in WalletPool)
        raise ValidationError(f"Unknown wallet pool '{value}', expected one of: {allowed}")


def _check_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer number of minor units")
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    return amount


def _insert_ignoring_conflicts(session, table):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect: {dialect}")
    return insert(table)


class WalletLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _scope(self, session=None):
        # Join the caller's transaction when one is passed in.
        if session is not None:
            yield session
            return
        async with self.session_factory() as own_session:
            try:
                yield own_session
                await own_session.commit()
            except Exception:
                await own_session.rollback()
                raise

    async def _ensure_wallet(self, session, agent_id: uuid.UUID) -> None:
        now = utcnow()
        stmt = _insert_ignoring_conflicts(session, AgentWallet.__table__).values(
            id=uuid.uuid4(),
            agent_id=agent_id,
            customer_funds=0,
            delivery_earnings=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["agent_id"])
        await session.execute(stmt)

    async def _load_reservation(self, session, reservation_id) -> WalletReservation:
        result = await session.execute(
            select(WalletReservation)
            .where(WalletReservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = result.scalars().first()
        if not reservation:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    async def _adjust(self, session, agent_id, pool: WalletPool, delta: int, require_balance: bool = False):
        column = getattr(AgentWallet, pool.value)
        stmt = (
            update(AgentWallet)
            .where(AgentWallet.agent_id == agent_id)
            .values(**{pool.value: column + delta, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        if require_balance:
            stmt = stmt.where(column >= -delta)
        result = await session.execute(stmt)
        return result.rowcount

    async def credit(self, agent_id: uuid.UUID, pool, amount: int, reference: str = None, session=None) -> dict:
        pool = parse_pool(pool)
        _check_amount(amount)
        if reference is not None:
            reference = str(reference)
            if len(reference) > REFERENCE_MAX_LENGTH:
                raise ValidationError(f"Reference must be at most {REFERENCE_MAX_LENGTH} characters")
        async with self._scope(session) as s:
            await self._ensure_wallet(s, agent_id)
            await self._adjust(s, agent_id, pool, amount)
            s.add(WalletEntry(
                agent_id=agent_id, pool=pool, kind=EntryKind.CREDIT,
                amount=amount, reference=reference,
            ))
            try:
                await s.flush()
            except IntegrityError:
                logger.warning(f"Duplicate credit reference {reference} for agent {agent_id}")
                raise ValidationError(f"Reference {reference} has already been credited")
            wallet = await self._wallet_row(s, agent_id)
            logger.info(f"Credited {amount} to {pool.value} of agent {agent_id} (ref {reference})")
            return self._wallet_dict(agent_id, wallet)

    async def reserve(self, agent_id: uuid.UUID, pool, amount: int, session=None) -> WalletReservation:
        """Atomically take ``amount`` out of ``pool`` and return the handle.

        Raises ``InsufficientFunds`` without touching anything when the pool
        holds less than ``amount``.
        """
        pool = parse_pool(pool)
        _check_amount(amount)
        async with self._scope(session) as s:
            affected = await self._adjust(s, agent_id, pool, -amount, require_balance=True)
            if affected != 1:
                logger.warning(f"Reserve of {amount} from {pool.value} refused for agent {agent_id}")
                raise InsufficientFunds(f"Insufficient {pool.value} balance", pool=pool.value)

            reservation = WalletReservation(
                agent_id=agent_id, pool=pool, amount=amount, status=ReservationStatus.HELD,
            )
            s.add(reservation)
            await s.flush()
            s.add(WalletEntry(
                agent_id=agent_id, pool=pool, kind=EntryKind.RESERVE, amount=amount,
                reference=str(reservation.id), reservation_id=reservation.id,
            ))
            await s.flush()
            logger.info(f"Reserved {amount} from {pool.value} of agent {agent_id}: {reservation.id}")
            return reservation

    async def _settle(self, session, reservation_id, outcome: ReservationStatus) -> WalletReservation:
        result = await session.execute(
            update(WalletReservation)
            .where(WalletReservation.id == reservation_id)
            .where(WalletReservation.status == ReservationStatus.HELD)
            .values(status=outcome, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        reservation = await self._load_reservation(session, reservation_id)
        if result.rowcount != 1:
            raise InvalidTransition(
                f"Reservation {reservation_id} is already {reservation.status.value}"
            )
        return reservation

    async def release(self, reservation_id, session=None) -> WalletReservation:
        """Compensate a failed withdrawal by putting the reserved amount back."""
        async with self._scope(session) as s:
            reservation = await self._settle(s, reservation_id, ReservationStatus.RELEASED)
            await self._adjust(s, reservation.agent_id, reservation.pool, reservation.amount)
            s.add(WalletEntry(
                agent_id=reservation.agent_id, pool=reservation.pool, kind=EntryKind.RELEASE,
                amount=reservation.amount, reference=str(reservation.id), reservation_id=reservation.id,
            ))
            await s.flush()
            logger.info(f"Released reservation {reservation.id}: {reservation.amount} back to {reservation.pool.value}")
            return reservation

    async def finalize(self, reservation_id, session=None) -> WalletReservation:
        async with self._scope(session) as s:
            reservation = await self._settle(s, reservation_id, ReservationStatus.FINALIZED)
            s.add(WalletEntry(
                agent_id=reservation.agent_id, pool=reservation.pool, kind=EntryKind.FINALIZE,
                amount=reservation.amount, reference=str(reservation.id), reservation_id=reservation.id,
            ))
            await s.flush()
            logger.info(f"Finalized reservation {reservation.id} ({reservation.amount} {reservation.pool.value})")
            return reservation

    async def _wallet_row(self, session, agent_id):
        result = await session.execute(
            select(AgentWallet)
            .where(AgentWallet.agent_id == agent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def _wallet_dict(self, agent_id, wallet) -> dict:
        customer_funds = wallet.customer_funds if wallet else 0
        delivery_earnings = wallet.delivery_earnings if wallet else 0
        return {
            "agent_id": str(agent_id),
            "customer_funds": customer_funds,
            "delivery_earnings": delivery_earnings,
            "total_balance": customer_funds + delivery_earnings,
        }

    async def get_wallet(self, agent_id: uuid.UUID) -> dict:
        async with self.session_factory() as session:
            wallet = await self._wallet_row(session, agent_id)
            return self._wallet_dict(agent_id, wallet)

    async def get_balance(self, agent_id: uuid.UUID, pool) -> int:
        wallet = await self.get_wallet(agent_id)
        return wallet[parse_pool(pool).value]

    async def list_entries(self, agent_id: uuid.UUID, limit: int = 100) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletEntry)
                .where(WalletEntry.agent_id == agent_id)
                .order_by(WalletEntry.created_at.desc())
                .limit(limit)
            )
            return [entry.to_dict() for entry in result.scalars().all()]

    async def pool_summary(self, agent_id: uuid.UUID, pool) -> dict:
        """Journal totals for one pool, used to audit the balance."""
        pool = parse_pool(pool)
        async with self.session_factory() as session:
            totals = await session.execute(
                select(WalletEntry.kind, func.coalesce(func.sum(WalletEntry.amount), 0))
                .where(WalletEntry.agent_id == agent_id)
                .where(WalletEntry.pool == pool)
                .group_by(WalletEntry.kind)
            )
            by_kind = {kind: int(total) for kind, total in totals.all()}
            held = await session.execute(
                select(func.coalesce(func.sum(WalletReservation.amount), 0))
                .where(WalletReservation.agent_id == agent_id)
                .where(WalletReservation.pool == pool)
                .where(WalletReservation.status == ReservationStatus.HELD)
            )
            wallet = await self._wallet_row(session, agent_id)

        return {
            "pool": pool.value,
            "credited": by_kind.get(EntryKind.CREDIT, 0),
            "finalized_debits": by_kind.get(EntryKind.FINALIZE, 0),
            "held": int(held.scalar_one()),
            "balance": wallet.balance_of(pool) if wallet else 0,
        }
