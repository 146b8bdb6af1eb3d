from sqlalchemy import Column, String, BigInteger, ForeignKey, Enum, Uuid, CheckConstraint, Index
from enum import Enum as PyEnum
from campus_fulfillment.models.base_model import Base, BaseModel

REFERENCE_MAX_LENGTH = 64

class WalletPool(PyEnum):
    CUSTOMER_FUNDS = "customer_funds"
    DELIVERY_EARNINGS = "delivery_earnings"

class ReservationStatus(PyEnum):
    HELD = "held"
    FINALIZED = "finalized"
    RELEASED = "released"

class EntryKind(PyEnum):
    CREDIT = "credit"
    RESERVE = "reserve"
    RELEASE = "release"
    FINALIZE = "finalize"

class AgentWallet(BaseModel):
    """Current two-pool balance per agent."""

    __tablename__ = 'agent_wallets'
    __table_args__ = (
        CheckConstraint('customer_funds >= 0', name='ck_wallet_customer_funds_non_negative'),
        CheckConstraint('delivery_earnings >= 0', name='ck_wallet_delivery_earnings_non_negative'),
    )

    agent_id = Column(Uuid, ForeignKey('delivery_agents.id'), nullable=False, unique=True, index=True)
    customer_funds = Column(BigInteger, nullable=False, default=0)
    delivery_earnings = Column(BigInteger, nullable=False, default=0)

    @property
    def total_balance(self) -> int:
        return (self.customer_funds or 0) + (self.delivery_earnings or 0)

    def balance_of(self, pool: WalletPool) -> int:
        return getattr(self, pool.value) or 0

class WalletReservation(BaseModel):
    """Funds taken out of a pool for an in-flight withdrawal."""

    __tablename__ = 'wallet_reservations'
    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_reservation_amount_positive'),
    )

    agent_id = Column(Uuid, ForeignKey('delivery_agents.id'), nullable=False, index=True)
    pool = Column(Enum(WalletPool), nullable=False)
    amount = Column(BigInteger, nullable=False)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.HELD, index=True)

class WalletEntry(BaseModel):
    """Append-only journal of ledger movements."""

    __tablename__ = 'wallet_entries'
    __table_args__ = (
        # A given reference (order id, funding batch) is credited at most once per pool.
        Index('uq_wallet_entry_reference', 'agent_id', 'pool', 'kind', 'reference', unique=True),
    )

    agent_id = Column(Uuid, ForeignKey('delivery_agents.id'), nullable=False, index=True)
    pool = Column(Enum(WalletPool), nullable=False)
    kind = Column(Enum(EntryKind), nullable=False)
    amount = Column(BigInteger, nullable=False)
    reference = Column(String(REFERENCE_MAX_LENGTH), nullable=True)
    reservation_id = Column(Uuid, ForeignKey('wallet_reservations.id'), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "pool": self.pool.value,
            "kind": self.kind.value,
            "amount": self.amount,
            "reference": self.reference,
            "reservation_id": str(self.reservation_id) if self.reservation_id else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
