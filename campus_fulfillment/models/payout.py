from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, Enum, Uuid, CheckConstraint
from enum import Enum as PyEnum
from campus_fulfillment.models.base_model import Base, BaseModel
from campus_fulfillment.models.wallet import WalletPool

class WithdrawalStatus(PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class AgentPayoutProfile(BaseModel):
    __tablename__ = 'agent_payout_profiles'

    user_id = Column(Uuid, nullable=False, unique=True, index=True)
    account_number = Column(String(10), nullable=False)
    bank_code = Column(String(10), nullable=False)
    account_name = Column(String, nullable=True)
    # Set only after the gateway accepted the payee.
    recipient_code = Column(String, nullable=True)

    @property
    def verified(self) -> bool:
        return self.recipient_code is not None

    @property
    def masked_account_number(self) -> str:
        return f"******{self.account_number[-4:]}" if self.account_number else ""

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "account_number": self.masked_account_number,
            "bank_code": self.bank_code,
            "account_name": self.account_name,
            "verified": self.verified,
        }

class WithdrawalRequest(BaseModel):
    __tablename__ = 'withdrawal_requests'
    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )

    agent_id = Column(Uuid, ForeignKey('delivery_agents.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    pool = Column(Enum(WalletPool), nullable=False)
    status = Column(Enum(WithdrawalStatus), nullable=False, default=WithdrawalStatus.PENDING, index=True)
    reservation_id = Column(Uuid, ForeignKey('wallet_reservations.id'), nullable=False, unique=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    gateway_reference = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "agent_id": str(self.agent_id),
            "amount": self.amount,
            "pool": self.pool.value,
            "status": self.status.value,
            "gateway_reference": self.gateway_reference,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
