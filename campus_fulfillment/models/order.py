from sqlalchemy import Column, String, BigInteger, ForeignKey, Enum, Uuid, CheckConstraint
from enum import Enum as PyEnum
from campus_fulfillment.models.base_model import Base, BaseModel

class OrderStatus(PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES

class SellerType(PyEnum):
    CAFETERIA = "cafeteria"
    VENDOR = "vendor"

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

class Order(BaseModel):
    __tablename__ = 'orders'
    __table_args__ = (
        CheckConstraint('delivery_fee >= 0', name='ck_orders_delivery_fee_non_negative'),
        CheckConstraint('total >= delivery_fee', name='ck_orders_total_covers_fee'),
    )

    order_number = Column(String(32), nullable=False, unique=True, index=True)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    customer_id = Column(Uuid, nullable=False, index=True)
    seller_id = Column(Uuid, nullable=False, index=True)
    seller_type = Column(Enum(SellerType), nullable=False)
    # Written once by the assignment service; never cleared.
    delivery_agent_id = Column(Uuid, ForeignKey('delivery_agents.id'), nullable=True, index=True)
    subtotal = Column(BigInteger, nullable=False, default=0)
    delivery_fee = Column(BigInteger, nullable=False, default=0)
    total = Column(BigInteger, nullable=False)
    delivery_address = Column(String, nullable=False)
    delivery_notes = Column(String, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "status": self.status.value,
            "customer_id": str(self.customer_id),
            "seller_id": str(self.seller_id),
            "seller_type": self.seller_type.value,
            "delivery_agent_id": str(self.delivery_agent_id) if self.delivery_agent_id else None,
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "total": self.total,
            "delivery_address": self.delivery_address,
            "delivery_notes": self.delivery_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
