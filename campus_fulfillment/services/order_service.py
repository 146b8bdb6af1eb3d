from sqlalchemy import select, update
from campus_fulfillment.core.errors import (
    FulfillmentError, Forbidden, InvalidTransition, NotFound, ValidationError,
)
from campus_fulfillment.core.validation import parse_uuid, require_int
from campus_fulfillment.models.base_model import utcnow
from campus_fulfillment.models.order import Order, OrderStatus, SellerType, TERMINAL_ORDER_STATUSES
from campus_fulfillment.models.wallet import WalletPool
from campus_fulfillment.services.wallet_ledger import WalletLedger
import logging
import secrets

logger = logging.getLogger(__name__)

# Full lifecycle. ``pending -> accepted`` belongs to the assignment service and
# ``pending -> cancelled`` to the customer side; agents only walk the rest.
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.PREPARING},
    OrderStatus.PREPARING: {OrderStatus.READY},
    OrderStatus.READY: {OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

AGENT_SUCCESSORS = {
    status: next(iter(successors))
    for status, successors in ORDER_TRANSITIONS.items()
    if status != OrderStatus.PENDING and successors
}


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status '{value}'")


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


class OrderService:
    def __init__(self, session_factory, wallet_ledger: WalletLedger):
        self.session_factory = session_factory
        self.wallet_ledger = wallet_ledger

    async def _fetch(self, session, order_id) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalars().first()
        if not order:
            logger.warning(f"Order not found: {order_id}")
            raise NotFound(f"Order {order_id} not found")
        return order

    async def create_order(self, seller_id, seller_type, customer_id, delivery_address: str,
                           subtotal: int, delivery_fee: int, total: int = None,
                           delivery_notes: str = None) -> dict:
        seller_id = parse_uuid(seller_id, "seller_id")
        customer_id = parse_uuid(customer_id, "customer_id")
        try:
            seller_type = SellerType(seller_type) if not isinstance(seller_type, SellerType) else seller_type
        except ValueError:
            raise ValidationError(f"Unknown seller type '{seller_type}'")
        if not delivery_address or not str(delivery_address).strip():
            raise ValidationError("Delivery address is required")
        subtotal = require_int(subtotal, "subtotal")
        delivery_fee = require_int(delivery_fee, "delivery_fee")
        total = subtotal + delivery_fee if total is None else require_int(total, "total")
        if subtotal < 0 or delivery_fee < 0:
            raise ValidationError("Order amounts cannot be negative")
        if total < delivery_fee:
            raise ValidationError("Order total must cover the delivery fee")

        async with self.session_factory() as session:
            try:
                order = Order(
                    order_number=generate_order_number(),
                    status=OrderStatus.PENDING,
                    customer_id=customer_id,
                    seller_id=seller_id,
                    seller_type=seller_type,
                    subtotal=subtotal,
                    delivery_fee=delivery_fee,
                    total=total,
                    delivery_address=delivery_address.strip(),
                    delivery_notes=delivery_notes,
                )
                session.add(order)
                await session.commit()
                await session.refresh(order)
                logger.info(f"Order created: {order.order_number} ({order.id})")
                return order.to_dict()
            except Exception as e:
                await session.rollback()
                logger.error(f"Order creation failed: {str(e)}", exc_info=True)
                raise

    async def get_order(self, order_id) -> dict:
        order_id = parse_uuid(order_id, "order_id")
        async with self.session_factory() as session:
            order = await self._fetch(session, order_id)
            return order.to_dict()

    async def advance(self, order_id, requested_status, acting_agent_id) -> dict:
        """Move an assigned order one step forward on behalf of its agent.

        Entering ``delivered`` credits the order's delivery fee to the agent's
        earnings in the same transaction.
        """
        order_id = parse_uuid(order_id, "order_id")
        acting_agent_id = parse_uuid(acting_agent_id, "agent_id")
        requested = parse_status(requested_status)

        async with self.session_factory() as session:
            try:
                order = await self._fetch(session, order_id)
                if order.delivery_agent_id != acting_agent_id:
                    logger.warning(f"Agent {acting_agent_id} tried to advance order {order_id} it does not hold")
                    raise Forbidden("Order is not assigned to this agent")

                current = order.status
                if AGENT_SUCCESSORS.get(current) != requested:
                    logger.warning(f"Rejected transition {current.value} -> {requested.value} on order {order_id}")
                    raise InvalidTransition(
                        f"Cannot move order from {current.value} to {requested.value}",
                        current_status=current.value,
                    )

                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .where(Order.status == current)
                    .where(Order.delivery_agent_id == acting_agent_id)
                    .values(status=requested, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidTransition("Order status changed concurrently, refresh and retry")

                if requested == OrderStatus.DELIVERED and order.delivery_fee > 0:
                    await self.wallet_ledger.credit(
                        acting_agent_id, WalletPool.DELIVERY_EARNINGS, order.delivery_fee,
                        reference=f"order:{order_id}", session=session,
                    )

                await session.commit()
                order = await self._fetch(session, order_id)
                logger.info(f"Order {order.order_number} moved {current.value} -> {requested.value}")
                return order.to_dict()
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Advancing order {order_id} failed: {str(e)}", exc_info=True)
                raise

    async def cancel_order(self, order_id) -> dict:
        """Cancel an order nobody has claimed yet."""
        order_id = parse_uuid(order_id, "order_id")
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .where(Order.status == OrderStatus.PENDING)
                    .where(Order.delivery_agent_id.is_(None))
                    .values(status=OrderStatus.CANCELLED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    order = await self._fetch(session, order_id)
                    reason = ("it has already been claimed by an agent" if order.delivery_agent_id
                              else f"it is {order.status.value}")
                    logger.warning(f"Cancellation of order {order_id} rejected: {reason}")
                    raise InvalidTransition(f"Order cannot be cancelled because {reason}",
                                            current_status=order.status.value)
                await session.commit()
                order = await self._fetch(session, order_id)
                logger.info(f"Order {order.order_number} cancelled")
                return order.to_dict()
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Cancelling order {order_id} failed: {str(e)}", exc_info=True)
                raise

    async def list_claimable_orders(self, limit: int = 50) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.status == OrderStatus.PENDING)
                .where(Order.delivery_agent_id.is_(None))
                .order_by(Order.created_at.asc())
                .limit(limit)
            )
            orders = [order.to_dict() for order in result.scalars().all()]
            logger.debug(f"Retrieved {len(orders)} claimable orders")
            return orders

    async def list_agent_orders(self, agent_id, active_only: bool = False) -> list:
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            query = select(Order).where(Order.delivery_agent_id == agent_id)
            if active_only:
                query = query.where(Order.status.notin_(list(TERMINAL_ORDER_STATUSES)))
            result = await session.execute(query.order_by(Order.updated_at.desc()))
            return [order.to_dict() for order in result.scalars().all()]
