from sqlalchemy import select, update, func, exists
from sqlalchemy.orm import aliased
from campus_fulfillment.core.errors import (
    AlreadyClaimed, CapacityExceeded, FulfillmentError, Forbidden, InvalidTransition, NotFound,
)
from campus_fulfillment.core.validation import parse_uuid
from campus_fulfillment.models.agent import DeliveryAgent
from campus_fulfillment.models.base_model import utcnow
from campus_fulfillment.models.order import Order, OrderStatus, TERMINAL_ORDER_STATUSES
import logging

logger = logging.getLogger(__name__)

class AssignmentService:
    """Lets available agents claim unassigned orders.

    There is no in-process lock: the claim is a single conditional UPDATE,
    and the database decides the winner when agents race for an order.
    """

    def __init__(self, session_factory, max_active_orders: int = 2, poll_interval_seconds: int = 15):
        self.session_factory = session_factory
        self.max_active_orders = max_active_orders
        self.poll_interval_seconds = poll_interval_seconds

    def _active_count_query(self, agent_id):
        active = aliased(Order)
        return (
            select(func.count(active.id))
            .where(active.delivery_agent_id == agent_id)
            .where(active.status.notin_(list(TERMINAL_ORDER_STATUSES)))
        )

    async def _get_agent(self, session, agent_id) -> DeliveryAgent:
        result = await session.execute(
            select(DeliveryAgent)
            .where(DeliveryAgent.id == agent_id)
            .execution_options(populate_existing=True)
        )
        agent = result.scalars().first()
        if not agent:
            logger.warning(f"Delivery agent not found: {agent_id}")
            raise NotFound(f"Delivery agent {agent_id} not found")
        return agent

    async def _get_order(self, session, order_id) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalars().first()
        if not order:
            logger.warning(f"Claim attempt for non-existent order: {order_id}")
            raise NotFound(f"Order {order_id} not found")
        return order

    async def _check_claimable(self, session, order_id, agent_id) -> Order:
        order = await self._get_order(session, order_id)
        agent = await self._get_agent(session, agent_id)

        active_count = (await session.execute(self._active_count_query(agent_id))).scalar_one()
        if active_count >= self.max_active_orders:
            logger.warning(f"Agent {agent_id} at capacity ({active_count}/{self.max_active_orders})")
            raise CapacityExceeded(
                f"Agent already has {active_count} active orders (limit {self.max_active_orders})",
                active_count=active_count,
            )
        if not agent.is_available:
            logger.warning(f"Offline agent {agent_id} tried to claim order {order_id}")
            raise Forbidden("Go online before claiming orders")
        if order.delivery_agent_id is not None:
            raise AlreadyClaimed(f"Order {order.order_number} has already been claimed")
        if order.status != OrderStatus.PENDING:
            raise InvalidTransition(
                f"Order {order.order_number} is {order.status.value} and cannot be claimed",
                current_status=order.status.value,
            )
        return order

    async def active_count(self, agent_id) -> int:
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            return (await session.execute(self._active_count_query(agent_id))).scalar_one()

    async def claim_order(self, order_id, agent_id) -> dict:
        order_id = parse_uuid(order_id, "order_id")
        agent_id = parse_uuid(agent_id, "agent_id")

        async with self.session_factory() as session:
            try:
                await self._check_claimable(session, order_id, agent_id)

                # Serialize one agent's claims so the active count below cannot go stale.
                await session.execute(
                    select(DeliveryAgent.id).where(DeliveryAgent.id == agent_id).with_for_update()
                )
                agent_available = exists().where(
                    DeliveryAgent.id == agent_id,
                    DeliveryAgent.is_available.is_(True),
                )
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .where(Order.delivery_agent_id.is_(None))
                    .where(Order.status == OrderStatus.PENDING)
                    .where(agent_available)
                    .where(self._active_count_query(agent_id).scalar_subquery() < self.max_active_orders)
                    .values(delivery_agent_id=agent_id, status=OrderStatus.ACCEPTED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    await session.rollback()
                    # Lost a race; report whatever changed, defaulting to the other claim.
                    await self._check_claimable(session, order_id, agent_id)
                    logger.warning(f"Agent {agent_id} lost the claim race for order {order_id}")
                    raise AlreadyClaimed("Order was claimed by another agent")

                await session.commit()
                order = await self._get_order(session, order_id)
                logger.info(f"Order {order.order_number} claimed by agent {agent_id}")
                return order.to_dict()
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Claim of order {order_id} by agent {agent_id} failed: {str(e)}", exc_info=True)
                raise

    async def toggle_availability(self, agent_id, available: bool) -> dict:
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(DeliveryAgent)
                    .where(DeliveryAgent.id == agent_id)
                    .values(is_available=bool(available), updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise NotFound(f"Delivery agent {agent_id} not found")
                await session.commit()
                logger.info(f"Agent {agent_id} is now {'online' if available else 'offline'}")
                return {"agent_id": str(agent_id), "is_available": bool(available)}
            except FulfillmentError:
                await session.rollback()
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Availability update failed for agent {agent_id}: {str(e)}", exc_info=True)
                raise

    async def get_agent_summary(self, agent_id) -> dict:
        agent_id = parse_uuid(agent_id, "agent_id")
        async with self.session_factory() as session:
            agent = await self._get_agent(session, agent_id)
            active_count = (await session.execute(self._active_count_query(agent_id))).scalar_one()
            return {
                "id": str(agent.id),
                "user_id": str(agent.user_id),
                "is_available": agent.is_available,
                "vehicle_type": agent.vehicle_type.value,
                "active_count": active_count,
                "max_active_orders": self.max_active_orders,
                "can_claim": agent.is_available and active_count < self.max_active_orders,
                "poll_interval_seconds": self.poll_interval_seconds,
            }
