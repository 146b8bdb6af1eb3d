from quart import Blueprint, request, jsonify
from campus_fulfillment.core.errors import FulfillmentError
from campus_fulfillment.routes.helpers import (
    bearer_token, error_response, internal_error, json_body, missing_fields_response,
)
from campus_fulfillment.services.assignment_service import AssignmentService
from campus_fulfillment.services.auth import AuthService
from campus_fulfillment.services.order_service import OrderService
import logging

logger = logging.getLogger(__name__)

def init_order_routes(auth_service: AuthService, order_service: OrderService, assignment_service: AssignmentService):
    order_bp = Blueprint('orders', __name__, url_prefix='/api/v1')

    @order_bp.route('/orders/claimable', methods=['GET'])
    async def get_claimable_orders():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            if not agent.is_available:
                return jsonify({"message": "Go online to see available orders", "orders": []}), 200
            orders = await order_service.list_claimable_orders()
            return jsonify({"orders": orders, "total_orders": len(orders)}), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Claimable orders endpoint error", e)

    @order_bp.route('/orders/mine', methods=['GET'])
    async def get_my_orders():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            active_only = request.args.get('active', 'false').lower() == 'true'
            orders = await order_service.list_agent_orders(agent.id, active_only=active_only)
            return jsonify({"orders": orders, "total_orders": len(orders)}), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("My orders endpoint error", e)

    @order_bp.route('/orders/<order_id>/claim', methods=['POST'])
    async def claim_order(order_id):
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            result = await assignment_service.claim_order(order_id, agent.id)
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error(f"Claim endpoint error for {order_id}", e)

    @order_bp.route('/orders/<order_id>/status', methods=['POST'])
    async def advance_order(order_id):
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            data = await json_body('status')
            if data is None:
                return missing_fields_response('status')

            result = await order_service.advance(order_id, data['status'], agent.id)
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error(f"Order status endpoint error for {order_id}", e)

    return order_bp
