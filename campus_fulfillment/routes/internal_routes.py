from quart import Blueprint, request, jsonify
from campus_fulfillment.core.errors import FulfillmentError
from campus_fulfillment.core.validation import parse_uuid
from campus_fulfillment.routes.helpers import (
    error_response, internal_error, json_body, missing_fields_response,
)
from campus_fulfillment.services.auth import AuthService
from campus_fulfillment.services.order_service import OrderService
from campus_fulfillment.services.wallet_ledger import WalletLedger
import logging

logger = logging.getLogger(__name__)

ORDER_FIELDS = ('seller_id', 'seller_type', 'customer_id', 'delivery_address', 'subtotal', 'delivery_fee')

def init_internal_routes(auth_service: AuthService, order_service: OrderService, wallet_ledger: WalletLedger):
    """Endpoints for trusted platform callers: checkout and agent funding."""
    internal_bp = Blueprint('internal', __name__, url_prefix='/api/v1/internal')

    @internal_bp.before_request
    async def require_internal_key():
        try:
            auth_service.check_internal_key(request.headers.get('X-Internal-Key'))
        except FulfillmentError as e:
            return error_response(e)

    @internal_bp.route('/orders', methods=['POST'])
    async def create_order():
        try:
            data = await json_body(*ORDER_FIELDS)
            if data is None:
                return missing_fields_response(*ORDER_FIELDS)

            result = await order_service.create_order(
                seller_id=data['seller_id'],
                seller_type=data['seller_type'],
                customer_id=data['customer_id'],
                delivery_address=data['delivery_address'],
                subtotal=data['subtotal'],
                delivery_fee=data['delivery_fee'],
                total=data.get('total'),
                delivery_notes=data.get('delivery_notes'),
            )
            return jsonify(result), 201
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Create order endpoint error", e)

    @internal_bp.route('/orders/<order_id>/cancel', methods=['POST'])
    async def cancel_order(order_id):
        try:
            result = await order_service.cancel_order(order_id)
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error(f"Cancel order endpoint error for {order_id}", e)

    @internal_bp.route('/agents/<agent_id>/wallet/credit', methods=['POST'])
    async def credit_wallet(agent_id):
        try:
            data = await json_body('pool', 'amount')
            if data is None:
                return missing_fields_response('pool', 'amount')

            result = await wallet_ledger.credit(
                parse_uuid(agent_id, "agent_id"), data['pool'], data['amount'], reference=data.get('reference'),
            )
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error(f"Wallet credit endpoint error for {agent_id}", e)

    return internal_bp
