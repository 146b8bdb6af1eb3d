from quart import Blueprint, request, jsonify
from campus_fulfillment.core.errors import FulfillmentError, NotFound
from campus_fulfillment.routes.helpers import (
    bearer_token, error_response, internal_error, json_body, missing_fields_response,
)
from campus_fulfillment.services.auth import AuthService
from campus_fulfillment.services.payout_reconciler import PayoutReconciler
from campus_fulfillment.services.wallet_ledger import WalletLedger
import logging

logger = logging.getLogger(__name__)

def init_wallet_routes(auth_service: AuthService, wallet_ledger: WalletLedger, payout_reconciler: PayoutReconciler):
    wallet_bp = Blueprint('wallet', __name__, url_prefix='/api/v1')

    @wallet_bp.route('/wallet', methods=['GET'])
    async def get_wallet():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            wallet = await wallet_ledger.get_wallet(agent.id)
            try:
                profile = await payout_reconciler.get_payout_profile(agent.id)
            except NotFound:
                profile = None
            wallet["payout_profile"] = profile
            wallet["bank_verified"] = bool(profile and profile["verified"])
            return jsonify(wallet), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Wallet endpoint error", e)

    @wallet_bp.route('/wallet/entries', methods=['GET'])
    async def get_wallet_entries():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            entries = await wallet_ledger.list_entries(agent.id)
            return jsonify({"entries": entries}), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Wallet entries endpoint error", e)

    @wallet_bp.route('/withdrawals', methods=['GET'])
    async def get_withdrawals():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            withdrawals = await payout_reconciler.list_withdrawals(agent.id, status=request.args.get('status'))
            return jsonify({"withdrawals": withdrawals, "total_withdrawals": len(withdrawals)}), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Withdrawals endpoint error", e)

    @wallet_bp.route('/withdrawals', methods=['POST'])
    async def request_withdrawal():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            data = await json_body('pool', 'amount')
            if data is None:
                return missing_fields_response('pool', 'amount')

            result = await payout_reconciler.request_withdrawal(agent.id, data['pool'], data['amount'])
            return jsonify(result), 201
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Withdrawal endpoint error", e)

    @wallet_bp.route('/payout-profile', methods=['PUT'])
    async def set_payout_profile():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            data = await json_body('account_number', 'bank_code')
            if data is None:
                return missing_fields_response('account_number', 'bank_code')

            result = await payout_reconciler.set_payout_profile(agent.id, data['account_number'], data['bank_code'])
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Payout profile endpoint error", e)

    @wallet_bp.route('/payout-profile/register', methods=['POST'])
    async def register_payee():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            result = await payout_reconciler.register_payee(agent.id)
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Payee registration endpoint error", e)

    return wallet_bp
