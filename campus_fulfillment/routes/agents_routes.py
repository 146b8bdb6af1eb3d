from quart import Blueprint, jsonify
from campus_fulfillment.core.errors import FulfillmentError
from campus_fulfillment.routes.helpers import (
    bearer_token, error_response, internal_error, json_body, missing_fields_response,
)
from campus_fulfillment.services.assignment_service import AssignmentService
from campus_fulfillment.services.auth import AuthService
import logging

logger = logging.getLogger(__name__)

def init_agent_routes(auth_service: AuthService, assignment_service: AssignmentService):
    agent_bp = Blueprint('agents', __name__, url_prefix='/api/v1')

    @agent_bp.route('/agents/me', methods=['GET'])
    async def get_current_agent():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            result = await assignment_service.get_agent_summary(agent.id)
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Get agent endpoint error", e)

    @agent_bp.route('/agents/me/availability', methods=['POST'])
    async def set_availability():
        try:
            agent = await auth_service.authenticate_agent(bearer_token())
            data = await json_body('available')
            if data is None or not isinstance(data['available'], bool):
                return missing_fields_response('available')

            result = await assignment_service.toggle_availability(agent.id, data['available'])
            return jsonify(result), 200
        except FulfillmentError as e:
            return error_response(e)
        except Exception as e:
            return internal_error("Availability endpoint error", e)

    return agent_bp
