import logging
from quart import request, jsonify
from campus_fulfillment.core.errors import Forbidden, FulfillmentError

logger = logging.getLogger(__name__)

def bearer_token() -> str:
    auth_header = request.headers.get('Authorization')
    if not auth_header or not auth_header.startswith('Bearer '):
        logger.warning("Missing or invalid Authorization header")
        raise Forbidden("Missing or invalid Authorization header")
    return auth_header.split(' ', 1)[1]

def error_response(error: FulfillmentError):
    if error.status >= 500:
        logger.error(f"{request.method} {request.path} failed: {error.code}: {error.message}")
    else:
        logger.info(f"{request.method} {request.path} rejected: {error.code}: {error.message}")
    return jsonify(error.to_dict()), error.status

def internal_error(context: str, exc: Exception):
    logger.error(f"{context}: {str(exc)}", exc_info=True)
    return jsonify({"error": "Internal server error", "status": 500}), 500

async def json_body(*required) -> dict:
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        logger.warning(f"Invalid JSON body for {request.method} {request.path}")
        return None
    if not all(key in data for key in required):
        logger.warning(f"Missing required fields for {request.method} {request.path}: {required}")
        return None
    return data

def missing_fields_response(*required):
    return jsonify({
        "error": f"Missing required fields: {', '.join(required)}",
        "code": "ValidationError",
        "status": 400,
    }), 400
