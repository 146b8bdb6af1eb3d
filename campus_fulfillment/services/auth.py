import hmac
import logging
import uuid
from sqlalchemy import select
from campus_fulfillment.core.errors import Forbidden, NotFound
from campus_fulfillment.core.jwt import JWTConfig
from campus_fulfillment.models.agent import DeliveryAgent

logger = logging.getLogger(__name__)

class AuthService:
    """Maps bearer tokens from the auth service onto delivery agents."""

    def __init__(self, session_factory, jwt_config: JWTConfig, internal_api_key: str = None):
        self.session_factory = session_factory
        self.jwt_config = jwt_config
        self.internal_api_key = internal_api_key

    def user_id_from_token(self, token: str) -> uuid.UUID:
        payload = self.jwt_config.decode_access_token(token) if token else None
        if not payload or not payload.get("sub"):
            logger.warning("Invalid token: missing or undecodable subject")
            raise Forbidden("Invalid token")
        try:
            return uuid.UUID(str(payload["sub"]))
        except ValueError:
            logger.warning(f"Invalid token subject: {payload['sub']}")
            raise Forbidden("Invalid token")

    async def authenticate_agent(self, token: str) -> DeliveryAgent:
        user_id = self.user_id_from_token(token)
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryAgent).where(DeliveryAgent.user_id == user_id)
            )
            agent = result.scalars().first()
        if not agent:
            logger.warning(f"Token user {user_id} is not a delivery agent")
            raise NotFound("Delivery agent profile not found")
        return agent

    def check_internal_key(self, provided: str) -> None:
        if not self.internal_api_key or not provided:
            raise Forbidden("Missing internal API key")
        if not hmac.compare_digest(provided, self.internal_api_key):
            logger.warning("Rejected internal call with wrong API key")
            raise Forbidden("Invalid internal API key")
