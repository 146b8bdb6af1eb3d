from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from campus_fulfillment.config.settings import Config

class JWTConfig:
    """Validates access tokens minted by the auth service.

    The auth service owns sessions; this side only needs the shared secret
    to read the ``sub`` claim. ``create_access_token`` exists for local
    tooling and tests.
    """

    def __init__(self, config: Config):
        self.secret_key = config.SECRET_KEY
        self.algorithm = config.JWT_ALGORITHM
        self.expiration_time = config.JWT_EXPIRATION_TIME

    def create_access_token(self, data: dict) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + timedelta(seconds=self.expiration_time)
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def decode_access_token(self, token: str):
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
