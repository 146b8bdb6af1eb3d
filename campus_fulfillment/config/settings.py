import os
from dotenv import load_dotenv
from typing import Optional

class Config:
    def __init__(self):
        load_dotenv()

        # App Environment
        self.APP_ENV = os.getenv("APP_ENV", "production")
        self.DEBUG = os.getenv("DEBUG", "False").lower() == "true"
        self.PORT = int(os.getenv("PORT", 5000))
        self.HOST = os.getenv("HOST", "127.0.0.1")

        # Token validation (tokens are issued by the auth service)
        self.SECRET_KEY = os.getenv("SECRET_KEY")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRATION_TIME = int(os.getenv("JWT_EXPIRATION_TIME", 3600))

        # Internal callers (checkout, funding jobs)
        self.INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")

        # Database Config
        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
        self.DB_HOST = os.getenv("DB_HOST")
        self.DB_PORT = os.getenv("DB_PORT")
        self.DB_NAME = os.getenv("DB_NAME")
        self.DB_USER = os.getenv("DB_USER")
        self.DB_PASSWORD = os.getenv("DB_PASSWORD")

        # Payout gateway
        self.PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
        self.PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
        self.GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 30))

        # Fulfillment rules
        self.MAX_ACTIVE_ORDERS = int(os.getenv("MAX_ACTIVE_ORDERS", 2))
        self.POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", 15))
        self.RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", 300))
        self.STALE_WITHDRAWAL_SECONDS = int(os.getenv("STALE_WITHDRAWAL_SECONDS", 600))

        # Rate Limiting
        self.RATE_LIMIT = os.getenv("RATE_LIMIT", "100 per minute")

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE = os.getenv("LOG_FILE", "logs/fulfillment.log")

        # CORS
        self.ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")

        # Validate configuration
        self._validate()

    def _validate(self):
        required_fields = ["SECRET_KEY", "PAYSTACK_SECRET_KEY", "INTERNAL_API_KEY"]
        if not self.DATABASE_URL:
            required_fields += ["DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"]

        for field in required_fields:
            if not getattr(self, field):
                raise ValueError(f"Missing required configuration: {field}")

        if self.MAX_ACTIVE_ORDERS < 1:
            raise ValueError("MAX_ACTIVE_ORDERS must be at least 1")
        if self.GATEWAY_TIMEOUT_SECONDS <= 0:
            raise ValueError("GATEWAY_TIMEOUT_SECONDS must be positive")
