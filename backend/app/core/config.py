import os
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

class Settings(BaseModel):
    DATABASE_URL: str
    CORS_ORIGINS: List[str]
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FILE_PATH: str = "/tmp/logs/boost-engine.log"
    REDIS_URL: Optional[str] = None

    # Boost queue
    BOOST_DURATION_HOURS: int = Field(default=24, gt=0)
    RECONCILER_INTERVAL_SECONDS: int = Field(default=60, gt=0)
    BOOST_CURRENCY: str = "usd"
    BOOST_PRICE: Decimal = Field(default=Decimal("29.99"), gt=0)
    BOOST_REFUND_TIERS: Optional[str] = None

    # Collaborators
    PAYMENT_GATEWAY: str = "stripe"
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_BASE: str = "https://api.stripe.com"
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    @property
    def boost_duration(self) -> timedelta:
        return timedelta(hours=self.BOOST_DURATION_HOURS)

    @classmethod
    def load_from_env(cls):
        database_url = os.getenv("DATABASE_URL")
        environment = os.getenv("ENVIRONMENT", "development")
        log_level = os.getenv("LOG_LEVEL", "INFO")
        log_file_path = os.getenv("LOG_FILE_PATH", "/tmp/logs/boost-engine.log")
        payment_gateway = os.getenv("PAYMENT_GATEWAY", "stripe").lower()
        stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")

        cors_origins_str = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        cors_origins = [origin.strip() for origin in cors_origins_str.split(",")]

        # Ensure localhost:3000 is always allowed for dev convenience
        if "http://localhost:3000" not in cors_origins:
            cors_origins.append("http://localhost:3000")

        # Validate required fields
        missing = []
        if not database_url:
            missing.append("DATABASE_URL")
        if payment_gateway == "stripe" and not stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY")

        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            DATABASE_URL=database_url,
            CORS_ORIGINS=cors_origins,
            ENVIRONMENT=environment,
            LOG_LEVEL=log_level,
            LOG_FILE_PATH=log_file_path,
            REDIS_URL=os.getenv("REDIS_URL") or None,
            BOOST_DURATION_HOURS=int(os.getenv("BOOST_DURATION_HOURS", "24")),
            RECONCILER_INTERVAL_SECONDS=int(os.getenv("RECONCILER_INTERVAL_SECONDS", "60")),
            BOOST_CURRENCY=os.getenv("BOOST_CURRENCY", "usd").lower(),
            BOOST_PRICE=Decimal(os.getenv("BOOST_PRICE", "29.99")),
            BOOST_REFUND_TIERS=os.getenv("BOOST_REFUND_TIERS") or None,
            PAYMENT_GATEWAY=payment_gateway,
            STRIPE_SECRET_KEY=stripe_secret_key,
            STRIPE_API_BASE=os.getenv("STRIPE_API_BASE", "https://api.stripe.com"),
            NOTIFICATION_WEBHOOK_URL=os.getenv("NOTIFICATION_WEBHOOK_URL") or None,
        )

# Load settings immediately. This ensures fail-fast behavior at startup/import time.
# Test environment MUST explicitly set TEST_MODE=true (or run under pytest)
_is_test_mode = os.getenv("TEST_MODE", "").lower() == "true" or os.getenv("PYTEST_CURRENT_TEST") is not None

try:
    settings = Settings.load_from_env()
except ValueError as e:
    if _is_test_mode:
        settings = Settings(
            DATABASE_URL=os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:"),
            CORS_ORIGINS=["http://localhost:3000"],
            ENVIRONMENT="test",
            PAYMENT_GATEWAY="mock",
        )
    else:
        # Production/Development: fail fast with clear error
        print(f"CRITICAL: Configuration Error: {e}")
        print("Please set the required environment variables: DATABASE_URL, STRIPE_SECRET_KEY")
        raise e
