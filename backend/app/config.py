from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "fairdraw-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "Fairdraw")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/fairdraw_dev")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    events_channel: str = os.getenv("EVENTS_CHANNEL", "fairdraw:events")

    # Auth (admin gateway)
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    access_ttl_min: int = int(os.getenv("ACCESS_TTL_MIN", "15"))

    # Stripe configuration
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_signature_tolerance_seconds: int = int(os.getenv("STRIPE_SIGNATURE_TOLERANCE_SECONDS", "300"))
    processor_timeout_seconds: float = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "10"))
    currency: str = os.getenv("CURRENCY", "usd")

    # Money movement policy
    platform_fee_bps: int = int(os.getenv("PLATFORM_FEE_BPS", "1000"))  # 10% kept by platform
    stuck_payout_minutes: int = int(os.getenv("STUCK_PAYOUT_MINUTES", "60"))

    # Webhook inbox retry policy
    webhook_retry_base_seconds: float = float(os.getenv("WEBHOOK_RETRY_BASE_SECONDS", "1"))
    webhook_retry_max_seconds: float = float(os.getenv("WEBHOOK_RETRY_MAX_SECONDS", "300"))
    webhook_max_attempts: int = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
    webhook_retry_batch: int = int(os.getenv("WEBHOOK_RETRY_BATCH", "50"))
    # processing claims older than processor timeout + margin are reclaimed
    webhook_claim_margin_seconds: float = float(os.getenv("WEBHOOK_CLAIM_MARGIN_SECONDS", "60"))

settings = Settings()
