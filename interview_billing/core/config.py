import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Clerk Auth
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_WEBHOOK_SECRET: Optional[str] = None
    CLERK_API_BASE: str = "https://api.clerk.com/v1"

    # Clerk JWT verification
    CLERK_ISSUER: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None
    JWKS_CACHE_TTL_SECONDS: int = 86400

    # Dev/test only: trust X-User-Id instead of a bearer token
    ALLOW_DEV_USER_HEADER: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Evaluation service
    EVALUATION_API_URL: Optional[str] = None
    EVALUATION_TIMEOUT_SECONDS: float = 120.0
    DETAILED_ANALYSIS_TIMEOUT_SECONDS: float = 180.0
    ANALYSIS_CACHE_TTL_SECONDS: int = 1800
    ANALYSIS_CACHE_MAX_ENTRIES: int = 256

    # Billing periods / sessions
    DEFAULT_PERIOD_DAYS: int = 30
    SESSION_STALE_AFTER_SECONDS: int = 300

    # Webhooks
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # App URLs
    FRONTEND_ORIGIN: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("interview_billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CLERK_SECRET_KEY",
        "CLERK_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
