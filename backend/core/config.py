import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None  # falls back to RAZORPAY_KEY_SECRET
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_TIMEOUT_SECONDS: float = 10.0
    BILLING_CURRENCY: str = "INR"

    # Entitlements
    FREE_STORAGE_GB: int = 15
    GRACE_PERIOD_DAYS: int = 3

    # Background jobs
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BATCH_LIMIT: int = 10
    JOB_POLL_SECONDS: int = 10
    JOB_LEASE_SECONDS: int = 300

    # Cron sweeps
    CRON_LOOP_SECONDS: int = 86400
    REMINDER_DAYS: str = "7,3,1"  # comma-separated

    # Notifications
    NOTIFY_PUSH_URL: Optional[str] = None  # optional push relay; inbox rows are always written

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # User auth (HS256 bearer tokens issued by the upstream auth gateway)
    AUTH_JWT_SECRET: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def reminder_days(self) -> List[int]:
        try:
            values = [int(x.strip()) for x in self.REMINDER_DAYS.split(",") if x.strip()]
        except ValueError:
            return [7, 3, 1]
        return sorted(set(values), reverse=True) or [7, 3, 1]

    def webhook_secret(self) -> Optional[str]:
        return self.RAZORPAY_WEBHOOK_SECRET or self.RAZORPAY_KEY_SECRET


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("subengine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "RAZORPAY_KEY_ID",
        "RAZORPAY_KEY_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not cfg.webhook_secret():
        log.warning("Webhook secret not configured; all webhook deliveries will be rejected")

    return True
