import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = "sqlite:///./dealclub.db"
    TEST_DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False

    # Quota periods are calendar months in this zone (IANA name)
    TIMEZONE: str = "UTC"

    # Access gate
    UPGRADE_SUGGESTION_LIMIT: int = 3
    APPROACHING_LIMIT_RATIO: float = 0.8

    # Deals
    DEALS_REQUIRE_APPROVAL: bool = True
    DEFAULT_REQUIRED_PRIORITY: int = 1

    # Redemptions
    DEFAULT_REJECTION_REASON: str = "No reason provided"

    # Notifications (fire-and-forget)
    NOTIFICATIONS_ENABLED: bool = True

    # HTTP
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("dealclub")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "TIMEZONE",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]

    problems = []
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    tz_name = getattr(cfg, "TIMEZONE", None)
    if tz_name:
        try:
            from zoneinfo import ZoneInfo
            ZoneInfo(tz_name)
        except Exception:
            problems.append(f"Unknown TIMEZONE: {tz_name}")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
