import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Persistence
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Agent registry (JSON file, loaded once at startup)
    AGENTS_FILE: str = "agents.json"

    # Scheduling
    HOURLY_SWEEP_SECONDS: int = 3600
    END_OF_DAY_UTC_HOUR: int = 23
    STRATEGY_TIMEOUT_SECONDS: float = 120.0
    CYCLE_TIMEOUT_SECONDS: float = 900.0
    PROTECTION_HOURS: int = 24
    SUPERVISOR_RESTART_SECONDS: float = 30.0

    # Generation pipeline
    GENERATION_URL: Optional[str] = None
    GENERATION_API_KEY: Optional[str] = None
    PLACEHOLDER_ENABLED: bool = True

    # Notifications
    EMERGENCY_WEBHOOK_URL: Optional[str] = None
    WEBHOOK_SECRET: Optional[str] = None
    NOTIFY_MAX_ATTEMPTS: int = 3
    NOTIFY_BACKOFF_SECONDS: str = "1,5,30"  # comma-separated
    NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # Audit logging
    AUDIT_ENABLED: bool = True

    model_config = ConfigDict(
        env_prefix="DAILYDROP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def notify_backoff(self) -> List[float]:
        try:
            values = [float(x.strip()) for x in self.NOTIFY_BACKOFF_SECONDS.split(",") if x.strip()]
            return values or [1.0, 5.0, 30.0]
        except ValueError:
            return [1.0, 5.0, 30.0]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate configuration needed outside development.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("dailydrop")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if (cfg.ENV or "").lower() == "production":
        for key in ("DATABASE_URL", "GENERATION_URL", "ADMIN_KEY", "WEBHOOK_SECRET"):
            if not getattr(cfg, key, None):
                problems.append(f"missing {key}")
    if not 0 <= cfg.END_OF_DAY_UTC_HOUR <= 23:
        problems.append("END_OF_DAY_UTC_HOUR must be within 0..23")
    if cfg.PROTECTION_HOURS <= 0:
        problems.append("PROTECTION_HOURS must be positive")
    if cfg.STRATEGY_TIMEOUT_SECONDS <= 0 or cfg.CYCLE_TIMEOUT_SECONDS <= 0:
        problems.append("timeouts must be positive")

    if problems:
        message = f"Invalid configuration: {', '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
