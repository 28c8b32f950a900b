import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Quota enforcement
    # Allow the request when the organization cannot be resolved (missing id,
    # unknown organization, repository failure) instead of denying it.
    QUOTA_FAIL_OPEN: bool = True

    # Daily cycle advance
    ADVANCE_CONFLICT_MAX_RETRIES: int = 3
    ADVANCE_BATCH_LIMIT: int = 1000

    # Markets
    DEFAULT_MARKET: str = "DEFAULT"

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
    log = logger or logging.getLogger("quotacycle")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if not getattr(cfg, "DATABASE_URL", None) and not getattr(cfg, "TEST_DATABASE_URL", None):
        problems.append("Missing required configuration: DATABASE_URL")

    retries = getattr(cfg, "ADVANCE_CONFLICT_MAX_RETRIES", 0)
    if retries is None or int(retries) < 1:
        problems.append("ADVANCE_CONFLICT_MAX_RETRIES must be >= 1")

    batch_limit = getattr(cfg, "ADVANCE_BATCH_LIMIT", 0)
    if batch_limit is None or int(batch_limit) < 1:
        problems.append("ADVANCE_BATCH_LIMIT must be >= 1")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
