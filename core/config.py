"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for RiskRules happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved from the environment.

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("riskrules.config")

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///riskrules.db"

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Vulnerability lifecycle policy
    # ------------------------------------------------------------------

    # When true, a triggered rule does not create a second vulnerability for a
    # property that already has an open or in_review one for the same rule.
    dedupe_open_vulnerabilities: bool = True
    # When true, backward status moves (e.g. resolved -> open) are rejected.
    # When false they are allowed and reported as regressions.
    enforce_status_transitions: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    api_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        if not self.database_url.strip():
            raise ValueError("DATABASE_URL must not be empty.")
        level = self.log_level.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}")
        self.log_level = level
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            logger.warning("Using an in-memory database. Rules and vulnerabilities will not persist.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
