"""
core/config.py -- Helpdesk settings, read from the environment by pydantic-settings.

Every environment lookup goes through get_settings(); nothing else in the tree
touches os.environ for configuration. Field names map to upper-case variable
names (database_url -> DATABASE_URL) and a local .env file is honoured. List
settings are JSON arrays, e.g. DEFAULT_BRANCHES='["HQ", "NRT"]'.

Signing key policy:
  - DEBUG=true with no SECRET_KEY: a random key is generated and a warning is
    logged. Issued tokens die with the process.
  - DEBUG unset/false with no SECRET_KEY: startup fails.
  - Any key under 32 characters is refused.

core/ imports nothing from api/, auth/, desk/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("helpdesk.config")


class Settings(BaseSettings):
    """Runtime configuration. Defaults let tests build Settings() with no .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""

    # Storage
    database_url: str = "sqlite:///helpdesk.db"
    auth_database_url: str = "sqlite:///helpdesk_auth.db"
    uploads_dir: str = "uploads"

    # Branches: fallback list served while the branches table is empty
    default_branches: list[str] = ["HQ"]
    branch_cache_seconds: int = 60

    # Sessions
    secure_cookies: bool = False
    token_expire_seconds: int = 8 * 3600

    # HTTP surface
    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY must be set unless DEBUG=true. "
                    "Add it to the environment or to .env."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated a throwaway key for this process")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings. Tests call get_settings.cache_clear() to reload."""
    return Settings()
