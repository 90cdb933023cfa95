"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgraph happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. graph_db_url -> GRAPH_DB_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional API_KEY logic: dev mode
      generates a key with a warning.

Security notes:
  API_KEY shorter than 32 chars is rejected outright. It is the only thing
  standing between the network and the management API, which will not start
  without one.

  EXISTS_FAIL_OPEN defaults to False. When True, a transport error during an
  existence check is reported as "exists" instead of raising. Only for
  deployments whose callers depend on that answer.

Layer rule: core/ is the kernel. This module may not import from api/,
graph/ or identity/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgraph.config")

_DEFAULT_GRAPH_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'graph' / 'authgraph.db'}"


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
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Graph store
    # ------------------------------------------------------------------

    graph_db_url: str = _DEFAULT_GRAPH_DB_URL
    # Pool checkout timeout, and the SQLite busy timeout when the URL is SQLite.
    graph_timeout_seconds: float = Field(default=5.0, gt=0)
    # "union": associating an already-linked record is a no-op.
    # "append": every associate call adds the edge, duplicates included.
    edge_policy: Literal["union", "append"] = "union"
    exists_fail_open: bool = False

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Management API
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". DEBUG=true swaps in a
    # generated key; otherwise the API refuses to start while it is empty.
    api_key: str = ""
    login_rate_limit: str = "10/minute"
    # JSON list in the environment, e.g. ALLOWED_HOSTS='["auth.internal"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_api_key(self) -> "Settings":
        """Enforce the API_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: leave it empty; the API lifespan refuses to serve
            without one, while the CLI (which never needs it) keeps working.
        Any configured key shorter than 32 characters is rejected.
        """
        if not self.api_key and self.debug:
            self.api_key = secrets.token_hex(32)
            logger.warning("Using auto-generated API_KEY. It changes on every restart.")
        if self.api_key and len(self.api_key) < 32:
            raise ValueError("API_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
