"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Helfy happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cdc/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("helfy.config")

_DEFAULT_ADMIN_PASSWORD = "admin123"


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
    # Database
    # ------------------------------------------------------------------

    # TiDB speaks the MySQL protocol: mysql+pymysql://root:@tidb:4000/helfy
    database_url: str = "sqlite:///./helfy.db"
    db_connect_attempts: int = 30
    db_connect_interval: float = 2.0

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_lifetime_hours: int = 24
    bcrypt_rounds: int = 10
    min_password_length: int = 6

    admin_bootstrap_enabled: bool = True
    admin_email: str = "admin@helfy.com"
    admin_username: str = "admin"
    admin_password: str = _DEFAULT_ADMIN_PASSWORD

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    host: str = "0.0.0.0"  # nosec B104 -- container deployment
    port: int = 3001
    cors_origins: list[str] = ["*"]

    # ------------------------------------------------------------------
    # CDC consumer
    # ------------------------------------------------------------------

    kafka_broker: str = "kafka:9092"
    kafka_topic: str = "tidb-cdc"
    kafka_group: str = "cdc-consumer-group"
    kafka_client_id: str = "helfy-cdc-consumer"
    kafka_connect_attempts: int = 60
    kafka_connect_interval: float = 2.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_auth_settings(self) -> "Settings":
        """Reject settings that would break hashing or token issuance.

        bcrypt accepts cost factors 4..31 only; anything else fails at the
        first gensalt() call, which is far too late to find out.
        """
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.token_lifetime_hours <= 0:
            raise ValueError("TOKEN_LIFETIME_HOURS must be positive.")
        if self.db_connect_attempts < 1 or self.kafka_connect_attempts < 1:
            raise ValueError("Connect attempts must be at least 1.")
        if self.admin_bootstrap_enabled and len(self.admin_password.encode("utf-8")) > 72:
            raise ValueError("ADMIN_PASSWORD must be at most 72 bytes.")
        if self.admin_bootstrap_enabled and self.admin_password == _DEFAULT_ADMIN_PASSWORD and not self.debug:
            logger.warning("Admin bootstrap is using the default demo password. Set ADMIN_PASSWORD.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
