from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="IMOMATE_ENV")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # AWS / data
    aws_region: str = Field(default="eu-west-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    # Point at DynamoDB Local (e.g. http://localhost:8000) for development.
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Pagination cursors are encrypted with a key derived from this secret.
    cursor_token_key: str | None = Field(default=None, validation_alias="CURSOR_TOKEN_KEY")

    # Listing / search
    default_page_size: int = Field(default=20, validation_alias="DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(default=200, validation_alias="MAX_PAGE_SIZE")
    search_scan_limit: int = Field(default=100, validation_alias="SEARCH_SCAN_LIMIT")
    search_max_results: int = Field(default=10, validation_alias="SEARCH_MAX_RESULTS")

    # Subscriptions (polling)
    subscription_poll_seconds: float = Field(default=5.0, validation_alias="SUBSCRIPTION_POLL_SECONDS")

    # Pipeline attention rules
    attention_inactivity_days: int = Field(default=7, validation_alias="ATTENTION_INACTIVITY_DAYS")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging may run against DynamoDB Local with partial config,
        but production must be fully configured.
        """
        if not self.is_production:
            return

        missing: list[str] = []
        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")
        # Cursor encryption must never fall back to the development key in prod.
        if not self.cursor_token_key:
            missing.append("CURSOR_TOKEN_KEY")

        if missing:
            raise RuntimeError(
                "Missing required production settings: " + ", ".join(missing)
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Module-level singleton.
settings = get_settings()
