"""Settings via pydantic-settings with SNASSIST_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that configure the Postgres container, so
a single .env file drives both the database and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SNASSIST_", env_file=".env")

    # DB connection: unprefixed aliases match the DB_* env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("snassist", validation_alias="DB_USER")
    db_password: str = Field("snassist_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("snassist", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    # Role without BYPASSRLS assumed in every transaction (see 002 migration);
    # None keeps the connecting role
    db_app_role: str | None = None
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # ServiceNow
    servicenow_timeout: float = 15.0  # seconds, per outbound request
    servicenow_token_ttl: int = 3600  # seconds a verified Basic token is reused
    max_servicenow_clients: int = 200  # cached per (user, credential) by the REST layer

    # LLM completion API (per-user keys live in chatgpt_settings)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    llm_timeout: float = 60.0

    # In-memory chat sessions kept by the REST layer
    max_chat_sessions: int = 100

    @model_validator(mode="after")
    def _validate_ranges(self) -> "Settings":
        if not 0.0 <= self.llm_temperature <= 2.0:
            raise ValueError(f"llm_temperature ({self.llm_temperature}) must be between 0 and 2")
        if self.servicenow_token_ttl <= 0:
            raise ValueError("servicenow_token_ttl must be positive")
        if self.servicenow_timeout <= 0:
            raise ValueError("servicenow_timeout must be positive")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
