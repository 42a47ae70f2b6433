"""Settings via pydantic-settings with CONCIERGE_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONCIERGE_", env_file=".env")

    # DB connection -- unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("concierge", validation_alias="DB_USER")
    db_password: str = Field("concierge_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("concierge", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; overrides the fields above when set
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    app_name: str = "Concierge Command Center"

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Pricing, USD per million tokens
    input_cost_per_mtok: float = 3.0
    output_cost_per_mtok: float = 15.0
    currency: str = "USD"

    # Turn orchestration
    max_tool_rounds: int = 5  # Max tool use rounds per turn
    turn_timeout: float = 120.0  # seconds, covers the whole model/tool cycle
    history_max_messages: int = 50
    max_prompt_length: int = 4000
    daily_cost_limit: float = 10.0  # USD per user per day, 0 disables

    # Twilio (SMS + voice); tools report "not configured" when unset
    twilio_account_sid: str = Field("", validation_alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field("", validation_alias="TWILIO_AUTH_TOKEN")
    twilio_from_number: str = Field("", validation_alias="TWILIO_PHONE_NUMBER")
    twilio_base_url: str = "https://api.twilio.com"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        if self.turn_timeout <= 0:
            raise ValueError("turn_timeout must be positive")
        if self.history_max_messages < 2:
            raise ValueError(
                f"history_max_messages ({self.history_max_messages}) must hold "
                "at least one user/assistant pair"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)
