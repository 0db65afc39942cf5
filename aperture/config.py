"""Settings via pydantic-settings with APERTURE_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, TELEGRAM_BOT_TOKEN, ...) that the rest of
the deployment uses, so a single .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APERTURE_", env_file=".env")

    # Storage
    data_dir: str = "./data"
    log_level: str = "info"

    # Status API
    host: str = "0.0.0.0"
    port: int = 8000

    # Session context
    context_window: int = 50  # Max stored messages fed to the engine per turn
    compaction_threshold: int = 30
    compaction_keep_recent: int = 10

    # Turn execution
    turn_timeout: float = 300.0  # seconds; aborts a stuck engine run

    # Proactive
    events_poll_interval: float = 30.0  # seconds
    default_user: str = "default"
    reconcile_cron: str | None = None  # disabled unless set
    reconcile_channel: str = ""  # "telegram:<chat id>" target for alerts

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    background_model: str = Field(
        default="claude-sonnet-4-5-20250514",
        validation_alias="APERTURE_BACKGROUND_MODEL",
    )
    max_tokens: int = 4096
    max_tool_rounds: int = 10  # Max tool use iterations per turn
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Channels
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_allowed_users: str = ""  # Comma-separated Telegram user IDs

    @model_validator(mode="after")
    def _validate_windows(self) -> "Settings":
        if self.context_window <= 0:
            raise ValueError("context_window must be > 0")
        if self.turn_timeout <= 0:
            raise ValueError("turn_timeout must be > 0")
        if self.compaction_keep_recent >= self.compaction_threshold:
            raise ValueError(
                f"compaction_keep_recent ({self.compaction_keep_recent}) must be < "
                f"compaction_threshold ({self.compaction_threshold})"
            )
        return self

    @property
    def allowed_telegram_users(self) -> set[str]:
        return {
            uid.strip() for uid in self.telegram_allowed_users.split(",") if uid.strip()
        }
