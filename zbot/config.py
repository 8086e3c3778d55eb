"""Settings via pydantic-settings with ZBOT_ env prefix.

Upstream keys use validation_alias so the same GEMINI_API_KEY variable the
rest of the deployment uses drives the Python app, either comma separated or
via GEMINI_API_KEYS.
"""

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ZBOT_", env_file=".env", extra="ignore")

    # Upstream credentials -- unprefixed aliases
    gemini_api_keys: str = Field(
        "",
        validation_alias=AliasChoices("GEMINI_API_KEY", "GEMINI_API_KEYS", "gemini_api_keys"),
    )

    # LLM
    model: str = "gemini-flash-latest"
    # Fallback chain in priority order, used when every key is limited on a
    # model. Empty means `model` alone. Env: ZBOT_MODELS='["a", "b"]'
    models: list[str] = Field(default_factory=list)
    api_base_url: str = "https://generativelanguage.googleapis.com"
    temperature: float = 1.0
    top_p: float = 0.95
    max_output_tokens: int = 65536
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    media_fetch_timeout: int = 30  # seconds

    # Retry
    max_retries: int = 3
    retry_base_delay_ms: int = 1000

    # Credential quarantine
    rate_limit_cooldown_s: float = 120.0
    rate_limit_daily_s: float = 86400.0
    permission_denied_cooldown_s: float = 7 * 24 * 3600.0

    # Engine
    max_tool_depth: int = Field(10, ge=1, le=50)
    tool_timeout_s: float = 60.0
    message_window: int = 20
    max_history_messages: int = Field(40, ge=2)
    max_conversations: int = 200

    # Dispatcher pacing
    reaction_delay_ms: int = 300
    message_delay_min_ms: int = 500
    message_delay_max_ms: int = 1000

    # Telegram channel
    telegram_bot_token: str = Field(
        "", validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "telegram_bot_token")
    )
    allowed_users: str = ""  # comma-separated user IDs, empty = allow all

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_delays(self) -> "Settings":
        if self.message_delay_min_ms > self.message_delay_max_ms:
            raise ValueError(
                f"message_delay_min_ms ({self.message_delay_min_ms}) must be <= "
                f"message_delay_max_ms ({self.message_delay_max_ms})"
            )
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        return self

    @property
    def api_keys(self) -> list[str]:
        """Split, trim and de-duplicate the configured keys, keeping order."""
        keys: list[str] = []
        for raw in self.gemini_api_keys.split(","):
            key = raw.strip()
            if key and not key.startswith("your_") and key not in keys:
                keys.append(key)
        return keys

    @property
    def model_chain(self) -> list[str]:
        """Configured models without the optional "models/" prefix or repeats."""
        chain: list[str] = []
        for raw in self.models or [self.model]:
            name = raw.strip().removeprefix("models/")
            if name and name not in chain:
                chain.append(name)
        return chain or [self.model]

    @property
    def allowed_user_ids(self) -> set[int] | None:
        if not self.allowed_users.strip():
            return None
        return {int(uid.strip()) for uid in self.allowed_users.split(",") if uid.strip()}
