from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Lark app credentials
    lark_app_id: str = Field("", alias="APPID", description="Lark app id")
    lark_app_secret: str = Field("", alias="SECRET", description="Lark app secret")
    lark_verification_token: Optional[str] = Field(
        default=None,
        alias="LARK_VERIFICATION_TOKEN",
        description="When set, inbound events must carry this verification token",
    )
    lark_base_url: str = Field(
        "https://open.larksuite.com",
        alias="LARK_BASE_URL",
        description="Lark open platform base URL, e.g. 'https://open.feishu.cn'",
    )
    bot_mention_token: str = Field(
        "@_user_1",
        alias="BOT_MENTION_TOKEN",
        description="Mention placeholder stripped from message text",
    )
    group_require_mention: bool = Field(
        False,
        alias="GROUP_REQUIRE_MENTION",
        description="Only answer group messages that mention the bot",
    )

    # Upstream AI backend
    ai_backend: str = Field(
        "openai",
        alias="AI_BACKEND",
        description="Upstream AI backend: 'openai' or 'flowise'",
    )
    openai_api_key: str = Field("", alias="KEY", description="OpenAI API key")
    openai_model: str = Field("gpt-3.5-turbo", alias="MODEL")
    openai_base_url: str = Field("https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    flowise_api_url: str = Field(
        "",
        alias="FLOWISE_API_URL",
        description="Full prediction URL, e.g. 'http://flowise:3000/api/v1/prediction/<flow-id>'",
    )
    flowise_api_key: Optional[str] = Field(default=None, alias="FLOWISE_API_KEY")
    flowise_session_mode: str = Field(
        "override_config",
        alias="FLOWISE_SESSION_MODE",
        description="Where to send the session id: 'override_config' or 'body'",
    )
    system_prompt: str = Field(
        "",
        alias="SYSTEM_PROMPT",
        description="Optional system message prepended to every prompt",
    )

    # Conversation window budget (characters of question + answer).
    max_context_size: int = Field(1024, alias="MAX_TOKEN", ge=0)

    # HTTP timeouts
    upstream_timeout: float = Field(50.0, alias="UPSTREAM_TIMEOUT")

    # Persistence
    store_backend: str = Field(
        "memory",
        alias="STORE_BACKEND",
        description="Conversation/event storage: 'memory', 'redis' or 'sql'",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL, e.g. 'redis://redis:6379/0'",
    )
    database_url: str = Field(
        "sqlite+pysqlite:///./relay.db",
        alias="DATABASE_URL",
        description="SQLAlchemy database URL",
    )
    event_ttl_seconds: Optional[int] = Field(
        default=None,
        alias="EVENT_TTL_SECONDS",
        description="Expiry for processed-event keys in redis; unset keeps them forever",
    )
    dedup_max_events: int = Field(
        0,
        alias="DEDUP_MAX_EVENTS",
        ge=0,
        description="Bound for the in-memory processed-event set; 0 means unbounded",
    )

    # Token guarding the context inspection endpoints.
    admin_token: str = Field(
        "timeline",
        alias="RELAY_ADMIN_TOKEN",
        description="Expected token after base64 decoding the Authorization header",
    )

    # Application log level for our larkrelay logger.
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: Optional[str] = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Asia/Shanghai'. Defaults to system local time.",
    )
    log_dir: str = Field("logs", alias="LOG_DIR")

    def missing_settings(self) -> List[str]:
        """
        Return env names of required settings that are empty for the
        configured backend.
        """
        missing: List[str] = []
        if not self.lark_app_id:
            missing.append("APPID")
        if not self.lark_app_secret:
            missing.append("SECRET")
        if self.ai_backend == "flowise":
            if not self.flowise_api_url:
                missing.append("FLOWISE_API_URL")
        elif not self.openai_api_key:
            missing.append("KEY")
        return missing


settings = Settings()  # Reads from environment if available
