"""Global configuration using pydantic settings management.

Values are loaded from environment variables (or an .env file) and exposed
through the cached `get_settings()` accessor.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_INSTRUCTIONS = (
    "You are an experienced Linux/Unix server administrator. You help with VPS setup, "
    "DNS, Docker, Nginx, firewalls, SSL certificates, monitoring, security and automation. "
    "Answer clearly and include example commands. Warn about dangerous operations."
)


class Settings(BaseSettings):
    """Application configuration loaded from env or defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Module identification
    module_id: str = Field(default="chat-gateway", alias="MODULE_ID")
    module_name: str = Field(default="Chat Gateway", alias="MODULE_NAME")
    version: str = Field(default="1.0.0", alias="MODULE_VERSION")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3066, alias="PORT")
    environment: str = Field(default="development", alias="APP_ENV")

    # Billing service
    billing_api_url: str = Field(default="http://localhost:8000", alias="BILLING_API_URL")
    billing_api_key: str = Field(default="", alias="MODULE_API_KEY")
    billing_timeout_seconds: float = Field(default=30.0, alias="BILLING_TIMEOUT_SECONDS")
    billing_retry_base_delay: float = Field(default=0.5, alias="BILLING_RETRY_BASE_DELAY")

    # Language-model provider
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    openai_model: str = Field(default="gpt-4o", alias="OPENAI_MODEL")
    openai_prompt_id: str = Field(default="", alias="OPENAI_PROMPT_ID")
    system_instructions: str = Field(default=_DEFAULT_INSTRUCTIONS, alias="SYSTEM_INSTRUCTIONS")
    upstream_timeout_seconds: float = Field(default=900.0, alias="UPSTREAM_TIMEOUT_SECONDS")
    upstream_max_retries: int = Field(default=3, alias="UPSTREAM_MAX_RETRIES")
    upstream_retry_base_delay: float = Field(default=2.0, alias="UPSTREAM_RETRY_BASE_DELAY")

    # Admin notifications
    admin_bot_token: str = Field(default="", alias="ADMIN_BOT_TOKEN")
    admin_chat_id: str = Field(default="", alias="ADMIN_CHAT_ID")

    # Conversation storage
    data_path: str = Field(default="./data", alias="DATA_PATH")
    conversation_ttl_days: int = Field(default=7, alias="CONVERSATION_TTL_DAYS")
    conversation_list_days: int = Field(default=7, alias="CONVERSATION_LIST_DAYS")
    max_title_length: int = Field(default=80, alias="MAX_TITLE_LENGTH")
    max_images_per_message: int = Field(default=5, alias="MAX_IMAGES_PER_MESSAGE")
    assistant_name: str = Field(default="Assistant", alias="ASSISTANT_NAME")
    retention_enabled: bool = Field(default=True, alias="RETENTION_ENABLED")
    retention_sweep_hour: int = Field(default=3, alias="RETENTION_SWEEP_HOUR")

    # CORS - accept comma-separated string
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert comma-separated CORS origins to list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def validate_config(settings: Settings) -> List[str]:
    """Return a list of configuration problems (empty when valid)."""
    errors: List[str] = []
    if not settings.openai_api_key:
        errors.append("OPENAI_API_KEY is required")
    if settings.is_production and not settings.billing_api_key:
        errors.append("MODULE_API_KEY is required in production")
    return errors


def config_summary(settings: Settings) -> Dict[str, Any]:
    """Configuration snapshot safe to log (no secrets)."""
    return {
        "module_id": settings.module_id,
        "module_name": settings.module_name,
        "version": settings.version,
        "port": settings.port,
        "environment": settings.environment,
        "billing_api_url": settings.billing_api_url,
        "billing_api_key_configured": bool(settings.billing_api_key),
        "openai_key_configured": bool(settings.openai_api_key),
        "openai_model": settings.openai_model,
        "openai_prompt_id": settings.openai_prompt_id or "(not configured)",
        "admin_bot_configured": bool(settings.admin_bot_token and settings.admin_chat_id),
        "data_path": settings.data_path,
        "conversation_ttl_days": settings.conversation_ttl_days,
        "log_level": settings.log_level,
    }


@lru_cache()
def get_settings() -> Settings:
    return Settings()
