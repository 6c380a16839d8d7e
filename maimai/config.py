"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    telegram_bot_token: str = Field(..., alias="TELEGRAM_BOT_TOKEN")
    telegram_api_base_url: str = Field(
        default="https://api.telegram.org",
        alias="TELEGRAM_API_BASE_URL",
    )
    telegram_poll_timeout_seconds: int = Field(default=30, alias="TELEGRAM_POLL_TIMEOUT_SECONDS")
    mcp_url: str = Field(
        default="https://mcp.mcd.cn/mcp-servers/mcd-mcp",
        alias="MCD_MCP_URL",
    )
    mcp_protocol_version: str = Field(default="2025-06-18", alias="MCP_PROTOCOL_VERSION")
    cache_ttl_seconds: float = Field(default=300.0, ge=0, alias="CACHE_TTL_SECONDS")
    # Comma-separated tool names whose results may be reused for CACHE_TTL_SECONDS.
    # Never list a mutating tool here.
    cacheable_tools: str = Field(
        default="campaign-calender,now-time-info",
        alias="CACHEABLE_TOOLS",
    )
    auto_claim_check_minutes: float = Field(default=10.0, alias="AUTO_CLAIM_CHECK_MINUTES")
    auto_claim_hour: int = Field(default=9, ge=0, le=23, alias="AUTO_CLAIM_HOUR")
    auto_claim_timezone: str = Field(default="Asia/Shanghai", alias="AUTO_CLAIM_TIMEZONE")
    database_path: Path = Field(default=Path("maimai.db"), alias="DATABASE_PATH")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def cacheable_tools(settings: Settings) -> frozenset[str]:
    """Return the allow-list of tool names whose results may be cached."""
    return frozenset(name.strip() for name in settings.cacheable_tools.split(",") if name.strip())
