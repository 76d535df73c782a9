"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv

load_dotenv()

LLM_PROVIDERS = ("openai", "anthropic", "proxy")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        return default


def _bool_env(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    # Server settings
    host: str
    port: int
    database_url: str
    admin_token: str | None
    log_level: str

    # Text generation transport
    llm_enabled: bool
    llm_provider: Literal["openai", "anthropic", "proxy"]
    openai_api_key: str | None
    openai_model: str
    anthropic_api_key: str | None
    anthropic_model: str
    proxy_url: str | None
    proxy_api_key: str | None
    llm_timeout_seconds: float

    # Output size per prompt kind
    signal_max_tokens: int
    visual_max_tokens: int
    recs_max_tokens: int
    combine_max_tokens: int

    # Analysis and aggregation
    recs_count: int
    visual_analysis_enabled: bool
    visual_image_cap: int
    analysis_batch_size: int
    manual_tag_bonus: int

    # Job lifecycle
    job_stale_minutes: int
    rate_limit_default_seconds: int
    sweep_interval_minutes: int

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        host = os.getenv("HOST", "0.0.0.0")
        port_str = os.getenv("PORT", "8000")
        try:
            port = int(port_str)
        except ValueError:
            raise ConfigurationError(f"PORT must be an integer, got: {port_str}")

        database_url = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tastegraph.db")
        admin_token = os.getenv("ADMIN_TOKEN") or None
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        openai_api_key = os.getenv("OPENAI_API_KEY") or None
        anthropic_api_key = os.getenv("ANTHROPIC_API_KEY") or None
        llm_provider = os.getenv(
            "LLM_PROVIDER", "anthropic" if anthropic_api_key else "openai"
        ).lower()
        if llm_provider not in LLM_PROVIDERS:
            raise ConfigurationError(
                f"LLM_PROVIDER must be one of {', '.join(LLM_PROVIDERS)}, got: {llm_provider}"
            )

        proxy_url = os.getenv("PROXY_URL") or None
        if llm_provider == "proxy" and not proxy_url:
            raise ConfigurationError("PROXY_URL is required when LLM_PROVIDER=proxy")

        timeout_str = os.getenv("LLM_TIMEOUT_SECONDS", "60")
        try:
            llm_timeout_seconds = float(timeout_str)
        except ValueError:
            llm_timeout_seconds = 60.0

        return cls(
            host=host,
            port=port,
            database_url=database_url,
            admin_token=admin_token,
            log_level=log_level,
            llm_enabled=_bool_env("LLM_ENABLED"),
            llm_provider=llm_provider,  # type: ignore[arg-type]
            openai_api_key=openai_api_key,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            anthropic_api_key=anthropic_api_key,
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-20241022"),
            proxy_url=proxy_url,
            proxy_api_key=os.getenv("PROXY_API_KEY") or None,
            llm_timeout_seconds=llm_timeout_seconds,
            signal_max_tokens=_int_env("SIGNAL_MAX_TOKENS", 1024),
            visual_max_tokens=_int_env("VISUAL_MAX_TOKENS", 2000),
            recs_max_tokens=_int_env("RECS_MAX_TOKENS", 5000),
            combine_max_tokens=_int_env("COMBINE_MAX_TOKENS", 2000),
            recs_count=_int_env("RECS_COUNT", 8),
            visual_analysis_enabled=_bool_env("VISUAL_ANALYSIS_ENABLED"),
            visual_image_cap=_int_env("VISUAL_IMAGE_CAP", 6),
            analysis_batch_size=max(1, _int_env("ANALYSIS_BATCH_SIZE", 20)),
            manual_tag_bonus=_int_env("MANUAL_TAG_BONUS", 5),
            job_stale_minutes=_int_env("JOB_STALE_MINUTES", 5),
            rate_limit_default_seconds=_int_env("RATE_LIMIT_DEFAULT_SECONDS", 3600),
            sweep_interval_minutes=max(1, _int_env("SWEEP_INTERVAL_MINUTES", 1)),
        )


config = Config.from_env()
