import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Models the chat assistant has been exercised against. Anything else still
# works but is reported as a configuration warning.
KNOWN_CHAT_MODELS = (
    "gpt-4-turbo-preview",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-4-0125-preview",
    "gpt-4-1106-preview",
    "gpt-3.5-turbo",
    "gpt-3.5-turbo-0125",
    "gpt-3.5-turbo-1106",
)

DEFAULT_CHAT_MODEL = "gpt-4-turbo-preview"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Database (async SQLAlchemy URL)
    database_url: str = "sqlite+aiosqlite:///./community.db"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_recycle: int = 300

    # OpenAI-compatible chat completion API
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = DEFAULT_CHAT_MODEL
    openai_temperature: float = DEFAULT_TEMPERATURE
    openai_max_tokens: int = DEFAULT_MAX_TOKENS
    openai_timeout: float = 60.0

    # Per-user chat rate limit (sliding window)
    chat_rate_limit_max_requests: int = 10
    chat_rate_limit_window_ms: int = 60_000

    # Exponential backoff for LLM calls
    llm_backoff_base_delay_ms: int = 1000
    llm_backoff_max_delay_ms: int = 32_000
    llm_backoff_max_retries: int = 5

    # Consecutive malformed SSE records tolerated before a stream is failed
    stream_max_parse_errors: int = 10

    # Retrieval
    retrieval_max_articles: int = 5

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 60.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("openai_temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate sampling temperature is within the API's range."""
        if v < 0 or v > 2:
            raise ValueError("openai_temperature must be between 0 and 2")
        return v

    @field_validator("openai_max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v < 1 or v > 4096:
            raise ValueError("openai_max_tokens must be between 1 and 4096")
        return v

    @field_validator(
        "chat_rate_limit_max_requests",
        "chat_rate_limit_window_ms",
        "llm_backoff_max_retries",
        "stream_max_parse_errors",
        "retrieval_max_articles",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("llm_backoff_base_delay_ms", "llm_backoff_max_delay_ms")
    @classmethod
    def validate_delay_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("backoff delays must not be negative")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout", "openai_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def validate_chatbot_config(config: Settings | None = None) -> dict[str, Any]:
    """Check the chat assistant configuration.

    A missing API key makes the configuration invalid; an unknown model name
    only produces a warning since OpenAI-compatible backends ship their own
    model ids.

    Returns:
        Dict with ``is_valid``, ``errors`` and ``warnings`` keys
    """
    config = config or settings
    errors: list[str] = []
    warnings: list[str] = []

    if not config.openai_api_key:
        errors.append("OPENAI_API_KEY is not set")

    if config.openai_model not in KNOWN_CHAT_MODELS:
        warnings.append(
            f'Unknown OPENAI_MODEL value: "{config.openai_model}". '
            "This may cause API errors if the model doesn't exist. "
            f"Known models: {', '.join(KNOWN_CHAT_MODELS)}"
        )

    return {"is_valid": not errors, "errors": errors, "warnings": warnings}


def mask_secret(value: str) -> str:
    if not value:
        return "NOT SET"
    return f"{value[:8]}..."


def get_config_summary(config: Settings | None = None) -> dict[str, str]:
    """Summarise chat configuration for the health endpoint (secrets masked)."""
    config = config or settings

    def describe(value: Any, default: Any) -> str:
        if value == default:
            return f"{value} (default)"
        return str(value)

    return {
        "OPENAI_API_KEY": mask_secret(config.openai_api_key),
        "OPENAI_MODEL": describe(config.openai_model, DEFAULT_CHAT_MODEL),
        "OPENAI_TEMPERATURE": describe(config.openai_temperature, DEFAULT_TEMPERATURE),
        "OPENAI_MAX_TOKENS": describe(config.openai_max_tokens, DEFAULT_MAX_TOKENS),
    }


# Global settings instance
settings = Settings()
