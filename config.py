"""Configuration management for the chat relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Tuple

from errors import ConfigurationError

DEFAULT_PRIMARY_MODELS: Tuple[str, ...] = (
    "compound-beta",
    "compound-beta-mini",
    "llama-3.3-70b-versatile",
    "llama-3.1-8b-instant",
    "gemma2-9b-it",
    "meta-llama/llama-4-scout-17b-16e-instruct",
    "meta-llama/llama-4-maverick-17b-128e-instruct",
    "deepseek-r1-distill-llama-70b",
    "qwen-qwq-32b",
    "mistral-saba-24b",
)

DEFAULT_ALTERNATE_MODELS: Tuple[str, ...] = (
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-pro",
)


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip()


def _csv_set(name: str, default: Tuple[str, ...]) -> FrozenSet[str]:
    """Parse comma-separated environment variable into a set."""
    v = os.getenv(name, "")
    items = [x.strip() for x in v.split(",") if x.strip() and x.strip().lower() != "empty"]
    if not items:
        return frozenset(default)
    return frozenset(items)


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Primary provider (Groq, OpenAI-compatible streaming)
    groq_api_key: str
    groq_base_url: str

    # Alternate provider (Gemini, single-shot generateContent)
    google_api_key: str
    gemini_base_url: str

    # Models
    default_model: str
    primary_models: FrozenSet[str]
    alternate_models: FrozenSet[str]
    default_system_prompt: str

    # Timeouts
    connect_timeout_s: float
    alternate_timeout_s: float
    disconnect_poll_s: float

    # Server settings
    production_url: str
    port: int
    max_request_bytes: int
    cors_allow_origins: Tuple[str, ...]
    user_agent: str

    # Logging
    log_level: str
    log_path: str
    log_color: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        origins = tuple(
            x.strip() for x in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if x.strip()
        )
        return cls(
            groq_api_key=_env_str("GROQ_API_KEY", "") or _env_str("API_KEY", ""),
            groq_base_url=_env_str("GROQ_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/"),
            google_api_key=_env_str("GOOGLE_API_KEY", ""),
            gemini_base_url=_env_str(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
            ).rstrip("/"),
            default_model=_env_str("DEFAULT_MODEL", "compound-beta"),
            primary_models=_csv_set("PRIMARY_MODELS", DEFAULT_PRIMARY_MODELS),
            alternate_models=_csv_set("ALTERNATE_MODELS", DEFAULT_ALTERNATE_MODELS),
            default_system_prompt=_env_str(
                "DEFAULT_SYSTEM_PROMPT", "You are a helpful AI assistant."
            ),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 30.0),
            alternate_timeout_s=_env_float("ALTERNATE_TIMEOUT_S", 30.0),
            disconnect_poll_s=_env_float("DISCONNECT_POLL_S", 0.5),
            production_url=_env_str("PRODUCTION_URL", "").rstrip("/"),
            port=_env_int("PORT", 3000),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            cors_allow_origins=origins or ("*",),
            user_agent=_env_str("USER_AGENT", "chat-relay/1.0.0"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_path=_env_str("LOG_PATH", ""),
            log_color=_env_bool("LOG_COLOR", True),
        )

    @property
    def supported_models(self) -> FrozenSet[str]:
        return self.primary_models | self.alternate_models

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.groq_api_key:
            raise ConfigurationError("GROQ_API_KEY is required. Please check your .env file.")
        if not self.default_system_prompt:
            raise ConfigurationError("DEFAULT_SYSTEM_PROMPT must be non-empty")
        if self.default_model not in self.supported_models:
            raise ConfigurationError(
                f"DEFAULT_MODEL {self.default_model!r} is not in PRIMARY_MODELS or ALTERNATE_MODELS"
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError("CONNECT_TIMEOUT_S must be > 0")
        if self.alternate_timeout_s <= 0:
            raise ConfigurationError("ALTERNATE_TIMEOUT_S must be > 0")
        if self.disconnect_poll_s <= 0:
            raise ConfigurationError("DISCONNECT_POLL_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ConfigurationError("MAX_REQUEST_BYTES must be > 0")
        if not self.user_agent:
            raise ConfigurationError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
