"""Startup helpers for the chat relay."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)


def load_env_files() -> bool:
    """Load .env files from program directory, its parent and current directory."""
    this_dir = Path(__file__).resolve().parent
    candidates = []
    for p in (this_dir / ".env", this_dir.parent / ".env", Path.cwd() / ".env"):
        if p not in candidates:
            candidates.append(p)

    loaded_any = False
    for p in candidates:
        if p.exists():
            loaded_any = load_dotenv(dotenv_path=str(p), override=True) or loaded_any
    return loaded_any


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== chat-relay startup config ===")
    log.info(
        "GROQ_API_KEY_set=%s value=%s",
        bool(config.groq_api_key),
        mask_secret(config.groq_api_key),
    )
    log.info("GROQ_BASE_URL=%s", config.groq_base_url)
    log.info(
        "GOOGLE_API_KEY_set=%s value=%s",
        bool(config.google_api_key),
        mask_secret(config.google_api_key),
    )
    if not config.google_api_key:
        log.info("GOOGLE_API_KEY missing: Gemini models will be rejected per request.")
    log.info("GEMINI_BASE_URL=%s", config.gemini_base_url)
    log.info("DEFAULT_MODEL=%s", config.default_model)
    log.info("PRIMARY_MODELS=%s", sorted(config.primary_models))
    log.info("ALTERNATE_MODELS=%s", sorted(config.alternate_models))
    log.info("CONNECT_TIMEOUT_S=%s", config.connect_timeout_s)
    log.info("ALTERNATE_TIMEOUT_S=%s", config.alternate_timeout_s)
    log.info("PRODUCTION_URL=%s", config.production_url or "-")
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("CORS_ALLOW_ORIGINS=%s", list(config.cors_allow_origins))
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path or "<stderr>")
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===============================")
