"""
Chat relay service: POST /api/chat -> Groq (streaming) or Gemini (single-shot).

The caller sends a message with optional history and generation parameters;
the reply is streamed back as plain text, or delivered as one JSON envelope
when `format` is "json".

Models in the alternate allow-list (Gemini) are answered in one piece; every
other model is streamed token by token from Groq.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from config import AppConfig, load_config
from errors import PayloadTooLargeError, RelayError, ValidationError
from logger import LOGGER_NAME, setup_logging
from normalizer import RequestNormalizer
from relay import ProviderRelay
from utils import dump_config, load_env_files

__version__ = "1.0.0"

log = logging.getLogger(LOGGER_NAME)

CHAT_PATH = "/api/chat"


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message})


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


def _check_content_length(request: Request, max_bytes: int) -> None:
    """Basic request size guard."""
    cl = request.headers.get("content-length")
    if not cl:
        return
    try:
        n = int(cl)
    except ValueError:
        raise ValidationError(f"Invalid Content-Length header: {cl!r}") from None
    if n < 0:
        raise ValidationError("Invalid Content-Length: must be non-negative")
    if n > max_bytes:
        raise PayloadTooLargeError(f"Request too large: {n} bytes (max {max_bytes})")


def create_app(config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    Build the FastAPI application around an explicit configuration.

    Raises ConfigurationError when the configuration cannot serve requests.
    `transport` replaces the network transport for upstream calls.
    """
    config.validate()

    relay = ProviderRelay(config, transport=transport)
    normalizer = RequestNormalizer(relay.catalog, config.default_system_prompt)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info(
            "chat-relay %s ready default_model=%s gemini_configured=%s",
            __version__,
            config.default_model,
            relay.alternate.configured,
        )
        yield
        log.info("chat-relay shutting down")

    app = FastAPI(title="chat-relay", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error path=%s", request.url.path, exc_info=exc)
        return error_response("Internal server error", 500)

    @app.get("/")
    async def index() -> Dict[str, Any]:
        """Welcome/status payload."""
        chat_url = f"{config.production_url}{CHAT_PATH}" if config.production_url else CHAT_PATH
        return {
            "status": "ok",
            "service": "chat-relay",
            "version": __version__,
            "message": f"Welcome to the chat relay API! Use POST {CHAT_PATH} to interact.",
            "endpoints": {"chat": {"method": "POST", "url": chat_url}},
            "default_model": config.default_model,
        }

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/api/models")
    async def models() -> Dict[str, Any]:
        return relay.catalog.to_dict(alternate_configured=relay.alternate.configured)

    @app.post(CHAT_PATH)
    async def chat(request: Request) -> Response:
        """Validate, dispatch and relay one chat request."""
        req_id = _request_id(request)
        _check_content_length(request, config.max_request_bytes)

        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Invalid JSON body") from None

        chat_request = normalizer.normalize(body)
        client_ip = request.client.host if request.client else "unknown"
        log.info(
            "Incoming chat req_id=%s from=%s model=%s format=%s history=%d",
            req_id,
            client_ip,
            chat_request.model,
            chat_request.format,
            len(chat_request.history),
        )

        try:
            return await relay.relay(chat_request, req_id, is_disconnected=request.is_disconnected)
        except RelayError as e:
            log.warning("Chat failed req_id=%s status=%s err=%s", req_id, e.status_code, e.message)
            raise
        except Exception:
            log.exception("Chat failed req_id=%s", req_id)
            return error_response("Internal server error", 500)

    return app


# Load environment, configuration and logging once at process start.
load_env_files()
config = load_config()
setup_logging(config.log_level, config.log_path, config.log_color)
dump_config(config)

app = create_app(config)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)


if __name__ == "__main__":
    main()
