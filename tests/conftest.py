"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Helpers to fake upstream providers with httpx.MockTransport
- Test environment setup
"""

import json
import os
import sys
from pathlib import Path

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the service loads config at import time.
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")

from config import DEFAULT_ALTERNATE_MODELS, DEFAULT_PRIMARY_MODELS, AppConfig  # noqa: E402


@pytest.fixture
def test_config():
    """Create test configuration (Gemini not configured)."""
    return AppConfig(
        groq_api_key="test-key",
        groq_base_url="https://groq.test/openai/v1",
        google_api_key="",
        gemini_base_url="https://gemini.test/v1beta",
        default_model="compound-beta",
        primary_models=frozenset(DEFAULT_PRIMARY_MODELS),
        alternate_models=frozenset(DEFAULT_ALTERNATE_MODELS),
        default_system_prompt="You are a helpful AI assistant.",
        connect_timeout_s=5.0,
        alternate_timeout_s=30.0,
        disconnect_poll_s=0.5,
        production_url="",
        port=3000,
        max_request_bytes=2_000_000,
        cors_allow_origins=("*",),
        user_agent="test-agent",
        log_level="DEBUG",
        log_path="",
        log_color=False,
    )


def sse_body(*chunks, done=True):
    """Encode OpenAI-style chunk dicts (or raw strings) as an SSE body."""
    events = []
    for c in chunks:
        data = c if isinstance(c, str) else json.dumps(c)
        events.append(f"data: {data}\n\n")
    if done:
        events.append("data: [DONE]\n\n")
    return "".join(events).encode("utf-8")


def token_chunk(text, finish_reason=None):
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}],
    }


class FakeUpstream:
    """Records upstream requests and answers them with a handler."""

    def __init__(self, handler):
        self._handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def transport(self):
        return httpx.MockTransport(self)

    def payloads(self):
        return [json.loads(r.content) for r in self.requests]


def groq_stream_handler(*tokens, usage=None):
    """Handler answering with a streamed completion made of the given tokens."""
    chunks = [token_chunk(t) for t in tokens]
    final = token_chunk("", finish_reason="stop")
    final["choices"][0]["delta"] = {}
    if usage is not None:
        final["x_groq"] = {"usage": usage}
    chunks.append(final)

    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(*chunks),
        )

    return handler
