"""Upstream provider communication: Groq (streaming) and Gemini (single-shot)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from config import AppConfig
from errors import (
    ProviderNotConfiguredError,
    UpstreamError,
    UpstreamHTTPError,
    UpstreamProtocolError,
    UpstreamStreamError,
)
from logger import LOGGER_NAME
from models import ROLE_ASSISTANT, ROLE_SYSTEM, ChatRequest, Usage
from sse_handler import SSETokenReader

log = logging.getLogger(LOGGER_NAME)

GEMINI_KEY_MISSING = "GOOGLE_API_KEY is required for Gemini models."


async def read_error_snippet(resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0) -> str:
    """Best-effort: read small error body without risking a hang."""
    try:
        raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
    except (asyncio.TimeoutError, httpx.HTTPError):
        return ""
    return raw.decode("utf-8", errors="replace")[:limit]


def extract_error_message(body_text: str, status_code: int) -> str:
    """Provider error message from an `{"error": {"message": ...}}` body, else a generic one."""
    generic = f"HTTP error: status {status_code}"
    if not body_text:
        return generic
    try:
        obj = json.loads(body_text)
    except json.JSONDecodeError:
        return generic
    if isinstance(obj, list) and obj:
        obj = obj[0]  # Gemini sometimes wraps errors in a list
    if not isinstance(obj, dict):
        return generic
    err = obj.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
        return err["message"]
    if isinstance(err, str) and err:
        return err
    return generic


@dataclass
class Completion:
    """A whole-response generation."""

    text: str
    usage: Optional[Usage] = None


class PrimaryStream:
    """An opened token stream from the primary provider.

    Iterate to pull tokens in arrival order. `aclose()` releases the upstream
    connection and is safe to call more than once.
    """

    def __init__(self, resp: httpx.Response, model_id: str) -> None:
        self._resp = resp
        self._reader = SSETokenReader(resp.aiter_lines(), model_id=model_id)
        self._closed = False
        self.model_id = model_id

    @property
    def usage(self) -> Optional[Usage]:
        if self._reader.usage is None:
            return None
        return Usage(**self._reader.usage)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._tokens()

    async def _tokens(self) -> AsyncIterator[str]:
        try:
            async for token in self._reader:
                yield token
        except httpx.HTTPError as e:
            raise UpstreamStreamError(f"Upstream connection lost: {type(e).__name__}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._resp.aclose()


class GroqClient:
    """Primary provider: OpenAI-compatible chat completions with SSE streaming."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.groq_api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": self._config.user_agent,
        }

    @staticmethod
    def build_payload(request: ChatRequest) -> Dict[str, Any]:
        return {
            "model": request.model,
            "messages": [m.to_dict() for m in request.conversation()],
            "temperature": request.temperature,
            "top_p": request.top_p,
            "max_completion_tokens": request.max_tokens,
            "stream": True,
        }

    async def open_stream(self, client: httpx.AsyncClient, request: ChatRequest) -> PrimaryStream:
        """
        Start a streaming completion and check its status.

        Failures here happen before anything was sent to the caller.
        """
        req = client.build_request(
            "POST",
            f"{self._config.groq_base_url}/chat/completions",
            headers=self.get_headers(),
            json=self.build_payload(request),
        )
        t0 = time.time()
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            log.warning("Groq request failed model=%s err=%r", request.model, e)
            raise UpstreamError(f"Upstream request failed: {type(e).__name__}") from e

        dt = (time.time() - t0) * 1000
        log.info("Groq stream opened model=%s status=%s ms=%.1f", request.model, resp.status_code, dt)

        if resp.status_code != 200:
            snippet = await read_error_snippet(resp)
            await resp.aclose()
            log.warning(
                "Groq error model=%s status=%s body=%s",
                request.model,
                resp.status_code,
                snippet[:500],
            )
            raise UpstreamHTTPError(extract_error_message(snippet, resp.status_code), resp.status_code)

        return PrimaryStream(resp, request.model)


class GeminiClient:
    """Alternate provider: Gemini generateContent, one request per completion."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def configured(self) -> bool:
        return bool(self._config.google_api_key)

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ProviderNotConfiguredError(GEMINI_KEY_MISSING)

    def get_headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._config.google_api_key,
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    @staticmethod
    def build_payload(request: ChatRequest) -> Dict[str, Any]:
        """
        Gemini request body.

        Gemini knows only "user" and "model" roles in `contents`: assistant turns
        become "model", and system turns from history join the system instruction.
        """
        system_parts: List[Dict[str, str]] = [{"text": request.system}]
        contents: List[Dict[str, Any]] = []
        for m in request.history:
            if m.role == ROLE_SYSTEM:
                system_parts.append({"text": m.content})
                continue
            role = "model" if m.role == ROLE_ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": m.content}]})
        contents.append({"role": "user", "parts": [{"text": request.message}]})

        return {
            "systemInstruction": {"parts": system_parts},
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "topP": request.top_p,
                "maxOutputTokens": request.max_tokens,
            },
        }

    async def generate(self, client: httpx.AsyncClient, request: ChatRequest) -> Completion:
        self.ensure_configured()
        url = f"{self._config.gemini_base_url}/models/{request.model}:generateContent"

        t0 = time.time()
        try:
            resp = await client.post(
                url,
                headers=self.get_headers(),
                json=self.build_payload(request),
                timeout=self._config.alternate_timeout_s,
            )
        except httpx.TimeoutException as e:
            log.warning("Gemini timeout model=%s after %.0fs", request.model, self._config.alternate_timeout_s)
            raise UpstreamError(
                f"Gemini request timed out after {self._config.alternate_timeout_s:g}s"
            ) from e
        except httpx.HTTPError as e:
            log.warning("Gemini request failed model=%s err=%r", request.model, e)
            raise UpstreamError(f"Upstream request failed: {type(e).__name__}") from e

        dt = (time.time() - t0) * 1000
        log.info("Gemini call model=%s status=%s ms=%.1f", request.model, resp.status_code, dt)

        if not resp.is_success:
            log.warning("Gemini error model=%s status=%s body=%s", request.model, resp.status_code, resp.text[:500])
            raise UpstreamHTTPError(extract_error_message(resp.text, resp.status_code), resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Invalid JSON from Gemini") from e
        return self.parse_completion(data)

    @staticmethod
    def parse_completion(data: Any) -> Completion:
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Invalid response from Gemini")

        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            if reason:
                raise UpstreamProtocolError(f"Gemini blocked the prompt: {reason}")
            raise UpstreamProtocolError("Invalid response from Gemini: no candidates")

        first = candidates[0] if isinstance(candidates[0], dict) else {}
        content = first.get("content") or {}
        parts = content.get("parts") if isinstance(content, dict) else None
        texts = [
            p["text"]
            for p in (parts or [])
            if isinstance(p, dict) and isinstance(p.get("text"), str)
        ]
        text = "".join(texts)
        if not text:
            raise UpstreamProtocolError("Empty response from Gemini")

        usage = None
        meta = data.get("usageMetadata")
        if isinstance(meta, dict):
            prompt = meta.get("promptTokenCount")
            completion = meta.get("candidatesTokenCount")
            if isinstance(prompt, int) and isinstance(completion, int):
                usage = Usage(input_tokens=prompt, output_tokens=completion)
        return Completion(text=text, usage=usage)
