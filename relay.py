"""Provider relay: dispatch a normalized request and stream the result back."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from fastapi.responses import Response, StreamingResponse

from config import AppConfig
from errors import ClientDisconnected, UpstreamError
from logger import LOGGER_NAME
from models import PROVIDER_ALTERNATE, ChatRequest, ModelCatalog, Usage
from upstream import GeminiClient, GroqClient, PrimaryStream

log = logging.getLogger(LOGGER_NAME)

T = TypeVar("T")

DisconnectCheck = Callable[[], Awaitable[bool]]

STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"
JSON_MEDIA_TYPE = "application/json"


class SessionState(enum.Enum):
    NOT_STARTED = "not_started"
    HEADERS_SENT = "headers_sent"
    ENDED = "ended"


class StreamSession:
    """
    Per-response output state.

    NOT_STARTED -> HEADERS_SENT -> (writes)* -> ENDED. Every method returns the
    bytes to put on the wire; once ENDED, all of them return b"".
    In json format tokens are buffered and only the final envelope is emitted.
    """

    def __init__(self, request: ChatRequest, req_id: str) -> None:
        self.request = request
        self.req_id = req_id
        self.state = SessionState.NOT_STARTED
        self._parts: List[str] = []

    @property
    def media_type(self) -> str:
        return JSON_MEDIA_TYPE if self.request.wants_json else TEXT_MEDIA_TYPE

    @property
    def headers_sent(self) -> bool:
        return self.state is not SessionState.NOT_STARTED

    @property
    def ended(self) -> bool:
        return self.state is SessionState.ENDED

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def start(self) -> None:
        if self.state is SessionState.NOT_STARTED:
            self.state = SessionState.HEADERS_SENT

    def write(self, token: str) -> bytes:
        if self.ended or not token:
            return b""
        self.start()
        self._parts.append(token)
        if self.request.wants_json:
            return b""
        return token.encode("utf-8")

    def finish(self, usage: Optional[Usage] = None) -> bytes:
        if self.ended:
            return b""
        self.start()
        self.state = SessionState.ENDED
        if not self.request.wants_json:
            return b""
        text = self.text
        envelope = {
            "status": "success",
            "response": text,
            "model": self.request.model,
            "usage": (usage or Usage.approximate(self.request, text)).to_dict(),
        }
        return _json_bytes(envelope)

    def fail(self, message: str) -> bytes:
        if self.ended:
            return b""
        self.start()
        self.state = SessionState.ENDED
        if self.request.wants_json:
            return _json_bytes(
                {
                    "status": "error",
                    "error": message,
                    "model": self.request.model,
                    "response": self.text,
                }
            )
        prefix = "\n" if self._parts else ""
        return f"{prefix}Error: {message}".encode("utf-8")

    def close(self) -> None:
        """End without output (cleanup path)."""
        self.state = SessionState.ENDED


def _json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, ensure_ascii=False).encode("utf-8")


async def run_unless_disconnected(
    aw: Awaitable[T],
    is_disconnected: Optional[DisconnectCheck],
    poll_s: float,
) -> T:
    """
    Await an upstream call, cancelling it if the client goes away first.

    Raises ClientDisconnected when the disconnect wins.
    """
    if is_disconnected is None:
        return await aw

    task = asyncio.ensure_future(aw)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_s)
            if task in done:
                return task.result()
            if await is_disconnected():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise ClientDisconnected("Client disconnected")
    except asyncio.CancelledError:
        task.cancel()
        raise


class ProviderRelay:
    """Route a ChatRequest to its provider and relay output to the caller."""

    def __init__(self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        self._transport = transport
        self.catalog = ModelCatalog.from_config(config)
        self.primary = GroqClient(config)
        self.alternate = GeminiClient(config)

    def _new_client(self) -> httpx.AsyncClient:
        # No read timeout on the primary stream; the alternate call sets its own.
        t = self._config.connect_timeout_s
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            transport=self._transport,
        )

    async def relay(
        self,
        request: ChatRequest,
        req_id: str,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> Response:
        """
        Dispatch and return the response to send.

        RelayError raised from here means nothing was committed yet.
        """
        session = StreamSession(request, req_id)
        headers = dict(STREAM_HEADERS, **{"X-Request-ID": req_id})

        if self.catalog.provider_for(request.model) == PROVIDER_ALTERNATE:
            self.alternate.ensure_configured()
            return await self._relay_alternate(session, headers, is_disconnected)
        return await self._relay_primary(session, headers, is_disconnected)

    async def _relay_alternate(
        self,
        session: StreamSession,
        headers: Dict[str, str],
        is_disconnected: Optional[DisconnectCheck],
    ) -> Response:
        request = session.request
        log.info("Relay req_id=%s provider=gemini model=%s", session.req_id, request.model)
        async with self._new_client() as client:
            completion = await run_unless_disconnected(
                self.alternate.generate(client, request),
                is_disconnected,
                self._config.disconnect_poll_s,
            )

        body = session.write(completion.text) + session.finish(completion.usage)
        log.info(
            "Relay done req_id=%s provider=gemini model=%s chars=%d",
            session.req_id,
            request.model,
            len(completion.text),
        )
        return Response(content=body, media_type=session.media_type, headers=headers)

    async def _relay_primary(
        self,
        session: StreamSession,
        headers: Dict[str, str],
        is_disconnected: Optional[DisconnectCheck],
    ) -> Response:
        request = session.request
        log.info("Relay req_id=%s provider=groq model=%s", session.req_id, request.model)
        client = self._new_client()
        try:
            stream = await run_unless_disconnected(
                self.primary.open_stream(client, request),
                is_disconnected,
                self._config.disconnect_poll_s,
            )
        except BaseException:
            await client.aclose()
            raise

        return StreamingResponse(
            self._primary_body(session, stream, client),
            media_type=session.media_type,
            headers=headers,
        )

    async def _primary_body(
        self,
        session: StreamSession,
        stream: PrimaryStream,
        client: httpx.AsyncClient,
    ) -> AsyncGenerator[bytes, None]:
        """
        Body iterator for the primary path.

        The server cancels this iterator when the client disconnects; the
        finally block then closes the upstream response.
        """
        session.start()
        try:
            async for token in stream:
                log.debug("Token req_id=%s %r", session.req_id, token[:30])
                chunk = session.write(token)
                if chunk:
                    yield chunk
            tail = session.finish(stream.usage)
            if tail:
                yield tail
            log.info(
                "Relay done req_id=%s provider=groq model=%s chars=%d",
                session.req_id,
                session.request.model,
                len(session.text),
            )
        except UpstreamError as e:
            log.warning("Upstream stream error req_id=%s model=%s err=%s", session.req_id, session.request.model, e)
            yield session.fail(e.message)
        except Exception:
            log.exception("Relay failed req_id=%s model=%s", session.req_id, session.request.model)
            yield session.fail("Internal server error")
        finally:
            if not session.ended:
                log.info("Client went away req_id=%s; closing upstream", session.req_id)
            session.close()
            # Shielded: the server may keep cancelling this task while it unwinds.
            await asyncio.shield(_close_upstream(stream, client))


async def _close_upstream(stream: PrimaryStream, client: httpx.AsyncClient) -> None:
    with contextlib.suppress(Exception):
        await stream.aclose()
    with contextlib.suppress(Exception):
        await client.aclose()
