"""Server-Sent Events (SSE) parsing for the primary provider's token stream."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from errors import UpstreamStreamError
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

SSEEventLines = List[str]


def sse_event_data_text(lines: SSEEventLines) -> str:
    """
    Join all `data:` lines in an SSE event into a single payload.

    SSE concatenates multiple data lines with '\n'.
    """
    parts: List[str] = []
    for ln in lines:
        if ln.startswith("data:"):
            parts.append(ln[len("data:"):].lstrip())
    return "\n".join(parts)


async def read_next_sse_event(aiter: AsyncIterator[str]) -> SSEEventLines | None:
    """
    Read one SSE event (blank-line delimited) from an async line iterator.

    Returns:
    - list[str]: event lines excluding the terminating blank line (may be empty for keepalive)
    - None: EOF (no more data)
    """
    lines: SSEEventLines = []
    while True:
        try:
            raw = await aiter.__anext__()  # type: ignore[attr-defined]
        except StopAsyncIteration:
            if lines:
                return lines
            return None

        line = raw.rstrip("\r\n")
        if line == "":
            return lines
        lines.append(line)


def is_sse_activity_line(line: str) -> bool:
    """
    SSE field/comment/continuation line.
    Fields: data, event, id, retry; comments ":"; and (rare) continuation lines that start with space.
    """
    return (
        line.startswith("data:")
        or line.startswith("event:")
        or line.startswith("id:")
        or line.startswith("retry:")
        or line.startswith(":")
        or line.startswith(" ")
    )


def extract_content_fragments(obj: Any) -> List[str]:
    """Extract content fragments from an OpenAI-style chunk."""
    out: List[str] = []
    if not isinstance(obj, dict):
        return out

    for ch in (obj.get("choices") or []):
        if not isinstance(ch, dict):
            continue
        d = ch.get("delta") or ch.get("message") or {}
        if isinstance(d, dict):
            c = d.get("content")
            if isinstance(c, str) and c:
                out.append(c)
    return out


def extract_usage(obj: Any) -> Optional[Dict[str, int]]:
    """
    Usage from a chunk, if present.

    OpenAI-style streams put it in `usage`; Groq puts it in `x_groq.usage` of the last chunk.
    """
    if not isinstance(obj, dict):
        return None
    candidates = [obj.get("usage")]
    x_groq = obj.get("x_groq")
    if isinstance(x_groq, dict):
        candidates.append(x_groq.get("usage"))
    for u in candidates:
        if not isinstance(u, dict):
            continue
        prompt = u.get("prompt_tokens")
        completion = u.get("completion_tokens")
        if isinstance(prompt, int) and isinstance(completion, int):
            return {"input_tokens": prompt, "output_tokens": completion}
    return None


def extract_stream_error(obj: Any) -> Optional[str]:
    """Error message carried inside a stream chunk, if any."""
    if not isinstance(obj, dict):
        return None
    err = obj.get("error")
    if err is None:
        return None
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, str) and msg:
            return msg
        return json.dumps(err, ensure_ascii=False)[:500]
    return str(err)


class SSETokenReader:
    """
    Pull-based reader turning an SSE line stream into text tokens.

    Iterating yields content fragments in arrival order. The iteration ends
    normally only on `data: [DONE]`; an error event, a malformed chunk, a
    non-SSE line or end-of-stream without [DONE] raises UpstreamStreamError.
    """

    def __init__(self, lines: AsyncIterator[str], model_id: str = "") -> None:
        self._lines = lines
        self._model_id = model_id
        self.usage: Optional[Dict[str, int]] = None
        self.finish_reason: Optional[str] = None
        self.done = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._tokens()

    async def _tokens(self) -> AsyncIterator[str]:
        while True:
            event_lines = await read_next_sse_event(self._lines)
            if event_lines is None:
                raise UpstreamStreamError("Upstream stream ended before completion")
            if not event_lines:
                continue  # keepalive

            bad = next((ln for ln in event_lines if not is_sse_activity_line(ln)), None)
            if bad is not None:
                log.warning("Non-SSE line from upstream model=%s line=%r", self._model_id, bad[:200])
                raise UpstreamStreamError(f"Unexpected upstream data: {bad[:200]}")

            data = sse_event_data_text(event_lines).strip()
            if not data:
                continue  # comment / event-only
            if data == "[DONE]":
                self.done = True
                return

            try:
                obj = json.loads(data)
            except json.JSONDecodeError:
                raise UpstreamStreamError("Malformed upstream chunk") from None
            if not isinstance(obj, dict):
                raise UpstreamStreamError("Malformed upstream chunk")

            err = extract_stream_error(obj)
            if err is not None:
                raise UpstreamStreamError(err)

            usage = extract_usage(obj)
            if usage is not None:
                self.usage = usage

            for ch in obj.get("choices") or []:
                if isinstance(ch, dict) and ch.get("finish_reason"):
                    self.finish_reason = ch["finish_reason"]

            for frag in extract_content_fragments(obj):
                yield frag
