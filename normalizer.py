"""Validation and normalization of inbound chat requests."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from errors import ValidationError
from logger import LOGGER_NAME
from models import (
    FORMAT_JSON,
    FORMAT_TEXT,
    KNOWN_ROLES,
    ChatMessage,
    ChatRequest,
    ModelCatalog,
)

log = logging.getLogger(LOGGER_NAME)

DEFAULT_TEMPERATURE = 1.0
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 1024

TEMPERATURE_RANGE = (0.0, 2.0)
TOP_P_RANGE = (0.0, 1.0)

# First present key wins.
_TOP_P_KEYS = ("top_p", "topP")
_MAX_TOKENS_KEYS = ("max_completion_tokens", "max_tokens", "maxTokens")


def _first_present(payload: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for k in keys:
        if payload.get(k) is not None:
            return payload[k]
    return None


def coerce_number(value: Any) -> Optional[float]:
    """Return a finite float for numbers and numeric strings, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            v = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            v = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def clamp_number(value: Any, bounds: Tuple[float, float], default: float) -> float:
    """Coerce to a number and clamp into bounds; non-numeric input yields the default."""
    v = coerce_number(value)
    if v is None:
        if isinstance(value, int) and not isinstance(value, bool):
            # integer past float range
            return bounds[1] if value > 0 else bounds[0]
        return default
    lo, hi = bounds
    return min(max(v, lo), hi)


def coerce_positive_int(value: Any, default: int) -> int:
    """Coerce to a positive integer; anything else yields the default."""
    v = coerce_number(value)
    if v is None or not v.is_integer() or v < 1:
        return default
    return int(v)


def normalize_history(raw: Any) -> Tuple[ChatMessage, ...]:
    """Keep well-formed entries with a known role, in their original order."""
    if not isinstance(raw, list):
        return ()
    out: List[ChatMessage] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        role = entry.get("role")
        content = entry.get("content")
        if not isinstance(role, str) or role not in KNOWN_ROLES:
            continue
        if not isinstance(content, str) or not content.strip():
            continue
        out.append(ChatMessage(role=role, content=content))
    dropped = len(raw) - len(out)
    if dropped:
        log.debug("History entries dropped=%d kept=%d", dropped, len(out))
    return tuple(out)


class RequestNormalizer:
    """Turn a raw JSON payload into a validated ChatRequest."""

    def __init__(self, catalog: ModelCatalog, default_system_prompt: str) -> None:
        self._catalog = catalog
        self._default_system_prompt = default_system_prompt

    def normalize(self, payload: Any) -> ChatRequest:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON body: expected object")

        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message required")

        return ChatRequest(
            message=message,
            model=self._resolve_model(payload.get("model")),
            system=self._resolve_system(payload.get("system")),
            history=normalize_history(payload.get("history")),
            temperature=clamp_number(payload.get("temperature"), TEMPERATURE_RANGE, DEFAULT_TEMPERATURE),
            top_p=clamp_number(_first_present(payload, _TOP_P_KEYS), TOP_P_RANGE, DEFAULT_TOP_P),
            max_tokens=coerce_positive_int(_first_present(payload, _MAX_TOKENS_KEYS), DEFAULT_MAX_TOKENS),
            format=self._resolve_format(payload.get("format")),
        )

    def _resolve_model(self, raw: Any) -> str:
        if raw is None:
            return self._catalog.default_model
        if not isinstance(raw, str):
            raise ValidationError("invalid model")
        model = raw.strip()
        if not model:
            return self._catalog.default_model
        if not self._catalog.is_supported(model):
            log.info("Rejected unsupported model=%r", model)
            raise ValidationError("invalid model")
        return model

    def _resolve_system(self, raw: Any) -> str:
        if isinstance(raw, str) and raw.strip():
            return raw
        return self._default_system_prompt

    @staticmethod
    def _resolve_format(raw: Any) -> str:
        if isinstance(raw, str) and raw.strip().lower() == FORMAT_JSON:
            return FORMAT_JSON
        return FORMAT_TEXT
