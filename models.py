"""Request data model and provider selection for the chat relay."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Tuple

from config import AppConfig

PROVIDER_PRIMARY = "groq"
PROVIDER_ALTERNATE = "gemini"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
KNOWN_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM})

FORMAT_TEXT = "text"
FORMAT_JSON = "json"


@dataclass(frozen=True)
class ChatMessage:
    """One role-tagged message of a conversation."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """A validated chat request. Numeric fields are already clamped."""

    message: str
    model: str
    system: str
    history: Tuple[ChatMessage, ...] = ()
    temperature: float = 1.0
    top_p: float = 1.0
    max_tokens: int = 1024
    format: str = FORMAT_TEXT

    @property
    def wants_json(self) -> bool:
        return self.format == FORMAT_JSON

    def conversation(self) -> List[ChatMessage]:
        """System instruction first, then history in order, then the current message."""
        out = [ChatMessage(ROLE_SYSTEM, self.system)]
        out.extend(self.history)
        out.append(ChatMessage(ROLE_USER, self.message))
        return out


@dataclass
class Usage:
    """Token usage reported by a provider, or approximated from text."""

    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}

    @classmethod
    def approximate(cls, request: ChatRequest, output_text: str) -> Usage:
        prompt_chars = sum(len(m.content) for m in request.conversation())
        return cls(
            input_tokens=approximate_tokens_from_chars(prompt_chars),
            output_tokens=approximate_tokens_from_chars(len(output_text)),
        )


def approximate_tokens_from_chars(n_chars: int) -> int:
    """Rough token estimate: about four characters per token."""
    if n_chars <= 0:
        return 0
    return int(math.ceil(n_chars / 4.0))


@dataclass
class ModelCatalog:
    """Static lookup of supported model ids and the provider serving each."""

    default_model: str
    primary_models: FrozenSet[str]
    alternate_models: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, config: AppConfig) -> ModelCatalog:
        return cls(
            default_model=config.default_model,
            primary_models=config.primary_models,
            alternate_models=config.alternate_models,
        )

    def is_supported(self, model_id: str) -> bool:
        return model_id in self.primary_models or model_id in self.alternate_models

    def provider_for(self, model_id: str) -> str:
        """Alternate allow-list routes to Gemini; everything else goes to Groq."""
        if model_id in self.alternate_models:
            return PROVIDER_ALTERNATE
        return PROVIDER_PRIMARY

    def to_dict(self, alternate_configured: bool) -> Dict[str, Any]:
        """Listing for the models endpoint."""
        return {
            "default_model": self.default_model,
            "providers": {
                PROVIDER_PRIMARY: {
                    "models": sorted(self.primary_models - self.alternate_models),
                    "configured": True,
                },
                PROVIDER_ALTERNATE: {
                    "models": sorted(self.alternate_models),
                    "configured": alternate_configured,
                },
            },
        }
