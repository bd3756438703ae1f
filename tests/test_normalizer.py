"""
Tests for request validation and normalization.

Tests cover:
- Message validation
- Parameter coercion and clamping
- History filtering
- Model resolution policy
"""

import pytest

from errors import ValidationError
from models import FORMAT_JSON, FORMAT_TEXT, ChatMessage, ModelCatalog
from normalizer import (
    RequestNormalizer,
    clamp_number,
    coerce_number,
    coerce_positive_int,
    normalize_history,
)


@pytest.fixture
def normalizer(test_config):
    return RequestNormalizer(ModelCatalog.from_config(test_config), test_config.default_system_prompt)


class TestCoercion:
    def test_coerce_number(self):
        assert coerce_number(1) == 1.0
        assert coerce_number(0.5) == 0.5
        assert coerce_number(" 1.5 ") == 1.5
        assert coerce_number("abc") is None
        assert coerce_number(None) is None
        assert coerce_number(True) is None
        assert coerce_number([1]) is None
        assert coerce_number(float("nan")) is None
        assert coerce_number("inf") is None

    @pytest.mark.parametrize(
        "raw,expected",
        [(-1, 0.0), (0, 0.0), (0.7, 0.7), (2, 2.0), (3.5, 2.0), ("9", 2.0), ("hot", 1.0), (None, 1.0)],
    )
    def test_clamp_temperature(self, raw, expected):
        assert clamp_number(raw, (0.0, 2.0), 1.0) == expected

    @pytest.mark.parametrize("raw,expected", [(-0.1, 0.0), (0.3, 0.3), (1.5, 1.0), ({}, 1.0)])
    def test_clamp_top_p(self, raw, expected):
        assert clamp_number(raw, (0.0, 1.0), 1.0) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [(512, 512), ("256", 256), (100.0, 100), (10.5, 1024), (0, 1024), (-5, 1024), ("many", 1024), (False, 1024)],
    )
    def test_coerce_positive_int(self, raw, expected):
        assert coerce_positive_int(raw, 1024) == expected

    def test_integers_past_float_range(self, normalizer):
        huge = 10**400
        assert coerce_number(huge) is None
        assert clamp_number(huge, (0.0, 2.0), 1.0) == 2.0
        assert clamp_number(-huge, (0.0, 1.0), 1.0) == 0.0
        assert coerce_positive_int(huge, 1024) == 1024

        req = normalizer.normalize({"message": "Hi", "temperature": huge, "top_p": -huge, "max_tokens": huge})
        assert req.temperature == 2.0
        assert req.top_p == 0.0
        assert req.max_tokens == 1024


class TestHistory:
    def test_drops_unknown_roles_and_keeps_order(self):
        raw = [
            {"role": "user", "content": "A"},
            {"role": "bot", "content": "B"},
            {"role": "assistant", "content": "C"},
            {"role": "system", "content": "D"},
            {"role": "user", "content": "E"},
        ]
        assert normalize_history(raw) == (
            ChatMessage("user", "A"),
            ChatMessage("assistant", "C"),
            ChatMessage("system", "D"),
            ChatMessage("user", "E"),
        )

    def test_drops_malformed_entries(self):
        raw = [
            {"role": "user"},
            {"content": "no role"},
            {"role": "user", "content": 42},
            {"role": "user", "content": "   "},
            "just a string",
            None,
            {"role": "assistant", "content": "kept"},
        ]
        assert normalize_history(raw) == (ChatMessage("assistant", "kept"),)

    def test_non_list_history_is_empty(self):
        assert normalize_history(None) == ()
        assert normalize_history({"role": "user", "content": "A"}) == ()
        assert normalize_history("A") == ()


class TestRequestNormalizer:
    def test_defaults(self, normalizer):
        req = normalizer.normalize({"message": "Hello"})
        assert req.message == "Hello"
        assert req.model == "compound-beta"
        assert req.system == "You are a helpful AI assistant."
        assert req.history == ()
        assert req.temperature == 1.0
        assert req.top_p == 1.0
        assert req.max_tokens == 1024
        assert req.format == FORMAT_TEXT

    @pytest.mark.parametrize("message", [None, "", "   ", "\n\t", 42, ["Hi"]])
    def test_message_required(self, normalizer, message):
        payload = {} if message is None else {"message": message}
        with pytest.raises(ValidationError, match="message required") as exc:
            normalizer.normalize(payload)
        assert exc.value.status_code == 400

    def test_non_object_payload(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize(["message", "Hi"])

    def test_parameters_clamped(self, normalizer):
        req = normalizer.normalize(
            {"message": "Hi", "temperature": 7, "top_p": -3, "max_completion_tokens": "2048"}
        )
        assert req.temperature == 2.0
        assert req.top_p == 0.0
        assert req.max_tokens == 2048

    def test_parameter_aliases(self, normalizer):
        req = normalizer.normalize({"message": "Hi", "topP": 0.4, "maxTokens": 64})
        assert req.top_p == 0.4
        assert req.max_tokens == 64

    def test_format(self, normalizer):
        assert normalizer.normalize({"message": "Hi", "format": "JSON"}).format == FORMAT_JSON
        assert normalizer.normalize({"message": "Hi", "format": "xml"}).format == FORMAT_TEXT

    def test_custom_system(self, normalizer):
        assert normalizer.normalize({"message": "Hi", "system": "Be terse."}).system == "Be terse."
        assert normalizer.normalize({"message": "Hi", "system": "  "}).system == "You are a helpful AI assistant."

    def test_known_models(self, normalizer):
        assert normalizer.normalize({"message": "Hi", "model": "llama-3.1-8b-instant"}).model == "llama-3.1-8b-instant"
        assert normalizer.normalize({"message": "Hi", "model": " gemini-2.0-flash "}).model == "gemini-2.0-flash"
        assert normalizer.normalize({"message": "Hi", "model": ""}).model == "compound-beta"

    @pytest.mark.parametrize("model", ["gpt-4o", "GEMINI-2.0-FLASH", 7])
    def test_unknown_model_rejected(self, normalizer, model):
        with pytest.raises(ValidationError, match="invalid model"):
            normalizer.normalize({"message": "Hi", "model": model})

    def test_conversation_order(self, normalizer):
        req = normalizer.normalize(
            {
                "message": "Hi",
                "history": [{"role": "user", "content": "A"}, {"role": "bot", "content": "B"}],
            }
        )
        assert [m.to_dict() for m in req.conversation()] == [
            {"role": "system", "content": "You are a helpful AI assistant."},
            {"role": "user", "content": "A"},
            {"role": "user", "content": "Hi"},
        ]
