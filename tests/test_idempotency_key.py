"""
Tests for idempotency key parsing.
"""
import pytest

from newsletter.core.idempotency import IdempotencyKey, generate_idempotency_key
from newsletter.obs.errors import ValidationError


class TestIdempotencyKeyParse:
    """Shape validation of client supplied keys."""

    def test_accepts_uuid(self):
        raw = "6f1c1f2e-4b9b-4c8e-9f2d-0f3a1b2c3d4e"
        key = IdempotencyKey.parse(raw)
        assert str(key) == raw
        assert key.value == raw

    def test_accepts_key_at_max_length(self):
        key = IdempotencyKey.parse("a" * 200)
        assert len(str(key)) == 200

    @pytest.mark.parametrize("raw", ["", None])
    def test_rejects_empty_key(self, raw):
        with pytest.raises(ValidationError, match="cannot be empty"):
            IdempotencyKey.parse(raw)

    def test_rejects_over_length_key(self):
        with pytest.raises(ValidationError, match="at most 200"):
            IdempotencyKey.parse("a" * 201)

    @pytest.mark.parametrize("raw", ["abc 123", "abc\n", "\tabc", "café", "abc\x00"])
    def test_rejects_whitespace_and_non_ascii(self, raw):
        with pytest.raises(ValidationError):
            IdempotencyKey.parse(raw)

    def test_custom_max_length(self):
        assert str(IdempotencyKey.parse("abcd", max_length=4)) == "abcd"
        with pytest.raises(ValidationError):
            IdempotencyKey.parse("abcde", max_length=4)

    def test_keys_compare_by_value(self):
        assert IdempotencyKey.parse("abc123") == IdempotencyKey.parse("abc123")
        assert IdempotencyKey.parse("abc123") != IdempotencyKey.parse("abc124")
        assert len({IdempotencyKey.parse("abc123"), IdempotencyKey.parse("abc123")}) == 1

    def test_key_is_immutable(self):
        key = IdempotencyKey.parse("abc123")
        with pytest.raises(AttributeError):
            key._value = "other"


class TestGenerateIdempotencyKey:

    def test_generated_keys_are_valid_and_unique(self):
        first = generate_idempotency_key()
        second = generate_idempotency_key()
        assert first != second
        assert str(IdempotencyKey.parse(first)) == first
