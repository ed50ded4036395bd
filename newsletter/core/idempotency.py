"""
Idempotency key parsing for mutating admin requests.

Keys are opaque client tokens (the publish form embeds a UUID4). They are only
validated for shape: non-empty, bounded length, printable ASCII without
whitespace.
"""
import re
import uuid
from typing import Optional

from newsletter.config import settings
from newsletter.obs.errors import ValidationError

_KEY_PATTERN = re.compile(r"[\x21-\x7e]+")


class IdempotencyKey:
    """A validated idempotency key. Immutable once constructed."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        object.__setattr__(self, "_value", value)

    def __setattr__(self, name, value):
        raise AttributeError("IdempotencyKey is immutable")

    @classmethod
    def parse(cls, raw: Optional[str], max_length: Optional[int] = None) -> "IdempotencyKey":
        """
        Validate a raw client token.

        Args:
            raw: Token as received from the form
            max_length: Override for IDEMPOTENCY_KEY_MAX_LENGTH

        Raises:
            ValidationError: if the token is empty, too long or has invalid characters
        """
        max_length = max_length or settings.IDEMPOTENCY_KEY_MAX_LENGTH

        if not raw:
            raise ValidationError("The idempotency key cannot be empty")
        if len(raw) > max_length:
            raise ValidationError(
                f"The idempotency key must be at most {max_length} characters long"
            )
        if not _KEY_PATTERN.fullmatch(raw):
            raise ValidationError(
                "The idempotency key may only contain printable ASCII characters without whitespace"
            )
        return cls(raw)

    @property
    def value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"IdempotencyKey({self._value!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, IdempotencyKey) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)


def generate_idempotency_key() -> str:
    """Fresh key for a publish form."""
    return str(uuid.uuid4())
