"""Input normalisation shared by the report queue and the action ledger."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Type, TypeVar

from app.moderation.domain.exceptions import ValidationFailed

Clock = Callable[[], datetime]

E = TypeVar("E", bound=Enum)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

MAX_REASON_LENGTH = 1000
MAX_DESCRIPTION_LENGTH = 1000
MAX_NOTES_LENGTH = 5000
MAX_NOTIFICATION_LENGTH = 2000
MAX_DURATION_DAYS = 365


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_text(
    field: str,
    value: Optional[str],
    *,
    max_length: int,
    required: bool = False,
) -> Optional[str]:
    """Strip control characters and surrounding whitespace, then enforce bounds."""
    text = _CONTROL_CHARS.sub("", value).strip() if value is not None else ""
    if not text:
        if required:
            raise ValidationFailed(field, "required")
        return None
    if len(text) > max_length:
        raise ValidationFailed(field, f"at most {max_length} characters")
    return text


def parse_enum(enum_cls: Type[E], field: str, value: object) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationFailed(field, f"one of: {allowed}") from None


def check_range(field: str, value: Optional[int], *, low: int, high: int) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(field, "integer")
    if value < low or value > high:
        raise ValidationFailed(field, f"between {low} and {high}")
    return value
