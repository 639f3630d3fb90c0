"""
Field rules used to coerce and validate update deltas.

Multipart forms deliver every field as text, so rules accept both the JSON
type and its textual form.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Optional

from sitebackend.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(
    r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)/?$", re.IGNORECASE
)

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}

PRIVACY_LEVELS = ("public", "private")

Rule = Callable[[str, Any], Any]


def text(max_length: int = 255, *, required: bool = False) -> Rule:
    def rule(name: str, value: Any) -> Any:
        if value is None:
            if required:
                raise ValidationError(f"{name} is required", field=name)
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string", field=name)
        value = value.strip()
        if required and not value:
            raise ValidationError(f"{name} is required", field=name)
        if len(value) > max_length:
            raise ValidationError(
                f"{name} must be at most {max_length} characters", field=name
            )
        return value

    return rule


def email(name: str, value: Any) -> str:
    if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
        raise ValidationError("Please provide a valid email address", field=name)
    return value.strip()


def url(name: str, value: Any) -> str:
    if not isinstance(value, str) or not URL_PATTERN.match(value.strip()):
        raise ValidationError("Please provide a valid URL", field=name)
    return value.strip()


def boolean(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ValidationError(f"{name} must be true or false", field=name)


def optional_int(minimum: Optional[int] = None) -> Rule:
    def rule(name: str, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValidationError(f"{name} must be an integer", field=name)
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be an integer", field=name)
        if isinstance(value, float) and number != value:
            raise ValidationError(f"{name} must be an integer", field=name)
        if minimum is not None and number < minimum:
            raise ValidationError(f"{name} must be >= {minimum}", field=name)
        return number

    return rule


def choice(options: Iterable[str]) -> Rule:
    allowed = tuple(options)

    def rule(name: str, value: Any) -> str:
        if value not in allowed:
            raise ValidationError(
                f"{name} must be one of: {', '.join(allowed)}", field=name
            )
        return value

    return rule


def privacy(fields: Iterable[str]) -> Rule:
    known = tuple(fields)

    def rule(name: str, value: Any) -> dict:
        if not isinstance(value, dict):
            raise ValidationError(f"{name} must be an object", field=name)
        cleaned = {}
        for key, level in value.items():
            if key not in known:
                continue
            if level not in PRIVACY_LEVELS:
                raise ValidationError(
                    f"{name}.{key} must be one of: {', '.join(PRIVACY_LEVELS)}",
                    field=name,
                )
            cleaned[key] = level
        return cleaned

    return rule
