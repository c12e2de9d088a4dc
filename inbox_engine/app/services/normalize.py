from __future__ import annotations

import re
from typing import Iterable, Optional

MIN_PHONE_DIGITS = 10
ERROR_TEXT_LIMIT = 1000
PREVIEW_LIMIT = 280

_NON_DIGITS = re.compile(r"\D+")


def optional_text(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def digits_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_DIGITS.sub("", str(value))


def sanitize_phone(value: Optional[str]) -> Optional[str]:
    digits = digits_only(value)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"+{digits}"


def chat_handle_key(chat_handle: str) -> str:
    """Strip a provider `@domain` suffix and prefer the normalized phone as the key."""
    trimmed = chat_handle.strip()
    local_part = trimmed.split("@", 1)[0]
    return sanitize_phone(local_part) or trimmed


def normalize_external_id(value: Optional[str]) -> Optional[str]:
    return optional_text(value)


def truncate_error(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if len(trimmed) > ERROR_TEXT_LIMIT:
        return trimmed[: ERROR_TEXT_LIMIT - 3] + "..."
    return trimmed


def dedupe_strings(values: Iterable[object]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        output.append(trimmed)
    return output


def preview_text(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value[:PREVIEW_LIMIT]
