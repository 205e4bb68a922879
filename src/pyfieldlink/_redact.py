"""Helpers for safe debug logging.

Command envelopes and device reports can carry credentials (APN, Wi-Fi and
hotspot passwords), subscriber numbers, and bulky bodies (base64 images,
file contents).  :func:`redact_for_log` returns a copy with those masked.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

# Any key containing one of these fragments is a credential.
_SECRET_FRAGMENTS: tuple[str, ...] = ("password", "passwd", "secret", "token", "psk", "authorization")

_SECRET_KEYS: frozenset[str] = frozenset({"pass", "pin", "puk"})

# Bodies that are summarized by size instead of printed.
_BULK_KEYS: frozenset[str] = frozenset({"image", "content", "data"})

# Subscriber numbers keep their last digits so log lines stay correlatable.
_NUMBER_KEYS: frozenset[str] = frozenset({"to", "from", "number", "sender", "phone"})
_NUMBER_VISIBLE = 4

REDACTED = "<redacted>"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_KEYS or any(fragment in lowered for fragment in _SECRET_FRAGMENTS)


def _mask_number(value: str) -> str:
    if len(value) <= _NUMBER_VISIBLE:
        return value
    return "*" * (len(value) - _NUMBER_VISIBLE) + value[-_NUMBER_VISIBLE:]


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for raw_key, item in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if _is_secret(key):
                redacted[key] = REDACTED
            elif lowered in _BULK_KEYS and isinstance(item, (str, bytes, bytearray)):
                redacted[key] = f"<{lowered}:{len(item)}>"
            elif lowered in _NUMBER_KEYS and isinstance(item, str):
                redacted[key] = _mask_number(item)
            else:
                redacted[key] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)
