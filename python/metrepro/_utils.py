"""Number parsing/formatting, id generation and settings merge helpers."""

from __future__ import annotations

import math
import re
import time
import uuid
from typing import Any

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")


def is_valid_id(value: str) -> bool:
    """Node and row ids are plain ``[A-Za-z0-9_-]`` tokens."""
    return bool(_ID_RE.match(value))


def generate_id(prefix: str = "id") -> str:
    """``id_<millis>_<random>``, same shape as the ids the editor produces."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def parse_number(value: Any) -> float | None:
    """Parse a literal quantity typed by the user.

    Accepts ints/floats and strings; a single decimal comma is read as a
    dot (``"3,5"`` -> 3.5).  Returns None when *value* is not a plain finite
    number.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.count(",") == 1 and "." not in text:
        text = text.replace(",", ".")
    if not _NUMBER_RE.match(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def format_number(value: float | None, decimals: int = 2, separator: str = ".") -> str:
    """Round for display only; ``''`` for missing or non-finite values."""
    if value is None or not math.isfinite(value):
        return ""
    text = f"{value:.{decimals}f}"
    if separator != ".":
        text = text.replace(".", separator)
    return text


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *source* over *target* without mutating either."""
    output = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(output.get(key), dict):
            output[key] = deep_merge(output[key], value)
        else:
            output[key] = value
    return output
