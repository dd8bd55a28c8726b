from __future__ import annotations

import math
import re
from typing import Any

_COLON_RE = re.compile(r"^(\d{1,2}):(\d{1,2})$")
_UNIT_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(days?|d|hours?|hrs?|h|minutes?|mins?|m)\b"
)


def _numeric_token(value: str) -> float | None:
    try:
        parsed = float(value.replace(",", ".").strip())
    except ValueError:
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return parsed


def _colon_hours(value: str) -> float | None:
    match = _COLON_RE.match(value.strip())
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if minutes >= 60:
        return None
    total = hours + minutes / 60
    return total if total > 0 else None


def _text_to_hours(value: str) -> float | None:
    normalized = " ".join(value.lower().strip().replace(",", ".").split())
    if not normalized:
        return None

    direct = _numeric_token(normalized)
    if direct is not None:
        return direct

    colon = _colon_hours(normalized)
    if colon is not None:
        return colon

    total = 0.0
    matched = False
    for amount_text, unit in _UNIT_RE.findall(normalized):
        amount = float(amount_text)
        if amount <= 0:
            continue
        matched = True
        if unit.startswith("d"):
            total += amount * 24
        elif unit.startswith("h"):
            total += amount
        else:
            total += amount / 60

    if not matched or total <= 0:
        return None
    return total


def _positive_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value) and value > 0:
        return float(value)
    return None


def parse_hours(value: Any) -> float | None:
    """Parse a duration into hours.

    Numbers are taken as hours already. Strings may be bare numbers ("2,5"),
    colon times ("1:30") or unit expressions ("1 day 3h", "45 minutes").
    Returns None when nothing positive can be read.
    """
    if isinstance(value, str):
        return _text_to_hours(value)
    return _positive_number(value)


def parse_days(value: Any) -> float | None:
    """Parse a duration into days. Numbers are taken as days already."""
    if isinstance(value, str):
        hours = _text_to_hours(value)
        return None if hours is None else hours / 24
    return _positive_number(value)


def to_finite(value: Any) -> float | None:
    """Coerce a JSON number or numeric string into a finite float."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3), unlike ``round``."""
    return math.floor(value + 0.5)
