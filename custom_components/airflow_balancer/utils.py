"""Shared helper utilities."""
from __future__ import annotations

from datetime import datetime
import math
from typing import Any


def is_fahrenheit_unit(unit: str | None) -> bool:
    """Return True if the unit represents Fahrenheit."""
    if not unit:
        return False
    normalized = "".join(ch for ch in unit.lower() if ch.isascii())
    return normalized in {"f", "degf", "fahrenheit"}


def coerce_float(value: Any) -> float | None:
    """Return a finite float or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def coerce_rate(value: Any) -> float | None:
    rate = coerce_float(value)
    if rate is None or rate < 0:
        return None
    return rate


def coerce_temperature(value: Any, unit: str | None) -> float | None:
    temp = coerce_float(value)
    if temp is None:
        return None
    if is_fahrenheit_unit(unit):
        return (temp - 32) * 5 / 9
    return temp


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
