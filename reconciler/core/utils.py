"""
Utility helpers.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(out) else out


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Normalize an exchange timestamp to epoch milliseconds.

    Accepts epoch seconds/ms/us as numbers or numeric strings and ISO-8601
    strings (naive values are UTC). Returns None when unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        try:
            num = float(text)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
    if num > 1e14:  # microseconds
        return int(num / 1000)
    if num > 1e11:  # milliseconds
        return int(num)
    return int(num * 1000)


def round_price(px: float, decimals: int) -> float:
    return round(px, max(0, decimals))


def format_decimal(value: float, decimals: int) -> str:
    """Fixed-point string as exchanges expect in order bodies."""
    return f"{value:.{max(0, decimals)}f}"
