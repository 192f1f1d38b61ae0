"""
Rate-limit signature detection.

Exchanges report throttling as HTTP 429, as an error payload, or only in an
exception message; all of them route to scheduler backoff.
"""

from __future__ import annotations

from typing import Any

import httpx

from reconciler.errors import RateLimitError

RATE_LIMIT_SIGNATURES = ("rate limit", "ratelimit", "too many requests", "429")


def looks_rate_limited(message: Any) -> bool:
    text = str(message or "").lower()
    return any(sig in text for sig in RATE_LIMIT_SIGNATURES)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if status == 429:
        return True
    return looks_rate_limited(exc)
