"""Failure classification and retry scheduling.

``classify`` turns whatever went wrong (an HTTP status, an exception raised by
the transport, relay or parser) into a ``ValidationError`` from a closed set of
kinds.  Precedence:

1. an explicit HTTP status code,
2. structured error codes (``error_kind`` on our own exceptions, then httpx /
   asyncio exception types),
3. substring matching on the exception message,
4. ``unknown_error``.

Step 3 is a heuristic kept for errors raised by code we do not control; it is
not a contract.
"""

from __future__ import annotations

import asyncio
import random
from typing import Callable, Optional

import httpx

from feedcheck.main.models import ErrorContext, ErrorKind, ValidationError


class FetchError(Exception):
    """Base exception for transport and relay failures."""

    error_kind = ErrorKind.NETWORK


class FetchTimeoutError(FetchError):
    """The request did not complete within its per-attempt timeout."""

    error_kind = ErrorKind.TIMEOUT


class RelayExhaustedError(FetchError):
    """Every relay in the pool failed (or none was available)."""

    error_kind = ErrorKind.NETWORK


class FeedContentError(Exception):
    """The response arrived but is not a usable feed."""

    def __init__(self, message: str, error_kind: ErrorKind = ErrorKind.PARSE):
        super().__init__(message)
        self.error_kind = error_kind


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER, ErrorKind.UNKNOWN}
)
RETRYABLE_STATUS_CODES = frozenset({408, 429})

SUGGESTIONS = {
    ErrorKind.NETWORK: (
        "Check your internet connection",
        "Verify the URL is spelled correctly",
        "The server may be temporarily unreachable, try again later",
    ),
    ErrorKind.CROSS_ORIGIN: (
        "The site blocks cross-origin requests; a relay will be used when available",
        "Ask the site owner to enable CORS for the feed",
        "Try the feed URL directly instead of the website URL",
    ),
    ErrorKind.TIMEOUT: (
        "The server is responding slowly, try again later",
        "Check whether the feed is unusually large",
    ),
    ErrorKind.PARSE: (
        "The feed contains malformed XML",
        "Validate the feed with an online feed validator",
        "Contact the site owner about the broken feed",
    ),
    ErrorKind.INVALID_FORMAT: (
        "The URL does not point to an RSS, Atom or RDF feed",
        "Look for an RSS or Feed link on the website",
        "Try feed discovery on the website URL",
    ),
    ErrorKind.NOT_FOUND: (
        "Check the URL for typos",
        "The feed may have moved; look for a new link on the website",
        "Try feed discovery on the website's home page",
    ),
    ErrorKind.SERVER: (
        "The server had an internal error, try again later",
        "If the problem persists, contact the site owner",
    ),
    ErrorKind.UNKNOWN: (
        "Try again in a few moments",
        "Verify the URL points to a feed",
    ),
}

_CROSS_ORIGIN_MARKERS = ("cors", "cross-origin", "cross origin", "access-control")
_TIMEOUT_MARKERS = ("timeout", "timed out", "abort")
_NETWORK_MARKERS = ("network", "fetch", "connection", "dns", "unreachable")


def classify(
    error: Optional[BaseException] = None,
    *,
    status_code: Optional[int] = None,
    url: Optional[str] = None,
    method: Optional[str] = None,
    attempt: Optional[int] = None,
) -> ValidationError:
    """Map a raw failure to a ``ValidationError``.

    Pass either an exception, an HTTP ``status_code``, or both; the status code
    wins when present.
    """
    context = ErrorContext(url=url, method=method, attempt=attempt, status_code=status_code)

    if status_code is not None:
        kind, retryable = _classify_status(status_code)
        return build_error(kind, f"HTTP {status_code}: {_reason(status_code)}", context, retryable)

    if error is None:
        return build_error(ErrorKind.UNKNOWN, "Unknown error", context)

    message = str(error) or type(error).__name__

    kind = getattr(error, "error_kind", None)
    if isinstance(kind, ErrorKind):
        return build_error(kind, message, context)

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return build_error(ErrorKind.TIMEOUT, "Validation timed out", context)
    if isinstance(error, httpx.TransportError):
        return build_error(ErrorKind.NETWORK, f"Network error: {message}", context)

    lowered = message.lower()
    if any(marker in lowered for marker in _CROSS_ORIGIN_MARKERS):
        return build_error(ErrorKind.CROSS_ORIGIN, message, context)
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return build_error(ErrorKind.TIMEOUT, "Validation timed out", context)
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return build_error(ErrorKind.NETWORK, "Network error occurred while fetching the feed", context)

    return build_error(ErrorKind.UNKNOWN, message, context)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    cap: float = 10.0,
    jitter: float = 0.5,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retrying after attempt *attempt* (1-indexed).

    ``base * 2**(attempt-1)`` plus up to *jitter* seconds of random spread,
    never more than *cap*.
    """
    delay = base * (2 ** (max(attempt, 1) - 1)) + rng() * jitter
    return min(delay, cap)


def _classify_status(status_code: int) -> tuple[ErrorKind, bool]:
    if status_code == 404:
        return ErrorKind.NOT_FOUND, False
    if status_code >= 500:
        return ErrorKind.SERVER, True
    if status_code in (401, 403):
        return ErrorKind.CROSS_ORIGIN, False
    return ErrorKind.NETWORK, status_code in RETRYABLE_STATUS_CODES


def build_error(
    kind: ErrorKind,
    message: str,
    context: Optional[ErrorContext] = None,
    retryable: Optional[bool] = None,
) -> ValidationError:
    """Build a ``ValidationError`` carrying the stock suggestions for *kind*."""
    return ValidationError(
        kind=kind,
        message=message,
        suggestions=SUGGESTIONS[kind],
        retryable=is_retryable(kind) if retryable is None else retryable,
        context=context or ErrorContext(),
    )


def _reason(status_code: int) -> str:
    return httpx.codes.get_reason_phrase(status_code) or "Error"
