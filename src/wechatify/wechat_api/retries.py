"""Retry classification and backoff computation for media uploads.

This module provides two pure functions used by
:func:`wechatify.wechat_api.media.upload_with_retry`:

* :func:`classify_upload_error` -- label a failed attempt retryable or fatal.
* :func:`compute_backoff` -- compute the delay before the next attempt.
"""

from __future__ import annotations

import random

import httpx

from wechatify.errors import WechatifyAPIError, WechatifyAuthError, WechatifyNetworkError
from wechatify.models import RetryDecision, RetryPolicy

# HTTP status codes that are safe to retry.
_RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# Platform errcodes that are transient: "system busy" and the access-token
# invalid / expired family (a fresh token is fetched on the next attempt).
RETRYABLE_ERRCODES: frozenset[int] = frozenset({-1, 40001, 40014, 42001})

# Platform errcodes that signal the access token must be refreshed.
TOKEN_EXPIRED_ERRCODES: frozenset[int] = frozenset({40001, 40014, 42001})

# Network-level exceptions that warrant a retry.
_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
)


def classify_upload_error(exc: Exception) -> RetryDecision:
    """Decide whether an upload attempt that raised *exc* may be retried.

    Retryable: network errors, 5xx / 429 responses, platform "system
    busy", and access-token expiry.  Everything else is fatal, notably
    malformed files (``40004``-``40009``), size limits (``45001``) and
    quota exhaustion (``45007``, ``45009``).

    Parameters
    ----------
    exc:
        The exception raised by a single upload attempt.

    Returns
    -------
    RetryDecision
    """
    if isinstance(exc, WechatifyNetworkError):
        return RetryDecision.RETRYABLE

    if isinstance(exc, (WechatifyAPIError, WechatifyAuthError)):
        errcode = exc.context.get("errcode")
        if errcode is not None:
            return (
                RetryDecision.RETRYABLE
                if errcode in RETRYABLE_ERRCODES
                else RetryDecision.FATAL
            )
        if exc.context.get("status_code") in _RETRYABLE_STATUSES:
            return RetryDecision.RETRYABLE
        return RetryDecision.FATAL

    if isinstance(exc, _RETRYABLE_EXCEPTIONS):
        return RetryDecision.RETRYABLE

    return RetryDecision.FATAL


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Compute the delay after failed attempt number *attempt* (1-indexed).

    * ``fixed`` -- ``base_delay``
    * ``linear`` -- ``base_delay * attempt``
    * ``exponential`` -- ``base_delay * 2^(attempt - 1)``

    The delay is capped at ``max_delay``.  With ``jitter`` it is randomly
    scaled to between 50 % and 100 % of its value.

    Parameters
    ----------
    attempt:
        The attempt that just failed (the first call is ``1``).
    policy:
        The retry policy of the current run.

    Returns
    -------
    float
        Delay in seconds before the next attempt.
    """
    if policy.backoff == "fixed":
        delay = policy.base_delay
    elif policy.backoff == "linear":
        delay = policy.base_delay * attempt
    else:
        delay = policy.base_delay * (2 ** (attempt - 1))

    delay = min(delay, policy.max_delay)

    if policy.jitter:
        delay *= 0.5 + random.random() * 0.5

    return delay
