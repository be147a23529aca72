"""Credential redaction for safe logging.

Before any request detail is written to logs :func:`redact` is applied.
It enforces the following rules:

* **Credential-named keys** (``secret``, ``api_key``, ``access_token``,
  ``authorization`` ...) have their values masked.
* **Query-string credentials** such as ``?access_token=...`` or
  ``&secret=...`` inside any string value are replaced by ``<redacted>``.
  The platform API passes its access token in the URL, so every logged URL
  needs this.
* **Bearer tokens** in header-like strings are masked.
* **Raw bytes** are replaced with ``<binary:N_bytes>``.
"""

from __future__ import annotations

import re
from typing import Any

# Substrings: if any of these appear in a key name (case-insensitive), the
# value is redacted.
_SENSITIVE_KEY_PATTERNS: frozenset[str] = frozenset({
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "api_key",
    "api-key",
})

_QUERY_SECRET_RE = re.compile(
    r"(?P<key>[?&](?:access_token|secret|appsecret|api_key|key)=)[^&#\s]*",
    re.IGNORECASE,
)

_BEARER_RE = re.compile(r"(Bearer\s+)\S+")


def redact_text(value: str) -> str:
    """Scrub query-string credentials and bearer tokens from *value*."""
    value = _QUERY_SECRET_RE.sub(lambda m: f"{m.group('key')}<redacted>", value)
    return _BEARER_RE.sub(lambda m: f"{m.group(1)}<redacted>", value)


def _redact_value(value: Any) -> Any:
    """Redact a single value (recursive for dicts / lists)."""
    if isinstance(value, dict):
        return _redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (bytes, bytearray)):
        return f"<binary:{len(value)}_bytes>"
    return value


def _redact_dict(d: dict) -> dict:
    result: dict = {}
    for key, value in d.items():
        key_lower = key.lower() if isinstance(key, str) else ""
        if any(pat in key_lower for pat in _SENSITIVE_KEY_PATTERNS) and value:
            result[key] = "<redacted>"
        else:
            result[key] = _redact_value(value)
    return result


def redact(payload: dict) -> dict:
    """Return a deep copy of *payload* with credentials removed.

    Parameters
    ----------
    payload:
        The dictionary to sanitize (structured log fields, request
        metadata).

    Returns
    -------
    dict
        A new dictionary (containers are rebuilt); the original *payload*
        is never mutated.

    Examples
    --------
    >>> redact({"url": "https://api.example.com/x?access_token=abc&type=image"})
    {'url': 'https://api.example.com/x?access_token=<redacted>&type=image'}

    >>> redact({"wechat_secret": "s3cr3t"})
    {'wechat_secret': '<redacted>'}
    """
    return _redact_dict(payload)
