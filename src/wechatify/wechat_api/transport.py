"""HTTP transport for the official-account platform API.

The transport performs exactly one HTTP exchange per :meth:`request` call;
retrying is the caller's decision (see
:func:`wechatify.wechat_api.media.upload_with_retry`).  Each request goes
through these steps:

1. Obtain an access token (cached; fetched on first use or after it was
   invalidated).
2. Send the request with ``access_token`` in the query string.
3. On ``2xx`` with ``errcode`` absent or ``0`` -- return the parsed JSON.
4. On a token-expiry ``errcode`` -- drop the cached token and raise
   :class:`WechatifyAuthError`.
5. On any other ``errcode`` or a non-``2xx`` status -- raise
   :class:`WechatifyAPIError`.
6. On timeout / connection failure -- raise :class:`WechatifyNetworkError`.
"""

from __future__ import annotations

import threading
import time
from typing import Any

import httpx

from wechatify.config import WechatifyConfig
from wechatify.errors import WechatifyAPIError, WechatifyAuthError, WechatifyNetworkError
from wechatify.observability import get_logger, resolve_metrics
from wechatify.utils.redact import redact_text

from .retries import TOKEN_EXPIRED_ERRCODES

log = get_logger("wechatify.transport")

# Refresh a little before the platform's stated expiry.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _decode_body(response: httpx.Response, method: str, path: str) -> dict[str, Any]:
    """Parse a JSON object body or raise :class:`WechatifyAPIError`."""
    try:
        body = response.json()
    except ValueError as exc:
        raise WechatifyAPIError(
            message=f"Malformed response on {method} {path}: {response.text[:200]}",
            context={"status_code": response.status_code, "path": path},
            cause=exc,
        ) from exc
    if not isinstance(body, dict):
        raise WechatifyAPIError(
            message=f"Unexpected response shape on {method} {path}",
            context={"status_code": response.status_code, "path": path},
        )
    return body


def _raise_for_errcode(body: dict[str, Any], status: int, method: str, path: str) -> None:
    """Raise the matching error if *body* carries a non-zero ``errcode``."""
    errcode = body.get("errcode")
    if errcode in (None, 0):
        return
    errmsg = body.get("errmsg", "")
    ctx = {"status_code": status, "errcode": errcode, "errmsg": errmsg, "path": path}
    if errcode in TOKEN_EXPIRED_ERRCODES:
        raise WechatifyAuthError(
            message=f"Access token rejected on {method} {path}: {errcode} {errmsg}",
            context=ctx,
        )
    raise WechatifyAPIError(
        message=f"Platform error on {method} {path}: {errcode} {errmsg}",
        context=ctx,
    )


def _raise_for_status(response: httpx.Response, method: str, path: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    raise WechatifyAPIError(
        message=f"HTTP {status} on {method} {path}: {response.text[:200]}",
        context={"status_code": status, "path": path},
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class WechatTransport:
    """Synchronous platform transport with access-token caching.

    Thread-safe: a single instance may be shared by concurrent pipeline
    runs.  The token cache is guarded by its own lock.

    Parameters
    ----------
    config:
        Supplies credentials, base URL, timeout, and proxy.
    client:
        Optional pre-built :class:`httpx.Client` (tests inject one backed
        by :class:`httpx.MockTransport`).  Its ``base_url`` should point at
        the platform root.
    """

    def __init__(self, config: WechatifyConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._metrics = resolve_metrics(config.metrics)
        self._client = client or httpx.Client(
            base_url=config.wechat_base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            proxy=config.http_proxy,
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # -- access token --------------------------------------------------------

    def access_token(self) -> str:
        """Return a cached access token, fetching a new one when needed.

        Raises
        ------
        WechatifyConfigError
            If the AppID or secret is missing (no request is sent).
        WechatifyAuthError
            If the platform rejects the credentials.
        WechatifyNetworkError
            On transport failure.
        """
        with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token

            self._config.validate_for_upload()
            body = self._send(
                "GET",
                "/cgi-bin/token",
                params={
                    "grant_type": "client_credential",
                    "appid": self._config.wechat_appid,
                    "secret": self._config.wechat_secret,
                },
            )
            token = body.get("access_token")
            if not token:
                raise WechatifyAuthError(
                    message="Token endpoint returned no access_token",
                    context={"errcode": body.get("errcode"), "errmsg": body.get("errmsg")},
                )
            expires_in = float(body.get("expires_in", 7200))
            self._token = token
            self._token_expires_at = (
                time.monotonic() + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0.0)
            )
            log.debug(
                "Fetched access token",
                extra={"extra_fields": {"op": "access_token", "expires_in": expires_in}},
            )
            return token

    def invalidate_token(self) -> None:
        """Drop the cached access token so the next request fetches a new one."""
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    # -- requests ------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one authenticated request to the platform.

        Parameters
        ----------
        method:
            HTTP method.
        path:
            API path relative to ``wechat_base_url``
            (e.g. ``/cgi-bin/material/add_material``).
        **kwargs:
            Forwarded to :meth:`httpx.Client.request`.  ``params`` are
            merged with the access token.

        Returns
        -------
        dict
            Parsed JSON response body.
        """
        params = dict(kwargs.pop("params", None) or {})
        params["access_token"] = self.access_token()
        try:
            return self._send(method, path, params=params, **kwargs)
        except WechatifyAuthError:
            self.invalidate_token()
            raise

    def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            response = self._client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            log.warning(
                "Request network error",
                extra={"extra_fields": {
                    "op": "request",
                    "method": method,
                    "path": path,
                    "error": redact_text(str(exc)),
                }},
            )
            raise WechatifyNetworkError(
                message=f"Network error on {method} {path}: {redact_text(str(exc))}",
                context={"url": path},
                cause=exc,
            ) from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        self._metrics.timing(
            "wechatify.request_duration_ms",
            elapsed_ms,
            tags={"method": method, "path": path, "status": str(response.status_code)},
        )
        log.debug(
            "Request complete",
            extra={"extra_fields": {
                "op": "request",
                "method": method,
                "url": str(response.url),
                "status_code": response.status_code,
                "elapsed_ms": round(elapsed_ms, 1),
            }},
        )

        _raise_for_status(response, method, path)
        body = _decode_body(response, method, path)
        _raise_for_errcode(body, response.status_code, method, path)
        return body

    # -- lifecycle -----------------------------------------------------------

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> WechatTransport:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
