"""Permanent-material upload and the bounded retry loop around it.

:class:`MediaAPI` wraps the platform's image material endpoint (one HTTP
call per :meth:`MediaAPI.add_material`).  :func:`upload_with_retry` drives
it under a :class:`~wechatify.models.RetryPolicy`:

* every attempt performs exactly one upload call;
* retryable failures sleep for the policy's backoff and try again, up to
  ``max_attempts`` calls in total;
* a fatal failure stops at once;
* both exhaustion and a fatal stop raise
  :class:`~wechatify.errors.WechatifyUploadExhaustedError` chaining the last
  underlying error.

Uploads are not deduplicated by the platform.  Never call
:func:`upload_with_retry` again for an image it already returned a result
for.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from wechatify.errors import WechatifyAPIError, WechatifyUploadExhaustedError
from wechatify.models import ImageFormat, RetryDecision, RetryPolicy, UploadResult
from wechatify.observability import get_logger, resolve_metrics

from .retries import classify_upload_error, compute_backoff
from .transport import WechatTransport

log = get_logger("wechatify.media")

ADD_MATERIAL_PATH = "/cgi-bin/material/add_material"


class MediaAPI:
    """Synchronous wrapper for the image material endpoint.

    Parameters
    ----------
    transport:
        A configured :class:`WechatTransport`.
    """

    def __init__(self, transport: WechatTransport) -> None:
        self._transport = transport

    def add_material(self, path: str, image_format: ImageFormat) -> dict[str, Any]:
        """Upload the file at *path* as a permanent image material.

        Parameters
        ----------
        path:
            Local file to send.
        image_format:
            Declared format; sets the multipart MIME type and file name
            extension.

        Returns
        -------
        dict
            The response body, including ``media_id`` and ``url``.
        """
        name = Path(path).stem + image_format.extension
        with open(path, "rb") as fh:
            return self._transport.request(
                "POST",
                ADD_MATERIAL_PATH,
                params={"type": "image"},
                files={"media": (name, fh, image_format.mime_type)},
            )


def _to_result(body: dict[str, Any]) -> UploadResult:
    """Build an :class:`UploadResult` or raise if the body lacks a media id or URL."""
    for key in ("media_id", "url"):
        if not body.get(key):
            raise WechatifyAPIError(
                message=f"Upload response carried no {key}",
                context={"errcode": body.get("errcode"), "body_keys": sorted(body)},
            )
    return UploadResult(media_id=body["media_id"], hosted_url=body["url"])


def upload_with_retry(
    media_api: MediaAPI,
    path: str,
    image_format: ImageFormat,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    metrics: object | None = None,
) -> UploadResult:
    """Upload *path*, retrying transient failures under *policy*.

    Parameters
    ----------
    media_api:
        The media endpoint wrapper.
    path:
        Local file to upload.
    image_format:
        Declared format of the file.
    policy:
        Attempt bound, backoff shape, and classifier.
    sleep:
        Called with the backoff delay between attempts.
    metrics:
        Optional :class:`~wechatify.observability.MetricsHook`.

    Returns
    -------
    UploadResult
        The first successful attempt's result.

    Raises
    ------
    WechatifyUploadExhaustedError
        When every attempt failed with a retryable error, or any attempt
        failed with a fatal one.  ``cause`` is the last underlying error.
    """
    hook = resolve_metrics(metrics)
    classifier = policy.classifier or classify_upload_error
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        hook.increment("wechatify.upload_attempts_total")
        try:
            result = _to_result(media_api.add_material(path, image_format))
        except Exception as exc:
            last_error = exc
            decision = classifier(exc)
            log.warning(
                "Upload attempt failed",
                extra={"extra_fields": {
                    "op": "upload",
                    "path": path,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "decision": decision.value,
                    "error": str(exc),
                }},
            )
            if decision is RetryDecision.FATAL:
                hook.increment("wechatify.upload_failure_total", tags={"reason": "fatal"})
                raise WechatifyUploadExhaustedError(
                    message=f"Upload of {Path(path).name} failed with a fatal error: {exc}",
                    context={
                        "path": path,
                        "attempts": attempt,
                        "max_attempts": policy.max_attempts,
                        "reason": "fatal",
                    },
                    cause=exc,
                ) from exc

            if attempt < policy.max_attempts:
                delay = compute_backoff(attempt, policy)
                hook.increment(
                    "wechatify.upload_retries_total",
                    tags={"reason": type(exc).__name__},
                )
                sleep(delay)
            continue

        hook.increment("wechatify.upload_success_total")
        log.info(
            "Image uploaded",
            extra={"extra_fields": {
                "op": "upload",
                "path": path,
                "attempt": attempt,
                "media_id": result.media_id,
            }},
        )
        return result

    hook.increment("wechatify.upload_failure_total", tags={"reason": "exhausted"})
    raise WechatifyUploadExhaustedError(
        message=(
            f"All {policy.max_attempts} upload attempts exhausted for "
            f"{Path(path).name} (last error: {last_error})"
        ),
        context={
            "path": path,
            "attempts": policy.max_attempts,
            "max_attempts": policy.max_attempts,
            "reason": "exhausted",
        },
        cause=last_error,
    ) from last_error
