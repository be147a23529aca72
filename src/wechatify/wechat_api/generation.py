"""Client for an OpenAI-compatible image-generation endpoint.

``POST {image_api_base}/images/generations`` with a bearer key and
``{model, prompt, n: 1, size}``; the response lists result URLs under
``data``.  Only the first URL is used.
"""

from __future__ import annotations

import json
import time
from typing import Any

import httpx

from wechatify.config import WechatifyConfig
from wechatify.errors import WechatifyGenerationError
from wechatify.models import GenerationConfig
from wechatify.observability import get_logger, resolve_metrics

log = get_logger("wechatify.generation")

GENERATIONS_PATH = "/images/generations"


class ImageGenerationAPI:
    """Synchronous image-generation client.

    Parameters
    ----------
    config:
        Supplies the API base URL, key, timeout, and proxy.
    client:
        Optional pre-built :class:`httpx.Client` for tests.
    """

    def __init__(self, config: WechatifyConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._metrics = resolve_metrics(config.metrics)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(config.generation_timeout_seconds),
            proxy=config.http_proxy,
        )

    def generate(self, prompt: str, generation: GenerationConfig) -> str:
        """Generate one image for *prompt* and return its URL.

        The caller checks credentials first
        (:meth:`WechatifyConfig.validate_for_image_generation`).

        Raises
        ------
        WechatifyGenerationError
            On transport failure, a non-2xx status, an unparseable body, or
            an empty result list.  Also when the whole call, body included,
            takes longer than ``generation_timeout_seconds``.
        """
        url = self._config.image_api_base.rstrip("/") + GENERATIONS_PATH
        payload: dict[str, Any] = {
            "model": generation.model,
            "prompt": prompt,
            "n": 1,
            "size": generation.size,
        }
        log.info(
            "Requesting image generation",
            extra={"extra_fields": {
                "op": "generate",
                "model": generation.model,
                "size": generation.size,
                "prompt_chars": len(prompt),
            }},
        )

        timeout = self._config.generation_timeout_seconds
        deadline = time.monotonic() + timeout
        try:
            with self._client.stream(
                "POST",
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.image_api_key}"},
            ) as response:
                content = bytearray()
                for chunk in response.iter_bytes():
                    self._check_deadline(deadline, timeout, generation)
                    content.extend(chunk)
                self._check_deadline(deadline, timeout, generation)
        except httpx.TimeoutException as exc:
            self._metrics.increment("wechatify.generation_total", tags={"status": "timeout"})
            raise WechatifyGenerationError(
                message=f"Image generation timed out: {exc}",
                context={"model": generation.model, "reason": "timeout"},
                cause=exc,
            ) from exc
        except httpx.HTTPError as exc:
            self._metrics.increment("wechatify.generation_total", tags={"status": "error"})
            raise WechatifyGenerationError(
                message=f"Image generation request failed: {exc}",
                context={"model": generation.model},
                cause=exc,
            ) from exc

        self._metrics.increment(
            "wechatify.generation_total",
            tags={"status": str(response.status_code)},
        )
        text = bytes(content).decode(response.encoding or "utf-8", errors="replace")
        if not 200 <= response.status_code < 300:
            raise WechatifyGenerationError(
                message=f"Image API error (status {response.status_code})",
                context={
                    "status_code": response.status_code,
                    "body": text[:500],
                    "model": generation.model,
                },
            )

        try:
            body = json.loads(text)
        except ValueError as exc:
            raise WechatifyGenerationError(
                message="Image API returned a malformed body",
                context={"status_code": response.status_code, "body": text[:500]},
                cause=exc,
            ) from exc

        data = body.get("data") if isinstance(body, dict) else None
        urls = [item.get("url") for item in data or [] if isinstance(item, dict)]
        urls = [u for u in urls if u]
        if not urls:
            raise WechatifyGenerationError(
                message="No image generated",
                context={"status_code": response.status_code, "model": generation.model},
            )
        return urls[0]

    def close(self) -> None:
        self._client.close()

    def _check_deadline(self, deadline: float, timeout: float, generation: GenerationConfig) -> None:
        """Abort a generation call whose total duration has passed *timeout*."""
        if time.monotonic() > deadline:
            self._metrics.increment("wechatify.generation_total", tags={"status": "timeout"})
            raise WechatifyGenerationError(
                message=f"Image generation exceeded {timeout:g}s",
                context={"model": generation.model, "reason": "timeout"},
            )
