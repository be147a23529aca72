"""Acquisition: turn an :data:`~wechatify.models.ImageSource` into a local file.

One handler per source variant:

* :class:`~wechatify.models.LocalSource` -- the caller's file is used in
  place and never modified or deleted.
* :class:`~wechatify.models.RemoteSource` -- the body is streamed into a
  new temp file owned by the returned asset.
* :class:`~wechatify.models.GeneratedSource` -- the generation endpoint is
  asked for one image whose URL is then fetched like a remote source.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from urllib.parse import urlparse

import httpx

from wechatify.config import WechatifyConfig
from wechatify.errors import WechatifyDownloadError, WechatifyImageNotFoundError
from wechatify.models import (
    GeneratedSource,
    GenerationConfig,
    ImageAsset,
    ImageSource,
    LocalSource,
    RemoteSource,
)
from wechatify.observability import get_logger, resolve_metrics
from wechatify.utils.redact import redact_text
from wechatify.utils.tempfiles import create_temp_file, remove_temp_file
from wechatify.wechat_api.generation import ImageGenerationAPI

from .validate import format_from_extension

log = get_logger("wechatify.acquire")


def _suffix_for_url(url: str) -> str:
    """Keep a recognisable image extension on downloaded files."""
    fmt = format_from_extension(urlparse(url).path)
    return fmt.extension if fmt is not None else ""


def _check_deadline(deadline: float, timeout: float, url: str) -> None:
    """Abort a download whose total duration has passed *timeout*."""
    if time.monotonic() > deadline:
        raise WechatifyDownloadError(
            message=f"Download exceeded {timeout:g}s: {url}",
            context={"url": url, "reason": "timeout"},
        )


class Acquirer:
    """Resolve image sources into readable local files.

    Parameters
    ----------
    config:
        Supplies timeouts, proxy, temp directory, and generation settings.
    client:
        Optional :class:`httpx.Client` used for downloads.
    generator:
        Optional :class:`ImageGenerationAPI`; one is built from *config*
        on first use otherwise.
    """

    def __init__(
        self,
        config: WechatifyConfig,
        client: httpx.Client | None = None,
        generator: ImageGenerationAPI | None = None,
    ) -> None:
        self._config = config
        self._metrics = resolve_metrics(config.metrics)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(config.download_timeout_seconds),
            follow_redirects=True,
            proxy=config.http_proxy,
        )
        self._generator = generator or ImageGenerationAPI(config)

    def acquire(self, source: ImageSource) -> ImageAsset:
        """Dispatch on the source variant."""
        if isinstance(source, LocalSource):
            return self.from_local(source.path)
        if isinstance(source, RemoteSource):
            return self.from_remote(source.url)
        if isinstance(source, GeneratedSource):
            return self.from_generated(source.prompt, source.generation)
        raise TypeError(f"Unknown image source: {source!r}")

    # -- local ---------------------------------------------------------------

    def from_local(self, path: str) -> ImageAsset:
        """Wrap an existing local file.

        Raises
        ------
        WechatifyImageNotFoundError
            If *path* does not exist or is not a regular file.
        """
        resolved = Path(path).expanduser()
        if not resolved.is_file():
            raise WechatifyImageNotFoundError(
                message=f"File not found: {path}",
                context={"path": path},
            )
        log.info(
            "Using local image",
            extra={"extra_fields": {"op": "acquire", "source": "local", "path": str(resolved)}},
        )
        return ImageAsset(
            path=str(resolved),
            size_bytes=resolved.stat().st_size,
            owned=False,
            trusted=True,
        )

    # -- remote --------------------------------------------------------------

    def from_remote(self, url: str) -> ImageAsset:
        """Download *url* into a temp file owned by the returned asset.

        Raises
        ------
        WechatifyDownloadError
            On a non-http(s) URL, a non-2xx status, timeout, transport error,
            or local write failure.  The partial temp file is removed first.
        """
        if urlparse(url).scheme not in ("http", "https"):
            raise WechatifyDownloadError(
                message=f"Refusing to download non-HTTP URL: {url}",
                context={"url": url},
            )

        log.info(
            "Downloading image",
            extra={"extra_fields": {"op": "acquire", "source": "remote", "url": url}},
        )
        path = create_temp_file(suffix=_suffix_for_url(url), directory=self._config.temp_dir)
        try:
            self._download_to(url, path)
        except BaseException:
            remove_temp_file(path)
            self._metrics.increment("wechatify.download_total", tags={"status": "error"})
            raise

        self._metrics.increment("wechatify.download_total", tags={"status": "ok"})
        return ImageAsset(
            path=path,
            size_bytes=os.path.getsize(path),
            owned=True,
            trusted=False,
            origin=url,
        )

    def _download_to(self, url: str, path: str) -> None:
        timeout = self._config.download_timeout_seconds
        deadline = time.monotonic() + timeout
        try:
            with self._client.stream("GET", url) as response:
                if not 200 <= response.status_code < 300:
                    raise WechatifyDownloadError(
                        message=f"Download failed with status {response.status_code}: {url}",
                        context={"url": url, "status_code": response.status_code},
                    )
                with open(path, "wb") as fh:
                    for chunk in response.iter_bytes():
                        _check_deadline(deadline, timeout, url)
                        fh.write(chunk)
                _check_deadline(deadline, timeout, url)
        except httpx.TimeoutException as exc:
            raise WechatifyDownloadError(
                message=f"Download timed out: {url}",
                context={"url": url, "reason": "timeout"},
                cause=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise WechatifyDownloadError(
                message=f"Download failed: {redact_text(str(exc))}",
                context={"url": url},
                cause=exc,
            ) from exc
        except OSError as exc:
            raise WechatifyDownloadError(
                message=f"Cannot write downloaded image: {exc}",
                context={"url": url, "path": path},
                cause=exc,
            ) from exc

    # -- generated -----------------------------------------------------------

    def from_generated(self, prompt: str, generation: GenerationConfig) -> ImageAsset:
        """Generate an image for *prompt* and download it.

        Raises
        ------
        WechatifyConfigError
            If no image API key is configured (nothing is sent).
        WechatifyGenerationError
            If the provider fails or returns no result.
        WechatifyDownloadError
            If the generated URL cannot be fetched.
        """
        self._config.validate_for_image_generation()
        url = self._generator.generate(prompt, generation)
        log.info(
            "Image generated",
            extra={"extra_fields": {"op": "acquire", "source": "generated", "url": url}},
        )
        return self.from_remote(url)

    def close(self) -> None:
        self._client.close()
        self._generator.close()
