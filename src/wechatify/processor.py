"""Image pipeline orchestrator.

:class:`ImageProcessor` drives one image through acquire, validate,
compress, and upload and returns the hosted result.  It also offers the
Markdown batch helpers that upload every referenced image and rewrite the
references to their hosted URLs.

Usage::

    from wechatify import ImageProcessor, LocalSource

    with ImageProcessor(wechat_appid="wx...", wechat_secret="...") as proc:
        result = proc.process(LocalSource("cover.png"))
        print(result.media_id, result.hosted_url)
"""

from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
from collections.abc import Callable, Iterable
from contextlib import ExitStack
from typing import Any

from wechatify.config import WechatifyConfig
from wechatify.errors import WechatifyCompressionError, WechatifyError
from wechatify.image.acquire import Acquirer
from wechatify.image.compress import Compressor, probe
from wechatify.image.extract import extract_images, replace_image_urls
from wechatify.image.state import PipelineStateMachine
from wechatify.image.validate import detect_format, validate_asset
from wechatify.models import (
    CompressionPolicy,
    GeneratedSource,
    GenerationConfig,
    ImageFormat,
    ImageInfo,
    ImageRef,
    ImageSource,
    ImageWarning,
    LocalSource,
    MarkdownImageResult,
    PipelineStep,
    ProcessedImage,
    RemoteSource,
    RetryPolicy,
    UploadResult,
)
from wechatify.observability import get_logger, resolve_metrics
from wechatify.utils.tempfiles import remove_temp_file
from wechatify.wechat_api.media import MediaAPI, upload_with_retry
from wechatify.wechat_api.transport import WechatTransport

log = get_logger("wechatify.processor")


def _describe(source: ImageSource) -> str:
    if isinstance(source, LocalSource):
        return f"local:{source.path}"
    if isinstance(source, RemoteSource):
        return f"remote:{source.url}"
    if isinstance(source, GeneratedSource):
        return f"generated:{source.prompt[:40]}"
    return repr(source)


class ImageProcessor:
    """Acquire, validate, compress, and upload images.

    A single instance may be shared by several threads; each call to
    :meth:`process` is an independent run with its own temp files and its
    own policy snapshots.

    Parameters
    ----------
    config:
        A ready :class:`WechatifyConfig`.  When omitted one is built from
        *kwargs*.
    transport:
        Optional platform transport (tests inject one backed by
        :class:`httpx.MockTransport`).
    acquirer:
        Optional :class:`Acquirer`.
    sleep:
        Called with the backoff delay between upload attempts.
    **kwargs:
        Forwarded to :class:`WechatifyConfig` when *config* is ``None``.
    """

    def __init__(
        self,
        config: WechatifyConfig | None = None,
        *,
        transport: WechatTransport | None = None,
        acquirer: Acquirer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        self._config = config if config is not None else WechatifyConfig(**kwargs)
        self._metrics = resolve_metrics(self._config.metrics)
        self._transport = transport or WechatTransport(self._config)
        self._media = MediaAPI(self._transport)
        self._acquirer = acquirer or Acquirer(self._config)
        self._compressor = Compressor(temp_dir=self._config.temp_dir, metrics=self._metrics)
        self._sleep = sleep
        self._policy_lock = threading.Lock()
        self._policy = self._config.compression_policy()
        self._retry_policy = self._config.retry_policy()

    @property
    def config(self) -> WechatifyConfig:
        return self._config

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @property
    def compression_policy(self) -> CompressionPolicy:
        """The default policy new runs snapshot."""
        with self._policy_lock:
            return self._policy

    def set_compress_quality(self, quality: int) -> None:
        """Replace the default policy with one starting at *quality*.

        Runs already in flight keep the snapshot they started with.

        Raises
        ------
        ValueError
            If *quality* is outside ``[min_quality, 100]``.
        """
        with self._policy_lock:
            self._policy = dataclasses.replace(self._policy, initial_quality=quality)
        log.info(
            "Default compression quality changed",
            extra={"extra_fields": {"op": "set_compress_quality", "quality": quality}},
        )

    # ------------------------------------------------------------------
    # Single image
    # ------------------------------------------------------------------

    def process(
        self,
        source: ImageSource,
        *,
        policy: CompressionPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> UploadResult:
        """Run the full pipeline for one image.

        Parameters
        ----------
        source:
            Where the image comes from.
        policy:
            Compression budget for this run.  Defaults to a snapshot of
            :attr:`compression_policy`.
        retry_policy:
            Upload retry policy for this run.  Defaults to the policy built
            from the configuration.

        Returns
        -------
        UploadResult

        Raises
        ------
        WechatifyError
            The first fatal error, with ``context["step"]`` naming the
            stage that failed.  Every temp file the run created is removed
            before the error propagates.
        """
        policy = policy or self.compression_policy
        retry_policy = retry_policy or self._retry_policy
        machine = PipelineStateMachine(label=_describe(source))
        t0 = time.monotonic()
        status = "error"

        try:
            with ExitStack() as stack:
                try:
                    result = self._run(source, policy, retry_policy, machine, stack)
                except WechatifyError as exc:
                    step = machine.fail()
                    exc.context.setdefault("step", step.value)
                    log.error(
                        "Image pipeline failed",
                        extra={"extra_fields": {
                            "op": "process",
                            "source": machine.label,
                            "step": exc.context["step"],
                            "code": exc.code,
                            "error": exc.message,
                        }},
                    )
                    raise
                except BaseException:
                    if not machine.is_terminal:
                        machine.fail()
                    raise
            status = "ok"
            return result
        finally:
            self._metrics.timing(
                "wechatify.pipeline_duration_ms",
                (time.monotonic() - t0) * 1000,
                tags={"status": status},
            )

    def _run(
        self,
        source: ImageSource,
        policy: CompressionPolicy,
        retry_policy: RetryPolicy,
        machine: PipelineStateMachine,
        stack: ExitStack,
    ) -> UploadResult:
        self._config.validate_for_upload()

        machine.transition(PipelineStep.ACQUIRE)
        asset = self._acquirer.acquire(source)
        if asset.owned:
            stack.callback(remove_temp_file, asset.path)

        machine.transition(PipelineStep.VALIDATE)
        asset = validate_asset(asset)
        upload_path = asset.path
        upload_format = asset.format
        width, height = asset.width, asset.height

        if self._config.compress_images:
            machine.transition(PipelineStep.COMPRESS)
            try:
                out_path, changed = self._compressor.compress(asset, policy)
            except WechatifyCompressionError as exc:
                log.warning(
                    "Compression failed, uploading original",
                    extra={"extra_fields": {
                        "op": "compress",
                        "path": asset.path,
                        "reason": exc.context.get("reason"),
                        "error": exc.message,
                    }},
                )
            else:
                if changed:
                    stack.callback(remove_temp_file, out_path)
                    upload_path = out_path
                    upload_format = ImageFormat.JPEG
                    width, height = probe(out_path)
                else:
                    width, height = asset.width, asset.height

        machine.transition(PipelineStep.UPLOAD)
        result = upload_with_retry(
            self._media,
            upload_path,
            upload_format,
            retry_policy,
            sleep=self._sleep,
            metrics=self._metrics,
        )
        machine.transition(PipelineStep.DONE)

        return dataclasses.replace(
            result,
            width=width,
            height=height,
            original_url=asset.origin,
        )

    # -- convenience entry points ------------------------------------------

    def upload_local_image(self, path: str) -> UploadResult:
        return self.process(LocalSource(path))

    def download_and_upload(self, url: str) -> UploadResult:
        return self.process(RemoteSource(url))

    def generate_and_upload(
        self,
        prompt: str,
        generation: GenerationConfig | None = None,
    ) -> UploadResult:
        """Generate an image for *prompt*, then upload it.

        *generation* defaults to the configured model and size.
        """
        return self.process(
            GeneratedSource(prompt, generation or self._config.generation_config())
        )

    def compress_image(self, path: str) -> tuple[str, bool]:
        """Compress a local image under the default policy without uploading.

        Returns
        -------
        tuple[str, bool]
            ``(path, changed)``.  When ``changed`` is ``True`` the returned
            path is a new temp file owned by the caller.
        """
        asset = validate_asset(self._acquirer.from_local(path))
        return self._compressor.compress(asset, self.compression_policy)

    def get_image_info(self, path: str) -> ImageInfo:
        """Return dimensions, format, and size of a local image."""
        asset = self._acquirer.from_local(path)
        width, height = probe(asset.path)
        return ImageInfo(
            path=asset.path,
            width=width,
            height=height,
            format=detect_format(asset.path),
            size_bytes=asset.size_bytes,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def aprocess_many(
        self,
        sources: Iterable[ImageSource],
        *,
        policy: CompressionPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> list[UploadResult | BaseException]:
        """Process *sources* concurrently.

        Uses ``asyncio.Semaphore`` to limit concurrent runs to
        ``config.image_max_concurrent``; each run executes in a worker
        thread.  Results keep the input order and failed runs appear as
        their exception.
        """
        semaphore = asyncio.Semaphore(self._config.image_max_concurrent)
        policy = policy or self.compression_policy

        async def _process_one(source: ImageSource) -> UploadResult:
            async with semaphore:
                return await asyncio.to_thread(
                    self.process, source, policy=policy, retry_policy=retry_policy,
                )

        return await asyncio.gather(
            *(_process_one(source) for source in sources),
            return_exceptions=True,
        )

    def process_markdown(self, markdown: str, base_dir: str | None = None) -> MarkdownImageResult:
        """Upload every image referenced in *markdown* and rewrite the references.

        Each distinct target is processed once.  Failures follow
        ``config.image_fallback``: ``"keep"`` leaves the reference untouched
        and records an :class:`ImageWarning`; ``"raise"`` re-raises.
        """
        refs = self._distinct_refs(markdown, base_dir)
        outcomes: list[UploadResult | BaseException] = []
        for ref in refs:
            try:
                outcomes.append(self.process(ref.source))
            except WechatifyError as exc:
                outcomes.append(exc)
        return self._assemble(markdown, refs, outcomes)

    async def aprocess_markdown(
        self,
        markdown: str,
        base_dir: str | None = None,
    ) -> MarkdownImageResult:
        """Concurrent variant of :meth:`process_markdown`."""
        refs = self._distinct_refs(markdown, base_dir)
        outcomes = await self.aprocess_many([ref.source for ref in refs])
        return self._assemble(markdown, refs, outcomes)

    def _distinct_refs(self, markdown: str, base_dir: str | None) -> list[ImageRef]:
        seen: set[str] = set()
        refs: list[ImageRef] = []
        for ref in extract_images(markdown, base_dir, self._config.generation_config()):
            if ref.src not in seen:
                seen.add(ref.src)
                refs.append(ref)
        return refs

    def _assemble(
        self,
        markdown: str,
        refs: list[ImageRef],
        outcomes: list[UploadResult | BaseException],
    ) -> MarkdownImageResult:
        """Apply the fallback policy and rewrite successful references."""
        images: list[ProcessedImage] = []
        warnings: list[ImageWarning] = []
        mapping: dict[str, str] = {}

        for ref, outcome in zip(refs, outcomes):
            if isinstance(outcome, UploadResult):
                images.append(ProcessedImage(ref=ref, result=outcome))
                mapping[ref.src] = outcome.hosted_url
                continue
            if not isinstance(outcome, WechatifyError) or self._config.image_fallback == "raise":
                raise outcome
            warnings.append(ImageWarning(
                code=outcome.code,
                message=f"Image kept unchanged: {outcome.message}",
                context={
                    "src": ref.src,
                    "step": outcome.context.get("step"),
                    "error": str(outcome),
                },
            ))

        log.info(
            "Markdown images processed",
            extra={"extra_fields": {
                "op": "process_markdown",
                "references": len(refs),
                "uploaded": len(images),
                "kept": len(warnings),
            }},
        )
        return MarkdownImageResult(
            markdown=replace_image_urls(markdown, mapping),
            images=images,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the HTTP clients."""
        self._acquirer.close()
        self._transport.close()

    def __enter__(self) -> ImageProcessor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
