"""wechatify: image acquisition, compression, and upload for official accounts.

Public re-exports
-----------------

* **Processor:** :class:`ImageProcessor`
* **Configuration:** :class:`WechatifyConfig`
* **Errors:** Every :class:`WechatifyError` subclass and :class:`ErrorCode`
* **Models:** Image sources, policies, result dataclasses, and enums

Usage::

    from wechatify import ImageProcessor, RemoteSource

    with ImageProcessor(wechat_appid="wx...", wechat_secret="...") as proc:
        result = proc.process(RemoteSource("https://example.com/cover.png"))
        print(result.media_id)
"""

from __future__ import annotations

# ── Configuration ───────────────────────────────────────────────────────
from wechatify.config import (
    DEFAULT_MAX_IMAGE_SIZE,
    DEFAULT_MAX_IMAGE_WIDTH,
    WechatifyConfig,
)

# ── Errors ──────────────────────────────────────────────────────────────
from wechatify.errors import (
    ErrorCode,
    WechatifyAPIError,
    WechatifyAuthError,
    WechatifyCompressionError,
    WechatifyConfigError,
    WechatifyDownloadError,
    WechatifyError,
    WechatifyGenerationError,
    WechatifyImageError,
    WechatifyImageNotFoundError,
    WechatifyNetworkError,
    WechatifyUnsupportedFormatError,
    WechatifyUploadError,
    WechatifyUploadExhaustedError,
)

# ── Models ──────────────────────────────────────────────────────────────
from wechatify.models import (
    CompressionPolicy,
    GeneratedSource,
    GenerationConfig,
    ImageAsset,
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
    RetryDecision,
    RetryPolicy,
    UploadResult,
)

# ── Processor ───────────────────────────────────────────────────────────
from wechatify.processor import ImageProcessor

# ── Public surface ──────────────────────────────────────────────────────

__all__ = [
    # Processor
    "ImageProcessor",
    # Configuration
    "WechatifyConfig",
    "DEFAULT_MAX_IMAGE_WIDTH",
    "DEFAULT_MAX_IMAGE_SIZE",
    # Error base + code enum
    "WechatifyError",
    "ErrorCode",
    # Configuration / transport errors
    "WechatifyConfigError",
    "WechatifyNetworkError",
    "WechatifyAuthError",
    "WechatifyAPIError",
    # Image errors
    "WechatifyImageError",
    "WechatifyImageNotFoundError",
    "WechatifyUnsupportedFormatError",
    "WechatifyCompressionError",
    "WechatifyDownloadError",
    "WechatifyGenerationError",
    # Upload errors
    "WechatifyUploadError",
    "WechatifyUploadExhaustedError",
    # Models: sources
    "ImageSource",
    "LocalSource",
    "RemoteSource",
    "GeneratedSource",
    "GenerationConfig",
    # Models: policies
    "CompressionPolicy",
    "RetryPolicy",
    "RetryDecision",
    # Models: working and result types
    "ImageAsset",
    "ImageFormat",
    "ImageInfo",
    "UploadResult",
    "PipelineStep",
    # Models: Markdown batch
    "ImageRef",
    "ImageWarning",
    "ProcessedImage",
    "MarkdownImageResult",
]
