"""Public data models for the wechatify image pipeline.

This module contains the image-source variants, the working asset type,
the frozen policy snapshots, and every result type referenced by the
public API surface.  All types are plain dataclasses; policies and results
are frozen so that a snapshot taken at the start of a run cannot change
under it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal, Union

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ImageFormat(str, Enum):
    """Raster formats accepted by the pipeline."""

    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return ".jpg" if self is ImageFormat.JPEG else f".{self.value}"


class PipelineStep(str, Enum):
    """Lifecycle states for a single pipeline run."""

    START = "start"
    """Initial state; nothing has been touched yet."""

    ACQUIRE = "acquire"
    """Resolving the source into a readable local file."""

    VALIDATE = "validate"
    """Checking the file against the format allow-list."""

    COMPRESS = "compress"
    """Resizing / re-encoding to fit the compression policy."""

    UPLOAD = "upload"
    """Sending the bytes to the media endpoint."""

    DONE = "done"
    """The asset was uploaded and a media id was returned."""

    FAILED = "failed"
    """An unrecoverable error ended the run."""


class RetryDecision(str, Enum):
    """Classification of a failed upload attempt."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


# ---------------------------------------------------------------------------
# Image sources (one variant per acquisition strategy)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationConfig:
    """Parameters forwarded to the image-generation endpoint.

    The request always asks for exactly one image.
    """

    model: str = "dall-e-3"
    size: str = "1024x1024"


@dataclass(frozen=True)
class LocalSource:
    """An image already on the local filesystem."""

    path: str


@dataclass(frozen=True)
class RemoteSource:
    """An image reachable over plain HTTP(S)."""

    url: str


@dataclass(frozen=True)
class GeneratedSource:
    """An image to be produced by the generation endpoint from *prompt*."""

    prompt: str
    generation: GenerationConfig = field(default_factory=GenerationConfig)


ImageSource = Union[LocalSource, RemoteSource, GeneratedSource]


# ---------------------------------------------------------------------------
# Working asset
# ---------------------------------------------------------------------------

@dataclass
class ImageAsset:
    """The working unit after acquisition.

    Attributes
    ----------
    path:
        Readable local path of the image bytes.
    size_bytes:
        File size at acquisition time.
    owned:
        ``True`` when the pipeline created *path* itself and must delete it.
    trusted:
        ``True`` for caller-supplied local files; remote and generated
        bytes are untrusted and always content-sniffed.
    origin:
        The URL the bytes were fetched from, if any.
    width, height, format:
        Filled in once the asset has been probed / validated.
    """

    path: str
    size_bytes: int
    owned: bool = False
    trusted: bool = False
    origin: str | None = None
    width: int | None = None
    height: int | None = None
    format: ImageFormat | None = None

    @property
    def name(self) -> str:
        return Path(self.path).name


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompressionPolicy:
    """Immutable size/dimension budget for one pipeline run."""

    max_width_px: int = 1920
    max_size_bytes: int = 5 * 1024 * 1024
    initial_quality: int = 85
    min_quality: int = 40
    quality_step: int = 10

    def __post_init__(self) -> None:
        if self.max_width_px < 1:
            raise ValueError(f"max_width_px must be >= 1, got {self.max_width_px}")
        if self.max_size_bytes < 1:
            raise ValueError(f"max_size_bytes must be >= 1, got {self.max_size_bytes}")
        if not 1 <= self.min_quality <= self.initial_quality <= 100:
            raise ValueError(
                "quality bounds must satisfy 1 <= min_quality <= initial_quality <= 100, "
                f"got min={self.min_quality} initial={self.initial_quality}"
            )
        if self.quality_step < 1:
            raise ValueError(f"quality_step must be >= 1, got {self.quality_step}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-attempt retry configuration for uploads.

    ``classifier`` maps an exception raised by one upload attempt to a
    :class:`RetryDecision`.  ``None`` selects
    :func:`wechatify.wechat_api.retries.classify_upload_error`.
    """

    max_attempts: int = 3
    backoff: Literal["fixed", "linear", "exponential"] = "linear"
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False
    classifier: Callable[[Exception], RetryDecision] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < 0:
            raise ValueError(f"max_delay must be >= 0, got {self.max_delay}")
        if self.backoff not in ("fixed", "linear", "exponential"):
            raise ValueError(f"unknown backoff shape {self.backoff!r}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadResult:
    """A successfully hosted image.

    Attributes
    ----------
    media_id:
        Opaque, non-empty identifier assigned by the platform.
    hosted_url:
        URL at which the platform serves the image.
    width, height:
        Dimensions of the bytes that were actually uploaded, when known.
    original_url:
        Remote or generated URL the bytes came from, if any.
    """

    media_id: str
    hosted_url: str
    width: int | None = None
    height: int | None = None
    original_url: str | None = None


@dataclass(frozen=True)
class ImageInfo:
    """Probe result for a local image file."""

    path: str
    width: int
    height: int
    format: ImageFormat | None
    size_bytes: int


# ---------------------------------------------------------------------------
# Markdown image batch
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageRef:
    """An image reference found in Markdown.

    Attributes
    ----------
    src:
        The raw target of the ``![alt](src)`` token.
    alt:
        Plain-text alt text.
    title:
        Optional link title.
    source:
        The acquisition variant *src* resolves to.
    """

    src: str
    alt: str
    title: str | None
    source: ImageSource


@dataclass
class ImageWarning:
    """A non-fatal image failure recorded during a Markdown batch.

    Attributes
    ----------
    code:
        The :class:`~wechatify.errors.ErrorCode` of the underlying error.
    message:
        A human-readable description.
    context:
        Structured diagnostics (includes ``src`` and ``step``).
    """

    code: str
    message: str
    context: dict = field(default_factory=dict)


@dataclass
class ProcessedImage:
    """Outcome for one distinct reference in a Markdown batch."""

    ref: ImageRef
    result: UploadResult


@dataclass
class MarkdownImageResult:
    """Result of :meth:`ImageProcessor.process_markdown`.

    Attributes
    ----------
    markdown:
        The input with every uploaded reference rewritten to its hosted URL.
    images:
        One entry per distinct reference that was uploaded.
    warnings:
        One entry per reference that failed and was left untouched.
    """

    markdown: str
    images: list[ProcessedImage] = field(default_factory=list)
    warnings: list[ImageWarning] = field(default_factory=list)
