"""Configuration for wechatify.

:class:`WechatifyConfig` is a plain dataclass that captures every tuneable
knob of the image pipeline.  Instances are passed once to
:class:`~wechatify.processor.ImageProcessor` and are treated as read-only
from then on.  Loading values from files or the environment is the
caller's job.

Two module-level constants describe the platform limits the defaults are
derived from:

* :data:`DEFAULT_MAX_IMAGE_WIDTH`: widest image kept as-is.
* :data:`DEFAULT_MAX_IMAGE_SIZE`: largest file kept as-is.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Literal

from wechatify.errors import WechatifyConfigError
from wechatify.models import CompressionPolicy, GenerationConfig, RetryPolicy

DEFAULT_MAX_IMAGE_WIDTH: int = 1920
"""Images wider than this are resized."""

DEFAULT_MAX_IMAGE_SIZE: int = 5 * 1024 * 1024
"""Images larger than this many bytes are re-encoded."""

_SECRET_FIELDS: frozenset[str] = frozenset({"wechat_secret", "image_api_key"})

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def mask_secret(value: str) -> str:
    """Mask *value* for display, keeping the first and last two characters."""
    if not value:
        return value
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------

@dataclass
class WechatifyConfig:
    """Complete configuration for an image processor.

    Every parameter has a sensible default.  Credentials are only required
    by the operations that need them: ``wechat_appid``/``wechat_secret``
    for uploads, ``image_api_key`` for generation.

    Parameters
    ----------
    wechat_appid:
        Official-account AppID.  Needed to obtain an access token.
    wechat_secret:
        Official-account AppSecret.  Never logged.
    image_api_key:
        Bearer key for the image-generation endpoint.  Never logged.
    wechat_base_url:
        Platform API root.  Override for proxy or testing environments.
    image_api_base:
        Root URL of an OpenAI-compatible image-generation API.
    image_model:
        Model name sent with generation requests.
    image_size:
        Image size sent with generation requests (e.g. ``"1024x1024"``).
    compress_images:
        Enable the compression step.
    max_image_width:
        Images wider than this are resized proportionally.
    max_image_size:
        Byte budget for uploaded images.
    compress_quality:
        First JPEG quality tried when re-encoding.
    compress_min_quality:
        Lowest JPEG quality the compressor will go down to.
    compress_quality_step:
        Quality decrement between re-encodes.
    upload_max_attempts:
        Total upload attempts per image (the first call counts).
    retry_backoff:
        Shape of the delay between attempts.

        * ``"fixed"``: always ``retry_base_delay``.
        * ``"linear"``: ``retry_base_delay * attempt``.
        * ``"exponential"``: ``retry_base_delay * 2^(attempt-1)``.
    retry_base_delay:
        Base delay (seconds) between upload attempts.
    retry_max_delay:
        Upper cap (seconds) on a computed delay.
    retry_jitter:
        Randomly scale delays to 50-100 % of their value.
    timeout_seconds:
        Timeout for each platform API request, including each upload attempt.
    download_timeout_seconds:
        Timeout for fetching a remote image.
    generation_timeout_seconds:
        Timeout for a generation request.
    http_proxy:
        Optional HTTP/HTTPS proxy URL.
    image_max_concurrent:
        Maximum number of images processed at once by ``aprocess_many``.
    image_fallback:
        Behaviour of ``process_markdown`` when one image fails.

        * ``"keep"``: leave the reference untouched and record a warning.
        * ``"raise"``: re-raise the error.
    temp_dir:
        Directory for temporary files.  ``None`` uses the system default.
    metrics:
        A :class:`~wechatify.observability.MetricsHook`; ``None`` disables
        metrics.
    """

    # ── Credentials ─────────────────────────────────────────────────────
    wechat_appid: str = ""

    wechat_secret: str = ""

    image_api_key: str = ""

    # ── Endpoints ───────────────────────────────────────────────────────
    wechat_base_url: str = "https://api.weixin.qq.com"

    image_api_base: str = "https://api.openai.com/v1"

    # ── Generation ──────────────────────────────────────────────────────
    image_model: str = "dall-e-3"

    image_size: str = "1024x1024"

    # ── Compression ─────────────────────────────────────────────────────
    compress_images: bool = True

    max_image_width: int = DEFAULT_MAX_IMAGE_WIDTH

    max_image_size: int = DEFAULT_MAX_IMAGE_SIZE

    compress_quality: int = 85

    compress_min_quality: int = 40

    compress_quality_step: int = 10

    # ── Retry ───────────────────────────────────────────────────────────
    upload_max_attempts: int = 3

    retry_backoff: Literal["fixed", "linear", "exponential"] = "linear"

    retry_base_delay: float = 1.0

    retry_max_delay: float = 30.0

    retry_jitter: bool = False

    # ── HTTP ────────────────────────────────────────────────────────────
    timeout_seconds: float = 30.0

    download_timeout_seconds: float = 30.0

    generation_timeout_seconds: float = 60.0

    http_proxy: str | None = None

    # ── Batch ───────────────────────────────────────────────────────────
    image_max_concurrent: int = 4

    image_fallback: Literal["keep", "raise"] = "keep"

    # ── Filesystem ──────────────────────────────────────────────────────
    temp_dir: str | None = None

    # ── Observability ──────────────────────────────────────────────────
    metrics: Any | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        from urllib.parse import urlparse

        for name in ("wechat_base_url", "image_api_base"):
            parsed = urlparse(getattr(self, name))
            if parsed.scheme == "http" and parsed.hostname not in _LOCAL_HOSTS:
                raise ValueError(
                    f"{name} uses insecure HTTP for non-local host '{parsed.hostname}'. "
                    "Use HTTPS to protect your credentials, or target localhost for testing."
                )

        if not 100 <= self.max_image_width <= 10000:
            raise ValueError(
                f"max_image_width must be between 100 and 10000, got {self.max_image_width}"
            )
        if self.max_image_size < 100 * 1024:
            raise ValueError(f"max_image_size must be at least 100KB, got {self.max_image_size}")
        if not 1 <= self.timeout_seconds <= 300:
            raise ValueError(
                f"timeout_seconds must be between 1 and 300, got {self.timeout_seconds}"
            )
        if self.download_timeout_seconds <= 0:
            raise ValueError(
                f"download_timeout_seconds must be > 0, got {self.download_timeout_seconds}"
            )
        if self.generation_timeout_seconds <= 0:
            raise ValueError(
                f"generation_timeout_seconds must be > 0, got {self.generation_timeout_seconds}"
            )
        if self.upload_max_attempts < 1:
            raise ValueError(f"upload_max_attempts must be >= 1, got {self.upload_max_attempts}")
        if self.image_max_concurrent < 1:
            raise ValueError(f"image_max_concurrent must be >= 1, got {self.image_max_concurrent}")
        if self.image_fallback not in ("keep", "raise"):
            raise ValueError(
                f"image_fallback must be 'keep' or 'raise', got {self.image_fallback!r}"
            )

        # Let the policy dataclasses validate quality and retry values.
        self.compression_policy()
        self.retry_policy()

    # -- validation for specific operations ---------------------------------

    def validate_for_upload(self) -> None:
        """Raise :class:`WechatifyConfigError` if upload credentials are missing."""
        if not self.wechat_appid:
            raise WechatifyConfigError(
                message="wechat_appid is required to upload images",
                context={"field": "wechat_appid"},
            )
        if not self.wechat_secret:
            raise WechatifyConfigError(
                message="wechat_secret is required to upload images",
                context={"field": "wechat_secret"},
            )

    def validate_for_image_generation(self) -> None:
        """Raise :class:`WechatifyConfigError` if the generation key is missing."""
        if not self.image_api_key:
            raise WechatifyConfigError(
                message="image_api_key is required for image generation",
                context={"field": "image_api_key"},
            )

    # -- policy snapshots ----------------------------------------------------

    def compression_policy(self, quality: int | None = None) -> CompressionPolicy:
        """Build a frozen :class:`CompressionPolicy` from the current values."""
        return CompressionPolicy(
            max_width_px=self.max_image_width,
            max_size_bytes=self.max_image_size,
            initial_quality=self.compress_quality if quality is None else quality,
            min_quality=self.compress_min_quality,
            quality_step=self.compress_quality_step,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build a frozen :class:`RetryPolicy` from the current values."""
        return RetryPolicy(
            max_attempts=self.upload_max_attempts,
            backoff=self.retry_backoff,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(model=self.image_model, size=self.image_size)

    # -- display -------------------------------------------------------------

    def to_dict(self, mask_secrets: bool = True) -> dict[str, Any]:
        """Return the configuration as a display dict.

        Secrets are masked unless *mask_secrets* is ``False``.  The
        ``metrics`` hook is omitted.
        """
        result: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if f.name == "metrics":
                continue
            val = getattr(self, f.name)
            if mask_secrets and f.name in _SECRET_FIELDS:
                val = mask_secret(val)
            result[f.name] = val
        return result

    def __repr__(self) -> str:
        """Mask secrets to prevent accidental credential leakage."""
        parts = [f"{name}={val!r}" for name, val in self.to_dict(mask_secrets=True).items()]
        return f"WechatifyConfig({', '.join(parts)})"
