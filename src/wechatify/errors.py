"""Full error hierarchy for the wechatify image pipeline.

Every public error class inherits from WechatifyError. Each carries a
machine-readable ``code`` (from :class:`ErrorCode`), a human-readable
``message``, an optional structured ``context`` dict, and an optional
``cause`` (chained exception).

Error codes are defined as a :class:`str` enum so that they serialise
naturally to JSON and can be matched with simple ``==`` comparisons.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Error code enum
# ---------------------------------------------------------------------------

class ErrorCode(str, Enum):
    """Machine-readable error codes for every error the package can raise."""

    CONFIG_ERROR = "CONFIG_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    IMAGE_ERROR = "IMAGE_ERROR"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    COMPRESSION_ERROR = "COMPRESSION_ERROR"
    DOWNLOAD_ERROR = "DOWNLOAD_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    UPLOAD_ERROR = "UPLOAD_ERROR"
    UPLOAD_EXHAUSTED = "UPLOAD_EXHAUSTED"


# ---------------------------------------------------------------------------
# Base error
# ---------------------------------------------------------------------------

class WechatifyError(Exception):
    """Base exception for all wechatify errors.

    Parameters
    ----------
    code:
        A value from :class:`ErrorCode` (or any string) identifying the
        error category.
    message:
        A developer-friendly description of what went wrong.
    context:
        Arbitrary structured data providing extra diagnostic detail.
        Keys and expected types are documented per subclass.  The
        pipeline adds a ``step`` key naming the stage that failed.
    cause:
        The underlying exception, if this error wraps another.
    """

    def __init__(
        self,
        code: str,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.code: str = code
        self.message: str = message
        self.context: dict[str, Any] = context or {}
        self.cause: Exception | None = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        ctx = f", context={self.context!r}" if self.context else ""
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r}{ctx})"


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------

class WechatifyConfigError(WechatifyError):
    """A required configuration value is missing or invalid.

    Raised before any network call is attempted.

    Context keys: ``field``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.CONFIG_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


# ---------------------------------------------------------------------------
# API / transport errors
# ---------------------------------------------------------------------------

class WechatifyNetworkError(WechatifyError):
    """A transport-level failure occurred (timeout, DNS, connection reset).

    Context keys: ``url``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.NETWORK_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyAuthError(WechatifyError):
    """The platform rejected the credentials or the access token expired.

    Context keys: ``errcode``, ``status_code``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.AUTH_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyAPIError(WechatifyError):
    """The platform answered with an error status or a non-zero ``errcode``.

    Context keys: ``status_code``, ``errcode``, ``errmsg``, ``path``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.API_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


# ---------------------------------------------------------------------------
# Image errors
# ---------------------------------------------------------------------------

class WechatifyImageError(WechatifyError):
    """Base class for image-related errors.

    Context varies by subclass.
    """

    def __init__(
        self,
        code: str = ErrorCode.IMAGE_ERROR,
        message: str = "Image error",
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyImageNotFoundError(WechatifyImageError):
    """The referenced image file does not exist on disk.

    Context keys: ``path``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.IMAGE_NOT_FOUND,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyUnsupportedFormatError(WechatifyImageError):
    """The file is not one of the allow-listed raster formats.

    Context keys: ``path``, ``trusted``, ``allowed_formats``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.UNSUPPORTED_FORMAT,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyCompressionError(WechatifyImageError):
    """The image could not be decoded, resized, or re-encoded.

    Recoverable: the pipeline uploads the uncompressed asset instead.

    Context keys: ``path``, ``reason``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.COMPRESSION_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyDownloadError(WechatifyImageError):
    """A remote image could not be fetched.

    Context keys: ``url``, ``status_code``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.DOWNLOAD_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyGenerationError(WechatifyImageError):
    """The image-generation provider returned no usable result.

    Context keys: ``status_code``, ``body``, ``model``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.GENERATION_ERROR,
            message=message,
            context=context,
            cause=cause,
        )


# ---------------------------------------------------------------------------
# Upload errors
# ---------------------------------------------------------------------------

class WechatifyUploadError(WechatifyError):
    """Base class for media-upload errors.

    Context varies by subclass.
    """

    def __init__(
        self,
        code: str = ErrorCode.UPLOAD_ERROR,
        message: str = "Upload error",
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            context=context,
            cause=cause,
        )


class WechatifyUploadExhaustedError(WechatifyUploadError):
    """The upload did not succeed: either every attempt failed with a
    retryable error, or an attempt failed with a fatal one.

    ``cause`` is the last underlying error.

    Context keys: ``path``, ``attempts``, ``max_attempts``, ``reason``
    (``"exhausted"`` or ``"fatal"``).
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.UPLOAD_EXHAUSTED,
            message=message,
            context=context,
            cause=cause,
        )
