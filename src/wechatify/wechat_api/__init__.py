"""wechatify.wechat_api -- platform transport and endpoint wrappers.

This sub-package provides:

* :mod:`.retries` -- Upload error classification and backoff.
* :mod:`.transport` -- HTTP transport with access-token caching.
* :mod:`.media` -- Image material upload and the bounded retry loop.
* :mod:`.generation` -- Image-generation client.
"""

from __future__ import annotations

from .generation import ImageGenerationAPI
from .media import MediaAPI, upload_with_retry
from .retries import classify_upload_error, compute_backoff
from .transport import WechatTransport

__all__ = [
    "ImageGenerationAPI",
    "MediaAPI",
    "WechatTransport",
    "classify_upload_error",
    "compute_backoff",
    "upload_with_retry",
]
