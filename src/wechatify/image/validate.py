"""Image validation: format allow-list checks.

Classifies a file as one of the supported raster formats by sniffing its
content header.  Caller-supplied local files may additionally fall back to
their extension; bytes fetched from a remote or generated source are
always sniffed, never trusted by name.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path

from wechatify.errors import WechatifyUnsupportedFormatError
from wechatify.models import ImageAsset, ImageFormat

# Magic bytes to formats.  WEBP needs a second check at offset 8.
_MAGIC_BYTES: list[tuple[bytes, ImageFormat]] = [
    (b"\x89PNG\r\n\x1a\n", ImageFormat.PNG),
    (b"\xff\xd8\xff", ImageFormat.JPEG),
    (b"GIF87a", ImageFormat.GIF),
    (b"GIF89a", ImageFormat.GIF),
    (b"RIFF", ImageFormat.WEBP),
]

_EXTENSIONS: dict[str, ImageFormat] = {
    ".jpg": ImageFormat.JPEG,
    ".jpeg": ImageFormat.JPEG,
    ".png": ImageFormat.PNG,
    ".gif": ImageFormat.GIF,
    ".webp": ImageFormat.WEBP,
}

_HEADER_LEN = 16

ALLOWED_FORMATS: tuple[ImageFormat, ...] = tuple(ImageFormat)


def sniff_format(header: bytes) -> ImageFormat | None:
    """Detect the image format from the first bytes of a file."""
    for magic, fmt in _MAGIC_BYTES:
        if header[:len(magic)] == magic:
            if fmt is ImageFormat.WEBP and header[8:12] != b"WEBP":
                continue
            return fmt
    return None


def format_from_extension(path: str) -> ImageFormat | None:
    return _EXTENSIONS.get(Path(path).suffix.lower())


def detect_format(path: str, *, trust_extension: bool = False) -> ImageFormat | None:
    """Return the format of the file at *path*, or ``None`` if unsupported.

    Parameters
    ----------
    path:
        File to inspect.
    trust_extension:
        When the content header is not recognised, accept an allow-listed
        file extension instead.  Only appropriate for caller-supplied
        local files.
    """
    try:
        with open(path, "rb") as fh:
            header = fh.read(_HEADER_LEN)
    except OSError:
        return None
    fmt = sniff_format(header)
    if fmt is None and trust_extension:
        fmt = format_from_extension(path)
    return fmt


def is_supported_format(path: str, *, trust_extension: bool = False) -> bool:
    """Return ``True`` if *path* is one of the allow-listed raster formats."""
    return detect_format(path, trust_extension=trust_extension) is not None


def validate_asset(asset: ImageAsset) -> ImageAsset:
    """Validate *asset* and return a copy with ``format`` filled in.

    Raises
    ------
    WechatifyUnsupportedFormatError
        If the asset is not one of :data:`ALLOWED_FORMATS`.
    """
    fmt = detect_format(asset.path, trust_extension=asset.trusted)
    if fmt is None:
        raise WechatifyUnsupportedFormatError(
            message=f"Unsupported image format: {asset.name}",
            context={
                "path": asset.path,
                "origin": asset.origin,
                "trusted": asset.trusted,
                "allowed_formats": [f.value for f in ALLOWED_FORMATS],
            },
        )
    return dataclasses.replace(asset, format=fmt)
