"""Image source detection.

Classifies a raw image ``src`` string (from ``![alt](src)``) into one of the
:data:`~wechatify.models.ImageSource` variants so the pipeline knows how to
acquire it.
"""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import urlparse

from wechatify.models import (
    GeneratedSource,
    GenerationConfig,
    ImageSource,
    LocalSource,
    RemoteSource,
)

# Regex for data URIs: data:[<mediatype>][;base64],<data>
_DATA_URI_RE = re.compile(r"^data:", re.IGNORECASE)

# AI-generated image placeholder: __generate:<prompt>__
_GENERATE_RE = re.compile(r"^__generate:(?P<prompt>.+?)__$", re.DOTALL)


def parse_image_source(
    src: str,
    base_dir: str | None = None,
    generation: GenerationConfig | None = None,
) -> ImageSource | None:
    """Map a Markdown image target onto an acquisition variant.

    Parameters
    ----------
    src:
        The raw target of a Markdown image token.
    base_dir:
        Directory that relative local paths are resolved against.  When
        ``None`` relative paths are left relative to the working directory.
    generation:
        Model and size attached to generated sources.  Defaults to
        :class:`GenerationConfig` defaults.

    Returns
    -------
    ImageSource or None
        ``None`` for blank targets and data URIs, which are not uploaded.
    """
    if not src or not src.strip():
        return None

    src = src.strip()

    if _DATA_URI_RE.match(src):
        return None

    match = _GENERATE_RE.match(src)
    if match:
        prompt = match.group("prompt").strip()
        if not prompt:
            return None
        return GeneratedSource(prompt=prompt, generation=generation or GenerationConfig())

    if urlparse(src).scheme in ("http", "https"):
        return RemoteSource(url=src)

    path = Path(src).expanduser()
    if base_dir is not None and not path.is_absolute():
        path = Path(base_dir).expanduser() / path
    return LocalSource(path=str(path))
