"""Find and rewrite image references in Markdown.

Extraction walks mistune v3's AST so that images inside code spans and
fenced blocks are ignored.  Rewriting works on the source text so the rest
of the document is preserved byte for byte.

Image targets containing spaces must use the angle-bracket form, e.g.
``![cover](<__generate:a cat reading a newspaper__>)``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from urllib.parse import unquote

import mistune

from wechatify.models import GenerationConfig, ImageRef

from .detect import parse_image_source

# ![alt](target) / ![alt](<target>) with an optional "title" or 'title'.
_IMAGE_RE = re.compile(
    r"(?P<head>!\[(?P<alt>[^\]]*)\]\(\s*)"
    r"(?P<target><[^>\n]*>|[^\s)]+)"
    r"(?P<tail>(?:\s+(?:\"[^\"]*\"|'[^']*'))?\s*\))"
)

_parser = mistune.create_markdown(renderer="ast", plugins=["strikethrough", "table", "url"])


def _normalize_target(target: str) -> str:
    """Return the comparable form of an image target."""
    target = target.strip()
    if target.startswith("<") and target.endswith(">"):
        target = target[1:-1]
    return unquote(target)


def _plain_text(children: list[dict]) -> str:
    parts: list[str] = []
    for child in children:
        if "raw" in child:
            parts.append(child["raw"])
        elif "children" in child:
            parts.append(_plain_text(child["children"]))
    return "".join(parts)


def _walk(tokens: list[dict], out: list[dict]) -> None:
    for token in tokens:
        if token.get("type") == "image":
            out.append(token)
            continue
        children = token.get("children")
        if isinstance(children, list):
            _walk(children, out)


def extract_images(
    markdown: str,
    base_dir: str | None = None,
    generation: GenerationConfig | None = None,
) -> list[ImageRef]:
    """Return every uploadable image reference in document order.

    Data URIs and blank targets are skipped.  Duplicate targets are kept;
    callers that upload deduplicate on :attr:`ImageRef.src`.

    Parameters
    ----------
    markdown:
        Markdown source.
    base_dir:
        Directory relative local paths are resolved against.
    generation:
        Model and size for ``__generate:...__`` targets.
    """
    tokens: list[dict] = []
    _walk(_parser(markdown), tokens)

    refs: list[ImageRef] = []
    for token in tokens:
        attrs = token.get("attrs") or {}
        src = _normalize_target(attrs.get("url", ""))
        source = parse_image_source(src, base_dir, generation)
        if source is None:
            continue
        refs.append(ImageRef(
            src=src,
            alt=_plain_text(token.get("children") or []),
            title=attrs.get("title"),
            source=source,
        ))
    return refs


def replace_image_urls(markdown: str, mapping: Mapping[str, str]) -> str:
    """Rewrite image targets found in *mapping* to their new URLs.

    Keys are compared against the normalized target (angle brackets
    stripped, percent-escapes decoded), matching :attr:`ImageRef.src`.
    Alt text and titles are preserved.
    """
    if not mapping:
        return markdown

    def _sub(match: re.Match[str]) -> str:
        new_url = mapping.get(_normalize_target(match.group("target")))
        if new_url is None:
            return match.group(0)
        return f"{match.group('head')}{new_url}{match.group('tail')}"

    return _IMAGE_RE.sub(_sub, markdown)
