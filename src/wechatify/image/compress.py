"""Policy-driven image compression.

:class:`Compressor` decides whether an image breaks the size/dimension
budget of a :class:`~wechatify.models.CompressionPolicy` and, if so,
writes a smaller JPEG copy:

1. Probe width and byte size.  Within budget → no-op, no file written.
2. Resize proportionally to ``max_width_px`` when wider.
3. Encode at ``initial_quality``, stepping down by ``quality_step`` while
   the output is over ``max_size_bytes``, never below ``min_quality``.
4. If the floor is reached and the output is still too large, the smallest
   encoding is returned anyway (best effort).

Decoding and encoding are delegated to Pillow.
"""

from __future__ import annotations

import math
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from wechatify.errors import WechatifyCompressionError
from wechatify.models import CompressionPolicy, ImageAsset
from wechatify.observability import get_logger, resolve_metrics
from wechatify.utils.tempfiles import create_temp_file, remove_temp_file

log = get_logger("wechatify.compress")

_PILLOW_ERRORS: tuple[type[Exception], ...] = (
    OSError,
    ValueError,
    UnidentifiedImageError,
    Image.DecompressionBombError,
)


def quality_schedule(policy: CompressionPolicy) -> list[int]:
    """Return the JPEG qualities tried, in order, for *policy*.

    The list starts at ``initial_quality``, decreases by ``quality_step``
    and always ends at ``min_quality``.  Its length is at most
    ``ceil((initial_quality - min_quality) / quality_step) + 1``.

    Examples
    --------
    >>> quality_schedule(CompressionPolicy(initial_quality=85, min_quality=60, quality_step=10))
    [85, 75, 65, 60]
    """
    qualities = [policy.initial_quality]
    while qualities[-1] > policy.min_quality:
        qualities.append(max(qualities[-1] - policy.quality_step, policy.min_quality))
    return qualities


def max_encodes(policy: CompressionPolicy) -> int:
    """Upper bound on the number of encodes for *policy*."""
    return math.ceil((policy.initial_quality - policy.min_quality) / policy.quality_step) + 1


def scaled_size(width: int, height: int, max_width: int) -> tuple[int, int]:
    """Return ``(width, height)`` scaled so that width is at most *max_width*."""
    if width <= max_width:
        return width, height
    return max_width, max(1, round(height * max_width / width))


def probe(path: str) -> tuple[int, int]:
    """Return the pixel ``(width, height)`` of the image at *path*.

    Raises
    ------
    WechatifyCompressionError
        If Pillow cannot identify the file.
    """
    try:
        with Image.open(path) as img:
            return img.size
    except _PILLOW_ERRORS as exc:
        raise WechatifyCompressionError(
            message=f"Cannot read image {path}: {exc}",
            context={"path": path, "reason": "probe_failed"},
            cause=exc,
        ) from exc


def _to_rgb(img: Image.Image) -> Image.Image:
    """Flatten transparency onto white so the image can be stored as JPEG."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


class Compressor:
    """Reduce images to fit a :class:`CompressionPolicy`.

    A compressor holds no per-run state; the policy is passed to every call,
    so one instance can serve concurrent pipeline runs.

    Parameters
    ----------
    temp_dir:
        Where compressed copies are written.  ``None`` uses the system
        temp directory.
    metrics:
        Optional :class:`~wechatify.observability.MetricsHook`.
    """

    def __init__(self, temp_dir: str | None = None, metrics: object | None = None) -> None:
        self._temp_dir = temp_dir
        self._metrics = resolve_metrics(metrics)

    def needs_compression(self, asset: ImageAsset, policy: CompressionPolicy) -> bool:
        """Return ``True`` if *asset* violates *policy*.

        Fills ``asset.width``/``asset.height`` if they were not yet probed.
        """
        if asset.width is None or asset.height is None:
            asset.width, asset.height = probe(asset.path)
        return asset.width > policy.max_width_px or asset.size_bytes > policy.max_size_bytes

    def compress(self, asset: ImageAsset, policy: CompressionPolicy) -> tuple[str, bool]:
        """Compress *asset* to fit *policy*.

        Returns
        -------
        tuple[str, bool]
            ``(path, changed)``.  When ``changed`` is ``False`` *path* is
            ``asset.path`` and nothing was written.  When ``True`` *path* is
            a new temp file that the caller owns and must delete.

        Raises
        ------
        WechatifyCompressionError
            If the image cannot be decoded or encoded, or is animated.  No
            temp file is left behind.
        """
        if not self.needs_compression(asset, policy):
            self._metrics.increment("wechatify.compress_total", tags={"result": "skipped"})
            log.debug(
                "Image within policy, skipping compression",
                extra={"extra_fields": {
                    "op": "compress",
                    "path": asset.path,
                    "width": asset.width,
                    "size_bytes": asset.size_bytes,
                }},
            )
            return asset.path, False

        data, quality, size = self._encode_within_budget(asset, policy)

        out_path = create_temp_file(suffix=".jpg", directory=self._temp_dir)
        try:
            with open(out_path, "wb") as fh:
                fh.write(data)
        except BaseException as exc:
            remove_temp_file(out_path)
            if isinstance(exc, OSError):
                raise WechatifyCompressionError(
                    message=f"Cannot write compressed image: {exc}",
                    context={"path": asset.path, "reason": "write_failed"},
                    cause=exc,
                ) from exc
            raise

        within_budget = len(data) <= policy.max_size_bytes
        self._metrics.increment(
            "wechatify.compress_total",
            tags={"result": "compressed" if within_budget else "best_effort"},
        )
        fields = {
            "op": "compress",
            "path": asset.path,
            "output": out_path,
            "original_bytes": asset.size_bytes,
            "compressed_bytes": len(data),
            "width": size[0],
            "height": size[1],
            "quality": quality,
        }
        if within_budget:
            log.info("Image compressed", extra={"extra_fields": fields})
        else:
            log.warning(
                "Image still over size budget at minimum quality, using best effort",
                extra={"extra_fields": {**fields, "max_size_bytes": policy.max_size_bytes}},
            )
        return out_path, True

    def _encode_within_budget(
        self,
        asset: ImageAsset,
        policy: CompressionPolicy,
    ) -> tuple[bytes, int, tuple[int, int]]:
        """Decode, resize, and walk the quality schedule.

        Returns ``(jpeg_bytes, quality_used, (width, height))``.
        """
        try:
            with Image.open(asset.path) as img:
                if getattr(img, "is_animated", False):
                    raise WechatifyCompressionError(
                        message=f"Animated image {asset.name} is not recompressed",
                        context={"path": asset.path, "reason": "animated"},
                    )
                img = ImageOps.exif_transpose(img)
                target = scaled_size(img.width, img.height, policy.max_width_px)
                if target != img.size:
                    img = img.resize(target, Image.Resampling.LANCZOS)
                img = _to_rgb(img)

                schedule = quality_schedule(policy)
                best_quality = schedule[0]
                best = _encode_jpeg(img, best_quality)
                if len(best) <= policy.max_size_bytes:
                    return best, best_quality, target
                for quality in schedule[1:]:
                    data = _encode_jpeg(img, quality)
                    if len(data) < len(best):
                        best, best_quality = data, quality
                    if len(data) <= policy.max_size_bytes:
                        return data, quality, target
                return best, best_quality, target
        except WechatifyCompressionError:
            raise
        except _PILLOW_ERRORS as exc:
            raise WechatifyCompressionError(
                message=f"Cannot compress image {asset.name}: {exc}",
                context={"path": asset.path, "reason": "encode_failed"},
                cause=exc,
            ) from exc
