"""End-to-end tests for processor.py.

Every test runs the real pipeline against a scripted platform
(``FakePlatform`` from conftest) and a mocked download client, then checks
the result, the HTTP traffic, and that no temp file was left behind.
"""

from __future__ import annotations

import dataclasses
import os
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
from PIL import Image

from wechatify.config import WechatifyConfig
from wechatify.errors import (
    ErrorCode,
    WechatifyConfigError,
    WechatifyDownloadError,
    WechatifyImageNotFoundError,
    WechatifyUnsupportedFormatError,
    WechatifyUploadExhaustedError,
)
from wechatify.image.acquire import Acquirer
from wechatify.models import (
    CompressionPolicy,
    GeneratedSource,
    GenerationConfig,
    LocalSource,
    RemoteSource,
    UploadResult,
)
from wechatify.processor import ImageProcessor
from wechatify.wechat_api.transport import WechatTransport

HOSTED = "https://mmbiz.qpic.cn/img/1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def png_bytes(size: tuple[int, int] = (32, 32)) -> bytes:
    from io import BytesIO

    buf = BytesIO()
    Image.new("RGB", size, (0, 128, 255)).save(buf, format="PNG")
    return buf.getvalue()


def make_processor(
    config: WechatifyConfig,
    transport: WechatTransport,
    download=None,
    generator: Any = None,
    sleeps: list[float] | None = None,
) -> ImageProcessor:
    download = download or (lambda request: httpx.Response(404))
    client = httpx.Client(transport=httpx.MockTransport(download), follow_redirects=True)
    acquirer = Acquirer(config, client=client, generator=generator or MagicMock())
    sleep = sleeps.append if sleeps is not None else (lambda s: None)
    return ImageProcessor(config, transport=transport, acquirer=acquirer, sleep=sleep)


def busy() -> dict:
    return {"errcode": -1, "errmsg": "system error"}


class RecordingMetricsHook:
    def __init__(self) -> None:
        self.increments: list[tuple[str, dict | None]] = []
        self.timings: list[tuple[str, dict | None]] = []

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        self.increments.append((name, tags))

    def timing(self, name: str, ms: float, tags: dict[str, str] | None = None) -> None:
        self.timings.append((name, tags))

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass


# ---------------------------------------------------------------------------
# Single image
# ---------------------------------------------------------------------------

class TestLocalPipeline:
    def test_large_jpeg_resized_and_uploaded(self, config, transport, platform, make_image, temp_dir):
        path = make_image("big.jpg", size=(4000, 3000))
        proc = make_processor(config, transport)
        policy = CompressionPolicy(max_width_px=1920, max_size_bytes=5 * 1024 * 1024)

        result = proc.process(LocalSource(path), policy=policy)

        assert result.media_id
        assert result.hosted_url == HOSTED
        assert (result.width, result.height) == (1920, 1440)
        assert result.original_url is None
        assert platform.upload_calls == 1
        content = platform.upload_requests[0].content
        assert b"Content-Type: image/jpeg" in content
        assert list(temp_dir.iterdir()) == []
        with Image.open(path) as img:
            assert img.size == (4000, 3000)

    def test_oversized_photo_fits_budget(self, config, transport, platform, make_noise_image, temp_dir):
        path = make_noise_image("photo.jpg", size=(4000, 3000))
        original_size = os.path.getsize(path)
        assert original_size > 5 * 1024 * 1024

        result = make_processor(config, transport).process(LocalSource(path))

        assert (result.width, result.height) == (1920, 1440)
        content = platform.upload_requests[0].content
        assert b"Content-Type: image/jpeg" in content
        assert len(content) < 5 * 1024 * 1024
        assert os.path.getsize(path) == original_size
        assert list(temp_dir.iterdir()) == []

    def test_small_png_uploaded_unchanged(self, config, transport, platform, make_image, temp_dir):
        path = make_image("small.png", size=(64, 48))
        result = make_processor(config, transport).upload_local_image(path)

        assert (result.width, result.height) == (64, 48)
        content = platform.upload_requests[0].content
        assert b'filename="small.png"' in content
        assert b"Content-Type: image/png" in content
        with open(path, "rb") as fh:
            assert fh.read() in content
        assert list(temp_dir.iterdir()) == []

    def test_missing_file_no_network_no_temp(self, config, transport, platform, tmp_path, temp_dir):
        proc = make_processor(config, transport)
        with pytest.raises(WechatifyImageNotFoundError) as exc_info:
            proc.process(LocalSource(str(tmp_path / "nope.png")))
        assert exc_info.value.context["step"] == "acquire"
        assert platform.requests == []
        assert list(temp_dir.iterdir()) == []

    def test_unsupported_local_file(self, config, transport, platform, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        with pytest.raises(WechatifyUnsupportedFormatError) as exc_info:
            make_processor(config, transport).process(LocalSource(str(path)))
        assert exc_info.value.context["step"] == "validate"
        assert platform.requests == []

    def test_compression_disabled(self, transport, platform, make_image, temp_dir):
        config = dataclasses.replace(
            WechatifyConfig(wechat_appid="wx", wechat_secret="s", temp_dir=str(temp_dir)),
            compress_images=False,
        )
        path = make_image("big.png", size=(3000, 100))
        result = make_processor(config, transport).process(LocalSource(path))
        assert b"Content-Type: image/png" in platform.upload_requests[0].content
        assert result.width is None
        assert list(temp_dir.iterdir()) == []

    def test_animated_gif_falls_back_to_original(self, config, transport, platform, tmp_path, temp_dir):
        path = tmp_path / "anim.gif"
        frames = [Image.new("RGB", (300, 100), c) for c in ((255, 0, 0), (0, 255, 0))]
        frames[0].save(path, save_all=True, append_images=frames[1:], duration=50, loop=0)

        result = make_processor(config, transport).process(
            LocalSource(str(path)), policy=CompressionPolicy(max_width_px=100),
        )

        assert result.media_id
        content = platform.upload_requests[0].content
        assert b'filename="anim.gif"' in content
        assert b"Content-Type: image/gif" in content
        assert list(temp_dir.iterdir()) == []


class TestRemoteAndGenerated:
    def test_download_and_upload(self, config, transport, platform, temp_dir):
        body = png_bytes()
        url = "https://cdn.example.com/a.png"
        proc = make_processor(config, transport, download=lambda request: httpx.Response(200, content=body))

        result = proc.download_and_upload(url)

        assert result.original_url == url
        assert result.media_id == "media-1"
        assert body in platform.upload_requests[0].content
        assert list(temp_dir.iterdir()) == []

    def test_download_failure(self, config, transport, platform, temp_dir):
        proc = make_processor(config, transport, download=lambda request: httpx.Response(500))
        with pytest.raises(WechatifyDownloadError) as exc_info:
            proc.process(RemoteSource("https://cdn.example.com/a.png"))
        assert exc_info.value.context["step"] == "acquire"
        assert platform.requests == []
        assert list(temp_dir.iterdir()) == []

    def test_downloaded_html_rejected_and_removed(self, config, transport, platform, temp_dir):
        proc = make_processor(
            config, transport,
            download=lambda request: httpx.Response(200, content=b"<html>login</html>"),
        )
        with pytest.raises(WechatifyUnsupportedFormatError) as exc_info:
            proc.process(RemoteSource("https://cdn.example.com/fake.png"))
        assert exc_info.value.context["step"] == "validate"
        assert platform.upload_calls == 0
        assert list(temp_dir.iterdir()) == []

    def test_generate_and_upload(self, config, transport, platform, temp_dir):
        generator = MagicMock()
        generator.generate.return_value = "https://img.example.com/gen/1.png"
        proc = make_processor(
            config, transport,
            download=lambda request: httpx.Response(200, content=png_bytes()),
            generator=generator,
        )

        result = proc.generate_and_upload("a quiet harbour")

        generator.generate.assert_called_once_with("a quiet harbour", config.generation_config())
        assert result.original_url == "https://img.example.com/gen/1.png"
        assert list(temp_dir.iterdir()) == []

    def test_generation_uses_explicit_config(self, config, transport):
        generator = MagicMock()
        generator.generate.return_value = "https://img.example.com/gen/2.png"
        proc = make_processor(
            config, transport,
            download=lambda request: httpx.Response(200, content=png_bytes()),
            generator=generator,
        )
        generation = GenerationConfig(model="gpt-image-1", size="512x512")
        proc.process(GeneratedSource("x", generation))
        generator.generate.assert_called_once_with("x", generation)


class TestUploadFailures:
    def test_two_busy_then_success(self, config, transport, platform, make_image):
        platform.uploads = [busy(), busy(), {"media_id": "m3", "url": "https://h/3"}]
        sleeps: list[float] = []
        proc = make_processor(config, transport, sleeps=sleeps)

        result = proc.process(LocalSource(make_image("a.png")))

        assert result.media_id == "m3"
        assert platform.upload_calls == 3
        assert len(sleeps) == 2

    def test_expired_token_refreshed_between_attempts(self, config, transport, platform, make_image):
        platform.uploads = [{"errcode": 40001, "errmsg": "invalid credential"}, {"media_id": "m2", "url": "u"}]
        result = make_processor(config, transport).process(LocalSource(make_image("a.png")))
        assert result.media_id == "m2"
        assert platform.token_calls == 2

    def test_fatal_upload_cleans_compressed_copy(self, config, transport, platform, make_image, temp_dir):
        platform.uploads = [{"errcode": 40005, "errmsg": "invalid file type"}]
        path = make_image("big.jpg", size=(2500, 1000))

        with pytest.raises(WechatifyUploadExhaustedError) as exc_info:
            make_processor(config, transport).process(LocalSource(path))

        err = exc_info.value
        assert err.context["step"] == "upload"
        assert err.context["reason"] == "fatal"
        assert err.__cause__.context["errcode"] == 40005
        assert platform.upload_calls == 1
        assert list(temp_dir.iterdir()) == []

    def test_exhausted(self, config, transport, platform, make_image):
        platform.uploads = [busy()]
        with pytest.raises(WechatifyUploadExhaustedError) as exc_info:
            make_processor(config, transport).process(LocalSource(make_image("a.png")))
        assert exc_info.value.context["reason"] == "exhausted"
        assert platform.upload_calls == config.upload_max_attempts

    def test_interrupt_during_upload_cleans_up(self, config, transport, make_image, temp_dir):
        path = make_image("big.jpg", size=(2500, 1000))
        proc = make_processor(config, transport)
        with patch("wechatify.processor.upload_with_retry", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                proc.process(LocalSource(path))
        assert list(temp_dir.iterdir()) == []

    def test_missing_credentials_before_any_work(self, transport, platform, make_image, temp_dir):
        config = WechatifyConfig(temp_dir=str(temp_dir))
        downloads: list[httpx.Request] = []

        def download(request):
            downloads.append(request)
            return httpx.Response(200, content=png_bytes())

        proc = make_processor(config, transport, download=download)
        with pytest.raises(WechatifyConfigError) as exc_info:
            proc.process(RemoteSource("https://cdn.example.com/a.png"))
        assert exc_info.value.context["step"] == "start"
        assert downloads == []
        assert platform.requests == []


# ---------------------------------------------------------------------------
# Policy handling
# ---------------------------------------------------------------------------

class TestPolicy:
    def test_default_policy_from_config(self, config, transport):
        assert make_processor(config, transport).compression_policy == config.compression_policy()

    def test_set_compress_quality_replaces_snapshot(self, config, transport):
        proc = make_processor(config, transport)
        before = proc.compression_policy
        proc.set_compress_quality(70)
        after = proc.compression_policy
        assert after.initial_quality == 70
        assert before.initial_quality == 85
        assert after is not before

    def test_invalid_quality_rejected(self, config, transport):
        proc = make_processor(config, transport)
        with pytest.raises(ValueError):
            proc.set_compress_quality(10)
        assert proc.compression_policy.initial_quality == 85

    def test_in_flight_run_keeps_its_snapshot(self, config, transport, make_image):
        proc = make_processor(config, transport)
        seen: list[CompressionPolicy] = []
        real_compress = proc._compressor.compress

        def compress(asset, policy):
            proc.set_compress_quality(50)
            seen.append(policy)
            return real_compress(asset, policy)

        with patch.object(proc._compressor, "compress", side_effect=compress):
            proc.process(LocalSource(make_image("a.png")))
        assert seen[0].initial_quality == 85
        assert proc.compression_policy.initial_quality == 50


# ---------------------------------------------------------------------------
# Helpers exposed on the processor
# ---------------------------------------------------------------------------

class TestStandaloneHelpers:
    def test_get_image_info(self, config, transport, make_image):
        info = make_processor(config, transport).get_image_info(make_image("a.jpg", size=(120, 90)))
        assert (info.width, info.height) == (120, 90)
        assert info.format.value == "jpeg"
        assert info.size_bytes > 0

    def test_get_image_info_missing(self, config, transport, tmp_path):
        with pytest.raises(WechatifyImageNotFoundError):
            make_processor(config, transport).get_image_info(str(tmp_path / "x.png"))

    def test_compress_image_returns_owned_copy(self, config, transport, make_image, temp_dir):
        path = make_image("wide.png", size=(2400, 100))
        out, changed = make_processor(config, transport).compress_image(path)
        assert changed
        assert os.path.dirname(out) == str(temp_dir)
        with Image.open(out) as img:
            assert img.size == (1920, 80)

    def test_compress_image_noop(self, config, transport, make_image):
        path = make_image("small.png")
        assert make_processor(config, transport).compress_image(path) == (path, False)


# ---------------------------------------------------------------------------
# Markdown batches
# ---------------------------------------------------------------------------

MARKDOWN = (
    "# Post\n\n"
    "![cover](a.png)\n\n"
    "Again: ![cover again](a.png)\n\n"
    "![missing](missing.png)\n"
)


class TestProcessMarkdown:
    def test_keep_fallback(self, config, transport, platform, make_image, tmp_path, temp_dir):
        make_image("a.png")
        result = make_processor(config, transport).process_markdown(MARKDOWN, base_dir=str(tmp_path))

        assert platform.upload_calls == 1
        assert len(result.images) == 1
        assert result.images[0].ref.src == "a.png"
        assert result.images[0].result.hosted_url == HOSTED
        assert result.markdown == (
            "# Post\n\n"
            f"![cover]({HOSTED})\n\n"
            f"Again: ![cover again]({HOSTED})\n\n"
            "![missing](missing.png)\n"
        )
        [warning] = result.warnings
        assert warning.code == ErrorCode.IMAGE_NOT_FOUND
        assert warning.context["src"] == "missing.png"
        assert warning.context["step"] == "acquire"
        assert list(temp_dir.iterdir()) == []

    def test_raise_fallback(self, transport, make_image, tmp_path, temp_dir):
        config = WechatifyConfig(
            wechat_appid="wx", wechat_secret="s", temp_dir=str(temp_dir), image_fallback="raise",
        )
        make_image("a.png")
        with pytest.raises(WechatifyImageNotFoundError):
            make_processor(config, transport).process_markdown(MARKDOWN, base_dir=str(tmp_path))

    def test_no_images(self, config, transport, platform):
        result = make_processor(config, transport).process_markdown("just text")
        assert result.markdown == "just text"
        assert result.images == []
        assert result.warnings == []
        assert platform.requests == []

    def test_generated_reference(self, config, transport):
        generator = MagicMock()
        generator.generate.return_value = "https://img.example.com/gen/c.png"
        proc = make_processor(
            config, transport,
            download=lambda request: httpx.Response(200, content=png_bytes()),
            generator=generator,
        )
        result = proc.process_markdown("![c](<__generate:a cat__>)")
        generator.generate.assert_called_once_with("a cat", config.generation_config())
        assert result.markdown == f"![c]({HOSTED})"


# ---------------------------------------------------------------------------
# Async batches
# ---------------------------------------------------------------------------

class TestAsyncBatches:
    @pytest.mark.asyncio
    async def test_aprocess_many_keeps_order(self, config, transport, make_image, tmp_path, temp_dir):
        sources = [
            LocalSource(make_image("one.png")),
            LocalSource(str(tmp_path / "absent.png")),
            LocalSource(make_image("two.jpg")),
        ]
        results = await make_processor(config, transport).aprocess_many(sources)

        assert isinstance(results[0], UploadResult)
        assert isinstance(results[1], WechatifyImageNotFoundError)
        assert isinstance(results[2], UploadResult)
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_aprocess_many_bounded(self, transport, make_image, temp_dir):
        import threading

        config = WechatifyConfig(
            wechat_appid="wx", wechat_secret="s", temp_dir=str(temp_dir), image_max_concurrent=2,
        )
        proc = make_processor(config, transport)
        lock = threading.Lock()
        active = 0
        peak = 0
        real_process = proc.process

        def tracking(source, **kwargs):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            try:
                return real_process(source, **kwargs)
            finally:
                with lock:
                    active -= 1

        with patch.object(proc, "process", side_effect=tracking):
            results = await proc.aprocess_many(
                [LocalSource(make_image(f"{i}.png")) for i in range(6)]
            )
        assert all(isinstance(r, UploadResult) for r in results)
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_aprocess_markdown(self, config, transport, make_image, tmp_path):
        make_image("a.png")
        result = await make_processor(config, transport).aprocess_markdown(
            MARKDOWN, base_dir=str(tmp_path),
        )
        assert len(result.images) == 1
        assert len(result.warnings) == 1


# ---------------------------------------------------------------------------
# Observability and lifecycle
# ---------------------------------------------------------------------------

class TestMetricsAndLifecycle:
    def test_pipeline_duration_recorded(self, transport, make_image, temp_dir):
        hook = RecordingMetricsHook()
        config = WechatifyConfig(wechat_appid="wx", wechat_secret="s", temp_dir=str(temp_dir), metrics=hook)
        proc = make_processor(config, transport)

        proc.process(LocalSource(make_image("a.png")))
        with pytest.raises(WechatifyImageNotFoundError):
            proc.process(LocalSource(str(temp_dir / "gone.png")))

        durations = [tags for name, tags in hook.timings if name == "wechatify.pipeline_duration_ms"]
        assert durations == [{"status": "ok"}, {"status": "error"}]
        assert ("wechatify.compress_total", {"result": "skipped"}) in hook.increments

    def test_context_manager_closes_clients(self, config, transport):
        proc = make_processor(config, transport)
        with proc as p:
            assert p is proc
        assert transport._client.is_closed

    def test_config_from_kwargs(self, transport):
        proc = ImageProcessor(wechat_appid="wx", wechat_secret="s", transport=transport)
        assert proc.config.wechat_appid == "wx"
        proc.close()
