"""Shared test fixtures for the wechatify test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from PIL import Image

from wechatify.config import WechatifyConfig
from wechatify.wechat_api.transport import WechatTransport

TOKEN_PATH = "/cgi-bin/token"
UPLOAD_PATH = "/cgi-bin/material/add_material"


def json_response(body: dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(body).encode(),
        headers={"content-type": "application/json"},
    )


class FakePlatform:
    """Scripted stand-in for the platform API behind an ``httpx.MockTransport``.

    ``uploads`` is a list of responses (dicts, ``httpx.Response`` objects or
    exceptions) consumed one per upload call; the last entry repeats.
    """

    def __init__(self, uploads: list[Any] | None = None) -> None:
        self.uploads = uploads or [{"media_id": "media-1", "url": "https://mmbiz.qpic.cn/img/1"}]
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.upload_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if request.url.path == TOKEN_PATH:
            self.token_calls += 1
            return json_response({"access_token": f"token-{self.token_calls}", "expires_in": 7200})
        if request.url.path == UPLOAD_PATH:
            scripted = self.uploads[min(self.upload_calls, len(self.uploads) - 1)]
            self.upload_calls += 1
            if isinstance(scripted, Exception):
                raise scripted
            if isinstance(scripted, httpx.Response):
                return scripted
            return json_response(scripted)
        return json_response({"errcode": 404, "errmsg": "unknown path"}, status_code=404)

    @property
    def upload_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == UPLOAD_PATH]


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Directory the pipeline writes its temp files into."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def config(temp_dir: Path) -> WechatifyConfig:
    """Test configuration with dummy credentials and no backoff delay."""
    return WechatifyConfig(
        wechat_appid="wx_test_appid",
        wechat_secret="test_secret_1234",
        image_api_key="sk-test-key-5678",
        retry_base_delay=0.0,
        temp_dir=str(temp_dir),
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def transport(config: WechatifyConfig, platform: FakePlatform) -> WechatTransport:
    """Transport whose HTTP traffic is served by :class:`FakePlatform`."""
    client = httpx.Client(
        base_url=config.wechat_base_url,
        transport=httpx.MockTransport(platform),
    )
    return WechatTransport(config, client=client)


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., str]:
    """Write a solid-colour image; the format follows the file extension."""

    def _make(
        name: str = "image.png",
        size: tuple[int, int] = (64, 48),
        mode: str = "RGB",
        color: Any = (200, 120, 40),
        **save_kwargs: Any,
    ) -> str:
        path = tmp_path / name
        Image.new(mode, size, color).save(path, **save_kwargs)
        return str(path)

    return _make


@pytest.fixture
def make_noise_image(tmp_path: Path) -> Callable[..., str]:
    """Write an RGB image of random pixels, which JPEG cannot shrink much."""

    def _make(name: str = "noise.png", size: tuple[int, int] = (256, 256)) -> str:
        path = tmp_path / name
        data = os.urandom(size[0] * size[1] * 3)
        Image.frombytes("RGB", size, data).save(path)
        return str(path)

    return _make
