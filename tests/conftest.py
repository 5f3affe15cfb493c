"""Shared fixtures for the assetsmith test suite.

Provides in-process fakes for the image and mesh services so pipeline
tests never touch the network, plus an environment guard that keeps the
developer's own config, cache and logs out of every test.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, List, Optional

import pytest

from assetsmith.cache import StageCache
from assetsmith.errors import RemoteError
from assetsmith.models import AssetType, GenerationRequest, ImageResult, ModelResult, RemeshResult
from assetsmith.pipeline import AssetPipeline


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Strip ASSETSMITH_* variables and point logs/config at tmp_path."""
    for name in list(os.environ):
        if name.startswith("ASSETSMITH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ASSETSMITH_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ASSETSMITH_CONFIG", str(tmp_path / "missing-config.yaml"))

    root = logging.getLogger()
    handlers_before = list(root.handlers)
    level_before = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers_before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level_before)


# ---------------------------------------------------------------------------
# Fake services
# ---------------------------------------------------------------------------


class FakeImageService:
    """Stands in for ImageGenerationService.

    :param fail_on: Descriptions containing this text raise a RemoteError.
    :param delay: Seconds each call blocks (to observe concurrency).
    """

    def __init__(self, fail_on: Optional[str] = None, delay: float = 0.0) -> None:
        self.fail_on = fail_on
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        self.on_call = None

    def generate_image(self, description, asset_type, style=None, *, cancel_event=None):
        with self._lock:
            self.calls.append(description)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                self.on_call()
            if self.delay:
                time.sleep(self.delay)
            if self.fail_on and self.fail_on in description:
                raise RemoteError("Image API error (HTTP 500): boom", status_code=500)
            return ImageResult(
                image_url=f"https://images.test/{len(self.calls)}.png",
                prompt=f"Create a {asset_type.value} asset: {description}",
                model="fake-image",
                resolution="1024x1024",
            )
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeMeshClient:
    """Stands in for MeshyClient.

    :param polycount: Face count reported by image_to_model.
    :param model_error: Raised from image_to_model when set.
    """

    def __init__(self, polycount: int = 12000, model_error: Optional[Exception] = None) -> None:
        self.polycount = polycount
        self.model_error = model_error
        self.model_calls: List[str] = []
        self.remesh_calls: List[tuple] = []
        self.downloads: List[str] = []

    def image_to_model(self, image_url, options=None, *, cancel_event=None):
        self.model_calls.append(image_url)
        if self.model_error is not None:
            raise self.model_error
        return ModelResult(
            model_url=f"https://mesh.test/{len(self.model_calls)}/model.glb",
            polycount=self.polycount,
            texture_urls={"diffuse": "https://mesh.test/diffuse.png"},
            task_id=f"model-task-{len(self.model_calls)}",
            processing_time=12.5,
        )

    def remesh_model(self, model_url, target_polycount, *, original_polycount=0, cancel_event=None):
        self.remesh_calls.append((model_url, target_polycount))
        return RemeshResult(
            model_url=model_url.replace("model.glb", "remeshed.glb"),
            original_polycount=original_polycount,
            remeshed_polycount=target_polycount,
            target_polycount=target_polycount,
            task_id=f"remesh-task-{len(self.remesh_calls)}",
        )

    def download_model(self, url, dest_path, *, cancel_event=None):
        self.downloads.append(url)
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)
        with open(dest_path, "wb") as fh:
            fh.write(b"glTF-binary")
        return len(b"glTF-binary")


def _make_request(
    request_id: str = "sword-1",
    *,
    name: str = "Iron Sword",
    description: str = "A plain iron sword with a leather grip",
    asset_type: AssetType = AssetType.WEAPON,
    **kwargs: Any,
) -> GenerationRequest:
    return GenerationRequest(
        id=request_id,
        name=name,
        description=description,
        type=asset_type,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def image_service():
    return FakeImageService()


@pytest.fixture()
def mesh_client():
    return FakeMeshClient()


@pytest.fixture()
def stage_cache():
    cache = StageCache()
    yield cache
    cache.close()


@pytest.fixture()
def pipeline(image_service, mesh_client, stage_cache, tmp_path):
    return AssetPipeline(
        image_service,
        mesh_client,
        stage_cache,
        output_dir=str(tmp_path / "assets"),
    )


@pytest.fixture()
def make_request():
    """Factory for GenerationRequest objects with weapon defaults."""
    return _make_request


@pytest.fixture()
def sword_request():
    return _make_request()


@pytest.fixture()
def make_pipeline(tmp_path):
    """Factory: build an AssetPipeline around the given fakes."""
    caches = []

    def _factory(image_service=None, mesh_client=None, cache=None, **kwargs):
        if cache is None:
            cache = StageCache()
            caches.append(cache)
        kwargs.setdefault("output_dir", str(tmp_path / "assets"))
        return AssetPipeline(
            image_service or FakeImageService(),
            mesh_client or FakeMeshClient(),
            cache,
            **kwargs,
        )

    yield _factory
    for cache in caches:
        cache.close()


@pytest.fixture()
def fakes():
    """The fake service classes, for tests that need custom instances."""
    return FakeImageService, FakeMeshClient
