"""Tests for assetsmith.services.meshy and the task polling base class."""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import requests as requests_lib
import responses

from assetsmith.errors import (
    AuthenticationError,
    GenerationCancelledError,
    RemoteError,
    RemoteTaskFailedError,
    TaskNotFoundError,
    TaskTimeoutError,
    ValidationError,
)
from assetsmith.services.base import TaskStatus
from assetsmith.services.meshy import (
    _BASE_URL,
    MeshOptions,
    MeshyClient,
    extract_texture_urls,
)

API = f"{_BASE_URL}/openapi/v1"


@pytest.fixture()
def client():
    return MeshyClient(api_key="msy_test_key", poll_interval=0.01, max_wait=5.0, retry_delay=0.0)


def _task(status, **extra):
    payload = {"status": status, "progress": 100 if status == "SUCCEEDED" else 40}
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_explicit_key(self):
        c = MeshyClient(api_key="abc")
        assert c._api_key == "abc"
        assert c._session.headers["Authorization"] == "Bearer abc"

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ASSETSMITH_MESHY_API_KEY", "env-key")
        assert MeshyClient()._api_key == "env-key"

    def test_missing_key(self):
        with pytest.raises(AuthenticationError) as exc_info:
            MeshyClient()
        assert exc_info.value.code == "AUTH_REQUIRED"


# ---------------------------------------------------------------------------
# Submit / status
# ---------------------------------------------------------------------------


class TestTaskProtocol:
    @responses.activate
    def test_submit_returns_task_id(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", json={"result": "task-1"})

        task_id = client.submit("image-to-3d", {"image_url": "https://img/1.png"})

        assert task_id == "task-1"
        body = json.loads(responses.calls[0].request.body)
        assert body["image_url"] == "https://img/1.png"

    @responses.activate
    def test_submit_without_id(self, client):
        responses.add(responses.POST, f"{API}/remesh", json={"message": "queued"})
        with pytest.raises(RemoteError) as exc_info:
            client.submit("remesh", {})
        assert exc_info.value.code == "INVALID_RESPONSE"

    def test_submit_unknown_kind(self, client):
        with pytest.raises(ValidationError):
            client.submit("sketch-to-3d", {})

    @responses.activate
    def test_status_tries_endpoints_in_order(self, client):
        responses.add(responses.GET, f"{API}/image-to-3d/t-9", status=404, json={"message": "nope"})
        responses.add(responses.GET, f"{API}/text-to-3d/t-9", json=_task("IN_PROGRESS"))

        task = client.get_task_status("t-9")

        assert task.kind == "text-to-3d"
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.progress == 40
        assert [c.request.url for c in responses.calls] == [
            f"{API}/image-to-3d/t-9",
            f"{API}/text-to-3d/t-9",
        ]

    @responses.activate
    def test_status_uses_known_kind_first(self, client):
        responses.add(responses.POST, f"{API}/remesh", json={"result": "r-1"})
        responses.add(responses.GET, f"{API}/remesh/r-1", json=_task("PENDING"))

        client.submit("remesh", {"model_url": "https://m"})
        task = client.get_task_status("r-1")

        assert task.kind == "remesh"
        assert len(responses.calls) == 2

    @responses.activate
    def test_status_not_found_anywhere(self, client):
        for kind in ("image-to-3d", "text-to-3d", "remesh", "text-to-texture"):
            responses.add(responses.GET, f"{API}/{kind}/ghost", status=404)

        with pytest.raises(TaskNotFoundError):
            client.get_task_status("ghost")
        assert len(responses.calls) == 4

    @responses.activate
    def test_result_envelope_unwrapped(self, client):
        responses.add(
            responses.GET,
            f"{API}/image-to-3d/t-1",
            json={"result": _task("SUCCEEDED", model_urls={"glb": "https://m.glb"})},
        )
        task = client.get_task_status("t-1")
        assert task.status == TaskStatus.SUCCEEDED
        assert task.data["model_urls"]["glb"] == "https://m.glb"

    @responses.activate
    def test_cancelled_status_maps_to_failed(self, client):
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("CANCELED"))
        assert client.get_task_status("t-1").status == TaskStatus.FAILED


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestWaitForCompletion:
    @responses.activate
    def test_polls_until_success(self, client):
        url = f"{API}/image-to-3d/t-1"
        responses.add(responses.GET, url, json=_task("PENDING"))
        responses.add(responses.GET, url, json=_task("IN_PROGRESS"))
        responses.add(responses.GET, url, json=_task("SUCCEEDED"))
        seen = []

        task = client.wait_for_completion("t-1", on_progress=seen.append)

        assert task.status == TaskStatus.SUCCEEDED
        assert [t.status for t in seen] == [TaskStatus.PENDING, TaskStatus.IN_PROGRESS]

    @responses.activate
    def test_failed_task(self, client):
        responses.add(
            responses.GET,
            f"{API}/image-to-3d/t-1",
            json=_task("FAILED", task_error={"message": "image unreadable"}),
        )
        with pytest.raises(RemoteTaskFailedError) as exc_info:
            client.wait_for_completion("t-1")
        assert exc_info.value.reason == "image unreadable"
        assert exc_info.value.code == "TASK_FAILED"

    @responses.activate
    def test_timeout(self, client):
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("IN_PROGRESS"))
        with pytest.raises(TaskTimeoutError) as exc_info:
            client.wait_for_completion("t-1", max_wait=0)
        assert exc_info.value.task_id == "t-1"

    @responses.activate
    def test_unknown_status(self, client):
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("WIBBLE"))
        with pytest.raises(RemoteError) as exc_info:
            client.wait_for_completion("t-1")
        assert exc_info.value.code == "UNKNOWN_STATUS"

    @responses.activate
    def test_timeout_fires_at_deadline_not_before(self):
        client = MeshyClient(api_key="msy_test_key", poll_interval=1.0, retry_delay=0.0)
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("IN_PROGRESS"))
        clock = {"now": 1000.0}
        sleeps = []

        def _fake_sleep(seconds, cancel_event=None):
            sleeps.append(seconds)
            clock["now"] += seconds

        fake_time = MagicMock()
        fake_time.monotonic.side_effect = lambda: clock["now"]

        with patch("assetsmith.services.base.time", fake_time), patch(
            "assetsmith.services.base.interruptible_sleep", side_effect=_fake_sleep
        ):
            with pytest.raises(TaskTimeoutError) as exc_info:
                client.wait_for_completion("t-1", max_wait=3.5)

        # Polls at t=0, 1, 2, 3 and 3.5; the last sleep is cut to the deadline.
        assert len(responses.calls) == 5
        assert sleeps == [1.0, 1.0, 1.0, 0.5]
        assert exc_info.value.waited == pytest.approx(3.5)

    @responses.activate
    def test_timeout_real_clock_bounds(self):
        client = MeshyClient(api_key="msy_test_key", poll_interval=0.05, retry_delay=0.0)
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("IN_PROGRESS"))

        started = time.monotonic()
        with pytest.raises(TaskTimeoutError):
            client.wait_for_completion("t-1", max_wait=0.3)
        elapsed = time.monotonic() - started

        assert 0.3 <= elapsed < 0.3 + 0.25
        assert 3 <= len(responses.calls) <= 8

    @responses.activate
    def test_cancel_interrupts_status_retry_backoff(self):
        client = MeshyClient(api_key="msy_test_key", poll_interval=0.01, retry_delay=1.0)
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", status=503, json={"message": "busy"})
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()

        started = time.monotonic()
        try:
            with pytest.raises(GenerationCancelledError):
                client.wait_for_completion("t-1", cancel_event=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 0.5
        assert len(responses.calls) == 1

    @responses.activate
    def test_task_kind_forgotten_after_completion(self, client):
        responses.add(responses.POST, f"{API}/remesh", json={"result": "r-1"})
        responses.add(responses.GET, f"{API}/remesh/r-1", json=_task("PENDING"))
        responses.add(responses.GET, f"{API}/remesh/r-1", json=_task("SUCCEEDED"))

        client.submit("remesh", {"model_url": "https://m"})
        assert "r-1" in client._task_kinds
        client.wait_for_completion("r-1")

        assert client._task_kinds == {}

    @responses.activate
    def test_task_kind_forgotten_after_timeout(self, client):
        responses.add(responses.POST, f"{API}/remesh", json={"result": "r-1"})
        responses.add(responses.GET, f"{API}/remesh/r-1", json=_task("IN_PROGRESS"))

        client.submit("remesh", {"model_url": "https://m"})
        with pytest.raises(TaskTimeoutError):
            client.wait_for_completion("r-1", max_wait=0)

        assert client._task_kinds == {}


# ---------------------------------------------------------------------------
# High level operations
# ---------------------------------------------------------------------------


class TestOperations:
    @responses.activate
    def test_image_to_model(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", json={"result": "t-1"})
        responses.add(
            responses.GET,
            f"{API}/image-to-3d/t-1",
            json=_task(
                "SUCCEEDED",
                model_urls={"fbx": "https://cdn/m.fbx", "glb": "https://cdn/m.glb"},
                polycount=9500,
                texture_urls=[{"base_color": "https://cdn/bc.png", "normal": "https://cdn/n.png"}],
                thumbnail_url="https://cdn/thumb.png",
                created_at=1_700_000_000_000,
                finished_at=1_700_000_045_000,
            ),
        )

        result = client.image_to_model("https://img/1.png", MeshOptions(target_polycount=10000, style="cartoon"))

        assert result.model_url == "https://cdn/m.glb"
        assert result.format == "glb"
        assert result.polycount == 9500
        assert result.texture_urls == {"diffuse": "https://cdn/bc.png", "normal": "https://cdn/n.png"}
        assert result.processing_time == 45.0
        assert result.task_id == "t-1"
        body = json.loads(responses.calls[0].request.body)
        assert body["target_polycount"] == 10000
        assert body["art_style"] == "cartoon"

    @responses.activate
    def test_text_to_model_truncates_prompt(self, client):
        responses.add(responses.POST, f"{API}/text-to-3d", json={"result": "t-2"})
        responses.add(
            responses.GET,
            f"{API}/text-to-3d/t-2",
            json=_task("SUCCEEDED", model_urls={"obj": "https://cdn/m.obj"}),
        )

        result = client.text_to_model("x" * 1000)

        body = json.loads(responses.calls[0].request.body)
        assert len(body["prompt"]) == 600
        assert body["mode"] == "preview"
        assert result.format == "obj"

    @responses.activate
    def test_remesh_model(self, client):
        responses.add(responses.POST, f"{API}/remesh", json={"result": "r-1"})
        responses.add(
            responses.GET,
            f"{API}/remesh/r-1",
            json=_task("SUCCEEDED", model_urls={"glb": "https://cdn/r.glb"}, polycount=1980),
        )

        result = client.remesh_model("https://cdn/m.glb", 2000, original_polycount=12000)

        assert result.model_url == "https://cdn/r.glb"
        assert result.original_polycount == 12000
        assert result.remeshed_polycount == 1980
        assert result.target_polycount == 2000
        body = json.loads(responses.calls[0].request.body)
        assert body["target_polycount"] == 2000
        assert body["topology"] == "triangle"

    @responses.activate
    def test_retexture_model(self, client):
        responses.add(responses.POST, f"{API}/text-to-texture", json={"result": "x-1"})
        responses.add(
            responses.GET,
            f"{API}/text-to-texture/x-1",
            json=_task("SUCCEEDED", model_urls={"glb": "https://cdn/x.glb"}),
        )
        result = client.retexture_model("https://cdn/m.glb", "rusty iron", style_prompt="gritty")
        assert result.model_url == "https://cdn/x.glb"
        body = json.loads(responses.calls[0].request.body)
        assert body["style_prompt"] == "gritty"

    @responses.activate
    def test_success_without_model_url(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", json={"result": "t-1"})
        responses.add(responses.GET, f"{API}/image-to-3d/t-1", json=_task("SUCCEEDED", model_urls={}))
        with pytest.raises(RemoteError) as exc_info:
            client.image_to_model("https://img/1.png")
        assert exc_info.value.code == "NO_RESULT"

    @responses.activate
    def test_download_model(self, client, tmp_path):
        responses.add(responses.GET, "https://cdn/m.glb", body=b"glTF" * 100)
        dest = tmp_path / "out" / "m.glb"

        written = client.download_model("https://cdn/m.glb", str(dest))

        assert written == 400
        assert dest.read_bytes() == b"glTF" * 100


    def _stream(self, chunks, error=None):
        resp = MagicMock()
        resp.ok = True

        def _iter(chunk_size):
            yield from chunks
            if error is not None:
                raise error

        resp.iter_content.side_effect = _iter
        return resp

    def test_download_retries_broken_stream(self, client, tmp_path):
        broken = self._stream([b"abc"], requests_lib.exceptions.ChunkedEncodingError("reset"))
        good = self._stream([b"abc", b"def"])
        dest = tmp_path / "m.glb"

        with patch.object(client._session, "request", side_effect=[broken, good]) as mock_request:
            written = client.download_model("https://cdn/m.glb", str(dest))

        assert written == 6
        assert dest.read_bytes() == b"abcdef"
        assert mock_request.call_count == 2
        broken.close.assert_called_once()
        good.close.assert_called_once()
        assert not (tmp_path / "m.glb.part").exists()

    def test_download_failure_leaves_no_partial_file(self, client, tmp_path):
        streams = [
            self._stream([b"abc"], requests_lib.exceptions.ChunkedEncodingError("reset"))
            for _ in range(3)
        ]
        dest = tmp_path / "m.glb"

        with patch.object(client._session, "request", side_effect=streams):
            with pytest.raises(RemoteError) as exc_info:
                client.download_model("https://cdn/m.glb", str(dest))

        assert exc_info.value.code == "DOWNLOAD_ERROR"
        assert exc_info.value.retryable is True
        assert not dest.exists()
        assert list(tmp_path.iterdir()) == []
        assert all(s.close.called for s in streams)

    def test_download_cancelled_mid_stream(self, client, tmp_path):
        cancel = threading.Event()
        resp = MagicMock()
        resp.ok = True

        def _iter(chunk_size):
            yield b"abc"
            cancel.set()
            yield b"def"

        resp.iter_content.side_effect = _iter
        dest = tmp_path / "m.glb"

        with patch.object(client._session, "request", return_value=resp):
            with pytest.raises(GenerationCancelledError):
                client.download_model("https://cdn/m.glb", str(dest), cancel_event=cancel)

        assert list(tmp_path.iterdir()) == []
        resp.close.assert_called_once()


# ---------------------------------------------------------------------------
# HTTP errors and retries
# ---------------------------------------------------------------------------


class TestHttpErrors:
    @responses.activate
    def test_401_not_retried(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", status=401)
        with pytest.raises(AuthenticationError):
            client.submit("image-to-3d", {})
        assert len(responses.calls) == 1

    @responses.activate
    @patch("assetsmith.retry.time.sleep")
    def test_5xx_retried_then_raised(self, mock_sleep, client):
        responses.add(responses.POST, f"{API}/image-to-3d", status=503, json={"message": "busy"})
        with pytest.raises(RemoteError) as exc_info:
            client.submit("image-to-3d", {})
        assert exc_info.value.status_code == 503
        assert "busy" in str(exc_info.value)
        assert len(responses.calls) == 3

    @responses.activate
    def test_400_not_retried(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", status=400, json={"message": "bad image"})
        with pytest.raises(RemoteError) as exc_info:
            client.submit("image-to-3d", {})
        assert exc_info.value.retryable is False
        assert len(responses.calls) == 1

    @responses.activate
    def test_429_then_success(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", status=429)
        responses.add(responses.POST, f"{API}/image-to-3d", json={"result": "t-1"})
        assert client.submit("image-to-3d", {}) == "t-1"
        assert len(responses.calls) == 2

    @responses.activate
    def test_connection_error(self, client):
        responses.add(
            responses.POST,
            f"{API}/image-to-3d",
            body=requests_lib.ConnectionError("refused"),
        )
        with pytest.raises(RemoteError) as exc_info:
            client.submit("image-to-3d", {})
        assert exc_info.value.code == "CONNECTION_ERROR"

    @responses.activate
    def test_invalid_json(self, client):
        responses.add(responses.POST, f"{API}/image-to-3d", body="<html>oops</html>")
        with pytest.raises(RemoteError) as exc_info:
            client.submit("image-to-3d", {})
        assert exc_info.value.code == "INVALID_RESPONSE"


class TestExtractTextures:
    def test_first_set_only(self):
        data = {
            "texture_urls": [
                {"base_color": "a", "metallic": "m", "roughness": ""},
                {"base_color": "b"},
            ]
        }
        assert extract_texture_urls(data) == {"diffuse": "a", "metallic": "m"}

    def test_missing(self):
        assert extract_texture_urls({}) == {}
        assert extract_texture_urls({"texture_urls": "nope"}) == {}
