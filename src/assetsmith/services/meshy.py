"""Meshy image-to-3D, text-to-3D, remesh and retexture client.

Integrates with the Meshy OpenAPI v1 task endpoints
(https://docs.meshy.ai).  Every call is retried with exponential backoff
via :func:`assetsmith.retry.retry`; status lookups try each task family
in turn because a bare task id does not say which endpoint owns it.

Authentication
--------------
Set ``ASSETSMITH_MESHY_API_KEY`` or pass ``api_key`` to the constructor.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from assetsmith.errors import (
    AuthenticationError,
    RemoteError,
    TaskNotFoundError,
    ValidationError,
)
from assetsmith.models import ModelResult, RemeshResult
from assetsmith.retry import check_cancelled, retry
from assetsmith.services.base import ProgressCallback, RemoteTask, RemoteTaskClient, TaskStatus

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.meshy.ai"
_API_PREFIX = "/openapi/v1"

# Task families, in the order status lookups try them.
TASK_KINDS: tuple[str, ...] = ("image-to-3d", "text-to-3d", "remesh", "text-to-texture")

_STATUS_MAP: Dict[str, TaskStatus] = {
    "PENDING": TaskStatus.PENDING,
    "IN_PROGRESS": TaskStatus.IN_PROGRESS,
    "SUCCEEDED": TaskStatus.SUCCEEDED,
    "FAILED": TaskStatus.FAILED,
    "CANCELED": TaskStatus.FAILED,
    "CANCELLED": TaskStatus.FAILED,
    "EXPIRED": TaskStatus.FAILED,
}

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)

# Meshy texture keys -> our texture slot names.
_TEXTURE_SLOTS: Dict[str, str] = {
    "base_color": "diffuse",
    "normal": "normal",
    "metallic": "metallic",
    "roughness": "roughness",
}


@dataclass
class MeshOptions:
    """Generation knobs shared by the Meshy task endpoints."""

    target_polycount: int = 2000
    style: Optional[str] = None
    enable_pbr: bool = True
    topology: str = "quad"
    texture_resolution: int = 512
    surface_mode: str = "organic"
    ai_model: str = "meshy-4"
    should_remesh: bool = True
    negative_prompt: str = ""
    style_prompt: str = ""

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "enable_pbr": self.enable_pbr,
            "ai_model": self.ai_model,
            "surface_mode": self.surface_mode,
            "topology": self.topology,
            "target_polycount": self.target_polycount,
            "texture_resolution": self.texture_resolution,
            "should_remesh": self.should_remesh,
        }
        if self.style:
            body["art_style"] = self.style
        if self.negative_prompt:
            body["negative_prompt"] = self.negative_prompt
        if self.style_prompt:
            body["style_prompt"] = self.style_prompt
        return body


def extract_texture_urls(data: Dict[str, Any]) -> Dict[str, str]:
    """Pull the first texture set out of a task payload.

    Meshy reports ``texture_urls`` as a list of dicts keyed by
    ``base_color``/``normal``/``metallic``/``roughness``.
    """
    texture_urls = data.get("texture_urls")
    if not isinstance(texture_urls, list) or not texture_urls:
        return {}
    first = texture_urls[0]
    if not isinstance(first, dict):
        return {}
    return {
        slot: first[key]
        for key, slot in _TEXTURE_SLOTS.items()
        if first.get(key)
    }


def _processing_time(data: Dict[str, Any]) -> float:
    """Seconds between task creation and completion (timestamps are in ms)."""
    created = data.get("created_at") or 0
    finished = data.get("finished_at") or 0
    if not created or not finished or finished < created:
        return 0.0
    return (finished - created) / 1000.0


class MeshyClient(RemoteTaskClient):
    """Meshy task API client.

    Args:
        api_key: Meshy API key.  Falls back to ``ASSETSMITH_MESHY_API_KEY``.
        base_url: API root, without the ``/openapi/v1`` prefix.
        timeout: Per-request HTTP timeout in seconds.
        poll_interval: Seconds between status polls.
        max_wait: Default budget for :meth:`wait_for_completion`.
        max_retries: Attempts per HTTP call (including the first).
        retry_delay: Initial backoff delay in seconds.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = _BASE_URL,
        timeout: float = 60,
        poll_interval: float = 5.0,
        max_wait: float = 300.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__(poll_interval=poll_interval, max_wait=max_wait)
        self._api_key = api_key or os.environ.get("ASSETSMITH_MESHY_API_KEY", "")
        if not self._api_key:
            raise AuthenticationError(
                "Meshy API key required.  Set ASSETSMITH_MESHY_API_KEY or pass api_key.",
                code="AUTH_REQUIRED",
                status_code=None,
            )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            }
        )
        # Endpoint owning each unfinished task, so status lookups hit it
        # first.  Entries are dropped once the task ends or is abandoned.
        self._task_kinds: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Task protocol
    # ------------------------------------------------------------------

    def submit(
        self,
        kind: str,
        body: Dict[str, Any],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """POST a new task to the *kind* endpoint and return its id."""
        if kind not in TASK_KINDS:
            raise ValidationError(
                f"Unknown Meshy task kind {kind!r} (expected one of: {', '.join(TASK_KINDS)})."
            )

        resp = self._request(
            "POST",
            self._task_url(kind),
            json_body=body,
            cancel_event=cancel_event,
        )
        data = self._json(resp)
        task_id = data.get("result", "") if isinstance(data, dict) else ""
        if not task_id or not isinstance(task_id, str):
            raise RemoteError(
                "Meshy API returned no task ID.",
                code="INVALID_RESPONSE",
                retryable=False,
            )

        self._task_kinds[task_id] = kind
        logger.info("Submitted Meshy %s task %s", kind, task_id)
        return task_id

    def get_task_status(
        self,
        task_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> RemoteTask:
        """Look up *task_id*, probing each task family until one knows it."""
        for kind in self._candidate_kinds(task_id):
            try:
                resp = self._request(
                    "GET",
                    f"{self._task_url(kind)}/{task_id}",
                    cancel_event=cancel_event,
                )
            except TaskNotFoundError:
                logger.debug("Task %s not found under %s, trying next endpoint", task_id, kind)
                continue

            task = self._parse_task(task_id, kind, self._json(resp))
            if task.is_terminal:
                self._task_kinds.pop(task_id, None)
            else:
                self._task_kinds[task_id] = kind
            return task

        self._task_kinds.pop(task_id, None)
        raise TaskNotFoundError(f"Meshy task {task_id} was not found on any endpoint.")

    def wait_for_completion(
        self,
        task_id: str,
        max_wait: Optional[float] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RemoteTask:
        try:
            return super().wait_for_completion(
                task_id, max_wait, cancel_event=cancel_event, on_progress=on_progress
            )
        finally:
            self._task_kinds.pop(task_id, None)

    # ------------------------------------------------------------------
    # High level operations
    # ------------------------------------------------------------------

    def image_to_model(
        self,
        image_url: str,
        options: Optional[MeshOptions] = None,
        *,
        max_wait: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelResult:
        """Convert a concept image into a textured model and wait for it."""
        options = options or MeshOptions()
        body = {"image_url": image_url, **options.to_body()}
        task_id = self.submit("image-to-3d", body, cancel_event=cancel_event)
        task = self.wait_for_completion(task_id, max_wait, cancel_event=cancel_event)
        return self._model_result(task, options.target_polycount)

    def text_to_model(
        self,
        prompt: str,
        options: Optional[MeshOptions] = None,
        *,
        max_wait: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelResult:
        """Generate a model straight from a text prompt."""
        options = options or MeshOptions()
        body = {"mode": "preview", "prompt": prompt[:600], **options.to_body()}
        task_id = self.submit("text-to-3d", body, cancel_event=cancel_event)
        task = self.wait_for_completion(task_id, max_wait, cancel_event=cancel_event)
        return self._model_result(task, options.target_polycount)

    def retexture_model(
        self,
        model_url: str,
        texture_prompt: str,
        *,
        style_prompt: str = "",
        enable_pbr: bool = True,
        texture_resolution: int = 512,
        max_wait: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelResult:
        """Re-texture an existing model from a text prompt."""
        body: Dict[str, Any] = {
            "model_url": model_url,
            "prompt": texture_prompt,
            "enable_pbr": enable_pbr,
            "texture_resolution": texture_resolution,
        }
        if style_prompt:
            body["style_prompt"] = style_prompt
        task_id = self.submit("text-to-texture", body, cancel_event=cancel_event)
        task = self.wait_for_completion(task_id, max_wait, cancel_event=cancel_event)
        return self._model_result(task, 0)

    def remesh_model(
        self,
        model_url: str,
        target_polycount: int,
        *,
        original_polycount: int = 0,
        topology: str = "triangle",
        max_wait: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RemeshResult:
        """Reduce *model_url* to roughly *target_polycount* faces."""
        body: Dict[str, Any] = {
            "model_url": model_url,
            "target_polycount": target_polycount,
            "topology": topology,
            "target_formats": ["glb"],
        }
        task_id = self.submit("remesh", body, cancel_event=cancel_event)
        task = self.wait_for_completion(task_id, max_wait, cancel_event=cancel_event)
        url = self._pick_model_url(task)
        return RemeshResult(
            model_url=url,
            original_polycount=original_polycount,
            remeshed_polycount=int(task.data.get("polycount") or target_polycount),
            target_polycount=target_polycount,
            task_id=task_id,
        )

    def download_model(
        self,
        url: str,
        dest_path: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """Stream *url* to *dest_path* and return the number of bytes written.

        The body is written to ``dest_path + ".part"`` and moved into place
        only when complete, so an interrupted transfer never leaves a
        truncated model behind.  A broken stream is retried like any other
        transient failure.
        """
        parent = os.path.dirname(dest_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        part_path = f"{dest_path}.part"

        def _attempt() -> int:
            resp = self._send("GET", url, timeout=120, stream=True)
            written = 0
            try:
                with open(part_path, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=65536):
                        check_cancelled(cancel_event)
                        fh.write(chunk)
                        written += len(chunk)
                os.replace(part_path, dest_path)
            except requests.RequestException as exc:
                raise RemoteError(
                    f"Download of {url} was interrupted after {written} bytes: {exc}",
                    code="DOWNLOAD_ERROR",
                ) from exc
            finally:
                resp.close()
                if os.path.exists(part_path):
                    os.remove(part_path)
            return written

        written = retry(
            _attempt,
            self._max_retries,
            self._retry_delay,
            cancel_event=cancel_event,
            description=f"Meshy download {url}",
        )
        logger.info("Downloaded %s (%d bytes) to %s", url, written, dest_path)
        return written

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _task_url(self, kind: str) -> str:
        return f"{self._base_url}{_API_PREFIX}/{kind}"

    def _candidate_kinds(self, task_id: str) -> List[str]:
        known = self._task_kinds.get(task_id)
        if known is None:
            return list(TASK_KINDS)
        return [known] + [k for k in TASK_KINDS if k != known]

    def _parse_task(self, task_id: str, kind: str, data: Dict[str, Any]) -> RemoteTask:
        # Some responses wrap the task in a ``result`` envelope.
        if isinstance(data.get("result"), dict):
            data = data["result"]

        raw_status = str(data.get("status", ""))
        status = _STATUS_MAP.get(raw_status.upper(), TaskStatus.UNKNOWN)

        error_msg: Optional[str] = None
        task_error = data.get("task_error")
        if isinstance(task_error, dict):
            error_msg = task_error.get("message") or None

        return RemoteTask(
            id=task_id,
            kind=kind,
            status=status,
            raw_status=raw_status,
            progress=int(data.get("progress") or 0),
            error=error_msg,
            data=data,
        )

    def _pick_model_url(self, task: RemoteTask) -> str:
        model_urls = task.data.get("model_urls")
        if isinstance(model_urls, dict):
            for fmt in ("glb", "fbx", "obj", "usdz"):
                if model_urls.get(fmt):
                    return model_urls[fmt]
        raise RemoteError(
            f"Meshy task {task.id} finished without a downloadable model.",
            code="NO_RESULT",
            retryable=False,
        )

    def _model_result(self, task: RemoteTask, target_polycount: int) -> ModelResult:
        url = self._pick_model_url(task)
        fmt = next(
            (k for k, v in (task.data.get("model_urls") or {}).items() if v == url),
            "glb",
        )
        return ModelResult(
            model_url=url,
            format=fmt,
            polycount=int(task.data.get("polycount") or target_polycount),
            texture_urls=extract_texture_urls(task.data),
            task_id=task.id,
            processing_time=_processing_time(task.data),
            thumbnail_url=task.data.get("thumbnail_url"),
        )

    def _json(self, resp: requests.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            raise RemoteError(
                f"Meshy API returned invalid JSON: {resp.text[:200]}",
                code="INVALID_RESPONSE",
                retryable=False,
            ) from None
        if not isinstance(data, dict):
            raise RemoteError(
                f"Unexpected Meshy response type: {type(data).__name__}",
                code="INVALID_RESPONSE",
                retryable=False,
            )
        return data

    def _send(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        stream: bool = False,
    ) -> requests.Response:
        """One HTTP call with transport and status errors mapped to ``RemoteError``."""
        req_timeout = timeout or self._timeout
        try:
            resp = self._session.request(
                method,
                url,
                json=json_body,
                timeout=req_timeout,
                stream=stream,
            )
        except requests.ConnectionError:
            raise RemoteError(
                "Could not connect to Meshy API.", code="CONNECTION_ERROR"
            ) from None
        except requests.Timeout:
            raise RemoteError(
                f"Meshy API request timed out after {req_timeout}s.", code="TIMEOUT"
            ) from None

        try:
            self._handle_http_error(resp)
        except RemoteError:
            resp.close()
            raise
        return resp

    def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> requests.Response:
        """Make one HTTP call, retried with backoff on transient failures."""
        return retry(
            lambda: self._send(method, url, json_body=json_body, timeout=timeout),
            self._max_retries,
            self._retry_delay,
            cancel_event=cancel_event,
            description=f"Meshy {method} {url.rsplit('/openapi', 1)[-1]}",
        )

    def _handle_http_error(self, resp: requests.Response) -> None:
        """Raise a typed exception for non-2xx responses."""
        if resp.ok:
            return

        if resp.status_code == 401:
            raise AuthenticationError("Meshy API key is invalid or expired.")
        if resp.status_code == 404:
            raise TaskNotFoundError(f"Meshy resource not found: {resp.url}")
        if resp.status_code == 429:
            raise RemoteError(
                "Meshy API rate limit exceeded.  Try again later.",
                code="RATE_LIMITED",
                status_code=429,
            )

        body = ""
        try:
            body = resp.json().get("message", resp.text[:200])
        except (ValueError, AttributeError):
            body = resp.text[:200]

        raise RemoteError(
            f"Meshy API error (HTTP {resp.status_code}): {body}",
            code="API_ERROR",
            status_code=resp.status_code,
            retryable=resp.status_code in _RETRYABLE_STATUS,
        )
