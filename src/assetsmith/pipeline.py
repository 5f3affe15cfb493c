"""Staged asset generation pipeline.

A request moves through five stages, strictly in order::

    image -> model -> remesh -> analysis -> final

Each stage appends a :class:`~assetsmith.models.StageRecord` to the
result, checks the :class:`~assetsmith.cache.StageCache` for
``"{request_id}:{stage}"`` and only calls the remote service on a miss.
After every stage the whole result is snapshotted under
``"result:{request_id}"`` so a later :meth:`AssetPipeline.resume_from`
can pick it up and recompute from any stage onward.

Usage::

    from assetsmith.config import load_config
    from assetsmith.pipeline import create_pipeline

    pipeline = create_pipeline(load_config())
    result = pipeline.generate(request)
    print(result.final_asset.model_path)
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from assetsmith.analysis import analyze
from assetsmith.cache import StageCache, StageCacheConfig, result_cache_key, stage_cache_key
from assetsmith.errors import (
    AssetsmithError,
    GenerationCancelledError,
    NotFoundError,
    PipelineError,
    ValidationError,
)
from assetsmith.events import Event, EventBus, EventHandler, EventType, deliver
from assetsmith.models import (
    STAGE_ORDER,
    AssetType,
    FinalAsset,
    GenerationRequest,
    GenerationResult,
    ImageResult,
    ModelResult,
    RemeshResult,
    StageName,
    StageRecord,
    StageStatus,
)
from assetsmith.retry import check_cancelled
from assetsmith.services.meshy import MeshOptions

if TYPE_CHECKING:
    from assetsmith.config import PipelineConfig

logger = logging.getLogger(__name__)

# Remesh targets per asset category.
TARGET_POLYCOUNTS: Dict[AssetType, int] = {
    AssetType.WEAPON: 2000,
    AssetType.TOOL: 2000,
    AssetType.ARMOR: 3000,
    AssetType.CONSUMABLE: 3000,
    AssetType.CHARACTER: 8000,
    AssetType.BUILDING: 10000,
    AssetType.RESOURCE: 1500,
    AssetType.DECORATION: 5000,
    AssetType.MISC: 5000,
}
_DEFAULT_POLYCOUNT = 5000

_MISS = object()


def get_target_polycount(asset_type: AssetType) -> int:
    """Remesh target for *asset_type*."""
    return TARGET_POLYCOUNTS.get(asset_type, _DEFAULT_POLYCOUNT)


def load_result(cache: StageCache, result_id: str) -> Optional[GenerationResult]:
    """Read the stored snapshot for *result_id*; ``None`` if absent or unreadable."""
    data = cache.get(result_cache_key(result_id))
    if data is None:
        return None
    try:
        return GenerationResult.from_dict(data)
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        logger.warning("Stored result %s is unreadable: %s", result_id, exc)
        return None


def _safe_filename(name: str, fallback: str) -> str:
    cleaned = re.sub(r"[^\w.-]+", "_", name).strip("._")
    return cleaned or fallback


# ---------------------------------------------------------------------------
# Active generation registry
# ---------------------------------------------------------------------------


class ActiveGenerations:
    """Results currently being worked on by one pipeline, keyed by id.

    Bookkeeping only: it answers "what is running" and refuses a second
    concurrent run of the same id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, GenerationResult] = {}

    def add(self, result: GenerationResult) -> None:
        with self._lock:
            if result.id in self._active:
                raise ValidationError(
                    f"Generation {result.id} is already running.",
                    code="ALREADY_RUNNING",
                )
            self._active[result.id] = result

    def remove(self, result_id: str) -> None:
        with self._lock:
            self._active.pop(result_id, None)

    def get(self, result_id: str) -> Optional[GenerationResult]:
        with self._lock:
            return self._active.get(result_id)

    def list(self) -> List[GenerationResult]:
        with self._lock:
            return list(self._active.values())

    def __contains__(self, result_id: object) -> bool:
        with self._lock:
            return result_id in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class _StageDef:
    """One pipeline stage: how to compute it and how to apply its output."""

    name: StageName
    run: Callable[[GenerationResult, Optional[threading.Event]], Any]
    apply: Callable[[GenerationResult, Any], None]


class AssetPipeline:
    """Runs generation requests through the five stages.

    Args:
        image_service: Object with ``generate_image(description, asset_type,
            style, *, cancel_event)`` returning an
            :class:`~assetsmith.models.ImageResult`.
        mesh_client: Object with ``image_to_model``, ``remesh_model`` and
            ``download_model`` (see :class:`~assetsmith.services.meshy.MeshyClient`).
        cache: Stage cache; a fresh in-memory cache if ``None``.
        output_dir: Root directory for final assets.
        output_format: Extension of the downloaded model file.
        event_bus: Optional bus that receives every event.
        model_polycount: Polycount requested from image-to-3D.
        batch_size: Default window size for :meth:`batch_generate`.
    """

    def __init__(
        self,
        image_service: Any,
        mesh_client: Any,
        cache: Optional[StageCache] = None,
        *,
        output_dir: str = "assets",
        output_format: str = "glb",
        event_bus: Optional[EventBus] = None,
        model_polycount: int = 10000,
        batch_size: int = 5,
    ) -> None:
        self._images = image_service
        self._mesh = mesh_client
        self._cache = cache if cache is not None else StageCache()
        self._output_dir = output_dir
        self._output_format = output_format
        self._event_bus = event_bus
        self._model_polycount = model_polycount
        self._batch_size = batch_size
        self.active = ActiveGenerations()

        self._stages: List[_StageDef] = [
            _StageDef(StageName.IMAGE, self._run_image, self._apply_image),
            _StageDef(StageName.MODEL, self._run_model, self._apply_model),
            _StageDef(StageName.REMESH, self._run_remesh, self._apply_remesh),
            _StageDef(StageName.ANALYSIS, self._run_analysis, self._apply_analysis),
            _StageDef(StageName.FINAL, self._run_final, self._apply_final),
        ]

    @property
    def cache(self) -> StageCache:
        return self._cache

    @property
    def event_bus(self) -> Optional[EventBus]:
        return self._event_bus

    # -- Public API --------------------------------------------------------

    def generate(
        self,
        request: GenerationRequest,
        *,
        on_event: Optional[EventHandler] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        """Run *request* through every stage and return the finished result.

        Raises:
            ValidationError: The request is malformed (nothing is run).
            PipelineError: A stage failed; ``exc.stage`` names it.
            GenerationCancelledError: *cancel_event* was set.
        """
        request.validate()
        result = GenerationResult(id=request.id, request=request)
        logger.info("Starting generation %s (%s: %s)", request.id, request.type.value, request.name)
        return self._execute(result, 0, on_event, cancel_event)

    def resume_from(
        self,
        result_id: str,
        stage: StageName | str,
        *,
        on_event: Optional[EventHandler] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        """Recompute *stage* and everything after it for a stored result.

        Earlier stage outputs are taken from the stored snapshot.  Cached
        outputs for *stage* and later are discarded so they really rerun.

        Raises:
            NotFoundError: No readable snapshot exists for *result_id*.
            ValidationError: *stage* is unknown, the id is already running,
                or the stage before *stage* never completed.
        """
        target = StageName.parse(stage)
        if result_id in self.active:
            raise ValidationError(
                f"Generation {result_id} is already running.", code="ALREADY_RUNNING"
            )

        result = self._load_snapshot(result_id)
        if result is None:
            raise NotFoundError(f"No stored generation result for {result_id!r}.")

        result.truncate_from(target)
        if target.index > 0:
            previous = STAGE_ORDER[target.index - 1]
            if not result.is_stage_completed(previous):
                raise ValidationError(
                    f"Cannot resume {result_id} from {target.value}: "
                    f"stage {previous.value} has not completed.",
                    code="STAGE_NOT_READY",
                )

        for later in STAGE_ORDER[target.index:]:
            self._cache.delete(stage_cache_key(result_id, later))

        result.touch()
        self._persist(result)
        logger.info("Resuming generation %s from %s", result_id, target.value)
        return self._execute(result, target.index, on_event, cancel_event)

    def get_generation(self, result_id: str) -> Optional[GenerationResult]:
        """Return the live result if running, else the stored snapshot."""
        active = self.active.get(result_id)
        if active is not None:
            return active
        return self._load_snapshot(result_id)

    def get_active_generations(self) -> List[GenerationResult]:
        return self.active.list()

    def batch_generate(
        self,
        requests: Sequence[GenerationRequest],
        *,
        window_size: Optional[int] = None,
        on_event: Optional[EventHandler] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[GenerationResult]:
        """Generate many requests, *window_size* at a time.

        Failures are reported as ``batch-error`` events; only successful
        results are returned.
        """
        from assetsmith.batch import BatchRunner

        runner = BatchRunner(self, window_size=window_size or self._batch_size)
        return runner.run_batch(requests, on_event=on_event, cancel_event=cancel_event)

    # -- Execution engine --------------------------------------------------

    def _execute(
        self,
        result: GenerationResult,
        start: int,
        on_event: Optional[EventHandler],
        cancel_event: Optional[threading.Event],
    ) -> GenerationResult:
        self.active.add(result)
        try:
            for stage_def in self._stages[start:]:
                self._run_stage(result, stage_def, on_event, cancel_event)
        except AssetsmithError as exc:
            failed = getattr(exc, "stage", None)
            logger.error("Generation %s failed: %s", result.id, exc)
            self._emit(
                EventType.ERROR,
                {"result": result, "error": str(exc), "stage": failed},
                on_event,
            )
            raise
        finally:
            self.active.remove(result.id)

        logger.info("Generation %s complete", result.id)
        self._emit(EventType.COMPLETE, {"result": result}, on_event)
        return result

    def _run_stage(
        self,
        result: GenerationResult,
        stage_def: _StageDef,
        on_event: Optional[EventHandler],
        cancel_event: Optional[threading.Event],
    ) -> None:
        stage = stage_def.name
        check_cancelled(cancel_event)
        if stage.index > 0 and not result.is_stage_completed(STAGE_ORDER[stage.index - 1]):
            raise ValidationError(
                f"Stage {stage.value} cannot run before {STAGE_ORDER[stage.index - 1].value} completes.",
                code="STAGE_NOT_READY",
            )

        record = StageRecord(stage=stage)
        result.stages.append(record)
        self._emit(EventType.STAGE_START, {"result": result, "stage": stage.value}, on_event)

        key = stage_cache_key(result.id, stage)
        output = self._cache.get(key, _MISS)
        from_cache = output is not _MISS
        if from_cache:
            try:
                stage_def.apply(result, output)
                logger.info("Stage %s for %s served from cache", stage.value, result.id)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding unusable cached %s output for %s: %s", stage.value, result.id, exc)
                self._cache.delete(key)
                from_cache = False

        if not from_cache:
            record.status = StageStatus.PROCESSING
            started = time.monotonic()
            try:
                output = stage_def.run(result, cancel_event)
                stage_def.apply(result, output)
            except Exception as exc:
                record.status = StageStatus.FAILED
                record.error = str(exc)
                record.completed_at = time.time()
                result.touch()
                self._persist(result)
                if isinstance(exc, GenerationCancelledError):
                    raise
                raise PipelineError(
                    f"Stage {stage.value} failed for {result.id}: {exc}",
                    stage=stage.value,
                    cause=exc,
                    result_id=result.id,
                ) from exc
            self._cache.set(key, output)
            logger.info(
                "Stage %s for %s finished in %.1fs",
                stage.value,
                result.id,
                time.monotonic() - started,
            )

        record.status = StageStatus.COMPLETED
        record.output = output
        record.completed_at = time.time()
        result.touch()
        self._persist(result)
        self._emit(
            EventType.STAGE_COMPLETE,
            {"result": result, "stage": stage.value, "cached": from_cache},
            on_event,
        )

    # -- Stage executors ---------------------------------------------------

    def _run_image(self, result: GenerationResult, cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        req = result.request
        image = self._images.generate_image(
            req.description, req.type, req.style, cancel_event=cancel_event
        )
        return image.to_dict()

    def _apply_image(self, result: GenerationResult, output: Dict[str, Any]) -> None:
        result.image_result = ImageResult.from_dict(output)

    def _run_model(self, result: GenerationResult, cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        assert result.image_result is not None
        options = MeshOptions(
            target_polycount=self._model_polycount,
            style=result.request.style,
        )
        model = self._mesh.image_to_model(
            result.image_result.image_url, options, cancel_event=cancel_event
        )
        return model.to_dict()

    def _apply_model(self, result: GenerationResult, output: Dict[str, Any]) -> None:
        result.model_result = ModelResult.from_dict(output)

    def _run_remesh(self, result: GenerationResult, cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        model = result.model_result
        assert model is not None
        target = get_target_polycount(result.request.type)

        if 0 < model.polycount <= target:
            logger.info(
                "Model for %s already at %d faces (target %d), skipping remesh",
                result.id,
                model.polycount,
                target,
            )
            remeshed = RemeshResult(
                model_url=model.model_url,
                original_polycount=model.polycount,
                remeshed_polycount=model.polycount,
                target_polycount=target,
            )
        else:
            remeshed = self._mesh.remesh_model(
                model.model_url,
                target,
                original_polycount=model.polycount,
                cancel_event=cancel_event,
            )
        return remeshed.to_dict()

    def _apply_remesh(self, result: GenerationResult, output: Dict[str, Any]) -> None:
        result.remesh_result = RemeshResult.from_dict(output)

    def _run_analysis(
        self, result: GenerationResult, cancel_event: Optional[threading.Event]
    ) -> Optional[Dict[str, Any]]:
        model_url = result.model_url
        if not model_url:
            raise ValidationError(f"No model available to analyze for {result.id}.")
        return analyze(result.request, model_url)

    def _apply_analysis(self, result: GenerationResult, output: Optional[Dict[str, Any]]) -> None:
        if output is not None and not isinstance(output, dict):
            raise TypeError(f"analysis output must be a dict, got {type(output).__name__}")
        result.analysis_result = output

    def _run_final(self, result: GenerationResult, cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        req = result.request
        model_url = result.model_url
        if not model_url:
            raise ValidationError(f"No model available to package for {result.id}.")

        asset_dir = os.path.join(self._output_dir, _safe_filename(req.id, "asset"))
        os.makedirs(asset_dir, exist_ok=True)
        model_path = os.path.join(
            asset_dir, f"{_safe_filename(req.name, req.id)}.{self._output_format}"
        )
        size_bytes = self._mesh.download_model(model_url, model_path, cancel_event=cancel_event)

        metadata: Dict[str, Any] = {
            **req.to_dict(),
            "model_path": model_path,
            "model_url": model_url,
            "format": self._output_format,
            "size_bytes": size_bytes,
            "polycount": (
                result.remesh_result.remeshed_polycount
                if result.remesh_result
                else (result.model_result.polycount if result.model_result else 0)
            ),
            "analysis": result.analysis_result,
            "generated_at": time.time(),
            "generation_seconds": round(time.time() - result.created_at, 3),
        }
        metadata_path = os.path.join(asset_dir, "metadata.json")
        with open(metadata_path, "w", encoding="utf-8") as fh:
            json.dump(metadata, fh, indent=2)

        logger.info("Wrote %s and %s", model_path, metadata_path)
        return FinalAsset(model_path=model_path, metadata_path=metadata_path, metadata=metadata).to_dict()

    def _apply_final(self, result: GenerationResult, output: Dict[str, Any]) -> None:
        result.final_asset = FinalAsset.from_dict(output)

    # -- Helpers -----------------------------------------------------------

    def _persist(self, result: GenerationResult) -> None:
        self._cache.set(result_cache_key(result.id), result.to_dict())

    def _load_snapshot(self, result_id: str) -> Optional[GenerationResult]:
        return load_result(self._cache, result_id)

    def _emit(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        on_event: Optional[EventHandler],
    ) -> None:
        result = data.get("result")
        if result is not None:
            data.setdefault("result_id", result.id)
        event = Event(type=event_type, data=data, source="pipeline")
        if self._event_bus is not None:
            self._event_bus.publish(event)
        deliver(on_event, event)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_pipeline(
    config: "PipelineConfig",
    *,
    event_bus: Optional[EventBus] = None,
) -> AssetPipeline:
    """Wire services, cache and pipeline from a :class:`PipelineConfig`."""
    from assetsmith.services.images import ImageGenerationService
    from assetsmith.services.meshy import MeshyClient

    image_service = ImageGenerationService(
        config.image_api_key,
        base_url=config.image_base_url,
        model=config.image_model,
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
    )
    mesh_client = MeshyClient(
        config.meshy_api_key,
        base_url=config.meshy_base_url,
        timeout=config.request_timeout,
        poll_interval=config.poll_interval,
        max_wait=config.max_wait,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
    )
    cache = StageCache(
        StageCacheConfig(
            enabled=config.cache_enabled,
            ttl_seconds=config.cache_ttl,
            max_size_bytes=config.cache_max_bytes,
        ),
        db_path=config.cache_db_path,
    )
    return AssetPipeline(
        image_service,
        mesh_client,
        cache,
        output_dir=config.output_dir,
        output_format=config.output_format,
        event_bus=event_bus,
        model_polycount=config.model_polycount,
        batch_size=config.batch_size,
    )


__all__ = [
    "TARGET_POLYCOUNTS",
    "ActiveGenerations",
    "AssetPipeline",
    "create_pipeline",
    "get_target_polycount",
    "load_result",
]
