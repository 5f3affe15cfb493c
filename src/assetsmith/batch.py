"""Bounded-concurrency batch driver.

Requests are cut into windows of ``window_size`` (default 5).  Each
window runs on a thread pool, and the next window starts only after
every member of the current one has settled.  A failing request is
reported through a ``batch-error`` event and otherwise ignored, so one
bad asset never sinks its siblings.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, List, Optional, Sequence

from assetsmith.events import Event, EventHandler, EventType, deliver
from assetsmith.models import GenerationRequest, GenerationResult

if TYPE_CHECKING:
    from assetsmith.pipeline import AssetPipeline

logger = logging.getLogger(__name__)


class BatchRunner:
    """Drive many requests through one :class:`AssetPipeline`.

    :param pipeline: Pipeline that runs each request.
    :param window_size: Maximum number of requests in flight at once.
    """

    def __init__(self, pipeline: "AssetPipeline", *, window_size: int = 5) -> None:
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        self._pipeline = pipeline
        self._window_size = window_size

    def run_batch(
        self,
        requests: Sequence[GenerationRequest],
        *,
        on_event: Optional[EventHandler] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[GenerationResult]:
        """Generate every request and return the successful results.

        Results are returned window by window, in the order they finished.
        """
        results: List[GenerationResult] = []
        failures = 0
        total_windows = (len(requests) + self._window_size - 1) // self._window_size

        for start in range(0, len(requests), self._window_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Batch cancelled before window %d/%d", start // self._window_size + 1, total_windows)
                break

            window = list(requests[start : start + self._window_size])
            logger.info(
                "Running batch window %d/%d (%d requests)",
                start // self._window_size + 1,
                total_windows,
                len(window),
            )

            with ThreadPoolExecutor(
                max_workers=len(window), thread_name_prefix="assetsmith-batch"
            ) as pool:
                futures = {
                    pool.submit(
                        self._pipeline.generate,
                        request,
                        on_event=on_event,
                        cancel_event=cancel_event,
                    ): request
                    for request in window
                }
                for future in as_completed(futures):
                    request = futures[future]
                    try:
                        results.append(future.result())
                    except Exception as exc:
                        failures += 1
                        logger.warning("Batch request %s failed: %s", request.id, exc)
                        self._report_failure(request, exc, on_event)

        logger.info(
            "Batch finished: %d succeeded, %d failed", len(results), failures
        )
        return results

    def _report_failure(
        self,
        request: GenerationRequest,
        exc: Exception,
        on_event: Optional[EventHandler],
    ) -> None:
        event = Event(
            type=EventType.BATCH_ERROR,
            data={
                "request_id": request.id,
                "reason": str(exc),
                "code": getattr(exc, "code", None),
            },
            source="batch",
        )
        bus = self._pipeline.event_bus
        if bus is not None:
            bus.publish(event)
        deliver(on_event, event)
