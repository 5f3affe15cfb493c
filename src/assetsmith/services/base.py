"""Abstract base for remote services that run long jobs as tasks.

A task is submitted, handed back as an id, and then polled until it
reaches a terminal state::

    1. submit(kind, body)               -> task id
    2. get_task_status(task_id)         -> RemoteTask (one poll)
    3. wait_for_completion(task_id)     -> RemoteTask (poll until terminal)

Concrete clients only implement the first two; the polling loop, its
deadline and cancellation live here.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional

from assetsmith.errors import RemoteError, RemoteTaskFailedError, TaskTimeoutError
from assetsmith.retry import check_cancelled, interruptible_sleep

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums / dataclasses
# ---------------------------------------------------------------------------


class TaskStatus(enum.Enum):
    """Lifecycle states reported for a remote task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class RemoteTask:
    """One status snapshot of a remote task.

    :param id: Task id returned at submission.
    :param kind: Endpoint family that recognised the task
        (e.g. ``"image-to-3d"``).
    :param status: Normalised status.
    :param raw_status: Status string exactly as the service sent it.
    :param progress: Percent complete, when reported.
    :param error: Failure reason for ``FAILED`` tasks.
    :param data: Full response payload.
    """

    id: str
    kind: str
    status: TaskStatus
    raw_status: str = ""
    progress: int = 0
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


ProgressCallback = Callable[[RemoteTask], None]


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class RemoteTaskClient(ABC):
    """Base for clients of task-based remote services.

    :param poll_interval: Seconds between status polls.
    :param max_wait: Default wall-clock budget for
        :meth:`wait_for_completion`, in seconds.
    """

    def __init__(self, *, poll_interval: float = 5.0, max_wait: float = 300.0) -> None:
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    @abstractmethod
    def submit(self, kind: str, body: Dict[str, Any]) -> str:
        """Submit a task of *kind* and return its id.

        Raises:
            RemoteError: If the service rejects the submission.
        """

    @abstractmethod
    def get_task_status(
        self,
        task_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> RemoteTask:
        """Fetch the current state of *task_id*.

        *cancel_event* must reach any backoff sleep the lookup performs.

        Raises:
            TaskNotFoundError: If no endpoint recognises the id.
            RemoteError: On any other failure.
        """

    def wait_for_completion(
        self,
        task_id: str,
        max_wait: Optional[float] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RemoteTask:
        """Poll *task_id* until it succeeds, fails, or the budget runs out.

        Args:
            task_id: Id returned by :meth:`submit`.
            max_wait: Seconds to wait in total; defaults to ``self.max_wait``.
            cancel_event: Aborts the wait when set.
            on_progress: Called with every non-terminal snapshot.

        Returns:
            The terminal :class:`RemoteTask` with status ``SUCCEEDED``.

        Raises:
            RemoteTaskFailedError: The task ended in failure.
            TaskTimeoutError: The budget elapsed first.
            RemoteError: The service reported a status we do not know.
            GenerationCancelledError: *cancel_event* was set.
        """
        budget = self.max_wait if max_wait is None else max_wait
        started = time.monotonic()
        deadline = started + budget

        while True:
            check_cancelled(cancel_event)
            task = self.get_task_status(task_id, cancel_event=cancel_event)

            if task.status == TaskStatus.SUCCEEDED:
                logger.info(
                    "Task %s (%s) succeeded after %.1fs",
                    task_id,
                    task.kind,
                    time.monotonic() - started,
                )
                return task

            if task.status == TaskStatus.FAILED:
                reason = task.error or "Unknown error"
                raise RemoteTaskFailedError(
                    f"Task {task_id} failed: {reason}",
                    task_id=task_id,
                    reason=reason,
                )

            if task.status == TaskStatus.UNKNOWN:
                raise RemoteError(
                    f"Task {task_id} reported unknown status {task.raw_status!r}.",
                    code="UNKNOWN_STATUS",
                    retryable=False,
                )

            if on_progress is not None:
                on_progress(task)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                waited = time.monotonic() - started
                raise TaskTimeoutError(
                    f"Task {task_id} did not complete within {budget:.0f}s.",
                    task_id=task_id,
                    waited=waited,
                )

            logger.debug(
                "Task %s %s (%d%%), polling again in %.1fs",
                task_id,
                task.status.value,
                task.progress,
                min(self.poll_interval, remaining),
            )
            interruptible_sleep(min(self.poll_interval, remaining), cancel_event)
