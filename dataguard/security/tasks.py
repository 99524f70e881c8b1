from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any

from dataguard.context import get_correlation_id, reset_correlation_id, set_correlation_id
from dataguard.core.config import get_settings
from dataguard.metrics import observe_background_task_failure


logger = logging.getLogger("dataguard.tasks")


class BackgroundExecutor:
    """Bounded fire-and-forget task runner.

    Tasks are never awaited by the submitter. Failures are logged and counted,
    and submissions beyond ``queue_size`` pending tasks are dropped.
    """

    def __init__(self, workers: int = 4, queue_size: int = 1000) -> None:
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dataguard-bg")
        self._slots = threading.BoundedSemaphore(queue_size)
        self._pending: set[Future[Any]] = set()
        self._lock = threading.Lock()

    def submit(self, task: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        if not self._slots.acquire(blocking=False):
            logger.warning("tasks.dropped", extra={"task": task})
            observe_background_task_failure(task)
            return False

        correlation_id = get_correlation_id()

        def run() -> None:
            token = set_correlation_id(correlation_id)
            try:
                fn(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001 - background failures are logged, never raised
                observe_background_task_failure(task)
                logger.warning("tasks.failed", extra={"task": task, "error": str(exc)})
            finally:
                reset_correlation_id(token)
                self._slots.release()

        future = self._pool.submit(run)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return True

    def drain(self, timeout: float | None = None) -> None:
        """Block until every submitted task finished. Intended for tests and shutdown."""

        with self._lock:
            pending = list(self._pending)
        wait_futures(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _forget(self, future: Future[Any]) -> None:
        with self._lock:
            self._pending.discard(future)


_default_executor: BackgroundExecutor | None = None
_default_lock = threading.Lock()


def get_background_executor() -> BackgroundExecutor:
    global _default_executor

    with _default_lock:
        if _default_executor is None:
            settings = get_settings()
            _default_executor = BackgroundExecutor(settings.background_workers, settings.background_queue_size)
        return _default_executor
