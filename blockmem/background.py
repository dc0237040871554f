"""
Bounded in-process work queue for write-path side effects.

Block writes return as soon as the row is stored; embedding upserts,
processing-queue entries and the disambiguation scan run here on one
daemon thread, in submission order. A failing task is logged and
recorded on the error channel; it never reaches the caller that
submitted it.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .types import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256
MAX_RECORDED_ERRORS = 100


@dataclass
class TaskError:
    """A background task failure."""
    task: str
    error: str
    at: str


@dataclass
class TaskHandle:
    """Returned by submit(); lets the caller cancel before the task runs."""
    name: str
    cancelled: bool = False
    done: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancelled = True


class BackgroundTasks:
    """
    Serial background executor with a bounded queue.

    With synchronous=True tasks run inline at submit time, still with
    errors captured rather than raised.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING, *, synchronous: bool = False):
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self._synchronous = synchronous
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._errors: list[TaskError] = []
        self._errors_lock = threading.Lock()
        self._closed = False

    def _ensure_worker(self) -> None:
        with self._thread_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="blockmem-background", daemon=True,
                )
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                handle, fn, args, kwargs = item
                self._execute(handle, fn, args, kwargs)
            finally:
                self._queue.task_done()

    def _execute(self, handle: TaskHandle, fn: Callable, args: tuple, kwargs: dict) -> None:
        try:
            if not handle.cancelled:
                fn(*args, **kwargs)
        except Exception as e:
            self._record_error(handle.name, f"{type(e).__name__}: {e}")
            logger.warning("Background task %s failed: %s", handle.name, e)
        finally:
            handle.done.set()

    def _record_error(self, task: str, error: str) -> None:
        with self._errors_lock:
            self._errors.append(TaskError(task=task, error=error, at=utc_now()))
            if len(self._errors) > MAX_RECORDED_ERRORS:
                del self._errors[:-MAX_RECORDED_ERRORS]

    def submit(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> TaskHandle:
        """
        Queue fn(*args, **kwargs) to run in the background.

        When the queue stays full for 5 seconds the task is dropped and
        recorded as an error.
        """
        handle = TaskHandle(name=name)
        if self._closed:
            self._record_error(name, "RuntimeError: background queue is closed")
            handle.done.set()
            return handle
        if self._synchronous:
            self._execute(handle, fn, args, kwargs)
            return handle
        self._ensure_worker()
        try:
            self._queue.put((handle, fn, args, kwargs), timeout=5)
        except queue.Full:
            self._record_error(name, "QueueFull: background queue is full")
            logger.warning("Background queue full; dropped task %s", name)
            handle.done.set()
        return handle

    def drain(self) -> None:
        """Block until every queued task has finished."""
        if self._synchronous or self._thread is None:
            return
        self._queue.join()

    @property
    def errors(self) -> list[TaskError]:
        """Recent task failures, oldest first."""
        with self._errors_lock:
            return list(self._errors)

    def clear_errors(self) -> None:
        with self._errors_lock:
            self._errors.clear()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self, *, drain: bool = True) -> None:
        """Stop the worker, finishing queued tasks first unless drain=False."""
        if self._closed:
            return
        self._closed = True
        if self._thread is None:
            return
        if not drain:
            # Cancel whatever is still waiting
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None:
                    item[0].cancel()
                    item[0].done.set()
                self._queue.task_done()
        self._queue.put(None)
        self._thread.join(timeout=10)
        self._thread = None
