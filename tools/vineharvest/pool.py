"""Bounded worker pool used by every fan-out stage."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger("vineharvest.pool")

T = TypeVar("T")

_CLOSED = object()


class WorkerPool(Generic[T]):
    """Fixed number of threads draining a bounded job queue.

    ``submit`` blocks while the queue is full, so a fast producer is held
    back by its consumers.  ``close`` enqueues one sentinel per worker and
    ``join`` returns once every worker has seen its sentinel.  A handler
    exception is logged and counted against that job only.

    If *stop_event* is set, newly submitted jobs are dropped and queued
    jobs are skipped, letting a run be aborted without draining the work.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[T], None],
        workers: int,
        *,
        queue_size: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.name = name
        self.handler = handler
        self.workers = max(1, workers)
        self.stop_event = stop_event or threading.Event()
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size or self.workers * 2)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.completed = 0
        self.failed = 0
        self.skipped = 0

    def start(self) -> WorkerPool[T]:
        if self._threads:
            return self
        for i in range(self.workers):
            t = threading.Thread(target=self._run, args=(i,), name=f"{self.name}-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        return self

    def _count(self, attr: str) -> None:
        with self._lock:
            setattr(self, attr, getattr(self, attr) + 1)

    def _run(self, worker_id: int) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _CLOSED:
                    return
                if self.stop_event.is_set():
                    self._count("skipped")
                    continue
                try:
                    self.handler(job)  # type: ignore[arg-type]
                    self._count("completed")
                except Exception:
                    logger.exception("[%s worker %d] job %r failed", self.name, worker_id, job)
                    self._count("failed")
            finally:
                self._queue.task_done()

    def submit(self, job: T) -> bool:
        """Queue *job*, blocking while the queue is full.  False if the pool is stopping."""
        if self.stop_event.is_set():
            return False
        if not self._threads:
            self.start()
        self._queue.put(job)
        return True

    def close(self) -> None:
        for _ in self._threads:
            self._queue.put(_CLOSED)

    def join(self) -> None:
        for t in self._threads:
            t.join()
        self._threads = []

    def wait(self) -> None:
        """Close the queue and block until every worker has finished."""
        self.close()
        self.join()

    def __enter__(self) -> WorkerPool[T]:
        return self.start()

    def __exit__(self, exc_type: object, *args: object) -> None:
        if exc_type is not None:
            # skip whatever is still queued
            self.stop_event.set()
        self.wait()
