"""
DecisionWorkerPool -- fixed-size pool of decision worker threads.

Contract:
    ``start()`` launches ``size`` workers sharing one stop signal.
    ``stop()`` signals them and waits; each finishes its current transaction
    and exits at its next dequeue timeout.  With ``idle_exit`` each worker
    also exits on its own at its first idle dequeue.  ``drain()`` waits
    until no deliverable message is left and no worker holds a claim.

Architecture: loan_workers.  Workers coordinate only through the database
    (the queue claim); the pool shares nothing with them but the stop event.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from sqlalchemy.orm import Session

from loan_kernel.logging_config import LogContext, get_logger
from loan_kernel.services.queue_service import DurableQueue

from loan_workers.worker import DecisionWorker

logger = get_logger("workers.pool")

DEFAULT_POOL_SIZE = 5


class DecisionWorkerPool:
    """Supervises N DecisionWorker threads.

    Non-goals:
        - NOT a distributed pool; run more processes for more hosts.
        - Does NOT restart threads: a worker's loop already survives every
          exception its cycle raises.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: DurableQueue,
        size: int = DEFAULT_POOL_SIZE,
        worker_factory: Callable[[str], DecisionWorker] | None = None,
        poll_interval: float = 0.1,
        idle_exit: bool = False,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self._session_factory = session_factory
        self._queue = queue
        self._poll_interval = poll_interval
        self.idle_exit = idle_exit
        factory = worker_factory or (
            lambda worker_id: DecisionWorker(session_factory, queue, worker_id=worker_id)
        )
        self.workers: list[DecisionWorker] = [
            factory(f"worker-{index}") for index in range(1, size + 1)
        ]
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def size(self) -> int:
        return len(self.workers)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start all workers in background threads."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_worker,
                args=(worker,),
                name=f"decision-{worker.worker_id}",
                daemon=True,
            )
            for worker in self.workers
        ]
        for thread in self._threads:
            thread.start()
        logger.info("worker_pool_started", extra={"size": self.size})

    def stop(self, timeout: float = 30.0) -> bool:
        """Signal stop and wait for the workers to finish.

        Args:
            timeout: Max seconds to wait for all threads together.

        Returns:
            True if every worker thread has exited.
        """
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0))
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            logger.warning("worker_pool_stop_timeout", extra={"still_running": still_running})
        logger.info("worker_pool_stopped", extra={"stats": self.stats()})
        return not still_running

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every worker thread has exited.

        With ``idle_exit`` the workers end on their own once the queue idles;
        otherwise they run until ``stop()``.

        Returns:
            True if no worker thread is still alive.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            thread.join(None if deadline is None else max(deadline - time.monotonic(), 0))
        return not self.is_running

    def drain(self, timeout: float = 60.0) -> bool:
        """Process until the queue is empty, starting the pool if needed.

        Returns:
            True if the queue drained within ``timeout``.  The pool keeps
            running either way; call ``stop()`` afterwards.
        """
        self.start()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self._any_busy() and not self._queue_has_pending():
                logger.info("worker_pool_drained", extra={"stats": self.stats()})
                return True
            time.sleep(self._poll_interval)
        logger.warning("worker_pool_drain_timeout", extra={"timeout": timeout})
        return False

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-worker outcome counters."""
        return {worker.worker_id: worker.stats.snapshot() for worker in self.workers}

    def totals(self) -> dict[str, int]:
        """Outcome counters summed over all workers."""
        totals: dict[str, int] = {}
        for snapshot in self.stats().values():
            for key, value in snapshot.items():
                totals[key] = totals.get(key, 0) + value
        return totals

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_worker(self, worker: DecisionWorker) -> None:
        with LogContext.bind(worker_id=worker.worker_id):
            try:
                worker.run(self._stop_event, idle_exit=self.idle_exit)
            except BaseException:
                logger.exception("worker_thread_crashed")
                raise

    def _any_busy(self) -> bool:
        return any(worker.stats.busy for worker in self.workers)

    def _queue_has_pending(self) -> bool:
        session = self._session_factory()
        try:
            return self._queue.has_pending(session)
        finally:
            session.close()
