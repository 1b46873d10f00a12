"""
Transform Scheduler
===================

Graph-based strategy: commands are fed into a TransformEngine and every
ready output is published.

Two callers evaluate the engine:
    - the worker thread, for each item taken from the work queue
    - tick(), called periodically by the runner with no input so delayed
      and time-based rules can emit without a new command

The engine is not reentrant, so both paths share one evaluation lock.
Publishing happens after that lock is released, under a separate publish
lock taken before the evaluation lock is let go. Outputs therefore leave in
evaluation order, and a stalled broker write never holds up an evaluation
that has nothing to publish.
"""

import logging
import threading
import time
from typing import List, Optional, Sequence

from .engine import TransformEngine
from .publisher import Publisher
from .work_queue import PendingWork, WorkQueue

logger = logging.getLogger(__name__)


class TransformScheduler:
    """Strategy B: engine evaluation on input and on a fixed tick."""

    def __init__(
        self,
        engine: TransformEngine,
        queue: WorkQueue,
        publisher: Publisher,
        fixture_name: str = "",
    ):
        self.engine = engine
        self._queue = queue
        self._publisher = publisher
        self._name = fixture_name
        self._eval_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._current: Optional[PendingWork] = None

        # Statistics
        self._evaluations = 0
        self._ticks = 0
        self._skipped = 0

    def start(self) -> bool:
        """Start the worker thread draining the work queue."""
        inputs = sorted(f"{key.path} ({key.namespace.value})" for key in self.engine.required_inputs)
        logger.info(f"[{self._name}] Engine expects {len(inputs)} input signal(s)")
        for name in inputs:
            logger.debug(f"[{self._name}]   - {name}")

        self._worker = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="TransformScheduler-worker",
        )
        self._worker.start()
        return True

    def stop(self, timeout: float = 2.0) -> List[PendingWork]:
        """
        Join the worker. The shared queue must already be closed.

        Returns:
            Items accepted but not evaluated
        """
        unpublished: List[PendingWork] = []
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=timeout)
            if self._worker.is_alive():
                logger.warning(f"[{self._name}] Worker did not stop in time")
                if self._current is not None:
                    unpublished.append(self._current)

        discarded = self.engine.pending_outputs()
        if discarded:
            logger.warning(f"[{self._name}] Discarding {discarded} delayed output(s) not yet due")
        logger.info(f"[{self._name}] Transform scheduler stopped")
        return unpublished

    def tick(self) -> int:
        """Evaluate time-based rules with no new input."""
        self._ticks += 1
        return self.process([])

    def process(self, updates: Sequence[PendingWork]) -> int:
        """
        Evaluate the engine and publish ready outputs.

        Returns:
            Number of outputs published
        """
        with self._eval_lock:
            outputs = self.engine.evaluate(list(updates), time.monotonic())
            self._evaluations += 1
            if updates:
                logger.debug(f"[{self._name}] Engine produced {len(outputs)} output(s)")

            ready = []
            for output in outputs:
                if output.ready:
                    ready.append(output)
                else:
                    self._skipped += 1
                    logger.debug(f"[{self._name}] {output.signal_path} not ready")
            if not ready:
                return 0
            self._publish_lock.acquire()

        published = 0
        try:
            for output in ready:
                if self._publisher.publish(output.signal_path, output.value):
                    published += 1
        finally:
            self._publish_lock.release()
        return published

    def _worker_loop(self):
        while True:
            item = self._queue.get()
            if item is None:
                break
            self._current = item
            try:
                self.process([item])
            except Exception as e:
                logger.error(f"[{self._name}] Failed to process {item.signal_path}: {e}")
            self._current = None

    @property
    def stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            "evaluations": self._evaluations,
            "ticks": self._ticks,
            "skipped": self._skipped,
        }
