"""
Actuation Intake
================

Entry point for values delivered by the broker client.

Callbacks run on a thread owned by the broker client. They must return
quickly and must never write back to the broker, so each value is only
timestamped and queued for the scheduler threads.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any

from ..errors import EnqueueError
from .work_queue import Namespace, PendingWork, WorkQueue

logger = logging.getLogger(__name__)

_callback_context = threading.local()


def in_actuation_callback() -> bool:
    """True while the current thread is executing an intake callback."""
    return getattr(_callback_context, "active", False)


@contextmanager
def _callback_scope():
    _callback_context.active = True
    try:
        yield
    finally:
        _callback_context.active = False


class ActuationIntake:
    """
    Turns broker callbacks into PendingWork items.

    Never blocks and never drops silently: a failed enqueue is logged as an
    error and counted, and the callback returns so other actuators keep
    working.
    """

    def __init__(self, queue: WorkQueue, fixture_name: str = ""):
        self._queue = queue
        self._name = fixture_name

        # Statistics
        self._received = 0
        self._rejected = 0
        self._stats_lock = threading.Lock()

    def on_actuation(self, path: str, value: Any):
        """Broker callback for a commanded (target) value of a served actuator."""
        with _callback_scope():
            logger.info(f"[{self._name}] Received actuation: {path} = {value!r}")
            self._enqueue(PendingWork(path, value, time.monotonic(), Namespace.TARGET))

    def on_current_value(self, path: str, value: Any):
        """Broker callback for an observed current value of an external dependency."""
        with _callback_scope():
            logger.debug(f"[{self._name}] Observed {path} = {value!r}")
            self._enqueue(PendingWork(path, value, time.monotonic(), Namespace.ACTUAL))

    def _enqueue(self, item: PendingWork):
        try:
            self._queue.put(item)
        except EnqueueError as e:
            with self._stats_lock:
                self._rejected += 1
            logger.error(f"[{self._name}] Dropped {item.namespace.value} value for "
                         f"{item.signal_path}: {e}")
            return
        with self._stats_lock:
            self._received += 1

    @property
    def stats(self) -> dict:
        """Get intake statistics."""
        with self._stats_lock:
            return {
                "received": self._received,
                "rejected": self._rejected,
            }
