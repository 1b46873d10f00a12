"""
Pending Work Queue
==================

Hand-off between the broker callback thread and the scheduler threads.

Each actuation becomes a PendingWork item keyed into one of two separate
namespaces:

- TARGET: the value an external controller commanded for a served actuator
- ACTUAL: an observed current value of a signal this fixture does not serve

Both surface under the same VSS path, so the namespace is part of the key
instead of a path suffix.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, NamedTuple, Optional

from ..errors import QueueClosedError, QueueFullError


class Namespace(Enum):
    """Which logical value of a signal a key refers to."""
    TARGET = "target"
    ACTUAL = "actual"


class SignalKey(NamedTuple):
    """Signal path qualified by namespace."""
    namespace: Namespace
    path: str

    @classmethod
    def target(cls, path: str) -> "SignalKey":
        return cls(Namespace.TARGET, path)

    @classmethod
    def actual(cls, path: str) -> "SignalKey":
        return cls(Namespace.ACTUAL, path)


@dataclass(frozen=True)
class PendingWork:
    """An intake event awaiting processing."""
    signal_path: str
    value: Any
    received_at: float = field(default_factory=time.monotonic)
    namespace: Namespace = Namespace.TARGET

    @property
    def key(self) -> SignalKey:
        return SignalKey(self.namespace, self.signal_path)


class WorkQueue:
    """
    Blocking FIFO queue with an explicit shutdown signal.

    put() never blocks: it raises when the queue is closed or full so the
    caller (a broker callback) can log and return immediately. get() blocks
    until an item arrives, the timeout expires, or close() is called.
    """

    def __init__(self, maxsize: int = 0, name: str = "work"):
        self.maxsize = maxsize
        self.name = name
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._closed = False

    def put(self, item: Any):
        """
        Append an item without blocking.

        Raises:
            QueueClosedError: queue was closed for shutdown
            QueueFullError: bounded queue has no room
        """
        with self._cond:
            if self._closed:
                raise QueueClosedError(f"{self.name} queue is closed")
            if self.maxsize and len(self._items) >= self.maxsize:
                raise QueueFullError(f"{self.name} queue is full ({self.maxsize} items)")
            self._items.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Remove and return the oldest item.

        Returns:
            The item, or None once the queue is closed or the timeout expires
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items and not self._closed:
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)
            if self._closed:
                return None
            return self._items.popleft()

    def close(self):
        """Reject further puts and wake every waiting consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def drain(self) -> List[Any]:
        """Remove and return everything still queued."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
