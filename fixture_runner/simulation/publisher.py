"""
Publisher
=========

Writes ready (signal, value) pairs to the broker as actual values.

Runs on scheduler threads only. A failed write is logged and the item is
dropped: republishing a stale actuation later would misrepresent the
current hardware state.
"""

import logging
import threading
from typing import Any, Mapping, Optional

from ..broker.base import BrokerClient, SignalHandle
from ..errors import PublishError
from .intake import in_actuation_callback

logger = logging.getLogger(__name__)


class Publisher:
    """Publishes actual values through the broker client."""

    def __init__(
        self,
        broker: BrokerClient,
        handles: Mapping[str, SignalHandle],
        timeout: Optional[float] = 2.0,
        fixture_name: str = "",
    ):
        self._broker = broker
        self._handles = handles
        self.timeout = timeout
        self._name = fixture_name

        # Statistics
        self._lock = threading.Lock()
        self._published = 0
        self._failed = 0
        self._refused = 0

    def publish(self, signal_path: str, value: Any) -> bool:
        """
        Publish the actual value of a signal.

        Returns:
            True if the broker accepted the write
        """
        if in_actuation_callback():
            logger.error(f"[{self._name}] Refusing to publish {signal_path} "
                         f"from a broker callback thread")
            self._count("_refused")
            return False

        handle = self._handles.get(signal_path)
        if handle is None:
            logger.warning(f"[{self._name}] No handle for output signal: {signal_path}")
            self._count("_failed")
            return False

        try:
            self._broker.publish(handle, value, timeout=self.timeout)
        except PublishError as e:
            logger.error(f"[{self._name}] Failed to publish {signal_path}: {e}")
            self._count("_failed")
            return False

        logger.info(f"[{self._name}] Published {signal_path} = {value!r}")
        self._count("_published")
        return True

    def _count(self, attr: str):
        with self._lock:
            setattr(self, attr, getattr(self, attr) + 1)

    @property
    def stats(self) -> dict:
        """Get publish statistics."""
        with self._lock:
            return {
                "published": self._published,
                "failed": self._failed,
                "refused": self._refused,
            }
