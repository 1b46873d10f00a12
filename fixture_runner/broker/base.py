"""
Broker Client Interface
=======================

What the fixture runner needs from a vehicle-signal broker client:

- resolve(path): signal path -> SignalHandle, or ResolutionError
- serve(handle, callback): claim an actuator and receive its target values
- subscribe(handle, callback): observe current values of another signal
- start() / wait_until_ready(timeout): bring the connection up
- publish(handle, value, timeout): write an actual value
- stop(): close the connection

Callbacks are invoked as callback(path, value) on a thread owned by the
client. They must not call publish().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

ValueCallback = Callable[[str, Any], None]


@dataclass(frozen=True)
class SignalHandle:
    """Resolved reference to a broker signal."""
    path: str
    data_type: Optional[str] = None    # Broker data type name, e.g. "BOOLEAN"
    entry_type: Optional[str] = None   # "ACTUATOR", "SENSOR", "ATTRIBUTE"

    @property
    def is_actuator(self) -> bool:
        return (self.entry_type or "").upper() == "ACTUATOR"


class BrokerClient(ABC):
    """Base class for broker client adapters."""

    def connect(self):
        """Open the connection used for resolution. Optional for adapters."""

    @abstractmethod
    def resolve(self, path: str) -> SignalHandle:
        """
        Resolve a signal path.

        Raises:
            ResolutionError: path is unknown to the broker
        """

    @abstractmethod
    def serve(self, handle: SignalHandle, callback: ValueCallback):
        """
        Register as provider of an actuator.

        Raises:
            RegistrationError: broker refused ownership
        """

    @abstractmethod
    def subscribe(self, handle: SignalHandle, callback: ValueCallback):
        """Observe current values of a signal."""

    @abstractmethod
    def start(self):
        """
        Start delivering callbacks.

        Raises:
            RegistrationError: the client could not be started
        """

    @abstractmethod
    def wait_until_ready(self, timeout: float):
        """
        Block until the client is serving.

        Raises:
            RegistrationError: not ready within timeout
        """

    @abstractmethod
    def publish(self, handle: SignalHandle, value: Any, timeout: Optional[float] = None):
        """
        Publish an actual value.

        Raises:
            PublishError: write rejected or timed out
        """

    @abstractmethod
    def stop(self):
        """Stop callbacks and close the connection."""
