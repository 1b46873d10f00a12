"""
KUKSA Databroker Client
=======================

BrokerClient implementation on top of kuksa-client's VSSClient
(kuksa.val.v1 API).

- Resolution: get_metadata() per path, unknown paths raise ResolutionError
- Serving: one subscribe_target_values() stream for all served actuators
- Observing: one subscribe_current_values() stream for external dependencies
- Publishing: set_current_values() with a bounded gRPC timeout

Streams run on their own daemon threads and invoke callbacks from there.
The subscribe calls are lazy: nothing reaches the broker until the first
read, so a stream only counts as open once its first update has arrived.
Refusals (ALREADY_EXISTS, PERMISSION_DENIED, NOT_FOUND, UNAUTHENTICATED)
end the stream and are reported by wait_until_ready(); other failures are
retried after a short back-off.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from kuksa_client.grpc import Datapoint, VSSClient, VSSClientError

from ..errors import PublishError, RegistrationError, ResolutionError
from .base import BrokerClient, SignalHandle, ValueCallback

logger = logging.getLogger(__name__)

DEFAULT_PORT = 55555

# gRPC status codes that retrying will not fix
FATAL_STATUS_CODES = {
    5: "not_found",
    6: "already_exists",
    7: "permission_denied",
    16: "unauthenticated",
}


def parse_address(address: str) -> Tuple[str, int]:
    """Split 'host:port' (port optional) into its parts."""
    host, sep, port = address.rpartition(':')
    if not sep:
        return address, DEFAULT_PORT
    if not port.isdigit():
        raise ValueError(f"Invalid broker address: {address}")
    return host or "localhost", int(port)


def status_code(error: BaseException) -> Optional[int]:
    """gRPC status code carried by a VSSClientError, if any."""
    details = getattr(error, "error", None)
    if isinstance(details, dict):
        return details.get("code")
    return None


class _StreamStatus:
    """Open/failed state of one subscription stream, shared with its thread."""

    def __init__(self, kind: str):
        self.kind = kind
        self.opened = threading.Event()
        self.done = threading.Event()      # opened, or failed for good
        self.fatal_error: Optional[BaseException] = None
        self.last_error: Optional[BaseException] = None

    def mark_open(self):
        self.last_error = None
        self.opened.set()
        self.done.set()

    def mark_fatal(self, error: BaseException):
        self.fatal_error = error
        self.done.set()


class KuksaBrokerClient(BrokerClient):
    """
    Broker client backed by a KUKSA databroker.

    All callbacks for served actuators share one stream thread, so they are
    delivered in broker order.
    """

    def __init__(
        self,
        address: str = "databroker:55555",
        rpc_timeout: float = 5.0,
        reconnect_delay: float = 1.0,
        token: Optional[str] = None,
    ):
        self.address = address
        self.rpc_timeout = rpc_timeout
        self.reconnect_delay = reconnect_delay
        self._host, self._port = parse_address(address)
        self._token = token

        self._client: Optional[VSSClient] = None
        self._served: Dict[str, ValueCallback] = {}
        self._observed: Dict[str, ValueCallback] = {}
        self._threads: List[threading.Thread] = []
        self._streams: List[_StreamStatus] = []
        self._running = False

    def connect(self):
        """Open the gRPC channel."""
        if self._client is not None:
            return
        try:
            client = VSSClient(self._host, self._port, token=self._token)
            client.connect()
        except Exception as e:
            raise RegistrationError(f"Failed to connect to {self.address}: {e}") from e
        self._client = client
        logger.info(f"Connected to KUKSA databroker at {self.address}")

    def resolve(self, path: str) -> SignalHandle:
        self.connect()
        try:
            metadata = self._client.get_metadata([path], timeout=self.rpc_timeout)
        except VSSClientError as e:
            raise ResolutionError(path, str(e)) from e

        meta = metadata.get(path)
        if meta is None:
            raise ResolutionError(path, "no metadata returned")
        return SignalHandle(
            path=path,
            data_type=getattr(meta.data_type, "name", None),
            entry_type=getattr(meta.entry_type, "name", None),
        )

    def serve(self, handle: SignalHandle, callback: ValueCallback):
        if self._running:
            raise RegistrationError(f"Cannot serve {handle.path} after start()")
        if handle.entry_type and not handle.is_actuator:
            raise RegistrationError(f"{handle.path} is a {handle.entry_type}, not an actuator")
        if handle.path in self._served:
            raise RegistrationError(f"{handle.path} is already served")
        self._served[handle.path] = callback

    def subscribe(self, handle: SignalHandle, callback: ValueCallback):
        if self._running:
            raise RegistrationError(f"Cannot subscribe {handle.path} after start()")
        self._observed[handle.path] = callback

    def start(self):
        self.connect()
        self._running = True

        for name, callbacks, target in [
            ("targets", self._served, True),
            ("currents", self._observed, False),
        ]:
            if not callbacks:
                continue
            status = _StreamStatus("target" if target else "current")
            thread = threading.Thread(
                target=self._stream_loop,
                args=(callbacks, target, status),
                daemon=True,
                name=f"KuksaBrokerClient-{name}",
            )
            self._streams.append(status)
            self._threads.append(thread)
            thread.start()

    def wait_until_ready(self, timeout: float):
        """
        Block until every stream has delivered its first update.

        Raises:
            RegistrationError: the broker refused a stream, or a stream did
                               not open within the timeout
        """
        deadline = time.monotonic() + timeout
        for status in self._streams:
            remaining = max(0.0, deadline - time.monotonic())
            status.done.wait(remaining)
            if status.fatal_error is not None:
                raise RegistrationError(
                    f"Broker refused {status.kind} value stream: {status.fatal_error}"
                )
            if not status.opened.is_set():
                message = f"Broker client not ready after {timeout:.1f}s"
                if status.last_error is not None:
                    message += f" (last error: {status.last_error})"
                raise RegistrationError(message)

    def publish(self, handle: SignalHandle, value: Any, timeout: Optional[float] = None):
        if self._client is None:
            raise PublishError(f"Not connected, cannot publish {handle.path}")
        try:
            self._client.set_current_values(
                {handle.path: Datapoint(value)},
                timeout=timeout or self.rpc_timeout,
            )
        except Exception as e:
            raise PublishError(f"Failed to publish {handle.path}: {e}") from e

    def stop(self):
        self._running = False

        if self._client is not None:
            try:
                self._client.disconnect()
            except Exception as e:
                logger.warning(f"Error while disconnecting: {e}")
            self._client = None

        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=2.0)
        self._threads = []
        self._streams = []
        logger.info("KUKSA broker client stopped")


    def _stream_loop(self, callbacks: Dict[str, ValueCallback], target: bool,
                     status: _StreamStatus):
        """Iterate a subscription stream and dispatch its updates."""
        paths = list(callbacks)
        kind = status.kind

        while self._running:
            client = self._client
            if client is None:
                break
            try:
                if target:
                    stream = client.subscribe_target_values(paths)
                else:
                    stream = client.subscribe_current_values(paths)

                for updates in stream:
                    if not status.opened.is_set():
                        logger.info(f"Subscribed to {kind} values of {len(paths)} signal(s)")
                    status.mark_open()
                    for path, datapoint in updates.items():
                        if datapoint is None or datapoint.value is None:
                            continue
                        callback = callbacks.get(path)
                        if callback:
                            callback(path, datapoint.value)
                    if not self._running:
                        break
                else:
                    if self._running:
                        logger.warning(f"{kind.capitalize()} value stream ended, re-subscribing")
                        time.sleep(self.reconnect_delay)

            except Exception as e:
                if not self._running:
                    break
                code = status_code(e)
                if code in FATAL_STATUS_CODES:
                    logger.error(f"{kind.capitalize()} value stream refused "
                                 f"({FATAL_STATUS_CODES[code]}): {e}")
                    status.mark_fatal(e)
                    break
                status.last_error = e
                logger.error(f"{kind.capitalize()} value stream failed: {e}")
                time.sleep(self.reconnect_delay)
