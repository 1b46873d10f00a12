"""
Shared test fixtures for fixture runner unit tests.
"""

import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from fixture_runner.broker.base import BrokerClient, SignalHandle, ValueCallback
from fixture_runner.config import DataType, FixtureSpec, SimulationRule, TransformEffect
from fixture_runner.errors import PublishError, RegistrationError, ResolutionError
from fixture_runner.main import FixtureRunner, RunnerConfig

DOOR = "Vehicle.Cabin.Door.Row1.Left.IsLocked"
HVAC = "Vehicle.Cabin.HVAC.Station.Row1.Left.Temperature"
INT8_ACT = "Vehicle.Private.Test.Int8Actuator"
INT32_OUT = "Vehicle.Private.Test.Int32Sensor"
SPEED = "Vehicle.Speed"


class FakeBroker(BrokerClient):
    """
    In-memory broker client.

    Actuations are delivered on a separate 'broker' thread, like a real
    client, and every publish is recorded with its monotonic timestamp.
    """

    def __init__(
        self,
        known_signals: Optional[Iterable[str]] = None,
        fail_publish: Iterable[str] = (),
        refuse_serve: Iterable[str] = (),
        ready: bool = True,
    ):
        self.known = set(known_signals) if known_signals is not None else None
        self.fail_publish = set(fail_publish)
        self.refuse_serve = set(refuse_serve)
        self.ready = ready

        self.connected = False
        self.started = False
        self.stopped = False
        self.resolved: List[str] = []
        self.served: Dict[str, ValueCallback] = {}
        self.subscribed: Dict[str, ValueCallback] = {}
        self.published: List[Tuple[float, str, Any]] = []
        self.publish_threads: List[str] = []
        self._cond = threading.Condition()

    def connect(self):
        self.connected = True

    def resolve(self, path: str) -> SignalHandle:
        if self.known is not None and path not in self.known:
            raise ResolutionError(path, "not found")
        self.resolved.append(path)
        return SignalHandle(path=path, entry_type="ACTUATOR")

    def serve(self, handle: SignalHandle, callback: ValueCallback):
        if handle.path in self.refuse_serve:
            raise RegistrationError(f"{handle.path} is already provided")
        self.served[handle.path] = callback

    def subscribe(self, handle: SignalHandle, callback: ValueCallback):
        self.subscribed[handle.path] = callback

    def start(self):
        self.started = True

    def wait_until_ready(self, timeout: float):
        if not self.ready:
            raise RegistrationError(f"Broker client not ready after {timeout:.1f}s")

    def publish(self, handle: SignalHandle, value: Any, timeout: Optional[float] = None):
        self.publish_threads.append(threading.current_thread().name)
        if handle.path in self.fail_publish:
            raise PublishError(f"write to {handle.path} rejected")
        with self._cond:
            self.published.append((time.monotonic(), handle.path, value))
            self._cond.notify_all()

    def stop(self):
        self.stopped = True

    def actuate(self, path: str, value: Any) -> float:
        """Deliver a target value from a broker thread. Returns send time."""
        sent = time.monotonic()
        self._deliver(self.served[path], path, value)
        return sent

    def set_current(self, path: str, value: Any):
        """Deliver an observed current value of a subscribed signal."""
        self._deliver(self.subscribed[path], path, value)

    def _deliver(self, callback: ValueCallback, path: str, value: Any):
        thread = threading.Thread(target=callback, args=(path, value), name="broker-callback")
        thread.start()
        thread.join()

    def wait_for_publishes(self, count: int, path: Optional[str] = None, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.updates(path)) >= count, timeout)

    def updates(self, path: Optional[str] = None) -> List[Tuple[float, str, Any]]:
        return [u for u in self.published if path is None or u[1] == path]

    def values(self, path: str) -> List[Any]:
        return [value for _, p, value in self.published if p == path]


def mirror_rule(output: str, dep: Optional[str] = None, delay_ms: int = 0,
                data_type: Optional[DataType] = None) -> SimulationRule:
    return SimulationRule(
        output_signal=output,
        depends_on=[dep or output],
        data_type=data_type,
        delay_ms=delay_ms,
    )


def transform_rule(output: str, deps: List[str], expression: str, delay_ms: int = 0,
                   data_type: Optional[DataType] = None) -> SimulationRule:
    return SimulationRule(
        output_signal=output,
        depends_on=deps,
        data_type=data_type,
        delay_ms=delay_ms,
        effect=TransformEffect(expression),
    )


@pytest.fixture
def fake_broker():
    """Broker that knows every signal."""
    return FakeBroker()


@pytest.fixture
def door_spec():
    """Door lock with a 200ms mirror delay."""
    return FixtureSpec(
        name="Door Lock Fixture",
        served_signals=[DOOR],
        rules={DOOR: mirror_rule(DOOR, delay_ms=200, data_type=DataType.BOOLEAN)},
    )


@pytest.fixture
def two_actuator_spec():
    """Door lock and HVAC setpoint, independent mirrors."""
    return FixtureSpec(
        name="Cabin Fixture",
        served_signals=[DOOR, HVAC],
        rules={
            DOOR: mirror_rule(DOOR, delay_ms=100, data_type=DataType.BOOLEAN),
            HVAC: mirror_rule(HVAC, delay_ms=150, data_type=DataType.INT32),
        },
    )


@pytest.fixture
def fast_config():
    """Runner configuration with short timeouts for tests."""
    return RunnerConfig(
        kuksa_address="localhost:55556",
        ready_timeout_s=1.0,
        publish_timeout_s=0.5,
        tick_interval_s=0.02,
        join_timeout_s=1.0,
    )


@pytest.fixture
def make_runner(fast_config):
    """Factory for started runners, stopped again at teardown."""
    runners = []
    threads = []

    def _make(spec, broker, run=True):
        runner = FixtureRunner(fast_config, broker=broker)
        runner.load_config(spec)
        started = runner.start()
        runners.append(runner)
        if started and run:
            thread = threading.Thread(target=runner.run, daemon=True, name="runner")
            thread.start()
            threads.append(thread)
        return runner

    yield _make

    for runner in runners:
        runner.request_stop()
    for thread in threads:
        thread.join(timeout=2.0)
    for runner in runners:
        runner.stop()
