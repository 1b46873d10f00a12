"""
Hardware Fixture Runner
=======================

Main entry point: simulates actuator hardware against a KUKSA databroker.

The runner claims ownership of the fixture's served actuators, receives
their commanded values, and publishes actual values after the configured
delay or transform. Startup is fail-fast; runtime errors are logged and the
runner keeps serving the remaining actuators.

Lifecycle:
    UNCONFIGURED -> STARTING -> RUNNING -> STOPPING -> STOPPED
"""

import argparse
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .broker import BrokerClient, KuksaBrokerClient, SignalHandle
from .config import FixtureSpec, Strategy, load_fixture
from .errors import RegistrationError, StartupError
from .simulation import (
    ActuationIntake,
    ExpressionEngine,
    MirrorScheduler,
    PendingWork,
    Publisher,
    TransformEngine,
    TransformScheduler,
    WorkQueue,
)

logger = logging.getLogger(__name__)

DEFAULT_KUKSA_ADDRESS = "databroker:55555"
DEFAULT_CONFIG_FILE = "/app/fixture.yaml"


class RunnerState(Enum):
    """Lifecycle states of the fixture runner."""
    UNCONFIGURED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()


@dataclass
class RunnerConfig:
    """Fixture runner configuration."""
    # Broker
    kuksa_address: str = DEFAULT_KUKSA_ADDRESS
    ready_timeout_s: float = 10.0      # Max wait for the client to be serving
    publish_timeout_s: float = 2.0     # Bound on each actual-value write

    # Fixture
    config_file: str = DEFAULT_CONFIG_FILE

    # Scheduling
    tick_interval_s: float = 0.1       # 10Hz engine tick (transform strategy)
    queue_size: int = 1024             # Max pending actuations, 0 = unbounded
    join_timeout_s: float = 2.0        # Max wait per worker on shutdown


class FixtureRunner:
    """
    Lifecycle controller for one fixture.

    Owns the broker client, the resolved signal handles, the work queue and
    the scheduler. start() never raises: startup errors are logged, kept in
    startup_error, and reported by returning False.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        broker: Optional[BrokerClient] = None,
        engine_factory: Callable[[FixtureSpec], TransformEngine] = ExpressionEngine,
    ):
        self.config = config or RunnerConfig()
        self.spec: Optional[FixtureSpec] = None
        self.state = RunnerState.UNCONFIGURED
        self.startup_error: Optional[StartupError] = None

        self._broker = broker
        self._engine_factory = engine_factory
        self._handles: Dict[str, SignalHandle] = {}
        self._queue: Optional[WorkQueue] = None
        self._intake: Optional[ActuationIntake] = None
        self._publisher: Optional[Publisher] = None
        self._scheduler: Optional[Union[MirrorScheduler, TransformScheduler]] = None
        self._stop_event = threading.Event()

    def load_config(self, source: Union[str, Path, FixtureSpec, None] = None) -> FixtureSpec:
        """
        Load the fixture to run.

        Args:
            source: Fixture file path, an already built FixtureSpec, or None
                    for config.config_file

        Raises:
            ConfigError: fixture file is missing or invalid
        """
        if isinstance(source, FixtureSpec):
            self.spec = source
        else:
            self.spec = load_fixture(source or self.config.config_file)
        return self.spec

    def start(self) -> bool:
        """
        Resolve signals, register actuators and start serving.

        Returns:
            True if the runner reached RUNNING
        """
        if self.state != RunnerState.UNCONFIGURED:
            logger.warning(f"Cannot start from state {self.state.name}")
            return False

        self.state = RunnerState.STARTING
        try:
            self._start()
        except StartupError as e:
            self._abort_startup(e)
            return False
        except Exception as e:
            self._abort_startup(RegistrationError(f"Unexpected startup failure: {e}"))
            return False

        self.state = RunnerState.RUNNING
        logger.info(f"Started fixture '{self.spec.name}' serving "
                    f"{len(self.spec.served_signals)} actuator(s)")
        return True

    def run(self):
        """
        Block until request_stop() is called.

        With the transform strategy this loop also drives the periodic
        engine tick, so delayed outputs are flushed without new commands.
        """
        if self.state != RunnerState.RUNNING:
            logger.error("Runner is not running")
            return

        ticking = isinstance(self._scheduler, TransformScheduler)
        interval = self.config.tick_interval_s
        if ticking:
            logger.info(f"Ticking engine every {interval * 1000:.0f}ms")

        while not self._stop_event.is_set():
            if not ticking:
                self._stop_event.wait()
                break
            try:
                self._scheduler.tick()
            except Exception as e:
                logger.error(f"Engine tick failed: {e}")
            self._stop_event.wait(interval)

    def request_stop(self):
        """Ask run() to return. Safe to call from signal handlers."""
        self._stop_event.set()

    def stop(self):
        """Stop ticking, join workers, then close the broker connection."""
        if self.state in (RunnerState.STOPPING, RunnerState.STOPPED):
            return
        if self.state == RunnerState.UNCONFIGURED:
            self.state = RunnerState.STOPPED
            return

        self.state = RunnerState.STOPPING
        self._stop_event.set()

        unpublished: List[PendingWork] = []
        if self._queue:
            self._queue.close()
        if self._scheduler:
            unpublished.extend(self._scheduler.stop(timeout=self.config.join_timeout_s))
        if self._queue:
            unpublished.extend(self._queue.drain())
        self._log_unpublished(unpublished)

        if self._broker:
            self._broker.stop()

        self.state = RunnerState.STOPPED
        logger.info("Fixture stopped")

    @property
    def is_running(self) -> bool:
        return self.state == RunnerState.RUNNING

    @property
    def handles(self) -> Dict[str, SignalHandle]:
        return dict(self._handles)

    @property
    def scheduler(self) -> Optional[Union[MirrorScheduler, TransformScheduler]]:
        return self._scheduler

    @property
    def status(self) -> dict:
        """Get current runner status."""
        return {
            "state": self.state.name,
            "fixture": self.spec.name if self.spec else None,
            "strategy": self.spec.resolved_strategy.value if self.spec else None,
            "served": list(self.spec.served_signals) if self.spec else [],
            "pending": len(self._queue) if self._queue else 0,
            "intake": self._intake.stats if self._intake else {},
            "publisher": self._publisher.stats if self._publisher else {},
            "startup_error": str(self.startup_error) if self.startup_error else None,
        }

    def _start(self):
        if self.spec is None:
            self.load_config()
        spec = self.spec

        if self._broker is None:
            self._broker = KuksaBrokerClient(
                self.config.kuksa_address,
                rpc_timeout=self.config.publish_timeout_s,
            )
        self._broker.connect()

        # Every referenced signal must resolve before anything is registered
        for path in spec.all_signals():
            self._handles[path] = self._broker.resolve(path)
        logger.info(f"Resolved {len(self._handles)} signal handle(s)")

        self._queue = WorkQueue(maxsize=self.config.queue_size, name=spec.name)
        self._intake = ActuationIntake(self._queue, spec.name)
        self._publisher = Publisher(
            self._broker,
            self._handles,
            timeout=self.config.publish_timeout_s,
            fixture_name=spec.name,
        )

        if spec.resolved_strategy == Strategy.MIRROR:
            self._scheduler = MirrorScheduler(spec, self._queue, self._publisher)
        else:
            engine = self._engine_factory(spec)
            self._scheduler = TransformScheduler(engine, self._queue, self._publisher, spec.name)

        for path in spec.served_signals:
            logger.info(f"Registering actuator: {path}")
            self._broker.serve(self._handles[path], self._intake.on_actuation)
        for path in spec.external_dependencies():
            logger.info(f"Observing dependency: {path}")
            self._broker.subscribe(self._handles[path], self._intake.on_current_value)

        self._scheduler.start()
        self._broker.start()
        self._broker.wait_until_ready(self.config.ready_timeout_s)

    def _abort_startup(self, error: StartupError):
        self.startup_error = error
        logger.error(f"Cannot start fixture - {error}")

        if self._queue:
            self._queue.close()
        if self._scheduler:
            self._scheduler.stop(timeout=self.config.join_timeout_s)
        if self._broker:
            try:
                self._broker.stop()
            except Exception as e:
                logger.warning(f"Error while stopping broker client: {e}")
        self.state = RunnerState.STOPPED

    def _log_unpublished(self, items: List[PendingWork]):
        name = self.spec.name if self.spec else ""
        for item in items:
            logger.warning(f"[{name}] Shutdown dropped {item.namespace.value} value "
                           f"{item.value!r} for {item.signal_path} without publishing")
        if items:
            logger.warning(f"[{name}] {len(items)} actuation(s) left unpublished at shutdown")


def default_kuksa_address() -> str:
    """Broker address from KUKSA_ADDRESS / KUKSA_PORT, if set."""
    address = os.environ.get("KUKSA_ADDRESS")
    if not address:
        return DEFAULT_KUKSA_ADDRESS
    port = os.environ.get("KUKSA_PORT")
    if port and ':' not in address:
        address = f"{address}:{port}"
    return address


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Hardware Fixture Runner - KUKSA actuator simulator")
    parser.add_argument("--kuksa", default=default_kuksa_address(),
                       help="KUKSA databroker address (host:port)")
    parser.add_argument("--config", "-c",
                       default=os.environ.get("FIXTURE_CONFIG", DEFAULT_CONFIG_FILE),
                       help="Fixture configuration file (YAML or JSON)")
    parser.add_argument("--tick-interval", type=float, default=0.1,
                       help="Engine tick interval in seconds")
    parser.add_argument("--verbose", "-v", action="store_true",
                       help="Verbose logging")

    args = parser.parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("=== Hardware Fixture Runner ===")
    logger.info(f"KUKSA address: {args.kuksa}")
    logger.info(f"Config file: {args.config}")

    config = RunnerConfig(
        kuksa_address=args.kuksa,
        config_file=args.config,
        tick_interval_s=args.tick_interval,
    )
    runner = FixtureRunner(config)

    # Signal handler for graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Shutdown signal received")
        runner.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not runner.start():
        logger.error("Failed to start fixture runner")
        return 1

    runner.run()
    runner.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
