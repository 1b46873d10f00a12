"""
Mirror Scheduler
================

Mirror-with-delay strategy: each command for a served actuator is
republished as the actual value of every mirror rule it feeds, after that
rule's delay.

A dispatcher thread drains the shared work queue and routes items to one
lane per served actuator. Each lane has its own queue and worker thread,
so a long delay on one actuator never stalls another, and commands to the
same actuator are handled strictly in arrival order.

Lane state per item: IDLE -> WAITING -> READY -> IDLE
"""

import logging
import threading
import time
from enum import Enum, auto
from typing import Dict, List, Optional

from ..config.datatypes import coerce
from ..config.fixture import FixtureSpec, SimulationRule
from ..errors import EnqueueError, EvaluationError
from .publisher import Publisher
from .work_queue import Namespace, PendingWork, WorkQueue

logger = logging.getLogger(__name__)


class LaneState(Enum):
    """State of one actuator lane."""
    IDLE = auto()
    WAITING = auto()
    READY = auto()


class _Lane:
    """Worker for a single served actuator."""

    def __init__(self, scheduler: "MirrorScheduler", path: str, rules: List[SimulationRule]):
        self.path = path
        self.rules = rules
        self.queue = WorkQueue(name=path)
        self.state = LaneState.IDLE
        self.current: Optional[PendingWork] = None
        self._scheduler = scheduler
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"MirrorLane-{path}",
        )

    def _run(self):
        while True:
            item = self.queue.get()
            if item is None:
                break
            self.current = item
            try:
                completed = self._scheduler._process(self, item)
            except Exception as e:
                logger.error(f"Lane {self.path} failed to process {item.value!r}: {e}")
                completed = True
            if not completed:
                break
            self.current = None
            self.state = LaneState.IDLE


class MirrorScheduler:
    """
    Strategy A: per-actuator delayed republish.

    Every rule fed by an actuator is published at
    received_at + rule delay, in ascending delay order.
    """

    def __init__(self, spec: FixtureSpec, queue: WorkQueue, publisher: Publisher):
        self.spec = spec
        self._queue = queue
        self._publisher = publisher
        self._stopping = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._unroutable: List[PendingWork] = []

        self._lanes: Dict[str, _Lane] = {
            path: _Lane(self, path, spec.rules_for(path))
            for path in spec.served_signals
        }
        for path, lane in self._lanes.items():
            if not lane.rules:
                logger.warning(f"[{spec.name}] Actuator {path} has no mapping, "
                               f"commands will be acknowledged without output")

    def start(self) -> bool:
        """Start the dispatcher and one worker per served actuator."""
        for lane in self._lanes.values():
            lane.thread.start()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            daemon=True,
            name="MirrorScheduler-dispatch",
        )
        self._dispatcher.start()
        logger.info(f"[{self.spec.name}] Mirror scheduler started with "
                    f"{len(self._lanes)} lane(s)")
        return True

    def stop(self, timeout: float = 2.0) -> List[PendingWork]:
        """
        Stop all threads.

        The shared queue must already be closed by the caller.

        Returns:
            Items that were accepted but never published
        """
        self._stopping.set()
        if self._dispatcher and self._dispatcher.is_alive():
            self._dispatcher.join(timeout=timeout)

        unpublished = list(self._unroutable)
        for lane in self._lanes.values():
            lane.queue.close()
        for lane in self._lanes.values():
            if lane.thread.is_alive():
                lane.thread.join(timeout=timeout)
            if lane.thread.is_alive():
                logger.warning(f"[{self.spec.name}] Lane {lane.path} did not stop in time")
            if lane.current is not None:
                unpublished.append(lane.current)
            unpublished.extend(lane.queue.drain())

        logger.info(f"[{self.spec.name}] Mirror scheduler stopped")
        return unpublished

    def lane_state(self, path: str) -> LaneState:
        return self._lanes[path].state

    def _dispatch_loop(self):
        while not self._stopping.is_set():
            item = self._queue.get()
            if item is None:
                break

            lane = self._lanes.get(item.signal_path)
            if lane is None or item.namespace != Namespace.TARGET:
                logger.warning(f"[{self.spec.name}] No lane for {item.namespace.value} "
                               f"value of {item.signal_path}, ignoring")
                continue
            try:
                lane.queue.put(item)
            except EnqueueError as e:
                logger.error(f"[{self.spec.name}] Could not route {item.signal_path}: {e}")
                self._unroutable.append(item)

    def _process(self, lane: _Lane, item: PendingWork) -> bool:
        """
        Publish every rule output for one command.

        Returns:
            False if shutdown interrupted the wait
        """
        for rule in lane.rules:
            lane.state = LaneState.WAITING
            remaining = item.received_at + rule.delay_s - time.monotonic()
            if remaining > 0 and self._stopping.wait(remaining):
                return False

            lane.state = LaneState.READY
            try:
                value = coerce(item.value, rule.data_type)
            except EvaluationError as e:
                logger.error(f"[{self.spec.name}] Cannot mirror {item.signal_path} "
                             f"to {rule.output_signal}: {e}")
                continue
            self._publisher.publish(rule.output_signal, value)
        return True
