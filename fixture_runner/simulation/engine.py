"""
Transform Engine
================

Capability interface for dependency-graph evaluation plus the bundled
expression engine.

The scheduler only relies on:

    evaluate(updates, now) -> [EngineOutput(signal_path, value, ready)]

Engines hold per-signal state and are not required to be reentrant; callers
serialize evaluate() calls.

ExpressionEngine semantics:
    - Target and actual values live in separate key spaces. A dependency on
      a served actuator reads its commanded value.
    - Every input update queues one evaluation per dependent rule, due after
      that rule's delay. Delays are measured per rule from the update time.
    - Mirror rules emit the dependency value that triggered them.
    - Transform rules evaluate a Python expression with:
          deps[path]   dependency values captured at trigger time
          value        the triggering value
          now          evaluation time (monotonic seconds)
      plus math functions and a few builtins, evaluated by simpleeval
      (no attribute access to dunder names, no imports). Returning None
      means "not ready".
    - Rules run in dependency order so a produced value reaches dependent
      rules in the same cycle.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from types import SimpleNamespace
from typing import Any, Deque, Dict, List, Sequence, Set, Tuple

from simpleeval import EvalWithCompoundTypes

from ..config.datatypes import coerce
from ..config.fixture import FixtureSpec, SimulationRule
from ..errors import ConfigError, EvaluationError
from .work_queue import Namespace, PendingWork, SignalKey

logger = logging.getLogger(__name__)

_FUNCTIONS = {
    'abs': abs,
    'min': min,
    'max': max,
    'round': round,
    'int': int,
    'float': float,
    'bool': bool,
    'str': str,
    'len': len,
    'sum': sum,
}

_MATH = SimpleNamespace(**{
    name: getattr(math, name)
    for name in dir(math)
    if not name.startswith('_')
})


@dataclass
class EngineOutput:
    """One result of an evaluation cycle."""
    signal_path: str
    value: Any
    ready: bool = True


class TransformEngine(ABC):
    """Dependency-graph evaluator fed by the transform scheduler."""

    @abstractmethod
    def evaluate(self, updates: Sequence[PendingWork], now: float) -> List[EngineOutput]:
        """
        Apply input updates and return whatever became due.

        Args:
            updates: New input values (may be empty for a periodic tick)
            now: Current monotonic time in seconds
        """

    @property
    def required_inputs(self) -> Set[SignalKey]:
        """Keys the engine expects from outside."""
        return set()

    def pending_outputs(self) -> int:
        """Number of evaluations queued but not yet due."""
        return 0


@dataclass
class _PendingEvaluation:
    due: float
    trigger_value: Any
    inputs: Dict[str, Any] = field(default_factory=dict)


class ExpressionEngine(TransformEngine):
    """
    Evaluates fixture rules with per-rule delay lines.

    Raises ConfigError on construction if rule outputs depend on each other
    in a cycle.
    """

    def __init__(self, spec: FixtureSpec):
        self._name = spec.name
        self._rules: Dict[str, SimulationRule] = dict(spec.rules)

        self._inputs: Dict[str, List[Tuple[str, SignalKey]]] = {}
        self._dependents: Dict[SignalKey, List[str]] = {}
        for output, rule in self._rules.items():
            keys = []
            for dep in rule.depends_on:
                key = SignalKey.target(dep) if spec.is_served(dep) else SignalKey.actual(dep)
                keys.append((dep, key))
                self._dependents.setdefault(key, []).append(output)
            self._inputs[output] = keys

        self._order = self._evaluation_order()
        self._values: Dict[SignalKey, Any] = {}
        self._pending: Dict[str, Deque[_PendingEvaluation]] = {
            output: deque() for output in self._rules
        }

    @property
    def required_inputs(self) -> Set[SignalKey]:
        return {
            key for key in self._dependents
            if key.namespace == Namespace.TARGET or key.path not in self._rules
        }

    @property
    def evaluation_order(self) -> List[str]:
        return list(self._order)

    def pending_outputs(self) -> int:
        return sum(len(queue) for queue in self._pending.values())

    def pending_count(self, output: str) -> int:
        """Number of queued evaluations for a rule."""
        return len(self._pending.get(output, ()))

    def value_of(self, key: SignalKey) -> Any:
        return self._values.get(key)

    def evaluate(self, updates: Sequence[PendingWork], now: float) -> List[EngineOutput]:
        for item in updates:
            self._store(item.key, item.value, item.received_at)

        outputs: List[EngineOutput] = []
        for output in self._order:
            queue = self._pending[output]
            while queue and queue[0].due <= now:
                entry = queue.popleft()
                result = self._fire(self._rules[output], entry, now)
                if result is None:
                    continue
                outputs.append(result)
                if result.ready:
                    self._store(SignalKey.actual(output), result.value, now)
        return outputs

    def _evaluation_order(self) -> List[str]:
        sorter = TopologicalSorter()
        for output, keys in self._inputs.items():
            producers = [
                key.path for _, key in keys
                if key.namespace == Namespace.ACTUAL and key.path in self._rules
            ]
            sorter.add(output, *producers)
        try:
            return list(sorter.static_order())
        except CycleError as e:
            raise ConfigError(f"Mappings form a dependency cycle: {e.args[1]}") from e

    def _store(self, key: SignalKey, value: Any, at: float):
        self._values[key] = value
        for output in self._dependents.get(key, ()):
            rule = self._rules[output]
            inputs = {
                dep: self._values[dep_key]
                for dep, dep_key in self._inputs[output]
                if dep_key in self._values
            }
            self._pending[output].append(
                _PendingEvaluation(due=at + rule.delay_s, trigger_value=value, inputs=inputs)
            )

    def _fire(self, rule: SimulationRule, entry: _PendingEvaluation, now: float):
        try:
            if rule.is_mirror:
                value = entry.trigger_value
            else:
                value = self._run_expression(rule, entry, now)
            if value is None:
                return EngineOutput(rule.output_signal, None, ready=False)
            return EngineOutput(rule.output_signal, coerce(value, rule.data_type))
        except EvaluationError as e:
            logger.error(f"[{self._name}] Evaluation of {rule.output_signal} failed: {e}")
            return None

    def _run_expression(self, rule: SimulationRule, entry: _PendingEvaluation, now: float) -> Any:
        evaluator = EvalWithCompoundTypes(
            functions=_FUNCTIONS,
            names={
                'deps': dict(entry.inputs),
                'value': entry.trigger_value,
                'now': now,
                'math': _MATH,
            },
        )
        try:
            return evaluator.eval(rule.effect.expression)
        except SyntaxError as e:
            raise EvaluationError(f"Invalid transform expression: {e.msg}") from e
        except KeyError as e:
            logger.debug(f"[{self._name}] {rule.output_signal} waiting for input {e}")
            return None
        except Exception as e:
            raise EvaluationError(f"{type(e).__name__}: {e}") from e
