"""
Fixture Configuration
=====================

In-memory model of a simulated hardware fixture and the loader that builds
it from a YAML/JSON document.

Document layout:

    fixture:
      name: Door Lock Fixture
      serves:
        - Vehicle.Cabin.Door.Row1.Left.IsLocked
      mappings:
        - signal: Vehicle.Cabin.Door.Row1.Left.IsLocked
          depends_on: [Vehicle.Cabin.Door.Row1.Left.IsLocked]
          datatype: boolean
          delay: 0.2                   # seconds
        - signal: Vehicle.Cabin.Door.Row1.Left.IsOpen
          depends_on: [Vehicle.Cabin.Door.Row1.Left.IsLocked]
          datatype: boolean
          transform:
            code: "not deps['Vehicle.Cabin.Door.Row1.Left.IsLocked']"

A dependency naming a served actuator refers to its last commanded (target)
value, never to the actual value this fixture publishes for it.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from ..errors import ConfigError
from .datatypes import DataType

logger = logging.getLogger(__name__)

DEFAULT_FIXTURE_NAME = "Unnamed Fixture"


class Strategy(Enum):
    """How a fixture turns commands into published values."""
    AUTO = "auto"             # Pick MIRROR when possible, else TRANSFORM
    MIRROR = "mirror"         # Per-actuator delayed republish
    TRANSFORM = "transform"   # Dependency graph evaluated by a transform engine


@dataclass(frozen=True)
class MirrorEffect:
    """Output is the most recent value of the dependency that changed."""


@dataclass(frozen=True)
class TransformEffect:
    """Output is computed by the transform engine from an expression."""
    expression: str


Effect = Union[MirrorEffect, TransformEffect]


@dataclass
class SimulationRule:
    """How one output signal's actual value is computed."""
    output_signal: str
    depends_on: List[str] = field(default_factory=list)
    data_type: Optional[DataType] = None
    delay_ms: int = 0
    effect: Effect = field(default_factory=MirrorEffect)

    @property
    def delay_s(self) -> float:
        return self.delay_ms / 1000.0

    @property
    def is_mirror(self) -> bool:
        return isinstance(self.effect, MirrorEffect)


@dataclass
class FixtureSpec:
    """One simulated hardware unit."""
    name: str
    served_signals: List[str]
    rules: Dict[str, SimulationRule] = field(default_factory=dict)
    strategy: Strategy = Strategy.AUTO

    def is_served(self, path: str) -> bool:
        return path in self.served_signals

    def rules_for(self, path: str) -> List[SimulationRule]:
        """Rules that depend on the given signal, ordered by delay."""
        rules = [r for r in self.rules.values() if path in r.depends_on]
        return sorted(rules, key=lambda r: r.delay_ms)

    def external_dependencies(self) -> List[str]:
        """Dependencies that are neither served nor produced by this fixture."""
        external = []
        for rule in self.rules.values():
            for dep in rule.depends_on:
                if dep in self.served_signals or dep in self.rules or dep in external:
                    continue
                external.append(dep)
        return external

    def all_signals(self) -> List[str]:
        """Every signal path the fixture references, without duplicates."""
        signals = list(self.served_signals)
        for output, rule in self.rules.items():
            for path in [output] + rule.depends_on:
                if path not in signals:
                    signals.append(path)
        return signals

    def mirror_compatible(self) -> bool:
        """True if every rule is a mirror fed only by served actuators."""
        return all(
            rule.is_mirror and all(dep in self.served_signals for dep in rule.depends_on)
            for rule in self.rules.values()
        )

    @property
    def resolved_strategy(self) -> Strategy:
        if self.strategy != Strategy.AUTO:
            return self.strategy
        return Strategy.MIRROR if self.mirror_compatible() else Strategy.TRANSFORM


def parse_fixture(raw: Mapping[str, Any]) -> FixtureSpec:
    """
    Build a FixtureSpec from a parsed configuration document.

    Args:
        raw: Document with a root 'fixture' object

    Returns:
        Validated FixtureSpec

    Raises:
        ConfigError: required fields are missing or malformed
    """
    if not isinstance(raw, Mapping) or not isinstance(raw.get("fixture"), Mapping):
        raise ConfigError("No 'fixture' section in config")
    fixture = raw["fixture"]

    name = fixture.get("name") or DEFAULT_FIXTURE_NAME
    if not isinstance(name, str):
        name = str(name)

    served = _parse_serves(fixture.get("serves"))
    logger.info(f"Fixture '{name}' will serve {len(served)} actuator(s)")

    mappings = fixture.get("mappings")
    if mappings is None:
        raise ConfigError("No 'mappings' section in fixture config")
    if not isinstance(mappings, list):
        raise ConfigError("'mappings' must be a list")

    rules: Dict[str, SimulationRule] = {}
    for index, node in enumerate(mappings):
        rule = _parse_rule(node, index, served)
        if rule.output_signal in rules:
            logger.warning(f"Duplicate mapping for {rule.output_signal}, last one wins")
        rules[rule.output_signal] = rule

    strategy_name = str(fixture.get("strategy", Strategy.AUTO.value)).lower()
    try:
        strategy = Strategy(strategy_name)
    except ValueError:
        raise ConfigError(f"Unknown strategy '{strategy_name}'") from None

    spec = FixtureSpec(name=name, served_signals=served, rules=rules, strategy=strategy)
    if strategy == Strategy.MIRROR and not spec.mirror_compatible():
        raise ConfigError(
            "Strategy 'mirror' requires every mapping to be a plain mirror of served actuators"
        )

    logger.info(f"Loaded {len(rules)} signal mappings ({spec.resolved_strategy.value} strategy)")
    return spec


def load_fixture(path: Union[str, Path]) -> FixtureSpec:
    """
    Load a fixture from a YAML or JSON file.

    Raises:
        ConfigError: file is missing, unreadable, or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file does not exist: {path}")
    if path.is_dir():
        raise ConfigError(f"Config path is a directory, not a file: {path}")

    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config {path}: {e}") from e

    return parse_fixture(raw or {})


def _parse_serves(node: Any) -> List[str]:
    if node is None:
        raise ConfigError("No 'serves' section in fixture config")
    if isinstance(node, str) or not isinstance(node, list):
        raise ConfigError("'serves' must be a list of signal paths")

    served: List[str] = []
    for entry in node:
        if not isinstance(entry, str) or not entry.strip():
            raise ConfigError(f"Invalid served signal: {entry!r}")
        if entry.strip() not in served:
            served.append(entry.strip())
    if not served:
        raise ConfigError("'serves' must list at least one actuator")
    return served


def _parse_rule(node: Any, index: int, served: List[str]) -> SimulationRule:
    if not isinstance(node, Mapping):
        raise ConfigError(f"Mapping #{index} is not an object")

    signal = node.get("signal")
    if not isinstance(signal, str) or not signal.strip():
        raise ConfigError(f"Mapping #{index} has no 'signal'")
    signal = signal.strip()

    data_type = None
    if node.get("datatype") is not None:
        data_type = DataType.from_string(str(node["datatype"]))
        if data_type is None:
            raise ConfigError(f"Unknown datatype '{node['datatype']}' for signal {signal}")

    depends_on: List[str] = []
    for dep in node.get("depends_on") or []:
        if not isinstance(dep, str) or not dep.strip():
            raise ConfigError(f"Invalid dependency {dep!r} for signal {signal}")
        if dep.strip() not in depends_on:
            depends_on.append(dep.strip())

    delay_ms = 0
    if node.get("delay") is not None:
        delay = node["delay"]
        if isinstance(delay, bool) or not isinstance(delay, (int, float)):
            raise ConfigError(f"Delay for {signal} must be a number of seconds")
        if not math.isfinite(delay):
            raise ConfigError(f"Delay for {signal} must be finite, got {delay}")
        if delay < 0:
            raise ConfigError(f"Negative delay {delay} for signal {signal}")
        delay_ms = int(round(delay * 1000))

    effect: Effect = MirrorEffect()
    transform = node.get("transform")
    if transform is not None:
        code = transform.get("code") if isinstance(transform, Mapping) else transform
        if not isinstance(code, str) or not code.strip():
            raise ConfigError(f"Transform for {signal} has no code")
        effect = TransformEffect(expression=code.strip())

    if not depends_on and isinstance(effect, MirrorEffect):
        if signal not in served:
            raise ConfigError(f"Mirror mapping for {signal} needs 'depends_on'")
        depends_on = [signal]

    return SimulationRule(
        output_signal=signal,
        depends_on=depends_on,
        data_type=data_type,
        delay_ms=delay_ms,
        effect=effect,
    )
