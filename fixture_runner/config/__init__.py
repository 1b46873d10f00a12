"""
Fixture Configuration
=====================

Fixture model, loader, and signal data types.
"""

from .datatypes import DataType, coerce
from .fixture import (
    FixtureSpec,
    SimulationRule,
    MirrorEffect,
    TransformEffect,
    Strategy,
    parse_fixture,
    load_fixture,
)

__all__ = [
    'DataType',
    'coerce',
    'FixtureSpec',
    'SimulationRule',
    'MirrorEffect',
    'TransformEffect',
    'Strategy',
    'parse_fixture',
    'load_fixture',
]
