"""
Actuation Simulation
====================

Pipeline from a broker actuation callback to a published actual value:

    ActuationIntake -> WorkQueue -> MirrorScheduler | TransformScheduler -> Publisher

- MirrorScheduler: delayed republish, one lane per served actuator
- TransformScheduler: feeds a TransformEngine on input and on a periodic tick
"""

from .work_queue import Namespace, SignalKey, PendingWork, WorkQueue
from .intake import ActuationIntake, in_actuation_callback
from .publisher import Publisher
from .engine import TransformEngine, ExpressionEngine, EngineOutput
from .mirror_scheduler import MirrorScheduler, LaneState
from .transform_scheduler import TransformScheduler

__all__ = [
    'Namespace',
    'SignalKey',
    'PendingWork',
    'WorkQueue',
    'ActuationIntake',
    'in_actuation_callback',
    'Publisher',
    'TransformEngine',
    'ExpressionEngine',
    'EngineOutput',
    'MirrorScheduler',
    'LaneState',
    'TransformScheduler',
]
