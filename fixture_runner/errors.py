"""
Fixture Runner Errors
=====================

Error taxonomy split by lifecycle phase.

Startup errors (fatal, the runner never reaches RUNNING):
    - ConfigError: malformed or missing fixture configuration
    - ResolutionError: a referenced signal path is unknown to the broker
    - RegistrationError: the broker refused actuator ownership or never
      became ready

Runtime errors (recovered locally, the runner keeps going):
    - PublishError: a write of an actual value failed
    - EvaluationError: a rule could not produce a value this cycle
    - EnqueueError: an actuation could not be handed to the scheduler
"""


class FixtureError(Exception):
    """Base class for all fixture runner errors."""


class StartupError(FixtureError):
    """Errors that abort startup."""


class ConfigError(StartupError):
    """Fixture configuration is missing required fields or is malformed."""


class ResolutionError(StartupError):
    """A signal path could not be resolved to a handle."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        message = f"Failed to resolve signal {path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class RegistrationError(StartupError):
    """The broker refused to register an actuator or the client is not ready."""


class RuntimeFixtureError(FixtureError):
    """Errors that only affect a single item or rule."""


class PublishError(RuntimeFixtureError):
    """The broker rejected or timed out an actual-value write."""


class EvaluationError(RuntimeFixtureError):
    """A rule failed to evaluate (bad expression, bad input)."""


class ValueRangeError(EvaluationError):
    """A value does not fit the declared data type."""


class EnqueueError(RuntimeFixtureError):
    """An item could not be placed on the work queue."""


class QueueClosedError(EnqueueError):
    """The work queue has been closed for shutdown."""


class QueueFullError(EnqueueError):
    """The bounded work queue has no free slot."""
