from __future__ import annotations


class FactoryError(RuntimeError):
    """Base class for engine failures surfaced to callers."""


class StateError(FactoryError):
    """Raised when persisted session, queue, or worker state cannot be used."""


class CheckpointError(FactoryError):
    """Raised when a checkpoint tag cannot be created or restored."""


class SandboxError(FactoryError):
    """Raised when an isolated working copy cannot be prepared."""


class WorkerError(FactoryError):
    """Raised when the autonomous worker cannot start or stop."""


class AcknowledgmentError(FactoryError):
    """Raised when autonomous mode risks were not acknowledged."""
