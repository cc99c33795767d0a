"""Errors - Governance error taxonomy.

Three families, each with a different propagation policy:

- ConfigurationError: invalid weights/delays. Fatal at startup.
- RecordError: a single malformed input record. The driver logs it,
  records evidence in the ledger, skips the record and continues.
- StructuralError: an invariant violation that means the run is corrupt.
  Always aborts.

Censored feedback is NOT an error; it is an expected terminal state.

Every error carries the sequence number that triggered it, if any.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all governance errors."""

    component = "governance"

    def __init__(self, message: str, sequence: int | None = None):
        self.sequence = sequence
        self.reason = message
        super().__init__(
            f"[{self.component}] {message}"
            + (f" (sequence: {sequence})" if sequence is not None else "")
        )


class ConfigurationError(GovernanceError):
    """Raised when the governance configuration is invalid."""

    component = "config"


class RecordError(GovernanceError):
    """A per-record error. Recovered by skipping the record."""


class StructuralError(GovernanceError):
    """A structural invariant violation. Never recovered."""


# Per-record errors


class InvalidPredictionError(RecordError):
    """Prediction is NaN, outside [0, 1], or missing for an active arm."""

    component = "predictions"


class InvalidOutcomeError(RecordError):
    """Outcome label is not 0 or 1."""

    component = "feedback"


class UnknownArmError(RecordError):
    """Arm id is not in the registry."""

    component = "registry"

    def __init__(self, arm_id: str, sequence: int | None = None):
        self.arm_id = arm_id
        super().__init__(f"Unknown arm: {arm_id!r}", sequence)


class DuplicateArmError(RecordError):
    """Arm id is already registered."""

    component = "registry"

    def __init__(self, arm_id: str):
        self.arm_id = arm_id
        super().__init__(f"Arm already registered: {arm_id!r}")


class UnknownDecisionError(RecordError):
    """Feedback references a decision that does not exist or is resolved."""

    component = "engine"


class DuplicateDecisionError(RecordError):
    """A decision already exists for this sequence number."""

    component = "engine"


class DuplicateFeedbackError(RecordError):
    """Feedback was already enqueued for this decision."""

    component = "queue"


class FeedbackOrderError(RecordError):
    """Feedback arrival time precedes its decision time."""

    component = "queue"


class InvalidTimestampError(RecordError):
    """A decision, arrival or clock time is NaN or infinite."""

    component = "clock"


# Structural errors


class AllArmsEliminatedError(StructuralError):
    """The active arm set would become (or is) empty."""

    component = "engine"


class NonMonotonicTimeError(StructuralError):
    """Simulated time was asked to move backwards."""

    component = "clock"
