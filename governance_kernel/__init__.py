"""Clinical Model Governance Kernel.

A decision-allocation engine that routes each sequential clinical decision
to one of several pre-validated predictive models (arms), learns from
delayed and possibly censored outcomes, and permanently eliminates arms
that are confidently worse.

Non-Negotiable Invariants:
1. Exactly one Decision per context sequence number
2. Elimination is permanent and never empties the active set
3. Feedback is never seen before its arrival time
4. Censored decisions never update arm statistics
5. Configuration is immutable and injected, never global
6. Every decision and resolution is logged
7. Malformed records produce evidence and are skipped
"""

from .errors import (
    GovernanceError,
    ConfigurationError,
    RecordError,
    StructuralError,
    InvalidPredictionError,
    InvalidOutcomeError,
    UnknownArmError,
    DuplicateArmError,
    UnknownDecisionError,
    DuplicateDecisionError,
    DuplicateFeedbackError,
    FeedbackOrderError,
    InvalidTimestampError,
    AllArmsEliminatedError,
    NonMonotonicTimeError,
)
from .config import GovernanceConfig
from .records import (
    Context,
    PredictionSet,
    Decision,
    FeedbackEvent,
    DecisionTraceRecord,
    EliminationEvent,
    SkippedContext,
)
from .arms import Arm, ArmState, ArmRegistry, DEFAULT_ARMS, create_registry
from .reward import RewardBreakdown, clip_probability, log_loss, safety_penalty, tracked_loss, utility, evaluate
from .statistics import ArmStatistic, hoeffding_half_width
from .feedback_queue import DelayedFeedbackQueue
from .ledger import LedgerEntry, TraceLedger
from .engine import PolicyEngine
from .metrics import GovernanceSummary, summarize, trace_frame
from .simulation import StreamItem, SimulationResult, run_simulation, create_ledger

__version__ = "1.0.0"
__all__ = [
    # Errors
    "GovernanceError",
    "ConfigurationError",
    "RecordError",
    "StructuralError",
    "InvalidPredictionError",
    "InvalidOutcomeError",
    "UnknownArmError",
    "DuplicateArmError",
    "UnknownDecisionError",
    "DuplicateDecisionError",
    "DuplicateFeedbackError",
    "FeedbackOrderError",
    "InvalidTimestampError",
    "AllArmsEliminatedError",
    "NonMonotonicTimeError",
    # Config
    "GovernanceConfig",
    # Records
    "Context",
    "PredictionSet",
    "Decision",
    "FeedbackEvent",
    "DecisionTraceRecord",
    "EliminationEvent",
    "SkippedContext",
    # Arms
    "Arm",
    "ArmState",
    "ArmRegistry",
    "DEFAULT_ARMS",
    "create_registry",
    # Reward
    "RewardBreakdown",
    "clip_probability",
    "log_loss",
    "safety_penalty",
    "tracked_loss",
    "utility",
    "evaluate",
    # Statistics
    "ArmStatistic",
    "hoeffding_half_width",
    # Queue
    "DelayedFeedbackQueue",
    # Ledger
    "LedgerEntry",
    "TraceLedger",
    # Engine
    "PolicyEngine",
    # Metrics
    "GovernanceSummary",
    "summarize",
    "trace_frame",
    # Simulation
    "StreamItem",
    "SimulationResult",
    "run_simulation",
    "create_ledger",
]
