"""Simulation - Single-timeline governance driver.

The driver merges the decision stream and the feedback stream:
    advance clock -> ingest matured feedback -> censor expired -> decide

INVARIANTS:
1. All feedback due at or before a context's time is applied before
   that context's decision
2. Feedback is applied oldest first
3. Per-record errors are logged, recorded as evidence and skipped
4. Structural errors abort the run
5. Every decision is resolved (feedback or censoring) before returning
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from . import reward
from .arms import ArmRegistry, create_registry
from .config import GovernanceConfig
from .engine import PolicyEngine
from .errors import (
    InvalidOutcomeError,
    InvalidTimestampError,
    NonMonotonicTimeError,
    RecordError,
    StructuralError,
)
from .feedback_queue import DelayedFeedbackQueue
from .ledger import TraceLedger
from .metrics import GovernanceSummary, summarize
from .records import (
    Context,
    DecisionTraceRecord,
    EliminationEvent,
    FeedbackEvent,
    PredictionSet,
    SkippedContext,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamItem:
    """One element of the merged input stream.

    feedback is None when the outcome never arrives.
    """

    context: Context
    predictions: PredictionSet
    feedback: FeedbackEvent | None = None


@dataclass
class SimulationResult:
    """Result of running the engine over a stream."""

    decisions: int
    skipped: int
    resolved: int
    censored: int
    eliminations: list[EliminationEvent]
    active_arms: list[str]
    cumulative_regret: float
    trace: list[DecisionTraceRecord]
    summary: GovernanceSummary
    duration_seconds: float
    ledger_path: str | None = None
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (trace excluded)."""
        return {
            "decisions": self.decisions,
            "skipped": self.skipped,
            "resolved": self.resolved,
            "censored": self.censored,
            "eliminations": [e.to_dict() for e in self.eliminations],
            "active_arms": self.active_arms,
            "cumulative_regret": self.cumulative_regret,
            "duration_seconds": self.duration_seconds,
            "ledger_path": self.ledger_path,
            "config": self.config,
            "summary": self.summary.to_dict(),
        }


def run_simulation(
    items: Iterable[StreamItem],
    registry: ArmRegistry | None = None,
    config: GovernanceConfig | None = None,
    ledger: TraceLedger | None = None,
) -> SimulationResult:
    """Run the governance engine over a context/prediction/outcome stream.

    The loop is:
        1. Advance the feedback queue to the context time; a context with a
           NaN or infinite time is skipped here
        2. Ingest released feedback and censor expired decisions, ordered
           by resolution time
        3. Decide for the context; skip it if malformed
        4. Track the decision and schedule its feedback
    After the stream ends the clock runs to the last censoring deadline.

    Args:
        items: Stream items in non-decreasing context time. Items with a
            non-finite time may appear anywhere; they are skipped.
        registry: Arm registry (DEFAULT_ARMS if not provided).
        config: Governance configuration.
        ledger: Trace ledger (in-memory if not provided).

    Returns:
        SimulationResult with the trace and summary metrics.

    Raises:
        StructuralError: on a decreasing timeline or an empty active set.
    """
    start_time = time.perf_counter()
    config = config or GovernanceConfig()
    registry = registry if registry is not None else create_registry()
    ledger = ledger if ledger is not None else TraceLedger()

    engine = PolicyEngine(registry, config, ledger)
    queue = DelayedFeedbackQueue(max_wait=config.max_wait_hours)
    outcomes: dict[int, FeedbackEvent] = {}

    logger.info(f"Starting governance simulation with arms: {registry.get_active_arms()}")

    def skip(sequence: int | None, error: RecordError) -> None:
        logger.error(f"Skipping record {sequence}: {error}")
        ledger.record_skip(SkippedContext(
            sequence=sequence,
            error_type=type(error).__name__,
            reason=error.reason,
        ))

    def drain(current_time: float) -> None:
        # Releases and censorings of one advance are applied in resolution
        # time order, so the trace stays ordered by resolved time
        resolutions: list[tuple[float, int, FeedbackEvent | None]] = []
        for seq in queue.advance_to(current_time):
            event = outcomes.pop(seq)
            resolutions.append((event.arrival_time, seq, event))
        for seq in queue.drain_censored():
            outcomes.pop(seq, None)
            deadline = engine.get_decision(seq).timestamp + config.max_wait_hours
            resolutions.append((deadline, seq, None))

        for resolved_time, seq, event in sorted(resolutions, key=lambda r: (r[0], r[1])):
            if event is None:
                engine.censor(seq, resolved_time)
            else:
                engine.ingest_feedback(seq, event.outcome, event.arrival_time)

    try:
        for item in items:
            context = item.context
            seq = context.sequence

            try:
                drain(context.timestamp)
            except InvalidTimestampError as e:
                skip(seq, InvalidTimestampError(e.reason, seq))
                continue
            except NonMonotonicTimeError as e:
                raise NonMonotonicTimeError(e.reason, seq) from e

            try:
                engine.decide(context, item.predictions)
            except RecordError as e:
                skip(seq, e)
                continue

            queue.track(seq, context.timestamp)

            feedback = item.feedback
            if feedback is None:
                continue
            try:
                if feedback.sequence != seq:
                    raise InvalidOutcomeError(
                        f"Feedback belongs to sequence {feedback.sequence}", seq
                    )
                reward.check_outcome(feedback.outcome)
                queue.enqueue(seq, feedback.arrival_time)
                outcomes[seq] = feedback
            except RecordError as e:
                skip(seq, e)

        final = queue.final_deadline()
        if final is not None:
            drain(max(final, queue.clock))

    except StructuralError as e:
        logger.error(f"Aborting governance simulation: {e}")
        raise

    trace = list(ledger.records)
    arm_ids = [arm.arm_id for arm in registry.all_arms()]
    summary = summarize(trace, arm_ids)
    censored = sum(1 for r in trace if r.censored)
    duration = time.perf_counter() - start_time

    logger.info(
        f"Simulation completed: {ledger.decision_count} decisions, "
        f"{len(ledger.skipped)} skipped, {censored} censored, "
        f"active arms={registry.get_active_arms()}, "
        f"cumulative regret={engine.cumulative_regret:.4f}"
    )

    return SimulationResult(
        decisions=ledger.decision_count,
        skipped=len(ledger.skipped),
        resolved=len(trace) - censored,
        censored=censored,
        eliminations=engine.elimination_events,
        active_arms=registry.get_active_arms(),
        cumulative_regret=engine.cumulative_regret,
        trace=trace,
        summary=summary,
        duration_seconds=duration,
        ledger_path=str(ledger.path) if ledger.path is not None else None,
        config=config.to_dict(),
    )


def create_ledger(run_id: str, base_dir: Path | str = ".") -> TraceLedger:
    """Create a file-backed ledger for a run under `<base_dir>/ledger/`."""
    ledger_dir = Path(base_dir) / "ledger"
    ledger_dir.mkdir(parents=True, exist_ok=True)
    return TraceLedger(ledger_dir / f"{run_id}.jsonl")
