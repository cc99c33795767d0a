"""Policy Engine - Confidence-bound arm selection and elimination.

The engine is the decision-allocation core. It:
- Selects an active arm for each context by its lower confidence bound
- Ingests matured feedback and updates per-arm loss statistics
- Permanently eliminates arms that are confidently worse than another
- Appends one trace record per resolved decision, with running regret

Selection rule (no external randomization):

    index(arm) = mean_loss - exploration_scale * half_width
    choose argmin index, ties broken by lowest arm id

Elimination rule, over a consistent snapshot of the active arms:

    eliminate j  if  exists active i != j with UCB(i) < LCB(j)

INVARIANTS:
1. Exactly one Decision per sequence number
2. active -> eliminated is permanent; the active set is never empty
3. One remaining active arm is always selected
4. Feedback is applied once per decision; censored decisions never
   touch the statistics
5. All mutations are serialized (single lock)
"""

from __future__ import annotations

import logging
import math
import threading

from . import reward
from .arms import ArmRegistry
from .config import GovernanceConfig
from .errors import (
    AllArmsEliminatedError,
    DuplicateDecisionError,
    InvalidPredictionError,
    InvalidTimestampError,
    NonMonotonicTimeError,
    UnknownArmError,
    UnknownDecisionError,
)
from .ledger import TraceLedger
from .records import (
    Context,
    Decision,
    DecisionTraceRecord,
    EliminationEvent,
    PredictionSet,
)
from .statistics import ArmStatistic

logger = logging.getLogger(__name__)


class PolicyEngine:
    """Sequential governance engine over a fixed arm registry.

    Usage:
        engine = PolicyEngine(create_registry(), GovernanceConfig())

        arm_id = engine.decide(context, predictions)
        ...
        record = engine.ingest_feedback(context.sequence, outcome=1)
    """

    def __init__(
        self,
        registry: ArmRegistry,
        config: GovernanceConfig | None = None,
        ledger: TraceLedger | None = None,
    ):
        """Initialize engine.

        Args:
            registry: Arm registry. The engine is its only mutator.
            config: Immutable configuration (defaults if not provided).
            ledger: Trace recorder (in-memory if not provided).
        """
        self.registry = registry
        self.config = config or GovernanceConfig()
        self.ledger = ledger if ledger is not None else TraceLedger()

        self._lock = threading.RLock()
        self._clock = -math.inf
        self._stats: dict[str, ArmStatistic] = {
            arm.arm_id: ArmStatistic(arm_id=arm.arm_id) for arm in registry.all_arms()
        }
        self._decisions: dict[int, Decision] = {}
        self._pending: dict[int, PredictionSet] = {}
        self._cumulative_regret = 0.0
        self._eliminations: list[EliminationEvent] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def clock(self) -> float:
        return self._clock

    @property
    def cumulative_regret(self) -> float:
        return self._cumulative_regret

    @property
    def elimination_events(self) -> list[EliminationEvent]:
        return list(self._eliminations)

    def active_arms(self) -> list[str]:
        return self.registry.get_active_arms()

    def statistics(self) -> dict[str, ArmStatistic]:
        """Snapshot of every arm's statistic (ArmStatistic is immutable)."""
        with self._lock:
            return dict(self._stats)

    def arm_statistic(self, arm_id: str) -> ArmStatistic:
        with self._lock:
            return self._statistic(arm_id)

    def get_decision(self, sequence: int) -> Decision:
        try:
            return self._decisions[sequence]
        except KeyError:
            raise UnknownDecisionError("No decision for sequence", sequence) from None

    def pending_decisions(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    # ------------------------------------------------------------------
    # Decide
    # ------------------------------------------------------------------

    def decide(self, context: Context, predictions: PredictionSet) -> str:
        """Choose an arm for a context.

        Validation happens before any state changes, so a rejected context
        leaves the active set and statistics untouched.

        Returns:
            The chosen arm id.

        Raises:
            InvalidPredictionError: NaN/out-of-range/missing predictions.
            UnknownArmError: predictions for an unregistered arm.
            DuplicateDecisionError: sequence already decided.
            InvalidTimestampError: context timestamp is NaN or infinite.
            NonMonotonicTimeError: context timestamp before the clock.
            AllArmsEliminatedError: no active arm.
        """
        with self._lock:
            seq = context.sequence
            if predictions.sequence != seq:
                raise InvalidPredictionError(
                    f"Prediction set belongs to sequence {predictions.sequence}", seq
                )
            if seq in self._decisions:
                raise DuplicateDecisionError("Decision already exists", seq)
            if not math.isfinite(context.timestamp):
                raise InvalidTimestampError(f"Context time must be finite, got {context.timestamp}", seq)
            if context.timestamp < self._clock:
                raise NonMonotonicTimeError(
                    f"Context time {context.timestamp} is before engine clock {self._clock}", seq
                )

            active = self.registry.get_active_arms()
            if not active:
                raise AllArmsEliminatedError("No active arms", seq)

            self._validate_predictions(seq, predictions, active)

            self._clock = context.timestamp
            if len(active) == 1:
                arm_id = active[0]
            else:
                arm_id = self._select(active)

            decision = Decision(
                sequence=seq,
                context=context,
                arm_id=arm_id,
                prediction=float(predictions.get(arm_id)),
                timestamp=context.timestamp,
            )
            self._decisions[seq] = decision
            self._pending[seq] = predictions
            self.ledger.record_decision(decision)

            logger.debug(f"Decision {seq}: arm={arm_id} p={decision.prediction:.4f}")
            return arm_id

    def _validate_predictions(
        self,
        seq: int,
        predictions: PredictionSet,
        active: list[str],
    ) -> None:
        for arm_id in predictions.arm_ids():
            if arm_id not in self.registry:
                raise UnknownArmError(arm_id, seq)

        bad = predictions.invalid_scores()
        if bad:
            raise InvalidPredictionError(f"Invalid predictions: {bad}", seq)

        missing = [arm_id for arm_id in active if predictions.get(arm_id) is None]
        if missing:
            raise InvalidPredictionError(f"Missing predictions for active arms: {missing}", seq)

    def _select(self, active: list[str]) -> str:
        scale = self.config.exploration_scale
        return min(
            active,
            key=lambda arm_id: (self._statistic(arm_id).exploration_index(scale), arm_id),
        )

    def _statistic(self, arm_id: str) -> ArmStatistic:
        stat = self._stats.get(arm_id)
        if stat is None:
            # Arm registered after the engine was built
            self.registry.get(arm_id)
            stat = self._stats[arm_id] = ArmStatistic(arm_id=arm_id)
        return stat

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def ingest_feedback(
        self,
        decision_seq: int,
        outcome: int,
        arrival_time: float | None = None,
    ) -> DecisionTraceRecord:
        """Apply a matured outcome to the decision's arm.

        Returns:
            The appended trace record.

        Raises:
            UnknownDecisionError: no pending decision for the sequence.
            InvalidOutcomeError: outcome is not 0/1.
            InvalidTimestampError: arrival time is NaN or infinite.
            AllArmsEliminatedError: elimination would empty the active set.
        """
        with self._lock:
            if decision_seq not in self._pending:
                raise UnknownDecisionError("No pending decision", decision_seq)
            outcome = reward.check_outcome(outcome)
            if arrival_time is not None and not math.isfinite(arrival_time):
                raise InvalidTimestampError(f"Arrival time must be finite, got {arrival_time}", decision_seq)

            decision = self._decisions[decision_seq]
            predictions = self._pending.pop(decision_seq)
            resolved_time = decision.timestamp if arrival_time is None else max(arrival_time, decision.timestamp)
            self._clock = max(self._clock, resolved_time)

            cost = self.registry.cost(decision.arm_id)
            realized = reward.evaluate(outcome, decision.prediction, cost, self.config)

            stat = self._statistic(decision.arm_id)
            self._stats[decision.arm_id] = stat.updated(
                reward.tracked_loss(realized, self.config),
                self.config.delta,
                self.config.bound_width,
            )

            best_arm_id, best_utility = self._best_in_hindsight(outcome, predictions)
            regret = max(0.0, best_utility - realized.utility)
            self._cumulative_regret += regret

            self._check_elimination(decision_seq, resolved_time)

            record = DecisionTraceRecord(
                sequence=decision_seq,
                decision_time=decision.timestamp,
                resolved_time=resolved_time,
                arm_id=decision.arm_id,
                prediction=decision.prediction,
                arm_cost=cost,
                censored=False,
                outcome=outcome,
                predictive_loss=realized.predictive_loss,
                safety_penalty=realized.safety_penalty,
                utility=realized.utility,
                best_arm_id=best_arm_id,
                best_utility=best_utility,
                regret=regret,
                cumulative_regret=self._cumulative_regret,
                subgroups=decision.context.subgroups,
            )
            self.ledger.record(record)
            return record

    def censor(self, decision_seq: int, time: float | None = None) -> DecisionTraceRecord:
        """Resolve a decision whose outcome never arrived.

        Censored decisions stay in the trace but never update statistics.
        """
        with self._lock:
            if decision_seq not in self._pending:
                raise UnknownDecisionError("No pending decision", decision_seq)
            if time is not None and not math.isfinite(time):
                raise InvalidTimestampError(f"Censoring time must be finite, got {time}", decision_seq)
            decision = self._decisions[decision_seq]
            del self._pending[decision_seq]

            resolved_time = decision.timestamp if time is None else max(time, decision.timestamp)
            record = DecisionTraceRecord(
                sequence=decision_seq,
                decision_time=decision.timestamp,
                resolved_time=resolved_time,
                arm_id=decision.arm_id,
                prediction=decision.prediction,
                arm_cost=self.registry.cost(decision.arm_id),
                censored=True,
                regret=0.0,
                cumulative_regret=self._cumulative_regret,
                subgroups=decision.context.subgroups,
            )
            self.ledger.record(record)
            logger.info(f"Decision {decision_seq} censored (arm={decision.arm_id})")
            return record

    def _best_in_hindsight(self, outcome: int, predictions: PredictionSet) -> tuple[str, float]:
        best_arm_id = ""
        best_utility = -math.inf
        for arm_id, prediction in predictions.scores:
            value = reward.evaluate(
                outcome,
                prediction,
                self.registry.cost(arm_id),
                self.config,
            ).utility
            # scores are sorted by arm id, so strict > keeps the lowest id on ties
            if value > best_utility:
                best_arm_id, best_utility = arm_id, value
        return best_arm_id, best_utility

    # ------------------------------------------------------------------
    # Elimination
    # ------------------------------------------------------------------

    def _check_elimination(self, sequence: int, time: float) -> list[EliminationEvent]:
        active = self.registry.get_active_arms()
        if len(active) < 2:
            return []
        snapshot = {arm_id: self._statistic(arm_id) for arm_id in active}

        dominated: dict[str, ArmStatistic] = {}
        for j in active:
            dominators = [
                snapshot[i]
                for i in active
                if i != j and snapshot[i].separates_below(snapshot[j])
            ]
            if dominators:
                dominated[j] = min(dominators, key=lambda s: (s.upper_bound, s.arm_id))

        if not dominated:
            return []
        if len(dominated) == len(active):
            raise AllArmsEliminatedError(
                f"Elimination would remove every active arm: {sorted(dominated)}", sequence
            )

        events = []
        for arm_id in active:
            if arm_id not in dominated:
                continue
            winner = dominated[arm_id]
            self.registry.eliminate(arm_id)
            event = EliminationEvent(
                arm_id=arm_id,
                timestamp=time,
                sequence=sequence,
                dominated_by=winner.arm_id,
                dominating_upper_bound=winner.upper_bound,
                eliminated_lower_bound=snapshot[arm_id].lower_bound,
            )
            self._eliminations.append(event)
            self.ledger.record_elimination(event)
            events.append(event)
            logger.info(
                f"Eliminated {arm_id} at sequence {sequence}: "
                f"UCB({winner.arm_id})={winner.upper_bound:.4f} < "
                f"LCB({arm_id})={snapshot[arm_id].lower_bound:.4f}"
            )
        return events
