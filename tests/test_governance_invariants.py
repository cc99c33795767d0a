"""Tests for Governance Kernel Invariants.

These tests verify the non-negotiable invariants:
1. Exactly one Decision per context sequence number
2. Elimination is permanent and never empties the active set
3. Feedback is never seen before its arrival time
4. Censored decisions never update arm statistics
5. Configuration is immutable and injected
6. Every decision and resolution is logged
7. Malformed records produce evidence and are skipped
"""

import dataclasses
import json
import logging
import math
import random
import tempfile
from pathlib import Path

import pytest

from governance_kernel import (
    AllArmsEliminatedError,
    ArmRegistry,
    ArmStatistic,
    ConfigurationError,
    Context,
    DelayedFeedbackQueue,
    DuplicateArmError,
    DuplicateDecisionError,
    DuplicateFeedbackError,
    FeedbackEvent,
    FeedbackOrderError,
    GovernanceConfig,
    InvalidOutcomeError,
    InvalidPredictionError,
    InvalidTimestampError,
    NonMonotonicTimeError,
    PolicyEngine,
    PredictionSet,
    SkippedContext,
    StreamItem,
    TraceLedger,
    UnknownArmError,
    UnknownDecisionError,
    create_registry,
    hoeffding_half_width,
    run_simulation,
)
from governance_kernel import reward
from governance_upstream import synthetic_stream


def make_registry(costs):
    registry = ArmRegistry()
    for arm_id, cost in costs.items():
        registry.register(arm_id, cost)
    return registry


def make_item(seq, timestamp, scores, outcome=None, delay=0.0, subgroups=None):
    feedback = None
    if outcome is not None:
        feedback = FeedbackEvent(sequence=seq, outcome=outcome, arrival_time=timestamp + delay)
    return StreamItem(
        context=Context.create(seq, timestamp, subgroups=subgroups),
        predictions=PredictionSet.create(seq, scores),
        feedback=feedback,
    )


def scenario_config(**overrides):
    # Synthetic losses stay below 1 and never trip the safety penalty
    values = {
        "min_delay_hours": 0.0,
        "max_delay_hours": 0.0,
        "max_log_loss": 1.0,
        "lambda_safety": 0.0,
    }
    values.update(overrides)
    return GovernanceConfig(**values)


class TestArmRegistry:
    """Tests for the arm catalog and its lifecycle."""

    def test_active_arms_in_insertion_order(self):
        """Active arms are listed in registration order."""
        registry = make_registry({"xgb": 0.2, "glm": 0.1, "rf": 0.15})
        assert registry.get_active_arms() == ["xgb", "glm", "rf"]

    def test_duplicate_registration_rejected(self):
        """Registering an arm id twice is an error."""
        registry = make_registry({"glm": 0.1})
        with pytest.raises(DuplicateArmError):
            registry.register("glm", 0.2)

    def test_invalid_cost_rejected(self):
        """Costs must be finite and non-negative."""
        registry = ArmRegistry()
        with pytest.raises(ConfigurationError):
            registry.register("glm", -0.1)
        with pytest.raises(ConfigurationError):
            registry.register("rf", math.nan)

    def test_elimination_is_idempotent(self):
        """Eliminating an arm twice transitions it only once."""
        registry = make_registry({"glm": 0.1, "rf": 0.15})
        assert registry.eliminate("rf") is True
        assert registry.eliminate("rf") is False
        assert registry.get_active_arms() == ["glm"]
        assert not registry.is_active("rf")
        assert "rf" in registry

    def test_eliminate_unknown_arm(self):
        """Unknown arm ids are rejected."""
        registry = make_registry({"glm": 0.1})
        with pytest.raises(UnknownArmError):
            registry.eliminate("svm")

    def test_default_registry(self):
        """The default catalog holds the three evaluation models."""
        registry = create_registry()
        assert registry.get_active_arms() == ["glm", "rf", "xgb"]
        assert registry.cost("glm") == pytest.approx(0.10)
        assert registry.get("xgb").model_ref == "pred_xgb"


class TestRewardFunction:
    """Tests for the pure utility function."""

    def test_log_loss(self):
        """Log loss is the binary cross-entropy."""
        assert reward.log_loss(1, 0.8) == pytest.approx(-math.log(0.8))
        assert reward.log_loss(0, 0.8) == pytest.approx(-math.log(0.2))

    def test_log_loss_is_clipped(self):
        """Certain wrong predictions give a finite loss."""
        assert reward.log_loss(1, 0.0) == pytest.approx(-math.log(1e-6))
        assert math.isfinite(reward.log_loss(0, 1.0))

    def test_safety_penalty_only_for_missed_cases(self):
        """The penalty applies to positive outcomes scored below threshold."""
        assert reward.safety_penalty(1, 0.3) == 1.0
        assert reward.safety_penalty(1, 0.7) == 0.0
        assert reward.safety_penalty(0, 0.3) == 0.0
        assert reward.safety_penalty(1, 0.3, threshold=0.2) == 0.0
        assert reward.safety_penalty(1, 0.3, penalty=2.5) == 2.5

    def test_utility_components(self):
        """utility = -loss - lambda_cost * cost - lambda_safety * penalty."""
        value = reward.utility(1, 0.3, 0.1, lambda_cost=1.0, lambda_safety=2.0)
        assert value == pytest.approx(math.log(0.3) - 0.1 - 2.0)

    def test_utility_deterministic(self):
        """Same inputs, same utility."""
        values = {reward.utility(0, 0.42, 0.15, 0.5, 1.0) for _ in range(10)}
        assert len(values) == 1

    def test_evaluate_uses_injected_config(self):
        """evaluate() reads its weights from the configuration."""
        config = GovernanceConfig(lambda_cost=2.0, lambda_safety=0.0)
        result = reward.evaluate(1, 0.3, 0.1, config)
        assert result.safety_penalty == 1.0
        assert result.utility == pytest.approx(math.log(0.3) - 0.2)
        assert result.governance_loss == pytest.approx(-result.utility)

    def test_invalid_inputs(self):
        """Outcomes must be 0/1 and predictions probabilities."""
        with pytest.raises(InvalidOutcomeError):
            reward.log_loss(2, 0.5)
        with pytest.raises(InvalidPredictionError):
            reward.log_loss(1, 1.5)
        with pytest.raises(InvalidPredictionError):
            reward.log_loss(1, math.nan)

    def test_tracked_loss_caps_predictive_part(self):
        """Only the log loss is capped; cost and safety terms are kept."""
        config = GovernanceConfig()
        result = reward.evaluate(1, 0.01, 0.1, config)
        assert result.predictive_loss == pytest.approx(-math.log(0.01))
        assert reward.tracked_loss(result, config) == pytest.approx(2.0 + 0.1 + 1.0)

        sharp = reward.evaluate(1, 0.9, 0.1, config)
        assert reward.tracked_loss(sharp, config) == pytest.approx(sharp.governance_loss)


class TestConfidenceBound:
    """Tests for per-arm statistics."""

    def test_half_width_infinite_without_samples(self):
        assert hoeffding_half_width(0, 0.05) == math.inf

    def test_half_width_value(self):
        """Hoeffding half-width at n = 100."""
        expected = math.sqrt(math.log(2 / 0.05) / 200)
        assert hoeffding_half_width(100, 0.05) == pytest.approx(expected)
        assert hoeffding_half_width(100, 0.05, loss_range=2.0) == pytest.approx(2 * expected)

    def test_half_width_non_increasing(self):
        """More samples never widen the interval."""
        widths = [hoeffding_half_width(n, 0.05) for n in range(1, 200)]
        assert all(a >= b for a, b in zip(widths, widths[1:]))

    def test_running_mean(self):
        """updated() folds losses into the mean and returns a new instance."""
        stat = ArmStatistic(arm_id="glm")
        for loss in (0.2, 0.4, 0.6):
            stat = stat.updated(loss, 0.05)
        assert stat.count == 3
        assert stat.mean_loss == pytest.approx(0.4)
        assert stat.lower_bound < stat.mean_loss < stat.upper_bound

    def test_unplayed_arm_never_separates(self):
        """An arm without samples cannot dominate or be dominated."""
        played = ArmStatistic(arm_id="a")
        for _ in range(1000):
            played = played.updated(0.1, 0.05)
        unplayed = ArmStatistic(arm_id="b")
        assert not played.separates_below(unplayed)
        assert not unplayed.separates_below(played)


class TestFeedbackQueue:
    """Tests for delayed feedback ordering and censoring."""

    def test_release_order(self):
        """Releases are ordered by (arrival time, sequence)."""
        queue = DelayedFeedbackQueue(max_wait=100.0)
        for seq in (1, 2, 3):
            queue.track(seq, 0.0)
        queue.enqueue(1, 5.0)
        queue.enqueue(3, 3.0)
        queue.enqueue(2, 3.0)
        assert queue.advance_to(10.0) == [2, 3, 1]

    def test_feedback_not_released_early(self):
        """Feedback is never visible before its arrival time."""
        queue = DelayedFeedbackQueue(max_wait=100.0)
        queue.track(1, 0.0)
        queue.enqueue(1, 5.0)
        assert queue.advance_to(4.999) == []
        assert queue.pending_count == 1
        assert queue.advance_to(5.0) == [1]
        assert queue.pending_count == 0

    def test_time_cannot_move_backwards(self):
        queue = DelayedFeedbackQueue()
        queue.advance_to(5.0)
        with pytest.raises(NonMonotonicTimeError):
            queue.advance_to(4.0)

    def test_censoring_after_max_wait(self):
        """Decisions without feedback are censored at their deadline."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        queue.track(1, 0.0)
        assert queue.advance_to(9.0) == []
        assert queue.drain_censored() == []
        assert queue.advance_to(10.0) == []
        assert queue.drain_censored() == [1]
        assert queue.drain_censored() == []
        assert queue.is_censored(1)

    def test_late_feedback_is_censored(self):
        """Feedback scheduled after the deadline is never released."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        queue.track(1, 0.0)
        queue.enqueue(1, 15.0)
        assert queue.advance_to(20.0) == []
        assert queue.drain_censored() == [1]

    def test_resolved_exactly_once(self):
        """A released decision is never censored or released again."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        queue.track(1, 0.0)
        queue.enqueue(1, 2.0)
        assert queue.advance_to(2.0) == [1]
        assert queue.advance_to(100.0) == []
        assert queue.drain_censored() == []
        assert queue.final_deadline() is None

    def test_enqueue_errors(self):
        """Malformed feedback is rejected."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        queue.track(1, 5.0)
        with pytest.raises(UnknownDecisionError):
            queue.enqueue(2, 6.0)
        with pytest.raises(FeedbackOrderError):
            queue.enqueue(1, 4.0)
        queue.enqueue(1, 6.0)
        with pytest.raises(DuplicateFeedbackError):
            queue.enqueue(1, 7.0)
        with pytest.raises(DuplicateDecisionError):
            queue.track(1, 5.0)

    def test_feedback_after_censoring_rejected(self):
        queue = DelayedFeedbackQueue(max_wait=1.0)
        queue.track(1, 0.0)
        queue.advance_to(2.0)
        with pytest.raises(UnknownDecisionError):
            queue.enqueue(1, 3.0)

    def test_advance_to_same_time_is_idempotent(self):
        """Advancing twice to the same time releases nothing new."""
        queue = DelayedFeedbackQueue(max_wait=100.0)
        queue.track(1, 0.0)
        queue.enqueue(1, 5.0)
        assert queue.advance_to(5.0) == [1]
        assert queue.advance_to(5.0) == []

        # Feedback scheduled at or before the clock is picked up next advance
        queue.track(2, 4.0)
        queue.enqueue(2, 4.5)
        assert queue.advance_to(5.0) == [2]
        assert queue.advance_to(5.0) == []

    def test_non_finite_times_rejected(self):
        """NaN and infinite times never reach the heaps or the clock."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        with pytest.raises(InvalidTimestampError):
            queue.track(1, math.nan)
        assert queue.pending_count == 0

        queue.track(1, 0.0)
        with pytest.raises(InvalidTimestampError):
            queue.enqueue(1, math.nan)
        with pytest.raises(InvalidTimestampError):
            queue.enqueue(1, math.inf)
        queue.enqueue(1, 2.0)

        queue.advance_to(1.0)
        with pytest.raises(InvalidTimestampError):
            queue.advance_to(math.nan)
        assert queue.clock == 1.0
        assert queue.advance_to(2.0) == [1]

        # Monotonicity still holds after a rejected time
        with pytest.raises(NonMonotonicTimeError):
            queue.advance_to(0.5)

    def test_resolved_decisions_are_pruned(self):
        """Bookkeeping holds only pending decisions."""
        queue = DelayedFeedbackQueue(max_wait=10.0)
        for seq in range(1, 101):
            queue.track(seq, float(seq))
            if seq % 2 == 0:
                queue.enqueue(seq, seq + 1.0)
        queue.advance_to(200.0)

        assert len(queue.drain_censored()) == 50
        assert queue.pending_count == 0
        assert queue._decision_times == {}
        assert queue._arrival_times == {}
        assert queue.final_deadline() is None
        assert queue.is_censored(1)
        assert not queue.is_censored(2)
        with pytest.raises(UnknownDecisionError):
            queue.enqueue(1, 250.0)
        with pytest.raises(UnknownDecisionError):
            queue.enqueue(2, 250.0)


class TestPolicyEngine:
    """Tests for selection, feedback and elimination."""

    SCORES = {"glm": 0.7, "rf": 0.6, "xgb": 0.8}

    def decide(self, engine, seq, timestamp=None, scores=None):
        timestamp = float(seq) if timestamp is None else timestamp
        return engine.decide(
            Context.create(seq, timestamp),
            PredictionSet.create(seq, scores or self.SCORES),
        )

    def test_one_decision_per_sequence(self):
        """Invariant: exactly one Decision per sequence number."""
        engine = PolicyEngine(create_registry())
        self.decide(engine, 1)
        with pytest.raises(DuplicateDecisionError):
            self.decide(engine, 1)
        assert engine.ledger.decision_count == 1

    def test_unplayed_arms_tried_in_id_order(self):
        """Every arm is played once, ties broken by lowest arm id."""
        engine = PolicyEngine(create_registry())
        chosen = []
        for seq in (1, 2, 3):
            chosen.append(self.decide(engine, seq))
            engine.ingest_feedback(seq, 1, float(seq))
        assert chosen == ["glm", "rf", "xgb"]

    def test_single_active_arm_always_selected(self):
        """Invariant: the only remaining arm is always chosen."""
        engine = PolicyEngine(make_registry({"only": 0.1}))
        for seq in range(1, 20):
            assert self.decide(engine, seq, scores={"only": 0.5}) == "only"
            engine.ingest_feedback(seq, seq % 2, float(seq))
        assert engine.active_arms() == ["only"]

    def test_invalid_prediction_leaves_state_untouched(self):
        """A rejected context changes nothing."""
        engine = PolicyEngine(create_registry())
        with pytest.raises(InvalidPredictionError):
            self.decide(engine, 1, scores={"glm": 0.7, "rf": 1.5, "xgb": 0.8})
        with pytest.raises(InvalidPredictionError):
            self.decide(engine, 2, scores={"glm": 0.7, "rf": 0.5})
        with pytest.raises(UnknownArmError):
            self.decide(engine, 3, scores={**self.SCORES, "svm": 0.5})
        assert engine.pending_decisions() == []
        assert engine.ledger.decision_count == 0
        assert engine.clock == -math.inf
        # The same sequence can be decided once it is well-formed
        assert self.decide(engine, 1) == "glm"

    def test_context_time_cannot_move_backwards(self):
        engine = PolicyEngine(create_registry())
        self.decide(engine, 1, timestamp=10.0)
        with pytest.raises(NonMonotonicTimeError) as excinfo:
            self.decide(engine, 2, timestamp=5.0)
        assert excinfo.value.sequence == 2

    @pytest.mark.parametrize("timestamp", [math.nan, math.inf, -math.inf])
    def test_non_finite_context_time_rejected(self, timestamp):
        """A NaN or infinite time is a record error and leaves the clock alone."""
        engine = PolicyEngine(create_registry())
        self.decide(engine, 1, timestamp=10.0)
        with pytest.raises(InvalidTimestampError) as excinfo:
            self.decide(engine, 2, timestamp=timestamp)
        assert excinfo.value.sequence == 2
        assert engine.clock == 10.0
        assert engine.ledger.decision_count == 1
        # Monotonicity is still enforced afterwards
        with pytest.raises(NonMonotonicTimeError):
            self.decide(engine, 3, timestamp=5.0)
        with pytest.raises(InvalidTimestampError):
            engine.ingest_feedback(1, 1, math.nan)
        assert engine.ingest_feedback(1, 1, 11.0).resolved_time == 11.0

    def test_feedback_applied_once(self):
        """Feedback for an unknown or resolved decision is rejected."""
        engine = PolicyEngine(create_registry())
        with pytest.raises(UnknownDecisionError):
            engine.ingest_feedback(1, 1)
        self.decide(engine, 1)
        engine.ingest_feedback(1, 1, 2.0)
        with pytest.raises(UnknownDecisionError):
            engine.ingest_feedback(1, 1, 3.0)
        assert engine.arm_statistic("glm").count == 1

    def test_censored_decision_does_not_update_statistics(self):
        """Invariant: censoring never touches arm statistics."""
        engine = PolicyEngine(create_registry())
        self.decide(engine, 1)
        record = engine.censor(1, 73.0)
        assert record.censored
        assert record.outcome is None
        assert record.regret == 0.0
        assert record.resolved_time == 73.0
        assert engine.arm_statistic("glm").count == 0
        assert engine.pending_decisions() == []

    def test_regret_against_best_arm_in_hindsight(self):
        """Regret is the utility gap to the best arm for the outcome."""
        config = GovernanceConfig(lambda_cost=0.0)
        engine = PolicyEngine(make_registry({"a": 0.0, "b": 0.0}), config)
        scores = {"a": 0.9, "b": 0.6}

        assert self.decide(engine, 1, scores=scores) == "a"
        first = engine.ingest_feedback(1, 1, 1.0)
        assert first.best_arm_id == "a"
        assert first.regret == 0.0

        assert self.decide(engine, 2, scores=scores) == "b"
        second = engine.ingest_feedback(2, 1, 2.0)
        assert second.best_arm_id == "a"
        assert second.regret == pytest.approx(math.log(1.5))
        assert second.cumulative_regret == pytest.approx(math.log(1.5))
        assert engine.cumulative_regret == pytest.approx(math.log(1.5))

    def test_elimination_is_permanent(self):
        """A confidently worse arm is eliminated and never chosen again."""
        engine = PolicyEngine(make_registry({"good": 0.0, "bad": 0.0}))
        good = {"good": 0.9, "bad": 0.1}
        eliminated_at = None
        for seq in range(1, 400):
            arm_id = self.decide(engine, seq, scores=good)
            if eliminated_at is not None:
                assert arm_id == "good"
            engine.ingest_feedback(seq, 1, float(seq))
            if eliminated_at is None and engine.elimination_events:
                eliminated_at = seq
        assert eliminated_at is not None
        assert engine.active_arms() == ["good"]
        [event] = engine.elimination_events
        assert event.arm_id == "bad"
        assert event.dominated_by == "good"
        assert event.dominating_upper_bound < event.eliminated_lower_bound

    def test_better_arm_survives_early_burst_of_positives(self):
        """A run of positives up front does not eliminate the better arm.

        Arm a is sharp on negatives but scores positives at 0.45, so each
        early positive costs it log loss plus the safety penalty. Arm b is
        a constant 0.5. At 20% prevalence a has the lower mean loss
        (about 0.53 against 0.79).
        """
        engine = PolicyEngine(make_registry({"a": 0.1, "b": 0.1}))
        rng = random.Random(5)
        for seq in range(1, 601):
            outcome = 1 if seq <= 40 else int(rng.random() < 0.2)
            scores = {"a": 0.45 if outcome else 0.085, "b": 0.5}
            self.decide(engine, seq, scores=scores)
            engine.ingest_feedback(seq, outcome, float(seq))

        assert "a" in engine.active_arms()
        assert all(e.arm_id != "a" for e in engine.elimination_events)
        assert engine.arm_statistic("a").mean_loss < engine.arm_statistic("b").mean_loss

    def test_statistics_snapshot_is_immutable(self):
        engine = PolicyEngine(create_registry())
        snapshot = engine.statistics()
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot["glm"].count = 5


class TestSimulation:
    """End-to-end tests of the single-timeline driver."""

    ARM_LOSSES = {"a": 0.1, "b": 0.3, "c": 0.5}
    ARM_COSTS = {"a": 0.10, "b": 0.15, "c": 0.20}

    def run_scenario(self, n=2000, ledger=None, **config):
        config = scenario_config(**config)
        items = synthetic_stream(n, self.ARM_LOSSES, config)
        return run_simulation(items, make_registry(self.ARM_COSTS), config, ledger)

    def test_three_arm_scenario_converges(self):
        """The clearly better arm survives and dominates late decisions."""
        result = self.run_scenario()

        assert result.decisions == 2000
        assert result.active_arms == ["a"]
        assert {e.arm_id for e in result.eliminations} == {"b", "c"}
        assert all(e.dominated_by == "a" for e in result.eliminations)

        late = [r for r in result.trace if r.sequence > 1500]
        share = sum(1 for r in late if r.arm_id == "a") / len(late)
        assert share >= 0.95

    def test_eliminated_arm_never_selected_again(self):
        """Invariant: elimination is permanent."""
        result = self.run_scenario()
        for event in result.eliminations:
            later = [r for r in result.trace if r.arm_id == event.arm_id and r.sequence > event.sequence]
            assert later == []

    def test_cumulative_regret_non_decreasing_and_bounded(self):
        """Cumulative regret never decreases and stays sub-linear here."""
        result = self.run_scenario()
        values = [r.cumulative_regret for r in result.trace]
        assert all(b >= a for a, b in zip(values, values[1:]))
        assert all(r.regret >= 0 for r in result.trace)
        assert result.cumulative_regret == pytest.approx(sum(r.regret for r in result.trace))
        # Worst case would be 0.5 per decision
        assert result.cumulative_regret < 0.05 * result.decisions

    def test_every_decision_resolved(self):
        """Each decision appears exactly once in the trace."""
        config = {"min_delay_hours": 0.0, "max_delay_hours": 48.0, "max_wait_hours": 24.0}
        result = self.run_scenario(n=300, **config)
        sequences = [r.sequence for r in result.trace]
        assert sorted(sequences) == list(range(1, 301))
        assert result.resolved + result.censored == result.decisions
        # Delays beyond the wait window are censored
        assert result.censored > 0

    def test_feedback_resolution_order(self):
        """Matured feedback is applied oldest first."""
        config = scenario_config(max_delay_hours=10.0)
        items = synthetic_stream(200, self.ARM_LOSSES, config)
        result = run_simulation(items, make_registry(self.ARM_COSTS), config)
        times = [r.resolved_time for r in result.trace if not r.censored]
        assert times == sorted(times)

    def test_censoring_and_release_interleaved_by_time(self):
        """A deadline that passes before a release is traced first."""
        items = [
            make_item(1, 0.0, {"a": 0.7}),
            make_item(2, 1.0, {"a": 0.7}, outcome=1, delay=5.0),
            make_item(3, 10.0, {"a": 0.7}, outcome=0),
        ]
        config = scenario_config(max_wait_hours=5.0)
        result = run_simulation(items, make_registry({"a": 0.1}), config)
        assert [(r.sequence, r.resolved_time, r.censored) for r in result.trace] == [
            (1, 5.0, True),
            (2, 6.0, False),
            (3, 10.0, False),
        ]

        config = scenario_config(max_delay_hours=48.0, max_wait_hours=24.0)
        items = synthetic_stream(300, self.ARM_LOSSES, config)
        result = run_simulation(items, make_registry(self.ARM_COSTS), config)
        assert result.censored > 0
        times = [r.resolved_time for r in result.trace]
        assert times == sorted(times)

    def test_all_outcomes_censored(self):
        """Without feedback nothing is learned and nothing is eliminated."""
        config = scenario_config()
        items = synthetic_stream(100, self.ARM_LOSSES, config, censor_rate=1.0)
        result = run_simulation(items, make_registry(self.ARM_COSTS), config)
        assert result.censored == 100
        assert result.resolved == 0
        assert result.eliminations == []
        assert result.cumulative_regret == 0.0
        assert result.active_arms == ["a", "b", "c"]

    def test_single_arm_run(self):
        """A one-arm registry routes every decision to that arm."""
        config = scenario_config()
        items = synthetic_stream(50, {"only": 0.2}, config)
        result = run_simulation(items, make_registry({"only": 0.1}), config)
        assert {r.arm_id for r in result.trace} == {"only"}
        assert result.eliminations == []

    def test_malformed_prediction_skipped(self, caplog):
        """Invariant: a malformed record is logged with its sequence and skipped."""
        caplog.set_level(logging.ERROR)
        items = [
            make_item(1, 0.0, {"a": 0.7, "b": 0.6}, outcome=1),
            make_item(2, 1.0, {"a": 0.7, "b": 1.5}, outcome=1),
            make_item(3, 2.0, {"a": 0.7, "b": 0.6}, outcome=0),
        ]
        ledger = TraceLedger()
        result = run_simulation(items, make_registry({"a": 0.1, "b": 0.1}), scenario_config(), ledger)

        assert result.decisions == 2
        assert result.skipped == 1
        [skipped] = ledger.skipped
        assert skipped.sequence == 2
        assert skipped.error_type == "InvalidPredictionError"
        assert "Skipping record 2" in caplog.text
        assert [r.sequence for r in result.trace] == [1, 3]

    def test_invalid_outcome_skipped_and_censored(self):
        """A bad outcome label is skipped; its decision is censored."""
        items = [
            make_item(1, 0.0, {"a": 0.7}, outcome=2),
            make_item(2, 1.0, {"a": 0.7}, outcome=1),
        ]
        ledger = TraceLedger()
        result = run_simulation(items, make_registry({"a": 0.1}), scenario_config(), ledger)
        assert result.decisions == 2
        assert [s.error_type for s in ledger.skipped] == ["InvalidOutcomeError"]
        censored = [r.sequence for r in result.trace if r.censored]
        assert censored == [1]

    def test_decreasing_time_aborts(self):
        """Structural errors abort the run with the triggering sequence."""
        items = [
            make_item(1, 5.0, {"a": 0.7}, outcome=1),
            make_item(2, 3.0, {"a": 0.7}, outcome=1),
        ]
        with pytest.raises(NonMonotonicTimeError) as excinfo:
            run_simulation(items, make_registry({"a": 0.1}), scenario_config())
        assert excinfo.value.sequence == 2

    def test_replay_is_deterministic(self):
        """Same inputs and seed produce a byte-identical ledger."""
        with tempfile.TemporaryDirectory() as tmpdir:
            paths = [Path(tmpdir) / "run1.jsonl", Path(tmpdir) / "run2.jsonl"]
            results = []
            for path in paths:
                config = GovernanceConfig(seed=7)
                items = synthetic_stream(300, self.ARM_LOSSES, config, noise=0.05)
                results.append(run_simulation(
                    items, make_registry(self.ARM_COSTS), config, TraceLedger(path)
                ))
            assert paths[0].read_bytes() == paths[1].read_bytes()
            assert results[0].trace == results[1].trace


class TestGovernanceConfig:
    """Tests for configuration validation."""

    def test_defaults(self):
        config = GovernanceConfig()
        assert config.delta == 0.05
        assert config.max_wait_hours == 72.0
        assert config.seed == 42

    def test_bound_width_covers_tracked_loss(self):
        """The default width spans the capped log loss plus the safety penalty."""
        assert GovernanceConfig().bound_width == pytest.approx(3.0)
        assert GovernanceConfig(lambda_safety=0.5).bound_width == pytest.approx(2.5)
        assert GovernanceConfig(loss_range=4.0).bound_width == 4.0
        assert GovernanceConfig(max_log_loss=1.0, lambda_safety=0.0).bound_width == 1.0

    def test_config_is_frozen(self):
        """Invariant: configuration cannot be modified at runtime."""
        config = GovernanceConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.delta = 0.1

    @pytest.mark.parametrize("overrides", [
        {"delta": 0.0},
        {"delta": 1.0},
        {"lambda_cost": -1.0},
        {"lambda_safety": -0.5},
        {"min_delay_hours": 10.0, "max_delay_hours": 5.0},
        {"max_wait_hours": 0.0},
        {"exploration_scale": 0.5},
        {"loss_range": math.nan},
        {"loss_range": 1.0},
        {"max_log_loss": 0.0},
        {"seed": 1.5},
    ])
    def test_invalid_values_rejected(self, overrides):
        """Invalid weights and delays are fatal at construction."""
        with pytest.raises(ConfigurationError):
            GovernanceConfig(**overrides)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError):
            GovernanceConfig.from_dict({"delta": 0.1, "epsilon": 0.1})

    def test_json_file_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.json"
            path.write_text(json.dumps({"delta": 0.1, "seed": 3}))
            config = GovernanceConfig.from_json_file(path)
            assert config.delta == 0.1
            assert config.seed == 3
            assert GovernanceConfig.from_dict(config.to_dict()) == config


class TestTraceLedger:
    """Tests for the append-only decision trace."""

    def test_every_decision_and_resolution_logged(self):
        """Invariant: all decisions and resolutions are in the ledger."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.jsonl"
            config = scenario_config()
            items = synthetic_stream(50, {"a": 0.1, "b": 0.3}, config)
            run_simulation(items, make_registry({"a": 0.1, "b": 0.1}), config, TraceLedger(path))

            entries = TraceLedger.replay(path)
            types = [e.entry_type for e in entries]
            assert types.count("decision") == 50
            assert types.count("trace") == 50
            assert [e.entry_id for e in entries][:2] == ["e000000", "e000001"]

    def test_replay_rebuilds_trace(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.jsonl"
            ledger = TraceLedger(path)
            config = scenario_config()
            items = synthetic_stream(400, {"a": 0.1, "b": 0.6}, config)
            result = run_simulation(items, make_registry({"a": 0.1, "b": 0.1}), config, ledger)

            assert TraceLedger.load_trace(path) == result.trace
            assert TraceLedger.load_eliminations(path) == result.eliminations

    def test_reopened_ledger_continues_entry_ids(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.jsonl"
            engine = PolicyEngine(make_registry({"a": 0.1}), ledger=TraceLedger(path))
            engine.decide(Context.create(1, 0.0), PredictionSet.create(1, {"a": 0.5}))

            reopened = TraceLedger(path)
            entry = reopened.record_skip(SkippedContext(sequence=None, error_type="Test", reason="test"))
            assert entry.entry_id == "e000001"

    def test_summary_counts(self):
        ledger = TraceLedger()
        engine = PolicyEngine(make_registry({"a": 0.1}), ledger=ledger)
        for seq in (1, 2):
            engine.decide(Context.create(seq, float(seq)), PredictionSet.create(seq, {"a": 0.5}))
        engine.ingest_feedback(1, 1, 1.0)
        engine.censor(2, 80.0)
        summary = ledger.get_summary()
        assert summary["decisions"] == 2
        assert summary["resolved"] == 1
        assert summary["censored"] == 1
        assert summary["total_entries"] == 4


def test_all_arms_eliminated_is_structural():
    """Emptying the active set is never silently allowed."""
    assert issubclass(AllArmsEliminatedError, Exception)
    error = AllArmsEliminatedError("No active arms", 7)
    assert error.sequence == 7
    assert "sequence: 7" in str(error)
