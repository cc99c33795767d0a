"""Reward - Pure utility function.

The reward function is a PURE FUNCTION that:
- Accepts (outcome, prediction, arm cost, weights)
- Returns a scalar utility

CRITICAL INVARIANTS:
1. Deterministic - same inputs produce the same utility
2. Side-effect free - no state, no logging, no learning
3. Bounded - predictions are clipped to [eps, 1 - eps] before the log

    utility = -log_loss - lambda_cost * cost - lambda_safety * safety_penalty

The safety penalty is the audit-informed encoding point: it is non-zero
only for a missed high-severity outcome (outcome == 1 scored below the
safety threshold), and equals the configured false-negative penalty.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from .config import GovernanceConfig
from .errors import InvalidOutcomeError, InvalidPredictionError

DEFAULT_EPSILON = 1e-6


@dataclass(frozen=True)
class RewardBreakdown:
    """Components of one utility evaluation."""

    predictive_loss: float
    safety_penalty: float
    cost: float
    utility: float

    @property
    def governance_loss(self) -> float:
        """Loss tracked by the engine: the negated utility."""
        return -self.utility


def check_outcome(outcome: int) -> int:
    if isinstance(outcome, bool) or outcome not in (0, 1):
        raise InvalidOutcomeError(f"Outcome must be 0 or 1, got {outcome!r}")
    return int(outcome)


def check_prediction(prediction: float) -> float:
    if (
        not isinstance(prediction, (int, float))
        or isinstance(prediction, bool)
        or math.isnan(prediction)
        or not 0.0 <= prediction <= 1.0
    ):
        raise InvalidPredictionError(f"Prediction must be a probability in [0, 1], got {prediction!r}")
    return float(prediction)


def clip_probability(prediction: float, epsilon: float = DEFAULT_EPSILON) -> float:
    return min(max(prediction, epsilon), 1.0 - epsilon)


def log_loss(outcome: int, prediction: float, epsilon: float = DEFAULT_EPSILON) -> float:
    """Binary cross-entropy of one prediction, with clipping."""
    p = clip_probability(check_prediction(prediction), epsilon)
    y = check_outcome(outcome)
    return -(y * math.log(p) + (1 - y) * math.log(1.0 - p))


def safety_penalty(
    outcome: int,
    prediction: float,
    threshold: float = 0.5,
    penalty: float = 1.0,
) -> float:
    """Penalty for a missed high-severity outcome (false negative)."""
    if check_outcome(outcome) == 1 and check_prediction(prediction) < threshold:
        return penalty
    return 0.0


def utility(
    outcome: int,
    prediction: float,
    arm_cost: float,
    lambda_cost: float,
    lambda_safety: float,
    *,
    epsilon: float = DEFAULT_EPSILON,
    safety_threshold: float = 0.5,
    false_negative_penalty: float = 1.0,
) -> float:
    """Scalar utility of routing one decision to an arm."""
    loss = log_loss(outcome, prediction, epsilon)
    penalty = safety_penalty(outcome, prediction, safety_threshold, false_negative_penalty)
    return -loss - lambda_cost * arm_cost - lambda_safety * penalty


def evaluate(
    outcome: int,
    prediction: float,
    arm_cost: float,
    config: GovernanceConfig,
) -> RewardBreakdown:
    """Evaluate utility with the weights of an injected configuration."""
    loss = log_loss(outcome, prediction, config.clip_epsilon)
    penalty = safety_penalty(
        outcome,
        prediction,
        config.safety_threshold,
        config.false_negative_penalty,
    )
    value = -loss - config.lambda_cost * arm_cost - config.lambda_safety * penalty
    return RewardBreakdown(
        predictive_loss=loss,
        safety_penalty=penalty,
        cost=arm_cost,
        utility=value,
    )


def tracked_loss(breakdown: RewardBreakdown, config: GovernanceConfig) -> float:
    """Governance loss with the predictive part capped at config.max_log_loss.

    This is the per-decision sample fed to the confidence bound. Capping
    keeps every sample for one arm inside an interval of width
    config.bound_width. Trace records keep the uncapped utility.
    """
    return (
        min(breakdown.predictive_loss, config.max_log_loss)
        + config.lambda_cost * breakdown.cost
        + config.lambda_safety * breakdown.safety_penalty
    )
