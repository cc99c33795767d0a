"""Records - Explicit, typed governance records.

The record model provides:
- Immutable contexts, prediction sets and decisions
- Feedback events with arrival times in simulated hours
- Append-only trace records joining a decision with its resolution
- Serializable to JSON for the ledger and replay

INVARIANT: Records are immutable. Mappings are stored as sorted tuples
of pairs so they can live inside frozen dataclasses.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Mapping


def _freeze(mapping: Mapping[str, Any] | tuple | None) -> tuple[tuple[str, Any], ...]:
    if mapping is None:
        return ()
    if isinstance(mapping, tuple):
        return tuple(sorted(mapping))
    return tuple(sorted(mapping.items()))


@dataclass(frozen=True)
class Context:
    """Immutable snapshot of features available at decision time."""

    sequence: int
    timestamp: float
    features: tuple[tuple[str, Any], ...] = field(default_factory=tuple)
    subgroups: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def create(
        cls,
        sequence: int,
        timestamp: float,
        features: Mapping[str, Any] | None = None,
        subgroups: Mapping[str, str] | None = None,
    ) -> Context:
        return cls(
            sequence=int(sequence),
            timestamp=float(timestamp),
            features=_freeze(features),
            subgroups=tuple((str(k), str(v)) for k, v in _freeze(subgroups)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "features": dict(self.features),
            "subgroups": dict(self.subgroups),
        }


@dataclass(frozen=True)
class PredictionSet:
    """Per-arm risk scores for one context."""

    sequence: int
    scores: tuple[tuple[str, float], ...]

    @classmethod
    def create(cls, sequence: int, scores: Mapping[str, float]) -> PredictionSet:
        return cls(sequence=int(sequence), scores=_freeze(scores))

    def as_dict(self) -> dict[str, float]:
        return dict(self.scores)

    def get(self, arm_id: str) -> float | None:
        return self.as_dict().get(arm_id)

    def arm_ids(self) -> list[str]:
        return [arm_id for arm_id, _ in self.scores]

    def invalid_scores(self) -> dict[str, Any]:
        """Scores that are not finite probabilities in [0, 1]."""
        bad = {}
        for arm_id, value in self.scores:
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                bad[arm_id] = value
            elif math.isnan(value) or not 0.0 <= value <= 1.0:
                bad[arm_id] = value
        return bad


@dataclass(frozen=True)
class Decision:
    """Immutable record of one arm choice.

    INVARIANT: exactly one Decision per sequence number.
    """

    sequence: int
    context: Context
    arm_id: str
    prediction: float
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "context": self.context.to_dict(),
            "arm_id": self.arm_id,
            "prediction": self.prediction,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class FeedbackEvent:
    """Observed outcome for a decision.

    INVARIANT: arrival_time >= decision time (enforced by the queue).
    """

    sequence: int
    outcome: int
    arrival_time: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "outcome": self.outcome,
            "arrival_time": self.arrival_time,
        }


@dataclass(frozen=True)
class DecisionTraceRecord:
    """Append-only trace entry joining a decision with its resolution.

    Censored records carry no outcome, loss or utility and contribute
    zero regret.
    """

    sequence: int
    decision_time: float
    resolved_time: float
    arm_id: str
    prediction: float
    arm_cost: float
    censored: bool
    outcome: int | None = None
    predictive_loss: float | None = None
    safety_penalty: float | None = None
    utility: float | None = None
    best_arm_id: str | None = None
    best_utility: float | None = None
    regret: float = 0.0
    cumulative_regret: float = 0.0
    subgroups: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "decision_time": self.decision_time,
            "resolved_time": self.resolved_time,
            "arm_id": self.arm_id,
            "prediction": self.prediction,
            "arm_cost": self.arm_cost,
            "censored": self.censored,
            "outcome": self.outcome,
            "predictive_loss": self.predictive_loss,
            "safety_penalty": self.safety_penalty,
            "utility": self.utility,
            "best_arm_id": self.best_arm_id,
            "best_utility": self.best_utility,
            "regret": self.regret,
            "cumulative_regret": self.cumulative_regret,
            "subgroups": dict(self.subgroups),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionTraceRecord:
        subgroups = data.get("subgroups", {})
        if isinstance(subgroups, dict):
            subgroups = tuple(sorted(subgroups.items()))
        else:
            subgroups = tuple(tuple(pair) for pair in subgroups)

        return cls(
            sequence=data["sequence"],
            decision_time=data["decision_time"],
            resolved_time=data["resolved_time"],
            arm_id=data["arm_id"],
            prediction=data["prediction"],
            arm_cost=data["arm_cost"],
            censored=data["censored"],
            outcome=data.get("outcome"),
            predictive_loss=data.get("predictive_loss"),
            safety_penalty=data.get("safety_penalty"),
            utility=data.get("utility"),
            best_arm_id=data.get("best_arm_id"),
            best_utility=data.get("best_utility"),
            regret=data.get("regret", 0.0),
            cumulative_regret=data.get("cumulative_regret", 0.0),
            subgroups=subgroups,
        )


@dataclass(frozen=True)
class EliminationEvent:
    """Audit record of a permanent arm elimination."""

    arm_id: str
    timestamp: float
    sequence: int
    dominated_by: str
    dominating_upper_bound: float
    eliminated_lower_bound: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "arm_id": self.arm_id,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "dominated_by": self.dominated_by,
            "dominating_upper_bound": self.dominating_upper_bound,
            "eliminated_lower_bound": self.eliminated_lower_bound,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EliminationEvent:
        return cls(**{k: data[k] for k in (
            "arm_id",
            "timestamp",
            "sequence",
            "dominated_by",
            "dominating_upper_bound",
            "eliminated_lower_bound",
        )})


@dataclass(frozen=True)
class SkippedContext:
    """Evidence for a context or feedback record rejected as malformed."""

    sequence: int | None
    error_type: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "error_type": self.error_type,
            "reason": self.reason,
        }
