"""Stream adapters for the governance engine.

Turns model-evaluation tables (one row per ICU stay) or synthetic settings
into the context/prediction/outcome stream consumed by run_simulation().

Outcome delays are simulated: each observed label arrives after a delay drawn
uniformly from [min_delay_hours, max_delay_hours]. A missing label means the
outcome never arrives and the decision will be censored.
"""

from __future__ import annotations

import math
import random
from typing import Any, Mapping, Sequence

import pandas as pd

from governance_kernel.config import GovernanceConfig
from governance_kernel.errors import ConfigurationError
from governance_kernel.records import Context, FeedbackEvent, PredictionSet
from governance_kernel.simulation import StreamItem

DEFAULT_ARM_COLUMNS: dict[str, str] = {
    "glm": "pred_glm",
    "rf": "pred_rf",
    "xgb": "pred_xgb",
}

AGE_BANDS: list[tuple[float, str]] = [
    (45, "18-44"),
    (65, "45-64"),
    (80, "65-79"),
]


def age_band(age: Any) -> str:
    """Label an age in years with its reporting band."""
    if age is None:
        return "unknown"
    try:
        age = float(age)
    except (TypeError, ValueError):
        return "unknown"
    if math.isnan(age):
        return "unknown"
    for upper, label in AGE_BANDS:
        if age < upper:
            return label
    return "80+"


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _score(value: Any) -> Any:
    # NaN and non-numeric scores pass through so the engine rejects the context
    if _is_missing(value):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def _outcome(value: Any) -> Any:
    if _is_missing(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if hasattr(value, "item"):
        return _outcome(value.item())
    return value


def _timestamp(value: Any) -> float:
    # Missing or unparseable times become NaN; the driver skips those contexts
    if _is_missing(value):
        return math.nan
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        return math.nan
    return timestamp if math.isfinite(timestamp) else math.nan


def _sort_key(item: StreamItem) -> tuple[bool, float, int]:
    timestamp = item.context.timestamp
    if not math.isfinite(timestamp):
        return (True, 0.0, item.context.sequence)
    return (False, timestamp, item.context.sequence)


def _subgroup_value(column: str, value: Any) -> str:
    if column == "age":
        return age_band(value)
    if _is_missing(value):
        return "unknown"
    return str(value)


def _delay(rng: random.Random, config: GovernanceConfig) -> float:
    if config.max_delay_hours == config.min_delay_hours:
        return config.min_delay_hours
    return rng.uniform(config.min_delay_hours, config.max_delay_hours)


def stream_from_frame(
    frame: pd.DataFrame,
    arm_columns: Mapping[str, str] | None = None,
    outcome_column: str = "mort_hosp",
    subgroup_columns: Sequence[str] = (),
    time_column: str | None = None,
    feature_columns: Sequence[str] = (),
    config: GovernanceConfig | None = None,
) -> list[StreamItem]:
    """Convert an evaluation table into a governance stream.

    Each row becomes one context whose sequence number is its 1-based row
    position. Contexts are timestamped from `time_column` (hours) when given,
    otherwise one hour apart, and returned sorted by (timestamp, sequence).
    Rows whose time is missing or not finite keep a NaN timestamp and are
    placed after every timed row, where run_simulation() skips them.

    Subgroup columns are carried as labels for equity auditing; an `age`
    column is reported by age band.

    Args:
        frame: One row per patient stay.
        arm_columns: Arm id -> prediction column (DEFAULT_ARM_COLUMNS if not provided).
        outcome_column: Binary outcome column; missing values are never observed.
        subgroup_columns: Columns used as subgroup labels.
        time_column: Column holding decision times in hours.
        feature_columns: Columns copied into the context features.
        config: Supplies the delay window and the sampling seed.

    Raises:
        ConfigurationError: if a named column is not in the frame.
    """
    config = config or GovernanceConfig()
    arm_columns = dict(arm_columns or DEFAULT_ARM_COLUMNS)

    required = list(arm_columns.values()) + [outcome_column]
    required += list(subgroup_columns) + list(feature_columns)
    if time_column is not None:
        required.append(time_column)
    missing = sorted({c for c in required if c not in frame.columns})
    if missing:
        raise ConfigurationError(f"Input is missing columns: {missing}")

    rng = random.Random(config.seed)
    items: list[StreamItem] = []
    for position, row in enumerate(frame.to_dict(orient="records")):
        seq = position + 1
        timestamp = _timestamp(row[time_column]) if time_column is not None else float(position)

        context = Context.create(
            seq,
            timestamp,
            features={c: row[c] for c in feature_columns},
            subgroups={c: _subgroup_value(c, row[c]) for c in subgroup_columns},
        )
        predictions = PredictionSet.create(
            seq, {arm_id: _score(row[column]) for arm_id, column in arm_columns.items()}
        )

        # Delay is drawn for every row so the schedule does not depend on
        # which outcomes are missing
        delay = _delay(rng, config)
        outcome = _outcome(row[outcome_column])
        feedback = None
        if outcome is not None:
            feedback = FeedbackEvent(sequence=seq, outcome=outcome, arrival_time=timestamp + delay)

        items.append(StreamItem(context=context, predictions=predictions, feedback=feedback))

    items.sort(key=_sort_key)
    return items


def synthetic_stream(
    n: int,
    arm_losses: Mapping[str, float],
    config: GovernanceConfig | None = None,
    prevalence: float = 0.2,
    noise: float = 0.0,
    interval_hours: float = 1.0,
    censor_rate: float = 0.0,
) -> list[StreamItem]:
    """Deterministic synthetic stream with a known per-arm predictive loss.

    For a true label y and target loss L, an arm predicts exp(-L) when y = 1
    and 1 - exp(-L) when y = 0, so its log loss is exactly L. With noise > 0
    the per-decision loss is drawn uniformly from [L - noise, L + noise].

    Args:
        n: Number of contexts.
        arm_losses: Arm id -> mean predictive log loss (> 0).
        config: Supplies the delay window and the seed.
        prevalence: Probability of a positive outcome.
        noise: Half-width of the per-decision loss jitter.
        interval_hours: Time between consecutive contexts.
        censor_rate: Probability an outcome never arrives.
    """
    config = config or GovernanceConfig()
    if n < 0:
        raise ConfigurationError(f"n must be >= 0, got {n}")
    if not arm_losses:
        raise ConfigurationError("At least one arm loss is required")
    for arm_id, loss in arm_losses.items():
        if not loss > 0 or not math.isfinite(loss):
            raise ConfigurationError(f"Loss for arm {arm_id} must be positive, got {loss}")
    if not 0.0 <= prevalence <= 1.0:
        raise ConfigurationError(f"prevalence must be in [0, 1], got {prevalence}")
    if not 0.0 <= censor_rate <= 1.0:
        raise ConfigurationError(f"censor_rate must be in [0, 1], got {censor_rate}")
    if noise < 0 or interval_hours <= 0:
        raise ConfigurationError("noise must be >= 0 and interval_hours > 0")

    rng = random.Random(config.seed)
    items: list[StreamItem] = []
    for i in range(n):
        seq = i + 1
        timestamp = i * interval_hours
        outcome = 1 if rng.random() < prevalence else 0

        scores = {}
        for arm_id in sorted(arm_losses):
            loss = arm_losses[arm_id]
            if noise:
                loss = max(1e-6, loss + rng.uniform(-noise, noise))
            p = math.exp(-loss)
            scores[arm_id] = p if outcome == 1 else 1.0 - p

        age = rng.uniform(18, 95)
        delay = _delay(rng, config)
        censored = censor_rate > 0 and rng.random() < censor_rate

        context = Context.create(
            seq,
            timestamp,
            features={"age": round(age, 1)},
            subgroups={"age_band": age_band(age)},
        )
        feedback = None
        if not censored:
            feedback = FeedbackEvent(sequence=seq, outcome=outcome, arrival_time=timestamp + delay)
        items.append(StreamItem(
            context=context,
            predictions=PredictionSet.create(seq, scores),
            feedback=feedback,
        ))
    return items


def parse_arm_spec(spec: str) -> tuple[str, str, float | None]:
    """Parse `NAME=COLUMN[:COST]` into (arm_id, column, cost)."""
    name, sep, rest = spec.partition("=")
    if not sep or not name or not rest:
        raise ConfigurationError(f"Arm must be NAME=COLUMN[:COST], got {spec!r}")
    column, sep, cost_text = rest.partition(":")
    if not column:
        raise ConfigurationError(f"Arm must be NAME=COLUMN[:COST], got {spec!r}")
    cost = None
    if sep:
        try:
            cost = float(cost_text)
        except ValueError:
            raise ConfigurationError(f"Invalid cost in arm spec {spec!r}") from None
    return name, column, cost
