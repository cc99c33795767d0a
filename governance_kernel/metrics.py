"""Metrics Aggregator - Read-only summaries over the decision trace.

Everything here is derived from the append-only trace alone, so a summary
can be recomputed at any time and is idempotent. Subgroup breakdowns are
produced for equity auditing whenever contexts carry subgroup labels.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import pandas as pd

from .records import DecisionTraceRecord

TRACE_COLUMNS = [
    "sequence",
    "decision_time",
    "resolved_time",
    "arm_id",
    "prediction",
    "arm_cost",
    "censored",
    "outcome",
    "predictive_loss",
    "safety_penalty",
    "utility",
    "best_arm_id",
    "best_utility",
    "regret",
    "cumulative_regret",
]

ARM_COLUMNS = [
    "arm_id",
    "selections",
    "selection_frequency",
    "resolved",
    "censored",
    "mean_loss",
    "mean_utility",
    "mean_cost",
    "mean_safety_penalty",
    "total_regret",
]

SUBGROUP_COLUMNS = [
    "subgroup",
    "value",
    "decisions",
    "resolved",
    "censored",
    "mean_loss",
    "mean_utility",
    "mean_cost",
    "cumulative_regret",
    "average_regret",
]


def trace_frame(records: Iterable[DecisionTraceRecord]) -> pd.DataFrame:
    """One row per trace record, subgroup labels as `subgroup.<label>` columns."""
    rows = []
    for record in records:
        row = record.to_dict()
        subgroups = row.pop("subgroups")
        for label, value in subgroups.items():
            row[f"subgroup.{label}"] = value
        rows.append(row)
    frame = pd.DataFrame(rows)
    if frame.empty:
        return pd.DataFrame(columns=TRACE_COLUMNS)
    for column in ("predictive_loss", "safety_penalty", "utility", "best_utility"):
        frame[column] = frame[column].astype(float)
    frame["censored"] = frame["censored"].astype(bool)
    return frame


def _mean(series: pd.Series) -> float:
    series = series.dropna()
    return float(series.mean()) if len(series) else math.nan


def _aggregate(frame: pd.DataFrame) -> dict[str, Any]:
    decisions = len(frame)
    censored = int(frame["censored"].sum()) if decisions else 0
    resolved = frame[~frame["censored"]] if decisions else frame
    total_regret = float(frame["regret"].sum()) if decisions else 0.0
    return {
        "decisions": decisions,
        "resolved": decisions - censored,
        "censored": censored,
        "censoring_rate": censored / decisions if decisions else 0.0,
        "mean_loss": _mean(resolved["predictive_loss"]) if decisions else math.nan,
        "mean_utility": _mean(resolved["utility"]) if decisions else math.nan,
        "mean_cost": _mean(frame["arm_cost"]) if decisions else math.nan,
        "mean_safety_penalty": _mean(resolved["safety_penalty"]) if decisions else math.nan,
        "cumulative_regret": total_regret,
        "average_regret": total_regret / decisions if decisions else 0.0,
    }


def arm_table(frame: pd.DataFrame, arm_ids: Sequence[str] | None = None) -> pd.DataFrame:
    """Per-arm selection frequency and mean loss/utility/cost."""
    total = len(frame)
    seen = list(frame["arm_id"].unique()) if total else []
    ordered = list(arm_ids) if arm_ids is not None else sorted(seen)
    ordered += [a for a in sorted(seen) if a not in ordered]

    rows = []
    for arm_id in ordered:
        group = frame[frame["arm_id"] == arm_id] if total else frame
        stats = _aggregate(group)
        rows.append({
            "arm_id": arm_id,
            "selections": stats["decisions"],
            "selection_frequency": stats["decisions"] / total if total else 0.0,
            "resolved": stats["resolved"],
            "censored": stats["censored"],
            "mean_loss": stats["mean_loss"],
            "mean_utility": stats["mean_utility"],
            "mean_cost": stats["mean_cost"],
            "mean_safety_penalty": stats["mean_safety_penalty"],
            "total_regret": stats["cumulative_regret"],
        })
    return pd.DataFrame(rows, columns=ARM_COLUMNS)


def regret_curve(frame: pd.DataFrame) -> pd.DataFrame:
    """Cumulative and average regret after each trace record, in trace order."""
    if frame.empty:
        return pd.DataFrame(columns=["step", "sequence", "regret", "cumulative_regret", "average_regret"])
    step = pd.RangeIndex(1, len(frame) + 1)
    cumulative = frame["regret"].astype(float).cumsum().to_numpy()
    return pd.DataFrame({
        "step": step,
        "sequence": frame["sequence"].to_numpy(),
        "regret": frame["regret"].astype(float).to_numpy(),
        "cumulative_regret": cumulative,
        "average_regret": cumulative / step.to_numpy(),
    })


def subgroup_tables(
    frame: pd.DataFrame,
    arm_ids: Sequence[str] | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Per-subgroup overall metrics and per-subgroup, per-arm metrics."""
    labels = sorted(c[len("subgroup."):] for c in frame.columns if c.startswith("subgroup."))
    overall_rows = []
    arm_frames = []
    for label in labels:
        column = f"subgroup.{label}"
        for value in sorted(frame[column].dropna().unique(), key=str):
            group = frame[frame[column] == value]
            overall_rows.append({"subgroup": label, "value": value, **_subset(_aggregate(group))})
            arms = arm_table(group, arm_ids)
            arms.insert(0, "value", value)
            arms.insert(0, "subgroup", label)
            arm_frames.append(arms)

    overall = pd.DataFrame(overall_rows, columns=SUBGROUP_COLUMNS)
    if arm_frames:
        by_arm = pd.concat(arm_frames, ignore_index=True)
    else:
        by_arm = pd.DataFrame(columns=["subgroup", "value"] + ARM_COLUMNS)
    return overall, by_arm


def _subset(stats: dict[str, Any]) -> dict[str, Any]:
    return {k: stats[k] for k in SUBGROUP_COLUMNS[2:]}


@dataclass(frozen=True, eq=False)
class GovernanceSummary:
    """Summary metrics derived from one trace."""

    overall: dict[str, Any]
    by_arm: pd.DataFrame
    regret_curve: pd.DataFrame
    by_subgroup: pd.DataFrame
    by_subgroup_arm: pd.DataFrame

    def selection_frequency(self) -> dict[str, float]:
        return dict(zip(self.by_arm["arm_id"], self.by_arm["selection_frequency"].astype(float)))

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (NaN becomes None)."""
        return {
            "overall": _clean(self.overall),
            "by_arm": [_clean(r) for r in self.by_arm.to_dict(orient="records")],
            "by_subgroup": [_clean(r) for r in self.by_subgroup.to_dict(orient="records")],
            "by_subgroup_arm": [_clean(r) for r in self.by_subgroup_arm.to_dict(orient="records")],
        }


def _clean(row: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in row.items():
        if hasattr(value, "item"):
            value = value.item()
        if isinstance(value, float) and math.isnan(value):
            value = None
        out[key] = value
    return out


def summarize(
    records: Iterable[DecisionTraceRecord],
    arm_ids: Sequence[str] | None = None,
) -> GovernanceSummary:
    """Compute every summary metric from the trace alone.

    Args:
        records: Trace records in append order.
        arm_ids: Arms to list even if never selected (registry order).
    """
    frame = trace_frame(records)
    by_subgroup, by_subgroup_arm = subgroup_tables(frame, arm_ids)
    return GovernanceSummary(
        overall=_aggregate(frame),
        by_arm=arm_table(frame, arm_ids),
        regret_curve=regret_curve(frame),
        by_subgroup=by_subgroup,
        by_subgroup_arm=by_subgroup_arm,
    )
