#!/usr/bin/env python3
"""Generate a markdown governance report from a trace ledger."""

from __future__ import annotations

import argparse
import math
import os
from pathlib import Path

from governance_kernel import TraceLedger, summarize
from governance_upstream import AuditStore


def _fmt(value: object, spec: str = ".4f") -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "n/a"
    return format(value, spec)


def build_report(ledger_path: Path, audit_db: Path | None = None, run_id: str = "N/A") -> str:
    """Markdown summary of one governance run."""
    records = TraceLedger.load_trace(ledger_path)
    eliminations = TraceLedger.load_eliminations(ledger_path)

    report = """## 🛡️ Clinical Model Governance Report

### Run Summary
"""
    if not records:
        report += "\n*No trace records found*\n"
        return report

    summary = summarize(records)
    overall = summary.overall
    report += f"""
| Field | Value |
|-------|-------|
| Ledger | `{ledger_path}` |
| Decisions | {overall['decisions']} |
| Resolved | {overall['resolved']} |
| Censored | {overall['censored']} ({overall['censoring_rate']:.1%}) |
| Mean log loss | {_fmt(overall['mean_loss'])} |
| Mean utility | {_fmt(overall['mean_utility'])} |
| Cumulative regret | {overall['cumulative_regret']:.4f} |
| Average regret | {overall['average_regret']:.4f} |
"""

    report += """
### Arm Performance

| Arm | Selections | Frequency | Mean Loss | Mean Utility | Censored |
|-----|------------|-----------|-----------|--------------|----------|
"""
    for row in summary.by_arm.to_dict(orient="records"):
        report += (
            f"| `{row['arm_id']}` | {row['selections']} | {row['selection_frequency']:.1%} | "
            f"{_fmt(row['mean_loss'])} | {_fmt(row['mean_utility'])} | {row['censored']} |\n"
        )

    report += "\n### Eliminations\n\n"
    if eliminations:
        report += "| Arm | Sequence | Time (h) | Dominated By | UCB | LCB |\n"
        report += "|-----|----------|----------|--------------|-----|-----|\n"
        for event in eliminations:
            report += (
                f"| `{event.arm_id}` | {event.sequence} | {event.timestamp:.1f} | "
                f"`{event.dominated_by}` | {event.dominating_upper_bound:.4f} | "
                f"{event.eliminated_lower_bound:.4f} |\n"
            )
    else:
        report += "*No arm was eliminated*\n"

    if not summary.by_subgroup.empty:
        report += """
### Subgroup Audit

| Subgroup | Value | Decisions | Mean Loss | Average Regret |
|----------|-------|-----------|-----------|----------------|
"""
        for row in summary.by_subgroup.to_dict(orient="records"):
            report += (
                f"| {row['subgroup']} | {row['value']} | {row['decisions']} | "
                f"{_fmt(row['mean_loss'])} | {row['average_regret']:.4f} |\n"
            )

    if audit_db is not None and audit_db.exists():
        store = AuditStore(audit_db)
        report += f"\n**Total Records in Audit Store**: {store.total_records()}\n"

    report += f"""
### Workflow Info
- **Run ID**: `{run_id}`
"""
    return report


def main() -> None:
    """Generate markdown summary."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("ledger", type=Path, help="JSONL trace ledger")
    parser.add_argument("--audit-db", type=Path, default=None, help="SQLite audit store")
    args = parser.parse_args()

    run_id = os.environ.get("RUN_ID", "N/A")
    print(build_report(args.ledger, args.audit_db, run_id))


if __name__ == "__main__":
    main()
