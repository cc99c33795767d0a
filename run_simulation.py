#!/usr/bin/env python3
"""Governance Simulation Runner - Single entrypoint for governance runs.

Routes each decision in a stream to one of the candidate risk models,
learns from delayed outcomes and eliminates models that are confidently
worse.

Usage:
    python run_simulation.py --predictions outputs/data/preds_eval.csv.gz

    # Explicit arms with costs, subgroup audit by age band and sex
    python run_simulation.py --predictions preds.csv \
        --arm glm=pred_glm:0.10 --arm xgb=pred_xgb:0.20 \
        --subgroup-column age --subgroup-column sex

    # Synthetic scenario
    python run_simulation.py --synthetic 2000 --output-dir ./outputs/tables
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

import pandas as pd

from governance_kernel import (
    ArmRegistry,
    ConfigurationError,
    GovernanceConfig,
    GovernanceError,
    StructuralError,
    TraceLedger,
    run_simulation,
    trace_frame,
)
from governance_kernel.arms import DEFAULT_ARMS
from governance_upstream import AuditStore, parse_arm_spec, stream_from_frame, synthetic_stream

logger = logging.getLogger("run_simulation")

DEFAULT_SYNTHETIC_LOSSES: dict[str, float] = {
    "glm": 0.45,
    "rf": 0.40,
    "xgb": 0.30,
}

# CLI flag -> GovernanceConfig field
CONFIG_FLAGS: dict[str, str] = {
    "delta": "delta",
    "lambda_cost": "lambda_cost",
    "lambda_safety": "lambda_safety",
    "min_delay": "min_delay_hours",
    "max_delay": "max_delay_hours",
    "max_wait": "max_wait_hours",
    "seed": "seed",
    "clip_epsilon": "clip_epsilon",
    "loss_range": "loss_range",
    "max_log_loss": "max_log_loss",
    "exploration_scale": "exploration_scale",
    "safety_threshold": "safety_threshold",
    "false_negative_penalty": "false_negative_penalty",
}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Clinical model governance - bandit simulation over model predictions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Default arms (glm=pred_glm, rf=pred_rf, xgb=pred_xgb), outcome mort_hosp
    python run_simulation.py --predictions preds_eval.csv.gz --output-dir ./tables

    # Decision times from a column, 24h outcome window
    python run_simulation.py --predictions preds.csv --time-column admit_hours \\
        --max-delay 24 --max-wait 36

    # Synthetic stream with 10% of outcomes never arriving
    python run_simulation.py --synthetic 5000 --censor-rate 0.1 \\
        --synthetic-loss glm=0.45 --synthetic-loss xgb=0.30
        """,
    )

    # Input
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--predictions",
        type=Path,
        help="CSV (or CSV.GZ) with one row per stay and one prediction column per arm",
    )
    source.add_argument(
        "--synthetic",
        type=int,
        metavar="N",
        help="Run on N synthetic decisions instead of a predictions file",
    )
    parser.add_argument(
        "--arm",
        action="append",
        default=[],
        metavar="NAME=COLUMN[:COST]",
        help="Arm definition (repeatable; default: glm, rf, xgb)",
    )
    parser.add_argument(
        "--outcome-column",
        default="mort_hosp",
        help="Binary outcome column (default: mort_hosp)",
    )
    parser.add_argument(
        "--subgroup-column",
        action="append",
        default=[],
        help="Subgroup label column for equity audit (repeatable; 'age' is banded)",
    )
    parser.add_argument(
        "--time-column",
        default=None,
        help="Decision time column in hours (default: one hour per row)",
    )
    parser.add_argument(
        "--synthetic-loss",
        action="append",
        default=[],
        metavar="NAME=LOSS",
        help="Mean predictive log loss of a synthetic arm (repeatable)",
    )
    parser.add_argument(
        "--prevalence",
        type=float,
        default=0.2,
        help="Synthetic positive-outcome rate (default: 0.2)",
    )
    parser.add_argument(
        "--censor-rate",
        type=float,
        default=0.0,
        help="Synthetic rate of outcomes that never arrive (default: 0)",
    )

    # Governance configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file with GovernanceConfig fields (flags override it)",
    )
    parser.add_argument("--delta", type=float, default=None, help="Confidence level of the bound (default: 0.05)")
    parser.add_argument("--lambda-cost", type=float, default=None, help="Cost weight (default: 1.0)")
    parser.add_argument("--lambda-safety", type=float, default=None, help="Safety weight (default: 1.0)")
    parser.add_argument("--min-delay", type=float, default=None, help="Minimum outcome delay in hours (default: 0)")
    parser.add_argument("--max-delay", type=float, default=None, help="Maximum outcome delay in hours (default: 48)")
    parser.add_argument("--max-wait", type=float, default=None, help="Hours before a decision is censored (default: 72)")
    parser.add_argument("--seed", type=int, default=None, help="Delay sampling seed (default: 42)")
    parser.add_argument("--clip-epsilon", type=float, default=None, help="Probability clipping (default: 1e-6)")
    parser.add_argument(
        "--max-log-loss",
        type=float,
        default=None,
        help="Cap on the per-decision log loss fed to the confidence bound (default: 2.0)",
    )
    parser.add_argument(
        "--loss-range",
        type=float,
        default=None,
        help="Governance loss width (default: max log loss + safety weight * penalty)",
    )
    parser.add_argument(
        "--exploration-scale",
        type=float,
        default=None,
        help="Exploration bonus in half-widths (default: 2.0)",
    )
    parser.add_argument(
        "--safety-threshold",
        type=float,
        default=None,
        help="Risk below which a positive outcome is a missed case (default: 0.5)",
    )
    parser.add_argument(
        "--false-negative-penalty",
        type=float,
        default=None,
        help="Penalty for a missed case (default: 1.0)",
    )

    # Output
    parser.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="Path to write the JSONL trace ledger",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace an existing ledger file instead of failing",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for summary CSV tables and the decision trace",
    )
    parser.add_argument(
        "--audit-db",
        type=Path,
        default=None,
        help="SQLite audit store to append the run to",
    )
    parser.add_argument(
        "--run-id",
        default="governance",
        help="Run identifier in the audit store (default: governance)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Path to write outcome JSON (default: stdout)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> GovernanceConfig:
    """GovernanceConfig from an optional JSON file plus flag overrides."""
    base = GovernanceConfig.from_json_file(args.config) if args.config else GovernanceConfig()
    overrides = {
        field: getattr(args, flag)
        for flag, field in CONFIG_FLAGS.items()
        if getattr(args, flag) is not None
    }
    if not overrides:
        return base
    return GovernanceConfig.from_dict({**base.to_dict(), **overrides})


def _default_cost(arm_id: str) -> float:
    for arm in DEFAULT_ARMS:
        if arm.arm_id == arm_id:
            return arm.cost
    logger.warning(f"No cost given for arm {arm_id}, using 0")
    return 0.0


def build_registry(arm_specs: Sequence[str]) -> tuple[ArmRegistry, dict[str, str]]:
    """Registry and arm -> column mapping from NAME=COLUMN[:COST] specs."""
    registry = ArmRegistry()
    columns: dict[str, str] = {}
    if not arm_specs:
        for arm in DEFAULT_ARMS:
            registry.register(arm.arm_id, arm.cost, arm.model_ref, arm.description)
            columns[arm.arm_id] = arm.model_ref or arm.arm_id
        return registry, columns

    for spec in arm_specs:
        arm_id, column, cost = parse_arm_spec(spec)
        registry.register(arm_id, _default_cost(arm_id) if cost is None else cost, model_ref=column)
        columns[arm_id] = column
    return registry, columns


def parse_losses(specs: Sequence[str]) -> dict[str, float]:
    if not specs:
        return dict(DEFAULT_SYNTHETIC_LOSSES)
    losses = {}
    for spec in specs:
        name, sep, value = spec.partition("=")
        if not sep or not name:
            raise ConfigurationError(f"Synthetic loss must be NAME=LOSS, got {spec!r}")
        try:
            losses[name] = float(value)
        except ValueError:
            raise ConfigurationError(f"Invalid loss in {spec!r}") from None
    return losses


def open_ledger(path: Path | None, overwrite: bool) -> TraceLedger:
    if path is None:
        return TraceLedger()
    if path.exists():
        if not overwrite:
            raise ConfigurationError(f"Ledger already exists: {path} (use --overwrite)")
        logger.info(f"Replacing existing ledger {path}")
        path.unlink()
    return TraceLedger(path)


def write_tables(result: Any, output_dir: Path) -> dict[str, str]:
    """Write summary tables and the decision trace as CSV files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    summary = result.summary
    tables = {
        "bandit_summary_overall": pd.DataFrame([summary.overall]),
        "bandit_summary_by_arm": summary.by_arm,
        "bandit_summary_by_subgroup": summary.by_subgroup,
        "bandit_summary_by_subgroup_arm": summary.by_subgroup_arm,
        "bandit_regret_curve": summary.regret_curve,
        "bandit_trace": trace_frame(result.trace),
    }
    written = {}
    for name, frame in tables.items():
        path = output_dir / f"{name}.csv"
        frame.to_csv(path, index=False)
        written[name] = str(path)
        logger.debug(f"Wrote {path}")
    return written


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = build_config(args)

        if args.synthetic is not None:
            losses = parse_losses(args.synthetic_loss)
            registry = ArmRegistry()
            for arm_id in losses:
                registry.register(arm_id, _default_cost(arm_id), description="Synthetic arm")
            logger.info(f"Generating {args.synthetic} synthetic decisions: losses={losses}")
            items = synthetic_stream(
                args.synthetic,
                losses,
                config,
                prevalence=args.prevalence,
                censor_rate=args.censor_rate,
            )
            source = f"synthetic:{args.synthetic}"
        else:
            registry, columns = build_registry(args.arm)
            logger.info(f"Loading predictions from {args.predictions}")
            frame = pd.read_csv(args.predictions)
            items = stream_from_frame(
                frame,
                columns,
                outcome_column=args.outcome_column,
                subgroup_columns=args.subgroup_column,
                time_column=args.time_column,
                config=config,
            )
            source = str(args.predictions)

        ledger = open_ledger(args.ledger, args.overwrite)
        result = run_simulation(items, registry, config, ledger)

    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except StructuralError as e:
        logger.error(f"Simulation aborted: {e}")
        return 1
    except GovernanceError as e:
        logger.error(f"Governance run failed: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Input not found: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    tables = {}
    if args.output_dir:
        tables = write_tables(result, args.output_dir)
        logger.info(f"Wrote {len(tables)} tables to {args.output_dir}")

    if args.audit_db:
        store = AuditStore(args.audit_db)
        count = store.add_run(result.trace, result.eliminations, run_id=args.run_id)
        logger.info(f"Stored {count} trace records in {args.audit_db}")

    outcome = {
        "source": source,
        "run_id": args.run_id,
        **result.to_dict(),
        "tables": tables,
        "audit_db": str(args.audit_db) if args.audit_db else None,
    }
    outcome_json = json.dumps(outcome, indent=2)

    if args.output:
        args.output.write_text(outcome_json)
        logger.info(f"Wrote outcome to {args.output}")
    else:
        print(outcome_json)

    return 0


if __name__ == "__main__":
    sys.exit(main())
