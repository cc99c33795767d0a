"""Ledger - Append-only decision trace.

The ledger records every decision, resolution, elimination and skipped
record for:
- Replay
- Audit
- Metrics aggregation

INVARIANTS:
1. Every decision and every resolution is logged
2. Entries are immutable and append-only, never reordered or dropped
3. Skipped records produce evidence
4. No wall-clock data: the same inputs produce an identical ledger
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from .records import (
    Decision,
    DecisionTraceRecord,
    EliminationEvent,
    SkippedContext,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable ledger entry.

    INVARIANT: Entries are frozen and cannot be modified.
    """

    entry_id: str
    entry_type: str  # "decision" | "trace" | "elimination" | "skipped"
    sequence: int | None
    data: tuple[tuple[str, Any], ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "entry_type": self.entry_type,
            "sequence": self.sequence,
            "data": dict(self.data),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        entry_data = data.get("data", {})
        if isinstance(entry_data, dict):
            entry_data = tuple(sorted(entry_data.items()))

        return cls(
            entry_id=data["entry_id"],
            entry_type=data["entry_type"],
            sequence=data.get("sequence"),
            data=entry_data,
        )

    @classmethod
    def from_json(cls, json_str: str) -> LedgerEntry:
        return cls.from_dict(json.loads(json_str))


class TraceLedger:
    """Append-only decision trace, optionally mirrored to a JSONL file.

    The in-memory trace is the input of the metrics aggregator; the file is
    the durable audit trail.

    Usage:
        ledger = TraceLedger("trace.jsonl")
        engine = PolicyEngine(registry, config, ledger)
        ...
        summary = summarize(ledger.records)

        # Later, from the file alone
        records = TraceLedger.load_trace("trace.jsonl")
    """

    def __init__(self, path: Path | str | None = None):
        """Initialize ledger.

        Args:
            path: JSONL file for entries. In-memory only if not provided.
        """
        self.path = Path(path) if path is not None else None
        self._entry_count = 0
        self._records: list[DecisionTraceRecord] = []
        self._eliminations: list[EliminationEvent] = []
        self._skipped: list[SkippedContext] = []
        self._decision_count = 0

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                with open(self.path) as f:
                    self._entry_count = sum(1 for line in f if line.strip())

    @property
    def records(self) -> tuple[DecisionTraceRecord, ...]:
        """Trace records in append order."""
        return tuple(self._records)

    @property
    def eliminations(self) -> tuple[EliminationEvent, ...]:
        return tuple(self._eliminations)

    @property
    def skipped(self) -> tuple[SkippedContext, ...]:
        return tuple(self._skipped)

    @property
    def decision_count(self) -> int:
        return self._decision_count

    def record(self, trace_record: DecisionTraceRecord) -> LedgerEntry:
        """Append a resolved decision to the trace."""
        self._records.append(trace_record)
        return self._append("trace", trace_record.sequence, trace_record.to_dict())

    def record_decision(self, decision: Decision) -> LedgerEntry:
        """Log a decision at the time it is made."""
        self._decision_count += 1
        return self._append("decision", decision.sequence, {
            "arm_id": decision.arm_id,
            "prediction": decision.prediction,
            "timestamp": decision.timestamp,
            "subgroups": dict(decision.context.subgroups),
        })

    def record_elimination(self, event: EliminationEvent) -> LedgerEntry:
        """Log an arm elimination with its triggering statistic pair."""
        self._eliminations.append(event)
        return self._append("elimination", event.sequence, event.to_dict())

    def record_skip(self, skipped: SkippedContext) -> LedgerEntry:
        """Log a record rejected as malformed.

        INVARIANT: Skipped records produce evidence.
        """
        self._skipped.append(skipped)
        return self._append("skipped", skipped.sequence, skipped.to_dict())

    def _append(self, entry_type: str, sequence: int | None, data: dict[str, Any]) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=f"e{self._entry_count:06d}",
            entry_type=entry_type,
            sequence=sequence,
            data=tuple(sorted(data.items())),
        )
        if self.path is not None:
            with open(self.path, "a") as f:
                f.write(entry.to_json() + "\n")
        self._entry_count += 1
        return entry

    def get_summary(self) -> dict[str, Any]:
        """Entry counts for the in-memory trace."""
        censored = sum(1 for r in self._records if r.censored)
        return {
            "total_entries": self._entry_count,
            "decisions": self._decision_count,
            "resolved": len(self._records) - censored,
            "censored": censored,
            "eliminations": len(self._eliminations),
            "skipped": len(self._skipped),
        }

    @staticmethod
    def replay_iter(path: Path | str) -> Iterator[LedgerEntry]:
        """Iterate over the entries of a JSONL ledger file."""
        path = Path(path)
        if not path.exists():
            return
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    yield LedgerEntry.from_json(line)

    @classmethod
    def replay(cls, path: Path | str) -> list[LedgerEntry]:
        """All entries of a JSONL ledger file, in order."""
        return list(cls.replay_iter(path))

    @classmethod
    def load_trace(cls, path: Path | str) -> list[DecisionTraceRecord]:
        """Rebuild the trace records from a JSONL ledger file."""
        return [
            DecisionTraceRecord.from_dict(dict(entry.data))
            for entry in cls.replay_iter(path)
            if entry.entry_type == "trace"
        ]

    @classmethod
    def load_eliminations(cls, path: Path | str) -> list[EliminationEvent]:
        return [
            EliminationEvent.from_dict(dict(entry.data))
            for entry in cls.replay_iter(path)
            if entry.entry_type == "elimination"
        ]
