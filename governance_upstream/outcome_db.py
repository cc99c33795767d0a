"""Persistent governance audit store.

INVARIANTS:
- External to the engine (written from the trace, never read back by it)
- Append-only at the logical level
- No mutation of existing records
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from governance_kernel.records import DecisionTraceRecord, EliminationEvent


class AuditStore:
    """
    Persistent decision trace store (SQLite).

    INVARIANTS:
    - External to the engine
    - Append-only at the logical level (existing rows are never updated)
    - Queries are indexed by arm and sequence
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trace_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    arm_id TEXT NOT NULL,
                    censored INTEGER NOT NULL,
                    outcome INTEGER,
                    utility REAL,
                    regret REAL NOT NULL,
                    record_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS eliminations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    arm_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    event_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trace_run ON trace_records(run_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trace_arm ON trace_records(arm_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trace_seq ON trace_records(sequence);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_elim_arm ON eliminations(arm_id);")
            conn.commit()

    @staticmethod
    def now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def add_trace_record(
        self,
        record: DecisionTraceRecord,
        *,
        run_id: str = "default",
        created_at: str | None = None,
    ) -> int:
        """Add a trace record. Returns the row ID."""
        created_at = created_at or self.now_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO trace_records(run_id, sequence, arm_id, censored, outcome, utility, regret, record_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    run_id,
                    record.sequence,
                    record.arm_id,
                    1 if record.censored else 0,
                    record.outcome,
                    record.utility,
                    record.regret,
                    record.to_json(),
                    created_at,
                ),
            )
            conn.commit()
            return cursor.lastrowid or 0

    def add_elimination(
        self,
        event: EliminationEvent,
        *,
        run_id: str = "default",
        created_at: str | None = None,
    ) -> int:
        """Add an elimination event. Returns the row ID."""
        created_at = created_at or self.now_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO eliminations(run_id, arm_id, sequence, event_json, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    run_id,
                    event.arm_id,
                    event.sequence,
                    json.dumps(event.to_dict(), sort_keys=True),
                    created_at,
                ),
            )
            conn.commit()
            return cursor.lastrowid or 0

    def add_run(
        self,
        records: Iterable[DecisionTraceRecord],
        eliminations: Iterable[EliminationEvent] = (),
        *,
        run_id: str = "default",
    ) -> int:
        """Store a whole run in one transaction. Returns the number of trace rows."""
        created_at = self.now_iso()
        rows = [
            (
                run_id,
                r.sequence,
                r.arm_id,
                1 if r.censored else 0,
                r.outcome,
                r.utility,
                r.regret,
                r.to_json(),
                created_at,
            )
            for r in records
        ]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO trace_records(run_id, sequence, arm_id, censored, outcome, utility, regret, record_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                rows,
            )
            conn.executemany(
                """
                INSERT INTO eliminations(run_id, arm_id, sequence, event_json, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                [
                    (run_id, e.arm_id, e.sequence, json.dumps(e.to_dict(), sort_keys=True), created_at)
                    for e in eliminations
                ],
            )
            conn.commit()
        return len(rows)

    def records(
        self,
        *,
        run_id: str | None = None,
        arm_id: str | None = None,
        censored: bool | None = None,
        limit: int | None = None,
    ) -> list[DecisionTraceRecord]:
        """Query trace records in insertion order with optional filters."""
        where = []
        params: list[Any] = []
        if run_id is not None:
            where.append("run_id = ?")
            params.append(run_id)
        if arm_id is not None:
            where.append("arm_id = ?")
            params.append(arm_id)
        if censored is not None:
            where.append("censored = ?")
            params.append(1 if censored else 0)

        sql = "SELECT record_json FROM trace_records"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            return [
                DecisionTraceRecord.from_dict(json.loads(row[0]))
                for row in conn.execute(sql, params)
            ]

    def eliminations(self, *, run_id: str | None = None) -> list[EliminationEvent]:
        sql = "SELECT event_json FROM eliminations"
        params: list[Any] = []
        if run_id is not None:
            sql += " WHERE run_id = ?"
            params.append(run_id)
        sql += " ORDER BY id ASC"
        with self._connect() as conn:
            return [EliminationEvent.from_dict(json.loads(row[0])) for row in conn.execute(sql, params)]

    def arm_counts(self, arm_id: str) -> tuple[int, int]:
        """Return (resolved, total) decisions for an arm."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT SUM(1 - censored), COUNT(*) FROM trace_records WHERE arm_id = ?",
                (arm_id,),
            ).fetchone()
            if row and row[1]:
                return (row[0] or 0, row[1])
            return (0, 0)

    def total_records(self) -> int:
        """Total trace record count."""
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM trace_records").fetchone()
            return row[0] if row else 0
