"""Governance Upstream.

The upstream layer lives OUTSIDE the engine and:
- Adapts model-evaluation tables into context/prediction/outcome streams
- Simulates delayed and missing outcomes from the configured window
- Persists decision traces and eliminations for audit

INVARIANTS:
1. Upstream NEVER modifies engine decisions
2. Stream adapters hand off typed records, no shared workspace
3. Audit state is persisted append-only
"""

from .streams import (
    DEFAULT_ARM_COLUMNS,
    StreamItem,
    age_band,
    parse_arm_spec,
    stream_from_frame,
    synthetic_stream,
)
from .outcome_db import AuditStore

__version__ = "1.0.0"
__all__ = [
    # Streams
    "DEFAULT_ARM_COLUMNS",
    "StreamItem",
    "age_band",
    "parse_arm_spec",
    "stream_from_frame",
    "synthetic_stream",
    # Audit store
    "AuditStore",
]
