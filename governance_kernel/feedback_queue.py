"""Delayed Feedback Queue - Time-ordered release of outcomes.

The queue holds decisions awaiting outcome resolution and releases them
as simulated time advances. It knows nothing but time: outcome payloads
stay with the caller, the queue only orders sequence numbers.

Two priority queues are kept:
- arrivals:  (arrival_time, sequence) for enqueued feedback
- deadlines: (decision_time + max_wait, sequence) for every tracked decision

INVARIANTS:
1. advance_to() is never called with a decreasing time
2. Releases are in ascending (arrival_time, sequence) order
3. A decision is resolved exactly once: released OR censored
4. Feedback arriving after the decision's deadline is never released
5. arrival_time >= decision_time, and every time is finite

Only pending decisions are kept. A resolved decision leaves nothing behind
except, when censored, its sequence number for is_censored().
"""

from __future__ import annotations

import heapq
import logging
import math

from .errors import (
    DuplicateDecisionError,
    DuplicateFeedbackError,
    FeedbackOrderError,
    InvalidTimestampError,
    NonMonotonicTimeError,
    UnknownDecisionError,
)

logger = logging.getLogger(__name__)


class DelayedFeedbackQueue:
    """Priority queue of pending feedback with censoring.

    Usage:
        queue = DelayedFeedbackQueue(max_wait=72.0)

        queue.track(seq, decision_time)
        queue.enqueue(seq, decision_time + delay)

        for seq in queue.advance_to(now):
            engine.ingest_feedback(seq, outcomes.pop(seq))
        for seq in queue.drain_censored():
            engine.censor(seq, now)
    """

    def __init__(self, max_wait: float = math.inf):
        """Initialize queue.

        Args:
            max_wait: Hours after the decision time at which a decision
                without released feedback is censored.
        """
        if not max_wait > 0:
            raise ValueError(f"max_wait must be positive, got {max_wait}")
        self.max_wait = max_wait
        self._clock = -math.inf
        self._arrivals: list[tuple[float, int]] = []
        self._deadlines: list[tuple[float, int]] = []
        # Pending decisions only; entries are dropped on release or censoring
        self._decision_times: dict[int, float] = {}
        self._arrival_times: dict[int, float] = {}
        self._censored: list[int] = []
        self._censored_all: set[int] = set()

    @property
    def clock(self) -> float:
        return self._clock

    def track(self, decision_seq: int, decision_time: float) -> None:
        """Register a pending decision and its censoring deadline."""
        if not math.isfinite(decision_time):
            raise InvalidTimestampError(f"Decision time must be finite, got {decision_time}", decision_seq)
        if decision_seq in self._decision_times:
            raise DuplicateDecisionError("Decision already tracked", decision_seq)
        self._decision_times[decision_seq] = decision_time
        heapq.heappush(self._deadlines, (decision_time + self.max_wait, decision_seq))

    def enqueue(self, decision_seq: int, scheduled_arrival_time: float) -> None:
        """Schedule feedback for a tracked decision."""
        if decision_seq not in self._decision_times:
            if decision_seq in self._censored_all:
                # Already censored; the late feedback has nowhere to go
                raise UnknownDecisionError("Feedback for an already censored decision", decision_seq)
            raise UnknownDecisionError("Feedback for an untracked or resolved decision", decision_seq)
        if decision_seq in self._arrival_times:
            raise DuplicateFeedbackError("Feedback already enqueued", decision_seq)
        if not math.isfinite(scheduled_arrival_time):
            raise InvalidTimestampError(
                f"Arrival time must be finite, got {scheduled_arrival_time}", decision_seq
            )
        decision_time = self._decision_times[decision_seq]
        if scheduled_arrival_time < decision_time:
            raise FeedbackOrderError(
                f"Arrival {scheduled_arrival_time} precedes decision time {decision_time}",
                decision_seq,
            )

        self._arrival_times[decision_seq] = scheduled_arrival_time
        heapq.heappush(self._arrivals, (scheduled_arrival_time, decision_seq))

    def advance_to(self, current_time: float) -> list[int]:
        """Advance the clock and release all matured feedback.

        Returns:
            Sequence numbers whose arrival time <= current_time, ordered by
            (arrival_time, sequence). Decisions whose deadline passed without
            feedback become available through drain_censored().

        Raises:
            InvalidTimestampError: if current_time is NaN or infinite.
            NonMonotonicTimeError: if current_time is before the clock.
        """
        if not math.isfinite(current_time):
            raise InvalidTimestampError(f"Queue time must be finite, got {current_time}")
        if current_time < self._clock:
            raise NonMonotonicTimeError(
                f"Queue clock cannot move backwards: {current_time} < {self._clock}"
            )
        self._clock = current_time

        released: list[int] = []
        while self._arrivals and self._arrivals[0][0] <= current_time:
            arrival, seq = heapq.heappop(self._arrivals)
            if self._arrival_times.get(seq) != arrival:
                # Stale entry of a decision resolved earlier
                continue
            deadline = self._decision_times[seq] + self.max_wait
            if arrival > deadline:
                # Left for the deadline heap to censor
                continue
            self._resolve(seq)
            released.append(seq)

        while self._deadlines and self._deadlines[0][0] <= current_time:
            deadline, seq = heapq.heappop(self._deadlines)
            decision_time = self._decision_times.get(seq)
            if decision_time is None or decision_time + self.max_wait != deadline:
                continue
            self._resolve(seq)
            self._censored.append(seq)
            self._censored_all.add(seq)
            logger.debug(f"Decision {seq} censored at t={current_time}")

        return released

    def _resolve(self, seq: int) -> None:
        del self._decision_times[seq]
        self._arrival_times.pop(seq, None)

    def drain_censored(self) -> list[int]:
        """Return and clear decisions censored by previous advances."""
        out, self._censored = self._censored, []
        return out

    def is_censored(self, decision_seq: int) -> bool:
        return decision_seq in self._censored_all

    @property
    def pending_count(self) -> int:
        """Tracked decisions not yet released or censored."""
        return len(self._decision_times)

    def next_event_time(self) -> float | None:
        """Earliest pending arrival or deadline, if any."""
        times = []
        if self._arrivals:
            times.append(self._arrivals[0][0])
        if self._deadlines:
            times.append(self._deadlines[0][0])
        return min(times) if times else None

    def final_deadline(self) -> float | None:
        """Latest deadline among unresolved decisions."""
        pending = [t + self.max_wait for t in self._decision_times.values()]
        return max(pending) if pending else None
