"""Per-arm statistics and the concentration bound.

The engine tracks, per arm, the running mean of the governance loss
(negated utility) and a two-sided Hoeffding half-width:

    half_width(n) = loss_range * sqrt(ln(2 / delta) / (2 * n))

With n = 0 the half-width is infinite, so an unplayed arm can neither be
eliminated nor eliminate another arm.

INVARIANTS:
1. count never decreases
2. half_width is non-increasing in count for a fixed delta
"""

from __future__ import annotations

import math
from dataclasses import dataclass


def hoeffding_half_width(count: int, delta: float, loss_range: float = 1.0) -> float:
    """Hoeffding confidence half-width for a mean of `count` samples."""
    if count <= 0:
        return math.inf
    return loss_range * math.sqrt(math.log(2.0 / delta) / (2.0 * count))


@dataclass(frozen=True)
class ArmStatistic:
    """Immutable per-arm loss statistic. Updates return a new instance."""

    arm_id: str
    count: int = 0
    mean_loss: float = 0.0
    half_width: float = math.inf

    @property
    def lower_bound(self) -> float:
        return self.mean_loss - self.half_width

    @property
    def upper_bound(self) -> float:
        return self.mean_loss + self.half_width

    def updated(self, loss: float, delta: float, loss_range: float = 1.0) -> ArmStatistic:
        """Fold one observed loss into the running mean."""
        count = self.count + 1
        mean = self.mean_loss + (loss - self.mean_loss) / count
        return ArmStatistic(
            arm_id=self.arm_id,
            count=count,
            mean_loss=mean,
            half_width=hoeffding_half_width(count, delta, loss_range),
        )

    def exploration_index(self, scale: float) -> float:
        """Optimistic loss index: mean minus scaled half-width."""
        if self.count == 0:
            return -math.inf
        return self.mean_loss - scale * self.half_width

    def separates_below(self, other: ArmStatistic) -> bool:
        """True if this arm's loss is confidently below the other's."""
        return self.upper_bound < other.lower_bound

    def to_dict(self) -> dict[str, float | int | str | None]:
        return {
            "arm_id": self.arm_id,
            "count": self.count,
            "mean_loss": self.mean_loss,
            "half_width": self.half_width if math.isfinite(self.half_width) else None,
        }
