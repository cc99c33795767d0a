"""Arm Registry - Catalog of candidate models.

An arm is NOT a model we train - it's a pre-validated model the engine
may route a decision to. Each arm has a fixed operational cost.

INVARIANTS:
1. Arms are never deleted, only eliminated (retained for audit)
2. active -> eliminated is the only transition, and it is permanent
3. get_active_arms() is in insertion order
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable

from .errors import ConfigurationError, DuplicateArmError, UnknownArmError

logger = logging.getLogger(__name__)


class ArmState(Enum):
    """Arm lifecycle state."""

    ACTIVE = "active"
    ELIMINATED = "eliminated"


@dataclass(frozen=True)
class Arm:
    """A candidate model competing for each decision."""

    arm_id: str
    cost: float
    model_ref: Any = None
    description: str = ""
    state: ArmState = ArmState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state is ArmState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "arm_id": self.arm_id,
            "cost": self.cost,
            "model_ref": None if self.model_ref is None else str(self.model_ref),
            "description": self.description,
            "state": self.state.value,
        }


# The three models evaluated in the mortality analysis, with their
# per-decision operational cost
DEFAULT_ARMS: list[Arm] = [
    Arm(
        arm_id="glm",
        cost=0.10,
        model_ref="pred_glm",
        description="Logistic regression",
    ),
    Arm(
        arm_id="rf",
        cost=0.15,
        model_ref="pred_rf",
        description="Random forest",
    ),
    Arm(
        arm_id="xgb",
        cost=0.20,
        model_ref="pred_xgb",
        description="Gradient boosting",
    ),
]


class ArmRegistry:
    """Static catalog of arms with an active/eliminated lifecycle.

    Usage:
        registry = ArmRegistry()
        registry.register("glm", 0.10)
        registry.register("rf", 0.15)

        registry.get_active_arms()   # ["glm", "rf"]
        registry.eliminate("rf")
        registry.get_active_arms()   # ["glm"]
    """

    def __init__(self) -> None:
        # dict preserves insertion order
        self._arms: dict[str, Arm] = {}

    def register(
        self,
        arm_id: str,
        cost: float,
        model_ref: Any = None,
        description: str = "",
    ) -> Arm:
        """Register a new active arm.

        Raises:
            DuplicateArmError: if arm_id is already registered.
            ConfigurationError: if cost is negative or not finite.
        """
        if arm_id in self._arms:
            raise DuplicateArmError(arm_id)
        if not isinstance(cost, (int, float)) or not math.isfinite(cost) or cost < 0:
            raise ConfigurationError(f"Arm {arm_id!r} cost must be a finite number >= 0, got {cost!r}")

        arm = Arm(arm_id=arm_id, cost=float(cost), model_ref=model_ref, description=description)
        self._arms[arm_id] = arm
        logger.info(f"Registered arm {arm_id} (cost={arm.cost})")
        return arm

    def get_active_arms(self) -> list[str]:
        """Active arm ids in insertion order."""
        return [arm_id for arm_id, arm in self._arms.items() if arm.is_active]

    def eliminate(self, arm_id: str) -> bool:
        """Permanently eliminate an arm.

        Idempotent: eliminating an eliminated arm is a no-op.

        Returns:
            True if the arm transitioned, False if it was already eliminated.

        Raises:
            UnknownArmError: if arm_id is not registered.
        """
        arm = self.get(arm_id)
        if not arm.is_active:
            return False
        self._arms[arm_id] = replace(arm, state=ArmState.ELIMINATED)
        logger.info(f"Arm {arm_id} eliminated")
        return True

    def get(self, arm_id: str) -> Arm:
        try:
            return self._arms[arm_id]
        except KeyError:
            raise UnknownArmError(arm_id) from None

    def cost(self, arm_id: str) -> float:
        return self.get(arm_id).cost

    def is_active(self, arm_id: str) -> bool:
        return self.get(arm_id).is_active

    def all_arms(self) -> list[Arm]:
        """All arms, active and eliminated, in insertion order."""
        return list(self._arms.values())

    def __contains__(self, arm_id: object) -> bool:
        return arm_id in self._arms

    def __len__(self) -> int:
        return len(self._arms)


def create_registry(arms: Iterable[Arm] | None = None) -> ArmRegistry:
    """Build a registry from arm definitions (defaults to DEFAULT_ARMS)."""
    registry = ArmRegistry()
    for arm in (DEFAULT_ARMS if arms is None else arms):
        registry.register(arm.arm_id, arm.cost, model_ref=arm.model_ref, description=arm.description)
    return registry
