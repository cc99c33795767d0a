"""Governance configuration.

A single immutable object injected into the engine, the reward function,
the feedback queue and the stream adapters. Nothing reads configuration
from global state.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .errors import ConfigurationError


@dataclass(frozen=True)
class GovernanceConfig:
    """Immutable governance configuration.

    INVARIANT: validated on construction; cannot be modified at runtime.
    """

    # Confidence bound. The predictive part of each loss fed to the
    # arm statistics is capped at max_log_loss, so one arm's per-decision
    # loss spans at most max_log_loss + lambda_safety * false_negative_penalty
    # (the cost term is constant per arm). loss_range=None uses that width.
    delta: float = 0.05
    max_log_loss: float = 2.0
    loss_range: float | None = None
    exploration_scale: float = 2.0

    # Reward weights
    lambda_cost: float = 1.0
    lambda_safety: float = 1.0
    clip_epsilon: float = 1e-6

    # Safety penalty: a positive (high-severity) outcome scored below the
    # threshold is a missed case
    safety_threshold: float = 0.5
    false_negative_penalty: float = 1.0

    # Feedback timing, in hours of simulated time
    min_delay_hours: float = 0.0
    max_delay_hours: float = 48.0
    max_wait_hours: float = 72.0

    seed: int = 42

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if any option is out of range."""
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "loss_range" and value is None:
                continue
            if f.name == "seed":
                if not isinstance(value, int) or isinstance(value, bool):
                    raise ConfigurationError(f"seed must be an integer, got {value!r}")
                continue
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
                raise ConfigurationError(f"{f.name} must be a finite number, got {value!r}")

        if not 0.0 < self.delta < 1.0:
            raise ConfigurationError(f"delta must be in (0, 1), got {self.delta}")
        if self.max_log_loss <= 0:
            raise ConfigurationError(f"max_log_loss must be positive, got {self.max_log_loss}")
        if self.exploration_scale < 1.0:
            raise ConfigurationError(
                f"exploration_scale must be >= 1, got {self.exploration_scale}"
            )
        if self.lambda_cost < 0:
            raise ConfigurationError(f"lambda_cost must be >= 0, got {self.lambda_cost}")
        if self.lambda_safety < 0:
            raise ConfigurationError(f"lambda_safety must be >= 0, got {self.lambda_safety}")
        if not 0.0 < self.clip_epsilon < 0.5:
            raise ConfigurationError(f"clip_epsilon must be in (0, 0.5), got {self.clip_epsilon}")
        if not 0.0 <= self.safety_threshold <= 1.0:
            raise ConfigurationError(
                f"safety_threshold must be in [0, 1], got {self.safety_threshold}"
            )
        if self.false_negative_penalty < 0:
            raise ConfigurationError(
                f"false_negative_penalty must be >= 0, got {self.false_negative_penalty}"
            )
        if self.min_delay_hours < 0:
            raise ConfigurationError(f"min_delay_hours must be >= 0, got {self.min_delay_hours}")
        if self.max_delay_hours < self.min_delay_hours:
            raise ConfigurationError(
                f"max_delay_hours ({self.max_delay_hours}) < min_delay_hours ({self.min_delay_hours})"
            )
        if self.max_wait_hours <= 0:
            raise ConfigurationError(f"max_wait_hours must be positive, got {self.max_wait_hours}")

        loss_span = self.max_log_loss + self.lambda_safety * self.false_negative_penalty
        if self.loss_range is not None and self.loss_range < loss_span:
            raise ConfigurationError(
                f"loss_range ({self.loss_range}) is narrower than the tracked loss span "
                f"max_log_loss + lambda_safety * false_negative_penalty ({loss_span})"
            )

    @property
    def bound_width(self) -> float:
        """Width of the per-decision loss interval used by the confidence bound."""
        if self.loss_range is not None:
            return self.loss_range
        return self.max_log_loss + self.lambda_safety * self.false_negative_penalty

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for audit logging."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GovernanceConfig:
        """Deserialize from dictionary. Unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_json_file(cls, path: Path | str) -> GovernanceConfig:
        """Load configuration from a JSON file."""
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration {path} must be a JSON object")
        return cls.from_dict(data)
