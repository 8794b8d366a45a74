"""
Delegation policy: the bounds an agent must stay within.

A Policy is an immutable value. Owners change it by replacing it whole,
never field by field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable


U64_MAX = 2**64 - 1
U8_MAX = 2**8 - 1


class ActionType(IntEnum):
    SWAP = 0
    STABLE_MINT = 1
    STABLE_BURN = 2
    STABLE_CLAIM = 3


ACTION_LABELS: dict[int, str] = {
    ActionType.SWAP: "Swap",
    ActionType.STABLE_MINT: "Stable Mint",
    ActionType.STABLE_BURN: "Stable Burn",
    ActionType.STABLE_CLAIM: "Stable Claim",
}


def action_label(action: int) -> str:
    return ACTION_LABELS.get(action, f"Action {action}")


def require_uint(name: str, value: Any, maximum: int = U64_MAX) -> int:
    """Validate an unsigned integer field and return it unchanged."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0 or value > maximum:
        raise ValueError(f"{name} must be between 0 and {maximum}, got {value}")
    return value


@dataclass(frozen=True)
class Policy:
    """Limits governing delegated withdrawals from one vault."""

    max_budget: int
    max_per_operation: int
    allowed_actions: frozenset[int] = field(default_factory=frozenset)
    cooldown_ms: int = 0
    expires_at: int = 0

    def __post_init__(self) -> None:
        require_uint("max_budget", self.max_budget)
        require_uint("max_per_operation", self.max_per_operation)
        require_uint("cooldown_ms", self.cooldown_ms)
        require_uint("expires_at", self.expires_at)
        actions = frozenset(
            int(require_uint("allowed action", a, U8_MAX)) for a in self.allowed_actions
        )
        object.__setattr__(self, "allowed_actions", actions)

    def allows(self, action: int) -> bool:
        return action in self.allowed_actions

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "max_budget": self.max_budget,
            "max_per_operation": self.max_per_operation,
            "allowed_actions": sorted(self.allowed_actions),
            "cooldown_ms": self.cooldown_ms,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Policy:
        return cls(
            max_budget=int(d.get("max_budget", 0)),
            max_per_operation=int(d.get("max_per_operation", 0)),
            allowed_actions=frozenset(int(a) for a in d.get("allowed_actions", [])),
            cooldown_ms=int(d.get("cooldown_ms", 0)),
            expires_at=int(d.get("expires_at", 0)),
        )


def create_policy(
    max_budget: int,
    max_per_operation: int,
    allowed_actions: Iterable[int],
    cooldown_ms: int,
    expires_at: int,
) -> Policy:
    """Build a policy from any iterable of action tags."""
    return Policy(
        max_budget=max_budget,
        max_per_operation=max_per_operation,
        allowed_actions=frozenset(allowed_actions),
        cooldown_ms=cooldown_ms,
        expires_at=expires_at,
    )
