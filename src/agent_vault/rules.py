"""
The ordered delegated-withdrawal rules.

``evaluate`` is the only definition of the checks. The authoritative
``Vault.agent_withdraw`` and the advisory ``precheck.check_policy`` both call
it.

Order (first failure wins):
    1. amount > 0                      (only when an amount is given)
    2. capability bound to this vault  (only when a capability is given)
    3. capability id still authorized  (only when a capability is given)
    4. now < expires_at
    5. cooldown elapsed since last withdrawal (skipped before the first one)
    6. amount <= max_per_operation     (only when an amount is given)
    7. amount <= remaining budget      (only when an amount is given)
    8. action whitelisted
    9. amount <= balance               (only when an amount is given)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Optional, Protocol

from .capability import Capability
from .errors import FailureKind
from .policy import Policy


class AccountView(Protocol):
    """Read-only view of an account record; satisfied by Vault and VaultSnapshot."""

    vault_id: str
    balance: int
    policy: Policy
    authorized_caps: AbstractSet[str]
    total_spent: int
    last_operation_time: int
    operation_count: int


@dataclass(frozen=True)
class RuleOutcome:
    """Verdict of the ordered rules."""

    allowed: bool
    reason: str
    failure: Optional[FailureKind] = None


PASSED = RuleOutcome(allowed=True, reason="Policy check passed")


def _deny(failure: FailureKind, reason: str) -> RuleOutcome:
    return RuleOutcome(allowed=False, reason=reason, failure=failure)


def remaining_budget(policy: Policy, total_spent: int) -> int:
    """What is left of the delegated budget; zero once spending reaches the cap."""
    if total_spent >= policy.max_budget:
        return 0
    return policy.max_budget - total_spent


def cooldown_remaining(account: AccountView, now: int) -> int:
    """Milliseconds until the next delegated withdrawal may run (0 if none)."""
    if account.operation_count == 0:
        return 0
    elapsed = now - account.last_operation_time
    if elapsed >= account.policy.cooldown_ms:
        return 0
    return account.policy.cooldown_ms - elapsed


def evaluate(
    account: AccountView,
    action: int,
    now: int,
    amount: Optional[int] = None,
    capability: Optional[Capability] = None,
) -> RuleOutcome:
    """Evaluate every rule against ``account`` in order and return the verdict."""
    policy = account.policy

    if amount is not None and amount <= 0:
        return _deny(FailureKind.ZERO_AMOUNT, "Amount must be greater than zero")

    if capability is not None:
        if not capability.is_agent or not capability.bound_to(account.vault_id):
            return _deny(
                FailureKind.INVALID_CAPABILITY,
                f"Capability {capability.cap_id} is not an agent capability of vault {account.vault_id}",
            )
        if capability.cap_id not in account.authorized_caps:
            return _deny(
                FailureKind.INVALID_CAPABILITY,
                f"Capability {capability.cap_id} is not authorized (revoked or never minted)",
            )

    if policy.is_expired(now):
        return _deny(
            FailureKind.EXPIRED,
            f"Policy has expired (expires_at {policy.expires_at}, now {now})",
        )

    wait_ms = cooldown_remaining(account, now)
    if wait_ms > 0:
        wait_seconds = -(-wait_ms // 1000)
        return _deny(FailureKind.COOLDOWN_ACTIVE, f"Cooldown active: {wait_seconds}s remaining")

    if amount is not None:
        if amount > policy.max_per_operation:
            return _deny(
                FailureKind.PER_OPERATION_LIMIT_EXCEEDED,
                f"Amount {amount} exceeds per-operation limit {policy.max_per_operation}",
            )
        remaining = remaining_budget(policy, account.total_spent)
        if amount > remaining:
            return _deny(
                FailureKind.BUDGET_EXCEEDED,
                f"Amount {amount} exceeds remaining budget {remaining} "
                f"(spent {account.total_spent} of {policy.max_budget})",
            )

    if not policy.allows(action):
        return _deny(FailureKind.ACTION_NOT_WHITELISTED, f"Action type {action} is not whitelisted")

    if amount is not None and amount > account.balance:
        return _deny(
            FailureKind.INSUFFICIENT_BALANCE,
            f"Insufficient vault balance: {account.balance} < {amount}",
        )

    return PASSED
