"""
Off-ledger policy pre-check.

This is a cost-saving hint only. The snapshot may be stale and ``now`` is the
caller's clock, not the ledger's, so a pass does not guarantee the
authoritative withdrawal succeeds and a denial must not stop a caller who
wants the ledger's answer. Always submit to the ledger for final enforcement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .capability import Capability
from .errors import FailureKind
from .rules import AccountView, evaluate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyCheckResult:
    allowed: bool
    reason: str
    failure: Optional[FailureKind] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "failure": self.failure.value if self.failure else None,
        }


def check_policy(
    vault: AccountView,
    action: int,
    now: int,
    amount: Optional[int] = None,
    agent_cap: Optional[Capability] = None,
) -> PolicyCheckResult:
    """
    Pre-check an agent action against a vault snapshot.

    Expiry, cooldown and the action whitelist are always checked. When
    ``amount`` is given the zero-amount, per-operation, budget and balance
    checks run too; actions that move no funds omit it. When ``agent_cap`` is
    given its binding and registry membership are checked as well.
    """
    outcome = evaluate(vault, action, now, amount=amount, capability=agent_cap)
    logger.debug(
        "Pre-check for %s action=%s amount=%s: %s",
        vault.vault_id,
        action,
        amount,
        outcome.reason,
    )
    return PolicyCheckResult(
        allowed=outcome.allowed,
        reason=outcome.reason,
        failure=outcome.failure,
    )
