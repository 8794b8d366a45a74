"""
Agent Vault error types.

One exception per rejected precondition so callers (and tests) can tell
exactly which rule stopped an operation, not merely that it failed.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    NOT_OWNER = "NotOwner"
    ZERO_AMOUNT = "ZeroAmount"
    INVALID_CAPABILITY = "InvalidCapability"
    EXPIRED = "Expired"
    COOLDOWN_ACTIVE = "CooldownActive"
    PER_OPERATION_LIMIT_EXCEEDED = "PerOperationLimitExceeded"
    BUDGET_EXCEEDED = "BudgetExceeded"
    ACTION_NOT_WHITELISTED = "ActionNotWhitelisted"
    INSUFFICIENT_BALANCE = "InsufficientBalance"


class VaultError(Exception):
    """Base error for all vault operations."""

    kind: Optional[FailureKind] = None

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# Authorization errors
class AuthorizationError(VaultError):
    """Base error for capability checks."""
    pass


class NotOwnerError(AuthorizationError):
    """Presented capability is not this vault's owner capability."""

    kind = FailureKind.NOT_OWNER

    def __init__(self, vault_id: str, cap_id: str):
        self.vault_id = vault_id
        self.cap_id = cap_id
        super().__init__(f"Capability {cap_id} is not the owner capability of vault {vault_id}")


class InvalidCapabilityError(AuthorizationError):
    """Agent capability is unbound, revoked or was never minted for this vault."""

    kind = FailureKind.INVALID_CAPABILITY


# Policy errors
class PolicyViolationError(VaultError):
    """Base error for delegated withdrawals rejected by the vault policy."""
    pass


class PolicyExpiredError(PolicyViolationError):
    kind = FailureKind.EXPIRED


class CooldownActiveError(PolicyViolationError):
    kind = FailureKind.COOLDOWN_ACTIVE


class PerOperationLimitError(PolicyViolationError):
    """Amount exceeds the per-operation ceiling."""

    kind = FailureKind.PER_OPERATION_LIMIT_EXCEEDED


class BudgetExceededError(PolicyViolationError):
    """Amount exceeds what is left of the delegated budget."""

    kind = FailureKind.BUDGET_EXCEEDED


class ActionNotWhitelistedError(PolicyViolationError):
    kind = FailureKind.ACTION_NOT_WHITELISTED


# Amount errors
class AmountError(VaultError):
    """Base error for amount and solvency checks."""
    pass


class ZeroAmountError(AmountError):
    kind = FailureKind.ZERO_AMOUNT


class InsufficientBalanceError(AmountError):
    """Vault doesn't hold enough to cover the withdrawal."""

    kind = FailureKind.INSUFFICIENT_BALANCE


# Ledger errors
class LedgerError(VaultError):
    """Failures of the hosting ledger rather than of the policy engine."""
    pass


class ObjectNotFoundError(LedgerError):
    """No vault or capability object exists with the given id."""
    pass


class CapabilityNotHeldError(LedgerError):
    """Sender presented a capability object it does not hold."""

    def __init__(self, cap_id: str, sender: str):
        self.cap_id = cap_id
        self.sender = sender
        super().__init__(f"Capability {cap_id} is not held by {sender}")


_ERRORS_BY_KIND: dict[FailureKind, type[VaultError]] = {
    FailureKind.ZERO_AMOUNT: ZeroAmountError,
    FailureKind.INVALID_CAPABILITY: InvalidCapabilityError,
    FailureKind.EXPIRED: PolicyExpiredError,
    FailureKind.COOLDOWN_ACTIVE: CooldownActiveError,
    FailureKind.PER_OPERATION_LIMIT_EXCEEDED: PerOperationLimitError,
    FailureKind.BUDGET_EXCEEDED: BudgetExceededError,
    FailureKind.ACTION_NOT_WHITELISTED: ActionNotWhitelistedError,
    FailureKind.INSUFFICIENT_BALANCE: InsufficientBalanceError,
}


def error_for(kind: FailureKind, reason: str) -> VaultError:
    """Build the exception raised by the authoritative path for a failed rule."""
    if kind is FailureKind.NOT_OWNER:
        raise ValueError("NotOwner errors carry vault and capability ids; raise NotOwnerError directly")
    return _ERRORS_BY_KIND[kind](reason)
