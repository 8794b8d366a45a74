"""
Agent Vault: bounded, revocable spending delegation for AI agents.

Owner funds a vault and sets a policy → Agent withdraws within it → every
transition is audited.
"""

__version__ = "0.1.0"

from .audit import AuditTrail, EventLog, EventType, VaultEvent
from .capability import Capability, CapabilityKind, normalize_address
from .errors import (
    ActionNotWhitelistedError,
    BudgetExceededError,
    CooldownActiveError,
    FailureKind,
    InsufficientBalanceError,
    InvalidCapabilityError,
    NotOwnerError,
    PerOperationLimitError,
    PolicyExpiredError,
    VaultError,
    ZeroAmountError,
)
from .ledger import LocalLedger
from .money import MIST_PER_SUI, format_sui, mist_to_sui_float, sui_to_mist
from .policy import ACTION_LABELS, ActionType, Policy, action_label, create_policy
from .precheck import PolicyCheckResult, check_policy
from .rules import RuleOutcome, evaluate, remaining_budget
from .vault import NEVER, Vault, VaultSnapshot, create_vault, summarize

__all__ = [
    "Vault", "VaultSnapshot", "create_vault", "summarize", "NEVER",
    "Policy", "create_policy", "ActionType", "ACTION_LABELS", "action_label",
    "Capability", "CapabilityKind", "normalize_address",
    "evaluate", "RuleOutcome", "remaining_budget",
    "check_policy", "PolicyCheckResult",
    "AuditTrail", "EventLog", "EventType", "VaultEvent",
    "LocalLedger",
    "MIST_PER_SUI", "sui_to_mist", "mist_to_sui_float", "format_sui",
    "FailureKind", "VaultError", "NotOwnerError", "ZeroAmountError",
    "InvalidCapabilityError", "PolicyExpiredError", "CooldownActiveError",
    "PerOperationLimitError", "BudgetExceededError", "ActionNotWhitelistedError",
    "InsufficientBalanceError",
]
