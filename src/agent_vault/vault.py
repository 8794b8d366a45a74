"""
The vault: a custodial balance with a delegation policy.

Owner operations require the vault's owner capability. Delegated
withdrawals (``agent_withdraw``) require an authorized agent capability and
pass every rule in ``rules.evaluate`` before any field changes; on success
balance, spend counters and the last-operation time move together and one
audit event is emitted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .audit import EventSink, EventType, VaultEvent
from .capability import Capability, new_agent_cap, new_object_id, new_owner_cap
from .errors import (
    InsufficientBalanceError,
    InvalidCapabilityError,
    NotOwnerError,
    ZeroAmountError,
    error_for,
)
from .money import format_sui
from .policy import U64_MAX, Policy, action_label, require_uint
from .rules import cooldown_remaining, evaluate, remaining_budget

logger = logging.getLogger(__name__)


NEVER = 0


@dataclass(frozen=True)
class VaultSnapshot:
    """Materialized, read-only copy of a vault's fields."""

    vault_id: str
    owner: str
    balance: int
    policy: Policy
    authorized_caps: frozenset[str] = field(default_factory=frozenset)
    total_spent: int = 0
    last_operation_time: int = NEVER
    operation_count: int = 0

    @property
    def remaining_budget(self) -> int:
        return remaining_budget(self.policy, self.total_spent)

    def to_dict(self) -> dict:
        return {
            "vault_id": self.vault_id,
            "owner": self.owner,
            "balance": self.balance,
            "policy": self.policy.to_dict(),
            "authorized_caps": sorted(self.authorized_caps),
            "total_spent": self.total_spent,
            "last_operation_time": self.last_operation_time,
            "operation_count": self.operation_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> VaultSnapshot:
        return cls(
            vault_id=d["vault_id"],
            owner=d["owner"],
            balance=int(d.get("balance", 0)),
            policy=Policy.from_dict(d["policy"]),
            authorized_caps=frozenset(d.get("authorized_caps", [])),
            total_spent=int(d.get("total_spent", 0)),
            last_operation_time=int(d.get("last_operation_time", NEVER)),
            operation_count=int(d.get("operation_count", 0)),
        )


@dataclass
class Vault:
    """Mutable account record. Not thread-safe; the host serializes access."""

    vault_id: str
    owner: str
    balance: int
    policy: Policy
    authorized_caps: set[str] = field(default_factory=set)
    total_spent: int = 0
    last_operation_time: int = NEVER
    operation_count: int = 0
    sink: Optional[EventSink] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_snapshot(cls, snapshot: VaultSnapshot, sink: Optional[EventSink] = None) -> Vault:
        return cls(
            vault_id=snapshot.vault_id,
            owner=snapshot.owner,
            balance=snapshot.balance,
            policy=snapshot.policy,
            authorized_caps=set(snapshot.authorized_caps),
            total_spent=snapshot.total_spent,
            last_operation_time=snapshot.last_operation_time,
            operation_count=snapshot.operation_count,
            sink=sink,
        )

    def snapshot(self) -> VaultSnapshot:
        return VaultSnapshot(
            vault_id=self.vault_id,
            owner=self.owner,
            balance=self.balance,
            policy=self.policy,
            authorized_caps=frozenset(self.authorized_caps),
            total_spent=self.total_spent,
            last_operation_time=self.last_operation_time,
            operation_count=self.operation_count,
        )

    @property
    def remaining_budget(self) -> int:
        return remaining_budget(self.policy, self.total_spent)

    def _emit(self, event_type: EventType, now: Optional[int], **fields) -> None:
        if self.sink is None:
            return
        self.sink.emit(
            VaultEvent(
                event_type=event_type.value,
                vault_id=self.vault_id,
                timestamp=now,
                **fields,
            )
        )

    def _require_owner(self, owner_cap: Capability) -> None:
        if not owner_cap.is_owner or not owner_cap.bound_to(self.vault_id):
            raise NotOwnerError(self.vault_id, owner_cap.cap_id)

    # ── Owner operations ──────────────────────────────────────────

    def deposit(self, owner_cap: Capability, amount: int, now: Optional[int] = None) -> None:
        """Add ``amount`` to the balance."""
        self._require_owner(owner_cap)
        require_uint("amount", amount)
        if amount == 0:
            raise ZeroAmountError("Deposit amount must be greater than zero")
        if self.balance + amount > U64_MAX:
            raise ValueError("Deposit would overflow the vault balance")

        self.balance += amount
        logger.info("Deposit into %s: %s", self.vault_id, format_sui(amount))
        self._emit(EventType.DEPOSITED, now, amount=amount, balance=self.balance)

    def withdraw(self, owner_cap: Capability, amount: int, now: Optional[int] = None) -> int:
        """Owner withdrawal of part of the balance. Spend counters are untouched."""
        self._require_owner(owner_cap)
        require_uint("amount", amount)
        if amount == 0:
            raise ZeroAmountError("Withdrawal amount must be greater than zero")
        if amount > self.balance:
            raise InsufficientBalanceError(
                f"Insufficient vault balance: {self.balance} < {amount}"
            )

        self.balance -= amount
        logger.info("Owner withdrawal from %s: %s", self.vault_id, format_sui(amount))
        self._emit(EventType.OWNER_WITHDRAWAL, now, amount=amount, balance=self.balance)
        return amount

    def withdraw_all(self, owner_cap: Capability, now: Optional[int] = None) -> int:
        """Drain the balance and return exactly what was held."""
        self._require_owner(owner_cap)
        amount = self.balance
        self.balance = 0
        logger.info("Owner drained %s: %s", self.vault_id, format_sui(amount))
        self._emit(
            EventType.OWNER_WITHDRAWAL,
            now,
            amount=amount,
            balance=0,
            details={"full": True},
        )
        return amount

    def update_policy(self, owner_cap: Capability, policy: Policy, now: Optional[int] = None) -> None:
        """Replace the policy whole. Counters and the registry are kept."""
        self._require_owner(owner_cap)
        if not isinstance(policy, Policy):
            raise TypeError(f"policy must be a Policy, got {type(policy).__name__}")
        self.policy = policy
        logger.info("Policy replaced on %s", self.vault_id)
        self._emit(
            EventType.POLICY_UPDATED,
            now,
            total_spent=self.total_spent,
            remaining_budget=self.remaining_budget,
            details={"policy": policy.to_dict()},
        )

    def reset_counters(self, owner_cap: Capability, now: Optional[int] = None) -> None:
        self._require_owner(owner_cap)
        self.total_spent = 0
        self.operation_count = 0
        self.last_operation_time = NEVER
        logger.info("Spend counters reset on %s", self.vault_id)
        self._emit(
            EventType.COUNTERS_RESET,
            now,
            total_spent=0,
            remaining_budget=self.remaining_budget,
            operation_count=0,
        )

    def mint_agent_cap(
        self,
        owner_cap: Capability,
        recipient: str,
        now: Optional[int] = None,
    ) -> Capability:
        """Mint an agent capability for ``recipient`` and authorize it."""
        self._require_owner(owner_cap)
        cap = new_agent_cap(self.vault_id)
        self.authorized_caps.add(cap.cap_id)
        logger.info("Agent capability %s minted on %s for %s", cap.cap_id, self.vault_id, recipient)
        self._emit(EventType.AGENT_CAP_MINTED, now, cap_id=cap.cap_id, recipient=recipient)
        return cap

    def revoke_agent_cap(self, owner_cap: Capability, cap_id: str, now: Optional[int] = None) -> None:
        """Remove an agent capability from the registry for good."""
        self._require_owner(owner_cap)
        if cap_id not in self.authorized_caps:
            raise InvalidCapabilityError(
                f"Capability {cap_id} is not authorized on vault {self.vault_id}"
            )
        self.authorized_caps.discard(cap_id)
        logger.info("Agent capability %s revoked on %s", cap_id, self.vault_id)
        self._emit(EventType.AGENT_CAP_REVOKED, now, cap_id=cap_id)

    # ── Delegated withdrawal ──────────────────────────────────────

    def agent_withdraw(self, agent_cap: Capability, amount: int, action: int, now: int) -> int:
        """
        Withdraw ``amount`` under the vault policy.

        Raises the ``VaultError`` subclass of the first failing rule; no field
        changes unless every rule passes.
        """
        if not isinstance(agent_cap, Capability):
            raise TypeError(f"agent_cap must be a Capability, got {type(agent_cap).__name__}")
        require_uint("amount", amount)
        require_uint("now", now)
        if isinstance(action, bool) or not isinstance(action, int):
            raise TypeError(f"action must be an int, got {type(action).__name__}")

        outcome = evaluate(self, action, now, amount=amount, capability=agent_cap)
        if outcome.failure is not None:
            logger.info(
                "Agent withdrawal denied on %s (%s): %s",
                self.vault_id,
                outcome.failure.value,
                outcome.reason,
            )
            raise error_for(outcome.failure, outcome.reason)

        self.balance -= amount
        self.total_spent += amount
        self.last_operation_time = now
        self.operation_count += 1

        logger.info(
            "Agent withdrawal on %s: %s for %s (spent %s of %s)",
            self.vault_id,
            format_sui(amount),
            action_label(action),
            format_sui(self.total_spent),
            format_sui(self.policy.max_budget),
        )
        self._emit(
            EventType.AGENT_WITHDRAWAL,
            now,
            cap_id=agent_cap.cap_id,
            amount=amount,
            action=int(action),
            total_spent=self.total_spent,
            remaining_budget=self.remaining_budget,
            operation_count=self.operation_count,
            balance=self.balance,
        )
        return amount


def create_vault(
    owner: str,
    deposit: int,
    policy: Policy,
    now: Optional[int] = None,
    sink: Optional[EventSink] = None,
) -> tuple[Vault, Capability]:
    """Create a vault funded with ``deposit`` and return it with its owner capability."""
    require_uint("deposit", deposit)
    if not isinstance(policy, Policy):
        raise TypeError(f"policy must be a Policy, got {type(policy).__name__}")

    vault = Vault(
        vault_id=new_object_id(),
        owner=owner,
        balance=deposit,
        policy=policy,
        sink=sink,
    )
    owner_cap = new_owner_cap(vault.vault_id)
    logger.info("Vault created: %s (owner %s, %s)", vault.vault_id, owner, format_sui(deposit))
    vault._emit(
        EventType.VAULT_CREATED,
        now,
        cap_id=owner_cap.cap_id,
        amount=deposit,
        balance=deposit,
        remaining_budget=vault.remaining_budget,
        recipient=owner,
        details={"policy": policy.to_dict()},
    )
    return vault, owner_cap


def summarize(vault: VaultSnapshot | Vault, now: Optional[int] = None) -> dict:
    """Human-readable summary of a vault's budget state."""
    now = int(time.time() * 1000) if now is None else now
    policy = vault.policy
    utilization = (
        f"{(vault.total_spent / policy.max_budget * 100):.1f}%"
        if policy.max_budget > 0
        else "N/A"
    )
    return {
        "vault_id": vault.vault_id,
        "owner": vault.owner,
        "balance": format_sui(vault.balance),
        "total_spent": format_sui(vault.total_spent),
        "total_budget": format_sui(policy.max_budget),
        "remaining": format_sui(remaining_budget(policy, vault.total_spent)),
        "max_per_operation": format_sui(policy.max_per_operation),
        "utilization": utilization,
        "operations": vault.operation_count,
        "allowed_actions": [action_label(a) for a in sorted(policy.allowed_actions)],
        "expired": policy.is_expired(now),
        "cooldown_remaining_ms": cooldown_remaining(vault, now),
        "authorized_caps": len(vault.authorized_caps),
    }
