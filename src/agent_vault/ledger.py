"""File-backed stand-in for the ledger that hosts vaults and capability objects."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .audit import AuditTrail, EventLog, VaultEvent
from .capability import Capability, CapabilityKind, normalize_address
from .errors import CapabilityNotHeldError, ObjectNotFoundError
from .policy import Policy
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file, vault_home
from .vault import Vault, VaultSnapshot, create_vault

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_ledger_path() -> Path:
    override = os.getenv("AGENT_VAULT_LEDGER_PATH")
    return Path(override) if override else vault_home() / "ledger_state.json"


def _system_clock_ms() -> int:
    return int(time.time() * 1000)


class LocalLedger:
    """Local execution environment for vault operations.

    Every operation runs as one exclusive load -> execute -> persist cycle,
    so operations on a vault are serialized and a failed operation leaves no
    trace. Capability objects have a holder; presenting a capability the
    sender does not hold is rejected before the vault sees it.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.path = path or default_ledger_path()
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".ledger.lock"
        ensure_private_file(self._lock_path)
        self.audit = audit or AuditTrail(
            path=self.path.parent / "audit.jsonl",
            key_path=self.path.parent / ".secrets" / "audit_hmac.key",
        )
        self.clock = clock or _system_clock_ms
        if not self.path.exists():
            atomic_write_json(self.path, {"vaults": {}, "objects": {}})

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _save_state(self, state: dict) -> None:
        atomic_write_json(self.path, state)

    def _held_cap(self, state: dict, sender: str, cap_id: str) -> Capability:
        record = state["objects"].get(normalize_address(cap_id))
        if record is None:
            raise ObjectNotFoundError(f"Capability not found: {cap_id}")
        if record["holder"] != sender:
            raise CapabilityNotHeldError(record["cap_id"], sender)
        return Capability.from_dict(record)

    def _execute(
        self,
        vault_id: str,
        operation: Callable[[Vault, dict], T],
    ) -> T:
        normalized_vault_id = normalize_address(vault_id)
        with self._lock():
            state = self._load_state()
            record = state["vaults"].get(normalized_vault_id)
            if record is None:
                raise ObjectNotFoundError(f"Vault not found: {vault_id}")

            pending = EventLog()
            vault = Vault.from_snapshot(VaultSnapshot.from_dict(record), sink=pending)
            result = operation(vault, state)

            state["vaults"][normalized_vault_id] = vault.snapshot().to_dict()
            self._save_state(state)
            for event in pending:
                self.audit.emit(event)
        return result

    def _now(self, now: Optional[int]) -> int:
        return self.clock() if now is None else now

    # ── Owner operations ──────────────────────────────────────────

    def create_vault(
        self,
        sender: str,
        deposit: int,
        policy: Policy,
        now: Optional[int] = None,
    ) -> tuple[str, str]:
        """Create a vault owned by ``sender``; returns (vault_id, owner_cap_id)."""
        owner = normalize_address(sender)
        stamp = self._now(now)
        with self._lock():
            state = self._load_state()
            pending = EventLog()
            vault, owner_cap = create_vault(owner, deposit, policy, now=stamp, sink=pending)
            state["vaults"][vault.vault_id] = vault.snapshot().to_dict()
            state["objects"][owner_cap.cap_id] = {**owner_cap.to_dict(), "holder": owner}
            self._save_state(state)
            for event in pending:
                self.audit.emit(event)
        logger.info("Ledger created vault %s for %s", vault.vault_id, owner)
        return vault.vault_id, owner_cap.cap_id

    def deposit(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        amount: int,
        now: Optional[int] = None,
    ) -> None:
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> None:
            vault.deposit(self._held_cap(state, sender, owner_cap_id), amount, now=stamp)

        self._execute(vault_id, op)

    def withdraw(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        amount: int,
        now: Optional[int] = None,
    ) -> int:
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> int:
            return vault.withdraw(self._held_cap(state, sender, owner_cap_id), amount, now=stamp)

        return self._execute(vault_id, op)

    def withdraw_all(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        now: Optional[int] = None,
    ) -> int:
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> int:
            return vault.withdraw_all(self._held_cap(state, sender, owner_cap_id), now=stamp)

        return self._execute(vault_id, op)

    def update_policy(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        policy: Policy,
        now: Optional[int] = None,
    ) -> None:
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> None:
            vault.update_policy(self._held_cap(state, sender, owner_cap_id), policy, now=stamp)

        self._execute(vault_id, op)

    def reset_counters(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        now: Optional[int] = None,
    ) -> None:
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> None:
            vault.reset_counters(self._held_cap(state, sender, owner_cap_id), now=stamp)

        self._execute(vault_id, op)

    def mint_agent_cap(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        recipient: str,
        now: Optional[int] = None,
    ) -> str:
        """Mint an agent capability and hand it to ``recipient``; returns its id."""
        sender = normalize_address(sender)
        holder = normalize_address(recipient)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> str:
            cap = vault.mint_agent_cap(self._held_cap(state, sender, owner_cap_id), holder, now=stamp)
            state["objects"][cap.cap_id] = {**cap.to_dict(), "holder": holder}
            return cap.cap_id

        return self._execute(vault_id, op)

    def revoke_agent_cap(
        self,
        sender: str,
        vault_id: str,
        owner_cap_id: str,
        cap_id: str,
        now: Optional[int] = None,
    ) -> None:
        sender = normalize_address(sender)
        target = normalize_address(cap_id)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> None:
            vault.revoke_agent_cap(self._held_cap(state, sender, owner_cap_id), target, now=stamp)

        self._execute(vault_id, op)

    # ── Agent operations ──────────────────────────────────────────

    def agent_withdraw(
        self,
        sender: str,
        vault_id: str,
        agent_cap_id: str,
        amount: int,
        action: int,
        now: Optional[int] = None,
    ) -> int:
        """Delegated withdrawal; the ledger clock is used unless ``now`` is given."""
        sender = normalize_address(sender)
        stamp = self._now(now)

        def op(vault: Vault, state: dict) -> int:
            cap = self._held_cap(state, sender, agent_cap_id)
            return vault.agent_withdraw(cap, amount, action, stamp)

        return self._execute(vault_id, op)

    # ── Capability objects ────────────────────────────────────────

    def transfer_cap(self, sender: str, cap_id: str, recipient: str) -> None:
        """Hand a held capability to another principal."""
        sender = normalize_address(sender)
        holder = normalize_address(recipient)
        with self._lock():
            state = self._load_state()
            cap = self._held_cap(state, sender, cap_id)
            state["objects"][cap.cap_id]["holder"] = holder
            self._save_state(state)
        logger.info("Capability %s transferred from %s to %s", cap.cap_id, sender, holder)

    # ── Queries ───────────────────────────────────────────────────

    def get_vault(self, vault_id: str) -> VaultSnapshot:
        with self._lock():
            state = self._load_state()
        record = state["vaults"].get(normalize_address(vault_id))
        if record is None:
            raise ObjectNotFoundError(f"Vault not found: {vault_id}")
        return VaultSnapshot.from_dict(record)

    def get_capability(self, cap_id: str) -> Capability:
        with self._lock():
            state = self._load_state()
        record = state["objects"].get(normalize_address(cap_id))
        if record is None:
            raise ObjectNotFoundError(f"Capability not found: {cap_id}")
        return Capability.from_dict(record)

    def holder_of(self, cap_id: str) -> str:
        with self._lock():
            state = self._load_state()
        record = state["objects"].get(normalize_address(cap_id))
        if record is None:
            raise ObjectNotFoundError(f"Capability not found: {cap_id}")
        return record["holder"]

    def _caps_held_by(self, address: str, kind: CapabilityKind) -> list[Capability]:
        holder = normalize_address(address)
        with self._lock():
            state = self._load_state()
        return [
            Capability.from_dict(record)
            for record in state["objects"].values()
            if record["holder"] == holder and record["kind"] == kind.value
        ]

    def owner_caps(self, address: str) -> list[Capability]:
        return self._caps_held_by(address, CapabilityKind.OWNER)

    def agent_caps(self, address: str) -> list[Capability]:
        return self._caps_held_by(address, CapabilityKind.AGENT)

    def owned_vaults(self, address: str) -> list[VaultSnapshot]:
        """Vaults controllable by ``address`` through the owner capabilities it holds."""
        return [self.get_vault(cap.vault_id) for cap in self.owner_caps(address)]

    def vault_events(self, vault_id: str, limit: int = 50) -> list[VaultEvent]:
        """Most recent events of one vault, newest first."""
        events = self.audit.read_events(vault_id=normalize_address(vault_id), limit=limit)
        return list(reversed(events))
