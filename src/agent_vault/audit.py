"""
Audit events for vault state transitions.

Every successful mutating operation emits exactly one ``VaultEvent``. Events
go to a sink: ``EventLog`` keeps them in memory, ``AuditTrail`` appends them
to JSONL with an HMAC hash chain so tampering is detected during reads.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file, vault_home


class EventType(str, Enum):
    VAULT_CREATED = "vault_created"
    DEPOSITED = "deposited"
    OWNER_WITHDRAWAL = "owner_withdrawal"
    POLICY_UPDATED = "policy_updated"
    COUNTERS_RESET = "counters_reset"
    AGENT_CAP_MINTED = "agent_cap_minted"
    AGENT_CAP_REVOKED = "agent_cap_revoked"
    AGENT_WITHDRAWAL = "agent_withdrawal"


@dataclass(frozen=True)
class VaultEvent:
    """A single state transition of one vault."""

    event_type: str
    vault_id: str
    timestamp: Optional[int] = None
    cap_id: Optional[str] = None
    amount: Optional[int] = None
    action: Optional[int] = None
    total_spent: Optional[int] = None
    remaining_budget: Optional[int] = None
    operation_count: Optional[int] = None
    balance: Optional[int] = None
    recipient: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: dict) -> VaultEvent:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


class EventSink(Protocol):
    def emit(self, event: VaultEvent) -> None: ...


class EventLog:
    """In-memory, append-only event sink."""

    def __init__(self) -> None:
        self._events: list[VaultEvent] = []

    def emit(self, event: VaultEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[VaultEvent]:
        return list(self._events)

    def for_vault(self, vault_id: str) -> list[VaultEvent]:
        return [e for e in self._events if e.vault_id == vault_id]

    def __iter__(self) -> Iterator[VaultEvent]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)


def default_audit_path() -> Path:
    override = os.getenv("AGENT_VAULT_AUDIT_PATH")
    return Path(override) if override else vault_home() / "audit.jsonl"


def default_audit_key_path() -> Path:
    return vault_home() / ".secrets" / "audit_hmac.key"


class AuditTrail:
    """Tamper-evident append-only audit log.

    Any number of instances, in any number of processes, may share one file.
    Each append takes an exclusive lock on the file and chains onto the last
    record actually on disk.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or default_audit_path()
        self.key_path = key_path or default_audit_key_path()

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._hmac_key = self._resolve_key()

    def _resolve_key(self) -> bytes:
        env_key = os.getenv("AGENT_VAULT_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        with open(self.key_path, "r+b") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                key = f.read().strip()
                if not key:
                    key = secrets.token_hex(32).encode()
                    f.write(key)
                    f.flush()
                    os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        return key

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    @staticmethod
    def _chain_head(text: str) -> str:
        for line in reversed(text.splitlines()):
            if line.strip():
                return json.loads(line).get("event_hash", "")
        return ""

    def emit(self, event: VaultEvent) -> None:
        payload = event.to_dict()
        with open(self.path, "a+", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.seek(0)
                prev_hash = self._chain_head(f.read())
                record = dict(payload)
                if prev_hash:
                    record["prev_hash"] = prev_hash
                record["event_hash"] = self._event_hash(payload, prev_hash)

                f.seek(0, os.SEEK_END)
                f.write(json.dumps(record, separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        ensure_private_file(self.path)

    def _verified_payloads(self) -> Iterator[dict]:
        """Yield every record's payload in order, checking each chain link."""
        with open(self.path, "r", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                lines = f.read().splitlines()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        expected_prev = ""
        for line in lines:
            if not line.strip():
                continue
            raw = json.loads(line)
            prev_hash = raw.pop("prev_hash", "") or ""
            event_hash = raw.pop("event_hash", "") or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._event_hash(raw, prev_hash), event_hash):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = event_hash
            yield raw

    def read_events(
        self,
        vault_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[VaultEvent]:
        """Verify the whole chain and return the last ``limit`` matching events, oldest first."""
        events = [
            VaultEvent.from_dict(payload)
            for payload in self._verified_payloads()
            if (vault_id is None or payload.get("vault_id") == vault_id)
            and (event_type is None or payload.get("event_type") == event_type.value)
        ]
        return events[-limit:]

    def summary(self, vault_id: Optional[str] = None) -> dict:
        events = self.read_events(vault_id=vault_id, limit=10000)
        by_type: dict[str, int] = {}
        withdrawn = 0
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.AGENT_WITHDRAWAL.value:
                withdrawn += e.amount or 0
        return {
            "total_events": len(events),
            "by_type": by_type,
            "agent_withdrawn": withdrawn,
            "last_event": events[-1].to_json() if events else None,
        }
