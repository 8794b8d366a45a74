"""
Bearer capabilities and object identifiers.

Holding a capability is the proof of authority: an owner capability gates
vault administration, an agent capability gates delegated withdrawals for
as long as its id stays in the vault's registry.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from enum import Enum


_HEX_ID_RE = re.compile(r"^0x[a-fA-F0-9]{1,64}$")


class CapabilityKind(str, Enum):
    OWNER = "owner"
    AGENT = "agent"


def new_object_id() -> str:
    """Fresh random 32-byte object id; ids are never reused."""
    return "0x" + secrets.token_hex(32)


def normalize_address(value: str) -> str:
    """Normalize an address or object id to lowercase, zero-padded 32-byte hex."""
    candidate = value.strip()
    if not _HEX_ID_RE.match(candidate):
        raise ValueError(f"Invalid address: {value}")
    return "0x" + candidate[2:].lower().rjust(64, "0")


@dataclass(frozen=True)
class Capability:
    """An owner or agent capability bound to one vault."""

    cap_id: str
    vault_id: str
    kind: CapabilityKind

    @property
    def is_owner(self) -> bool:
        return self.kind is CapabilityKind.OWNER

    @property
    def is_agent(self) -> bool:
        return self.kind is CapabilityKind.AGENT

    def bound_to(self, vault_id: str) -> bool:
        return self.vault_id == vault_id

    def to_dict(self) -> dict:
        return {
            "cap_id": self.cap_id,
            "vault_id": self.vault_id,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Capability:
        return cls(
            cap_id=d["cap_id"],
            vault_id=d["vault_id"],
            kind=CapabilityKind(d["kind"]),
        )


def new_owner_cap(vault_id: str) -> Capability:
    return Capability(cap_id=new_object_id(), vault_id=vault_id, kind=CapabilityKind.OWNER)


def new_agent_cap(vault_id: str) -> Capability:
    return Capability(cap_id=new_object_id(), vault_id=vault_id, kind=CapabilityKind.AGENT)
