"""Tests for the file-backed local ledger."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from agent_vault.audit import AuditTrail
from agent_vault.errors import (
    BudgetExceededError,
    CapabilityNotHeldError,
    CooldownActiveError,
    InvalidCapabilityError,
    NotOwnerError,
    ObjectNotFoundError,
    VaultError,
)
from agent_vault.ledger import LocalLedger
from agent_vault.policy import ActionType, create_policy


OWNER = "0x" + "a" * 64
AGENT = "0x" + "b" * 64
STRANGER = "0x" + "c" * 64
START = 1_700_000_000_000


def make_policy(**kwargs):
    defaults = dict(
        max_budget=5,
        max_per_operation=1,
        allowed_actions=[ActionType.SWAP],
        cooldown_ms=60_000,
        expires_at=START + 86_400_000,
    )
    defaults.update(kwargs)
    return create_policy(**defaults)


def make_ledger(tmp_path, clock_start=START):
    clock = [clock_start]
    ledger = LocalLedger(
        tmp_path / "ledger_state.json",
        audit=AuditTrail(
            path=tmp_path / "audit.jsonl",
            key_path=tmp_path / "secret" / "audit_hmac.key",
        ),
        clock=lambda: clock[0],
    )
    return ledger, clock


def make_delegated_vault(ledger, balance=10, **policy_kwargs):
    vault_id, owner_cap = ledger.create_vault(OWNER, balance, make_policy(**policy_kwargs))
    agent_cap = ledger.mint_agent_cap(OWNER, vault_id, owner_cap, AGENT)
    return vault_id, owner_cap, agent_cap


class TestLocalLedger:
    def test_create_vault_persists_state(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap = ledger.create_vault(OWNER, 10, make_policy())

        reopened, _ = make_ledger(tmp_path)
        snapshot = reopened.get_vault(vault_id)
        assert snapshot.balance == 10
        assert snapshot.owner == OWNER
        assert reopened.holder_of(owner_cap) == OWNER
        assert reopened.get_capability(owner_cap).is_owner

    def test_scenario_uses_ledger_clock(self, tmp_path):
        ledger, clock = make_ledger(tmp_path)
        vault_id, _, agent_cap = make_delegated_vault(ledger)

        for _ in range(5):
            ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)
            clock[0] += 60_001

        assert ledger.get_vault(vault_id).total_spent == 5
        with pytest.raises(BudgetExceededError):
            ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)

    def test_failed_operation_leaves_file_untouched(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, _, agent_cap = make_delegated_vault(ledger)
        ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)
        before = (tmp_path / "ledger_state.json").read_text()
        events_before = len(ledger.vault_events(vault_id))

        with pytest.raises(CooldownActiveError):
            ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)

        assert (tmp_path / "ledger_state.json").read_text() == before
        assert len(ledger.vault_events(vault_id)) == events_before

    def test_sender_must_hold_capability(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger)

        with pytest.raises(CapabilityNotHeldError):
            ledger.agent_withdraw(STRANGER, vault_id, agent_cap, 1, ActionType.SWAP)
        with pytest.raises(CapabilityNotHeldError):
            ledger.withdraw_all(AGENT, vault_id, owner_cap)
        assert ledger.get_vault(vault_id).balance == 10

    def test_unknown_objects(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, _ = make_delegated_vault(ledger)

        with pytest.raises(ObjectNotFoundError):
            ledger.get_vault("0x" + "9" * 64)
        with pytest.raises(ObjectNotFoundError):
            ledger.deposit(OWNER, vault_id, "0x" + "9" * 64, 1)
        with pytest.raises(ObjectNotFoundError):
            ledger.deposit(OWNER, "0x" + "9" * 64, owner_cap, 1)

    def test_owner_cap_of_other_vault_is_not_owner(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, _, _ = make_delegated_vault(ledger)
        _, other_owner_cap = ledger.create_vault(OWNER, 1, make_policy())

        with pytest.raises(NotOwnerError):
            ledger.withdraw(OWNER, vault_id, other_owner_cap, 1)

    def test_transferred_agent_cap_moves_authority(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, _, agent_cap = make_delegated_vault(ledger)

        ledger.transfer_cap(AGENT, agent_cap, STRANGER)
        assert ledger.holder_of(agent_cap) == STRANGER
        with pytest.raises(CapabilityNotHeldError):
            ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)
        assert ledger.agent_withdraw(STRANGER, vault_id, agent_cap, 1, ActionType.SWAP) == 1

    def test_transferred_owner_cap_moves_vault_control(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, _ = make_delegated_vault(ledger)

        ledger.transfer_cap(OWNER, owner_cap, STRANGER)
        assert [v.vault_id for v in ledger.owned_vaults(STRANGER)] == [vault_id]
        assert ledger.owned_vaults(OWNER) == []
        assert ledger.withdraw_all(STRANGER, vault_id, owner_cap) == 10

    def test_revoked_cap_still_exists_but_is_rejected(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger)

        ledger.revoke_agent_cap(OWNER, vault_id, owner_cap, agent_cap)
        assert ledger.holder_of(agent_cap) == AGENT
        assert agent_cap not in ledger.get_vault(vault_id).authorized_caps
        with pytest.raises(InvalidCapabilityError):
            ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)

    def test_capability_queries(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger)

        assert [c.cap_id for c in ledger.owner_caps(OWNER)] == [owner_cap]
        assert [c.cap_id for c in ledger.agent_caps(AGENT)] == [agent_cap]
        assert ledger.agent_caps(OWNER) == []
        assert ledger.get_capability(agent_cap).vault_id == vault_id

    def test_addresses_are_normalized(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap = ledger.create_vault("0xABC", 3, make_policy())

        assert ledger.holder_of(owner_cap) == "0x" + "0" * 61 + "abc"
        assert ledger.withdraw("0xabc", vault_id.upper().replace("0X", "0x"), owner_cap, 1) == 1

    def test_owner_operations_round_trip_through_file(self, tmp_path):
        ledger, clock = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger, max_budget=1)

        ledger.deposit(OWNER, vault_id, owner_cap, 5)
        ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)
        ledger.reset_counters(OWNER, vault_id, owner_cap)
        ledger.update_policy(OWNER, vault_id, owner_cap, make_policy(max_budget=3, allowed_actions=[0, 1]))
        clock[0] += 1

        snapshot = ledger.get_vault(vault_id)
        assert snapshot.balance == 14
        assert snapshot.total_spent == 0
        assert snapshot.operation_count == 0
        assert snapshot.policy.allowed_actions == frozenset({0, 1})
        assert ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.STABLE_MINT) == 1

    def test_vault_events_newest_first(self, tmp_path):
        ledger, clock = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger)
        clock[0] += 1_000
        ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP)
        ledger.create_vault(OWNER, 1, make_policy())

        events = ledger.vault_events(vault_id)
        assert [e.event_type for e in events] == [
            "agent_withdrawal",
            "agent_cap_minted",
            "vault_created",
        ]
        assert events[0].timestamp == START + 1_000
        assert len(ledger.vault_events(vault_id, limit=1)) == 1

    def test_independent_instances_share_one_audit_chain(self, tmp_path):
        first, _ = make_ledger(tmp_path)
        second, _ = make_ledger(tmp_path)
        vault_id, owner_cap = first.create_vault(OWNER, 10, make_policy())

        second.deposit(OWNER, vault_id, owner_cap, 1)
        first.deposit(OWNER, vault_id, owner_cap, 2)
        second.deposit(OWNER, vault_id, owner_cap, 3)

        assert [e.amount for e in first.vault_events(vault_id)] == [3, 2, 1, 10]
        assert [e.amount for e in second.vault_events(vault_id)] == [3, 2, 1, 10]
        assert first.get_vault(vault_id).balance == 16

    def test_state_file_layout(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, owner_cap, agent_cap = make_delegated_vault(ledger)

        state = json.loads((tmp_path / "ledger_state.json").read_text())
        assert set(state) == {"vaults", "objects"}
        assert state["vaults"][vault_id]["authorized_caps"] == [agent_cap]
        assert state["objects"][owner_cap]["kind"] == "owner"
        assert state["objects"][agent_cap]["holder"] == AGENT

    def test_concurrent_withdrawals_never_exceed_budget(self, tmp_path):
        ledger, _ = make_ledger(tmp_path)
        vault_id, _, agent_cap = make_delegated_vault(ledger, balance=100, max_budget=7, cooldown_ms=0)

        def attempt(_):
            try:
                return ledger.agent_withdraw(AGENT, vault_id, agent_cap, 1, ActionType.SWAP, now=START)
            except VaultError:
                return 0

        with ThreadPoolExecutor(max_workers=8) as pool:
            withdrawn = sum(pool.map(attempt, range(20)))

        snapshot = ledger.get_vault(vault_id)
        assert withdrawn == 7
        assert snapshot.total_spent == 7
        assert snapshot.balance == 93
        assert snapshot.operation_count == 7
