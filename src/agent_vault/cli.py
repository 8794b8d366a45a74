"""
Agent Vault CLI: delegated vault management for AI agents.

Commands:
    agent-vault create          Create a funded vault with a policy
    agent-vault deposit         Add funds (owner)
    agent-vault withdraw        Withdraw funds (owner)
    agent-vault policy          Replace the vault policy (owner)
    agent-vault reset           Reset spend counters (owner)
    agent-vault cap ...         Mint, revoke, transfer and list capabilities
    agent-vault agent-withdraw  Delegated withdrawal (agent)
    agent-vault check           Off-ledger policy pre-check
    agent-vault show            Vault state and budget summary
    agent-vault vaults          Vaults controlled by an address
    agent-vault events          Vault audit events
    agent-vault demo            Run a full demo flow
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click

from .audit import AuditTrail
from .capability import new_object_id
from .errors import VaultError
from .ledger import LocalLedger, default_ledger_path
from .money import format_sui, sui_to_mist
from .policy import ActionType, Policy, action_label, create_policy
from .precheck import check_policy
from .vault import summarize


def _ledger() -> LocalLedger:
    return LocalLedger(default_ledger_path(), audit=AuditTrail())


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_duration_to_ms(value: str) -> int:
    raw = value.strip().lower()
    if raw in {"0", "none"}:
        return 0
    if raw.endswith("ms") and raw[:-2].isdigit():
        return int(raw[:-2])
    units = {"s": 1_000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 500ms, 60s, 72h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _parse_action(value: str) -> int:
    raw = value.strip()
    if raw.isdigit():
        return int(raw)
    key = raw.upper().replace("-", "_").replace(" ", "_")
    if key in ActionType.__members__:
        return int(ActionType[key])
    raise ValueError(f"Unknown action: {value}")


def _parse_actions(value: str) -> list[int]:
    if not value.strip():
        return []
    return [_parse_action(item) for item in value.split(",") if item.strip()]


def _format_ms(ms: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ms / 1000))


def _build_policy(max_budget: str, max_per_op: str, actions: str, cooldown: str, expires_in: str) -> Policy:
    return create_policy(
        max_budget=sui_to_mist(max_budget),
        max_per_operation=sui_to_mist(max_per_op),
        allowed_actions=_parse_actions(actions),
        cooldown_ms=_parse_duration_to_ms(cooldown),
        expires_at=_now_ms() + _parse_duration_to_ms(expires_in),
    )


def _fail(prefix: str, exc: Exception) -> None:
    kind = getattr(exc, "kind", None)
    label = f" [{kind.value}]" if kind is not None else ""
    click.echo(f"❌ {prefix}{label}: {exc}", err=True)
    sys.exit(1)


def _require_sender(sender: Optional[str]) -> str:
    if not sender:
        click.echo("❌ --sender is required (or set AGENT_VAULT_SENDER)", err=True)
        sys.exit(1)
    return sender


sender_option = click.option(
    "--sender",
    default=lambda: os.getenv("AGENT_VAULT_SENDER"),
    show_default="env AGENT_VAULT_SENDER",
    help="Address of the principal submitting the operation",
)


def policy_options(func):
    func = click.option("--expires-in", default="30d", help="Policy lifetime (e.g. 72h, 30d)")(func)
    func = click.option("--cooldown", default="60s", help="Minimum spacing between agent withdrawals")(func)
    func = click.option("--actions", default="0", help="Comma-separated allowed action tags or names")(func)
    func = click.option("--max-per-op", required=True, help="Per-operation ceiling (SUI)")(func)
    func = click.option("--max-budget", required=True, help="Total delegated budget (SUI)")(func)
    return func


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log engine decisions to stderr")
def main(verbose: bool):
    """Agent Vault: bounded, revocable spending delegation for AI agents."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


@main.command()
@sender_option
@click.option("--deposit", "deposit_sui", required=True, help="Initial deposit (SUI)")
@policy_options
def create(
    sender: Optional[str],
    deposit_sui: str,
    max_budget: str,
    max_per_op: str,
    actions: str,
    cooldown: str,
    expires_in: str,
):
    """Create a funded vault and receive its owner capability."""
    sender = _require_sender(sender)
    try:
        policy = _build_policy(max_budget, max_per_op, actions, cooldown, expires_in)
        vault_id, owner_cap_id = _ledger().create_vault(sender, sui_to_mist(deposit_sui), policy)
    except (VaultError, ValueError, TypeError) as exc:
        _fail("Failed to create vault", exc)
        return

    click.echo(f"✅ Vault created: {vault_id}")
    click.echo(f"   Owner cap: {owner_cap_id}")
    click.echo(f"   Budget:    {format_sui(policy.max_budget)} total, {format_sui(policy.max_per_operation)}/op")
    click.echo(f"   Actions:   {', '.join(action_label(a) for a in sorted(policy.allowed_actions)) or 'none'}")
    click.echo(f"   Cooldown:  {policy.cooldown_ms}ms")
    click.echo(f"   Expires:   {_format_ms(policy.expires_at)}")


@main.command()
@click.argument("vault_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
@click.option("--amount", required=True, help="Amount (SUI)")
def deposit(vault_id: str, sender: Optional[str], owner_cap: str, amount: str):
    """Deposit funds into a vault."""
    sender = _require_sender(sender)
    try:
        mist = sui_to_mist(amount)
        _ledger().deposit(sender, vault_id, owner_cap, mist)
    except (VaultError, ValueError, TypeError) as exc:
        _fail("Deposit failed", exc)
        return
    click.echo(f"✅ Deposited {format_sui(mist)}")


@main.command()
@click.argument("vault_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
@click.option("--amount", default=None, help="Amount (SUI)")
@click.option("--all", "drain", is_flag=True, default=False, help="Withdraw the entire balance")
def withdraw(vault_id: str, sender: Optional[str], owner_cap: str, amount: Optional[str], drain: bool):
    """Owner withdrawal (partial, or everything with --all)."""
    sender = _require_sender(sender)
    if drain == (amount is not None):
        click.echo("❌ Pass exactly one of --amount or --all", err=True)
        sys.exit(1)
    ledger = _ledger()
    try:
        if drain:
            withdrawn = ledger.withdraw_all(sender, vault_id, owner_cap)
        else:
            withdrawn = ledger.withdraw(sender, vault_id, owner_cap, sui_to_mist(amount))
    except (VaultError, ValueError, TypeError) as exc:
        _fail("Withdrawal failed", exc)
        return
    click.echo(f"✅ Withdrew {format_sui(withdrawn)}")


@main.command("policy")
@click.argument("vault_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
@policy_options
def policy_cmd(
    vault_id: str,
    sender: Optional[str],
    owner_cap: str,
    max_budget: str,
    max_per_op: str,
    actions: str,
    cooldown: str,
    expires_in: str,
):
    """Replace the vault policy. Spend counters are kept."""
    sender = _require_sender(sender)
    try:
        policy = _build_policy(max_budget, max_per_op, actions, cooldown, expires_in)
        _ledger().update_policy(sender, vault_id, owner_cap, policy)
    except (VaultError, ValueError, TypeError) as exc:
        _fail("Policy update failed", exc)
        return
    click.echo(f"✅ Policy replaced on {vault_id}")


@main.command()
@click.argument("vault_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
def reset(vault_id: str, sender: Optional[str], owner_cap: str):
    """Reset spent total, operation count and cooldown clock."""
    sender = _require_sender(sender)
    try:
        _ledger().reset_counters(sender, vault_id, owner_cap)
    except (VaultError, ValueError) as exc:
        _fail("Reset failed", exc)
        return
    click.echo(f"✅ Counters reset on {vault_id}")


@main.group("cap")
def cap_group():
    """Capability operations."""
    pass


@cap_group.command("mint")
@click.argument("vault_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
@click.option("--agent", required=True, help="Address receiving the agent capability")
def cap_mint(vault_id: str, sender: Optional[str], owner_cap: str, agent: str):
    """Mint an agent capability for an address."""
    sender = _require_sender(sender)
    try:
        cap_id = _ledger().mint_agent_cap(sender, vault_id, owner_cap, agent)
    except (VaultError, ValueError) as exc:
        _fail("Failed to mint agent capability", exc)
        return
    click.echo(f"✓ Agent cap minted: {cap_id}")
    click.echo(f"  Holder: {agent}")


@cap_group.command("revoke")
@click.argument("vault_id")
@click.argument("cap_id")
@sender_option
@click.option("--owner-cap", required=True, help="Owner capability id")
def cap_revoke(vault_id: str, cap_id: str, sender: Optional[str], owner_cap: str):
    """Revoke an agent capability permanently."""
    sender = _require_sender(sender)
    try:
        _ledger().revoke_agent_cap(sender, vault_id, owner_cap, cap_id)
    except (VaultError, ValueError) as exc:
        _fail("Failed to revoke agent capability", exc)
        return
    click.echo(f"✓ Agent cap revoked: {cap_id}")


@cap_group.command("transfer")
@click.argument("cap_id")
@sender_option
@click.option("--to", "recipient", required=True, help="New holder address")
def cap_transfer(cap_id: str, sender: Optional[str], recipient: str):
    """Give a held capability to another address."""
    sender = _require_sender(sender)
    try:
        _ledger().transfer_cap(sender, cap_id, recipient)
    except (VaultError, ValueError) as exc:
        _fail("Transfer failed", exc)
        return
    click.echo(f"✓ Capability {cap_id} transferred to {recipient}")


@cap_group.command("list")
@sender_option
def cap_list(sender: Optional[str]):
    """List capabilities held by an address."""
    sender = _require_sender(sender)
    ledger = _ledger()
    try:
        owner_caps = ledger.owner_caps(sender)
        agent_caps = ledger.agent_caps(sender)
    except ValueError as exc:
        _fail("Failed to list capabilities", exc)
        return

    if not owner_caps and not agent_caps:
        click.echo("No capabilities found")
        return
    for cap in owner_caps:
        click.echo(f"owner  {cap.cap_id}  vault={cap.vault_id}")
    for cap in agent_caps:
        authorized = cap.cap_id in ledger.get_vault(cap.vault_id).authorized_caps
        click.echo(f"agent  {cap.cap_id}  vault={cap.vault_id}  {'active' if authorized else 'revoked'}")


@main.command("agent-withdraw")
@click.argument("vault_id")
@sender_option
@click.option("--agent-cap", required=True, help="Agent capability id")
@click.option("--amount", required=True, help="Amount (SUI)")
@click.option("--action", default="0", help="Action tag or name")
@click.option("--strict", is_flag=True, default=False, help="Do not submit when the pre-check denies")
def agent_withdraw(
    vault_id: str,
    sender: Optional[str],
    agent_cap: str,
    amount: str,
    action: str,
    strict: bool,
):
    """Delegated withdrawal under the vault policy.

    The local pre-check runs first and only warns on a denial; the ledger
    decides. With --strict a denial stops the withdrawal before submission.
    """
    sender = _require_sender(sender)
    ledger = _ledger()
    try:
        mist = sui_to_mist(amount)
        action_tag = _parse_action(action)
        snapshot = ledger.get_vault(vault_id)
        cap = ledger.get_capability(agent_cap)
    except (VaultError, ValueError) as exc:
        _fail("Withdrawal failed", exc)
        return

    verdict = check_policy(snapshot, action_tag, _now_ms(), amount=mist, agent_cap=cap)
    if not verdict.allowed:
        click.echo(f"⚠️  Pre-check denied: {verdict.reason}")
        if strict:
            click.echo("   Not submitted (--strict).")
            sys.exit(1)
        click.echo("   Submitting anyway; the ledger has the final say.")

    try:
        withdrawn = ledger.agent_withdraw(sender, vault_id, agent_cap, mist, action_tag)
    except (VaultError, ValueError, TypeError) as exc:
        _fail("Withdrawal rejected", exc)
        return

    summary = summarize(ledger.get_vault(vault_id))
    click.echo(f"✅ Withdrew {format_sui(withdrawn)} ({action_label(action_tag)})")
    click.echo(f"   Remaining: {summary['remaining']} of {summary['total_budget']}")


@main.command()
@click.argument("vault_id")
@click.option("--action", default="0", help="Action tag or name")
@click.option("--amount", default=None, help="Amount (SUI); omit for actions that move no funds")
@click.option("--agent-cap", default=None, help="Also check this agent capability")
def check(vault_id: str, action: str, amount: Optional[str], agent_cap: Optional[str]):
    """Advisory pre-check against the current vault snapshot."""
    ledger = _ledger()
    try:
        snapshot = ledger.get_vault(vault_id)
        cap = ledger.get_capability(agent_cap) if agent_cap else None
        verdict = check_policy(
            snapshot,
            _parse_action(action),
            _now_ms(),
            amount=sui_to_mist(amount) if amount is not None else None,
            agent_cap=cap,
        )
    except (VaultError, ValueError) as exc:
        _fail("Pre-check failed", exc)
        return

    status = "✅" if verdict.allowed else "❌"
    click.echo(f"{status} {verdict.reason}")
    if not verdict.allowed:
        sys.exit(1)


@main.command()
@click.argument("vault_id")
def show(vault_id: str):
    """Show vault state and budget summary."""
    try:
        snapshot = _ledger().get_vault(vault_id)
    except (VaultError, ValueError) as exc:
        _fail("Vault not available", exc)
        return

    summary = summarize(snapshot, _now_ms())
    click.echo(f"📊 Vault {snapshot.vault_id}")
    click.echo(f"   Owner:        {snapshot.owner}")
    click.echo(f"   Balance:      {summary['balance']}")
    click.echo(f"   Spent:        {summary['total_spent']} of {summary['total_budget']}")
    click.echo(f"   Remaining:    {summary['remaining']}")
    click.echo(f"   Per op:       {summary['max_per_operation']}")
    click.echo(f"   Utilization:  {summary['utilization']}")
    click.echo(f"   Operations:   {summary['operations']}")
    click.echo(f"   Actions:      {', '.join(summary['allowed_actions']) or 'none'}")
    click.echo(f"   Expires:      {_format_ms(snapshot.policy.expires_at)}{' (expired)' if summary['expired'] else ''}")
    if summary["cooldown_remaining_ms"]:
        click.echo(f"   Cooldown:     {summary['cooldown_remaining_ms']}ms remaining")
    click.echo(f"   Agent caps:   {summary['authorized_caps']} authorized")


@main.command()
@sender_option
def vaults(sender: Optional[str]):
    """List vaults controlled by an address."""
    sender = _require_sender(sender)
    try:
        owned = _ledger().owned_vaults(sender)
    except (VaultError, ValueError) as exc:
        _fail("Failed to list vaults", exc)
        return

    if not owned:
        click.echo("No vaults found")
        return
    for snapshot in owned:
        click.echo(f"{snapshot.vault_id}  balance={format_sui(snapshot.balance)}  spent={format_sui(snapshot.total_spent)}")


@main.command()
@click.argument("vault_id")
@click.option("--limit", type=int, default=20, help="Number of events")
def events(vault_id: str, limit: int):
    """View a vault's audit events, newest first."""
    try:
        found = _ledger().vault_events(vault_id, limit=limit)
    except (VaultError, ValueError, RuntimeError) as exc:
        _fail("Failed to read events", exc)
        return

    if not found:
        click.echo("No audit events found.")
        return

    for event in found:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp / 1000)) if event.timestamp else "--:--:--"
        amount = f" {format_sui(event.amount)}" if event.amount else ""
        action = f" [{action_label(event.action)}]" if event.action is not None else ""
        remaining = f" remaining={format_sui(event.remaining_budget)}" if event.remaining_budget is not None else ""
        click.echo(f"  {ts} {event.event_type}{amount}{action}{remaining}")


@main.command()
def demo():
    """Run a full demo of the vault delegation flow."""
    click.echo("🎬 Agent Vault Demo: Delegated Withdrawal Flow")
    click.echo("=" * 50)

    owner = new_object_id()
    agent = new_object_id()

    with tempfile.TemporaryDirectory() as tmp:
        clock = [1_700_000_000_000]
        ledger = LocalLedger(Path(tmp) / "ledger_state.json", clock=lambda: clock[0])

        click.echo("\n1️⃣  Creating vault (10 SUI, 5 SUI budget, 1 SUI/op, swaps only, 60s cooldown)...")
        policy = create_policy(
            max_budget=sui_to_mist(5),
            max_per_operation=sui_to_mist(1),
            allowed_actions=[ActionType.SWAP],
            cooldown_ms=60_000,
            expires_at=clock[0] + 86_400_000,
        )
        vault_id, owner_cap = ledger.create_vault(owner, sui_to_mist(10), policy)
        click.echo(f"   ✅ Vault: {vault_id}")

        click.echo("\n2️⃣  Minting agent capability...")
        agent_cap = ledger.mint_agent_cap(owner, vault_id, owner_cap, agent)
        click.echo(f"   ✅ Agent cap: {agent_cap}")

        click.echo("\n3️⃣  Agent withdrawals...")
        attempts = [
            ("Swap 1 SUI", sui_to_mist(1), ActionType.SWAP, 0),
            ("Swap again 10s later", sui_to_mist(1), ActionType.SWAP, 10_000),
            ("Swap 2 SUI", sui_to_mist(2), ActionType.SWAP, 60_000),
            ("Stable mint", sui_to_mist(1), ActionType.STABLE_MINT, 0),
            ("Swap 1 SUI", sui_to_mist(1), ActionType.SWAP, 0),
        ]
        for label, amount, action, advance in attempts:
            clock[0] += advance
            verdict = check_policy(ledger.get_vault(vault_id), action, clock[0], amount=amount)
            try:
                ledger.agent_withdraw(agent, vault_id, agent_cap, amount, action)
                click.echo(f"   ✅ {label}")
            except VaultError as exc:
                click.echo(f"   ❌ {label}: [{exc.kind.value}] {exc} (pre-check: {verdict.reason})")

        click.echo("\n4️⃣  Revoking agent capability...")
        ledger.revoke_agent_cap(owner, vault_id, owner_cap, agent_cap)
        clock[0] += 120_000
        try:
            ledger.agent_withdraw(agent, vault_id, agent_cap, sui_to_mist(1), ActionType.SWAP)
        except VaultError as exc:
            click.echo(f"   ❌ Withdrawal after revoke: [{exc.kind.value}] {exc}")

        click.echo("\n5️⃣  Vault summary...")
        summary = summarize(ledger.get_vault(vault_id), clock[0])
        click.echo(f"   Balance:   {summary['balance']}")
        click.echo(f"   Spent:     {summary['total_spent']} of {summary['total_budget']}")
        click.echo(f"   Remaining: {summary['remaining']}")
        click.echo(f"   Ops:       {summary['operations']}")

        click.echo("\n6️⃣  Audit trail (newest first)...")
        for event in ledger.vault_events(vault_id, limit=10):
            amount = f" {format_sui(event.amount)}" if event.amount else ""
            click.echo(f"   {event.event_type}{amount}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Create → Delegate → Withdraw → Revoke → Audit")


if __name__ == "__main__":
    main()
