"""
Governor CLI — spending governance for purchasing agents.

Commands:
    governor org add          Register an organization and its guardrails
    governor agent add        Register an agent and its spending controls
    governor agent show       Show the rules that apply to an agent
    governor check            Dry-run a purchase against policy
    governor purchase         Request a purchase (issues a card when approved)
    governor budget           Show an agent's budget
    governor transactions     List an agent's purchase requests
    governor approvals ...    Review purchases held for approval
    governor audit            View the audit trail
    governor serve            JSON-RPC over stdio for one agent
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from typing import Any, Optional

import click

from . import __version__
from .approvals import ApprovalDesk
from .audit import AuditTrail, EventType
from .config import Settings
from .errors import ConfigError, GovernorError, NotFoundError
from .handlers import HandlerContext, PurchaseRouter, describe_policy
from .models import Agent, OrgGuardrails, Organization, PurchaseRequest
from .money import format_amount
from .payment import build_payment_provider
from .policy import SpendingChecker
from .server import GovernanceServer
from .sqlite_store import SqliteStore


# ── Helpers ───────────────────────────────────────────────────────

def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _settings() -> Settings:
    return click.get_current_context().find_object(Settings)


def _store() -> SqliteStore:
    return SqliteStore(_settings().db_path)


def _audit() -> AuditTrail:
    settings = _settings()
    return AuditTrail(settings.audit_path, settings.audit_key_path)


def _run(coro) -> Any:
    try:
        return asyncio.run(coro)
    except GovernorError as exc:
        _fail(str(exc))


async def _close(payments) -> None:
    close = getattr(payments, "close", None)
    if close is not None:
        await close()


async def _context_for(store: SqliteStore, agent_id: str) -> HandlerContext:
    agent = await store.get_agent(agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    return HandlerContext(agent_id=agent.id, organization_id=agent.organization_id)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise click.BadParameter(f"Invalid duration: {value} (expected formats like 30m, 72h, 7d)")
    return int(raw[:-1]) * units[raw[-1]]


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (default: GOVERNOR_LOG_LEVEL or WARNING)")
@click.pass_context
def main(ctx: click.Context, log_level: Optional[str]):
    """Governor — spending governance for purchasing agents."""
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        _fail(str(exc))
    level = (log_level or settings.log_level).upper()
    if not isinstance(logging.getLevelName(level), int):
        _fail(f"Unknown log level: {level}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


@main.group("org")
def org_group():
    """Organization management."""
    pass


@org_group.command("add")
@click.argument("org_id")
@click.option("--name", default=None, help="Display name (default: the id)")
@click.option("--monthly-budget", type=float, default=None, help="Organization monthly budget")
@click.option("--alert-threshold", type=float, default=0.8, help="Budget alert threshold (0-1)")
@click.option("--max-transaction", type=float, default=None, help="Maximum amount of any single purchase")
@click.option("--approval-above", type=float, default=None, help="Hold purchases above this amount")
@click.option("--flag-new-vendors", is_flag=True, help="Hold first purchases from any new vendor")
@click.option("--block-category", multiple=True, help="Blocked merchant pattern (repeatable)")
def org_add(
    org_id: str,
    name: Optional[str],
    monthly_budget: Optional[float],
    alert_threshold: float,
    max_transaction: Optional[float],
    approval_above: Optional[float],
    flag_new_vendors: bool,
    block_category: tuple[str, ...],
):
    """Create or replace an organization."""
    org = Organization(
        id=org_id,
        name=name or org_id,
        monthly_budget=monthly_budget,
        alert_threshold=alert_threshold,
        guardrails=OrgGuardrails(
            max_transaction_amount=max_transaction,
            require_approval_above=approval_above,
            flag_all_new_vendors=flag_new_vendors,
            block_categories=list(block_category),
        ),
    )
    _run(_store().save_organization(org))
    click.echo(f"✅ Organization saved: {org.id}")
    if monthly_budget is not None:
        click.echo(f"   Budget: {format_amount(monthly_budget)}/month")


@main.group("agent")
def agent_group():
    """Agent management."""
    pass


@agent_group.command("add")
@click.argument("agent_id")
@click.option("--org", "org_id", required=True, help="Owning organization id")
@click.option("--name", default=None, help="Display name (default: the id)")
@click.option("--monthly-limit", type=float, default=None)
@click.option("--daily-limit", type=float, default=None)
@click.option("--per-tx-limit", type=float, default=None, help="Per-transaction limit")
@click.option("--approval-threshold", type=float, default=None, help="Hold purchases above this amount")
@click.option("--allow-merchant", multiple=True, help="Allowed merchant pattern (repeatable)")
@click.option("--block-merchant", multiple=True, help="Blocked merchant pattern (repeatable)")
@click.option("--flag-new-vendors", is_flag=True, help="Hold first purchases from new vendors")
def agent_add(
    agent_id: str,
    org_id: str,
    name: Optional[str],
    monthly_limit: Optional[float],
    daily_limit: Optional[float],
    per_tx_limit: Optional[float],
    approval_threshold: Optional[float],
    allow_merchant: tuple[str, ...],
    block_merchant: tuple[str, ...],
    flag_new_vendors: bool,
):
    """Create or replace an agent."""
    store = _store()

    async def _add() -> Agent:
        if await store.get_organization(org_id) is None:
            raise NotFoundError("Organization", org_id)
        agent = Agent(
            id=agent_id,
            organization_id=org_id,
            name=name or agent_id,
            monthly_limit=monthly_limit,
            daily_limit=daily_limit,
            per_transaction_limit=per_tx_limit,
            approval_threshold=approval_threshold,
            allowed_merchants=list(allow_merchant),
            blocked_merchants=list(block_merchant),
            flag_new_vendors=flag_new_vendors,
        )
        await store.save_agent(agent)
        return agent

    agent = _run(_add())
    click.echo(f"✅ Agent saved: {agent.id} (org {agent.organization_id})")


@agent_group.command("show")
@click.argument("agent_id")
def agent_show(agent_id: str):
    """Show the spending rules for an agent."""
    store = _store()

    async def _show() -> dict:
        agent = await store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return describe_policy(agent, await store.get_organization(agent.organization_id))

    _echo_json(_run(_show()))


@main.command()
@click.argument("agent_id")
@click.option("--amount", type=float, required=True, help="Purchase amount")
@click.option("--merchant", required=True, help="Merchant name")
@click.option("--description", default="Dry run", help="What is being purchased")
@click.option("--currency", default="usd")
def check(agent_id: str, amount: float, merchant: str, description: str, currency: str):
    """Evaluate a purchase without recording anything."""
    if amount <= 0:
        _fail("Amount must be positive")
    checker = SpendingChecker(_store())
    result = _run(checker.check_spending(
        PurchaseRequest(
            agent_id=agent_id,
            amount=amount,
            currency=currency,
            merchant_name=merchant,
            description=description,
        )
    ))

    if not result.allowed:
        click.echo(f"❌ Rejected: {result.rejection_code.value} ({result.rejection_message})")
        sys.exit(1)
    if result.requires_approval:
        click.echo(f"⏸️  Requires approval: {result.approval_category.value} ({result.approval_reason})")
    else:
        click.echo(f"✅ Allowed: {format_amount(amount)} at {merchant}")


@main.command()
@click.argument("agent_id")
@click.option("--amount", type=float, required=True, help="Purchase amount")
@click.option("--merchant", required=True, help="Merchant name")
@click.option("--description", required=True, help="What is being purchased")
@click.option("--currency", default="usd")
@click.option("--merchant-url", default=None)
@click.option("--project", "project_id", default=None, help="Project to attribute the spend to")
def purchase(
    agent_id: str,
    amount: float,
    merchant: str,
    description: str,
    currency: str,
    merchant_url: Optional[str],
    project_id: Optional[str],
):
    """Request a purchase on behalf of an agent."""
    store = _store()
    payments = build_payment_provider(_settings())
    router = PurchaseRouter(store, payments, audit=_audit())
    args: dict[str, Any] = {
        "amount": amount,
        "currency": currency,
        "description": description,
        "merchant_name": merchant,
    }
    if merchant_url:
        args["merchant_url"] = merchant_url
    if project_id:
        args["project_id"] = project_id

    async def _purchase():
        try:
            return await router.request_purchase(args, await _context_for(store, agent_id))
        finally:
            await _close(payments)

    result = _run(_purchase())
    if result.is_error:
        _fail(result.content[0]["text"])
    _echo_json(result.data())


@main.command()
@click.argument("agent_id")
@click.option("--period", type=click.Choice(["daily", "monthly", "all"]), default="all")
def budget(agent_id: str, period: str):
    """Show an agent's limits, spend and remaining budget."""
    store = _store()
    router = PurchaseRouter(store, build_payment_provider(_settings()))

    async def _budget():
        return await router.check_budget({"period": period}, await _context_for(store, agent_id))

    result = _run(_budget())
    if result.is_error:
        _fail(result.content[0]["text"])
    _echo_json(result.data())


@main.command()
@click.argument("agent_id")
@click.option("--limit", type=int, default=10, help="Number of entries (max 50)")
@click.option("--status", default="all", help="Filter by status")
def transactions(agent_id: str, limit: int, status: str):
    """List an agent's recent purchase requests."""
    store = _store()
    router = PurchaseRouter(store, build_payment_provider(_settings()))

    async def _list():
        return await router.list_transactions(
            {"limit": limit, "status": status}, await _context_for(store, agent_id)
        )

    result = _run(_list())
    if result.is_error:
        _fail(result.content[0]["text"])

    data = result.data()
    if not data["transactions"]:
        click.echo("No transactions found.")
        return
    for tx in data["transactions"]:
        marker = {"approved": "✅", "rejected": "❌", "pending_approval": "⏸️ "}.get(tx["status"], "•")
        reason = f" ({tx['rejection_reason']['code']})" if tx["rejection_reason"] else ""
        click.echo(
            f"  {tx['timestamp']} {marker} {tx['id']} {format_amount(tx['amount'])} "
            f"→ {tx['merchant']}{reason}"
        )


@main.group("approvals")
def approvals_group():
    """Review purchases held for approval."""
    pass


def _desk() -> ApprovalDesk:
    return ApprovalDesk(_store(), build_payment_provider(_settings()), audit=_audit())


@approvals_group.command("list")
@click.argument("org_id")
def approvals_list(org_id: str):
    """List pending approvals for an organization."""
    pending = _run(_desk().list_pending(org_id))
    if not pending:
        click.echo("No pending approvals.")
        return
    for approval in pending:
        waited = time.strftime("%Y-%m-%d %H:%M", time.localtime(approval.created_at))
        click.echo(
            f"  {approval.id}  {approval.agent_id}  {format_amount(approval.amount)} "
            f"→ {approval.merchant_name}  [{approval.reason.value}] since {waited}"
        )
        if approval.reason_details:
            click.echo(f"      {approval.reason_details}")


@approvals_group.command("approve")
@click.argument("approval_id")
@click.option("--reviewer", required=True, help="Who is approving")
@click.option("--note", default=None)
def approvals_approve(approval_id: str, reviewer: str, note: Optional[str]):
    """Approve a held purchase and issue its card."""
    desk = _desk()

    async def _approve():
        try:
            return await desk.approve(approval_id, reviewer, note)
        finally:
            await _close(desk.payments)

    card = _run(_approve())
    click.echo(f"✅ Approved {approval_id}")
    click.echo(f"   Card:  {card.id} (limit {format_amount(card.hard_limit)} {card.currency})")


@approvals_group.command("reject")
@click.argument("approval_id")
@click.option("--reviewer", required=True, help="Who is rejecting")
@click.option("--note", default=None)
def approvals_reject(approval_id: str, reviewer: str, note: Optional[str]):
    """Reject a held purchase."""
    _run(_desk().reject(approval_id, reviewer, note))
    click.echo(f"✅ Rejected {approval_id}")


@approvals_group.command("expire")
@click.argument("org_id")
@click.option("--max-age", default="72h", help="Expire approvals older than this (e.g. 30m, 72h, 7d)")
def approvals_expire(org_id: str, max_age: str):
    """Expire approvals that have waited too long."""
    expired = _run(_desk().expire_stale(org_id, _parse_duration_to_seconds(max_age)))
    click.echo(f"✅ Expired {len(expired)} approval(s)")


@main.command()
@click.option("--agent", "agent_id", default=None, help="Filter by agent id")
@click.option("--intent", "intent_id", default=None, help="Filter by purchase intent id")
@click.option("--type", "event_type", type=click.Choice([e.value for e in EventType]), default=None)
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(agent_id: Optional[str], intent_id: Optional[str], event_type: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit()
    try:
        if intent_id and not (agent_id or event_type):
            events = trail.intent_timeline(intent_id)
        else:
            events = trail.read_events(
                agent_id=agent_id,
                event_type=EventType(event_type) if event_type else None,
                purchase_intent_id=intent_id,
                limit=limit,
            )
    except RuntimeError as exc:
        _fail(str(exc))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_amount(event.amount)}" if event.amount else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{merchant}{reason}")


@main.command()
@click.option("--org", "org_id", default=None, help="Filter by organization id")
@click.option("--agent", "agent_id", default=None, help="Filter by agent id")
@click.option("--since", default=None, help="Only count events newer than this (e.g. 24h, 7d)")
def report(org_id: Optional[str], agent_id: Optional[str], since: Optional[str]):
    """Summarize purchase outcomes from the audit trail."""
    cutoff = time.time() - _parse_duration_to_seconds(since) if since else None
    try:
        summary = _audit().summarize(organization_id=org_id, agent_id=agent_id, since=cutoff)
    except RuntimeError as exc:
        _fail(str(exc))

    click.echo(f"Approved:      {summary.approved} ({format_amount(summary.approved_amount)})")
    click.echo(f"Rejected:      {summary.rejected}")
    for code, count in sorted(summary.rejections_by_code.items()):
        click.echo(f"  {code}: {count}")
    click.echo(f"Held:          {summary.held}")
    click.echo(f"Expired:       {summary.expired}")
    click.echo(f"Card failures: {summary.card_failures}")


@main.command()
@click.argument("agent_id")
def serve(agent_id: str):
    """Serve JSON-RPC requests for one agent over stdin/stdout."""
    store = _store()
    payments = build_payment_provider(_settings())
    server = GovernanceServer(store, payments, audit=_audit())
    stdin = click.get_text_stream("stdin")

    async def _serve():
        context = await _context_for(store, agent_id)
        try:
            while True:
                line = await asyncio.to_thread(stdin.readline)
                if not line:
                    break
                if not line.strip():
                    continue
                response = await server.handle_raw(line, context)
                if response is not None:
                    click.echo(json.dumps(response))
        finally:
            await _close(payments)

    _run(_serve())


if __name__ == "__main__":
    main()
