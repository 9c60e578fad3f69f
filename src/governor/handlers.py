"""
Tool handlers for the governance server.

Flow for request_purchase:
1. Parse and validate tool arguments (bad input never reaches the evaluator)
2. Evaluate the request against the spending policy
3. Persist exactly one purchase intent for the outcome
4. Queue an approval, or issue a card for an approved purchase
5. Record the outcome in the audit trail
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from .audit import AuditTrail, EventType
from .errors import ToolArgumentError
from .models import (
    Agent,
    ApprovalReason,
    Organization,
    PurchaseRequest,
    PurchaseStatus,
    RejectionCode,
    VirtualCardRequest,
    iso_timestamp,
)
from .money import format_amount
from .payment import PaymentProvider
from .policy import SpendingChecker
from .store import StorageProvider

logger = logging.getLogger(__name__)

MAX_TRANSACTIONS_LIMIT = 50
DEFAULT_TRANSACTIONS_LIMIT = 10
BUDGET_PERIODS = ("daily", "monthly", "all")

SUGGESTIONS: dict[RejectionCode, str] = {
    RejectionCode.AGENT_NOT_FOUND: "Unable to identify the agent. Check your API key configuration.",
    RejectionCode.OVER_TRANSACTION_LIMIT: (
        "Try a smaller purchase amount or request a limit increase from your administrator."
    ),
    RejectionCode.OVER_ORG_MAX_TRANSACTION: (
        "This amount exceeds the organization's maximum transaction limit."
    ),
    RejectionCode.DAILY_LIMIT_EXCEEDED: (
        "Your daily spending limit has been reached. Try again tomorrow or request a limit increase."
    ),
    RejectionCode.MONTHLY_LIMIT_EXCEEDED: (
        "Your monthly spending limit has been reached. Try again next month or request a limit increase."
    ),
    RejectionCode.ORG_BUDGET_EXCEEDED: (
        "The organization's monthly budget has been reached. Contact your administrator."
    ),
    RejectionCode.MERCHANT_BLOCKED: "This merchant has been blocked. Use an alternative merchant.",
    RejectionCode.MERCHANT_NOT_ALLOWED: (
        "This merchant is not on the approved list. Contact your administrator to add it."
    ),
    RejectionCode.CATEGORY_BLOCKED: "This merchant category is blocked by organization policy.",
    RejectionCode.NO_PAYMENT_METHOD: (
        "No payment method is available to fund this purchase. Contact your administrator."
    ),
    RejectionCode.POLICY_REJECTED: (
        "A reviewer declined this purchase. Contact your administrator for details."
    ),
}
DEFAULT_SUGGESTION = "Contact your administrator for assistance."
APPROVAL_SUGGESTION = (
    "A human administrator will review this request. You'll be notified of the decision."
)


def suggestion_for(code: Optional[RejectionCode]) -> str:
    return SUGGESTIONS.get(code, DEFAULT_SUGGESTION) if code else DEFAULT_SUGGESTION


# ── Results ───────────────────────────────────────────────────────

@dataclass
class ToolResult:
    content: list[dict[str, Any]]
    is_error: bool = False

    def to_wire(self) -> dict:
        return {"content": self.content, "isError": self.is_error}

    def data(self) -> Any:
        """Decode the JSON payload of a single text block."""
        return json.loads(self.content[0]["text"])


def text_result(text: str, is_error: bool = False) -> ToolResult:
    return ToolResult(content=[{"type": "text", "text": text}], is_error=is_error)


def json_result(data: Any, is_error: bool = False) -> ToolResult:
    return text_result(json.dumps(data, indent=2), is_error=is_error)


def error_result(message: str) -> ToolResult:
    return text_result(f"Error: {message}", is_error=True)


@dataclass
class HandlerContext:
    """Identity of the calling agent, resolved before dispatch."""

    agent_id: str
    organization_id: str


# ── Argument parsing ──────────────────────────────────────────────

def _check_keys(args: Any, allowed: set[str]) -> Mapping[str, Any]:
    if args is None:
        return {}
    if not isinstance(args, Mapping):
        raise ToolArgumentError("Tool arguments must be an object")
    unknown = sorted(set(args) - allowed)
    if unknown:
        raise ToolArgumentError(f"Unknown argument(s): {', '.join(unknown)}")
    return args


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _required_str(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"'{key}' is required")
    return value.strip()


def _optional_str(args: Mapping[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ToolArgumentError(f"'{key}' must be a string")
    return value


@dataclass
class PurchaseArgs:
    amount: float
    currency: str
    description: str
    merchant_name: str
    merchant_url: Optional[str] = None
    project_id: Optional[str] = None

    @classmethod
    def from_args(cls, args: Any) -> "PurchaseArgs":
        args = _check_keys(
            args,
            {"amount", "currency", "description", "merchant_name", "merchant_url", "project_id"},
        )
        amount = args.get("amount")
        try:
            value = float(amount) if _is_number(amount) else math.nan
        except OverflowError:
            value = math.inf
        if not math.isfinite(value) or value <= 0:
            raise ToolArgumentError("'amount' must be a positive number")
        return cls(
            amount=value,
            currency=_required_str(args, "currency"),
            description=_required_str(args, "description"),
            merchant_name=_required_str(args, "merchant_name"),
            merchant_url=_optional_str(args, "merchant_url"),
            project_id=_optional_str(args, "project_id"),
        )


@dataclass
class BudgetArgs:
    period: str = "all"

    @classmethod
    def from_args(cls, args: Any) -> "BudgetArgs":
        args = _check_keys(args, {"period"})
        period = args.get("period", "all")
        if period not in BUDGET_PERIODS:
            raise ToolArgumentError(f"'period' must be one of: {', '.join(BUDGET_PERIODS)}")
        return cls(period=period)


@dataclass
class TransactionsArgs:
    limit: int = DEFAULT_TRANSACTIONS_LIMIT
    status: Optional[PurchaseStatus] = None

    @classmethod
    def from_args(cls, args: Any) -> "TransactionsArgs":
        args = _check_keys(args, {"limit", "status"})

        raw_limit = args.get("limit")
        if raw_limit is None:
            limit = DEFAULT_TRANSACTIONS_LIMIT
        elif _is_number(raw_limit) and float(raw_limit).is_integer():
            limit = min(max(1, int(raw_limit)), MAX_TRANSACTIONS_LIMIT)
        else:
            raise ToolArgumentError("'limit' must be an integer")

        raw_status = args.get("status", "all")
        allowed = ["all"] + [s.value for s in PurchaseStatus]
        if raw_status not in allowed:
            raise ToolArgumentError(f"'status' must be one of: {', '.join(allowed)}")
        status = None if raw_status == "all" else PurchaseStatus(raw_status)
        return cls(limit=limit, status=status)


@dataclass
class PolicyInfoArgs:
    @classmethod
    def from_args(cls, args: Any) -> "PolicyInfoArgs":
        _check_keys(args, set())
        return cls()


# ── Tool catalogue ────────────────────────────────────────────────

GOVERNANCE_TOOLS: list[dict[str, Any]] = [
    {
        "name": "request_purchase",
        "description": (
            "Request a purchase. The request is checked against your spending limits and "
            "organization policy. If approved, returns a single-use virtual card bounded "
            "to the purchase amount; otherwise explains the rejection or pending review."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "amount": {"type": "number", "description": "Purchase amount, greater than zero"},
                "currency": {"type": "string", "description": "ISO currency code, e.g. usd"},
                "description": {"type": "string", "description": "What is being purchased"},
                "merchant_name": {"type": "string", "description": "Merchant name"},
                "merchant_url": {"type": "string", "description": "Merchant website (optional)"},
                "project_id": {"type": "string", "description": "Project to attribute the spend to"},
            },
            "required": ["amount", "currency", "description", "merchant_name"],
        },
    },
    {
        "name": "check_budget",
        "description": "Show your spending limits, current spend and remaining budget.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "period": {
                    "type": "string",
                    "description": "Budget period to report",
                    "enum": list(BUDGET_PERIODS),
                    "default": "all",
                },
            },
            "required": [],
        },
    },
    {
        "name": "list_transactions",
        "description": "List your recent purchase requests, most recent first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "number",
                    "description": f"Maximum entries to return (1-{MAX_TRANSACTIONS_LIMIT})",
                    "default": DEFAULT_TRANSACTIONS_LIMIT,
                },
                "status": {
                    "type": "string",
                    "description": "Only return purchases with this status",
                    "enum": ["all"] + [s.value for s in PurchaseStatus],
                    "default": "all",
                },
            },
            "required": [],
        },
    },
    {
        "name": "get_policy_info",
        "description": "Describe the spending rules that apply to you.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
]


# ── Router ────────────────────────────────────────────────────────

ToolHandler = Callable[[Any, HandlerContext], Awaitable[ToolResult]]


class PurchaseRouter:
    """Routes tool calls to the evaluator and shapes the results."""

    def __init__(
        self,
        storage: StorageProvider,
        payments: PaymentProvider,
        checker: Optional[SpendingChecker] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.storage = storage
        self.payments = payments
        self.checker = checker or SpendingChecker(storage)
        self.audit = audit
        self._agent_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self.tools: dict[str, ToolHandler] = {
            "request_purchase": self.request_purchase,
            "check_budget": self.check_budget,
            "list_transactions": self.list_transactions,
            "get_policy_info": self.get_policy_info,
        }

    async def call_tool(self, name: str, args: Any, context: HandlerContext) -> ToolResult:
        handler = self.tools.get(name)
        if handler is None:
            raise KeyError(name)
        return await handler(args, context)

    def _audit(self, event_type: EventType, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **fields)

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        # Serializes evaluate+persist per agent so spend totals are not read stale
        # by a concurrent request in this process. A lock lives only while a
        # request holds or awaits it.
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            lock = self._agent_locks[agent_id] = asyncio.Lock()
        return lock

    # request_purchase

    async def request_purchase(self, args: Any, context: HandlerContext) -> ToolResult:
        try:
            parsed = PurchaseArgs.from_args(args)
        except ToolArgumentError as exc:
            return error_result(str(exc))

        async with self._lock_for(context.agent_id):
            return await self._purchase(parsed, context)

    async def _purchase(self, parsed: PurchaseArgs, context: HandlerContext) -> ToolResult:
        verdict = await self.checker.check_spending(
            PurchaseRequest(
                agent_id=context.agent_id,
                amount=parsed.amount,
                currency=parsed.currency,
                merchant_name=parsed.merchant_name,
                description=parsed.description,
            )
        )
        self._audit(
            EventType.SPENDING_CHECK,
            agent_id=context.agent_id,
            organization_id=context.organization_id,
            amount=parsed.amount,
            currency=parsed.currency,
            merchant=parsed.merchant_name,
            success=verdict.allowed,
            details={"outcome": verdict.outcome.value},
        )

        if not verdict.allowed:
            return await self._reject(
                parsed, context, verdict.rejection_code, verdict.rejection_message or ""
            )

        if verdict.requires_approval:
            return await self._hold_for_approval(
                parsed,
                context,
                verdict.approval_category or ApprovalReason.ORG_GUARDRAIL,
                verdict.approval_reason,
            )

        if not await self.payments.is_configured():
            return await self._reject(
                parsed,
                context,
                RejectionCode.NO_PAYMENT_METHOD,
                "No payment method is configured for this organization",
            )

        return await self._approve(parsed, context)

    def _intent_fields(self, parsed: PurchaseArgs, context: HandlerContext) -> dict[str, Any]:
        return {
            "organization_id": context.organization_id,
            "agent_id": context.agent_id,
            "amount": parsed.amount,
            "currency": parsed.currency,
            "description": parsed.description,
            "merchant_name": parsed.merchant_name,
            "merchant_url": parsed.merchant_url,
            "metadata": {"project_id": parsed.project_id} if parsed.project_id else None,
        }

    async def _reject(
        self,
        parsed: PurchaseArgs,
        context: HandlerContext,
        code: RejectionCode,
        message: str,
    ) -> ToolResult:
        intent = await self.storage.create_purchase_intent(
            **self._intent_fields(parsed, context),
            status=PurchaseStatus.REJECTED,
            rejection_code=code,
            rejection_reason=message,
        )
        self._audit(
            EventType.PURCHASE_REJECTED,
            agent_id=context.agent_id,
            organization_id=context.organization_id,
            purchase_intent_id=intent.id,
            amount=parsed.amount,
            currency=parsed.currency,
            merchant=parsed.merchant_name,
            success=False,
            reason=message,
            details={"reason_code": code.value},
        )
        return json_result({
            "status": PurchaseStatus.REJECTED.value,
            "reason_code": code.value,
            "message": message,
            "suggestion": suggestion_for(code),
            "purchase_intent_id": intent.id,
        })

    async def _hold_for_approval(
        self,
        parsed: PurchaseArgs,
        context: HandlerContext,
        category: ApprovalReason,
        reason: Optional[str],
    ) -> ToolResult:
        intent = await self.storage.create_purchase_intent(
            **self._intent_fields(parsed, context),
            status=PurchaseStatus.PENDING_APPROVAL,
        )
        approval = await self.storage.create_pending_approval(
            purchase_intent_id=intent.id,
            organization_id=context.organization_id,
            agent_id=context.agent_id,
            amount=parsed.amount,
            merchant_name=parsed.merchant_name,
            reason=category,
            reason_details=reason,
        )
        self._audit(
            EventType.APPROVAL_REQUIRED,
            agent_id=context.agent_id,
            organization_id=context.organization_id,
            purchase_intent_id=intent.id,
            amount=parsed.amount,
            currency=parsed.currency,
            merchant=parsed.merchant_name,
            reason=reason,
            details={"approval_id": approval.id, "category": category.value},
        )
        return json_result({
            "status": PurchaseStatus.PENDING_APPROVAL.value,
            "message": reason or "This purchase requires human approval",
            "purchase_intent_id": intent.id,
            "approval_id": approval.id,
            "suggestion": APPROVAL_SUGGESTION,
        })

    async def _approve(self, parsed: PurchaseArgs, context: HandlerContext) -> ToolResult:
        intent = await self.storage.create_purchase_intent(
            **self._intent_fields(parsed, context),
            status=PurchaseStatus.APPROVED,
        )
        try:
            card = await self.payments.create_virtual_card(
                VirtualCardRequest(
                    purchase_intent_id=intent.id,
                    organization_id=context.organization_id,
                    agent_id=context.agent_id,
                    amount=parsed.amount,
                    currency=parsed.currency,
                )
            )
        except Exception as exc:
            logger.error("Card issuance failed for intent %s: %s", intent.id, exc)
            await self.storage.update_purchase_intent_status(
                intent.id,
                PurchaseStatus.REJECTED,
                rejection_code=RejectionCode.NO_PAYMENT_METHOD,
                rejection_reason=str(exc) or "Card issuance failed",
            )
            self._audit(
                EventType.CARD_FAILED,
                agent_id=context.agent_id,
                organization_id=context.organization_id,
                purchase_intent_id=intent.id,
                amount=parsed.amount,
                currency=parsed.currency,
                merchant=parsed.merchant_name,
                success=False,
                reason=str(exc),
            )
            raise

        await self.storage.record_merchant(context.organization_id, parsed.merchant_name)
        self._audit(
            EventType.PURCHASE_APPROVED,
            agent_id=context.agent_id,
            organization_id=context.organization_id,
            purchase_intent_id=intent.id,
            amount=parsed.amount,
            currency=parsed.currency,
            merchant=parsed.merchant_name,
            details={"card_id": card.id},
        )
        return json_result({
            "status": PurchaseStatus.APPROVED.value,
            "card": card.to_wire(),
            "hard_limit_amount": parsed.amount,
            "currency": parsed.currency,
            "expires_at": iso_timestamp(card.expires_at),
            "purchase_intent_id": intent.id,
            "message": (
                f"Purchase approved. Use this card to complete your purchase of {parsed.description}."
            ),
        })

    # check_budget

    async def check_budget(self, args: Any, context: HandlerContext) -> ToolResult:
        try:
            parsed = BudgetArgs.from_args(args)
        except ToolArgumentError as exc:
            return error_result(str(exc))

        budget = await self.storage.get_agent_budget(context.agent_id)
        if budget is None:
            return error_result("Agent not found")

        if parsed.period != "all":
            limit = budget.limits.get(parsed.period)
            return json_result({
                "agent_id": context.agent_id,
                "period": parsed.period,
                "limit": limit if limit is not None else "unlimited",
                "spent": budget.current_spend[parsed.period],
                "remaining": budget.remaining[parsed.period],
            })

        org = await self.storage.get_budget_utilization(context.organization_id)
        return json_result({
            "agent_id": context.agent_id,
            "agent_name": budget.agent_name,
            "currency": "usd",
            "limits": {k: (v if v is not None else "unlimited") for k, v in budget.limits.items()},
            "current_spend": budget.current_spend,
            "remaining": budget.remaining,
            "organization": {
                "monthly_budget": org.org_budget if org.org_budget is not None else "unlimited",
                "org_spent": org.org_spent,
                "org_remaining": org.org_remaining if org.org_remaining is not None else "unlimited",
                "percent_used": f"{org.percent_used:.1f}%" if org.percent_used is not None else "N/A",
                "over_alert_threshold": org.is_over_threshold,
            },
        })

    # list_transactions

    async def list_transactions(self, args: Any, context: HandlerContext) -> ToolResult:
        try:
            parsed = TransactionsArgs.from_args(args)
        except ToolArgumentError as exc:
            return error_result(str(exc))

        intents = await self.storage.list_purchase_intents(
            context.agent_id, status=parsed.status, limit=parsed.limit
        )
        return json_result({
            "agent_id": context.agent_id,
            "count": len(intents),
            "transactions": [
                {
                    "id": t.id,
                    "amount": t.amount,
                    "currency": t.currency,
                    "description": t.description,
                    "merchant": t.merchant_name,
                    "status": t.status.value,
                    "rejection_reason": (
                        {"code": t.rejection_code.value, "message": t.rejection_reason}
                        if t.rejection_code
                        else None
                    ),
                    "timestamp": iso_timestamp(t.created_at),
                }
                for t in intents
            ],
        })

    # get_policy_info

    async def get_policy_info(self, args: Any, context: HandlerContext) -> ToolResult:
        try:
            PolicyInfoArgs.from_args(args)
        except ToolArgumentError as exc:
            return error_result(str(exc))

        agent = await self.storage.get_agent(context.agent_id)
        if agent is None:
            return error_result("Agent not found")
        org = await self.storage.get_organization(context.organization_id)
        return json_result(describe_policy(agent, org))


def _or(value: Any, fallback: Any) -> Any:
    return value if value is not None else fallback


def describe_policy(agent: Agent, org: Optional[Organization]) -> dict:
    """Agent-facing description of the rules that apply to it."""
    guardrails = org.guardrails if org else None
    return {
        "agent_id": agent.id,
        "agent_name": agent.name,
        "agent_controls": {
            "spending_limits": {
                "per_transaction": _or(agent.per_transaction_limit, "unlimited"),
                "daily": _or(agent.daily_limit, "unlimited"),
                "monthly": _or(agent.monthly_limit, "unlimited"),
            },
            "approval_rules": {
                "threshold": (
                    f"Purchases over {format_amount(agent.approval_threshold)} require human approval"
                    if agent.approval_threshold is not None
                    else "No approval threshold"
                ),
                "new_vendors": (
                    "Purchases from new vendors require human approval"
                    if agent.flag_new_vendors
                    else "New vendor purchases allowed"
                ),
            },
            "merchant_restrictions": {
                "blocked": list(agent.blocked_merchants) or "none",
                "allowed_only": list(agent.allowed_merchants) or "any merchant",
            },
        },
        "organization_guardrails": {
            "monthly_budget": _or(org.monthly_budget if org else None, "unlimited"),
            "max_transaction": _or(guardrails.max_transaction_amount if guardrails else None, "unlimited"),
            "require_approval_above": _or(
                guardrails.require_approval_above if guardrails else None, "none"
            ),
            "flag_all_new_vendors": bool(guardrails and guardrails.flag_all_new_vendors),
            "blocked_categories": (list(guardrails.block_categories) if guardrails else []) or "none",
        },
        "summary": _policy_summary(agent),
    }


def _policy_summary(agent: Agent) -> str:
    parts = []
    if agent.monthly_limit is not None:
        parts.append(f"You have a monthly budget of {format_amount(agent.monthly_limit)}")
    if agent.per_transaction_limit is not None:
        parts.append(f"max {format_amount(agent.per_transaction_limit)} per transaction")
    if agent.approval_threshold is not None:
        parts.append(f"purchases over {format_amount(agent.approval_threshold)} need approval")
    if agent.flag_new_vendors:
        parts.append("new vendors require approval")

    if not parts:
        return "No specific limits set. Organization guardrails still apply."
    return ", ".join(parts) + "."
