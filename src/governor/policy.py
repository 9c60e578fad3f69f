"""
Spending policy evaluation.

A purchase request runs through an ordered waterfall: hard limits first,
then merchant rules, then the conditions that hold a purchase for human
approval. The first rule that fires decides the verdict; the order is the
precedence policy. Limits are inclusive: only amounts strictly above a
limit trip it.

The evaluator only reads from storage. Persisting the outcome is the
router's job.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional

from .models import (
    Agent,
    ApprovalReason,
    Organization,
    PurchaseRequest,
    RejectionCode,
    SpendPeriod,
    SpendingCheckResult,
)
from .money import format_amount, to_decimal
from .store import StorageProvider

logger = logging.getLogger(__name__)


def merchant_matches(merchant_name: str, entries: Iterable[str]) -> bool:
    """Case-insensitive substring match: entry "aws" matches "AWS Marketplace"."""
    merchant = merchant_name.lower()
    return any(entry.strip() and entry.lower() in merchant for entry in entries)


def _over(amount: Decimal, limit: Optional[float]) -> bool:
    return limit is not None and amount > to_decimal(limit)


def _over_with(spent: float, amount: Decimal, limit: float) -> bool:
    return to_decimal(spent) + amount > to_decimal(limit)


class SpendingChecker:
    """Evaluates purchase requests against agent limits and org guardrails."""

    def __init__(self, storage: StorageProvider):
        self.storage = storage

    async def check_spending(self, request: PurchaseRequest) -> SpendingCheckResult:
        if request.amount <= 0:
            raise ValueError("Purchase amount must be positive")

        agent = await self.storage.get_agent(request.agent_id)
        if agent is None:
            result = SpendingCheckResult.reject(RejectionCode.AGENT_NOT_FOUND, "Agent not found")
        else:
            org = await self.storage.get_organization(agent.organization_id)
            if org is None:
                # Same wire code as a missing agent; the message tells them apart.
                result = SpendingCheckResult.reject(
                    RejectionCode.AGENT_NOT_FOUND, "Organization not found"
                )
            else:
                result = await self._evaluate(agent, org, request)

        if not result.allowed:
            logger.info(
                "Purchase by %s for %s at %r rejected: %s",
                request.agent_id, request.amount, request.merchant_name,
                result.rejection_code.value if result.rejection_code else None,
            )
        elif result.requires_approval:
            logger.info(
                "Purchase by %s for %s at %r needs approval: %s",
                request.agent_id, request.amount, request.merchant_name, result.approval_reason,
            )
        else:
            logger.debug("Purchase by %s for %s allowed", request.agent_id, request.amount)
        return result

    async def _evaluate(
        self,
        agent: Agent,
        org: Organization,
        request: PurchaseRequest,
    ) -> SpendingCheckResult:
        guardrails = org.guardrails
        amount = request.amount
        exact = to_decimal(amount)
        merchant = request.merchant_name

        # Hard limits

        if _over(exact, agent.per_transaction_limit):
            return SpendingCheckResult.reject(
                RejectionCode.OVER_TRANSACTION_LIMIT,
                f"Amount {format_amount(amount)} exceeds per-transaction limit of "
                f"{format_amount(agent.per_transaction_limit)}",
            )

        if _over(exact, guardrails.max_transaction_amount):
            return SpendingCheckResult.reject(
                RejectionCode.OVER_ORG_MAX_TRANSACTION,
                f"Amount {format_amount(amount)} exceeds organization maximum of "
                f"{format_amount(guardrails.max_transaction_amount)}",
            )

        if agent.daily_limit is not None:
            daily = await self.storage.get_agent_spend(agent.id, SpendPeriod.DAILY)
            if _over_with(daily, exact, agent.daily_limit):
                return SpendingCheckResult.reject(
                    RejectionCode.DAILY_LIMIT_EXCEEDED,
                    f"Daily spend would exceed limit of {format_amount(agent.daily_limit)} "
                    f"(current: {format_amount(daily)})",
                )

        if agent.monthly_limit is not None:
            monthly = await self.storage.get_agent_spend(agent.id, SpendPeriod.MONTHLY)
            if _over_with(monthly, exact, agent.monthly_limit):
                return SpendingCheckResult.reject(
                    RejectionCode.MONTHLY_LIMIT_EXCEEDED,
                    f"Monthly spend would exceed limit of {format_amount(agent.monthly_limit)} "
                    f"(current: {format_amount(monthly)})",
                )

        if org.monthly_budget is not None:
            org_spend = await self.storage.get_org_spend(org.id, SpendPeriod.MONTHLY)
            if _over_with(org_spend, exact, org.monthly_budget):
                return SpendingCheckResult.reject(
                    RejectionCode.ORG_BUDGET_EXCEEDED,
                    f"Organization monthly budget of {format_amount(org.monthly_budget)} "
                    f"would be exceeded (current: {format_amount(org_spend)})",
                )

        # Merchant rules

        if merchant_matches(merchant, agent.blocked_merchants):
            return SpendingCheckResult.reject(
                RejectionCode.MERCHANT_BLOCKED,
                f'Merchant "{merchant}" is blocked for this agent',
            )

        if agent.allowed_merchants and not merchant_matches(merchant, agent.allowed_merchants):
            return SpendingCheckResult.reject(
                RejectionCode.MERCHANT_NOT_ALLOWED,
                f'Merchant "{merchant}" is not in the allowed list',
            )

        if merchant_matches(merchant, guardrails.block_categories):
            return SpendingCheckResult.reject(
                RejectionCode.CATEGORY_BLOCKED,
                f'Merchant "{merchant}" matches a blocked category',
            )

        # Approval conditions

        if _over(exact, agent.approval_threshold):
            return SpendingCheckResult.needs_approval(
                ApprovalReason.OVER_THRESHOLD,
                f"Amount {format_amount(amount)} exceeds approval threshold of "
                f"{format_amount(agent.approval_threshold)}",
            )

        if _over(exact, guardrails.require_approval_above):
            return SpendingCheckResult.needs_approval(
                ApprovalReason.OVER_THRESHOLD,
                f"Amount {format_amount(amount)} exceeds organization approval threshold of "
                f"{format_amount(guardrails.require_approval_above)}",
            )

        if agent.flag_new_vendors or guardrails.flag_all_new_vendors:
            if await self.storage.is_new_vendor(org.id, merchant):
                if agent.flag_new_vendors:
                    return SpendingCheckResult.needs_approval(
                        ApprovalReason.NEW_VENDOR,
                        f'First purchase from new vendor "{merchant}"',
                    )
                return SpendingCheckResult.needs_approval(
                    ApprovalReason.NEW_VENDOR,
                    f'First purchase from new vendor "{merchant}" (org policy)',
                )

        return SpendingCheckResult.allow()
