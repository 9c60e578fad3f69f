"""
Storage collaborator interface and the in-memory reference backend.

Spend aggregates are derived from approved purchase intents, bucketed by
UTC day and UTC calendar month. Vendor history is kept per organization as
lowercased merchant names.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Union

from .errors import ApprovalError, NotFoundError
from .models import (
    Agent,
    AgentBudget,
    ApprovalReason,
    ApprovalStatus,
    BudgetUtilization,
    Organization,
    PendingApproval,
    PurchaseIntent,
    PurchaseStatus,
    RejectionCode,
    SpendPeriod,
)
from .money import amount_to_micros, limit_to_micros, micros_to_float

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
PeriodLike = Union[SpendPeriod, str]


def period_start(period: PeriodLike, now: float) -> float:
    """Unix timestamp at which the current daily/monthly window opened (UTC)."""
    period = SpendPeriod(period)
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is SpendPeriod.MONTHLY:
        start = start.replace(day=1)
    return start.timestamp()


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


class StorageProvider(Protocol):
    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    async def get_organization(self, org_id: str) -> Optional[Organization]: ...

    async def get_agent_spend(self, agent_id: str, period: PeriodLike) -> float: ...

    async def get_org_spend(self, org_id: str, period: PeriodLike) -> float: ...

    async def is_new_vendor(self, org_id: str, merchant_name: str) -> bool: ...

    async def record_merchant(self, org_id: str, merchant_name: str) -> None: ...

    async def create_purchase_intent(
        self,
        *,
        organization_id: str,
        agent_id: str,
        amount: float,
        currency: str,
        description: str,
        merchant_name: str,
        status: PurchaseStatus,
        merchant_url: Optional[str] = None,
        rejection_code: Optional[RejectionCode] = None,
        rejection_reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PurchaseIntent: ...

    async def get_purchase_intent(self, intent_id: str) -> Optional[PurchaseIntent]: ...

    async def update_purchase_intent_status(
        self,
        intent_id: str,
        status: PurchaseStatus,
        rejection_code: Optional[RejectionCode] = None,
        rejection_reason: Optional[str] = None,
    ) -> PurchaseIntent: ...

    async def list_purchase_intents(
        self,
        agent_id: str,
        status: Optional[PurchaseStatus] = None,
        limit: Optional[int] = None,
    ) -> list[PurchaseIntent]: ...

    async def create_pending_approval(
        self,
        *,
        purchase_intent_id: str,
        organization_id: str,
        agent_id: str,
        amount: float,
        merchant_name: str,
        reason: ApprovalReason,
        reason_details: Optional[str] = None,
    ) -> PendingApproval: ...

    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]: ...

    async def update_pending_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reviewed_by: str,
        review_note: Optional[str] = None,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> PendingApproval: ...

    async def list_pending_approvals(
        self,
        org_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[PendingApproval]: ...

    async def get_agent_budget(self, agent_id: str) -> Optional[AgentBudget]: ...

    async def get_budget_utilization(self, org_id: str) -> BudgetUtilization: ...


def _remaining(limit: Optional[float], spent: float) -> Union[float, str]:
    if limit is None:
        return "unlimited"
    return micros_to_float(max(0, limit_to_micros(limit) - amount_to_micros(spent)))


class BudgetViews:
    """Budget projections shared by every backend.

    Mixed into concrete stores; relies on their agent/org lookups and spend
    aggregates so both backends report identical shapes.
    """

    async def get_agent_budget(self, agent_id: str) -> Optional[AgentBudget]:
        agent = await self.get_agent(agent_id)  # type: ignore[attr-defined]
        if agent is None:
            return None
        daily, monthly = await asyncio.gather(
            self.get_agent_spend(agent_id, SpendPeriod.DAILY),  # type: ignore[attr-defined]
            self.get_agent_spend(agent_id, SpendPeriod.MONTHLY),  # type: ignore[attr-defined]
        )
        return AgentBudget(
            agent_id=agent.id,
            agent_name=agent.name,
            limits={
                "per_transaction": agent.per_transaction_limit,
                "daily": agent.daily_limit,
                "monthly": agent.monthly_limit,
            },
            current_spend={"daily": daily, "monthly": monthly},
            remaining={
                "daily": _remaining(agent.daily_limit, daily),
                "monthly": _remaining(agent.monthly_limit, monthly),
            },
        )

    async def get_budget_utilization(self, org_id: str) -> BudgetUtilization:
        org = await self.get_organization(org_id)  # type: ignore[attr-defined]
        spent = await self.get_org_spend(org_id, SpendPeriod.MONTHLY)  # type: ignore[attr-defined]
        budget = org.monthly_budget if org else None
        threshold = org.alert_threshold if org else 0.8

        percent_used = None
        remaining = None
        if budget is not None:
            remaining = _remaining(budget, spent)
            percent_used = (spent / budget * 100) if budget > 0 else 100.0

        return BudgetUtilization(
            org_budget=budget,
            org_spent=spent,
            org_remaining=remaining,  # type: ignore[arg-type]
            percent_used=percent_used,
            alert_threshold=threshold * 100,
            is_over_threshold=percent_used is not None and percent_used >= threshold * 100,
        )


class InMemoryStore(BudgetViews):
    """Process-local store for tests and demos. State lives on the instance."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._agents: dict[str, Agent] = {}
        self._orgs: dict[str, Organization] = {}
        self._intents: dict[str, PurchaseIntent] = {}
        self._approvals: dict[str, PendingApproval] = {}
        self._merchants: dict[str, set[str]] = {}

    # Seeding

    def add_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent

    def add_organization(self, org: Organization) -> None:
        self._orgs[org.id] = org

    # Agents & organizations

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        return self._orgs.get(org_id)

    # Spend aggregates

    def _approved_spend(self, since: float, predicate: Callable[[PurchaseIntent], bool]) -> float:
        total = sum(
            amount_to_micros(intent.amount)
            for intent in self._intents.values()
            if intent.status is PurchaseStatus.APPROVED
            and intent.created_at >= since
            and predicate(intent)
        )
        return micros_to_float(total)

    async def get_agent_spend(self, agent_id: str, period: PeriodLike) -> float:
        since = period_start(period, self._clock())
        return self._approved_spend(since, lambda i: i.agent_id == agent_id)

    async def get_org_spend(self, org_id: str, period: PeriodLike) -> float:
        since = period_start(period, self._clock())
        return self._approved_spend(since, lambda i: i.organization_id == org_id)

    # Vendor history

    async def is_new_vendor(self, org_id: str, merchant_name: str) -> bool:
        return merchant_name.lower() not in self._merchants.get(org_id, set())

    async def record_merchant(self, org_id: str, merchant_name: str) -> None:
        self._merchants.setdefault(org_id, set()).add(merchant_name.lower())

    # Purchase intents

    async def create_purchase_intent(
        self,
        *,
        organization_id: str,
        agent_id: str,
        amount: float,
        currency: str,
        description: str,
        merchant_name: str,
        status: PurchaseStatus,
        merchant_url: Optional[str] = None,
        rejection_code: Optional[RejectionCode] = None,
        rejection_reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PurchaseIntent:
        intent = PurchaseIntent(
            id=new_id("pi"),
            organization_id=organization_id,
            agent_id=agent_id,
            amount=amount,
            currency=currency,
            description=description,
            merchant_name=merchant_name,
            status=PurchaseStatus(status),
            merchant_url=merchant_url,
            rejection_code=RejectionCode(rejection_code) if rejection_code else None,
            rejection_reason=rejection_reason,
            metadata=dict(metadata) if metadata else None,
            created_at=self._clock(),
        )
        self._intents[intent.id] = intent
        logger.debug("Stored purchase intent %s (%s)", intent.id, intent.status.value)
        return intent

    async def get_purchase_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        return self._intents.get(intent_id)

    async def update_purchase_intent_status(
        self,
        intent_id: str,
        status: PurchaseStatus,
        rejection_code: Optional[RejectionCode] = None,
        rejection_reason: Optional[str] = None,
    ) -> PurchaseIntent:
        existing = self._intents.get(intent_id)
        if existing is None:
            raise NotFoundError("Purchase intent", intent_id)
        updated = replace(
            existing,
            status=PurchaseStatus(status),
            rejection_code=RejectionCode(rejection_code) if rejection_code else existing.rejection_code,
            rejection_reason=rejection_reason or existing.rejection_reason,
        )
        self._intents[intent_id] = updated
        return updated

    async def list_purchase_intents(
        self,
        agent_id: str,
        status: Optional[PurchaseStatus] = None,
        limit: Optional[int] = None,
    ) -> list[PurchaseIntent]:
        # dicts keep insertion order, so reversing gives most recent first
        results = [
            intent
            for intent in reversed(list(self._intents.values()))
            if intent.agent_id == agent_id
            and (status is None or intent.status == PurchaseStatus(status))
        ]
        results.sort(key=lambda i: i.created_at, reverse=True)
        return results[:limit] if limit else results

    # Approvals

    async def create_pending_approval(
        self,
        *,
        purchase_intent_id: str,
        organization_id: str,
        agent_id: str,
        amount: float,
        merchant_name: str,
        reason: ApprovalReason,
        reason_details: Optional[str] = None,
    ) -> PendingApproval:
        approval = PendingApproval(
            id=new_id("pa"),
            purchase_intent_id=purchase_intent_id,
            organization_id=organization_id,
            agent_id=agent_id,
            amount=amount,
            merchant_name=merchant_name,
            reason=ApprovalReason(reason),
            reason_details=reason_details,
            created_at=self._clock(),
        )
        self._approvals[approval.id] = approval
        return approval

    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]:
        return self._approvals.get(approval_id)

    async def update_pending_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reviewed_by: str,
        review_note: Optional[str] = None,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> PendingApproval:
        existing = self._approvals.get(approval_id)
        if existing is None:
            raise NotFoundError("Pending approval", approval_id)
        if expected_status is not None and existing.status != ApprovalStatus(expected_status):
            raise ApprovalError(f"Approval {approval_id} is already {existing.status.value}")
        updated = replace(
            existing,
            status=ApprovalStatus(status),
            reviewed_by=reviewed_by,
            reviewed_at=self._clock(),
            review_note=review_note,
        )
        self._approvals[approval_id] = updated
        return updated

    async def list_pending_approvals(
        self,
        org_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[PendingApproval]:
        return [
            approval
            for approval in self._approvals.values()
            if approval.organization_id == org_id
            and (status is None or approval.status == ApprovalStatus(status))
        ]
