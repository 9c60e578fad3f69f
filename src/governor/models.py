"""
Records shared by the evaluator, the router and the storage backends.

Agents and organizations are owned by storage and never mutated by the
evaluator. Purchase intents and pending approvals are created by the router
after a verdict and then only change status.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


class AgentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalReason(str, Enum):
    OVER_THRESHOLD = "OVER_THRESHOLD"
    NEW_VENDOR = "NEW_VENDOR"
    ORG_GUARDRAIL = "ORG_GUARDRAIL"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class RejectionCode(str, Enum):
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    OVER_TRANSACTION_LIMIT = "OVER_TRANSACTION_LIMIT"
    OVER_ORG_MAX_TRANSACTION = "OVER_ORG_MAX_TRANSACTION"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    MONTHLY_LIMIT_EXCEEDED = "MONTHLY_LIMIT_EXCEEDED"
    ORG_BUDGET_EXCEEDED = "ORG_BUDGET_EXCEEDED"
    MERCHANT_BLOCKED = "MERCHANT_BLOCKED"
    MERCHANT_NOT_ALLOWED = "MERCHANT_NOT_ALLOWED"
    CATEGORY_BLOCKED = "CATEGORY_BLOCKED"
    NO_PAYMENT_METHOD = "NO_PAYMENT_METHOD"
    POLICY_REJECTED = "POLICY_REJECTED"


class SpendPeriod(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


def iso_timestamp(ts: float) -> str:
    """Render a unix timestamp as ISO-8601 UTC."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


# ── Agents & organizations ───────────────────────────────────────

@dataclass
class Agent:
    """An autonomous purchasing entity and its spending controls."""

    id: str
    organization_id: str
    name: str
    status: AgentStatus = AgentStatus.ACTIVE
    monthly_limit: Optional[float] = None
    daily_limit: Optional[float] = None
    per_transaction_limit: Optional[float] = None
    approval_threshold: Optional[float] = None
    allowed_merchants: list[str] = field(default_factory=list)
    blocked_merchants: list[str] = field(default_factory=list)
    flag_new_vendors: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Agent":
        return cls(
            id=d["id"],
            organization_id=d["organization_id"],
            name=d.get("name", d["id"]),
            status=AgentStatus(d.get("status", AgentStatus.ACTIVE.value)),
            monthly_limit=d.get("monthly_limit"),
            daily_limit=d.get("daily_limit"),
            per_transaction_limit=d.get("per_transaction_limit"),
            approval_threshold=d.get("approval_threshold"),
            allowed_merchants=list(d.get("allowed_merchants") or []),
            blocked_merchants=list(d.get("blocked_merchants") or []),
            flag_new_vendors=bool(d.get("flag_new_vendors", False)),
        )


@dataclass
class OrgGuardrails:
    """Organization-wide constraints applied on top of agent limits."""

    max_transaction_amount: Optional[float] = None
    require_approval_above: Optional[float] = None
    flag_all_new_vendors: bool = False
    block_categories: list[str] = field(default_factory=list)


@dataclass
class Organization:
    id: str
    name: str
    monthly_budget: Optional[float] = None
    alert_threshold: float = 0.8
    guardrails: OrgGuardrails = field(default_factory=OrgGuardrails)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Organization":
        g = d.get("guardrails") or {}
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            monthly_budget=d.get("monthly_budget"),
            alert_threshold=d.get("alert_threshold", 0.8),
            guardrails=OrgGuardrails(
                max_transaction_amount=g.get("max_transaction_amount"),
                require_approval_above=g.get("require_approval_above"),
                flag_all_new_vendors=bool(g.get("flag_all_new_vendors", False)),
                block_categories=list(g.get("block_categories") or []),
            ),
        )


# ── Purchases ────────────────────────────────────────────────────

@dataclass
class PurchaseRequest:
    """One purchase attempt, as handed to the evaluator."""

    agent_id: str
    amount: float
    currency: str
    merchant_name: str
    description: str


@dataclass
class PurchaseIntent:
    """Persisted record of one evaluation outcome."""

    id: str
    organization_id: str
    agent_id: str
    amount: float
    currency: str
    description: str
    merchant_name: str
    status: PurchaseStatus
    merchant_url: Optional[str] = None
    rejection_code: Optional[RejectionCode] = None
    rejection_reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class PendingApproval:
    """Human-review queue entry for a purchase intent."""

    id: str
    purchase_intent_id: str
    organization_id: str
    agent_id: str
    amount: float
    merchant_name: str
    reason: ApprovalReason
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason_details: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[float] = None
    review_note: Optional[str] = None
    created_at: float = field(default_factory=time.time)


# ── Verdicts ─────────────────────────────────────────────────────

@dataclass
class SpendingCheckResult:
    """The evaluator's verdict for one purchase request."""

    allowed: bool
    requires_approval: bool = False
    approval_reason: Optional[str] = None
    approval_category: Optional[ApprovalReason] = None
    rejection_code: Optional[RejectionCode] = None
    rejection_message: Optional[str] = None

    def __post_init__(self) -> None:
        if self.requires_approval and not self.allowed:
            raise ValueError("A rejected verdict cannot also require approval")
        if not self.allowed and self.rejection_code is None:
            raise ValueError("A rejected verdict needs a rejection code")

    @classmethod
    def allow(cls) -> "SpendingCheckResult":
        return cls(allowed=True)

    @classmethod
    def reject(cls, code: RejectionCode, message: str) -> "SpendingCheckResult":
        return cls(allowed=False, rejection_code=code, rejection_message=message)

    @classmethod
    def needs_approval(cls, category: ApprovalReason, reason: str) -> "SpendingCheckResult":
        return cls(
            allowed=True,
            requires_approval=True,
            approval_reason=reason,
            approval_category=category,
        )

    @property
    def outcome(self) -> PurchaseStatus:
        if not self.allowed:
            return PurchaseStatus.REJECTED
        if self.requires_approval:
            return PurchaseStatus.PENDING_APPROVAL
        return PurchaseStatus.APPROVED


# ── Cards ────────────────────────────────────────────────────────

@dataclass
class VirtualCardRequest:
    purchase_intent_id: str
    organization_id: str
    agent_id: str
    amount: float
    currency: str


@dataclass
class VirtualCard:
    """A single-use card bounded to exactly one purchase amount."""

    id: str
    card_number: str
    exp_month: int
    exp_year: int
    cvc: str
    hard_limit: float
    currency: str
    expires_at: float
    billing_zip: Optional[str] = None

    def to_wire(self) -> dict:
        return {
            "card_id": self.id,
            "number": self.card_number,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "cvc": self.cvc,
            "billing_zip": self.billing_zip,
        }


# ── Budget projections ───────────────────────────────────────────

Remaining = Union[float, str]


@dataclass
class AgentBudget:
    agent_id: str
    agent_name: str
    limits: dict[str, Optional[float]]
    current_spend: dict[str, float]
    remaining: dict[str, Remaining]


@dataclass
class BudgetUtilization:
    org_budget: Optional[float]
    org_spent: float
    org_remaining: Optional[float]
    percent_used: Optional[float]
    alert_threshold: float
    is_over_threshold: bool
