"""
Governor — spending governance for purchasing agents.

Agent limits and organization guardrails decide every purchase:
reject, hold for human approval, or approve with a single-use card.
"""

__version__ = "0.1.0"

from .errors import (
    ApprovalError,
    CardIssuanceError,
    ConfigError,
    GovernorError,
    NotFoundError,
    PaymentError,
    StorageError,
    ToolArgumentError,
)
from .models import (
    Agent,
    ApprovalReason,
    ApprovalStatus,
    Organization,
    OrgGuardrails,
    PendingApproval,
    PurchaseIntent,
    PurchaseRequest,
    PurchaseStatus,
    RejectionCode,
    SpendingCheckResult,
    VirtualCard,
)
from .store import InMemoryStore, StorageProvider
from .sqlite_store import SqliteStore
from .payment import MockPaymentProvider, PaymentProvider, StripeIssuingProvider
from .policy import SpendingChecker
from .handlers import HandlerContext, PurchaseRouter
from .server import GovernanceServer
from .approvals import ApprovalDesk
from .audit import AuditTrail, EventType
from .config import Settings

__all__ = [
    "GovernorError", "ConfigError", "StorageError", "NotFoundError", "PaymentError",
    "CardIssuanceError", "ToolArgumentError", "ApprovalError",
    "Agent", "Organization", "OrgGuardrails", "PurchaseRequest", "PurchaseIntent",
    "PendingApproval", "PurchaseStatus", "ApprovalStatus", "ApprovalReason",
    "RejectionCode", "SpendingCheckResult", "VirtualCard",
    "StorageProvider", "InMemoryStore", "SqliteStore",
    "PaymentProvider", "MockPaymentProvider", "StripeIssuingProvider",
    "SpendingChecker", "HandlerContext", "PurchaseRouter", "GovernanceServer",
    "ApprovalDesk", "AuditTrail", "EventType", "Settings",
]
