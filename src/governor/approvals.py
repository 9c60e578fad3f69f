"""
Human review of purchases held for approval.

Approving issues the card the agent would have received on the fast path;
rejecting or expiring closes the intent without one.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import ApprovalError, NotFoundError
from .models import (
    ApprovalStatus,
    PendingApproval,
    PurchaseIntent,
    PurchaseStatus,
    RejectionCode,
    VirtualCard,
    VirtualCardRequest,
)
from .payment import PaymentProvider
from .store import StorageProvider

logger = logging.getLogger(__name__)

EXPIRY_REVIEWER = "system:expiry"


class ApprovalDesk:
    def __init__(
        self,
        storage: StorageProvider,
        payments: PaymentProvider,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.payments = payments
        self.audit = audit
        self._clock = clock

    async def list_pending(self, org_id: str) -> list[PendingApproval]:
        return await self.storage.list_pending_approvals(org_id, status=ApprovalStatus.PENDING)

    async def _open(self, approval_id: str) -> tuple[PendingApproval, PurchaseIntent]:
        approval = await self.storage.get_pending_approval(approval_id)
        if approval is None:
            raise NotFoundError("Pending approval", approval_id)
        if approval.status is not ApprovalStatus.PENDING:
            raise ApprovalError(f"Approval {approval_id} is already {approval.status.value}")
        intent = await self.storage.get_purchase_intent(approval.purchase_intent_id)
        if intent is None:
            raise NotFoundError("Purchase intent", approval.purchase_intent_id)
        return approval, intent

    def _log(self, event_type: EventType, intent: PurchaseIntent, **fields) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            agent_id=intent.agent_id,
            organization_id=intent.organization_id,
            purchase_intent_id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            merchant=intent.merchant_name,
            **fields,
        )

    async def approve(
        self, approval_id: str, reviewer: str, note: Optional[str] = None
    ) -> VirtualCard:
        """Approve a held purchase and issue its card.

        The approval is claimed (pending -> approved in one storage write)
        before the card is created, so only one reviewer can issue it. A
        failed issue reopens the approval.
        """
        approval, intent = await self._open(approval_id)
        if not await self.payments.is_configured():
            raise ApprovalError("No payment method is configured; cannot issue a card")

        approval = await self.storage.update_pending_approval(
            approval.id,
            ApprovalStatus.APPROVED,
            reviewed_by=reviewer,
            review_note=note,
            expected_status=ApprovalStatus.PENDING,
        )
        try:
            card = await self.payments.create_virtual_card(
                VirtualCardRequest(
                    purchase_intent_id=intent.id,
                    organization_id=intent.organization_id,
                    agent_id=intent.agent_id,
                    amount=intent.amount,
                    currency=intent.currency,
                )
            )
        except Exception as exc:
            logger.error("Card issuance failed for approval %s: %s", approval.id, exc)
            await self.storage.update_pending_approval(
                approval.id,
                ApprovalStatus.PENDING,
                reviewed_by=reviewer,
                review_note=str(exc) or "Card issuance failed",
                expected_status=ApprovalStatus.APPROVED,
            )
            raise

        try:
            await self.storage.update_purchase_intent_status(intent.id, PurchaseStatus.APPROVED)
            await self.storage.record_merchant(intent.organization_id, intent.merchant_name)
        except Exception:
            logger.error("Recording approval %s failed; cancelling card %s", approval.id, card.id)
            await self.payments.cancel_virtual_card(card.id)
            raise

        logger.info("Approval %s approved by %s; card %s issued", approval.id, reviewer, card.id)
        self._log(
            EventType.APPROVAL_RESOLVED,
            intent,
            reason=note,
            details={"approval_id": approval.id, "decision": "approved", "reviewer": reviewer},
        )
        self._log(EventType.CARD_ISSUED, intent, details={"card_id": card.id})
        return card

    async def reject(
        self, approval_id: str, reviewer: str, note: Optional[str] = None
    ) -> PendingApproval:
        approval, intent = await self._open(approval_id)
        updated = await self.storage.update_pending_approval(
            approval.id,
            ApprovalStatus.REJECTED,
            reviewed_by=reviewer,
            review_note=note,
            expected_status=ApprovalStatus.PENDING,
        )
        await self.storage.update_purchase_intent_status(
            intent.id,
            PurchaseStatus.REJECTED,
            rejection_code=RejectionCode.POLICY_REJECTED,
            rejection_reason=note or f"Rejected by {reviewer}",
        )
        logger.info("Approval %s rejected by %s", approval.id, reviewer)
        self._log(
            EventType.APPROVAL_RESOLVED,
            intent,
            success=False,
            reason=note,
            details={"approval_id": approval.id, "decision": "rejected", "reviewer": reviewer},
        )
        return updated

    async def expire_stale(self, org_id: str, max_age_seconds: float) -> list[PendingApproval]:
        """Close approvals that have waited longer than max_age_seconds."""
        cutoff = self._clock() - max_age_seconds
        expired = []
        for approval in await self.list_pending(org_id):
            if approval.created_at >= cutoff:
                continue
            try:
                updated = await self.storage.update_pending_approval(
                    approval.id,
                    ApprovalStatus.REJECTED,
                    reviewed_by=EXPIRY_REVIEWER,
                    review_note="Expired without review",
                    expected_status=ApprovalStatus.PENDING,
                )
            except ApprovalError:
                logger.info("Approval %s was resolved before it could expire", approval.id)
                continue
            intent = await self.storage.update_purchase_intent_status(
                approval.purchase_intent_id, PurchaseStatus.EXPIRED
            )
            self._log(
                EventType.APPROVAL_EXPIRED,
                intent,
                success=False,
                details={"approval_id": approval.id},
            )
            expired.append(updated)

        if expired:
            logger.info("Expired %d stale approval(s) for %s", len(expired), org_id)
        return expired
