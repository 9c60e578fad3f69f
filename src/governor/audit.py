"""
Audit trail for purchase decisions.

Events are append-only JSONL entries with an HMAC hash chain so a rewritten
or deleted line is detected on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import DEFAULT_HOME, ensure_private_dir, ensure_private_file
from .models import RejectionCode
from .money import amount_to_micros, micros_to_float


DEFAULT_AUDIT_PATH = DEFAULT_HOME / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = DEFAULT_HOME / "secrets" / "audit_hmac.key"
AUDIT_HMAC_KEY_ENV = "GOVERNOR_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    SPENDING_CHECK = "spending_check"
    PURCHASE_REJECTED = "purchase_rejected"
    APPROVAL_REQUIRED = "approval_required"
    PURCHASE_APPROVED = "purchase_approved"
    CARD_ISSUED = "card_issued"
    CARD_FAILED = "card_failed"
    APPROVAL_RESOLVED = "approval_resolved"
    APPROVAL_EXPIRED = "approval_expired"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    agent_id: Optional[str] = None
    organization_id: Optional[str] = None
    purchase_intent_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    merchant: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


@dataclass
class OutcomeSummary:
    approved: int = 0
    approved_amount: float = 0.0
    rejected: int = 0
    held: int = 0
    expired: int = 0
    card_failures: int = 0
    rejections_by_code: dict[str, int] = field(default_factory=dict)

    def record_rejection(self, code: str) -> None:
        self.rejected += 1
        self.rejections_by_code[code] = self.rejections_by_code.get(code, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_HMAC_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        purchase_intent_id: Optional[str] = None,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        merchant: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "agent_id": agent_id,
            "organization_id": organization_id,
            "purchase_intent_id": purchase_intent_id,
            "amount": amount,
            "currency": currency,
            "merchant": merchant,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
        prev_hash = self._last_hash
        current_hash = self._event_hash(payload, prev_hash)

        event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=current_hash)

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = current_hash
        return event

    def _verified_records(self) -> Iterator[dict[str, Any]]:
        """Yield raw entries in file order, verifying the chain as it goes."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash
                yield raw
        self._last_hash = expected_prev

    def read_events(
        self,
        agent_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        purchase_intent_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [
            _to_event(raw)
            for raw in self._verified_records()
            if (not agent_id or raw.get("agent_id") == agent_id)
            and (not event_type or raw.get("event_type") == event_type.value)
            and (not purchase_intent_id or raw.get("purchase_intent_id") == purchase_intent_id)
        ]
        return events[-limit:]

    def intent_timeline(self, purchase_intent_id: str) -> list[AuditEvent]:
        """Every event for one purchase intent, oldest first: check, hold, review, card."""
        return [
            _to_event(raw)
            for raw in self._verified_records()
            if raw.get("purchase_intent_id") == purchase_intent_id
        ]

    def summarize(
        self,
        organization_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        since: Optional[float] = None,
    ) -> OutcomeSummary:
        """Count purchase outcomes recorded in the trail.

        Evaluations are not counted on their own; each purchase contributes
        the events that closed or held it. Approved spend covers both the
        fast path and reviewer approvals.
        """
        summary = OutcomeSummary()
        approved_micros = 0
        for raw in self._verified_records():
            if organization_id and raw.get("organization_id") != organization_id:
                continue
            if agent_id and raw.get("agent_id") != agent_id:
                continue
            if since is not None and raw.get("timestamp", 0) < since:
                continue

            kind = raw.get("event_type")
            details = raw.get("details") or {}
            if kind == EventType.PURCHASE_APPROVED.value or (
                kind == EventType.APPROVAL_RESOLVED.value and details.get("decision") == "approved"
            ):
                summary.approved += 1
                approved_micros += amount_to_micros(raw.get("amount") or 0)
            elif kind == EventType.PURCHASE_REJECTED.value:
                summary.record_rejection(details.get("reason_code", "UNKNOWN"))
            elif kind == EventType.APPROVAL_RESOLVED.value:
                summary.record_rejection(RejectionCode.POLICY_REJECTED.value)
            elif kind == EventType.APPROVAL_REQUIRED.value:
                summary.held += 1
            elif kind == EventType.CARD_FAILED.value:
                summary.card_failures += 1
            elif kind == EventType.APPROVAL_EXPIRED.value:
                summary.expired += 1

        summary.approved_amount = micros_to_float(approved_micros)
        return summary


def _to_event(raw: dict[str, Any]) -> AuditEvent:
    return AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
