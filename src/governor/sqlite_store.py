"""
SQLite-backed storage collaborator.

Writes run inside BEGIN IMMEDIATE transactions so concurrent processes see
a consistent intent log. Amounts are stored as integer micros. Every call
opens its own connection on a worker thread, keeping the event loop free.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .config import ensure_private_dir, ensure_private_file
from .errors import ApprovalError, NotFoundError, StorageError
from .models import (
    Agent,
    ApprovalReason,
    ApprovalStatus,
    Organization,
    PendingApproval,
    PurchaseIntent,
    PurchaseStatus,
    RejectionCode,
)
from .money import amount_to_micros, micros_to_float
from .store import BudgetViews, Clock, PeriodLike, new_id, period_start

logger = logging.getLogger(__name__)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        body TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id TEXT PRIMARY KEY,
        body TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS purchase_intents (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        amount_micros INTEGER NOT NULL,
        currency TEXT NOT NULL,
        description TEXT NOT NULL,
        merchant_name TEXT NOT NULL,
        merchant_url TEXT,
        status TEXT NOT NULL,
        rejection_code TEXT,
        rejection_reason TEXT,
        metadata TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_intents_agent
    ON purchase_intents (agent_id, status, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_intents_org
    ON purchase_intents (organization_id, status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_approvals (
        id TEXT PRIMARY KEY,
        purchase_intent_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        amount_micros INTEGER NOT NULL,
        merchant_name TEXT NOT NULL,
        reason TEXT NOT NULL,
        reason_details TEXT,
        status TEXT NOT NULL,
        reviewed_by TEXT,
        reviewed_at REAL,
        review_note TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS known_merchants (
        organization_id TEXT NOT NULL,
        merchant TEXT NOT NULL,
        first_seen REAL NOT NULL,
        PRIMARY KEY (organization_id, merchant)
    )
    """,
)


class SqliteStore(BudgetViews):
    """Durable store for a single-host deployment."""

    def __init__(self, db_path: Path, clock: Clock = time.time):
        self.db_path = Path(db_path)
        self._clock = clock
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                conn.execute(statement)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error("SQLite operation %s failed: %s", fn.__name__, exc)
            raise StorageError(f"SQLite operation failed: {exc}") from exc

    # Row mapping

    def _row_to_intent(self, row: sqlite3.Row) -> PurchaseIntent:
        return PurchaseIntent(
            id=row["id"],
            organization_id=row["organization_id"],
            agent_id=row["agent_id"],
            amount=micros_to_float(row["amount_micros"]),
            currency=row["currency"],
            description=row["description"],
            merchant_name=row["merchant_name"],
            merchant_url=row["merchant_url"],
            status=PurchaseStatus(row["status"]),
            rejection_code=RejectionCode(row["rejection_code"]) if row["rejection_code"] else None,
            rejection_reason=row["rejection_reason"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            created_at=row["created_at"],
        )

    def _row_to_approval(self, row: sqlite3.Row) -> PendingApproval:
        return PendingApproval(
            id=row["id"],
            purchase_intent_id=row["purchase_intent_id"],
            organization_id=row["organization_id"],
            agent_id=row["agent_id"],
            amount=micros_to_float(row["amount_micros"]),
            merchant_name=row["merchant_name"],
            reason=ApprovalReason(row["reason"]),
            reason_details=row["reason_details"],
            status=ApprovalStatus(row["status"]),
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            review_note=row["review_note"],
            created_at=row["created_at"],
        )

    # Administration

    def _save_agent(self, agent: Agent) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO agents (id, organization_id, body, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    organization_id = excluded.organization_id,
                    body = excluded.body,
                    updated_at = excluded.updated_at
                """,
                (agent.id, agent.organization_id, json.dumps(agent.to_dict()), self._clock()),
            )

    async def save_agent(self, agent: Agent) -> None:
        await self._run(self._save_agent, agent)

    def _save_organization(self, org: Organization) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO organizations (id, body, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    body = excluded.body,
                    updated_at = excluded.updated_at
                """,
                (org.id, json.dumps(org.to_dict()), self._clock()),
            )

    async def save_organization(self, org: Organization) -> None:
        await self._run(self._save_organization, org)

    # Agents & organizations

    def _get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._connect() as conn:
            row = conn.execute("SELECT body FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return Agent.from_dict(json.loads(row["body"])) if row else None

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._run(self._get_agent, agent_id)

    def _get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute("SELECT body FROM organizations WHERE id = ?", (org_id,)).fetchone()
        return Organization.from_dict(json.loads(row["body"])) if row else None

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        return await self._run(self._get_organization, org_id)

    # Spend aggregates

    def _sum_approved(self, column: str, value: str, since: float) -> float:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT COALESCE(SUM(amount_micros), 0) AS spent
                FROM purchase_intents
                WHERE {column} = ? AND status = ? AND created_at >= ?
                """,
                (value, PurchaseStatus.APPROVED.value, since),
            ).fetchone()
        return micros_to_float(row["spent"])

    async def get_agent_spend(self, agent_id: str, period: PeriodLike) -> float:
        since = period_start(period, self._clock())
        return await self._run(self._sum_approved, "agent_id", agent_id, since)

    async def get_org_spend(self, org_id: str, period: PeriodLike) -> float:
        since = period_start(period, self._clock())
        return await self._run(self._sum_approved, "organization_id", org_id, since)

    # Vendor history

    def _is_new_vendor(self, org_id: str, merchant_name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM known_merchants WHERE organization_id = ? AND merchant = ?",
                (org_id, merchant_name.lower()),
            ).fetchone()
        return row is None

    async def is_new_vendor(self, org_id: str, merchant_name: str) -> bool:
        return await self._run(self._is_new_vendor, org_id, merchant_name)

    def _record_merchant(self, org_id: str, merchant_name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO known_merchants (organization_id, merchant, first_seen)
                VALUES (?, ?, ?)
                """,
                (org_id, merchant_name.lower(), self._clock()),
            )

    async def record_merchant(self, org_id: str, merchant_name: str) -> None:
        await self._run(self._record_merchant, org_id, merchant_name)

    # Purchase intents

    def _insert_intent(self, intent: PurchaseIntent) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO purchase_intents (
                    id, organization_id, agent_id, amount_micros, currency, description,
                    merchant_name, merchant_url, status, rejection_code, rejection_reason,
                    metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.id,
                    intent.organization_id,
                    intent.agent_id,
                    amount_to_micros(intent.amount),
                    intent.currency,
                    intent.description,
                    intent.merchant_name,
                    intent.merchant_url,
                    intent.status.value,
                    intent.rejection_code.value if intent.rejection_code else None,
                    intent.rejection_reason,
                    json.dumps(intent.metadata) if intent.metadata else None,
                    intent.created_at,
                ),
            )

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
        await self._run(self._insert_intent, intent)
        logger.debug("Stored purchase intent %s (%s)", intent.id, intent.status.value)
        return intent

    def _get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM purchase_intents WHERE id = ?", (intent_id,)).fetchone()
        return self._row_to_intent(row) if row else None

    async def get_purchase_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        return await self._run(self._get_intent, intent_id)

    def _update_intent_status(
        self,
        intent_id: str,
        status: PurchaseStatus,
        rejection_code: Optional[RejectionCode],
        rejection_reason: Optional[str],
    ) -> PurchaseIntent:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE purchase_intents
                SET status = ?,
                    rejection_code = COALESCE(?, rejection_code),
                    rejection_reason = COALESCE(?, rejection_reason)
                WHERE id = ?
                """,
                (
                    PurchaseStatus(status).value,
                    RejectionCode(rejection_code).value if rejection_code else None,
                    rejection_reason,
                    intent_id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError("Purchase intent", intent_id)
            row = conn.execute("SELECT * FROM purchase_intents WHERE id = ?", (intent_id,)).fetchone()
        return self._row_to_intent(row)

    async def update_purchase_intent_status(
        self,
        intent_id: str,
        status: PurchaseStatus,
        rejection_code: Optional[RejectionCode] = None,
        rejection_reason: Optional[str] = None,
    ) -> PurchaseIntent:
        return await self._run(
            self._update_intent_status, intent_id, status, rejection_code, rejection_reason
        )

    def _list_intents(
        self,
        agent_id: str,
        status: Optional[PurchaseStatus],
        limit: Optional[int],
    ) -> list[PurchaseIntent]:
        query = "SELECT * FROM purchase_intents WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if status is not None:
            query += " AND status = ?"
            params.append(PurchaseStatus(status).value)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_intent(r) for r in rows]

    async def list_purchase_intents(
        self,
        agent_id: str,
        status: Optional[PurchaseStatus] = None,
        limit: Optional[int] = None,
    ) -> list[PurchaseIntent]:
        return await self._run(self._list_intents, agent_id, status, limit)

    # Approvals

    def _insert_approval(self, approval: PendingApproval) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_approvals (
                    id, purchase_intent_id, organization_id, agent_id, amount_micros,
                    merchant_name, reason, reason_details, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    approval.id,
                    approval.purchase_intent_id,
                    approval.organization_id,
                    approval.agent_id,
                    amount_to_micros(approval.amount),
                    approval.merchant_name,
                    approval.reason.value,
                    approval.reason_details,
                    approval.status.value,
                    approval.created_at,
                ),
            )

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
        await self._run(self._insert_approval, approval)
        return approval

    def _get_approval(self, approval_id: str) -> Optional[PendingApproval]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE id = ?", (approval_id,)
            ).fetchone()
        return self._row_to_approval(row) if row else None

    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]:
        return await self._run(self._get_approval, approval_id)

    def _update_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reviewed_by: str,
        review_note: Optional[str],
        expected_status: Optional[ApprovalStatus],
    ) -> PendingApproval:
        query = """
            UPDATE pending_approvals
            SET status = ?, reviewed_by = ?, reviewed_at = ?, review_note = ?
            WHERE id = ?
        """
        params: list[Any] = [
            ApprovalStatus(status).value, reviewed_by, self._clock(), review_note, approval_id,
        ]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(expected_status).value)
        with self._transaction() as conn:
            cur = conn.execute(query, params)
            if cur.rowcount == 0:
                current = conn.execute(
                    "SELECT status FROM pending_approvals WHERE id = ?", (approval_id,)
                ).fetchone()
                if current is None:
                    raise NotFoundError("Pending approval", approval_id)
                raise ApprovalError(f"Approval {approval_id} is already {current['status']}")
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE id = ?", (approval_id,)
            ).fetchone()
        return self._row_to_approval(row)

    async def update_pending_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reviewed_by: str,
        review_note: Optional[str] = None,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> PendingApproval:
        return await self._run(
            self._update_approval, approval_id, status, reviewed_by, review_note, expected_status
        )

    def _list_approvals(self, org_id: str, status: Optional[ApprovalStatus]) -> list[PendingApproval]:
        query = "SELECT * FROM pending_approvals WHERE organization_id = ?"
        params: list[Any] = [org_id]
        if status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(status).value)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_approval(r) for r in rows]

    async def list_pending_approvals(
        self,
        org_id: str,
        status: Optional[ApprovalStatus] = None,
    ) -> list[PendingApproval]:
        return await self._run(self._list_approvals, org_id, status)
