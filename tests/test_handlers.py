"""Tests for tool handlers and the purchase state machine."""

import asyncio
import gc
import json
import math

import pytest

from conftest import make_agent, make_org, seed
from governor.audit import AuditTrail, EventType
from governor.errors import CardIssuanceError
from governor.handlers import (
    DEFAULT_SUGGESTION,
    SUGGESTIONS,
    HandlerContext,
    PurchaseRouter,
    suggestion_for,
)
from governor.models import (
    ApprovalReason,
    OrgGuardrails,
    PurchaseStatus,
    RejectionCode,
)
from governor.payment import MockPaymentProvider
from governor.sqlite_store import SqliteStore


CTX = HandlerContext(agent_id="agent_1", organization_id="org_1")


def purchase_args(**overrides):
    args = {
        "amount": 25.0,
        "currency": "usd",
        "description": "API credits",
        "merchant_name": "OpenAI",
    }
    args.update(overrides)
    return args


class UnconfiguredPayments(MockPaymentProvider):
    async def is_configured(self) -> bool:
        return False


class FailingPayments(MockPaymentProvider):
    async def create_virtual_card(self, request):
        raise CardIssuanceError("card_declined", status_code=402)


class TestRequestPurchase:
    @pytest.mark.asyncio
    async def test_approved_path_issues_card(self, memory_store, payments):
        store = memory_store()
        router = PurchaseRouter(store, payments)

        result = await router.request_purchase(purchase_args(project_id="proj_1"), CTX)
        assert not result.is_error
        data = result.data()
        assert data["status"] == "approved"
        assert data["hard_limit_amount"] == 25.0
        assert set(data["card"]) == {"card_id", "number", "exp_month", "exp_year", "cvc", "billing_zip"}
        assert data["expires_at"].endswith("Z")

        intent = await store.get_purchase_intent(data["purchase_intent_id"])
        assert intent.status == PurchaseStatus.APPROVED
        assert intent.metadata == {"project_id": "proj_1"}
        assert not await store.is_new_vendor("org_1", "openai")

        card = await payments.get_virtual_card(data["card"]["card_id"])
        assert card.hard_limit == 25.0

    @pytest.mark.asyncio
    async def test_rejected_path(self, memory_store, payments):
        store = memory_store(make_agent(per_transaction_limit=10))
        result = await PurchaseRouter(store, payments).request_purchase(purchase_args(), CTX)

        data = result.data()
        assert not result.is_error
        assert data["status"] == "rejected"
        assert data["reason_code"] == "OVER_TRANSACTION_LIMIT"
        assert data["suggestion"] == SUGGESTIONS[RejectionCode.OVER_TRANSACTION_LIMIT]
        assert "card" not in data

        [intent] = await store.list_purchase_intents("agent_1")
        assert intent.status == PurchaseStatus.REJECTED
        assert intent.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT
        assert intent.rejection_reason == data["message"]

    @pytest.mark.asyncio
    async def test_approval_path_queues_review(self, memory_store, payments):
        store = memory_store(make_agent(flag_new_vendors=True))
        result = await PurchaseRouter(store, payments).request_purchase(purchase_args(), CTX)

        data = result.data()
        assert data["status"] == "pending_approval"
        assert data["message"] == 'First purchase from new vendor "OpenAI"'
        assert "card" not in data

        approval = await store.get_pending_approval(data["approval_id"])
        assert approval.reason == ApprovalReason.NEW_VENDOR
        assert approval.reason_details == data["message"]
        assert approval.purchase_intent_id == data["purchase_intent_id"]
        intent = await store.get_purchase_intent(data["purchase_intent_id"])
        assert intent.status == PurchaseStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_threshold_approval_category(self, memory_store, payments):
        org = make_org(guardrails=OrgGuardrails(require_approval_above=20))
        store = memory_store(org=org)
        data = (await PurchaseRouter(store, payments).request_purchase(purchase_args(), CTX)).data()
        approval = await store.get_pending_approval(data["approval_id"])
        assert approval.reason == ApprovalReason.OVER_THRESHOLD

    @pytest.mark.asyncio
    async def test_exactly_one_intent_per_request(self, memory_store, payments):
        store = memory_store(make_agent(per_transaction_limit=30, approval_threshold=20))
        router = PurchaseRouter(store, payments)
        for amount in (10, 25, 50):
            await router.request_purchase(purchase_args(amount=amount), CTX)

        statuses = [i.status for i in await store.list_purchase_intents("agent_1")]
        assert statuses == [
            PurchaseStatus.REJECTED,
            PurchaseStatus.PENDING_APPROVAL,
            PurchaseStatus.APPROVED,
        ]

    @pytest.mark.asyncio
    async def test_daily_limit_accumulates_across_requests(self, memory_store, payments):
        store = memory_store(make_agent(daily_limit=100))
        router = PurchaseRouter(store, payments)

        results = [
            (await router.request_purchase(purchase_args(amount=40), CTX)).data()
            for _ in range(3)
        ]
        assert [r["status"] for r in results] == ["approved", "approved", "rejected"]
        assert results[2]["reason_code"] == "DAILY_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_one_agent_are_serialized(self, tmp_path, clock, payments):
        store = SqliteStore(tmp_path / "g.sqlite3", clock=clock)
        await seed(store, make_org(), make_agent(daily_limit=100))
        router = PurchaseRouter(store, payments)

        results = await asyncio.gather(
            router.request_purchase(purchase_args(amount=60), CTX),
            router.request_purchase(purchase_args(amount=60), CTX),
        )
        statuses = sorted(r.data()["status"] for r in results)
        assert statuses == ["approved", "rejected"]
        assert await store.get_agent_spend("agent_1", "daily") == 60

    @pytest.mark.asyncio
    async def test_agent_locks_are_released_after_use(self, memory_store, payments):
        router = PurchaseRouter(memory_store(), payments)
        await router.request_purchase(purchase_args(), CTX)
        await router.request_purchase(purchase_args(), HandlerContext("ghost_1", "org_1"))
        gc.collect()
        assert len(router._agent_locks) == 0

    @pytest.mark.asyncio
    async def test_no_payment_method(self, memory_store):
        store = memory_store()
        router = PurchaseRouter(store, UnconfiguredPayments())
        data = (await router.request_purchase(purchase_args(), CTX)).data()

        assert data["status"] == "rejected"
        assert data["reason_code"] == "NO_PAYMENT_METHOD"
        [intent] = await store.list_purchase_intents("agent_1")
        assert intent.rejection_code == RejectionCode.NO_PAYMENT_METHOD

    @pytest.mark.asyncio
    async def test_card_failure_marks_intent_and_propagates(self, memory_store):
        store = memory_store()
        router = PurchaseRouter(store, FailingPayments())

        with pytest.raises(CardIssuanceError):
            await router.request_purchase(purchase_args(), CTX)

        [intent] = await store.list_purchase_intents("agent_1")
        assert intent.status == PurchaseStatus.REJECTED
        assert intent.rejection_code == RejectionCode.NO_PAYMENT_METHOD
        assert await store.get_agent_spend("agent_1", "daily") == 0
        assert await store.is_new_vendor("org_1", "OpenAI")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"amount": None}, "'amount' must be a positive number"),
            ({"amount": -5}, "'amount' must be a positive number"),
            ({"amount": 0}, "'amount' must be a positive number"),
            ({"amount": True}, "'amount' must be a positive number"),
            ({"amount": "25"}, "'amount' must be a positive number"),
            ({"amount": math.inf}, "'amount' must be a positive number"),
            ({"amount": math.nan}, "'amount' must be a positive number"),
            ({"amount": 10**400}, "'amount' must be a positive number"),
            ({"merchant_name": "  "}, "'merchant_name' is required"),
            ({"currency": 5}, "'currency' is required"),
            ({"merchant_url": 7}, "'merchant_url' must be a string"),
            ({"coupon": "FREE"}, "Unknown argument(s): coupon"),
        ],
    )
    async def test_bad_arguments_never_reach_storage(self, memory_store, payments, overrides, message):
        store = memory_store()
        result = await PurchaseRouter(store, payments).request_purchase(purchase_args(**overrides), CTX)

        assert result.is_error
        assert result.content[0]["text"] == f"Error: {message}"
        assert await store.list_purchase_intents("agent_1") == []

    @pytest.mark.asyncio
    async def test_outcomes_are_audited(self, memory_store, payments, tmp_path):
        trail = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secrets" / "key")
        store = memory_store(make_agent(per_transaction_limit=30, approval_threshold=20))
        router = PurchaseRouter(store, payments, audit=trail)
        for amount in (10, 25, 50):
            await router.request_purchase(purchase_args(amount=amount), CTX)

        kinds = [e.event_type for e in trail.read_events()]
        assert kinds.count(EventType.SPENDING_CHECK.value) == 3
        assert EventType.PURCHASE_APPROVED.value in kinds
        assert EventType.APPROVAL_REQUIRED.value in kinds
        assert EventType.PURCHASE_REJECTED.value in kinds
        assert all("4242" not in json.dumps(e.details or {}) for e in trail.read_events())


class TestSuggestions:
    def test_every_code_has_a_suggestion(self):
        for code in RejectionCode:
            assert suggestion_for(code) == SUGGESTIONS[code]

    def test_unknown_code_falls_back(self):
        assert suggestion_for(None) == DEFAULT_SUGGESTION
        assert DEFAULT_SUGGESTION == "Contact your administrator for assistance."


class TestCheckBudget:
    @pytest.mark.asyncio
    async def test_all_periods(self, memory_store, payments):
        store = memory_store(make_agent(daily_limit=100), org=make_org(monthly_budget=1000))
        router = PurchaseRouter(store, payments)
        await router.request_purchase(purchase_args(amount=40), CTX)

        data = (await router.check_budget({}, CTX)).data()
        assert data["limits"] == {"per_transaction": "unlimited", "daily": 100, "monthly": "unlimited"}
        assert data["current_spend"] == {"daily": 40, "monthly": 40}
        assert data["remaining"] == {"daily": 60, "monthly": "unlimited"}
        assert data["organization"]["org_remaining"] == 960
        assert data["organization"]["percent_used"] == "4.0%"

    @pytest.mark.asyncio
    async def test_single_period(self, memory_store, payments):
        store = memory_store(make_agent(daily_limit=100))
        data = (await PurchaseRouter(store, payments).check_budget({"period": "daily"}, CTX)).data()
        assert data == {"agent_id": "agent_1", "period": "daily", "limit": 100, "spent": 0, "remaining": 100}

    @pytest.mark.asyncio
    async def test_unknown_agent(self, memory_store, payments):
        ctx = HandlerContext(agent_id="ghost", organization_id="org_1")
        result = await PurchaseRouter(memory_store(), payments).check_budget({}, ctx)
        assert result.is_error
        assert result.content[0]["text"] == "Error: Agent not found"

    @pytest.mark.asyncio
    async def test_bad_period(self, memory_store, payments):
        result = await PurchaseRouter(memory_store(), payments).check_budget({"period": "weekly"}, CTX)
        assert result.is_error


class TestListTransactions:
    @pytest.mark.asyncio
    async def test_shape_and_filter(self, memory_store, payments):
        store = memory_store(make_agent(per_transaction_limit=30))
        router = PurchaseRouter(store, payments)
        await router.request_purchase(purchase_args(amount=10), CTX)
        await router.request_purchase(purchase_args(amount=50), CTX)

        data = (await router.list_transactions({}, CTX)).data()
        assert data["count"] == 2
        newest = data["transactions"][0]
        assert newest["status"] == "rejected"
        assert newest["rejection_reason"]["code"] == "OVER_TRANSACTION_LIMIT"
        assert newest["merchant"] == "OpenAI"
        assert data["transactions"][1]["rejection_reason"] is None

        approved = (await router.list_transactions({"status": "approved"}, CTX)).data()
        assert [t["amount"] for t in approved["transactions"]] == [10]

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, memory_store, payments):
        store = memory_store()
        router = PurchaseRouter(store, payments)
        for _ in range(3):
            await router.request_purchase(purchase_args(amount=1), CTX)

        assert (await router.list_transactions({"limit": 0}, CTX)).data()["count"] == 1
        assert (await router.list_transactions({"limit": 500}, CTX)).data()["count"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [{"limit": "ten"}, {"limit": 2.5}, {"status": "done"}])
    async def test_bad_arguments(self, memory_store, payments, args):
        result = await PurchaseRouter(memory_store(), payments).list_transactions(args, CTX)
        assert result.is_error


class TestPolicyInfo:
    @pytest.mark.asyncio
    async def test_describes_controls(self, memory_store, payments):
        agent = make_agent(monthly_limit=500, per_transaction_limit=50, approval_threshold=25)
        org = make_org(guardrails=OrgGuardrails(block_categories=["casino"]))
        router = PurchaseRouter(memory_store(agent, org=org), payments)

        data = (await router.get_policy_info({}, CTX)).data()
        controls = data["agent_controls"]
        assert controls["spending_limits"] == {"per_transaction": 50, "daily": "unlimited", "monthly": 500}
        assert controls["approval_rules"]["threshold"] == "Purchases over $25.00 require human approval"
        assert controls["merchant_restrictions"] == {"blocked": "none", "allowed_only": "any merchant"}
        assert data["organization_guardrails"]["require_approval_above"] == "none"
        assert data["organization_guardrails"]["blocked_categories"] == ["casino"]
        assert data["summary"] == (
            "You have a monthly budget of $500.00, max $50.00 per transaction, "
            "purchases over $25.00 need approval."
        )

    @pytest.mark.asyncio
    async def test_deterministic(self, memory_store, payments):
        router = PurchaseRouter(memory_store(), payments)
        first = await router.get_policy_info({}, CTX)
        second = await router.get_policy_info({}, CTX)
        assert first == second
        assert first.data()["summary"] == "No specific limits set. Organization guardrails still apply."

    @pytest.mark.asyncio
    async def test_rejects_arguments(self, memory_store, payments):
        result = await PurchaseRouter(memory_store(), payments).get_policy_info({"verbose": True}, CTX)
        assert result.is_error
