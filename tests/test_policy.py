"""Tests for the spending policy waterfall."""

import pytest

from conftest import make_agent, make_org
from governor.models import (
    ApprovalReason,
    OrgGuardrails,
    PurchaseRequest,
    PurchaseStatus,
    RejectionCode,
    SpendingCheckResult,
)
from governor.policy import SpendingChecker, merchant_matches


async def check(store, amount, merchant="Acme Supplies", agent_id="agent_1"):
    checker = SpendingChecker(store)
    return await checker.check_spending(
        PurchaseRequest(
            agent_id=agent_id,
            amount=amount,
            currency="usd",
            merchant_name=merchant,
            description="test purchase",
        )
    )


async def record_approved(store, amount, agent_id="agent_1", org_id="org_1", merchant="Acme Supplies"):
    return await store.create_purchase_intent(
        organization_id=org_id,
        agent_id=agent_id,
        amount=amount,
        currency="usd",
        description="earlier purchase",
        merchant_name=merchant,
        status=PurchaseStatus.APPROVED,
    )


class TestMerchantMatching:
    def test_substring_case_insensitive(self):
        assert merchant_matches("AWS Marketplace", ["aws"])
        assert merchant_matches("aws", ["AWS"])

    def test_no_match(self):
        assert not merchant_matches("Digital Ocean", ["aws", "github"])

    def test_blank_entries_ignored(self):
        assert not merchant_matches("Anything", ["", "   "])


class TestIdentity:
    @pytest.mark.asyncio
    async def test_unknown_agent(self, memory_store):
        result = await check(memory_store(), 10, agent_id="ghost")
        assert not result.allowed
        assert result.rejection_code == RejectionCode.AGENT_NOT_FOUND
        assert result.rejection_message == "Agent not found"

    @pytest.mark.asyncio
    async def test_missing_org_uses_agent_not_found_code(self, memory_store):
        store = memory_store(make_agent(organization_id="org_gone"))
        result = await check(store, 10)
        assert result.rejection_code == RejectionCode.AGENT_NOT_FOUND
        assert result.rejection_message == "Organization not found"

    @pytest.mark.asyncio
    async def test_nonpositive_amount_is_a_caller_error(self, memory_store):
        with pytest.raises(ValueError):
            await check(memory_store(), 0)


class TestHardLimits:
    @pytest.mark.asyncio
    async def test_per_transaction_limit_is_inclusive(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=100))
        assert (await check(store, 100)).allowed

        result = await check(store, 100.01)
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT
        assert result.rejection_message == (
            "Amount $100.01 exceeds per-transaction limit of $100.00"
        )

    @pytest.mark.asyncio
    async def test_zero_limit_is_a_real_limit(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=0))
        result = await check(store, 0.01)
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT

    @pytest.mark.asyncio
    async def test_unset_limits_allow_anything(self, memory_store):
        result = await check(memory_store(), 1_000_000)
        assert result.allowed
        assert not result.requires_approval
        assert result.outcome == PurchaseStatus.APPROVED

    @pytest.mark.asyncio
    async def test_org_max_transaction(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(max_transaction_amount=500))
        store = memory_store(org=org)
        assert (await check(store, 500)).allowed
        result = await check(store, 501)
        assert result.rejection_code == RejectionCode.OVER_ORG_MAX_TRANSACTION
        assert "organization maximum of $500.00" in result.rejection_message

    @pytest.mark.asyncio
    async def test_agent_limit_checked_before_org_max(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(max_transaction_amount=50))
        store = memory_store(make_agent(per_transaction_limit=40), org=org)
        result = await check(store, 60)
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT

    @pytest.mark.asyncio
    async def test_daily_limit_includes_current_amount(self, memory_store):
        store = memory_store(make_agent(daily_limit=100))
        await record_approved(store, 80)

        assert (await check(store, 20)).allowed
        result = await check(store, 20.01)
        assert result.rejection_code == RejectionCode.DAILY_LIMIT_EXCEEDED
        assert "(current: $80.00)" in result.rejection_message

    @pytest.mark.asyncio
    async def test_only_approved_intents_count_toward_spend(self, memory_store):
        store = memory_store(make_agent(daily_limit=100))
        for status in (PurchaseStatus.REJECTED, PurchaseStatus.PENDING_APPROVAL):
            await store.create_purchase_intent(
                organization_id="org_1",
                agent_id="agent_1",
                amount=90,
                currency="usd",
                description="not counted",
                merchant_name="Acme Supplies",
                status=status,
            )
        assert (await check(store, 100)).allowed

    @pytest.mark.asyncio
    async def test_yesterdays_spend_leaves_daily_window(self, memory_store, clock):
        store = memory_store(make_agent(daily_limit=100, monthly_limit=1000))
        await record_approved(store, 100)
        assert (await check(store, 1)).rejection_code == RejectionCode.DAILY_LIMIT_EXCEEDED

        clock.advance(86_400)
        assert (await check(store, 1)).allowed

    @pytest.mark.asyncio
    async def test_monthly_limit(self, memory_store):
        store = memory_store(make_agent(monthly_limit=300))
        await record_approved(store, 250)
        result = await check(store, 60)
        assert result.rejection_code == RejectionCode.MONTHLY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_daily_checked_before_monthly(self, memory_store):
        store = memory_store(make_agent(daily_limit=50, monthly_limit=50))
        result = await check(store, 60)
        assert result.rejection_code == RejectionCode.DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_org_budget_spans_agents(self, memory_store):
        store = memory_store(
            make_agent(id="agent_1"),
            make_agent(id="agent_2"),
            org=make_org(monthly_budget=1000),
        )
        await record_approved(store, 900, agent_id="agent_2")
        result = await check(store, 150, agent_id="agent_1")
        assert result.rejection_code == RejectionCode.ORG_BUDGET_EXCEEDED
        assert "Organization monthly budget of $1,000.00" in result.rejection_message

    @pytest.mark.asyncio
    async def test_float_sums_compare_exactly(self, memory_store):
        store = memory_store(make_agent(daily_limit=0.3))
        await record_approved(store, 0.1)
        assert (await check(store, 0.2)).allowed

    @pytest.mark.asyncio
    async def test_sub_micro_amount_equal_to_limit_is_allowed(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=0.0000015))
        assert (await check(store, 0.0000015)).allowed

        result = await check(store, 0.0000016)
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT


class TestMerchantRules:
    @pytest.mark.asyncio
    async def test_blocked_merchant(self, memory_store):
        store = memory_store(make_agent(blocked_merchants=["aws"]))
        result = await check(store, 10, merchant="AWS Marketplace")
        assert result.rejection_code == RejectionCode.MERCHANT_BLOCKED
        assert result.rejection_message == 'Merchant "AWS Marketplace" is blocked for this agent'

    @pytest.mark.asyncio
    async def test_block_wins_over_allow(self, memory_store):
        store = memory_store(make_agent(allowed_merchants=["github"], blocked_merchants=["github"]))
        result = await check(store, 10, merchant="GitHub")
        assert result.rejection_code == RejectionCode.MERCHANT_BLOCKED

    @pytest.mark.asyncio
    async def test_allowlist(self, memory_store):
        store = memory_store(make_agent(allowed_merchants=["github", "openai"]))
        assert (await check(store, 10, merchant="GitHub Inc")).allowed

        result = await check(store, 10, merchant="Digital Ocean")
        assert result.rejection_code == RejectionCode.MERCHANT_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_empty_allowlist_allows_all(self, memory_store):
        store = memory_store(make_agent(allowed_merchants=[]))
        assert (await check(store, 10, merchant="Anyone")).allowed

    @pytest.mark.asyncio
    async def test_blocked_category(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(block_categories=["casino"]))
        store = memory_store(org=org)
        result = await check(store, 10, merchant="Lucky Casino Online")
        assert result.rejection_code == RejectionCode.CATEGORY_BLOCKED

    @pytest.mark.asyncio
    async def test_hard_limits_beat_merchant_rules(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=5, blocked_merchants=["aws"]))
        result = await check(store, 10, merchant="AWS")
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT


class TestApprovalConditions:
    @pytest.mark.asyncio
    async def test_agent_threshold_is_inclusive(self, memory_store):
        store = memory_store(make_agent(approval_threshold=50))
        assert not (await check(store, 50)).requires_approval

        result = await check(store, 50.01)
        assert result.allowed
        assert result.requires_approval
        assert result.approval_category == ApprovalReason.OVER_THRESHOLD
        assert result.approval_reason == "Amount $50.01 exceeds approval threshold of $50.00"
        assert result.outcome == PurchaseStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_org_threshold(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(require_approval_above=200))
        result = await check(memory_store(org=org), 250)
        assert result.approval_category == ApprovalReason.OVER_THRESHOLD
        assert "organization approval threshold of $200.00" in result.approval_reason

    @pytest.mark.asyncio
    async def test_agent_threshold_reported_before_org_threshold(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(require_approval_above=20))
        store = memory_store(make_agent(approval_threshold=10), org=org)
        result = await check(store, 30)
        assert "organization" not in result.approval_reason

    @pytest.mark.asyncio
    async def test_rejection_beats_approval(self, memory_store):
        store = memory_store(make_agent(approval_threshold=10, blocked_merchants=["aws"]))
        result = await check(store, 50, merchant="AWS")
        assert not result.allowed
        assert not result.requires_approval

    @pytest.mark.asyncio
    async def test_new_vendor_flag(self, memory_store):
        store = memory_store(make_agent(flag_new_vendors=True))
        result = await check(store, 10, merchant="Fresh Vendor")
        assert result.approval_category == ApprovalReason.NEW_VENDOR
        assert result.approval_reason == 'First purchase from new vendor "Fresh Vendor"'

        await store.record_merchant("org_1", "FRESH VENDOR")
        result = await check(store, 10, merchant="Fresh Vendor")
        assert result.allowed and not result.requires_approval

    @pytest.mark.asyncio
    async def test_org_new_vendor_flag(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(flag_all_new_vendors=True))
        result = await check(memory_store(org=org), 10, merchant="Fresh Vendor")
        assert result.approval_category == ApprovalReason.NEW_VENDOR
        assert result.approval_reason.endswith("(org policy)")

    @pytest.mark.asyncio
    async def test_threshold_reported_before_new_vendor(self, memory_store):
        store = memory_store(make_agent(approval_threshold=10, flag_new_vendors=True))
        result = await check(store, 20, merchant="Fresh Vendor")
        assert result.approval_category == ApprovalReason.OVER_THRESHOLD


class TestPurity:
    @pytest.mark.asyncio
    async def test_check_writes_nothing(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=5, flag_new_vendors=True))
        await check(store, 10)
        await check(store, 1, merchant="Fresh Vendor")

        assert await store.list_purchase_intents("agent_1") == []
        assert await store.list_pending_approvals("org_1") == []
        assert await store.is_new_vendor("org_1", "Fresh Vendor")

    @pytest.mark.asyncio
    async def test_same_state_same_verdict(self, memory_store):
        store = memory_store(make_agent(daily_limit=100, approval_threshold=20))
        first = await check(store, 50)
        second = await check(store, 50)
        assert first == second


class TestScenarios:
    @pytest.mark.asyncio
    async def test_transaction_limit_wins_over_threshold(self, memory_store):
        store = memory_store(make_agent(per_transaction_limit=100, approval_threshold=50))
        result = await check(store, 150)
        assert result.rejection_code == RejectionCode.OVER_TRANSACTION_LIMIT
        assert not result.requires_approval

    @pytest.mark.asyncio
    async def test_blocklist_entry_matches_longer_name(self, memory_store):
        store = memory_store(make_agent(blocked_merchants=["figma"]))
        result = await check(store, 10, merchant="Figma Inc.")
        assert result.rejection_code == RejectionCode.MERCHANT_BLOCKED

    @pytest.mark.asyncio
    async def test_monthly_limit_fires_before_threshold(self, memory_store):
        store = memory_store(
            make_agent(monthly_limit=1000, per_transaction_limit=100, approval_threshold=50)
        )
        await record_approved(store, 950)
        result = await check(store, 60)
        assert result.rejection_code == RejectionCode.MONTHLY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_org_max_without_agent_limit(self, memory_store):
        org = make_org(guardrails=OrgGuardrails(max_transaction_amount=500))
        result = await check(memory_store(org=org), 600)
        assert result.rejection_code == RejectionCode.OVER_ORG_MAX_TRANSACTION

    @pytest.mark.asyncio
    async def test_new_vendor_cleared_after_recording(self, memory_store):
        store = memory_store(make_agent(flag_new_vendors=True))
        first = await check(store, 10, merchant="Acme")
        assert first.outcome == PurchaseStatus.PENDING_APPROVAL
        assert "new vendor" in first.approval_reason

        await store.record_merchant("org_1", "Acme")
        assert (await check(store, 10, merchant="Acme")).outcome == PurchaseStatus.APPROVED

    def test_rejected_verdict_cannot_require_approval(self):
        with pytest.raises(ValueError):
            SpendingCheckResult(
                allowed=False,
                requires_approval=True,
                rejection_code=RejectionCode.MERCHANT_BLOCKED,
            )
