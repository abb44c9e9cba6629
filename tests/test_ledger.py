"""Tests for CreditLedger: arithmetic, gating, refunds, packs, and pro windows.

Uses InMemoryBillingRepository from conftest.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.scribe.billing.ledger import PRO_ALLOWANCE_DESCRIPTION, CreditLedger
from src.scribe.billing.schemas import EntryType, UserTier
from src.scribe.errors import InsufficientCreditsError, PreconditionError


USER = "ledger-user"


class TestEstimate:
    def test_rounds_minutes_up(self):
        assert CreditLedger.estimate(61, 1) == 2
        assert CreditLedger.estimate(60, 1) == 1
        assert CreditLedger.estimate(1, 3) == 3

    def test_free_model_costs_nothing(self):
        assert CreditLedger.estimate(3600, 0) == 0

    def test_zero_duration_costs_nothing(self):
        assert CreditLedger.estimate(0, 3) == 0


class TestDebit:
    @pytest.mark.asyncio
    async def test_purchase_then_debits_rejects_overdraft(self, ledger, billing_repo):
        """+100 purchase, -30 usage, -80 usage -> second debit rejected, balance 70."""
        await ledger.credit(USER, 100, EntryType.PURCHASE, "Purchased 100 credits")
        await ledger.debit(USER, 30, "Standup: 1 min")

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit(USER, 80, "Planning: 1 min")

        assert exc_info.value.balance == 70
        assert exc_info.value.required == 80
        assert await ledger.balance(USER) == 70
        assert len(billing_repo.usage_entries(USER)) == 1

    @pytest.mark.asyncio
    async def test_exact_balance_debit_allowed(self, ledger):
        await ledger.credit(USER, 50, EntryType.PURCHASE, "Purchased 50 credits")
        entry = await ledger.debit(USER, 50, "All of it")
        assert entry.amount == -50
        assert entry.type == EntryType.USAGE
        assert await ledger.balance(USER) == 0

    @pytest.mark.asyncio
    async def test_debit_on_empty_account_rejected(self, ledger):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit(USER, 1, "Anything")
        assert exc_info.value.balance == 0

    @pytest.mark.asyncio
    async def test_non_positive_debit_is_a_bug(self, ledger):
        with pytest.raises(ValueError):
            await ledger.debit(USER, 0, "Nothing")

    @pytest.mark.asyncio
    async def test_insufficient_credits_payload(self, ledger):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit(USER, 5, "Anything")
        payload = exc_info.value.to_payload()
        assert payload["error_code"] == "insufficient_credits"
        assert payload["balance"] == 0
        assert payload["required"] == 5


class TestCreditAndRefund:
    @pytest.mark.asyncio
    async def test_credit_rejects_usage_type(self, ledger):
        with pytest.raises(ValueError):
            await ledger.credit(USER, 10, EntryType.USAGE, "Not allowed")

    @pytest.mark.asyncio
    async def test_refund_is_compensating_adjustment(self, ledger, billing_repo):
        job_id = uuid.uuid4()
        await ledger.credit(USER, 100, EntryType.PURCHASE, "Purchased 100 credits")
        await ledger.debit(USER, 30, "Call: 10 min", job_id=job_id)

        entry = await ledger.refund(USER, 30, job_id, "processing failed")

        assert entry.type == EntryType.ADJUSTMENT
        assert entry.amount == 30
        assert entry.job_id == job_id
        assert entry.description == "Refund: processing failed"
        assert await ledger.balance(USER) == 100
        # Append-only: the original usage entry is still there.
        assert len(billing_repo.usage_entries(USER)) == 1

    @pytest.mark.asyncio
    async def test_zero_refund_records_nothing(self, ledger, billing_repo):
        assert await ledger.refund(USER, 0, None, "nothing held") is None
        assert billing_repo.entries == []


class TestSummary:
    @pytest.mark.asyncio
    async def test_summary_newest_first_limited_to_twenty(self, ledger):
        for i in range(25):
            await ledger.credit(USER, 1, EntryType.BONUS, f"Bonus {i}")

        summary = await ledger.summary(USER)

        assert summary.balance == 25
        assert len(summary.recent_entries) == 20
        assert summary.recent_entries[0].description == "Bonus 24"
        assert summary.recent_entries[-1].description == "Bonus 5"


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_known_pack(self, ledger):
        entry = await ledger.purchase(USER, "standard")
        assert entry.type == EntryType.PURCHASE
        assert entry.amount == 500
        assert await ledger.balance(USER) == 500

    @pytest.mark.asyncio
    async def test_unknown_pack_rejected(self, ledger):
        with pytest.raises(PreconditionError):
            await ledger.purchase(USER, "mega")


class TestProWindow:
    @pytest.mark.asyncio
    async def test_upgrade_grants_first_allowance(self, ledger, billing_repo):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        entry = await ledger.upgrade_to_pro(USER, now)

        account = await billing_repo.get_account(USER)
        assert account.tier == UserTier.PRO
        assert account.credits_reset_at == now + timedelta(days=30)
        assert entry.type == EntryType.BONUS
        assert entry.amount == 1200
        assert entry.description == PRO_ALLOWANCE_DESCRIPTION

    @pytest.mark.asyncio
    async def test_window_not_due_grants_nothing(self, ledger):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        await ledger.upgrade_to_pro(USER, now)
        assert await ledger.ensure_window(USER, now + timedelta(days=10)) is None
        assert await ledger.balance(USER) == 1200

    @pytest.mark.asyncio
    async def test_due_window_granted_once(self, ledger, billing_repo):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        await ledger.upgrade_to_pro(USER, now)
        later = now + timedelta(days=31)

        first = await ledger.ensure_window(USER, later)
        second = await ledger.ensure_window(USER, later)

        assert first is not None
        assert second is None
        assert await ledger.balance(USER) == 2400
        account = await billing_repo.get_account(USER)
        assert account.credits_reset_at == now + timedelta(days=60)

    @pytest.mark.asyncio
    async def test_missed_windows_grant_a_single_allowance(self, ledger, billing_repo):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        await ledger.upgrade_to_pro(USER, now)

        await ledger.ensure_window(USER, now + timedelta(days=95))

        assert await ledger.balance(USER) == 2400
        account = await billing_repo.get_account(USER)
        assert account.credits_reset_at == now + timedelta(days=120)

    @pytest.mark.asyncio
    async def test_free_tier_has_no_window(self, ledger):
        assert await ledger.ensure_window(USER, datetime.now(timezone.utc)) is None
