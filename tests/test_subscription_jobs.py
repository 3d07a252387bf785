"""
Background job tests
Expiry sweep, expiring-soon notices and the scheduler wiring
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import chat_member
from jobs.scheduler import SubscriptionScheduler
from jobs.subscription_jobs import (
    run_due_unbans, run_expiring_soon_notice, run_expiry_sweep, run_pending_reconciliation
)
from services.group_management_service import MembershipResult


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_overdue_subscription_is_expired_removed_and_notified(
            self, subscriptions, groups, notifications, store, make_user, make_subscription, bot, clock):
        user = await make_user(1001)
        sub = await make_subscription(user, "daily", start=clock.now - timedelta(days=2))
        bot.get_chat_member.return_value = chat_member("member")

        result = await run_expiry_sweep(subscriptions, groups, notifications)

        assert result.errors == 0
        assert len(result.processed) == 1
        account = result.processed[0]
        assert (account.telegram_id, account.removed, account.notified) == (1001, True, True)
        assert (await store.get_subscription(sub.id)).status == "expired"
        bot.ban_chat_member.assert_awaited_once()
        assert "Subscription Expired" in bot.send_message.await_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(
            self, subscriptions, groups, notifications, make_user, make_subscription, bot, clock):
        user = await make_user(1001)
        await make_subscription(user, "daily", start=clock.now - timedelta(days=2))
        bot.get_chat_member.return_value = chat_member("member")

        await run_expiry_sweep(subscriptions, groups, notifications)
        second = await run_expiry_sweep(subscriptions, groups, notifications)

        assert second.processed == []
        assert bot.ban_chat_member.await_count == 1
        assert bot.send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_user_with_newer_window_keeps_access(
            self, subscriptions, groups, notifications, store, make_user, make_subscription, bot, clock):
        user = await make_user(1001)
        old = await make_subscription(user, "daily", start=clock.now - timedelta(days=2), payment_ref="A")
        await make_subscription(user, "weekly", start=clock.now - timedelta(days=1), payment_ref="B", amount=300)

        result = await run_expiry_sweep(subscriptions, groups, notifications)

        assert (await store.get_subscription(old.id)).status == "expired"
        assert result.processed[0].removed is False
        bot.ban_chat_member.assert_not_awaited()
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_failing_account_does_not_stop_the_sweep(
            self, subscriptions, groups, notifications, make_user, make_subscription, clock, monkeypatch):
        first = await make_user(1001, username="alice")
        second = await make_user(1002, username="bob")
        await make_subscription(first, "daily", start=clock.now - timedelta(days=3), payment_ref="A")
        await make_subscription(second, "daily", start=clock.now - timedelta(days=2), payment_ref="B")
        monkeypatch.setattr(groups, "revoke_access", AsyncMock(side_effect=[
            RuntimeError("telegram down"), MembershipResult(success=True),
        ]))

        result = await run_expiry_sweep(subscriptions, groups, notifications)

        assert result.errors == 1
        assert [account.telegram_id for account in result.processed] == [1002]

    @pytest.mark.asyncio
    async def test_removal_failure_is_reported(
            self, subscriptions, groups, notifications, make_user, make_subscription, bot, clock):
        user = await make_user(1001)
        await make_subscription(user, "daily", start=clock.now - timedelta(days=2))
        bot.get_chat_member.return_value = chat_member("administrator")

        result = await run_expiry_sweep(subscriptions, groups, notifications)

        account = result.processed[0]
        assert account.removed is False
        assert account.error == "Cannot remove a group administrator"


class TestOtherJobs:

    @pytest.mark.asyncio
    async def test_expiring_soon_notice(self, subscriptions, notifications, make_user, make_subscription, bot, clock):
        user = await make_user(1001)
        await make_subscription(user, "daily", start=clock.now - timedelta(hours=20), payment_ref="SOON")
        await make_subscription(user, "monthly", start=clock.now, payment_ref="LATER", amount=1000)

        assert await run_expiring_soon_notice(subscriptions, notifications) == 1
        assert "Expiring Soon" in bot.send_message.await_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_job_errors_are_contained(self):
        reconciliation = MagicMock()
        reconciliation.reconcile_pending_transactions = AsyncMock(side_effect=RuntimeError("boom"))
        groups = MagicMock()
        groups.process_due_unbans = AsyncMock(side_effect=RuntimeError("boom"))

        stats = await run_pending_reconciliation(reconciliation)

        assert stats.errors == 1
        assert await run_due_unbans(groups) == 0


class TestScheduler:

    def test_registers_every_job(self):
        container = SimpleNamespace(
            subscriptions=MagicMock(), notifications=MagicMock(),
            reconciliation=MagicMock(), groups=MagicMock(),
        )
        scheduler = SubscriptionScheduler(container)

        scheduler.setup_jobs()

        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {
            "expiring_soon_notice",
            "pending_transaction_reconciliation",
            "stale_pending_cleanup",
            "expiry_sweep",
            "scheduled_unbans",
        }
        sweep = scheduler.scheduler.get_job("expiry_sweep")
        assert sweep.kwargs["groups"] is container.groups

    def test_interval_jobs_first_run_in_utc(self):
        container = SimpleNamespace(
            subscriptions=MagicMock(), notifications=MagicMock(),
            reconciliation=MagicMock(), groups=MagicMock(),
        )
        scheduler = SubscriptionScheduler(container)

        before = datetime.now(timezone.utc)
        scheduler.setup_jobs()
        after = datetime.now(timezone.utc)

        for job_id in ("pending_transaction_reconciliation", "stale_pending_cleanup", "expiry_sweep"):
            start = scheduler.scheduler.get_job(job_id).trigger.start_date
            assert before + timedelta(seconds=30) <= start <= after + timedelta(seconds=30)
