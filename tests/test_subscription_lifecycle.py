"""
Subscription lifecycle tests
Window arithmetic, renewal continuity, expiry and payment-reference uniqueness
"""

from datetime import datetime, timedelta

import pytest

from models import SubscriptionStatus, Transaction, TransactionStatus
from services import transitions
from utils.datetime_helpers import add_calendar_months, calculate_end_date, format_time_remaining
from utils.exception_handler import (
    AccountNotFound, DuplicatePaymentReference, InvalidTransition, ValidationError
)


class TestWindowArithmetic:
    """Tier durations"""

    def test_daily_and_weekly_are_fixed_lengths(self):
        start = datetime(2025, 3, 10, 12, 0)
        assert calculate_end_date(start, "daily") == datetime(2025, 3, 11, 12, 0)
        assert calculate_end_date(start, "weekly") == datetime(2025, 3, 17, 12, 0)

    def test_monthly_is_one_calendar_month(self):
        assert calculate_end_date(datetime(2025, 3, 10, 8, 30), "monthly") == datetime(2025, 4, 10, 8, 30)
        assert calculate_end_date(datetime(2025, 12, 15), "monthly") == datetime(2026, 1, 15)

    def test_monthly_clamps_to_end_of_short_month(self):
        assert add_calendar_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
        assert add_calendar_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_calendar_months(datetime(2025, 3, 31), 1) == datetime(2025, 4, 30)

    def test_unknown_package_rejected(self):
        with pytest.raises(ValueError):
            calculate_end_date(datetime(2025, 1, 1), "yearly")

    def test_time_remaining_formatting(self):
        now = datetime(2025, 3, 10, 12, 0)
        assert format_time_remaining(now + timedelta(days=2, hours=3), now) == "2 days, 3 hours"
        assert format_time_remaining(now + timedelta(hours=1, minutes=5), now) == "1 hour, 5 minutes"
        assert format_time_remaining(now - timedelta(minutes=1), now) == "expired"


class TestTransitions:
    """Pure status transitions"""

    def test_new_subscription_validates_inputs(self):
        now = datetime(2025, 3, 10)
        with pytest.raises(ValidationError):
            transitions.new_subscription(1, "yearly", "REF", 50, start=now)
        with pytest.raises(ValidationError):
            transitions.new_subscription(1, "daily", "REF", 0, start=now)
        with pytest.raises(ValidationError):
            transitions.new_subscription(1, "daily", "", 50, start=now)

    def test_renewal_start_uses_later_of_now_and_current_end(self):
        now = datetime(2025, 3, 10)
        current = transitions.new_subscription(1, "weekly", "REF", 300, start=now - timedelta(days=2))
        assert transitions.renewal_start(current, now) == current.end_date

        lapsed = transitions.new_subscription(1, "daily", "REF", 50, start=now - timedelta(days=3))
        assert transitions.renewal_start(lapsed, now) == now
        assert transitions.renewal_start(None, now) == now

    def test_only_active_subscriptions_expire(self):
        sub = transitions.new_subscription(1, "daily", "REF", 50, start=datetime(2025, 3, 10))
        assert transitions.expire_subscription(sub) == {"status": "expired"}

        sub.status = SubscriptionStatus.EXPIRED.value
        with pytest.raises(InvalidTransition):
            transitions.expire_subscription(sub)

    def test_entitlement_requires_active_and_unexpired(self):
        now = datetime(2025, 3, 10, 12, 0)
        sub = transitions.new_subscription(1, "daily", "REF", 50, start=now - timedelta(hours=2))
        assert transitions.is_entitled(sub, now)
        assert not transitions.is_entitled(sub, sub.end_date)
        assert not transitions.is_entitled(None, now)

    def test_transaction_result_desc_fits_column(self):
        now = datetime(2025, 3, 10, 12, 0)
        transaction = Transaction(checkout_request_id="ws_CO_001", status=TransactionStatus.PENDING.value)
        long_desc = "x" * 400

        completed = transitions.complete_transaction(transaction, "QKJ4ABC123", now, result_desc=long_desc)
        failed = transitions.fail_transaction(transaction, 1, result_desc=long_desc)

        assert len(completed["result_desc"]) == 255
        assert len(failed["result_desc"]) == 255
        assert transitions.complete_transaction(transaction, "QKJ4ABC123", now)["result_desc"] is None


class TestSubscriptionService:
    """SubscriptionService against the SQLite ledger"""

    @pytest.mark.asyncio
    async def test_create_subscription_starts_now(self, subscriptions, make_user, clock):
        await make_user(1001)

        sub = await subscriptions.create_subscription(1001, "weekly", "ws_CO_1", 300)

        assert sub.status == "active"
        assert sub.start_date == clock.now
        assert sub.end_date == clock.now + timedelta(days=7)
        assert sub.user.telegram_id == 1001
        assert await subscriptions.get_subscription_status(1001) == "active"

    @pytest.mark.asyncio
    async def test_create_for_unknown_account_fails(self, subscriptions):
        with pytest.raises(AccountNotFound):
            await subscriptions.create_subscription(4242, "daily", "REF", 50)

    @pytest.mark.asyncio
    async def test_payment_ref_credits_only_once(self, subscriptions, store, make_user):
        await make_user(1001)
        await subscriptions.create_subscription(1001, "daily", "ws_CO_dup", 50)

        with pytest.raises(DuplicatePaymentReference):
            await subscriptions.create_subscription(1001, "daily", "ws_CO_dup", 50)
        assert await store.count_subscriptions() == 1

    @pytest.mark.asyncio
    async def test_create_expires_past_due_windows_first(self, subscriptions, store, make_user,
                                                         make_subscription, clock):
        user = await make_user(1001)
        old = await make_subscription(user, "daily", start=clock.now - timedelta(days=3), payment_ref="OLD")

        await subscriptions.create_subscription(1001, "daily", "NEW", 50)

        assert (await store.get_subscription(old.id)).status == "expired"

    @pytest.mark.asyncio
    async def test_renewal_extends_from_current_end(self, subscriptions, store, make_user, clock):
        await make_user(1001)
        first = await subscriptions.create_subscription(1001, "weekly", "REF-A", 300)
        clock.advance(days=2)

        renewed = await subscriptions.renew_subscription(1001, "daily", "REF-B", 50)

        assert renewed.start_date == first.end_date
        assert renewed.end_date == first.end_date + timedelta(days=1)
        assert (await store.get_subscription(first.id)).status == "expired"
        active = await subscriptions.get_active_subscription(1001)
        assert active.id == renewed.id

    @pytest.mark.asyncio
    async def test_renewal_after_lapse_starts_now(self, subscriptions, make_user, clock):
        await make_user(1001)
        await subscriptions.create_subscription(1001, "daily", "REF-A", 50)
        clock.advance(days=5)

        renewed = await subscriptions.renew_subscription(1001, "weekly", "REF-B", 300)

        assert renewed.start_date == clock.now

    @pytest.mark.asyncio
    async def test_status_reports_expired_after_end(self, subscriptions, make_user, clock):
        await make_user(1001)
        assert await subscriptions.get_subscription_status(1001) == "none"

        await subscriptions.create_subscription(1001, "daily", "REF", 50)
        clock.advance(days=1)

        assert await subscriptions.is_expired(1001)
        assert await subscriptions.get_subscription_status(1001) == "expired"

    @pytest.mark.asyncio
    async def test_force_expire(self, subscriptions, make_user):
        await make_user(1001)
        await subscriptions.create_subscription(1001, "monthly", "REF", 1000)

        expired = await subscriptions.force_expire(1001)

        assert expired.status == "expired"
        assert await subscriptions.is_expired(1001)
        assert await subscriptions.force_expire(1001) is None

    @pytest.mark.asyncio
    async def test_current_subscription_includes_expired(self, subscriptions, make_user):
        await make_user(1001)
        assert await subscriptions.get_current_subscription(1001) is None
        assert await subscriptions.get_current_subscription(4242) is None

        first = await subscriptions.create_subscription(1001, "daily", "REF-1", 50)
        await subscriptions.force_expire(1001)

        current = await subscriptions.get_current_subscription(1001)
        assert current.id == first.id
        assert current.status == "expired"

    @pytest.mark.asyncio
    async def test_expire_is_applied_once(self, subscriptions, make_user, make_subscription, clock):
        user = await make_user(1001)
        sub = await make_subscription(user, start=clock.now - timedelta(days=2))
        stale_copy = await subscriptions.store.get_subscription(sub.id)

        assert await subscriptions.expire(sub) is not None
        assert await subscriptions.expire(stale_copy) is None

    @pytest.mark.asyncio
    async def test_expiry_queries(self, subscriptions, make_user, make_subscription, clock):
        user = await make_user(1001)
        overdue = await make_subscription(user, start=clock.now - timedelta(days=2), payment_ref="A")
        soon = await make_subscription(user, start=clock.now - timedelta(hours=20), payment_ref="B")
        await make_subscription(user, "monthly", start=clock.now, payment_ref="C", amount=1000)

        assert [s.id for s in await subscriptions.list_overdue()] == [overdue.id]
        assert [s.id for s in await subscriptions.list_expiring_within(24)] == [soon.id]
