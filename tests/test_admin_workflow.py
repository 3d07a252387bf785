"""
Manual approval workflow tests
"""

from datetime import timedelta

import pytest


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_request_recorded_and_admin_notified(self, admin, store, bot, config, clock):
        result = await admin.create_request(1001, "alice", "weekly", "0712345678")

        assert result.success
        request = result.request
        assert (request.status, request.package, request.phone_number) == ("pending", "weekly", "254712345678")
        assert request.requested_at == clock.now

        kwargs = bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == config.admin_id
        assert "NEW SUBSCRIPTION REQUEST" in kwargs["text"]
        buttons = [button.callback_data for row in kwargs["reply_markup"].inline_keyboard for button in row]
        assert buttons == [f"approve_{request.id}", f"reject_{request.id}", f"details_{request.id}"]

    @pytest.mark.asyncio
    async def test_only_one_pending_request_per_user(self, admin, store):
        await admin.create_request(1001, "alice", "weekly")

        duplicate = await admin.create_request(1001, "alice", "daily")

        assert not duplicate.success
        assert duplicate.error == "DUPLICATE_PENDING_REQUEST"
        assert await store.count_pending_requests() == 1

    @pytest.mark.asyncio
    async def test_invalid_input(self, admin, store):
        bad_package = await admin.create_request(1001, "alice", "yearly")
        bad_phone = await admin.create_request(1001, "alice", "daily", "555")

        assert bad_package.error == "VALIDATION_ERROR"
        assert bad_phone.error == "VALIDATION_ERROR"
        assert await store.count_pending_requests() == 0


class TestApproveReject:

    @pytest.mark.asyncio
    async def test_approval_creates_subscription_and_grants_access(
            self, admin, store, subscriptions, bot, config, clock):
        request = (await admin.create_request(1001, "alice", "weekly")).request

        result = await admin.approve_request(request.id, config.admin_id)

        assert result.success
        stored = await store.get_request(request.id)
        assert stored.status == "approved"
        assert stored.processed_by == config.admin_id
        assert stored.processed_at == clock.now

        subscription = await subscriptions.get_active_subscription(1001)
        assert subscription.payment_ref == f"ADMIN_APPROVED_{request.id}"
        assert subscription.amount == 300
        assert subscription.end_date == clock.now + timedelta(days=7)
        bot.create_chat_invite_link.assert_awaited_once()
        texts = [call.kwargs["text"] for call in bot.send_message.await_args_list]
        assert any("Request Approved" in text for text in texts)

    @pytest.mark.asyncio
    async def test_approval_for_active_subscriber_extends_from_current_end(
            self, admin, store, subscriptions, make_user, make_subscription, config, clock):
        user = await make_user(1001)
        current = await make_subscription(user, "daily", start=clock.now - timedelta(hours=12))
        request = (await admin.create_request(1001, "alice", "weekly")).request

        result = await admin.approve_request(request.id, config.admin_id)

        assert result.success
        renewed = await subscriptions.get_active_subscription(1001)
        assert renewed.payment_ref == f"ADMIN_APPROVED_{request.id}"
        assert renewed.start_date == current.end_date
        assert renewed.end_date == current.end_date + timedelta(days=7)
        assert (await store.get_subscription(current.id)).status == "expired"

    @pytest.mark.asyncio
    async def test_second_approval_is_refused(self, admin, store, config):
        request = (await admin.create_request(1001, "alice", "daily")).request
        await admin.approve_request(request.id, config.admin_id)

        again = await admin.approve_request(request.id, config.admin_id)

        assert not again.success
        assert again.error == "ALREADY_PROCESSED"
        assert await store.count_subscriptions() == 1

    @pytest.mark.asyncio
    async def test_unknown_request(self, admin, config):
        result = await admin.approve_request(404, config.admin_id)
        assert result.error == "REQUEST_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_rejection(self, admin, store, bot, config):
        request = (await admin.create_request(1001, "alice", "monthly")).request

        result = await admin.reject_request(request.id, config.admin_id, reason="Payment not received")

        assert result.success
        stored = await store.get_request(request.id)
        assert stored.status == "rejected"
        assert stored.notes == "Payment not received"
        assert "Payment not received" in bot.send_message.await_args.kwargs["text"]
        assert (await admin.approve_request(request.id, config.admin_id)).error == "ALREADY_PROCESSED"
        assert await store.count_subscriptions() == 0

    @pytest.mark.asyncio
    async def test_user_can_request_again_after_decision(self, admin, config):
        request = (await admin.create_request(1001, "alice", "daily")).request
        await admin.reject_request(request.id, config.admin_id)

        assert (await admin.create_request(1001, "alice", "weekly")).success


class TestSummaries:

    @pytest.mark.asyncio
    async def test_pending_requests_oldest_first(self, admin, clock):
        for telegram_id in (1003, 1001, 1002):
            await admin.create_request(telegram_id, None, "daily")
            clock.advance(minutes=1)

        pending = await admin.get_pending_requests()

        assert [r.telegram_id for r in pending] == [1003, 1001, 1002]

    @pytest.mark.asyncio
    async def test_summary_is_limited(self, admin, clock):
        assert "No pending" in await admin.get_pending_summary()

        for telegram_id in range(2001, 2013):
            await admin.create_request(telegram_id, f"user{telegram_id}", "daily")
            clock.advance(seconds=1)

        summary = await admin.get_pending_summary()

        assert "(12)" in summary
        assert "@user2010" in summary
        assert "@user2011" not in summary
        assert "... and 2 more requests" in summary

    @pytest.mark.asyncio
    async def test_request_details(self, admin, config):
        request = (await admin.create_request(1001, "alice", "weekly", "254712345678")).request
        await admin.reject_request(request.id, config.admin_id, reason="Duplicate")

        details = await admin.get_request_details(request.id)

        assert f"REQUEST #{request.id}" in details
        assert "KES 300" in details
        assert "Duplicate" in details
        assert await admin.get_request_details(999) is None

    def test_is_admin(self, admin, config):
        assert admin.is_admin(config.admin_id)
        assert not admin.is_admin(1001)
