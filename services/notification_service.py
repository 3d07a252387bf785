"""
Notification Service - Outbound Telegram messages to subscribers and the admin

All sends are best-effort: failures are logged and reported as False,
never raised, so a notification problem cannot undo a payment or a
subscription change.
"""

import logging
from datetime import datetime
from html import escape
from typing import Optional
from telegram import Bot, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError, Forbidden

from models import Subscription
from utils.datetime_helpers import format_time_remaining
from utils.helpers import format_datetime, format_package_name

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends formatted HTML messages through the bot"""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, telegram_id: int, text: str,
                           reply_markup: Optional[InlineKeyboardMarkup] = None) -> bool:
        try:
            await self.bot.send_message(
                chat_id=telegram_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
                disable_web_page_preview=True,
            )
            return True
        except Forbidden:
            logger.warning(f"⚠️ NOTIFY: User {telegram_id} has blocked the bot")
        except TelegramError as e:
            logger.error(f"❌ NOTIFY: Failed to message {telegram_id}: {e}")
        return False

    # ============================================================================
    # PAYMENT
    # ============================================================================

    async def notify_payment_confirmed(self, telegram_id: int, subscription: Subscription,
                                       receipt_number: str, amount: int) -> bool:
        text = (
            "✅ <b>Payment Confirmed!</b>\n\n"
            f"🧾 Receipt: <code>{receipt_number}</code>\n"
            f"💰 Amount: KES {amount}\n"
            f"📦 Package: {format_package_name(subscription.package)}\n"
            f"📅 Valid until: {format_datetime(subscription.end_date)}\n\n"
            "Thank you for subscribing!"
        )
        return await self.send_message(telegram_id, text)

    async def notify_payment_verified(self, telegram_id: int, subscription: Subscription,
                                      receipt_number: str, amount: int) -> bool:
        text = (
            "✅ <b>PAYMENT VERIFIED</b>\n\n"
            "We confirmed your M-Pesa payment.\n"
            f"🧾 Receipt: <code>{receipt_number}</code>\n"
            f"💰 Amount: KES {amount}\n"
            f"📦 Package: {format_package_name(subscription.package)}\n"
            f"📅 Valid until: {format_datetime(subscription.end_date)}"
        )
        return await self.send_message(telegram_id, text)

    async def notify_payment_failed(self, telegram_id: int, reason: Optional[str] = None) -> bool:
        text = "❌ <b>Payment Failed</b>\n\n"
        if reason:
            text += f"{escape(reason)}\n\n"
        text += "No money was taken for this subscription. Use /renew to try again."
        return await self.send_message(telegram_id, text)

    async def notify_group_access(self, telegram_id: int, granted: bool) -> bool:
        if granted:
            text = "🎉 <b>Group Access</b>\n\nYour invite link has been sent. Welcome aboard!"
        else:
            text = (
                "⚠️ <b>Group Access</b>\n\n"
                "Your subscription is active but we could not add you to the group right now.\n"
                "Use /access to get a new invite link, or contact the admin."
            )
        return await self.send_message(telegram_id, text)

    async def send_invite_link(self, telegram_id: int, invite_link: str, expires_at: datetime) -> bool:
        text = (
            "🔗 <b>Your Group Invite</b>\n\n"
            f"{invite_link}\n\n"
            f"This link works once and expires at {format_datetime(expires_at)}."
        )
        return await self.send_message(telegram_id, text)

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    async def notify_expiring_soon(self, telegram_id: int, subscription: Subscription,
                                   now: Optional[datetime] = None) -> bool:
        text = (
            "⏰ <b>Subscription Expiring Soon</b>\n\n"
            f"Your {format_package_name(subscription.package)} subscription ends in "
            f"{format_time_remaining(subscription.end_date, now)} "
            f"({format_datetime(subscription.end_date)}).\n\n"
            "Use /renew to keep your access without interruption."
        )
        return await self.send_message(telegram_id, text)

    async def notify_subscription_expired(self, telegram_id: int) -> bool:
        text = (
            "⌛ <b>Subscription Expired</b>\n\n"
            "Your subscription has ended and your group access was removed.\n"
            "Use /renew to subscribe again."
        )
        return await self.send_message(telegram_id, text)

    # ============================================================================
    # MANUAL REQUESTS
    # ============================================================================

    async def notify_request_approved(self, telegram_id: int, subscription: Subscription) -> bool:
        text = (
            "✅ <b>Request Approved!</b>\n\n"
            f"📦 Package: {format_package_name(subscription.package)}\n"
            f"📅 Valid until: {format_datetime(subscription.end_date)}"
        )
        return await self.send_message(telegram_id, text)

    async def notify_request_rejected(self, telegram_id: int, reason: Optional[str] = None) -> bool:
        text = "❌ <b>Request Rejected</b>\n\n"
        if reason:
            text += f"Reason: {escape(reason)}\n\n"
        text += "Contact the admin if you think this is a mistake."
        return await self.send_message(telegram_id, text)
