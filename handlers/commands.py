"""Command and callback handlers for the Subscription Bot"""

import logging
import re
from html import escape
from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, CallbackQueryHandler, ContextTypes, MessageHandler, filters

from jobs.subscription_jobs import run_expiry_sweep
from utils.constants import CHECK_EXPIRED_DISPLAY_LIMIT, PACKAGE_DURATION_LABELS, CallbackData
from utils.datetime_helpers import format_time_remaining
from utils.exception_handler import safe_telegram_handler
from utils.helpers import format_datetime, format_package_name, normalize_phone_number, mask_phone

logger = logging.getLogger(__name__)

# user_data keys for the purchase flow
PACKAGE_KEY = "package"
AWAITING_PHONE_KEY = "awaiting_phone"
AWAITING_CONFIRMATION_KEY = "awaiting_confirmation"
PHONE_KEY = "phone_number"


def packages_keyboard(config) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(
            f"{format_package_name(package)} • KES {price} ({PACKAGE_DURATION_LABELS[package]})",
            callback_data=f"{CallbackData.BUY}{package}",
        )]
        for package, price in config.prices.items()
    ])


def _clear_flow(context: ContextTypes.DEFAULT_TYPE) -> None:
    for key in (PACKAGE_KEY, AWAITING_PHONE_KEY, AWAITING_CONFIRMATION_KEY, PHONE_KEY):
        context.user_data.pop(key, None)


class SubscriptionBotHandlers:
    """Telegram handlers bound to the service container"""

    def __init__(self, container):
        self.container = container
        self.config = container.config

    def _is_admin(self, update: Update) -> bool:
        return bool(update.effective_user) and self.container.admin.is_admin(update.effective_user.id)

    # ============================================================================
    # USER COMMANDS
    # ============================================================================

    @safe_telegram_handler
    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        _clear_flow(context)
        name = escape(update.effective_user.first_name or "there")
        await update.message.reply_text(
            f"👋 <b>Welcome, {name}!</b>\n\n"
            "Get access to our private group by choosing a package below.\n\n"
            "📋 /status - check your subscription\n"
            "🔄 /renew - extend your subscription\n"
            "❓ /help - all commands",
            parse_mode=ParseMode.HTML,
            reply_markup=packages_keyboard(self.config),
        )

    @safe_telegram_handler
    async def status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        telegram_id = update.effective_user.id
        subscriptions = self.container.subscriptions
        current = await subscriptions.get_current_subscription(telegram_id)

        if current is None:
            await update.message.reply_text(
                "📋 You don't have a subscription yet.\n\nUse /start to choose a package."
            )
            return

        active = await subscriptions.get_active_subscription(telegram_id)
        if active is not None:
            text = (
                "✅ <b>Subscription Active</b>\n\n"
                f"📦 Package: {format_package_name(active.package)}\n"
                f"📅 Started: {format_datetime(active.start_date)}\n"
                f"⏳ Ends: {format_datetime(active.end_date)}\n"
                f"⏰ Time left: {format_time_remaining(active.end_date)}"
            )
        else:
            text = (
                "⌛ <b>Subscription Expired</b>\n\n"
                f"📦 Last package: {format_package_name(current.package)}\n"
                f"📅 Ended: {format_datetime(current.end_date)}\n\n"
                "Use /renew to subscribe again."
            )
        await update.message.reply_text(text, parse_mode=ParseMode.HTML)

    @safe_telegram_handler
    async def renew(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        _clear_flow(context)
        await update.message.reply_text(
            "🔄 <b>Renew Subscription</b>\n\nChoose a package. Time left on an active "
            "subscription is kept.",
            parse_mode=ParseMode.HTML,
            reply_markup=packages_keyboard(self.config),
        )

    @safe_telegram_handler
    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        text = (
            "❓ <b>Help</b>\n\n"
            "/start - choose a package\n"
            "/status - check your subscription\n"
            "/renew - extend your subscription\n"
            "/access - get a new group invite link\n"
            "/pay &lt;package&gt; &lt;phone&gt; - pay with M-Pesa\n"
            "/help - this message\n\n"
            f"Questions? Contact @{escape(self.config.admin_username)}"
        )
        if self._is_admin(update):
            text += (
                "\n\n🛠 <b>Admin</b>\n"
                "/requests, /pending - pending requests\n"
                "/checkexpired - run the expiry sweep now\n"
                "/user &lt;telegram_id&gt; - account lookup"
            )
        await update.message.reply_text(text, parse_mode=ParseMode.HTML)

    @safe_telegram_handler
    async def access(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        telegram_id = update.effective_user.id
        if await self.container.subscriptions.is_expired(telegram_id):
            await update.message.reply_text(
                "❌ You don't have an active subscription.\n\nUse /renew to subscribe."
            )
            return

        result = await self.container.groups.grant_access(telegram_id)
        if result.already_member:
            await update.message.reply_text("✅ You are already a member of the group.")
        elif result.success:
            await update.message.reply_text("🔗 A new invite link has been sent to you.")
        else:
            logger.warning(f"⚠️ BOT: /access failed for {telegram_id}: {result.error}")
            await update.message.reply_text(
                "⚠️ Could not create an invite link right now. Please try again later "
                f"or contact @{self.config.admin_username}."
            )

    # ============================================================================
    # PURCHASE FLOW
    # ============================================================================

    @safe_telegram_handler
    async def select_package(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        package = query.data[len(CallbackData.BUY):]
        if package not in self.config.prices:
            await query.answer("Unknown package")
            return

        _clear_flow(context)
        context.user_data[PACKAGE_KEY] = package
        context.user_data[AWAITING_PHONE_KEY] = True

        await query.answer(f"{format_package_name(package)} package selected")
        await query.message.reply_text(
            f"📦 <b>{format_package_name(package)} Package Selected</b>\n\n"
            f"💰 Price: KES {self.config.get_price(package)}\n\n"
            "📱 Please enter your M-Pesa phone number:\n"
            "• Format: 2547XXXXXXXX or 07XXXXXXXX\n"
            "• Or type \"skip\" to continue without a phone number",
            parse_mode=ParseMode.HTML,
        )

    @safe_telegram_handler
    async def text_input(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        text = (update.message.text or "").strip()
        package = context.user_data.get(PACKAGE_KEY)

        if package and context.user_data.get(AWAITING_PHONE_KEY):
            await self._receive_phone(update, context, package, text)
            return

        if package and context.user_data.get(AWAITING_CONFIRMATION_KEY):
            lowered = text.lower()
            if lowered == "confirm":
                await self._submit_request(update, context)
            elif lowered == "cancel":
                _clear_flow(context)
                await update.message.reply_text("❌ Request cancelled. Use /start to begin again.")
            else:
                await update.message.reply_text(
                    'Please type "confirm" to submit your request or "cancel" to abort.'
                )
            return

        await update.message.reply_text("Please use /start to begin or /status to check your subscription.")

    async def _receive_phone(self, update: Update, context: ContextTypes.DEFAULT_TYPE,
                             package: str, text: str):
        phone = None
        if text.lower() != "skip":
            phone = normalize_phone_number(text)
            if phone is None:
                await update.message.reply_text(
                    "❌ Invalid phone number format.\n\n"
                    "✅ Please enter a valid Kenyan number, e.g. 254712345678 or 0712345678,\n"
                    "or type \"skip\" to continue without one."
                )
                return

        context.user_data[AWAITING_PHONE_KEY] = False
        context.user_data[AWAITING_CONFIRMATION_KEY] = True
        if phone:
            context.user_data[PHONE_KEY] = phone

        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Confirm", callback_data=f"{CallbackData.CONFIRM}{package}"),
            InlineKeyboardButton("❌ Cancel", callback_data=CallbackData.CANCEL),
        ]])

        await update.message.reply_text(
            "📋 <b>CONFIRM YOUR REQUEST</b>\n\n"
            f"📦 Package: {format_package_name(package)}\n"
            f"💰 Price: KES {self.config.get_price(package)}\n"
            f"📱 Phone: {phone or 'Not provided'}\n\n"
            "Your request will be sent to the admin for approval.\n"
            "You can also type \"confirm\" or \"cancel\".",
            parse_mode=ParseMode.HTML,
            reply_markup=keyboard,
        )

    async def _submit_request(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        user = update.effective_user
        package = context.user_data.get(PACKAGE_KEY)
        phone = context.user_data.get(PHONE_KEY)
        reply = update.effective_message.reply_text

        result = await self.container.admin.create_request(user.id, user.username, package, phone)
        _clear_flow(context)

        if not result.success:
            await reply(f"⚠️ {result.message}")
            return

        request = result.request
        await reply(
            "✅ <b>REQUEST SUBMITTED!</b>\n\n"
            f"📋 Request ID: {request.id}\n"
            f"📦 Package: {format_package_name(request.package)}\n"
            f"⏰ Submitted: {format_datetime(request.requested_at)}\n\n"
            f"The admin (@{escape(self.config.admin_username)}) has been notified and will review it shortly.\n"
            "Use /status to check your subscription.",
            parse_mode=ParseMode.HTML,
        )

    @safe_telegram_handler
    async def confirm_flow(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Inline buttons on the confirmation message"""
        query = update.callback_query
        await query.answer()

        if query.data == CallbackData.CANCEL:
            _clear_flow(context)
            await query.message.reply_text("❌ Request cancelled. Use /start to begin again.")
            return

        package = query.data[len(CallbackData.CONFIRM):]
        if context.user_data.get(PACKAGE_KEY) != package or not context.user_data.get(AWAITING_CONFIRMATION_KEY):
            await query.message.reply_text("⌛ This selection has expired. Use /start to begin again.")
            return

        await self._submit_request(update, context)

    @safe_telegram_handler
    async def pay(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/pay <package> <phone> - start an M-Pesa STK push"""
        if not context.args or len(context.args) != 2:
            await update.message.reply_text(
                "Usage: /pay <daily|weekly|monthly> <phone>\nExample: /pay weekly 0712345678"
            )
            return

        user = update.effective_user
        package, phone = context.args[0].lower(), context.args[1]
        result = await self.container.reconciliation.start_payment(user.id, package, phone, user.username)

        if result.success:
            logger.info(f"✅ BOT: STK push sent to {mask_phone(phone)} for {user.id}")
            await update.message.reply_text(
                "📲 <b>Check your phone</b>\n\n"
                f"An M-Pesa prompt for KES {self.config.get_price(package)} was sent.\n"
                "Enter your PIN to complete payment. You'll get a confirmation here once it goes through.",
                parse_mode=ParseMode.HTML,
            )
        else:
            await update.message.reply_text(
                f"❌ Payment could not be started: {escape(result.message)}\n\n"
                "Try again later, or use /start to request admin approval."
            )

    # ============================================================================
    # ADMIN
    # ============================================================================

    @safe_telegram_handler
    async def pending_requests(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_admin(update):
            await update.message.reply_text("⛔ This command is for the admin only.")
            return
        summary = await self.container.admin.get_pending_summary()
        await update.message.reply_text(summary, parse_mode=ParseMode.HTML)

    @safe_telegram_handler
    async def review_request(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """approve_<id> / reject_<id> / details_<id> buttons"""
        query = update.callback_query
        if not self._is_admin(update):
            await query.answer("⛔ Admin only", show_alert=True)
            return

        match = re.match(r"^(approve|reject|details)_(\d+)$", query.data or "")
        if not match:
            await query.answer("Unknown action")
            return

        action, request_id = match.group(1), int(match.group(2))
        admin = self.container.admin

        if action == "details":
            await query.answer()
            details = await admin.get_request_details(request_id)
            await query.message.reply_text(details or "Request not found", parse_mode=ParseMode.HTML)
            return

        if action == "approve":
            result = await admin.approve_request(request_id, update.effective_user.id)
        else:
            result = await admin.reject_request(request_id, update.effective_user.id, reason="Rejected by admin")

        await query.answer(result.message[:200])
        await query.edit_message_reply_markup(reply_markup=None)
        await query.message.reply_text(result.message)

    @safe_telegram_handler
    async def check_expired(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_admin(update):
            await update.message.reply_text("⛔ This command is for the admin only.")
            return

        c = self.container
        await update.message.reply_text("🔄 Running expiry sweep...")
        result = await run_expiry_sweep(c.subscriptions, c.groups, c.notifications)

        if not result.processed:
            await update.message.reply_text("✅ No expired subscriptions found.")
            return

        lines = [f"⌛ <b>Expired {len(result.processed)} subscription(s)</b>\n"]
        for account in result.processed[:CHECK_EXPIRED_DISPLAY_LIMIT]:
            lines.append(
                f"• <code>{account.telegram_id}</code> removed={'yes' if account.removed else 'no'} "
                f"notified={'yes' if account.notified else 'no'}"
            )
        if len(result.processed) > CHECK_EXPIRED_DISPLAY_LIMIT:
            lines.append(f"... and {len(result.processed) - CHECK_EXPIRED_DISPLAY_LIMIT} more")
        if result.errors:
            lines.append(f"\n⚠️ {result.errors} error(s), see logs")
        await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    @safe_telegram_handler
    async def user_lookup(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_admin(update):
            await update.message.reply_text("⛔ This command is for the admin only.")
            return

        if not context.args or not context.args[0].isdigit():
            await update.message.reply_text("Usage: /user <telegram_id>")
            return

        summary = await self.container.users.get_user_summary(int(context.args[0]))
        if summary is None:
            await update.message.reply_text("❌ User not found.")
            return

        text = (
            "👤 <b>USER DETAILS</b>\n\n"
            f"🆔 Telegram ID: <code>{summary['telegram_id']}</code>\n"
            f"👤 Username: {('@' + escape(summary['username'])) if summary['username'] else 'None'}\n"
            f"📱 Phone: {summary['phone_number'] or 'Not provided'}\n"
            f"📅 Joined: {format_datetime(summary['created_at'])}\n"
            f"📋 Status: {summary['status']}"
        )
        subscription = summary["subscription"]
        if subscription is not None:
            text += (
                f"\n📦 Package: {format_package_name(subscription.package)} ({subscription.status})\n"
                f"⏳ Ends: {format_datetime(subscription.end_date)}"
            )
        await update.message.reply_text(text, parse_mode=ParseMode.HTML)


def register_handlers(application: Application, container) -> SubscriptionBotHandlers:
    """Register every command and callback handler with the application"""
    handlers = SubscriptionBotHandlers(container)

    commands = [
        ("start", handlers.start),
        ("status", handlers.status),
        ("renew", handlers.renew),
        ("help", handlers.help),
        ("access", handlers.access),
        ("requests", handlers.pending_requests),
        ("pending", handlers.pending_requests),
        ("checkexpired", handlers.check_expired),
        ("user", handlers.user_lookup),
        ("pay", handlers.pay),
    ]
    for command, handler in commands:
        application.add_handler(CommandHandler(command, handler))
    logger.info(f"✅ BOT: Registered commands {[f'/{name}' for name, _ in commands]}")

    application.add_handler(CallbackQueryHandler(handlers.select_package, pattern=r"^buy_(daily|weekly|monthly)$"))
    application.add_handler(CallbackQueryHandler(
        handlers.confirm_flow, pattern=r"^(confirm_(daily|weekly|monthly)|cancel)$"
    ))
    application.add_handler(CallbackQueryHandler(handlers.review_request, pattern=r"^(approve|reject|details)_\d+$"))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handlers.text_input))
    logger.info("✅ BOT: Registered callback and text handlers")

    return handlers
