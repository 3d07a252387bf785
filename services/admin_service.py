"""
Admin Service - Manual approval workflow for subscription requests

Users submit a request (package + optional phone); the admin approves or
rejects it from inline buttons. Approval creates a subscription with
payment_ref ADMIN_APPROVED_<request id> at the package price and grants
group access, bypassing payment reconciliation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Callable, List, Optional
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from config import Config
from models import SubscriptionRequest, PurchaseRequestStatus
from services.ledger_store import LedgerStore
from services.subscription_service import SubscriptionService
from services.group_management_service import GroupManagementService
from services.notification_service import NotificationService
from services.user_service import UserService
from services import transitions
from utils.constants import ADMIN_APPROVED_REF_PREFIX, PENDING_SUMMARY_LIMIT, CallbackData
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import DuplicatePaymentReference, RequestNotFound, ValidationError
from utils.helpers import format_datetime, format_package_name, normalize_phone_number

logger = logging.getLogger(__name__)


@dataclass
class AdminActionResult:
    success: bool
    message: str
    error: Optional[str] = None
    request: Optional[SubscriptionRequest] = None


class AdminService:
    """Request workflow and admin-only helpers"""

    def __init__(self, config: Config, store: LedgerStore, users: UserService,
                 subscriptions: SubscriptionService, groups: GroupManagementService,
                 notifications: NotificationService,
                 clock: Callable[[], datetime] = get_naive_utc_now):
        self.config = config
        self.admin_id = config.admin_id
        self.store = store
        self.users = users
        self.subscriptions = subscriptions
        self.groups = groups
        self.notifications = notifications
        self.clock = clock

    def is_admin(self, telegram_id: int) -> bool:
        return telegram_id == self.admin_id

    # ============================================================================
    # REQUEST CREATION
    # ============================================================================

    async def create_request(self, telegram_id: int, username: Optional[str], package: str,
                             phone_number: Optional[str] = None) -> AdminActionResult:
        """Record a pending request unless the user already has one"""
        try:
            transitions.validate_package(package)
        except ValidationError as e:
            return AdminActionResult(success=False, message=e.message, error=e.error_code)

        phone = None
        if phone_number:
            phone = normalize_phone_number(phone_number)
            if phone is None:
                return AdminActionResult(
                    success=False,
                    message="Invalid phone number. Use the format 07XXXXXXXX or 2547XXXXXXXX.",
                    error="VALIDATION_ERROR",
                )

        # Check-then-insert: two simultaneous submissions can both pass this check
        existing = await self.store.find_pending_request(telegram_id)
        if existing is not None:
            logger.info(f"🔄 ADMIN: User {telegram_id} already has pending request {existing.id}")
            return AdminActionResult(
                success=False,
                message="You already have a pending request. Please wait for the admin to review it.",
                error="DUPLICATE_PENDING_REQUEST",
                request=existing,
            )

        user = await self.users.create_user(telegram_id, username=username, phone_number=phone)
        request = await self.store.add_request(SubscriptionRequest(
            user_id=user.id,
            telegram_id=telegram_id,
            username=user.username,
            phone_number=phone,
            package=package,
            status=PurchaseRequestStatus.PENDING.value,
            requested_at=self.clock(),
        ))
        logger.info(f"✅ ADMIN: Created {package} request {request.id} for user {telegram_id}")

        await self.notify_admin_of_request(request)
        return AdminActionResult(success=True, message="Request submitted", request=request)

    async def notify_admin_of_request(self, request: SubscriptionRequest) -> bool:
        """Send the request to the admin with Approve / Reject / Details buttons"""
        text = (
            "🔔 <b>NEW SUBSCRIPTION REQUEST</b>\n\n"
            f"{self._describe_request(request)}\n\n"
            "Please approve or reject this request:"
        )
        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("✅ Approve", callback_data=f"{CallbackData.APPROVE}{request.id}"),
                InlineKeyboardButton("❌ Reject", callback_data=f"{CallbackData.REJECT}{request.id}"),
            ],
            [InlineKeyboardButton("📋 View Details", callback_data=f"{CallbackData.DETAILS}{request.id}")],
        ])
        sent = await self.notifications.send_message(self.admin_id, text, reply_markup=keyboard)
        if not sent:
            logger.warning(
                f"⚠️ ADMIN: Could not notify admin {self.admin_id} of request {request.id} - "
                "has the admin started a chat with the bot?"
            )
        return sent

    def _describe_request(self, request: SubscriptionRequest) -> str:
        user = f"@{escape(request.username)}" if request.username else "No username"
        return (
            f"👤 User: {user}\n"
            f"🆔 Telegram ID: <code>{request.telegram_id}</code>\n"
            f"📱 Phone: {request.phone_number or 'Not provided'}\n"
            f"📦 Package: {format_package_name(request.package)}\n"
            f"💰 Price: KES {self.config.get_price(request.package)}\n"
            f"⏰ Requested: {format_datetime(request.requested_at)}"
        )

    # ============================================================================
    # APPROVE / REJECT
    # ============================================================================

    async def _load_request(self, request_id: int) -> SubscriptionRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    async def approve_request(self, request_id: int, admin_id: int) -> AdminActionResult:
        try:
            request = await self._load_request(request_id)
        except RequestNotFound as e:
            return AdminActionResult(success=False, message="Request not found", error=e.error_code)
        if request.status != PurchaseRequestStatus.PENDING.value:
            return AdminActionResult(
                success=False, message=f"Request already {request.status}", error="ALREADY_PROCESSED"
            )

        changes = transitions.approve_request(request, admin_id, self.clock())
        if not await self.store.process_request(request.id, changes):
            return AdminActionResult(success=False, message="Request already processed", error="ALREADY_PROCESSED")

        price = self.config.get_price(request.package)
        # An active window is extended from its end instead of restarting now
        current = await self.subscriptions.get_active_subscription(request.telegram_id)
        credit = self.subscriptions.renew_subscription if current else self.subscriptions.create_subscription
        try:
            subscription = await credit(
                request.telegram_id, request.package, f"{ADMIN_APPROVED_REF_PREFIX}{request.id}", price
            )
        except DuplicatePaymentReference:
            logger.warning(f"⚠️ ADMIN: Subscription for request {request.id} already exists")
            return AdminActionResult(success=True, message="Request already fulfilled", request=request)
        except Exception as e:
            logger.error(
                f"❌ ADMIN: Request {request.id} approved but subscription creation failed: "
                f"{type(e).__name__}: {e}"
            )
            return AdminActionResult(
                success=False,
                message="Request approved but the subscription could not be created",
                error="SUBSCRIPTION_CREATION_FAILED",
            )

        access = await self.groups.grant_access(request.telegram_id)
        await self.notifications.notify_request_approved(request.telegram_id, subscription)
        await self.notifications.notify_group_access(request.telegram_id, access.success)

        logger.info(
            f"✅ ADMIN: Request {request.id} approved by {admin_id} "
            f"(subscription {subscription.id}, group access={access.success})"
        )
        for name, value in changes.items():
            setattr(request, name, value)
        return AdminActionResult(
            success=True,
            message=f"✅ Request approved! User has been granted {request.package} access.",
            request=request,
        )

    async def reject_request(self, request_id: int, admin_id: int,
                             reason: Optional[str] = None) -> AdminActionResult:
        try:
            request = await self._load_request(request_id)
        except RequestNotFound as e:
            return AdminActionResult(success=False, message="Request not found", error=e.error_code)
        if request.status != PurchaseRequestStatus.PENDING.value:
            return AdminActionResult(
                success=False, message=f"Request already {request.status}", error="ALREADY_PROCESSED"
            )

        changes = transitions.reject_request(request, admin_id, self.clock(), reason)
        if not await self.store.process_request(request.id, changes):
            return AdminActionResult(success=False, message="Request already processed", error="ALREADY_PROCESSED")

        await self.notifications.notify_request_rejected(request.telegram_id, reason)
        logger.info(f"✅ ADMIN: Request {request.id} rejected by {admin_id}")

        for name, value in changes.items():
            setattr(request, name, value)
        suffix = f" Reason: {reason}" if reason else ""
        return AdminActionResult(success=True, message=f"❌ Request rejected.{suffix}", request=request)

    # ============================================================================
    # SUMMARIES
    # ============================================================================

    async def get_pending_requests(self) -> List[SubscriptionRequest]:
        return await self.store.list_pending_requests()

    async def get_pending_summary(self, limit: int = PENDING_SUMMARY_LIMIT) -> str:
        pending = await self.get_pending_requests()
        if not pending:
            return "✅ No pending subscription requests at the moment."

        lines = [f"📋 <b>PENDING SUBSCRIPTION REQUESTS</b> ({len(pending)})\n"]
        for request in pending[:limit]:
            who = f"@{escape(request.username)}" if request.username else f"ID: {request.telegram_id}"
            lines.append(
                f"#{request.id} 👤 {who}\n"
                f"📦 {format_package_name(request.package)} • ⏰ {format_datetime(request.requested_at)}\n"
            )
        if len(pending) > limit:
            lines.append(f"... and {len(pending) - limit} more requests")
        return "\n".join(lines)

    async def get_request_details(self, request_id: int) -> Optional[str]:
        request = await self.store.get_request(request_id)
        if request is None:
            return None
        details = f"📋 <b>REQUEST #{request.id}</b> ({request.status})\n\n{self._describe_request(request)}"
        if request.processed_at:
            details += f"\n✔️ Processed: {format_datetime(request.processed_at)} by {request.processed_by}"
        if request.notes:
            details += f"\n📝 Notes: {escape(request.notes)}"
        return details
