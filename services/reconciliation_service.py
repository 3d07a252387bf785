"""
Payment Reconciliation Service
Turns M-Pesa STK callbacks and polled status queries into completed or
failed transactions and, on success, a new subscription plus group access.

Safety properties:
- A callback payload is untrusted: shape is validated before any lookup.
- A transaction leaves "pending" exactly once. The terminal write is a
  conditional UPDATE, so a duplicate or concurrent callback (or a poll
  racing the webhook) finds nothing to change and is acknowledged as
  already processed.
- The subscription's payment_ref is the transaction's checkout_request_id,
  so a transaction can credit at most one subscription.
- Group access and notifications are side effects: their failure is logged
  and never rolls back the payment or the subscription.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Config
from models import Transaction, TransactionStatus, User
from services.ledger_store import LedgerStore
from services.subscription_service import SubscriptionService
from services.payment_service import PaymentService, PaymentInitiation, VerificationResult
from services.group_management_service import GroupManagementService, MembershipResult
from services.notification_service import NotificationService
from services import transitions
from utils.constants import (
    MPESA_RECEIPT_FIELD, AUTO_VERIFY_RECEIPT, RECONCILE_MIN_AGE_MINUTES,
    RECONCILE_MAX_AGE_MINUTES, STALE_PENDING_MAX_AGE_MINUTES
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    MalformedPayload, DuplicatePaymentReference, DuplicateTransactionReference, TransactionNotFound,
    ValidationError
)
from utils.helpers import normalize_phone_number, mask_phone

logger = logging.getLogger(__name__)


@dataclass
class StkCallback:
    """Validated Body.stkCallback content"""
    merchant_request_id: str
    checkout_request_id: str
    result_code: int
    result_desc: str
    metadata: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def receipt_number(self) -> Optional[str]:
        for item in self.metadata:
            if isinstance(item, dict) and item.get("Name") == MPESA_RECEIPT_FIELD:
                value = item.get("Value")
                if isinstance(value, str) and value.strip():
                    return value.strip()
                return None
        return None


@dataclass
class NotificationOutcome:
    """Result of processing one provider notification

    reason holds the error code when accepted is False.
    """
    accepted: bool
    message: str
    reason: Optional[str] = None
    checkout_request_id: Optional[str] = None


@dataclass
class ReconciliationStats:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0


def parse_stk_callback(payload: Any) -> StkCallback:
    """Validate the callback shape; raises MalformedPayload"""
    if not isinstance(payload, dict):
        raise MalformedPayload("Callback body must be a JSON object")

    body = payload.get("Body")
    if not isinstance(body, dict):
        raise MalformedPayload("Missing Body")

    callback = body.get("stkCallback")
    if not isinstance(callback, dict):
        raise MalformedPayload("Missing Body.stkCallback")

    for name in ("MerchantRequestID", "CheckoutRequestID", "ResultDesc"):
        value = callback.get(name)
        if not isinstance(value, str) or not value:
            raise MalformedPayload(f"{name} must be a non-empty string")

    result_code = callback.get("ResultCode")
    if isinstance(result_code, bool) or not isinstance(result_code, (int, float)):
        raise MalformedPayload("ResultCode must be a number")
    if isinstance(result_code, float) and not result_code.is_integer():
        raise MalformedPayload("ResultCode must be a whole number")

    metadata = callback.get("CallbackMetadata") or {}
    items = metadata.get("Item") if isinstance(metadata, dict) else None

    return StkCallback(
        merchant_request_id=callback["MerchantRequestID"],
        checkout_request_id=callback["CheckoutRequestID"],
        result_code=int(result_code),
        result_desc=callback["ResultDesc"],
        metadata=items if isinstance(items, list) else [],
    )


class ReconciliationService:
    """Payment reconciliation: webhook callbacks, polling and stale cleanup"""

    def __init__(self, config: Config, store: LedgerStore, subscriptions: SubscriptionService,
                 payments: PaymentService, groups: GroupManagementService,
                 notifications: NotificationService,
                 clock: Callable[[], datetime] = get_naive_utc_now,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 notification_gap_seconds: float = 2.0):
        self.config = config
        self.store = store
        self.subscriptions = subscriptions
        self.payments = payments
        self.groups = groups
        self.notifications = notifications
        self.clock = clock
        self._sleep = sleep
        self.notification_gap_seconds = notification_gap_seconds

    # ============================================================================
    # PAYMENT INITIATION
    # ============================================================================

    async def start_payment(self, telegram_id: int, package: str, phone_number: str,
                            username: Optional[str] = None) -> PaymentInitiation:
        """Send an STK push and record the pending transaction"""
        try:
            transitions.validate_package(package)
        except ValidationError as e:
            return PaymentInitiation(success=False, message=e.message, error=e.error_code)

        phone = normalize_phone_number(phone_number)
        if phone is None:
            return PaymentInitiation(success=False, message="Invalid Kenyan phone number format",
                                     error="VALIDATION_ERROR")

        amount = self.config.get_price(package)
        user = await self.store.upsert_user(telegram_id, username=username, phone_number=phone)

        account_reference = f"SUB{telegram_id}"[:12]
        result = await self.payments.initiate_payment(
            phone, amount, account_reference, f"{package.title()} subscription"
        )
        if not result.success:
            return result

        transaction = Transaction(
            user_id=user.id,
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            phone_number=phone,
            amount=amount,
            package=package,
            status=TransactionStatus.PENDING.value,
        )
        try:
            await self.store.add_transaction(transaction)
        except DuplicateTransactionReference:
            # Provider reused an id we already track; keep the original record
            logger.warning(f"⚠️ RECONCILE: Checkout id {result.checkout_request_id} already recorded")

        logger.info(
            f"✅ RECONCILE: Pending {package} transaction {result.checkout_request_id} "
            f"for {telegram_id} ({mask_phone(phone)}, KES {amount})"
        )
        return result

    # ============================================================================
    # WEBHOOK
    # ============================================================================

    async def handle_provider_notification(self, payload: Any) -> NotificationOutcome:
        try:
            callback = parse_stk_callback(payload)
        except MalformedPayload as e:
            logger.warning(f"⚠️ RECONCILE: Rejected malformed callback: {e.message}")
            return NotificationOutcome(
                accepted=False,
                message="Invalid callback data structure",
                reason=e.error_code,
            )

        logger.info(
            f"🔄 RECONCILE: Callback for {callback.checkout_request_id} "
            f"(code={callback.result_code}: {callback.result_desc})"
        )

        try:
            return await self._process_callback(callback)
        except Exception as e:
            logger.error(
                f"❌ RECONCILE: Error processing callback {callback.checkout_request_id}: "
                f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            return NotificationOutcome(
                accepted=False,
                message="Internal server error",
                reason="CALLBACK_PROCESSING_ERROR",
                checkout_request_id=callback.checkout_request_id,
            )

    async def _process_callback(self, callback: StkCallback) -> NotificationOutcome:
        checkout_id = callback.checkout_request_id
        transaction = await self.store.get_transaction_by_checkout_id(checkout_id)

        if transaction is None:
            logger.warning(f"⚠️ RECONCILE: No transaction for checkout id {checkout_id}")
            return NotificationOutcome(
                accepted=False,
                message="Transaction not found",
                reason=TransactionNotFound.error_code,
                checkout_request_id=checkout_id,
            )

        if transaction.is_terminal:
            logger.info(f"✅ RECONCILE: {checkout_id} already {transaction.status}, ignoring callback")
            return NotificationOutcome(
                accepted=True,
                message="Transaction already processed",
                checkout_request_id=checkout_id,
            )

        if callback.result_code != 0:
            await self._fail(transaction, callback.result_code, callback.result_desc)
            return NotificationOutcome(
                accepted=True,
                message="Payment failure recorded",
                checkout_request_id=checkout_id,
            )

        receipt = callback.receipt_number
        if not receipt:
            logger.error(f"❌ RECONCILE: Successful callback for {checkout_id} has no receipt number")
            await self._fail(transaction, callback.result_code, "Receipt number missing from callback",
                             notify=False)
            return NotificationOutcome(
                accepted=False,
                message="Payment verification failed - receipt number missing",
                reason="RECEIPT_NUMBER_MISSING",
                checkout_request_id=checkout_id,
            )

        return await self._complete_and_fulfil(
            transaction, receipt, callback.result_code, callback.result_desc, polled=False
        )

    # ============================================================================
    # SHARED COMPLETION / FAILURE PATH
    # ============================================================================

    async def _fail(self, transaction: Transaction, result_code: Optional[int],
                    result_desc: Optional[str], notify: bool = True) -> bool:
        changes = transitions.fail_transaction(transaction, result_code, result_desc)
        if not await self.store.finalize_transaction(transaction.id, changes):
            logger.info(f"🔄 RECONCILE: {transaction.checkout_request_id} finalized elsewhere")
            return False

        logger.info(f"✅ RECONCILE: {transaction.checkout_request_id} marked failed ({result_desc})")
        if notify and transaction.user is not None:
            await self.notifications.notify_payment_failed(transaction.user.telegram_id, result_desc)
        return True

    async def _complete_and_fulfil(self, transaction: Transaction, receipt: str,
                                   result_code: Optional[int], result_desc: Optional[str],
                                   polled: bool) -> NotificationOutcome:
        checkout_id = transaction.checkout_request_id
        changes = transitions.complete_transaction(
            transaction, receipt, self.clock(), result_code=result_code, result_desc=result_desc
        )
        if not await self.store.finalize_transaction(transaction.id, changes):
            logger.info(f"🔄 RECONCILE: {checkout_id} finalized elsewhere, skipping fulfilment")
            return NotificationOutcome(
                accepted=True, message="Transaction already processed", checkout_request_id=checkout_id
            )
        logger.info(f"✅ RECONCILE: {checkout_id} completed (receipt {receipt})")

        user: Optional[User] = transaction.user or await self.store.get_user_by_id(transaction.user_id)
        if user is None:
            logger.error(
                f"❌ RECONCILE: Completed transaction {checkout_id} has no user "
                f"(user_id={transaction.user_id}) - manual follow-up required"
            )
            return NotificationOutcome(
                accepted=False,
                message="User not found for completed transaction",
                reason="USER_NOT_FOUND",
                checkout_request_id=checkout_id,
            )

        try:
            subscription = await self.subscriptions.create_subscription(
                user.telegram_id, transaction.package, checkout_id, transaction.amount
            )
        except DuplicatePaymentReference:
            logger.info(f"✅ RECONCILE: Subscription for {checkout_id} already exists")
            return NotificationOutcome(
                accepted=True, message="Transaction already processed", checkout_request_id=checkout_id
            )
        except Exception as e:
            logger.error(
                f"❌ RECONCILE: Payment {checkout_id} completed but subscription creation failed "
                f"for {user.telegram_id}: {type(e).__name__}: {e} - manual follow-up required"
            )
            return NotificationOutcome(
                accepted=False,
                message="Subscription creation failed",
                reason="SUBSCRIPTION_CREATION_FAILED",
                checkout_request_id=checkout_id,
            )

        access = await self._grant_access(user.telegram_id)

        if polled:
            await self.notifications.notify_payment_verified(
                user.telegram_id, subscription, receipt, transaction.amount
            )
        else:
            await self.notifications.notify_payment_confirmed(
                user.telegram_id, subscription, receipt, transaction.amount
            )
        await self._sleep(self.notification_gap_seconds)
        await self.notifications.notify_group_access(user.telegram_id, access.success)

        return NotificationOutcome(
            accepted=True,
            message="Payment processed successfully",
            checkout_request_id=checkout_id,
        )

    async def _grant_access(self, telegram_id: int) -> MembershipResult:
        try:
            result = await self.groups.grant_access(telegram_id)
        except Exception as e:
            result = MembershipResult(success=False, error=f"{type(e).__name__}: {e}")
        if not result.success:
            logger.warning(
                f"⚠️ RECONCILE: Group access for {telegram_id} failed ({result.error}); "
                f"subscription stays active, user can retry with /access"
            )
        return result

    async def apply_verification(self, transaction: Transaction,
                                 result: VerificationResult) -> Optional[NotificationOutcome]:
        """Apply a polled status; None when the result is still inconclusive"""
        if not result.is_definitive:
            return None

        if result.status == TransactionStatus.COMPLETED.value:
            return await self._complete_and_fulfil(
                transaction,
                result.receipt_number or AUTO_VERIFY_RECEIPT,
                result.result_code,
                result.message,
                polled=True,
            )

        await self._fail(transaction, result.result_code, result.message)
        return NotificationOutcome(
            accepted=True,
            message="Payment failure recorded",
            checkout_request_id=transaction.checkout_request_id,
        )

    # ============================================================================
    # SCHEDULED PASSES
    # ============================================================================

    async def poll_transaction_status(self, checkout_request_id: str, max_attempts: int = 3) -> VerificationResult:
        return await self.payments.poll_transaction_status(checkout_request_id, max_attempts)

    async def reconcile_pending_transactions(self, max_attempts: int = 1) -> ReconciliationStats:
        """
        Re-verify pending transactions aged between 1 and 10 minutes.

        Younger ones are left to the webhook; older ones to the stale cleanup.
        """
        now = self.clock()
        pending = await self.store.list_pending_transactions(
            created_after=now - timedelta(minutes=RECONCILE_MAX_AGE_MINUTES),
            created_before=now - timedelta(minutes=RECONCILE_MIN_AGE_MINUTES),
        )
        stats = ReconciliationStats()

        for transaction in pending:
            stats.checked += 1
            try:
                result = await self.poll_transaction_status(transaction.checkout_request_id, max_attempts)
                outcome = await self.apply_verification(transaction, result)
                if outcome is None:
                    stats.still_pending += 1
                elif result.status == TransactionStatus.COMPLETED.value:
                    stats.completed += 1
                else:
                    stats.failed += 1
            except Exception as e:
                stats.errors += 1
                logger.error(
                    f"❌ RECONCILE: Error verifying {transaction.checkout_request_id}: {type(e).__name__}: {e}"
                )

        if stats.checked:
            logger.info(
                f"✅ RECONCILE: Checked {stats.checked} pending - completed={stats.completed} "
                f"failed={stats.failed} pending={stats.still_pending} errors={stats.errors}"
            )
        return stats

    async def cleanup_stale_pending(self, max_age_minutes: int = STALE_PENDING_MAX_AGE_MINUTES) -> int:
        """Fail every transaction still pending after max_age_minutes"""
        cutoff = self.clock() - timedelta(minutes=max_age_minutes)
        stale = await self.store.list_pending_transactions(created_before=cutoff)
        failed = 0
        for transaction in stale:
            try:
                if await self._fail(transaction, None, "Payment timed out", notify=False):
                    failed += 1
            except Exception as e:
                logger.error(f"❌ RECONCILE: Could not fail stale {transaction.checkout_request_id}: {e}")

        if failed:
            logger.info(f"✅ RECONCILE: Failed {failed} stale pending transaction(s)")
        return failed
