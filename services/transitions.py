"""
Entity status transitions
=========================

Pure functions: they read an entity, check the move is allowed and return
either a new (unsaved) entity or a dict of column changes. Persisting the
result is up to the caller, via LedgerStore.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from models import (
    Subscription, Transaction, SubscriptionRequest, PackageTier,
    SubscriptionStatus, TransactionStatus, PurchaseRequestStatus
)
from utils.datetime_helpers import calculate_end_date
from utils.exception_handler import InvalidTransition, ValidationError

MAX_NOTES_LENGTH = 500
MAX_RESULT_DESC_LENGTH = 255


def validate_package(package: str) -> str:
    if package not in PackageTier.values():
        raise ValidationError(f"Unknown subscription package: {package}")
    return package


def validate_amount(amount: int) -> int:
    if amount is None or amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    return amount


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def new_subscription(user_id: int, package: str, payment_ref: str, amount: int,
                     start: datetime) -> Subscription:
    """Build an active subscription starting at start"""
    validate_package(package)
    validate_amount(amount)
    if not payment_ref:
        raise ValidationError("payment_ref is required")

    return Subscription(
        user_id=user_id,
        package=package,
        start_date=start,
        end_date=calculate_end_date(start, package),
        status=SubscriptionStatus.ACTIVE.value,
        payment_ref=payment_ref,
        amount=amount,
    )


def renewal_start(current: Optional[Subscription], now: datetime) -> datetime:
    """A renewal starts when the current window ends, or now if that is earlier"""
    if current is not None and current.end_date > now:
        return current.end_date
    return now


def is_entitled(subscription: Optional[Subscription], now: datetime) -> bool:
    return (
        subscription is not None
        and subscription.status == SubscriptionStatus.ACTIVE.value
        and subscription.end_date > now
    )


def expire_subscription(subscription: Subscription) -> Dict[str, Any]:
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransition(
            f"Subscription {subscription.id} is {subscription.status}, only active subscriptions expire"
        )
    return {"status": SubscriptionStatus.EXPIRED.value}


# ============================================================================
# TRANSACTIONS - pending -> completed | failed, terminal states never revert
# ============================================================================

def _require_pending(transaction: Transaction) -> None:
    if transaction.status != TransactionStatus.PENDING.value:
        raise InvalidTransition(
            f"Transaction {transaction.checkout_request_id} already {transaction.status}"
        )


def _clip_result_desc(result_desc: Optional[str]) -> Optional[str]:
    return result_desc[:MAX_RESULT_DESC_LENGTH] if result_desc else result_desc


def complete_transaction(transaction: Transaction, receipt_number: str, now: datetime,
                         result_code: Optional[int] = 0,
                         result_desc: Optional[str] = None) -> Dict[str, Any]:
    _require_pending(transaction)
    if not receipt_number:
        raise ValidationError("Receipt number is required to complete a transaction")
    return {
        "status": TransactionStatus.COMPLETED.value,
        "mpesa_receipt_number": receipt_number,
        "completed_at": now,
        "result_code": result_code,
        "result_desc": _clip_result_desc(result_desc),
    }


def fail_transaction(transaction: Transaction, result_code: Optional[int] = None,
                     result_desc: Optional[str] = None) -> Dict[str, Any]:
    _require_pending(transaction)
    return {
        "status": TransactionStatus.FAILED.value,
        "completed_at": None,
        "result_code": result_code,
        "result_desc": _clip_result_desc(result_desc),
    }


# ============================================================================
# PURCHASE REQUESTS - pending -> approved | rejected
# ============================================================================

def _require_pending_request(request: SubscriptionRequest) -> None:
    if request.status != PurchaseRequestStatus.PENDING.value:
        raise InvalidTransition(f"Request {request.id} already {request.status}")


def approve_request(request: SubscriptionRequest, admin_id: int, now: datetime,
                    notes: Optional[str] = None) -> Dict[str, Any]:
    _require_pending_request(request)
    changes = {
        "status": PurchaseRequestStatus.APPROVED.value,
        "processed_at": now,
        "processed_by": admin_id,
    }
    if notes:
        changes["notes"] = notes[:MAX_NOTES_LENGTH]
    return changes


def reject_request(request: SubscriptionRequest, admin_id: int, now: datetime,
                   reason: Optional[str] = None) -> Dict[str, Any]:
    _require_pending_request(request)
    changes = {
        "status": PurchaseRequestStatus.REJECTED.value,
        "processed_at": now,
        "processed_by": admin_id,
    }
    if reason:
        changes["notes"] = reason[:MAX_NOTES_LENGTH]
    return changes
