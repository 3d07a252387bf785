"""Constants for the Subscription Bot"""

DATETIME_FORMAT = "%Y-%m-%d %H:%M UTC"

PACKAGE_LABELS = {
    "daily": "Daily",
    "weekly": "Weekly",
    "monthly": "Monthly",
}

PACKAGE_DURATION_LABELS = {
    "daily": "24 hours",
    "weekly": "7 days",
    "monthly": "1 month",
}

# Telegram chat member statuses that count as "in the group"
MEMBER_STATUSES = ("member", "administrator", "creator", "restricted")
ADMIN_STATUSES = ("administrator", "creator")

# ==================== PAYMENT RECONCILIATION ====================

MPESA_RECEIPT_FIELD = "MpesaReceiptNumber"
AUTO_VERIFY_RECEIPT = "AUTO_VERIFY"
ADMIN_APPROVED_REF_PREFIX = "ADMIN_APPROVED_"

# Pending transactions younger than this are left to the webhook
RECONCILE_MIN_AGE_MINUTES = 1
# Pending transactions older than this are left to the stale cleanup
RECONCILE_MAX_AGE_MINUTES = 10
# Pending transactions older than this are failed outright
STALE_PENDING_MAX_AGE_MINUTES = 60

EXPIRY_WARNING_HOURS = 24
UNBAN_MAX_ATTEMPTS = 5
PENDING_SUMMARY_LIMIT = 10
CHECK_EXPIRED_DISPLAY_LIMIT = 5


class CallbackData:
    """Inline keyboard callback_data prefixes"""
    BUY = "buy_"
    CONFIRM = "confirm_"
    CANCEL = "cancel"
    APPROVE = "approve_"
    REJECT = "reject_"
    DETAILS = "details_"
