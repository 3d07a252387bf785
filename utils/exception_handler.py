"""
Exception Handler Module
Provides custom exceptions and error handling decorators
"""

import logging
import functools
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SubscriptionBotError(Exception):
    """Base error carrying a stable machine-readable error_code"""

    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(SubscriptionBotError):
    """Custom validation error for input validation failures"""
    error_code = "VALIDATION_ERROR"


class MalformedPayload(ValidationError):
    """Webhook payload does not have the expected shape"""
    error_code = "MALFORMED_PAYLOAD"


class AccountNotFound(SubscriptionBotError):
    error_code = "USER_NOT_FOUND"


class TransactionNotFound(SubscriptionBotError):
    error_code = "TRANSACTION_NOT_FOUND"


class RequestNotFound(SubscriptionBotError):
    error_code = "REQUEST_NOT_FOUND"


class DuplicatePaymentReference(SubscriptionBotError):
    """A subscription already exists for this payment reference"""
    error_code = "DUPLICATE_PAYMENT_REFERENCE"


class DuplicateTransactionReference(SubscriptionBotError):
    """A transaction already exists for this provider reference"""
    error_code = "DUPLICATE_TRANSACTION_REFERENCE"


class InvalidTransition(SubscriptionBotError):
    """Requested status change is not allowed from the current status"""
    error_code = "INVALID_TRANSITION"


def safe_telegram_handler(func: Callable) -> Callable:
    """
    Decorator to safely handle telegram handler functions
    Catches exceptions and logs them without crashing the bot
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"❌ Error in telegram handler {func.__name__}: {type(e).__name__}: {e}")
            # Don't re-raise to prevent bot crashes
            return None

    return wrapper
