"""User account service"""

import logging
from typing import Any, Dict, Optional

from models import User
from services.ledger_store import LedgerStore
from services.subscription_service import SubscriptionService
from utils.exception_handler import ValidationError
from utils.helpers import normalize_phone_number, validate_username, mask_phone

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, store: LedgerStore, subscriptions: SubscriptionService):
        self.store = store
        self.subscriptions = subscriptions

    async def create_user(self, telegram_id: int, username: Optional[str] = None,
                          phone_number: Optional[str] = None) -> User:
        """Create or update the account for a Telegram user"""
        if telegram_id is None or telegram_id <= 0:
            raise ValidationError(f"Invalid telegram id: {telegram_id}")

        if username:
            username = username.lstrip("@")
            if not validate_username(username):
                # Handles come from Telegram; store none rather than reject the user
                logger.warning(f"⚠️ USER: Ignoring invalid username for {telegram_id}")
                username = None

        normalized_phone = None
        if phone_number:
            normalized_phone = normalize_phone_number(phone_number)
            if normalized_phone is None:
                raise ValidationError(f"Invalid phone number: {mask_phone(phone_number)}")

        return await self.store.upsert_user(telegram_id, username=username, phone_number=normalized_phone)

    async def get_user(self, telegram_id: int) -> Optional[User]:
        return await self.store.get_user_by_telegram_id(telegram_id)

    async def get_user_summary(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        """Account details plus latest subscription, for admin lookups"""
        user = await self.get_user(telegram_id)
        if user is None:
            return None

        current = await self.subscriptions.get_current_subscription(telegram_id)
        return {
            "telegram_id": user.telegram_id,
            "username": user.username,
            "phone_number": user.phone_number,
            "created_at": user.created_at,
            "status": await self.subscriptions.get_subscription_status(telegram_id),
            "subscription": current,
        }
