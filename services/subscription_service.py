"""
Subscription Lifecycle Service
Computes entitlement windows, moves subscriptions between states and
answers whether an account is currently entitled to group access.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from models import Subscription, User, SubscriptionStatus
from services.ledger_store import LedgerStore
from services import transitions
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import AccountNotFound, InvalidTransition

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Subscription lifecycle operations keyed by Telegram id"""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = get_naive_utc_now):
        self.store = store
        self.clock = clock

    async def _require_user(self, telegram_id: int) -> User:
        user = await self.store.get_user_by_telegram_id(telegram_id)
        if user is None:
            raise AccountNotFound(f"User {telegram_id} not found")
        return user

    async def _expire_past_due(self, user: User, now: datetime) -> int:
        """Expire the user's active subscriptions that have already run out"""
        expired = 0
        for subscription in await self.store.list_overdue(now, user_id=user.id):
            changes = transitions.expire_subscription(subscription)
            if await self.store.update_subscription(
                subscription.id, changes, expected_status=SubscriptionStatus.ACTIVE.value
            ):
                expired += 1
        if expired:
            logger.info(f"🔄 SUBSCRIPTION: Expired {expired} past-due subscription(s) for user {user.telegram_id}")
        return expired

    async def create_subscription(self, telegram_id: int, package: str, payment_ref: str,
                                  amount: int) -> Subscription:
        """
        Create an active subscription starting now.

        Raises:
            AccountNotFound: no user with this telegram id
            DuplicatePaymentReference: payment_ref already credited
            ValidationError: unknown package or non-positive amount
        """
        user = await self._require_user(telegram_id)
        now = self.clock()
        await self._expire_past_due(user, now)

        subscription = transitions.new_subscription(user.id, package, payment_ref, amount, start=now)
        subscription = await self.store.add_subscription(subscription)
        logger.info(
            f"✅ SUBSCRIPTION: Created {package} subscription {subscription.id} for user {telegram_id} "
            f"(ends {subscription.end_date}, ref {payment_ref})"
        )
        return subscription

    async def renew_subscription(self, telegram_id: int, package: str, payment_ref: str,
                                 amount: int) -> Subscription:
        """Start a new window at the later of now and the current window's end"""
        user = await self._require_user(telegram_id)
        now = self.clock()

        current = await self.store.get_active_subscription(user.id, now)
        start = transitions.renewal_start(current, now)

        # Build first so a bad package/amount leaves the current window untouched
        subscription = transitions.new_subscription(user.id, package, payment_ref, amount, start=start)

        if current is not None:
            await self.store.update_subscription(
                current.id, transitions.expire_subscription(current),
                expected_status=SubscriptionStatus.ACTIVE.value,
            )

        subscription = await self.store.add_subscription(subscription)
        logger.info(
            f"✅ SUBSCRIPTION: Renewed user {telegram_id} with {package} "
            f"({subscription.start_date} -> {subscription.end_date})"
        )
        return subscription

    async def get_current_subscription(self, telegram_id: int) -> Optional[Subscription]:
        """Most recently created subscription, whatever its status"""
        user = await self.store.get_user_by_telegram_id(telegram_id)
        if user is None:
            return None
        return await self.store.get_latest_subscription(user.id)

    async def get_active_subscription(self, telegram_id: int) -> Optional[Subscription]:
        user = await self.store.get_user_by_telegram_id(telegram_id)
        if user is None:
            return None
        return await self.store.get_active_subscription(user.id, self.clock())

    async def is_expired(self, telegram_id: int) -> bool:
        """True unless the account holds an active, unexpired subscription"""
        return await self.get_active_subscription(telegram_id) is None

    async def get_subscription_status(self, telegram_id: int) -> str:
        """'active', 'expired' or 'none'"""
        current = await self.get_current_subscription(telegram_id)
        if current is None:
            return "none"
        if await self.is_expired(telegram_id):
            return "expired"
        return "active"

    async def force_expire(self, telegram_id: int) -> Optional[Subscription]:
        """Expire the account's active subscription regardless of its end date"""
        user = await self.store.get_user_by_telegram_id(telegram_id)
        if user is None:
            return None

        now = self.clock()
        subscription = await self.store.get_active_subscription(user.id, now)
        if subscription is None:
            # Past-due but still flagged active
            overdue = await self.store.list_overdue(now, user_id=user.id)
            subscription = overdue[-1] if overdue else None
        if subscription is None:
            return None

        return await self.expire(subscription)

    async def expire(self, subscription: Subscription) -> Optional[Subscription]:
        """Mark one subscription expired; None if it was no longer active"""
        try:
            changes = transitions.expire_subscription(subscription)
        except InvalidTransition as e:
            logger.warning(f"⚠️ SUBSCRIPTION: {e}")
            return None

        updated = await self.store.update_subscription(
            subscription.id, changes, expected_status=SubscriptionStatus.ACTIVE.value
        )
        if not updated:
            logger.info(f"🔄 SUBSCRIPTION: {subscription.id} was already processed")
            return None

        subscription.status = SubscriptionStatus.EXPIRED.value
        logger.info(f"✅ SUBSCRIPTION: Expired subscription {subscription.id}")
        return subscription

    async def list_expiring_within(self, hours: float) -> List[Subscription]:
        now = self.clock()
        return await self.store.list_active_ending_between(now, now + timedelta(hours=hours))

    async def list_overdue(self) -> List[Subscription]:
        return await self.store.list_overdue(self.clock())
