"""
Ledger Store
============

Single access point for persisted Users, Subscriptions, Transactions,
SubscriptionRequests and ScheduledUnbans.

Every method opens its own short-lived session. Status changes are written
with conditional UPDATEs (WHERE status = <expected>) so that two concurrent
writers cannot both move the same record out of a state; the boolean
result tells the caller whether its write won.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from models import (
    User, Subscription, Transaction, SubscriptionRequest, ScheduledUnban,
    SubscriptionStatus, TransactionStatus, PurchaseRequestStatus, UnbanStatus
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import DuplicatePaymentReference, DuplicateTransactionReference

logger = logging.getLogger(__name__)


class LedgerStore:
    """Async repository over the subscription ledger tables"""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self):
        """Session that commits on success and rolls back on error"""
        session: AsyncSession = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        async with self.session() as session:
            return await session.get(User, user_id)

    async def upsert_user(self, telegram_id: int, username: Optional[str] = None,
                          phone_number: Optional[str] = None) -> User:
        """Create the account or overwrite handle/phone on an existing one"""
        try:
            async with self.session() as session:
                result = await session.execute(select(User).where(User.telegram_id == telegram_id))
                user = result.scalar_one_or_none()
                if user is None:
                    user = User(telegram_id=telegram_id, username=username, phone_number=phone_number)
                    session.add(user)
                    logger.info(f"✅ LEDGER: Created user {telegram_id}")
                else:
                    if username:
                        user.username = username
                    if phone_number:
                        user.phone_number = phone_number
                await session.flush()
                return user
        except IntegrityError:
            # Another task inserted the same telegram_id first
            logger.warning(f"⚠️ LEDGER: Concurrent insert for user {telegram_id}, reloading")
            user = await self.get_user_by_telegram_id(telegram_id)
            if user is None:
                raise
            return user

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def add_subscription(self, subscription: Subscription) -> Subscription:
        """Insert; DuplicatePaymentReference when payment_ref is taken"""
        try:
            async with self.session() as session:
                session.add(subscription)
                await session.flush()
                await session.refresh(subscription, attribute_names=["user"])
                return subscription
        except IntegrityError as e:
            if "payment_ref" in str(e.orig):
                raise DuplicatePaymentReference(
                    f"Payment reference {subscription.payment_ref} already used"
                ) from e
            raise

    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        async with self.session() as session:
            result = await session.execute(
                select(Subscription)
                .options(selectinload(Subscription.user))
                .where(Subscription.id == subscription_id)
            )
            return result.scalar_one_or_none()

    async def get_latest_subscription(self, user_id: int) -> Optional[Subscription]:
        """Most recently created subscription regardless of status"""
        async with self.session() as session:
            result = await session.execute(
                select(Subscription)
                .options(selectinload(Subscription.user))
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_active_subscription(self, user_id: int, now: datetime) -> Optional[Subscription]:
        """Active and unexpired; latest end_date wins if several qualify"""
        async with self.session() as session:
            result = await session.execute(
                select(Subscription)
                .options(selectinload(Subscription.user))
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.end_date > now,
                )
                .order_by(Subscription.end_date.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_active_ending_between(self, after: datetime, until: datetime) -> List[Subscription]:
        """Active subscriptions with after < end_date <= until"""
        async with self.session() as session:
            result = await session.execute(
                select(Subscription)
                .options(selectinload(Subscription.user))
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.end_date > after,
                    Subscription.end_date <= until,
                )
                .order_by(Subscription.end_date.asc())
            )
            return list(result.scalars().all())

    async def list_overdue(self, now: datetime, user_id: Optional[int] = None) -> List[Subscription]:
        """Active subscriptions whose end_date <= now"""
        stmt = (
            select(Subscription)
            .options(selectinload(Subscription.user))
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date <= now,
            )
            .order_by(Subscription.end_date.asc())
        )
        if user_id is not None:
            stmt = stmt.where(Subscription.user_id == user_id)
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_subscription(self, subscription_id: int, changes: Dict[str, Any],
                                  expected_status: Optional[str] = None) -> bool:
        stmt = update(Subscription).where(Subscription.id == subscription_id)
        if expected_status is not None:
            stmt = stmt.where(Subscription.status == expected_status)
        stmt = stmt.values(**changes, updated_at=get_naive_utc_now())
        async with self.session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def count_subscriptions(self, status: Optional[str] = None) -> int:
        stmt = select(func.count(Subscription.id))
        if status:
            stmt = stmt.where(Subscription.status == status)
        async with self.session() as session:
            return (await session.execute(stmt)).scalar_one()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        """Insert; DuplicateTransactionReference when checkout_request_id is taken"""
        try:
            async with self.session() as session:
                session.add(transaction)
                await session.flush()
                return transaction
        except IntegrityError as e:
            if "checkout_request_id" in str(e.orig):
                raise DuplicateTransactionReference(
                    f"Transaction reference {transaction.checkout_request_id} already exists"
                ) from e
            raise

    async def get_transaction_by_checkout_id(self, checkout_request_id: str) -> Optional[Transaction]:
        async with self.session() as session:
            result = await session.execute(
                select(Transaction)
                .options(selectinload(Transaction.user))
                .where(Transaction.checkout_request_id == checkout_request_id)
            )
            return result.scalar_one_or_none()

    async def finalize_transaction(self, transaction_id: int, changes: Dict[str, Any]) -> bool:
        """
        Apply a terminal change set only while the transaction is still pending.

        Returns False when another writer already finalized it.
        """
        async with self.session() as session:
            result = await session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.status == TransactionStatus.PENDING.value,
                )
                .values(**changes, updated_at=get_naive_utc_now())
            )
            return result.rowcount == 1

    async def list_pending_transactions(self, created_after: Optional[datetime] = None,
                                        created_before: Optional[datetime] = None) -> List[Transaction]:
        """Pending transactions with created_after < created_at < created_before"""
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.user))
            .where(Transaction.status == TransactionStatus.PENDING.value)
            .order_by(Transaction.created_at.asc())
        )
        if created_after is not None:
            stmt = stmt.where(Transaction.created_at > created_after)
        if created_before is not None:
            stmt = stmt.where(Transaction.created_at < created_before)
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_transactions(self, status: Optional[str] = None) -> int:
        stmt = select(func.count(Transaction.id))
        if status:
            stmt = stmt.where(Transaction.status == status)
        async with self.session() as session:
            return (await session.execute(stmt)).scalar_one()

    # ------------------------------------------------------------------
    # Subscription requests
    # ------------------------------------------------------------------

    async def add_request(self, request: SubscriptionRequest) -> SubscriptionRequest:
        async with self.session() as session:
            session.add(request)
            await session.flush()
            return request

    async def get_request(self, request_id: int) -> Optional[SubscriptionRequest]:
        async with self.session() as session:
            return await session.get(SubscriptionRequest, request_id)

    async def find_pending_request(self, telegram_id: int) -> Optional[SubscriptionRequest]:
        async with self.session() as session:
            result = await session.execute(
                select(SubscriptionRequest)
                .where(
                    SubscriptionRequest.telegram_id == telegram_id,
                    SubscriptionRequest.status == PurchaseRequestStatus.PENDING.value,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_pending_requests(self, limit: Optional[int] = None) -> List[SubscriptionRequest]:
        """Oldest first"""
        stmt = (
            select(SubscriptionRequest)
            .where(SubscriptionRequest.status == PurchaseRequestStatus.PENDING.value)
            .order_by(SubscriptionRequest.requested_at.asc(), SubscriptionRequest.id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_pending_requests(self) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(SubscriptionRequest.id))
                .where(SubscriptionRequest.status == PurchaseRequestStatus.PENDING.value)
            )
            return result.scalar_one()

    async def process_request(self, request_id: int, changes: Dict[str, Any]) -> bool:
        """Apply approve/reject changes only while the request is pending"""
        async with self.session() as session:
            result = await session.execute(
                update(SubscriptionRequest)
                .where(
                    SubscriptionRequest.id == request_id,
                    SubscriptionRequest.status == PurchaseRequestStatus.PENDING.value,
                )
                .values(**changes)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Scheduled unbans
    # ------------------------------------------------------------------

    async def add_scheduled_unban(self, telegram_id: int, chat_id: str, due_at: datetime) -> ScheduledUnban:
        async with self.session() as session:
            unban = ScheduledUnban(telegram_id=telegram_id, chat_id=str(chat_id), due_at=due_at)
            session.add(unban)
            await session.flush()
            return unban

    async def list_due_unbans(self, now: datetime) -> List[ScheduledUnban]:
        async with self.session() as session:
            result = await session.execute(
                select(ScheduledUnban)
                .where(
                    ScheduledUnban.status == UnbanStatus.PENDING.value,
                    ScheduledUnban.due_at <= now,
                )
                .order_by(ScheduledUnban.due_at.asc())
            )
            return list(result.scalars().all())

    async def update_unban(self, unban_id: int, changes: Dict[str, Any]) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(ScheduledUnban).where(ScheduledUnban.id == unban_id).values(**changes)
            )
            return result.rowcount == 1
