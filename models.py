"""
Subscription Bot - Database Schema
==================================

Schema for selling time-boxed access to a private Telegram group:
- Telegram accounts (users)
- Subscriptions (entitlement windows)
- M-Pesa STK push payment transactions
- Manual-approval purchase requests
- Scheduled unbans (delayed follow-up after removing an expired member)

Status columns store the ``.value`` of the enums below.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, DateTime, Text, ForeignKey,
    Index, CheckConstraint, event
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
from sqlalchemy import inspect as sa_inspect

from utils.datetime_helpers import get_naive_utc_now, calculate_end_date


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PackageTier(Enum):
    """Subscription duration classes"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def values(cls):
        return [tier.value for tier in cls]


class SubscriptionStatus(Enum):
    """Subscription lifecycle states"""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TransactionStatus(Enum):
    """Payment transaction states - pending is the only non-terminal state"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PurchaseRequestStatus(Enum):
    """Manual approval request states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class UnbanStatus(Enum):
    """Scheduled unban job states"""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Telegram account - one per external chat identity"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now
    )

    subscriptions = relationship("Subscription", back_populates="user")

    __table_args__ = (
        CheckConstraint('telegram_id > 0', name='ck_users_telegram_id_positive'),
    )

    def __repr__(self):
        return f"<User(telegram_id={self.telegram_id}, username={self.username})>"


class Subscription(Base):
    """Entitlement window for one account

    end_date is derived from start_date and package; see the mapper events
    at the bottom of this module.
    """
    __tablename__ = 'subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    package: Mapped[str] = mapped_column(String(10), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    payment_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now
    )

    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_subscriptions_amount_positive'),
        Index('ix_subscriptions_user_status', 'user_id', 'status'),
        Index('ix_subscriptions_status_end', 'status', 'end_date'),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, package={self.package}, status={self.status}, end={self.end_date})>"


class Transaction(Base):
    """One M-Pesa STK push payment attempt"""
    __tablename__ = 'transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    checkout_request_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=TransactionStatus.PENDING.value)
    package: Mapped[str] = mapped_column(String(10), nullable=False)

    # Last result reported by the provider
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now
    )

    user = relationship("User")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        CheckConstraint(
            "(status = 'completed' AND completed_at IS NOT NULL) OR "
            "(status != 'completed' AND completed_at IS NULL)",
            name='ck_transactions_completed_at_iff_completed'
        ),
        Index('ix_transactions_user_status', 'user_id', 'status'),
        Index('ix_transactions_status_created', 'status', 'created_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING.value

    def __repr__(self):
        return f"<Transaction(checkout_request_id={self.checkout_request_id}, status={self.status})>"


class SubscriptionRequest(Base):
    """Manual-approval purchase request

    At most one pending request per telegram_id is enforced by the
    creating code (check-then-insert), not by a constraint.
    """
    __tablename__ = 'subscription_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    package: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=PurchaseRequestStatus.PENDING.value)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    processed_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint('telegram_id > 0', name='ck_requests_telegram_id_positive'),
        Index('ix_requests_status_requested', 'status', 'requested_at'),
    )

    def __repr__(self):
        return f"<SubscriptionRequest(id={self.id}, telegram_id={self.telegram_id}, status={self.status})>"


class ScheduledUnban(Base):
    """Persisted follow-up: lift a temporary ban once due_at has passed"""
    __tablename__ = 'scheduled_unbans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chat_id: Mapped[str] = mapped_column(String(50), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=UnbanStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        Index('ix_scheduled_unbans_status_due', 'status', 'due_at'),
    )

    def __repr__(self):
        return f"<ScheduledUnban(telegram_id={self.telegram_id}, due_at={self.due_at}, status={self.status})>"


# ============================================================================
# DERIVED FIELDS
# ============================================================================

@event.listens_for(Subscription, "before_insert")
def _subscription_end_date_on_insert(mapper, connection, target):
    target.end_date = calculate_end_date(target.start_date, target.package)


@event.listens_for(Subscription, "before_update")
def _subscription_end_date_on_update(mapper, connection, target):
    state = sa_inspect(target)
    if state.attrs.start_date.history.has_changes() or state.attrs.package.history.has_changes():
        target.end_date = calculate_end_date(target.start_date, target.package)
