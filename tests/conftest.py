"""
Shared fixtures for the Subscription Bot test suite

Key Components:
1. In-memory SQLite async database (aiosqlite) with the full schema
2. A controllable clock injected into every service
3. Mocked Telegram Bot and M-Pesa client
4. Fully wired services mirroring the startup container
"""

import logging
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config import Config
from database import build_session_factory
from models import Base, Transaction, TransactionStatus
from services import transitions
from services.admin_service import AdminService
from services.group_management_service import GroupManagementService
from services.ledger_store import LedgerStore
from services.notification_service import NotificationService
from services.payment_service import PaymentService
from services.reconciliation_service import ReconciliationService
from services.subscription_service import SubscriptionService
from services.user_service import UserService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TEST_NOW = datetime(2025, 3, 10, 12, 0, 0)


class FakeClock:
    """Callable clock whose time only moves when the test says so"""

    def __init__(self, now: datetime = TEST_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def chat_member(status: str, is_member: bool = True) -> SimpleNamespace:
    return SimpleNamespace(status=status, is_member=is_member)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config(
        bot_token="123456:TEST-TOKEN",
        group_id="-1001234567890",
        admin_id=999,
        admin_username="shopadmin",
        database_url="sqlite+aiosqlite://",
        consumer_key="key",
        consumer_secret="secret",
        business_short_code="174379",
        pass_key="passkey",
        callback_url="https://example.com/callback/mpesa",
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return LedgerStore(build_session_factory(engine))


@pytest.fixture
def bot():
    bot = AsyncMock()
    bot.get_chat_member.return_value = chat_member("left")
    bot.create_chat_invite_link.return_value = SimpleNamespace(invite_link="https://t.me/+invite123")
    return bot


@pytest.fixture
def notifications(bot):
    return NotificationService(bot)


@pytest.fixture
def subscriptions(store, clock):
    return SubscriptionService(store, clock=clock)


@pytest.fixture
def users(store, subscriptions):
    return UserService(store, subscriptions)


@pytest.fixture
def groups(bot, config, store, notifications, clock):
    return GroupManagementService(bot, config, store, notifications, clock=clock)


@pytest.fixture
def payments():
    return MagicMock(spec=PaymentService)


@pytest.fixture
def reconciliation(config, store, subscriptions, payments, groups, notifications, clock):
    return ReconciliationService(
        config, store, subscriptions, payments, groups, notifications,
        clock=clock, sleep=AsyncMock(), notification_gap_seconds=0,
    )


@pytest.fixture
def admin(config, store, users, subscriptions, groups, notifications, clock):
    return AdminService(config, store, users, subscriptions, groups, notifications, clock=clock)


@pytest.fixture
def make_user(store):
    async def _make_user(telegram_id: int = 1001, username: str = "alice", phone: str = "254712345678"):
        return await store.upsert_user(telegram_id, username=username, phone_number=phone)
    return _make_user


@pytest.fixture
def make_subscription(store):
    async def _make_subscription(user, package: str = "daily", start: datetime = TEST_NOW,
                                 payment_ref: str = "REF-1", amount: int = 50):
        return await store.add_subscription(
            transitions.new_subscription(user.id, package, payment_ref, amount, start=start)
        )
    return _make_subscription


@pytest.fixture
def make_transaction(store, clock):
    async def _make_transaction(user, checkout_request_id: str = "ws_CO_001", package: str = "weekly",
                                amount: int = 300, created_at: datetime = None):
        return await store.add_transaction(Transaction(
            user_id=user.id,
            checkout_request_id=checkout_request_id,
            merchant_request_id="mr-001",
            phone_number=user.phone_number or "254712345678",
            amount=amount,
            package=package,
            status=TransactionStatus.PENDING.value,
            created_at=created_at or clock(),
        ))
    return _make_transaction


def stk_callback(checkout_request_id: str = "ws_CO_001", result_code=0,
                 result_desc: str = "The service request is processed successfully.",
                 receipt: str = "QKJ4ABC123", amount: int = 300) -> dict:
    """Build an M-Pesa STK callback body"""
    callback = {
        "MerchantRequestID": "mr-001",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        items = [{"Name": "Amount", "Value": amount}, {"Name": "PhoneNumber", "Value": 254712345678}]
        if receipt is not None:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}
