#!/usr/bin/env python3
"""
Subscription Bot - Deterministic Startup

Sequence:
1. Config validation
2. Database connection (bounded retries)
3. Table creation
4. Service container
5. Telegram application (polling)
6. Scheduler
7. Webhook server (uvicorn, serves until shutdown)

Every component receives its dependencies from the container; nothing is
created at import time.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional
import uvicorn
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from telegram import Bot
from telegram.ext import Application

from config import Config, ConfigError
from database import build_async_engine, build_session_factory, create_tables, test_connection
from handlers.commands import register_handlers
from jobs.scheduler import SubscriptionScheduler
from services.admin_service import AdminService
from services.group_management_service import GroupManagementService
from services.ledger_store import LedgerStore
from services.notification_service import NotificationService
from services.payment_service import PaymentService
from services.reconciliation_service import ReconciliationService
from services.subscription_service import SubscriptionService
from services.user_service import UserService
from webhook_server import create_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

for noisy in ("httpx", "apscheduler", "telegram"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class ServiceContainer:
    """Every long-lived dependency, built once at startup"""
    config: Config
    engine: AsyncEngine
    session_factory: async_sessionmaker
    store: LedgerStore
    bot: Bot
    notifications: NotificationService
    subscriptions: SubscriptionService
    users: UserService
    payments: PaymentService
    groups: GroupManagementService
    reconciliation: ReconciliationService
    admin: AdminService

    @classmethod
    def build(cls, config: Config, engine: AsyncEngine, bot: Bot) -> "ServiceContainer":
        session_factory = build_session_factory(engine)
        store = LedgerStore(session_factory)
        notifications = NotificationService(bot)
        subscriptions = SubscriptionService(store)
        users = UserService(store, subscriptions)
        payments = PaymentService(config)
        groups = GroupManagementService(bot, config, store, notifications)
        reconciliation = ReconciliationService(config, store, subscriptions, payments, groups, notifications)
        admin = AdminService(config, store, users, subscriptions, groups, notifications)
        return cls(
            config=config,
            engine=engine,
            session_factory=session_factory,
            store=store,
            bot=bot,
            notifications=notifications,
            subscriptions=subscriptions,
            users=users,
            payments=payments,
            groups=groups,
            reconciliation=reconciliation,
            admin=admin,
        )

    async def close(self):
        await self.payments.close()
        await self.engine.dispose()


class SubscriptionBotStartup:
    """Runs the startup steps in order; a failed critical step aborts startup"""

    CRITICAL_STEPS = {"Config", "Database", "Tables", "Services", "Application"}

    def __init__(self):
        self.config: Optional[Config] = None
        self.engine: Optional[AsyncEngine] = None
        self.container: Optional[ServiceContainer] = None
        self.application: Optional[Application] = None
        self.scheduler: Optional[SubscriptionScheduler] = None
        self.startup_errors = []

    async def load_config(self) -> bool:
        try:
            logger.info("⚙️ Loading configuration...")
            self.config = Config.from_env()
            self.config.validate()
            logging.getLogger().setLevel(self.config.log_level.upper())
            self.config.log_summary()
            return True
        except ConfigError as e:
            self.startup_errors.append(f"Config: {len(e.errors)} invalid setting(s)")
            return False

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Connecting to database...")
            self.engine = build_async_engine(self.config.database_url)
            if not await test_connection(self.engine):
                raise RuntimeError("Database connection test failed")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def initialize_tables(self) -> bool:
        try:
            await create_tables(self.engine)
            return True
        except Exception as e:
            self.startup_errors.append(f"Tables: {e}")
            return False

    async def initialize_services(self) -> bool:
        try:
            logger.info("🔧 Building service container...")
            bot = Bot(token=self.config.bot_token)
            self.container = ServiceContainer.build(self.config, self.engine, bot)
            logger.info("✅ Services initialized")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def start_application(self) -> bool:
        try:
            logger.info("🤖 Starting Telegram application...")
            self.application = Application.builder().bot(self.container.bot).build()
            register_handlers(self.application, self.container)

            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling()
            logger.info("✅ Application started in polling mode")

            access = await self.container.groups.validate_group_access()
            if not access.success:
                logger.warning(f"⚠️ Group check failed ({access.error}) - invites and expiry removal may fail")
                self.startup_errors.append(f"Group: {access.error}")
            return True
        except Exception as e:
            logger.error(f"❌ Application start failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False

    async def start_scheduler(self) -> bool:
        try:
            self.scheduler = SubscriptionScheduler(self.container)
            self.scheduler.start()
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    async def startup_sequence(self) -> bool:
        logger.info("🚀 Starting Subscription Bot...")

        startup_steps = [
            ("Config", self.load_config),
            ("Database", self.initialize_database),
            ("Tables", self.initialize_tables),
            ("Services", self.initialize_services),
            ("Application", self.start_application),
            ("Scheduler", self.start_scheduler),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if await step_func():
                continue

            logger.error(f"❌ Step '{step_name}' failed")
            if step_name in self.CRITICAL_STEPS:
                logger.error("🚨 Critical step failed - cannot continue startup")
                return False
            logger.warning(f"⚠️ Non-critical step '{step_name}' failed - continuing startup")

        if self.startup_errors:
            logger.warning(f"⚠️ Startup completed with {len(self.startup_errors)} warnings:")
            for error in self.startup_errors:
                logger.warning(f"  - {error}")
        else:
            logger.info("✅ Startup sequence completed successfully")
        return True

    async def serve(self):
        """Run the webhook server until it is asked to stop"""
        app = create_app(self.container)
        server_config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        logger.info(f"🌐 Webhook server listening on port {self.config.port}")
        await uvicorn.Server(server_config).serve()

    async def shutdown(self):
        logger.info("📴 Shutting down...")
        if self.scheduler:
            self.scheduler.stop()
        if self.application:
            try:
                if self.application.updater and self.application.updater.running:
                    await self.application.updater.stop()
                if self.application.running:
                    await self.application.stop()
                await self.application.shutdown()
            except Exception as e:
                logger.error(f"❌ Error stopping Telegram application: {e}")
        if self.container:
            await self.container.close()
        elif self.engine:
            await self.engine.dispose()
        logger.info("👋 Shutdown complete")


async def main():
    startup = SubscriptionBotStartup()
    try:
        if not await startup.startup_sequence():
            logger.error("❌ Startup failed - exiting")
            sys.exit(1)

        logger.info("🎉 Subscription Bot startup complete!")
        await startup.serve()
    finally:
        await startup.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)
