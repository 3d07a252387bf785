"""
Subscription Background Jobs
Periodic passes that repair drift between payments, subscriptions and
group membership. Each job catches and logs its own errors so a failing
run never unschedules the job.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from services.subscription_service import SubscriptionService
from services.group_management_service import GroupManagementService
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService, ReconciliationStats
from utils.constants import EXPIRY_WARNING_HOURS

logger = logging.getLogger(__name__)


@dataclass
class ExpiredAccount:
    telegram_id: int
    subscription_id: int
    removed: bool
    notified: bool
    error: Optional[str] = None


@dataclass
class ExpirySweepResult:
    processed: List[ExpiredAccount] = field(default_factory=list)
    errors: int = 0


async def run_expiring_soon_notice(subscriptions: SubscriptionService,
                                   notifications: NotificationService,
                                   hours: int = EXPIRY_WARNING_HOURS) -> int:
    """Warn owners of subscriptions ending within the next `hours`"""
    sent = 0
    try:
        expiring = await subscriptions.list_expiring_within(hours)
        for subscription in expiring:
            if subscription.user is None:
                continue
            try:
                if await notifications.notify_expiring_soon(subscription.user.telegram_id, subscription):
                    sent += 1
            except Exception as e:
                logger.error(f"❌ EXPIRY_NOTICE: Failed for subscription {subscription.id}: {e}")
        if expiring:
            logger.info(f"✅ EXPIRY_NOTICE: Warned {sent}/{len(expiring)} subscriber(s)")
    except Exception as e:
        logger.error(f"❌ EXPIRY_NOTICE: Run failed - {e}")
    return sent


async def run_pending_reconciliation(reconciliation: ReconciliationService) -> ReconciliationStats:
    """Re-verify recent pending transactions with the provider"""
    try:
        return await reconciliation.reconcile_pending_transactions()
    except Exception as e:
        logger.error(f"❌ PENDING_RECONCILE: Run failed - {e}")
        return ReconciliationStats(errors=1)


async def run_stale_pending_cleanup(reconciliation: ReconciliationService) -> int:
    """Fail transactions that have been pending for over an hour"""
    try:
        return await reconciliation.cleanup_stale_pending()
    except Exception as e:
        logger.error(f"❌ STALE_CLEANUP: Run failed - {e}")
        return 0


async def run_expiry_sweep(subscriptions: SubscriptionService, groups: GroupManagementService,
                           notifications: NotificationService) -> ExpirySweepResult:
    """
    Expire overdue subscriptions, remove their owners from the group and
    notify them. One account's failure does not stop the sweep.
    """
    result = ExpirySweepResult()
    try:
        overdue = await subscriptions.list_overdue()
    except Exception as e:
        logger.error(f"❌ EXPIRY_SWEEP: Could not load overdue subscriptions - {e}")
        result.errors += 1
        return result

    for subscription in overdue:
        telegram_id = subscription.user.telegram_id if subscription.user else None
        try:
            expired = await subscriptions.expire(subscription)
            if expired is None or telegram_id is None:
                continue

            # A newer window (e.g. an approved request) keeps the user in the group
            if not await subscriptions.is_expired(telegram_id):
                logger.info(f"🔄 EXPIRY_SWEEP: {telegram_id} still has an active subscription, keeping access")
                result.processed.append(ExpiredAccount(telegram_id, subscription.id, removed=False, notified=False))
                continue

            removal = await groups.revoke_access(telegram_id)
            notified = await notifications.notify_subscription_expired(telegram_id)
            result.processed.append(ExpiredAccount(
                telegram_id, subscription.id,
                removed=removal.success, notified=notified, error=removal.error,
            ))
        except Exception as e:
            result.errors += 1
            logger.error(f"❌ EXPIRY_SWEEP: Failed for subscription {subscription.id} ({telegram_id}): {e}")

    if overdue:
        logger.info(
            f"✅ EXPIRY_SWEEP: Processed {len(result.processed)}/{len(overdue)} overdue subscription(s), "
            f"errors={result.errors}"
        )
    return result


async def run_due_unbans(groups: GroupManagementService) -> int:
    """Lift temporary bans whose scheduled time has passed"""
    try:
        return await groups.process_due_unbans()
    except Exception as e:
        logger.error(f"❌ UNBAN: Run failed - {e}")
        return 0
