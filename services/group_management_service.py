"""
Group Management Service - Keeps private group membership in line with subscriptions

Granting access sends the user a single-use, one-hour invite link.
Revoking access applies a short ban (which removes the member) and persists
a ScheduledUnban so the account can rejoin after a future renewal; the
scheduler lifts due bans via process_due_unbans().

Telegram API failures never raise out of this service: every operation
returns a MembershipResult.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from telegram import Bot
from telegram.error import TelegramError
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from models import UnbanStatus
from services.ledger_store import LedgerStore
from services.notification_service import NotificationService
from utils.constants import MEMBER_STATUSES, ADMIN_STATUSES, UNBAN_MAX_ATTEMPTS
from utils.datetime_helpers import get_naive_utc_now, to_unix_timestamp

logger = logging.getLogger(__name__)


@dataclass
class MembershipResult:
    success: bool
    error: Optional[str] = None
    invite_link: Optional[str] = None
    already_member: bool = False


@dataclass
class PermissionCheck:
    can_remove: bool
    status: Optional[str] = None
    error: Optional[str] = None


class GroupManagementService:
    """Converges Telegram group membership to subscription entitlement"""

    def __init__(self, bot: Bot, config: Config, store: LedgerStore,
                 notifications: NotificationService,
                 clock: Callable[[], datetime] = get_naive_utc_now):
        self.bot = bot
        self.config = config
        self.group_id = config.group_id
        self.store = store
        self.notifications = notifications
        self.clock = clock

    async def _member_status(self, telegram_id: int) -> str:
        member = await self.bot.get_chat_member(chat_id=self.group_id, user_id=telegram_id)
        status = str(member.status)
        if status == "restricted" and not getattr(member, "is_member", True):
            return "left"
        return status

    async def is_member(self, telegram_id: int) -> bool:
        try:
            return await self._member_status(telegram_id) in MEMBER_STATUSES
        except TelegramError as e:
            logger.warning(f"⚠️ GROUP: Could not read membership for {telegram_id}: {e}")
            return False

    async def grant_access(self, telegram_id: int) -> MembershipResult:
        """Send a single-use invite link unless the user is already in the group"""
        if await self.is_member(telegram_id):
            logger.info(f"✅ GROUP: User {telegram_id} is already a member")
            return MembershipResult(success=True, already_member=True)

        expires_at = self.clock() + timedelta(seconds=self.config.INVITE_LINK_TTL_SECONDS)
        try:
            link = await self.bot.create_chat_invite_link(
                chat_id=self.group_id,
                member_limit=1,
                expire_date=to_unix_timestamp(expires_at),
                name=f"sub-{telegram_id}",
            )
        except TelegramError as e:
            logger.error(f"❌ GROUP: Failed to create invite link for {telegram_id}: {e}")
            return MembershipResult(success=False, error=f"Failed to create invite link: {e}")

        delivered = await self.notifications.send_invite_link(telegram_id, link.invite_link, expires_at)
        if not delivered:
            logger.warning(f"⚠️ GROUP: Invite link for {telegram_id} created but not delivered")

        logger.info(f"✅ GROUP: Invite link issued to {telegram_id}")
        return MembershipResult(success=True, invite_link=link.invite_link)

    async def revoke_access(self, telegram_id: int) -> MembershipResult:
        """Remove the user from the group and schedule the follow-up unban"""
        try:
            status = await self._member_status(telegram_id)
        except TelegramError as e:
            logger.error(f"❌ GROUP: Could not read membership for {telegram_id}: {e}")
            return MembershipResult(success=False, error=f"Failed to check membership: {e}")

        if status not in MEMBER_STATUSES:
            logger.info(f"✅ GROUP: User {telegram_id} is not in the group ({status}), nothing to remove")
            return MembershipResult(success=True)

        if status in ADMIN_STATUSES:
            logger.warning(f"⚠️ GROUP: Not removing {telegram_id}, user is a group {status}")
            return MembershipResult(success=False, error=f"Cannot remove a group {status}")

        now = self.clock()
        try:
            await self.bot.ban_chat_member(
                chat_id=self.group_id,
                user_id=telegram_id,
                until_date=to_unix_timestamp(now + timedelta(seconds=self.config.BAN_DURATION_SECONDS)),
            )
        except TelegramError as e:
            logger.error(f"❌ GROUP: Failed to remove {telegram_id}: {e}")
            return MembershipResult(success=False, error=f"Failed to remove user: {e}")

        due_at = now + timedelta(seconds=self.config.UNBAN_DELAY_SECONDS)
        try:
            await self.store.add_scheduled_unban(telegram_id, self.group_id, due_at)
        except SQLAlchemyError as e:
            # Removal already happened; the ban itself lapses after BAN_DURATION_SECONDS
            logger.error(f"❌ GROUP: Removed {telegram_id} but could not schedule unban: {e}")
            return MembershipResult(success=True, error=f"Unban not scheduled: {e}")

        logger.info(f"✅ GROUP: Removed {telegram_id}, unban scheduled for {due_at}")
        return MembershipResult(success=True)

    async def process_due_unbans(self) -> int:
        """Lift bans whose due time has passed; returns how many were lifted"""
        lifted = 0
        now = self.clock()
        for unban in await self.store.list_due_unbans(now):
            attempts = unban.attempts + 1
            try:
                await self.bot.unban_chat_member(
                    chat_id=unban.chat_id, user_id=unban.telegram_id, only_if_banned=True
                )
            except TelegramError as e:
                status = UnbanStatus.FAILED.value if attempts >= UNBAN_MAX_ATTEMPTS else UnbanStatus.PENDING.value
                await self.store.update_unban(unban.id, {
                    "attempts": attempts,
                    "last_error": str(e),
                    "status": status,
                    "processed_at": now if status == UnbanStatus.FAILED.value else None,
                })
                logger.error(f"❌ GROUP: Unban of {unban.telegram_id} failed (attempt {attempts}): {e}")
                continue

            await self.store.update_unban(unban.id, {
                "attempts": attempts,
                "status": UnbanStatus.DONE.value,
                "processed_at": now,
                "last_error": None,
            })
            lifted += 1
            logger.info(f"✅ GROUP: Unbanned {unban.telegram_id}, they can rejoin after renewing")
        return lifted

    def _bot_user_id(self) -> int:
        return int(self.config.bot_token.split(":")[0])

    async def check_permissions(self) -> PermissionCheck:
        """Whether the bot holds admin rights in the group"""
        try:
            member = await self.bot.get_chat_member(chat_id=self.group_id, user_id=self._bot_user_id())
        except (TelegramError, ValueError) as e:
            logger.error(f"❌ GROUP: Permission check failed: {e}")
            return PermissionCheck(can_remove=False, error=str(e))

        status = str(member.status)
        can_remove = status in ADMIN_STATUSES
        if not can_remove:
            logger.warning(f"⚠️ GROUP: Bot is '{status}' in the group and cannot remove members")
        return PermissionCheck(can_remove=can_remove, status=status)

    async def validate_group_access(self) -> MembershipResult:
        """Startup diagnostic: the group is reachable and the bot is an admin"""
        try:
            chat = await self.bot.get_chat(chat_id=self.group_id)
        except TelegramError as e:
            logger.error(f"❌ GROUP: Cannot access group {self.group_id}: {e}")
            return MembershipResult(success=False, error=f"Cannot access group: {e}")

        permissions = await self.check_permissions()
        if not permissions.can_remove:
            return MembershipResult(
                success=False,
                error=permissions.error or "Bot needs administrator rights in the group",
            )

        logger.info(f"✅ GROUP: Access to '{chat.title}' validated")
        return MembershipResult(success=True)
