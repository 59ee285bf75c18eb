"""
Collaboration invites addressed to the signed-in user.

Unread INVITE notifications are replayed on start (invites sent while the
client was away), then new ones arrive through the change feed. Accepting
or rejecting is left to the application through ``accept``/``reject``;
presenting the prompt is not this module's concern.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import ValidationError

from .change_feed import ChangeFeedClient, ChangeFilter, SubscriptionHandle
from .errors import FetchError, MutationError
from .models import ChangeEvent, ChangeOperation, MemberStatus, Notification, UserIdentity
from .persistence import Persistence, settle

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"
INVITE = "INVITE"


@dataclass(frozen=True)
class Invite:
    notification_id: str
    board_id: str
    inviter: Optional[str]
    content: Optional[str] = None

    @classmethod
    def from_notification(cls, notification: Notification) -> Optional["Invite"]:
        board_id = notification.meta_data.get("boardId")
        if notification.type != INVITE or not board_id:
            return None
        return cls(notification.id, str(board_id), notification.meta_data.get("inviter"),
                   notification.content)

    @property
    def prompt(self) -> str:
        return f"{self.inviter or 'Someone'} invited you to a board!"


class InviteInbox:
    """Delivers pending invites and applies the user's answer."""

    def __init__(self, persistence: Persistence, feed: ChangeFeedClient, identity: UserIdentity,
                 on_invite: Callable[[Invite], None], schema: str = "public"):
        self.persistence = persistence
        self.feed = feed
        self.identity = identity
        self.on_invite = on_invite
        self.schema = schema
        self._seen: set = set()
        self._handle: Optional[SubscriptionHandle] = None

    async def start(self) -> List[Invite]:
        """
        Replay unread invites, then listen for new ones.

        Returns:
            The invites replayed from the backlog

        Raises:
            FetchError: the backlog could not be read
        """
        result = await settle(self.persistence.select(NOTIFICATIONS_TABLE, filters={
            "user_id": self.identity.user_id, "is_read": False, "type": INVITE}))
        if not result.ok:
            raise FetchError(f"Could not load notifications: {result.error.message}",
                             code=result.error.code)
        replayed = []
        for row in result.data or []:
            invite = self._deliver(row)
            if invite:
                replayed.append(invite)
        if self._handle is None:
            self._handle = self.feed.subscribe(
                f"notifications:{self.identity.user_id}",
                ChangeFilter.eq(NOTIFICATIONS_TABLE, "user_id", self.identity.user_id,
                                event=ChangeOperation.INSERT.value, schema=self.schema),
                self._on_insert,
            )
        logger.info(f"Invite inbox active for {self.identity.user_id} ({len(replayed)} pending)")
        return replayed

    def _on_insert(self, event: ChangeEvent) -> None:
        if event.record.get("user_id") != self.identity.user_id:
            return
        self._deliver(event.record)

    def _deliver(self, row: dict) -> Optional[Invite]:
        try:
            notification = Notification.model_validate(row)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed notification {row.get('id')}: {e}")
            return None
        invite = Invite.from_notification(notification)
        if invite is None or notification.is_read or invite.notification_id in self._seen:
            return None
        self._seen.add(invite.notification_id)
        try:
            self.on_invite(invite)
        except Exception:
            logger.exception("Invite handler failed")
        return invite

    async def _mark_read(self, invite: Invite) -> None:
        result = await settle(self.persistence.update(
            NOTIFICATIONS_TABLE, {"is_read": True}, filters={"id": invite.notification_id}))
        if not result.ok:
            logger.warning(f"Could not mark notification {invite.notification_id} read: {result.error.message}")

    async def accept(self, invite: Invite) -> None:
        """
        Join the board.

        Raises:
            MutationError: the membership could not be accepted
        """
        joined = await settle(self.persistence.update(
            "board_members", {"status": MemberStatus.ACCEPTED.value},
            filters={"board_id": invite.board_id, "user_id": self.identity.user_id}))
        await self._mark_read(invite)
        if not joined.ok:
            raise MutationError(f"Could not join: {joined.error.message}", code=joined.error.code)
        if not joined.data:
            raise MutationError("Could not join: invitation no longer exists")
        logger.info(f"Joined board {invite.board_id}")

    async def reject(self, invite: Invite) -> None:
        """
        Decline the invite and remove the pending membership.

        Raises:
            MutationError: the membership row could not be deleted
        """
        await self._mark_read(invite)
        removed = await settle(self.persistence.delete(
            "board_members", filters={"board_id": invite.board_id, "user_id": self.identity.user_id}))
        if not removed.ok:
            raise MutationError(f"Could not reject invite completely: {removed.error.message}",
                                code=removed.error.code)
        logger.info(f"Rejected invite to board {invite.board_id}")

    def close(self) -> None:
        if self._handle is not None:
            self.feed.unsubscribe(self._handle)
            self._handle = None
