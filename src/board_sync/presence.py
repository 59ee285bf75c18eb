"""
Board presence: who is online and which card each collaborator is editing.

Editing state is advisory. A client is "editing" a task when its published
PresenceEntry names that task; nothing is locked.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .change_feed import ChangeFeedClient, SubscriptionHandle, SubscriptionStatus
from .models import PresenceEntry, UserIdentity

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def presence_topic(board_id: str) -> str:
    return f"presence:board:{board_id}"


class PresenceTracker:
    """
    Publishes this session's presence and merges everyone else's.

    Features:
    - Track on subscribe confirmation
    - First-entry-wins per key on each sync
    - Re-publish on editing-task change (only editing id and timestamp change)
    """

    def __init__(self, feed: ChangeFeedClient, board_id: str, identity: UserIdentity,
                 clock: Callable[[], str] = _utc_now):
        self.feed = feed
        self.board_id = board_id
        self.identity = identity
        self.clock = clock
        self.entry: Optional[PresenceEntry] = None
        self.active_users: List[PresenceEntry] = []
        self._handle: Optional[SubscriptionHandle] = None
        self._listeners: List[Callable[[List[PresenceEntry]], None]] = []

    @property
    def started(self) -> bool:
        return self._handle is not None and not self._handle.closed

    def add_listener(self, callback: Callable[[List[PresenceEntry]], None]) -> None:
        self._listeners.append(callback)

    def start(self) -> SubscriptionHandle:
        """Open the board's presence channel (handshake runs in the background)."""
        if self._handle is not None:
            return self._handle
        self._handle = self.feed.open_presence(
            presence_topic(self.board_id),
            self.identity.user_id,
            on_sync=self._on_sync,
            on_subscribed=self._on_subscribed,
        )
        return self._handle

    async def _on_subscribed(self, handle: SubscriptionHandle) -> None:
        if handle.status is not SubscriptionStatus.SUBSCRIBED:
            return
        await self._publish(editing_task_id=None)

    def _on_sync(self) -> None:
        if self._handle is None:
            return
        self.active_users = self.merge_state(self._handle.channel.presence_state())
        for callback in list(self._listeners):
            try:
                callback(list(self.active_users))
            except Exception:
                logger.exception("Presence listener failed")

    @staticmethod
    def merge_state(state: Dict[str, List[dict]]) -> List[PresenceEntry]:
        """
        Build the active-user list from a server presence state.

        Takes the first valid entry reported for each key; later duplicates
        in the same sync come from stale replicas and are ignored.
        """
        users: List[PresenceEntry] = []
        for key, entries in state.items():
            for raw in entries or []:
                try:
                    users.append(PresenceEntry.model_validate(raw))
                    break
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed presence entry for {key}: {e}")
        return users

    async def set_editing_task_id(self, task_id: Optional[str]) -> None:
        """Announce which task this user is editing (None when done)."""
        if not self.started or self._handle.status is not SubscriptionStatus.SUBSCRIBED:
            logger.debug("Presence channel not ready; editing state not published")
            return
        await self._publish(editing_task_id=task_id)

    async def _publish(self, editing_task_id: Optional[str]) -> None:
        entry = PresenceEntry(
            user_id=self.identity.user_id,
            email=self.identity.email,
            online_at=self.clock(),
            editing_task_id=editing_task_id,
        )
        self.entry = entry
        await self._handle.channel.track(entry.to_wire())
        logger.debug(f"Published presence for {self.identity.user_id} (editing={editing_task_id})")

    def editors_of(self, task_id: str, include_self: bool = False) -> List[PresenceEntry]:
        """Users whose presence says they are editing ``task_id``."""
        return [
            u for u in self.active_users
            if u.editing_task_id == task_id and (include_self or u.user_id != self.identity.user_id)
        ]

    def is_online(self, user_id: str) -> bool:
        return any(u.user_id == user_id for u in self.active_users)

    def stop(self) -> None:
        if self._handle is None:
            return
        self.feed.unsubscribe(self._handle)
        self.active_users = []
        self._listeners.clear()
