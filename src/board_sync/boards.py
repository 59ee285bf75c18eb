"""
The signed-in user's board list.

Lists boards the user owns or has accepted membership of, newest first, and
refreshes on any change to the boards table.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from pydantic import ValidationError

from .change_feed import ChangeFeedClient, ChangeFilter, SubscriptionHandle
from .errors import FetchError, MutationError
from .models import Board, ChangeEvent, MemberStatus, UserIdentity
from .persistence import Persistence, settle

logger = logging.getLogger(__name__)

BOARDS_TABLE = "boards"


class BoardDirectory:
    """Live list of the user's boards with create and owner-only delete."""

    def __init__(self, persistence: Persistence, feed: ChangeFeedClient, identity: UserIdentity,
                 schema: str = "public"):
        self.persistence = persistence
        self.feed = feed
        self.identity = identity
        self.schema = schema
        self.boards: List[Board] = []
        self._handle: Optional[SubscriptionHandle] = None
        self._refresh: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[List[Board]], None]] = []

    def add_listener(self, callback: Callable[[List[Board]], None]) -> None:
        self._listeners.append(callback)

    async def load(self) -> List[Board]:
        """
        Fetch owned and shared boards, newest first.

        Raises:
            FetchError: the boards could not be read
        """
        owned = await settle(self.persistence.select(
            BOARDS_TABLE, filters={"owner_id": self.identity.user_id}))
        memberships = await settle(self.persistence.select(
            "board_members", filters={"user_id": self.identity.user_id,
                                      "status": MemberStatus.ACCEPTED.value}))
        for result in (owned, memberships):
            if not result.ok:
                raise FetchError(f"Could not load boards: {result.error.message}", code=result.error.code)

        rows = {row["id"]: row for row in owned.data or []}
        shared_ids = [row["board_id"] for row in memberships.data or [] if row["board_id"] not in rows]
        if shared_ids:
            shared = await settle(self.persistence.select(BOARDS_TABLE, filters={"id": shared_ids}))
            if not shared.ok:
                raise FetchError(f"Could not load shared boards: {shared.error.message}",
                                 code=shared.error.code)
            rows.update({row["id"]: row for row in shared.data or []})

        boards = []
        for row in rows.values():
            try:
                boards.append(Board.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed board {row.get('id')}: {e}")
        boards.sort(key=lambda b: b.created_at or "", reverse=True)
        self.boards = boards
        for callback in list(self._listeners):
            try:
                callback(list(boards))
            except Exception:
                logger.exception("Board list listener failed")
        return boards

    def start(self) -> SubscriptionHandle:
        if self._handle is None:
            self._handle = self.feed.subscribe(
                "public:boards", ChangeFilter(BOARDS_TABLE, schema=self.schema), self._on_change)
        return self._handle

    def _on_change(self, event: ChangeEvent) -> None:
        if self._refresh is not None and not self._refresh.done():
            return
        self._refresh = asyncio.get_running_loop().create_task(self._reload())

    async def _reload(self) -> None:
        try:
            await self.load()
        except FetchError as e:
            logger.warning(f"Board list refresh failed: {e}")

    async def create(self, title: str) -> Board:
        """
        Create a board owned by the signed-in user.

        Raises:
            ValueError: blank title
            MutationError: the insert failed
        """
        if not title or not title.strip():
            raise ValueError("Title is required")
        result = await settle(self.persistence.insert(BOARDS_TABLE, [{
            "title": title.strip(), "owner_id": self.identity.user_id}]))
        if not result.ok or not result.first():
            message = result.error.message if result.error else "no row returned"
            raise MutationError(f"Could not create board: {message}",
                                code=result.error.code if result.error else None)
        board = Board.model_validate(result.first())
        if all(b.id != board.id for b in self.boards):
            self.boards.insert(0, board)
        return board

    async def delete(self, board_id: str) -> None:
        """
        Delete a board; only its owner may do so.

        Connected clients viewing the board receive the delete through their
        board lifecycle subscription and leave the view.

        Raises:
            MutationError: not the owner, or the delete failed
        """
        board = next((b for b in self.boards if b.id == board_id), None)
        if board is not None and board.owner_id != self.identity.user_id:
            raise MutationError("Only the board owner can delete it")
        result = await settle(self.persistence.delete(
            BOARDS_TABLE, filters={"id": board_id, "owner_id": self.identity.user_id}))
        if not result.ok:
            raise MutationError(f"Could not delete board: {result.error.message}", code=result.error.code)
        if not result.data:
            raise MutationError("Only the board owner can delete it")
        self.boards = [b for b in self.boards if b.id != board_id]
        logger.info(f"Deleted board {board_id}")

    def close(self) -> None:
        if self._handle is not None:
            self.feed.unsubscribe(self._handle)
            self._handle = None
        self._listeners.clear()
