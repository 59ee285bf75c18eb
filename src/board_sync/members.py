"""
Board collaborators, assignee list and invitations.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .errors import ConflictError, FetchError, MutationError
from .models import Assignee, Board, ChangeEvent, Member, MemberStatus, initials_for
from .persistence import UNIQUE_VIOLATION, Persistence, Result, settle

logger = logging.getLogger(__name__)

MEMBERS_TABLE = "board_members"


class MemberDirectory:
    """
    Accepted members of a board, joined with their profiles.

    Features:
    - Owner + accepted members as the assignee list (deduplicated, owner first)
    - Refresh on any board_members change
    - Invites with duplicate detection (unique violation -> ConflictError)
    """

    def __init__(self, persistence: Persistence, board_id: str):
        self.persistence = persistence
        self.board_id = board_id
        self.board: Optional[Board] = None
        self.owner: Optional[Member] = None
        self.members: List[Member] = []
        self._refresh: Optional[asyncio.Task] = None
        self._stale = False
        self._closed = False

    async def _select(self, table: str, **kwargs) -> Result:
        result = await settle(self.persistence.select(table, **kwargs))
        if not result.ok:
            raise FetchError(f"Could not load {table}: {result.error.message}", code=result.error.code)
        return result

    async def _profiles(self, user_ids: List[str]) -> Dict[str, dict]:
        if not user_ids:
            return {}
        result = await self._select("profiles", filters={"id": user_ids})
        return {row["id"]: row for row in result.data or []}

    async def load(self) -> List[Member]:
        """
        Fetch the board owner and accepted members.

        Raises:
            FetchError: any of the reads failed
        """
        boards = await self._select("boards", filters={"id": self.board_id})
        rows = await self._select(MEMBERS_TABLE, filters={"board_id": self.board_id,
                                                          "status": MemberStatus.ACCEPTED.value})
        board_row = boards.first()
        member_ids = [row["user_id"] for row in rows.data or []]
        owner_ids = [board_row["owner_id"]] if board_row else []
        profiles = await self._profiles(sorted(set(member_ids + owner_ids)))
        if self._closed:
            return []

        def member(user_id: str) -> Member:
            profile = profiles.get(user_id, {})
            return Member(user_id=user_id, email=profile.get("email"),
                          name=profile.get("full_name"), status=MemberStatus.ACCEPTED)

        if board_row:
            self.board = Board.model_validate(board_row)
            self.owner = member(self.board.owner_id)
        self.members = [member(uid) for uid in member_ids]
        logger.info(f"Members found for board {self.board_id}: {len(self.members)}")
        return self.members

    def assignees(self) -> List[Assignee]:
        """Owner plus accepted members, one entry per user."""
        seen = set()
        result = []
        for m in ([self.owner] if self.owner else []) + self.members:
            if m.user_id in seen:
                continue
            seen.add(m.user_id)
            email = m.email or "No Email"
            name = m.name or email
            result.append(Assignee(user_id=m.user_id, email=email, name=name,
                                   initials=initials_for(name)))
        return result

    def name_for(self, user_id: str) -> Optional[str]:
        for m in ([self.owner] if self.owner else []) + self.members:
            if m.user_id == user_id:
                return m.display_name
        return None

    def handle_change(self, event: ChangeEvent) -> None:
        """Schedule a refresh after a membership row changed."""
        if self._closed:
            return
        logger.debug(f"Member list changed ({event.operation.value}); refreshing")
        if self._refresh is not None and not self._refresh.done():
            # Picked up by another pass once the running load finishes
            self._stale = True
            return
        self._refresh = asyncio.get_running_loop().create_task(self._refresh_members())

    async def _refresh_members(self) -> None:
        self._stale = True
        while self._stale and not self._closed:
            self._stale = False
            try:
                await self.load()
            except FetchError as e:
                logger.warning(f"Member refresh failed: {e}")

    async def invite(self, email: str, inviter_email: Optional[str] = None) -> Member:
        """
        Invite a user by email as a pending member.

        Returns:
            The pending Member

        Raises:
            MutationError: unknown email or failed write
            ConflictError: the user is already invited or a member
        """
        email = (email or "").strip()
        if not email:
            raise ValueError("Email is required")
        lookup = await settle(self.persistence.select("profiles", filters={"email": email}))
        if not lookup.ok:
            raise MutationError(f"Could not look up user: {lookup.error.message}", code=lookup.error.code)
        profile = lookup.first()
        if profile is None:
            raise MutationError("User not found")

        inserted = await settle(self.persistence.insert(MEMBERS_TABLE, [{
            "board_id": self.board_id,
            "user_id": profile["id"],
            "status": MemberStatus.PENDING.value,
        }]))
        if not inserted.ok:
            if inserted.error.code == UNIQUE_VIOLATION:
                raise ConflictError("User already invited", code=inserted.error.code)
            raise MutationError(f"Invite failed: {inserted.error.message}", code=inserted.error.code)

        notified = await settle(self.persistence.insert("notifications", [{
            "user_id": profile["id"],
            "type": "INVITE",
            "content": "You have been invited to collaborate on a board.",
            "meta_data": {"boardId": self.board_id, "inviter": inviter_email},
        }]))
        if not notified.ok:
            logger.warning(f"Invite notification for {email} failed: {notified.error.message}")
        logger.info(f"Invited {email} to board {self.board_id}")
        return Member(user_id=profile["id"], email=profile.get("email"),
                      name=profile.get("full_name"), status=MemberStatus.PENDING)

    def close(self) -> None:
        self._closed = True
