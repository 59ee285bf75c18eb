"""
Tests for board members, assignees and invitations.
"""

import asyncio
import json

import pytest

from conftest import flush

from board_sync.change_feed import ChangeFeedClient, ChangeFilter
from board_sync.errors import ConflictError, FetchError, MutationError
from board_sync.members import MemberDirectory
from board_sync.models import ChangeEvent, ChangeOperation, MemberStatus


class HeldMemberReads:
    """Serves board_members reads from a snapshot taken before the gate opens."""

    def __init__(self, delegate):
        self.delegate = delegate
        self.holding = True
        self.gate = asyncio.Event()

    async def select(self, table, **kwargs):
        result = await self.delegate.select(table, **kwargs)
        if table == "board_members" and self.holding:
            await self.gate.wait()
        return result


def member_event(board_id, user_id):
    return ChangeEvent(ChangeOperation.INSERT, "public", "board_members",
                       {"id": f"m-{user_id}", "board_id": board_id, "user_id": user_id,
                        "status": "accepted"}, {})


class TestMemberDirectory:
    """Loading, assignees and live refresh."""

    @pytest.mark.asyncio
    async def test_assignees_owner_first_and_deduplicated(self, db, board_id, owner, peer):
        db.add_member(board_id, peer.user_id)
        db.add_member(board_id, owner.user_id)
        directory = MemberDirectory(db, board_id)
        await directory.load()

        assignees = directory.assignees()
        assert [a.user_id for a in assignees] == [owner.user_id, peer.user_id]
        assert assignees[0].initials == "OL"
        assert assignees[1].name == "Pat Peer"

    @pytest.mark.asyncio
    async def test_pending_members_excluded(self, db, board_id, peer):
        db.add_member(board_id, peer.user_id, status="pending")
        directory = MemberDirectory(db, board_id)
        await directory.load()
        assert directory.members == []
        assert [a.user_id for a in directory.assignees()] == ["u-owner"]

    @pytest.mark.asyncio
    async def test_missing_email_fallback(self, db, board_id):
        db._seed("profiles", {"id": "u-ghost", "email": "", "full_name": None})
        db.add_member(board_id, "u-ghost")
        directory = MemberDirectory(db, board_id)
        await directory.load()
        ghost = directory.assignees()[-1]
        assert ghost.email == "No Email"
        assert ghost.name == "No Email"

    @pytest.mark.asyncio
    async def test_load_failure(self, db, board_id):
        db.fail_next("board_members", "select")
        with pytest.raises(FetchError):
            await MemberDirectory(db, board_id).load()

    @pytest.mark.asyncio
    async def test_membership_change_triggers_refresh(self, db, feed, board_id, peer):
        directory = MemberDirectory(db, board_id)
        await directory.load()
        client = ChangeFeedClient(feed)
        handle = client.subscribe("members_realtime:b-1",
                                  ChangeFilter.eq("board_members", "board_id", board_id),
                                  directory.handle_change)
        await handle.wait_ready()

        await db.insert("board_members", [{"board_id": board_id, "user_id": peer.user_id,
                                           "status": "accepted"}])
        await flush(20)
        assert [m.user_id for m in directory.members] == [peer.user_id]
        assert directory.name_for(peer.user_id) == "Pat Peer"

    @pytest.mark.asyncio
    async def test_change_during_refresh_triggers_another_pass(self, db, board_id, owner, peer):
        reads = HeldMemberReads(db)
        directory = MemberDirectory(reads, board_id)

        directory.handle_change(member_event(board_id, owner.user_id))
        await flush()
        refresh = directory._refresh
        assert not refresh.done()

        db.add_member(board_id, peer.user_id)
        directory.handle_change(member_event(board_id, peer.user_id))
        assert directory._refresh is refresh

        reads.holding = False
        reads.gate.set()
        await refresh
        assert [m.user_id for m in directory.members] == [peer.user_id]


class TestInvite:
    """Invitation flow."""

    @pytest.mark.asyncio
    async def test_invite_creates_pending_member_and_notification(self, db, board_id, owner, peer):
        directory = MemberDirectory(db, board_id)
        member = await directory.invite("pat@example.com", inviter_email=owner.email)

        assert member.status is MemberStatus.PENDING
        rows = (await db.select("board_members", filters={"user_id": peer.user_id})).data
        assert rows[0]["status"] == "pending"
        notes = (await db.select("notifications", filters={"user_id": peer.user_id})).data
        assert notes[0]["type"] == "INVITE"
        assert json.loads(notes[0]["meta_data"]) == {"boardId": board_id, "inviter": owner.email}

    @pytest.mark.asyncio
    async def test_duplicate_invite_conflict(self, db, board_id, peer):
        directory = MemberDirectory(db, board_id)
        await directory.invite("pat@example.com")

        with pytest.raises(ConflictError) as exc_info:
            await directory.invite("pat@example.com")
        assert str(exc_info.value) == "User already invited"
        assert exc_info.value.code == "23505"

    @pytest.mark.asyncio
    async def test_unknown_email(self, db, board_id):
        with pytest.raises(MutationError, match="User not found"):
            await MemberDirectory(db, board_id).invite("nobody@example.com")

    @pytest.mark.asyncio
    async def test_empty_email(self, db, board_id):
        with pytest.raises(ValueError):
            await MemberDirectory(db, board_id).invite("  ")

    @pytest.mark.asyncio
    async def test_write_failure(self, db, board_id, peer):
        db.fail_next("board_members", "insert", "denied", "42501")
        with pytest.raises(MutationError) as exc_info:
            await MemberDirectory(db, board_id).invite("pat@example.com")
        assert not isinstance(exc_info.value, ConflictError)

    @pytest.mark.asyncio
    async def test_profile_lookup_failure_not_reported_as_unknown_user(self, db, board_id, peer):
        db.fail_next("profiles", "select", "connection reset", "network")
        with pytest.raises(MutationError) as exc_info:
            await MemberDirectory(db, board_id).invite("pat@example.com")
        assert exc_info.value.code == "network"
        assert "connection reset" in str(exc_info.value)
        assert "User not found" not in str(exc_info.value)
