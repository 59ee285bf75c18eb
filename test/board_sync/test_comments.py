"""
Tests for task comment threads with optimistic echo.
"""

import asyncio

import pytest

from conftest import GatedPersistence, flush

from board_sync.change_feed import ChangeFeedClient, SubscriptionStatus
from board_sync.comments import CommentThread


@pytest.fixture
def task_id(db, board_id):
    return db.add_task(board_id, "Discuss agenda", id="t-1")


async def open_thread(persistence, feed, task_id, identity, **kwargs):
    thread = CommentThread(persistence, ChangeFeedClient(feed), task_id, identity, **kwargs)
    handle = thread.start()
    assert await handle.wait_ready() is SubscriptionStatus.SUBSCRIBED
    await thread.load()
    return thread


class TestCommentThread:
    """Echo, dedupe and failure handling."""

    @pytest.mark.asyncio
    async def test_echo_then_remote_insert_not_duplicated(self, gated, feed, owner, task_id):
        thread = await open_thread(gated, feed, task_id, owner)
        gated.gated = True

        sending = asyncio.create_task(thread.send("Looks good"))
        await flush()
        assert [c.content for c in thread.comments] == ["Looks good"]
        comment_id = thread.comments[0].id
        assert thread.is_unconfirmed(comment_id)
        assert thread.comments[0].author_name == "Olive Owner"

        gated.release()
        await sending
        await flush()

        assert [c.id for c in thread.comments] == [comment_id]
        assert not thread.is_unconfirmed(comment_id)

    @pytest.mark.asyncio
    async def test_failed_send_removes_echo(self, gated, feed, owner, task_id):
        thread = await open_thread(gated, feed, task_id, owner)
        notices = []
        thread.add_notice_listener(notices.append)
        gated.gated = True

        sending = asyncio.create_task(thread.send("Lost words"))
        await flush()
        assert len(thread.comments) == 1

        gated.fail("row-level security", "42501")
        await sending
        assert thread.comments == []
        assert notices[0].message == "Failed to send: row-level security"

    @pytest.mark.asyncio
    async def test_blank_content_ignored(self, db, feed, owner, task_id):
        thread = await open_thread(db, feed, task_id, owner)
        assert await thread.send("   ") is None
        assert thread.comments == []

    @pytest.mark.asyncio
    async def test_peer_comment_arrives_with_author(self, db, feed, owner, peer, task_id):
        names = {peer.user_id: "Pat Peer"}
        thread = await open_thread(db, feed, task_id, owner, author_lookup=names.get)
        peer_thread = await open_thread(db, feed, task_id, peer)

        await peer_thread.send("Hello from Pat")
        await flush()

        assert [(c.content, c.author_name) for c in thread.comments] == [("Hello from Pat", "Pat Peer")]

    @pytest.mark.asyncio
    async def test_load_orders_by_created_at_and_keeps_echo(self, db, feed, owner, task_id):
        db._seed("comments", {"id": "c-2", "task_id": task_id, "user_id": owner.user_id,
                              "content": "second", "created_at": "2024-01-02T00:00:00+00:00"})
        db._seed("comments", {"id": "c-1", "task_id": task_id, "user_id": owner.user_id,
                              "content": "first", "created_at": "2024-01-01T00:00:00+00:00"})
        gated = GatedPersistence(db)
        thread = await open_thread(gated, feed, task_id, owner)
        assert [c.id for c in thread.comments] == ["c-1", "c-2"]

        gated.gated = True
        sending = asyncio.create_task(thread.send("third"))
        await flush()
        await thread.load()
        assert [c.content for c in thread.comments] == ["first", "second", "third"]

        gated.release()
        await sending

    @pytest.mark.asyncio
    async def test_closed_thread_ignores_events(self, db, feed, owner, peer, task_id):
        thread = await open_thread(db, feed, task_id, owner)
        peer_thread = await open_thread(db, feed, task_id, peer)
        thread.close()

        await peer_thread.send("Anyone there?")
        await flush()
        assert thread.comments == []
