"""
Tests for the change-feed subscription wrapper over the local hub.
"""

import asyncio

import pytest

from conftest import flush

from board_sync.change_feed import ChangeFeedClient, ChangeFilter, SubscriptionStatus
from board_sync.errors import SubscriptionError
from board_sync.models import ChangeOperation


class TestChangeFilter:
    """Filter construction and matching."""

    def test_eq_builds_postgrest_filter(self):
        change_filter = ChangeFilter.eq("tasks", "board_id", "b-1")
        assert change_filter.to_config() == {
            "event": "*", "schema": "public", "table": "tasks", "filter": "board_id=eq.b-1",
        }

    def test_matches_table_event_and_column(self):
        change_filter = ChangeFilter.eq("boards", "id", "b-1", event="DELETE")
        assert change_filter.matches("public", "boards", "DELETE", {"id": "b-1"})
        assert not change_filter.matches("public", "boards", "UPDATE", {"id": "b-1"})
        assert not change_filter.matches("public", "boards", "DELETE", {"id": "b-2"})
        assert not change_filter.matches("public", "tasks", "DELETE", {"id": "b-1"})
        assert not change_filter.matches("other", "boards", "DELETE", {"id": "b-1"})


class TestSubscriptionLifecycle:
    """Handshake, delivery and teardown."""

    @pytest.mark.asyncio
    async def test_subscribe_returns_before_handshake(self, feed):
        client = ChangeFeedClient(feed)
        handle = client.subscribe("realtime:tasks:b-1", ChangeFilter("tasks"), lambda e: None)

        assert handle.status is SubscriptionStatus.PENDING
        assert await handle.wait_ready() is SubscriptionStatus.SUBSCRIBED
        assert feed.active_topics() == ["realtime:tasks:b-1"]

    @pytest.mark.asyncio
    async def test_events_delivered_typed_and_in_order(self, feed):
        client = ChangeFeedClient(feed)
        received = []
        handle = client.subscribe("t", ChangeFilter.eq("tasks", "board_id", "b-1"), received.append)
        await handle.wait_ready()

        feed.publish("public", "tasks", "INSERT", new={"id": "t-1", "board_id": "b-1"})
        feed.publish("public", "tasks", "UPDATE", new={"id": "t-1", "board_id": "b-1", "title": "x"})
        feed.publish("public", "tasks", "INSERT", new={"id": "t-2", "board_id": "b-2"})
        feed.publish("public", "tasks", "DELETE", old={"id": "t-1", "board_id": "b-1"})
        await flush()

        assert [e.operation for e in received] == [
            ChangeOperation.INSERT, ChangeOperation.UPDATE, ChangeOperation.DELETE,
        ]
        assert received[2].row_id == "t-1"
        assert received[2].record == {}

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent_and_drops_late_events(self, feed):
        client = ChangeFeedClient(feed)
        received = []
        handle = client.subscribe("t", ChangeFilter("tasks"), received.append)
        await handle.wait_ready()

        feed.publish("public", "tasks", "INSERT", new={"id": "t-1"})
        # Queued but not yet delivered when the view goes away
        assert client.unsubscribe(handle) is True
        assert client.unsubscribe(handle) is False
        await flush()

        assert received == []
        assert handle.closed
        assert feed.active_topics() == []

    @pytest.mark.asyncio
    async def test_unsubscribe_during_handshake(self, feed):
        client = ChangeFeedClient(feed)
        statuses = []
        handle = client.subscribe("t", ChangeFilter("tasks"), lambda e: None, statuses.append)

        client.unsubscribe(handle)
        await flush()

        assert handle.status is SubscriptionStatus.CLOSED
        assert statuses == []
        assert feed.active_topics() == []

    @pytest.mark.asyncio
    async def test_handshake_failure_is_not_escalated(self, feed):
        feed.fail_subscriptions("members_realtime:")
        client = ChangeFeedClient(feed)
        statuses = []
        handle = client.subscribe("members_realtime:b-1", ChangeFilter("board_members"),
                                  lambda e: None, statuses.append)

        assert await handle.wait_ready() is SubscriptionStatus.FAILED
        assert isinstance(handle.error, SubscriptionError)
        assert statuses == [handle]

    @pytest.mark.asyncio
    async def test_join_timeout(self):
        class SlowChannel:
            topic = "slow"

            def on_postgres_changes(self, config, handler):
                return self

            async def subscribe(self):
                await asyncio.sleep(60)

            def unsubscribe(self):
                pass

        class SlowTransport:
            def channel(self, topic, *, presence_key=None):
                return SlowChannel()

        client = ChangeFeedClient(SlowTransport(), join_timeout=0.01)
        handle = client.subscribe("slow", ChangeFilter("tasks"), lambda e: None)
        assert await handle.wait_ready() is SubscriptionStatus.FAILED

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self, feed):
        client = ChangeFeedClient(feed)
        received = []

        def flaky(event):
            received.append(event)
            if len(received) == 1:
                raise RuntimeError("boom")

        handle = client.subscribe("t", ChangeFilter("tasks"), flaky)
        await handle.wait_ready()
        feed.publish("public", "tasks", "INSERT", new={"id": "a"})
        feed.publish("public", "tasks", "INSERT", new={"id": "b"})
        await flush()
        assert [e.row_id for e in received] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self, feed):
        client = ChangeFeedClient(feed)
        handles = [client.subscribe(f"t{i}", ChangeFilter("tasks"), lambda e: None) for i in range(3)]
        await asyncio.gather(*(h.wait_ready() for h in handles))

        assert client.unsubscribe_all() == 3
        assert client.unsubscribe_all() == 0
        assert client.handles == []
        assert feed.active_topics() == []
