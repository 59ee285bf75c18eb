"""
Change-feed subscription wrapper.

Turns raw transport callbacks into typed ChangeEvents and gives every
subscription a handle with an explicit lifecycle. ``subscribe`` returns
immediately and runs the channel handshake in the background, so a view
can be torn down at any moment (including mid-handshake) without leaking
channels or double-closing them.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from .errors import SubscriptionError
from .models import ChangeEvent

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChangeFilter:
    """Which row changes a subscription receives."""

    table: str
    schema: str = "public"
    event: str = "*"
    filter: Optional[str] = None

    @classmethod
    def eq(cls, table: str, column: str, value: Any, *, event: str = "*",
           schema: str = "public") -> "ChangeFilter":
        """Filter rows whose ``column`` equals ``value``."""
        return cls(table=table, schema=schema, event=event, filter=f"{column}=eq.{value}")

    def to_config(self) -> Dict[str, Any]:
        config = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config

    def matches(self, schema: str, table: str, event_type: str,
                record: Dict[str, Any]) -> bool:
        """Evaluate this filter against a row change (used by in-process hubs)."""
        if schema != self.schema or table != self.table:
            return False
        if self.event != "*" and self.event.upper() != event_type.upper():
            return False
        if not self.filter:
            return True
        column, _, condition = self.filter.partition("=")
        operator, _, expected = condition.partition(".")
        if operator != "eq" or column not in record:
            return False
        return str(record[column]) == expected


class Channel(Protocol):
    """Transport channel as seen by the client."""

    topic: str

    def on_postgres_changes(self, config: Dict[str, Any],
                            handler: Callable[[Dict[str, Any]], None]) -> "Channel": ...

    def on_presence_sync(self, handler: Callable[[], None]) -> "Channel": ...

    async def subscribe(self) -> None: ...

    async def track(self, record: Dict[str, Any]) -> None: ...

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]: ...

    def unsubscribe(self) -> None: ...


class ChangeFeedTransport(Protocol):
    def channel(self, topic: str, *, presence_key: Optional[str] = None) -> Channel: ...


class SubscriptionHandle:
    """One open (or opening) channel subscription."""

    def __init__(self, topic: str, channel: Channel,
                 change_filter: Optional[ChangeFilter] = None):
        self.topic = topic
        self.channel = channel
        self.change_filter = change_filter
        self.status = SubscriptionStatus.PENDING
        self.error: Optional[SubscriptionError] = None
        self._handshake: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self.status is SubscriptionStatus.CLOSED

    async def wait_ready(self) -> SubscriptionStatus:
        """Wait for the handshake to finish and return the resulting status."""
        if self._handshake is not None and not self._handshake.done():
            await asyncio.wait([self._handshake])
        return self.status

    def __repr__(self) -> str:
        return f"SubscriptionHandle(topic={self.topic!r}, status={self.status.value})"


StatusCallback = Callable[[SubscriptionHandle], Any]


class ChangeFeedClient:
    """
    Subscription manager over a change-feed transport.

    Features:
    - Typed ChangeEvent delivery per (topic, filter)
    - Background handshakes with optional join timeout
    - Idempotent, synchronous unsubscribe; late events are dropped
    - Presence channels under the same lifecycle
    """

    def __init__(self, transport: ChangeFeedTransport, *,
                 join_timeout: Optional[float] = None):
        self.transport = transport
        self.join_timeout = join_timeout
        self._handles: List[SubscriptionHandle] = []

    @property
    def handles(self) -> List[SubscriptionHandle]:
        """Handles that have not been unsubscribed."""
        return list(self._handles)

    def subscribe(self, topic: str, change_filter: ChangeFilter,
                  on_event: Callable[[ChangeEvent], Any],
                  on_status: Optional[StatusCallback] = None) -> SubscriptionHandle:
        """
        Subscribe to row changes on ``topic``.

        Must be called from a running event loop.

        Args:
            topic: Channel name, unique per subscription
            change_filter: Table/event/row filter
            on_event: Called with each ChangeEvent, in transport order
            on_status: Called once the handshake succeeds or fails

        Returns:
            SubscriptionHandle (handshake still pending)
        """
        channel = self.transport.channel(topic)
        handle = SubscriptionHandle(topic, channel, change_filter)
        channel.on_postgres_changes(
            change_filter.to_config(),
            lambda payload: self._dispatch(handle, on_event, payload),
        )
        self._start(handle, on_status)
        logger.debug(f"Subscribing to {topic} ({change_filter.table})")
        return handle

    def open_presence(self, topic: str, key: str, on_sync: Callable[[], Any],
                      on_subscribed: Optional[StatusCallback] = None) -> SubscriptionHandle:
        """Open a presence channel keyed by ``key`` (the user identity)."""
        channel = self.transport.channel(topic, presence_key=key)
        handle = SubscriptionHandle(topic, channel)

        def sync_handler():
            if handle.closed:
                return
            try:
                on_sync()
            except Exception:
                logger.exception(f"Presence sync handler failed for {topic}")

        channel.on_presence_sync(sync_handler)
        self._start(handle, on_subscribed)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """
        Close a subscription. Safe to call repeatedly.

        Returns:
            True if this call closed the handle, False if it was already closed
        """
        if handle.closed:
            return False
        handle.status = SubscriptionStatus.CLOSED
        if handle._handshake is not None and not handle._handshake.done():
            handle._handshake.cancel()
        try:
            handle.channel.unsubscribe()
        except Exception as e:
            logger.warning(f"Error closing channel {handle.topic}: {e}")
        if handle in self._handles:
            self._handles.remove(handle)
        logger.debug(f"Unsubscribed from {handle.topic}")
        return True

    def unsubscribe_all(self) -> int:
        """Close every open handle; returns how many were closed."""
        closed = 0
        for handle in list(self._handles):
            if self.unsubscribe(handle):
                closed += 1
        return closed

    def _start(self, handle: SubscriptionHandle, on_status: Optional[StatusCallback]) -> None:
        self._handles.append(handle)
        loop = asyncio.get_running_loop()
        handle._handshake = loop.create_task(self._establish(handle, on_status))

    async def _establish(self, handle: SubscriptionHandle,
                         on_status: Optional[StatusCallback]) -> None:
        try:
            if self.join_timeout is None:
                await handle.channel.subscribe()
            else:
                await asyncio.wait_for(handle.channel.subscribe(), self.join_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if handle.closed:
                return
            if isinstance(e, SubscriptionError):
                handle.error = e
            else:
                handle.error = SubscriptionError(f"Channel {handle.topic} failed: {e or type(e).__name__}")
            handle.status = SubscriptionStatus.FAILED
            logger.warning(f"Subscription to {handle.topic} failed, continuing without live updates: {handle.error}")
            await self._report(handle, on_status)
            return

        if handle.closed:
            return
        handle.status = SubscriptionStatus.SUBSCRIBED
        logger.info(f"Subscribed to {handle.topic}")
        await self._report(handle, on_status)

    async def _report(self, handle: SubscriptionHandle,
                      on_status: Optional[StatusCallback]) -> None:
        if on_status is None:
            return
        try:
            result = on_status(handle)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Status callback failed for {handle.topic}")

    def _dispatch(self, handle: SubscriptionHandle, on_event: Callable[[ChangeEvent], Any],
                  payload: Dict[str, Any]) -> None:
        if handle.closed:
            return
        try:
            event = ChangeEvent.from_payload(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping malformed change payload on {handle.topic}: {e}")
            return
        try:
            on_event(event)
        except Exception:
            logger.exception(f"Change handler failed on {handle.topic}")
