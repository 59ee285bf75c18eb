"""
Realtime change-feed transport over websockets.

Speaks the Phoenix channel protocol used by the hosted realtime service:
every frame is a JSON object ``{topic, event, payload, ref, join_ref}``.
Channels join with their postgres_changes bindings and presence key in the
join config; replies come back as ``phx_reply`` frames matched by ``ref``.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .change_feed import ChangeFilter
from .errors import SubscriptionError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"
HEARTBEAT_TOPIC = "phoenix"
PRESENCE_META_KEYS = ("phx_ref", "phx_ref_prev")


def _strip_meta(meta: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in meta.items() if k not in PRESENCE_META_KEYS}


class RealtimeChannel:
    """One Phoenix channel; implements the change-feed Channel protocol."""

    def __init__(self, socket: "RealtimeSocket", topic: str, presence_key: Optional[str] = None):
        self.socket = socket
        self.topic = topic
        self.wire_topic = f"realtime:{topic}"
        self.presence_key = presence_key
        self.joined = False
        self.closed = False
        self.join_ref: Optional[str] = None
        self._change_bindings: List[Tuple[Dict[str, Any], Callable[[Dict[str, Any]], None]]] = []
        self._sync_handlers: List[Callable[[], None]] = []
        self._presence: Dict[str, List[Dict[str, Any]]] = {}

    def on_postgres_changes(self, config: Dict[str, Any],
                            handler: Callable[[Dict[str, Any]], None]) -> "RealtimeChannel":
        self._change_bindings.append((dict(config), handler))
        return self

    def on_presence_sync(self, handler: Callable[[], None]) -> "RealtimeChannel":
        self._sync_handlers.append(handler)
        return self

    def join_payload(self) -> Dict[str, Any]:
        payload = {
            "config": {
                "broadcast": {"self": False, "ack": False},
                "presence": {"key": self.presence_key or ""},
                "postgres_changes": [config for config, _ in self._change_bindings],
            },
        }
        if self.socket.access_token:
            payload["access_token"] = self.socket.access_token
        return payload

    async def subscribe(self) -> None:
        """
        Join the channel.

        Raises:
            SubscriptionError: the socket is unavailable or the join was refused
        """
        if self.closed:
            raise SubscriptionError(f"Channel {self.topic} is closed")
        await self.socket.ensure_connected()
        self.socket._register(self)
        ref = self.socket.next_ref()
        self.join_ref = ref
        reply = await self.socket.request(self.wire_topic, "phx_join", self.join_payload(),
                                          ref=ref, join_ref=ref)
        if reply.get("status") != "ok":
            raise SubscriptionError(
                f"Join of {self.topic} refused: {reply.get('response', {}).get('reason', reply)}",
                details=reply,
            )
        if self.closed:
            return
        self.joined = True

    async def track(self, record: Dict[str, Any]) -> None:
        if not self.joined or self.presence_key is None:
            raise SubscriptionError(f"Cannot track presence on {self.topic} before it is joined")
        reply = await self.socket.request(self.wire_topic, "presence", {
            "type": "presence", "event": "track", "payload": record,
        }, join_ref=self.join_ref)
        if reply.get("status") != "ok":
            raise SubscriptionError(f"Presence track on {self.topic} failed", details=reply)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: [_strip_meta(m) for m in metas] for key, metas in self._presence.items() if metas}

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        was_joined = self.joined
        self.joined = False
        self._change_bindings.clear()
        self._sync_handlers.clear()
        self._presence.clear()
        self.socket._unregister(self)
        if was_joined:
            self.socket.push_nowait(self.wire_topic, "phx_leave", {}, join_ref=self.join_ref)

    def handle_message(self, event: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        if event == "postgres_changes":
            self._handle_change(payload)
        elif event == "presence_state":
            self._presence = {
                key: list((entry or {}).get("metas", [])) for key, entry in payload.items()
            }
            self._sync()
        elif event == "presence_diff":
            self._apply_diff(payload)
            self._sync()
        elif event in ("phx_error", "phx_close"):
            logger.warning(f"Channel {self.topic} closed by server ({event})")
            self.joined = False
        elif event == "system" and payload.get("status") == "error":
            logger.warning(f"Channel {self.topic} system error: {payload.get('message')}")

    def _handle_change(self, payload: Dict[str, Any]) -> None:
        data = payload.get("data") or {}
        change = {
            "eventType": data.get("type"),
            "schema": data.get("schema"),
            "table": data.get("table"),
            "new": data.get("record") or {},
            "old": data.get("old_record") or {},
        }
        for config, handler in list(self._change_bindings):
            binding = ChangeFilter(table=config.get("table"), schema=config.get("schema", "public"),
                                   event=config.get("event", "*"))
            # Row filters are applied server side
            if not binding.matches(change["schema"], change["table"], change["eventType"] or "", {}):
                continue
            try:
                handler(change)
            except Exception:
                logger.exception(f"postgres_changes handler failed on {self.topic}")

    def _apply_diff(self, payload: Dict[str, Any]) -> None:
        for key, entry in (payload.get("leaves") or {}).items():
            refs = {m.get("phx_ref") for m in (entry or {}).get("metas", [])}
            remaining = [m for m in self._presence.get(key, []) if m.get("phx_ref") not in refs]
            if remaining:
                self._presence[key] = remaining
            else:
                self._presence.pop(key, None)
        for key, entry in (payload.get("joins") or {}).items():
            self._presence.setdefault(key, []).extend((entry or {}).get("metas", []))

    def _sync(self) -> None:
        for handler in list(self._sync_handlers):
            try:
                handler()
            except Exception:
                logger.exception(f"Presence sync handler failed on {self.topic}")

    def __repr__(self) -> str:
        return f"RealtimeChannel({self.topic!r}, joined={self.joined})"


class RealtimeSocket:
    """
    Shared websocket connection multiplexing realtime channels.

    Features:
    - Lazy connect on first channel join
    - Request/reply correlation by ``ref``
    - Periodic heartbeat on the ``phoenix`` topic
    - Pending replies fail with SubscriptionError when the connection drops
    """

    def __init__(self, url: str, api_key: Optional[str] = None, *,
                 access_token: Optional[str] = None,
                 heartbeat_interval: float = 25.0,
                 reply_timeout: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.access_token = access_token
        self.heartbeat_interval = heartbeat_interval
        self.reply_timeout = reply_timeout
        self._ws = None
        self._ref = 0
        self._pending: Dict[str, asyncio.Future] = {}
        self._channels: Dict[str, List[RealtimeChannel]] = {}
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._background: set = set()

    @classmethod
    def from_settings(cls, settings) -> "RealtimeSocket":
        return cls(settings.realtime_url, settings.api_key,
                   access_token=settings.access_token or settings.api_key,
                   heartbeat_interval=settings.heartbeat_interval,
                   reply_timeout=settings.join_timeout)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def endpoint(self) -> str:
        params = {"vsn": PROTOCOL_VERSION}
        if self.api_key:
            params["apikey"] = self.api_key
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(params)}"

    def channel(self, topic: str, *, presence_key: Optional[str] = None) -> RealtimeChannel:
        return RealtimeChannel(self, topic, presence_key)

    def next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def ensure_connected(self) -> None:
        async with self._connect_lock:
            if self._ws is not None:
                return
            try:
                self._ws = await websockets.connect(self.endpoint(), open_timeout=self.reply_timeout)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                raise SubscriptionError(f"Realtime connection failed: {e}") from e
            loop = asyncio.get_running_loop()
            self._reader = loop.create_task(self._read_loop())
            self._heartbeat = loop.create_task(self._heartbeat_loop())
            logger.info(f"Realtime socket connected to {self.url}")

    def _register(self, channel: RealtimeChannel) -> None:
        channels = self._channels.setdefault(channel.wire_topic, [])
        if channel not in channels:
            channels.append(channel)

    def _unregister(self, channel: RealtimeChannel) -> None:
        channels = self._channels.get(channel.wire_topic, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.wire_topic, None)

    def _frame(self, topic: str, event: str, payload: Dict[str, Any], ref: str,
               join_ref: Optional[str]) -> str:
        return json.dumps({"topic": topic, "event": event, "payload": payload,
                           "ref": ref, "join_ref": join_ref})

    async def send(self, topic: str, event: str, payload: Dict[str, Any], *,
                   ref: Optional[str] = None, join_ref: Optional[str] = None) -> str:
        if self._ws is None:
            raise SubscriptionError("Realtime socket is not connected")
        ref = ref or self.next_ref()
        try:
            await self._ws.send(self._frame(topic, event, payload, ref, join_ref))
        except ConnectionClosed as e:
            raise SubscriptionError(f"Realtime connection closed: {e}") from e
        return ref

    async def request(self, topic: str, event: str, payload: Dict[str, Any], *,
                      ref: Optional[str] = None, join_ref: Optional[str] = None) -> Dict[str, Any]:
        """Send a frame and wait for its ``phx_reply`` payload."""
        ref = ref or self.next_ref()
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await self.send(topic, event, payload, ref=ref, join_ref=join_ref)
            return await asyncio.wait_for(future, self.reply_timeout)
        except asyncio.TimeoutError as e:
            raise SubscriptionError(f"No reply to {event} on {topic}") from e
        finally:
            self._pending.pop(ref, None)

    def push_nowait(self, topic: str, event: str, payload: Dict[str, Any], *,
                    join_ref: Optional[str] = None) -> None:
        """Fire-and-forget send, usable from synchronous teardown."""
        if self._ws is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; dropping {event} for {topic}")
            return
        task = loop.create_task(self._send_quietly(topic, event, payload, join_ref))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_quietly(self, topic: str, event: str, payload: Dict[str, Any],
                            join_ref: Optional[str]) -> None:
        try:
            await self.send(topic, event, payload, join_ref=join_ref)
        except SubscriptionError as e:
            logger.debug(f"Could not send {event} for {topic}: {e}")

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON realtime frame: {message!r:.200}")
                    continue
                self._route(frame)
        except ConnectionClosed as e:
            logger.warning(f"Realtime connection closed: {e}")
        finally:
            self._ws = None
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(SubscriptionError("Realtime connection lost"))
            for channels in self._channels.values():
                for channel in channels:
                    channel.joined = False

    def _route(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload") or {}
        if event == "phx_reply":
            future = self._pending.get(frame.get("ref"))
            if future is not None and not future.done():
                future.set_result(payload)
            return
        for channel in list(self._channels.get(frame.get("topic"), [])):
            if channel.join_ref and frame.get("join_ref") not in (None, channel.join_ref):
                continue
            channel.handle_message(event, payload)

    async def _heartbeat_loop(self) -> None:
        while self._ws is not None:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send(HEARTBEAT_TOPIC, "heartbeat", {})
            except SubscriptionError as e:
                logger.warning(f"Heartbeat failed: {e}")
                return

    async def close(self) -> None:
        for channels in list(self._channels.values()):
            for channel in list(channels):
                channel.unsubscribe()
        for task in (self._heartbeat, self._reader, *self._background):
            if task is not None and not task.done():
                task.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        logger.info("Realtime socket closed")
