"""
In-Process Backing Store with Change Broadcasting

Provides a SQLite implementation of the persistence contract plus a local
change-feed hub. Every committed write is broadcast to matching channels as
a queued event-loop callback, the same way a hosted realtime service fans
out row changes, so embedding applications and tests can run full board
sessions without a network.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .change_feed import ChangeFilter
from .errors import SubscriptionError
from .persistence import (
    CHECK_VIOLATION,
    FOREIGN_KEY_VIOLATION,
    INSUFFICIENT_PRIVILEGE,
    UNIQUE_VIOLATION,
    Filters,
    Result,
)

logger = logging.getLogger(__name__)

UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
INTERNAL_ERROR = "XX000"

# Columns stored as JSON text
JSON_COLUMNS = {"meta_data"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _integrity_code(error: sqlite3.IntegrityError) -> str:
    message = str(error).upper()
    if "UNIQUE" in message or "PRIMARY KEY" in message:
        return UNIQUE_VIOLATION
    if "FOREIGN KEY" in message:
        return FOREIGN_KEY_VIOLATION
    if "CHECK" in message:
        return CHECK_VIOLATION
    return INTERNAL_ERROR


class LocalChannel:
    """Channel on a LocalChangeFeed hub."""

    def __init__(self, hub: "LocalChangeFeed", topic: str, presence_key: Optional[str] = None):
        self.hub = hub
        self.topic = topic
        self.presence_key = presence_key
        self.joined = False
        self.closed = False
        self._bindings: List[Tuple[ChangeFilter, Callable[[Dict[str, Any]], None]]] = []
        self._sync_handlers: List[Callable[[], None]] = []

    def on_postgres_changes(self, config: Dict[str, Any],
                            handler: Callable[[Dict[str, Any]], None]) -> "LocalChannel":
        change_filter = ChangeFilter(
            table=config["table"],
            schema=config.get("schema", "public"),
            event=config.get("event", "*"),
            filter=config.get("filter"),
        )
        self._bindings.append((change_filter, handler))
        return self

    def on_presence_sync(self, handler: Callable[[], None]) -> "LocalChannel":
        self._sync_handlers.append(handler)
        return self

    async def subscribe(self) -> None:
        await asyncio.sleep(0)
        if self.closed:
            raise SubscriptionError(f"Channel {self.topic} was closed before joining")
        if self.hub.should_fail(self.topic):
            raise SubscriptionError(f"Channel {self.topic} rejected by server", code="CHANNEL_ERROR")
        self.joined = True
        self.hub._join(self)

    async def track(self, record: Dict[str, Any]) -> None:
        if not self.joined:
            raise SubscriptionError(f"Cannot track on unjoined channel {self.topic}")
        if self.presence_key is None:
            raise SubscriptionError(f"Channel {self.topic} has no presence key")
        await asyncio.sleep(0)
        self.hub._track(self, dict(record))

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.hub.presence_state(self.topic)

    def unsubscribe(self) -> None:
        self.closed = True
        if self.joined:
            self.joined = False
            self.hub._leave(self)

    def _deliver(self, schema: str, table: str, event_type: str,
                 new: Dict[str, Any], old: Dict[str, Any]) -> None:
        payload = {"eventType": event_type, "schema": schema, "table": table,
                   "new": dict(new), "old": dict(old)}
        row = new or old
        for change_filter, handler in self._bindings:
            if change_filter.matches(schema, table, event_type, row):
                self.hub._schedule(self._guarded, handler, payload)

    def _guarded(self, handler: Callable, *args) -> None:
        # Queued callbacks may run after the channel was closed
        if self.joined:
            handler(*args)

    def _notify_sync(self) -> None:
        for handler in self._sync_handlers:
            self.hub._schedule(self._guarded, handler)


class LocalChangeFeed:
    """
    In-process change-feed hub implementing the transport contract.

    Features:
    - Row-change fan-out to joined channels with table/event/eq filters
    - Presence state per topic, one entry per channel, in track order
    - Delivery as queued event-loop callbacks (never re-entrant)
    - Failure injection for subscription handshakes
    """

    def __init__(self):
        self._channels: List[LocalChannel] = []
        self._presence: Dict[str, List[Tuple[LocalChannel, Dict[str, Any]]]] = {}
        self._failing_prefixes: List[str] = []

    def channel(self, topic: str, *, presence_key: Optional[str] = None) -> LocalChannel:
        return LocalChannel(self, topic, presence_key)

    def fail_subscriptions(self, topic_prefix: str) -> None:
        """Reject future handshakes on topics starting with ``topic_prefix``."""
        self._failing_prefixes.append(topic_prefix)

    def should_fail(self, topic: str) -> bool:
        return any(topic.startswith(prefix) for prefix in self._failing_prefixes)

    def active_topics(self) -> List[str]:
        return [ch.topic for ch in self._channels]

    def publish(self, schema: str, table: str, event_type: str,
                new: Optional[Dict[str, Any]] = None,
                old: Optional[Dict[str, Any]] = None) -> None:
        """Fan a committed row change out to every matching channel."""
        for ch in list(self._channels):
            ch._deliver(schema, table, event_type, new or {}, old or {})

    def presence_state(self, topic: str) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for ch, record in self._presence.get(topic, []):
            state.setdefault(ch.presence_key, []).append(dict(record))
        return state

    def _schedule(self, callback: Callable, *args) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            callback(*args)
            return
        loop.call_soon(callback, *args)

    def _join(self, ch: LocalChannel) -> None:
        self._channels.append(ch)
        if ch._sync_handlers:
            ch._notify_sync()

    def _leave(self, ch: LocalChannel) -> None:
        if ch in self._channels:
            self._channels.remove(ch)
        entries = self._presence.get(ch.topic, [])
        remaining = [(other, record) for other, record in entries if other is not ch]
        if len(remaining) != len(entries):
            self._presence[ch.topic] = remaining
            self._broadcast_sync(ch.topic)

    def _track(self, ch: LocalChannel, record: Dict[str, Any]) -> None:
        entries = self._presence.setdefault(ch.topic, [])
        for i, (other, _) in enumerate(entries):
            if other is ch:
                entries[i] = (ch, record)
                break
        else:
            entries.append((ch, record))
        self._broadcast_sync(ch.topic)

    def _broadcast_sync(self, topic: str) -> None:
        for ch in self._channels:
            if ch.topic == topic:
                ch._notify_sync()


class BoardDatabase:
    """
    SQLite database implementing the persistence contract.

    Features:
    - Boards, members, profiles, tasks, comments and notifications tables
    - Constraint failures mapped to Postgres error codes (23505, 23503, 23514)
    - Committed writes broadcast through an attached LocalChangeFeed
    - Optional simulated latency and one-shot failure injection
    """

    TABLES = ("profiles", "boards", "board_members", "tasks", "comments", "notifications")

    def __init__(self, db_path: str = ":memory:", feed: Optional[LocalChangeFeed] = None, *,
                 latency: float = 0.0, schema: str = "public"):
        """
        Initialize the database and create the schema.

        Args:
            db_path: SQLite file path, or ``:memory:``
            feed: Hub that receives committed row changes
            latency: Seconds every persistence call waits before running
            schema: Schema name reported in change events
        """
        self.db_path = db_path
        self.feed = feed
        self.latency = latency
        self.schema = schema
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._columns: Dict[str, List[str]] = {}
        self._failures: List[Tuple[str, str, str, str]] = []

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit; explicit BEGIN in _transaction
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
            cursor = self._connection.cursor()
            if self.db_path != ":memory:":
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        cursor = self._connection.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS boards (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (owner_id) REFERENCES profiles (id)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS board_members (
                id TEXT PRIMARY KEY,
                board_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                FOREIGN KEY (board_id) REFERENCES boards (id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES profiles (id) ON DELETE CASCADE,
                CONSTRAINT member_status CHECK (status IN ('pending', 'accepted')),
                UNIQUE (board_id, user_id)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                board_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'TODO',
                priority TEXT NOT NULL DEFAULT 'MEDIUM',
                position REAL NOT NULL DEFAULT 0,
                due_date TEXT,
                assignee_id TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (board_id) REFERENCES boards (id) ON DELETE CASCADE,
                CONSTRAINT task_status CHECK (status IN ('TODO', 'IN_PROGRESS', 'DONE')),
                CONSTRAINT task_priority CHECK (priority IN ('LOW', 'MEDIUM', 'HIGH'))
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS comments (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT,
                meta_data TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_board ON tasks (board_id, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_comments_task ON comments (task_id, created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_members_board ON board_members (board_id)")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        cursor = self._connection.cursor()
        try:
            cursor.execute("BEGIN")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def close(self):
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # -- failure injection -------------------------------------------------

    def fail_next(self, table: str, operation: str, message: str = "permission denied",
                  code: str = INSUFFICIENT_PRIVILEGE) -> None:
        """Make the next ``operation`` (select/insert/update/delete) on ``table`` fail."""
        self._failures.append((table, operation, message, code))

    def _take_failure(self, table: str, operation: str) -> Optional[Result]:
        for i, (f_table, f_op, message, code) in enumerate(self._failures):
            if f_table == table and f_op == operation:
                del self._failures[i]
                logger.debug(f"Injected {operation} failure on {table}")
                return Result.failure(message, code)
        return None

    # -- helpers -----------------------------------------------------------

    def _table_columns(self, table: str) -> List[str]:
        if table not in self._columns:
            cursor = self._connection.execute(f"PRAGMA table_info({table})")
            self._columns[table] = [row["name"] for row in cursor.fetchall()]
        return self._columns[table]

    def _check_identifiers(self, table: str, columns: Sequence[str]) -> Optional[Result]:
        if table not in self.TABLES:
            return Result.failure(f'relation "{table}" does not exist', UNDEFINED_TABLE)
        known = self._table_columns(table)
        for column in columns:
            if column not in known:
                return Result.failure(f'column "{column}" of "{table}" does not exist', UNDEFINED_COLUMN)
        return None

    def _where(self, filters: Optional[Filters]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        clauses, params = [], []
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(self._encode(column, v) for v in values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(self._encode(column, value))
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
            return json.dumps(value)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _fetch(self, cursor: sqlite3.Cursor, table: str, where: str,
               params: List[Any], order: str = "") -> List[Dict[str, Any]]:
        cursor.execute(f"SELECT * FROM {table}{where}{order}", params)
        return [dict(row) for row in cursor.fetchall()]

    async def _delay(self) -> None:
        await asyncio.sleep(self.latency)

    def _publish(self, table: str, event_type: str, new: Optional[Dict[str, Any]] = None,
                 old: Optional[Dict[str, Any]] = None) -> None:
        if self.feed is not None:
            self.feed.publish(self.schema, table, event_type, new, old)

    def _run(self, table: str, operation: str, work: Callable[[], List[Dict[str, Any]]]) -> Result:
        try:
            with self._connection_lock:
                return Result.success(work())
        except sqlite3.IntegrityError as e:
            logger.info(f"Constraint violation on {operation} {table}: {e}")
            return Result.failure(str(e), _integrity_code(e))
        except sqlite3.Error as e:
            logger.error(f"Database error on {operation} {table}: {e}")
            return Result.failure(f"Database error: {e}", INTERNAL_ERROR)

    # -- persistence contract ---------------------------------------------

    async def select(self, table: str, *, filters: Optional[Filters] = None,
                     order: Optional[str] = None, descending: bool = False,
                     columns: str = "*") -> Result:
        await self._delay()
        injected = self._take_failure(table, "select")
        if injected:
            return injected
        names = list(filters or {}) + ([order] if order else [])
        invalid = self._check_identifiers(table, names)
        if invalid:
            return invalid
        where, params = self._where(filters)
        order_sql = ""
        if order:
            order_sql = f" ORDER BY {order} {'DESC' if descending else 'ASC'}, rowid ASC"
        result = self._run(table, "select",
                           lambda: self._fetch(self._connection.cursor(), table, where, params, order_sql))
        if result.ok and columns != "*":
            wanted = [c.strip() for c in columns.split(",") if c.strip()]
            result.data = [{c: row.get(c) for c in wanted} for row in result.data]
        return result

    async def insert(self, table: str, rows: Sequence[Dict[str, Any]]) -> Result:
        await self._delay()
        injected = self._take_failure(table, "insert")
        if injected:
            return injected
        invalid = self._check_identifiers(table, [])
        if invalid:
            return invalid
        prepared = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            if "created_at" in self._table_columns(table):
                row.setdefault("created_at", _now())
            prepared.append(row)
        invalid = self._check_identifiers(table, [c for row in prepared for c in row])
        if invalid:
            return invalid

        def work():
            inserted = []
            with self._transaction() as cursor:
                for row in prepared:
                    names = list(row)
                    cursor.execute(
                        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                        [self._encode(n, row[n]) for n in names],
                    )
                    inserted.extend(self._fetch(cursor, table, " WHERE id = ?", [row["id"]]))
            return inserted

        result = self._run(table, "insert", work)
        if result.ok:
            for row in result.data:
                self._publish(table, "INSERT", new=row)
        return result

    async def update(self, table: str, values: Dict[str, Any], *, filters: Filters) -> Result:
        await self._delay()
        injected = self._take_failure(table, "update")
        if injected:
            return injected
        invalid = self._check_identifiers(table, list(values) + list(filters or {}))
        if invalid:
            return invalid
        if not values:
            return Result.failure("No values to update", INTERNAL_ERROR)
        where, params = self._where(filters)
        changes: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []

        def work():
            with self._transaction() as cursor:
                before = self._fetch(cursor, table, where, params)
                if not before:
                    return []
                ids = [row["id"] for row in before]
                assignments = ", ".join(f"{name} = ?" for name in values)
                cursor.execute(
                    f"UPDATE {table} SET {assignments} WHERE id IN ({', '.join('?' for _ in ids)})",
                    [self._encode(n, v) for n, v in values.items()] + ids,
                )
                after = self._fetch(cursor, table, f" WHERE id IN ({', '.join('?' for _ in ids)})", ids)
            by_id = {row["id"]: row for row in before}
            changes.extend((row, by_id[row["id"]]) for row in after)
            return after

        result = self._run(table, "update", work)
        if result.ok:
            for new, old in changes:
                self._publish(table, "UPDATE", new=new, old=old)
        return result

    async def delete(self, table: str, *, filters: Filters) -> Result:
        await self._delay()
        injected = self._take_failure(table, "delete")
        if injected:
            return injected
        invalid = self._check_identifiers(table, list(filters or {}))
        if invalid:
            return invalid
        where, params = self._where(filters)

        def work():
            with self._transaction() as cursor:
                removed = self._fetch(cursor, table, where, params)
                cursor.execute(f"DELETE FROM {table}{where}", params)
            return removed

        result = self._run(table, "delete", work)
        if result.ok:
            for row in result.data:
                self._publish(table, "DELETE", old=row)
        return result

    # -- seeding (synchronous, no broadcast) -------------------------------

    def _seed(self, table: str, row: Dict[str, Any]) -> str:
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        if "created_at" in self._table_columns(table):
            row.setdefault("created_at", _now())
        names = list(row)
        with self._connection_lock, self._transaction() as cursor:
            cursor.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                [self._encode(n, row[n]) for n in names],
            )
        return row["id"]

    def add_profile(self, email: str, full_name: Optional[str] = None,
                    user_id: Optional[str] = None) -> str:
        return self._seed("profiles", {"id": user_id or str(uuid.uuid4()),
                                       "email": email, "full_name": full_name})

    def add_board(self, title: str, owner_id: str, board_id: Optional[str] = None) -> str:
        return self._seed("boards", {"id": board_id or str(uuid.uuid4()),
                                     "title": title, "owner_id": owner_id})

    def add_member(self, board_id: str, user_id: str, status: str = "accepted") -> str:
        return self._seed("board_members", {"board_id": board_id, "user_id": user_id,
                                            "status": status})

    def add_task(self, board_id: str, title: str, **fields: Any) -> str:
        return self._seed("tasks", {"board_id": board_id, "title": title, **fields})

    def get_row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        """Direct read used by tests and diagnostics."""
        with self._connection_lock:
            rows = self._fetch(self._connection.cursor(), table, " WHERE id = ?", [row_id])
        return rows[0] if rows else None
