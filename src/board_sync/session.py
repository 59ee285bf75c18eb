"""
Board session coordinator.

Composes the task cache, presence, drop zones, drag controller, member
directory and the open task's comment thread for one board view, and owns
their subscription lifecycle. Teardown (unmount or board deletion) is
synchronous and happens exactly once.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .change_feed import ChangeFeedClient, ChangeFeedTransport, ChangeFilter, SubscriptionHandle
from .comments import CommentThread
from .config import SyncSettings
from .drag import DragController
from .drop_zones import DropZone, DropZoneRegistry
from .errors import FetchError
from .members import MEMBERS_TABLE, MemberDirectory
from .models import (
    ChangeEvent,
    ChangeOperation,
    FailureNotice,
    PresenceEntry,
    Rect,
    Task,
    TaskPriority,
    TaskStatus,
    UserIdentity,
)
from .persistence import Persistence
from .presence import PresenceTracker
from .task_store import TASKS_TABLE, TaskStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    MOUNTED = "mounted"
    CLOSED = "closed"
    DELETED = "deleted"


def tasks_topic(board_id: str) -> str:
    return f"realtime:tasks:{board_id}"


def members_topic(board_id: str) -> str:
    return f"members_realtime:{board_id}"


def lifecycle_topic(board_id: str) -> str:
    return f"board_life_check:{board_id}"


class BoardSyncCoordinator:
    """
    One board view's synchronization session.

    Features:
    - One subscription per board table (tasks, members, board lifecycle)
      plus the open task's comments
    - Optimistic task mutations through the UI callbacks
    - Drop zones per status column, resolved by the drag controller
    - Board deletion as a terminal transition with a one-shot navigation signal
    """

    def __init__(self, board_id: str, persistence: Persistence, transport: ChangeFeedTransport,
                 identity: UserIdentity, *,
                 settings: Optional[SyncSettings] = None,
                 on_board_deleted: Optional[Callable[[str], None]] = None,
                 on_notice: Optional[Callable[[FailureNotice], None]] = None):
        """
        Args:
            board_id: Board this session shows
            persistence: Backing store adapter
            transport: Change-feed transport
            identity: Signed-in user
            settings: Timeouts and sentinels; defaults apply when omitted
            on_board_deleted: Navigation signal, called once with the board id
                when the board is deleted while open
            on_notice: Receives failure notices from task and comment mutations
        """
        self.board_id = board_id
        self.persistence = persistence
        self.identity = identity
        self.settings = settings or SyncSettings()
        self.on_board_deleted = on_board_deleted
        self.on_notice = on_notice

        self.feed = ChangeFeedClient(transport, join_timeout=self.settings.join_timeout)
        self.store = TaskStore(
            persistence,
            board_id,
            new_task_position=self.settings.new_task_position,
            mutation_timeout=self.settings.mutation_timeout,
        )
        self.presence = PresenceTracker(self.feed, board_id, identity)
        self.zones = DropZoneRegistry()
        self.drag = DragController(self.zones, task_lookup=self.store.get)
        self.members = MemberDirectory(persistence, board_id)
        self.comments: Optional[CommentThread] = None

        self.state = SessionState.IDLE
        self.selected_task_id: Optional[str] = None
        self.load_error: Optional[FetchError] = None
        self.handles: Dict[str, SubscriptionHandle] = {}
        self._background: Set[asyncio.Task] = set()

        if on_notice is not None:
            self.store.add_notice_listener(on_notice)

    @property
    def active(self) -> bool:
        return self.state is SessionState.MOUNTED

    @property
    def background_tasks(self) -> List[asyncio.Task]:
        """Mutations started from drop callbacks that have not finished yet."""
        return [t for t in self._background if not t.done()]

    # -- lifecycle ---------------------------------------------------------

    async def mount(self) -> List[Task]:
        """
        Open the board's subscriptions and load its state.

        Subscriptions are opened before the initial fetch so no change made
        during the load is missed. A failed load is kept in ``load_error``
        and can be retried with ``retry_load``.

        Returns:
            Tasks visible after the load (empty if the load failed or the
            session was torn down meanwhile)

        Raises:
            RuntimeError: the session was already closed
        """
        if self.state is SessionState.MOUNTED:
            return self.store.tasks
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Board session {self.board_id} is {self.state.value}")
        self.state = SessionState.MOUNTED
        schema = self.settings.db_schema

        self.handles[TASKS_TABLE] = self.feed.subscribe(
            tasks_topic(self.board_id),
            ChangeFilter.eq(TASKS_TABLE, "board_id", self.board_id, schema=schema),
            self._on_task_event,
        )
        self.handles[MEMBERS_TABLE] = self.feed.subscribe(
            members_topic(self.board_id),
            ChangeFilter.eq(MEMBERS_TABLE, "board_id", self.board_id, schema=schema),
            self.members.handle_change,
        )
        self.handles["boards"] = self.feed.subscribe(
            lifecycle_topic(self.board_id),
            ChangeFilter.eq("boards", "id", self.board_id,
                            event=ChangeOperation.DELETE.value, schema=schema),
            self._on_board_event,
        )
        self.handles["presence"] = self.presence.start()
        logger.info(f"Mounted board {self.board_id} for {self.identity.user_id}")

        await self.retry_load()
        if not self.active:
            return []
        try:
            await self.members.load()
        except FetchError as e:
            logger.warning(f"Members of board {self.board_id} unavailable: {e}")
        return self.store.tasks if self.active else []

    async def retry_load(self) -> List[Task]:
        """(Re)load the task list; failures are kept in ``load_error``."""
        if not self.active:
            return []
        try:
            tasks = await self.store.load()
        except FetchError as e:
            self.load_error = e
            logger.error(f"Initial load of board {self.board_id} failed: {e}")
            return []
        self.load_error = None
        return tasks

    def unmount(self) -> bool:
        """
        Tear the session down. Safe to call repeatedly and before ``mount``
        has finished.

        Returns:
            True if this call performed the teardown
        """
        if self.state in (SessionState.CLOSED, SessionState.DELETED):
            return False
        self._teardown()
        self.state = SessionState.CLOSED
        logger.info(f"Unmounted board {self.board_id}")
        return True

    def _teardown(self) -> None:
        self.zones.clear()
        self.drag.cancel_drag()
        self._close_comments()
        self.presence.stop()
        closed = self.feed.unsubscribe_all()
        self.handles.clear()
        self.store.close()
        self.members.close()
        self.selected_task_id = None
        # In-flight mutations are abandoned; their settlements hit a closed store
        self._background.clear()
        logger.debug(f"Closed {closed} subscriptions for board {self.board_id}")

    def _on_task_event(self, event: ChangeEvent) -> None:
        if self.active:
            self.store.reconcile(event)

    def _on_board_event(self, event: ChangeEvent) -> None:
        if event.operation is not ChangeOperation.DELETE:
            return
        if event.row_id not in (None, self.board_id):
            return
        self._handle_board_deleted()

    def _handle_board_deleted(self) -> None:
        if self.state in (SessionState.CLOSED, SessionState.DELETED):
            return
        logger.warning(f"Board {self.board_id} was deleted while open")
        self._teardown()
        self.state = SessionState.DELETED
        if self.on_board_deleted is not None:
            try:
                self.on_board_deleted(self.board_id)
            except Exception:
                logger.exception("Board deleted callback failed")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- columns and drag --------------------------------------------------

    def register_column(self, status: TaskStatus, rect: Union[Rect, Dict[str, float]]) -> DropZone:
        """Register (or re-measure) a status column as a drop zone."""
        status = TaskStatus(status)

        def accept(task: Task) -> None:
            self._spawn(self.on_drop_task(task.id, status))

        return self.zones.register(status.value, rect, accept)

    def unregister_column(self, status: TaskStatus) -> bool:
        return self.zones.unregister(TaskStatus(status).value)

    # -- UI callbacks ------------------------------------------------------

    async def on_drop_task(self, task_id: str, status: TaskStatus) -> bool:
        """Move a task to ``status``; a drop on its current column is a no-op."""
        if not self.active:
            return False
        task = self.store.get(task_id)
        if task is None or task.status == TaskStatus(status):
            return False
        return await self.store.move(task_id, status)

    async def on_task_press(self, task: Task) -> Optional[CommentThread]:
        """Open a task: select it, load its comments, announce editing."""
        if not self.active:
            return None
        self.selected_task_id = task.id
        thread = self._open_comments(task.id)
        await self.presence.set_editing_task_id(task.id)
        try:
            await thread.load()
        except FetchError as e:
            logger.warning(f"Comments for task {task.id} unavailable: {e}")
        return thread

    async def close_task(self) -> None:
        if not self.active:
            return
        self.selected_task_id = None
        self._close_comments()
        await self.presence.set_editing_task_id(None)

    async def on_save(self, data: Dict[str, Any]) -> Optional[Task]:
        """
        Save the task form: updates the selected task, or creates a new one
        when nothing is selected.

        Returns:
            The task as now cached, or None if nothing was saved
        """
        if not self.active:
            return None
        if self.selected_task_id and self.store.get(self.selected_task_id):
            task_id = self.selected_task_id
            patch = {k: v for k, v in data.items() if k not in ("id", "board_id")}
            await self.store.update(task_id, patch)
            return self.store.get(task_id)
        return await self.store.create(data)

    async def on_delete(self, task_id: str) -> bool:
        if not self.active:
            return False
        if self.selected_task_id == task_id:
            await self.close_task()
        return await self.store.delete(task_id)

    # -- comments ----------------------------------------------------------

    def _open_comments(self, task_id: str) -> CommentThread:
        if self.comments is not None and self.comments.task_id == task_id:
            return self.comments
        self._close_comments()
        thread = CommentThread(
            self.persistence,
            self.feed,
            task_id,
            self.identity,
            author_lookup=self.members.name_for,
            mutation_timeout=self.settings.mutation_timeout,
            schema=self.settings.db_schema,
        )
        if self.on_notice is not None:
            thread.add_notice_listener(self.on_notice)
        self.handles["comments"] = thread.start()
        self.comments = thread
        return thread

    def _close_comments(self) -> None:
        if self.comments is None:
            return
        self.comments.close()
        self.comments = None
        self.handles.pop("comments", None)

    # -- queries -----------------------------------------------------------

    def visible_tasks(self, status: Optional[TaskStatus] = None, search: str = "",
                      priority: Optional[TaskPriority] = None) -> List[Task]:
        """Cached tasks filtered by column, title search and priority."""
        needle = (search or "").strip().lower()
        result = []
        for task in self.store.tasks:
            if status is not None and task.status != TaskStatus(status):
                continue
            if priority is not None and task.priority != TaskPriority(priority):
                continue
            if needle and needle not in task.title.lower():
                continue
            result.append(task)
        return result

    def editors_of(self, task_id: str) -> List[PresenceEntry]:
        return self.presence.editors_of(task_id)

    def __repr__(self) -> str:
        return f"BoardSyncCoordinator(board={self.board_id!r}, state={self.state.value})"
