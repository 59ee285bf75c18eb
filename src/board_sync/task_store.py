"""
Optimistic Task Cache with Pending-Mutation Gate

Holds the as-known task list of one board, applies local mutations before
the backing store confirms them, reconciles remote change-feed events and
rolls back failed mutations. Every optimistic change is recorded as a
PendingMutation carrying the pre-image of the task; while a task has one,
remote events for that task are ignored so an unconfirmed local edit is
never overwritten by a stale remote snapshot.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from .errors import FetchError, MutationError
from .models import ChangeEvent, ChangeOperation, FailureNotice, Task, TaskStatus
from .persistence import Persistence, Result, settle

logger = logging.getLogger(__name__)

TASKS_TABLE = "tasks"
DEFAULT_NEW_TASK_POSITION = 9999.0


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingMutation:
    """
    Rollback record for an in-flight optimistic change.

    ``previous_snapshot`` is the task as it was before the first unconfirmed
    change (None for creates). ``in_flight`` counts persistence calls of the
    same burst that have not settled yet.
    """

    task_id: str
    previous_snapshot: Optional[Task]
    kind: MutationKind
    in_flight: int = 0


def _new_task_id() -> str:
    return str(uuid.uuid4())


class TaskStore:
    """
    Optimistic cache of one board's tasks.

    Features:
    - Synchronous local apply before any network suspension
    - Pending-mutation table keyed by task id (coalescing update bursts)
    - Symmetric apply/rollback with exact pre-image restore
    - Last-writer-from-server-wins reconciliation, gated per task
    - Tombstones so deleted tasks are never resurrected
    """

    def __init__(self, persistence: Persistence, board_id: str, *,
                 new_task_position: float = DEFAULT_NEW_TASK_POSITION,
                 mutation_timeout: Optional[float] = None,
                 id_factory: Callable[[], str] = _new_task_id):
        """
        Args:
            persistence: Backing store adapter
            board_id: Board whose tasks this store caches
            new_task_position: Minimum sentinel position for appended tasks
            mutation_timeout: Seconds before an unconfirmed call counts as failed
            id_factory: Generates client-side ids for created tasks
        """
        self.persistence = persistence
        self.board_id = board_id
        self.new_task_position = new_task_position
        self.mutation_timeout = mutation_timeout
        self.id_factory = id_factory

        self._tasks: Dict[str, Task] = {}
        self._pending: Dict[str, PendingMutation] = {}
        self._deleted: Set[str] = set()
        self._listeners: List[Callable[["TaskStore"], None]] = []
        self._notice_listeners: List[Callable[[FailureNotice], None]] = []
        self._closed = False
        self.loaded = False

    # -- read side ---------------------------------------------------------

    @property
    def tasks(self) -> List[Task]:
        """Cached tasks ordered by position (ties keep fetch/insert order)."""
        return sorted(self._tasks.values(), key=lambda t: t.position)

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def tasks_by_status(self, status: TaskStatus) -> List[Task]:
        return [t for t in self.tasks if t.status == status]

    def pending(self, task_id: str) -> Optional[PendingMutation]:
        return self._pending.get(task_id)

    @property
    def pending_task_ids(self) -> List[str]:
        return list(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    # -- listeners ---------------------------------------------------------

    def add_listener(self, callback: Callable[["TaskStore"], None]) -> None:
        """Register a callback run after every visible cache change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[["TaskStore"], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def add_notice_listener(self, callback: Callable[[FailureNotice], None]) -> None:
        """Register a callback for user-visible failure notices."""
        self._notice_listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Task store listener failed")

    def _notice(self, notice: FailureNotice) -> None:
        logger.warning(f"{notice.title}: {notice.message}")
        for callback in list(self._notice_listeners):
            try:
                callback(notice)
            except Exception:
                logger.exception("Failure notice listener failed")

    # -- load --------------------------------------------------------------

    async def load(self) -> List[Task]:
        """
        Fetch every task of the board, ordered by position.

        Tasks with a pending mutation keep their optimistic local value.

        Returns:
            The cached task list after the load

        Raises:
            FetchError: the backing store could not be read
        """
        result = await settle(
            self.persistence.select(TASKS_TABLE, filters={"board_id": self.board_id}, order="position"),
        )
        if not result.ok:
            raise FetchError(f"Could not load tasks for board {self.board_id}: {result.error.message}",
                             code=result.error.code)
        if self._closed:
            return []

        fetched: Dict[str, Task] = {}
        for row in result.data or []:
            try:
                task = Task.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed task row {row.get('id')}: {e}")
                continue
            if task.id in self._deleted:
                continue
            fetched[task.id] = task

        for task_id, mutation in self._pending.items():
            if mutation.kind is MutationKind.DELETE:
                fetched.pop(task_id, None)
            elif task_id in self._tasks:
                fetched[task_id] = self._tasks[task_id]

        self._tasks = fetched
        self.loaded = True
        logger.info(f"Loaded {len(fetched)} tasks for board {self.board_id}")
        self._notify()
        return self.tasks

    # -- mutations ---------------------------------------------------------

    def next_position(self, status: TaskStatus) -> float:
        """Sentinel position that sorts after everything in ``status``."""
        highest = max((t.position for t in self._tasks.values() if t.status == status), default=None)
        if highest is None:
            return self.new_task_position
        return max(self.new_task_position, highest + 1)

    async def create(self, partial: Dict[str, Any]) -> Optional[Task]:
        """
        Append a task, visible immediately, then persist it.

        Args:
            partial: Task fields; ``id`` is generated when absent, ``board_id``
                and ``position`` are always set by the store

        Returns:
            The optimistic Task, or None when the store is closed

        Raises:
            ValueError: the fields do not form a valid task or the id is taken
        """
        if self._closed:
            return None
        data = dict(partial)
        data.setdefault("id", self.id_factory())
        data["board_id"] = self.board_id
        status = TaskStatus(data.get("status") or TaskStatus.TODO)
        data["status"] = status
        data["position"] = self.next_position(status)
        task = Task.model_validate(data)
        if task.id in self._tasks or task.id in self._pending:
            raise ValueError(f"Task {task.id} already exists")

        mutation = PendingMutation(task.id, None, MutationKind.CREATE, in_flight=1)
        self._pending[task.id] = mutation
        self._tasks[task.id] = task
        self._notify()

        result = await settle(self.persistence.insert(TASKS_TABLE, [task.to_record()]),
                              self.mutation_timeout)
        self._settle(mutation, result, "Could not create task.")
        return task

    async def update(self, task_id: str, patch: Dict[str, Any]) -> bool:
        """
        Apply ``patch`` to a cached task now, then persist it.

        A burst of updates to the same task shares one PendingMutation whose
        snapshot is the state before the first unconfirmed change, so a
        failure anywhere in the burst restores the pre-burst task.

        Returns:
            True if the change was confirmed by the store

        Raises:
            ValueError: the patch is invalid for this task
        """
        if self._closed:
            return False
        current = self._tasks.get(task_id)
        if current is None:
            logger.warning(f"Ignoring update for unknown task {task_id}")
            return False
        mutation = self._pending.get(task_id)
        if mutation is not None and mutation.kind is MutationKind.DELETE:
            logger.warning(f"Ignoring update for task {task_id} with a pending delete")
            return False

        updated = current.apply(patch)
        if mutation is None:
            mutation = PendingMutation(task_id, current, MutationKind.UPDATE)
            self._pending[task_id] = mutation
        mutation.in_flight += 1
        self._tasks[task_id] = updated
        self._notify()

        result = await settle(
            self.persistence.update(TASKS_TABLE, updated.to_record(set(patch)), filters={"id": task_id}),
            self.mutation_timeout,
        )
        return self._settle(mutation, result, "Could not update task.")

    async def move(self, task_id: str, status: TaskStatus) -> bool:
        """Move a task to another status column."""
        return await self.update(task_id, {"status": TaskStatus(status)})

    async def delete(self, task_id: str) -> bool:
        """
        Remove a task now, then persist the delete.

        On failure the exact removed record is re-inserted and a notice fires.

        Returns:
            True if the delete was confirmed by the store
        """
        if self._closed:
            return False
        current = self._tasks.get(task_id)
        if current is None:
            logger.warning(f"Ignoring delete for unknown task {task_id}")
            return False
        previous = self._pending.get(task_id)
        if previous is not None and previous.kind is MutationKind.DELETE:
            logger.warning(f"Delete already pending for task {task_id}")
            return False

        # Supersedes any pending create/update; their late settlements become no-ops
        mutation = PendingMutation(task_id, current, MutationKind.DELETE, in_flight=1)
        self._pending[task_id] = mutation
        del self._tasks[task_id]
        self._deleted.add(task_id)
        self._notify()

        result = await settle(self.persistence.delete(TASKS_TABLE, filters={"id": task_id}),
                              self.mutation_timeout)
        return self._settle(mutation, result, "Could not delete task. Check permissions.")

    def _settle(self, mutation: PendingMutation, result: Result, failure_message: str) -> bool:
        if self._closed:
            logger.debug(f"Dropping settlement for task {mutation.task_id}: store closed")
            return False
        if self._pending.get(mutation.task_id) is not mutation:
            # Rolled back or superseded while this call was in flight
            return False

        mutation.in_flight -= 1
        if not result.ok:
            self._rollback(mutation)
            error = MutationError(f"{mutation.kind.value} of task {mutation.task_id} failed: "
                                  f"{result.error.message}", code=result.error.code)
            self._notice(FailureNotice("Error", failure_message, mutation.task_id, error))
            return False

        if mutation.in_flight > 0:
            if mutation.kind is MutationKind.CREATE:
                # The row now exists; a later failure in the burst must restore it, not drop it
                mutation.kind = MutationKind.UPDATE
                mutation.previous_snapshot = self._persisted(mutation.task_id, result.first())
            return True
        del self._pending[mutation.task_id]
        if mutation.kind is not MutationKind.DELETE:
            self._confirm(mutation.task_id, result.first())
        return True

    def _persisted(self, task_id: str, row: Optional[Dict[str, Any]]) -> Optional[Task]:
        """Task as the store returned it, falling back to the cached value."""
        if row:
            try:
                return Task.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Store returned malformed task {task_id}: {e}")
        return self._tasks.get(task_id)

    def _confirm(self, task_id: str, row: Optional[Dict[str, Any]]) -> None:
        if not row or task_id not in self._tasks:
            return
        try:
            confirmed = Task.model_validate(row)
        except ValidationError as e:
            logger.warning(f"Store returned malformed task {task_id}: {e}")
            return
        if confirmed != self._tasks[task_id]:
            self._tasks[task_id] = confirmed
            self._notify()

    def _rollback(self, mutation: PendingMutation) -> None:
        del self._pending[mutation.task_id]
        if mutation.kind is MutationKind.CREATE:
            self._tasks.pop(mutation.task_id, None)
        elif mutation.kind is MutationKind.UPDATE:
            self._tasks[mutation.task_id] = mutation.previous_snapshot
        else:
            self._deleted.discard(mutation.task_id)
            self._tasks[mutation.task_id] = mutation.previous_snapshot
        logger.info(f"Rolled back {mutation.kind.value} of task {mutation.task_id}")
        self._notify()

    # -- reconciliation ----------------------------------------------------

    def reconcile(self, event: ChangeEvent) -> bool:
        """
        Merge a remote change into the cache.

        Never raises. Events for tasks with a pending mutation, for other
        boards, or for tombstoned tasks are ignored.

        Returns:
            True if the visible cache changed
        """
        if self._closed or event.table != TASKS_TABLE:
            return False
        task_id = event.row_id
        if task_id is None:
            logger.warning(f"Dropping {event.operation.value} event without a task id")
            return False
        if task_id in self._pending:
            logger.debug(f"Deferring remote {event.operation.value} for task {task_id}: local change in flight")
            return False

        if event.operation is ChangeOperation.DELETE:
            self._deleted.add(task_id)
            if self._tasks.pop(task_id, None) is None:
                return False
            self._notify()
            return True

        if task_id in self._deleted:
            return False
        try:
            task = Task.model_validate(event.record)
        except ValidationError as e:
            logger.warning(f"Dropping malformed remote task {task_id}: {e}")
            return False
        if task.board_id != self.board_id:
            if self._tasks.pop(task_id, None) is not None:
                # Moved to another board
                self._notify()
                return True
            return False
        if self._tasks.get(task_id) == task:
            return False
        self._tasks[task_id] = task
        self._notify()
        return True

    def close(self) -> None:
        """Detach the store; in-flight settlements become no-ops."""
        if self._closed:
            return
        self._closed = True
        abandoned = len(self._pending)
        self._pending.clear()
        self._tasks.clear()
        self._listeners.clear()
        self._notice_listeners.clear()
        if abandoned:
            logger.info(f"Closed task store for board {self.board_id} with {abandoned} pending mutations abandoned")
