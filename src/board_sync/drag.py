"""
Drag gesture state machine.

Two separate paths: ``move`` is the high-frequency pointer stream and only
updates a mutable position (it never touches the task cache), while
``end_drag`` is the single discrete event that may trigger one mutation
through the resolved drop zone.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from .drop_zones import DropZone, DropZoneRegistry
from .models import Task

logger = logging.getLogger(__name__)

OFFSCREEN = -9999.0


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"


class DragPosition:
    """Live pointer position, mutated in place on every move."""

    __slots__ = ("x", "y")

    def __init__(self, x: float = OFFSCREEN, y: float = OFFSCREEN):
        self.x = x
        self.y = y

    def park(self) -> None:
        self.x = OFFSCREEN
        self.y = OFFSCREEN

    def __repr__(self) -> str:
        return f"DragPosition({self.x}, {self.y})"


class DragController:
    """Owns the dragged task and decides where it lands on release."""

    def __init__(self, registry: DropZoneRegistry,
                 task_lookup: Optional[Callable[[str], Optional[Task]]] = None):
        """
        Args:
            registry: Drop zones to resolve release points against
            task_lookup: Returns the current cached version of a task, so a
                remote status change during the drag is taken into account
        """
        self.registry = registry
        self.task_lookup = task_lookup
        self.state = DragState.IDLE
        self.active_task: Optional[Task] = None
        self.position = DragPosition()
        self._position_observers: List[Callable[[DragPosition], None]] = []

    @property
    def hidden_task_id(self) -> Optional[str]:
        """Task whose in-column rendering is hidden while it is dragged."""
        return self.active_task.id if self.active_task else None

    def observe_position(self, callback: Callable[[DragPosition], None]) -> None:
        """Attach a lightweight observer for the drag overlay (called on every move)."""
        self._position_observers.append(callback)

    def start_drag(self, task: Task, x: Optional[float] = None, y: Optional[float] = None) -> None:
        if self.state is DragState.DRAGGING:
            logger.debug(f"Replacing active drag {self.hidden_task_id} with {task.id}")
        self.state = DragState.DRAGGING
        self.active_task = task
        if x is not None and y is not None:
            self.move(x, y)

    def move(self, x: float, y: float) -> None:
        if self.state is not DragState.DRAGGING:
            return
        self.position.x = x
        self.position.y = y
        for callback in self._position_observers:
            callback(self.position)

    def end_drag(self, x: float, y: float) -> Optional[DropZone]:
        """
        Finish the drag at (x, y).

        The zone's ``on_accept`` runs only when the task's current status
        differs from the zone's status; dropping on the same column or
        outside every zone changes nothing.

        Returns:
            The zone that accepted the task, or None
        """
        if self.state is not DragState.DRAGGING or self.active_task is None:
            self._reset()
            return None
        task = self.active_task
        if self.task_lookup is not None:
            current = self.task_lookup(task.id)
            if current is None:
                # Deleted while being dragged
                self._reset()
                return None
            task = current

        zone = self.registry.resolve(x, y)
        self._reset()
        if zone is None:
            logger.debug(f"Drag of {task.id} cancelled: no zone at ({x}, {y})")
            return None
        if task.status == zone.status:
            return None
        zone.on_accept(task)
        return zone

    def cancel_drag(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.state = DragState.IDLE
        self.active_task = None
        self.position.park()
        for callback in self._position_observers:
            callback(self.position)
