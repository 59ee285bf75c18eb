"""
Drop-zone registry for drag-and-drop between board columns.

Zones are transient: each column re-registers its rectangle whenever its
layout is measured again, replacing the previous registration.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .models import Rect, Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DropZone:
    """Hit region of one status column."""

    id: str
    rect: Rect
    on_accept: Callable[[Task], None]

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.id)


class DropZoneRegistry:
    """Ordered registry of drop zones; first match wins on resolve."""

    def __init__(self):
        self._zones: List[DropZone] = []

    @property
    def zones(self) -> List[DropZone]:
        return list(self._zones)

    def register(self, zone_id: str, rect: Rect, on_accept: Callable[[Task], None]) -> DropZone:
        """
        Register or replace the zone for ``zone_id``.

        Args:
            zone_id: Status value of the column
            rect: Column rectangle in page coordinates
            on_accept: Called with the dropped task

        Raises:
            ValueError: ``zone_id`` is not a task status
        """
        zone_id = TaskStatus(zone_id).value
        if not isinstance(rect, Rect):
            rect = Rect.from_layout(rect)
        zone = DropZone(zone_id, rect, on_accept)
        self._zones = [z for z in self._zones if z.id != zone_id]
        self._zones.append(zone)
        logger.debug(f"Registered drop zone {zone_id} at {rect}")
        return zone

    def unregister(self, zone_id: str) -> bool:
        before = len(self._zones)
        self._zones = [z for z in self._zones if z.id != zone_id]
        return len(self._zones) != before

    def clear(self) -> None:
        self._zones = []

    def resolve(self, x: float, y: float) -> Optional[DropZone]:
        """First registered zone containing (x, y), edges inclusive."""
        for zone in self._zones:
            if zone.rect.contains(x, y):
                return zone
        return None

    def __len__(self) -> int:
        return len(self._zones)
