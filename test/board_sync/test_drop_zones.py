"""
Tests for drop-zone registration and hit resolution.
"""

import pytest

from conftest import task_row

from board_sync.drop_zones import DropZoneRegistry
from board_sync.models import Rect, Task, TaskStatus


def noop(task):
    pass


class TestDropZoneRegistry:
    """Register, replace and resolve."""

    def test_resolve_outside_all_zones_returns_none(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 100, 100), noop)
        registry.register("DONE", Rect(200, 0, 100, 100), noop)

        assert registry.resolve(150, 50) is None
        assert registry.resolve(-1, 0) is None
        assert registry.resolve(50, 101) is None

    def test_edges_are_inclusive(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 100, 100), noop)

        for x, y in [(0, 0), (100, 0), (0, 100), (100, 100), (50, 0)]:
            assert registry.resolve(x, y).id == "TODO"

    def test_resolve_is_idempotent(self):
        registry = DropZoneRegistry()
        registry.register("IN_PROGRESS", Rect(0, 0, 10, 10), noop)
        assert registry.resolve(5, 5) is registry.resolve(5, 5)

    def test_reregistration_replaces(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 100, 100), noop)
        registry.register("TODO", Rect(0, 0, 50, 50), noop)

        assert len(registry) == 1
        assert registry.resolve(75, 75) is None
        assert registry.resolve(25, 25).rect == Rect(0, 0, 50, 50)

    def test_first_registered_match_wins(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 100, 100), noop)
        registry.register("DONE", Rect(50, 50, 100, 100), noop)
        assert registry.resolve(75, 75).id == "TODO"

    def test_replacement_moves_to_end_of_order(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 100, 100), noop)
        registry.register("DONE", Rect(50, 50, 100, 100), noop)
        registry.register("TODO", Rect(0, 0, 100, 100), noop)
        assert [z.id for z in registry.zones] == ["DONE", "TODO"]
        assert registry.resolve(75, 75).id == "DONE"

    def test_layout_dict_accepted(self):
        registry = DropZoneRegistry()
        zone = registry.register(TaskStatus.DONE, {"x": 10, "y": 20, "width": 30, "height": 40}, noop)
        assert zone.rect == Rect(10, 20, 30, 40)
        assert zone.status is TaskStatus.DONE

    def test_unknown_zone_id_rejected(self):
        registry = DropZoneRegistry()
        with pytest.raises(ValueError):
            registry.register("ARCHIVED", Rect(0, 0, 1, 1), noop)

    def test_unregister_and_clear(self):
        registry = DropZoneRegistry()
        registry.register("TODO", Rect(0, 0, 10, 10), noop)
        registry.register("DONE", Rect(20, 0, 10, 10), noop)

        assert registry.unregister("TODO") is True
        assert registry.unregister("TODO") is False
        assert registry.resolve(5, 5) is None

        registry.clear()
        assert len(registry) == 0

    def test_on_accept_receives_task(self):
        received = []
        registry = DropZoneRegistry()
        zone = registry.register("DONE", Rect(0, 0, 10, 10), received.append)
        task = Task.model_validate(task_row("t-1"))
        zone.on_accept(task)
        assert received == [task]
