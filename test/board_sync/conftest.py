"""
Shared fixtures for the board sync test suite.

Most tests run against the in-process SQLite store and change-feed hub, so
a full board session (subscriptions, broadcasts, presence) works without a
network. GatedPersistence holds writes until a test releases them, which is
how in-flight optimistic mutations are observed.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from board_sync.database import BoardDatabase, LocalChangeFeed
from board_sync.models import UserIdentity
from board_sync.persistence import Result

OWNER_ID = "u-owner"
PEER_ID = "u-peer"


async def flush(rounds: int = 10) -> None:
    """Let queued event-loop callbacks (broadcasts, handshakes) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class GatedPersistence:
    """
    Persistence wrapper whose writes wait for the test to release them.

    Reads always pass straight through. While ``gated`` is set, every
    insert/update/delete parks on a future; ``release`` lets the oldest one
    proceed against the wrapped store, or resolves it with a canned failure.
    """

    def __init__(self, delegate):
        self.delegate = delegate
        self.gated = False
        self.calls: List[Tuple[str, str, Any]] = []
        self._gates: List[asyncio.Future] = []

    @property
    def waiting(self) -> int:
        return len(self._gates)

    async def _pass(self, name: str, table: str, payload: Any, call):
        self.calls.append((name, table, payload))
        if self.gated:
            gate = asyncio.get_running_loop().create_future()
            self._gates.append(gate)
            override = await gate
            if override is not None:
                return override
        return await call()

    def release(self, failure: Optional[Result] = None) -> None:
        gate = self._gates.pop(0)
        gate.set_result(failure)

    def fail(self, message: str = "permission denied", code: str = "42501") -> None:
        self.release(Result.failure(message, code))

    async def select(self, table, **kwargs):
        return await self.delegate.select(table, **kwargs)

    async def insert(self, table, rows):
        return await self._pass("insert", table, rows, lambda: self.delegate.insert(table, rows))

    async def update(self, table, values, *, filters):
        return await self._pass("update", table, values,
                                lambda: self.delegate.update(table, values, filters=filters))

    async def delete(self, table, *, filters):
        return await self._pass("delete", table, filters,
                                lambda: self.delegate.delete(table, filters=filters))


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def db(feed):
    database = BoardDatabase(feed=feed)
    yield database
    database.close()


@pytest.fixture
def owner(db) -> UserIdentity:
    db.add_profile("olive@example.com", "Olive Owner", user_id=OWNER_ID)
    return UserIdentity(OWNER_ID, "olive@example.com", "Olive Owner")


@pytest.fixture
def peer(db) -> UserIdentity:
    db.add_profile("pat@example.com", "Pat Peer", user_id=PEER_ID)
    return UserIdentity(PEER_ID, "pat@example.com", "Pat Peer")


@pytest.fixture
def board_id(db, owner) -> str:
    return db.add_board("Launch plan", owner.user_id, board_id="b-1")


@pytest.fixture
def gated(db) -> GatedPersistence:
    return GatedPersistence(db)


def task_row(task_id: str, board_id: str = "b-1", **fields) -> Dict[str, Any]:
    row = {"id": task_id, "board_id": board_id, "title": f"Task {task_id}",
           "status": "TODO", "priority": "MEDIUM", "position": 1.0}
    row.update(fields)
    return row
