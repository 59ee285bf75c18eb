"""
Persistence contract shared by every backing-store adapter.

Each CRUD call resolves to a Result carrying either ``data`` (list of rows)
or an ``error`` with a provider-specific code. Adapters report failures in
the Result instead of raising, so mutation code can roll back locally.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

# Postgres SQLSTATE codes surfaced by the backing stores
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"
INSUFFICIENT_PRIVILEGE = "42501"
NO_ROWS = "PGRST116"

# Client-side codes
NETWORK_ERROR = "network"
TIMEOUT_ERROR = "timeout"

Filters = Dict[str, Any]


@dataclass
class ResultError:
    """Error half of a persistence Result."""

    message: str
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Result:
    """``{data, error}`` pair returned by every persistence call."""

    data: Optional[List[Dict[str, Any]]] = None
    error: Optional[ResultError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def first(self) -> Optional[Dict[str, Any]]:
        """First returned row, if any."""
        if self.data:
            return self.data[0]
        return None

    @classmethod
    def success(cls, data: Optional[List[Dict[str, Any]]] = None) -> "Result":
        return cls(data=list(data or []), error=None)

    @classmethod
    def failure(cls, message: str, code: Optional[str] = None,
                details: Optional[Dict[str, Any]] = None) -> "Result":
        return cls(data=None, error=ResultError(message, code, details or {}))


class Persistence(Protocol):
    """
    Request/response CRUD over the board, task, member and comment tables.

    Filters are column equality tests; a list or tuple value means the column
    must be one of the given values.
    """

    async def select(self, table: str, *, filters: Optional[Filters] = None,
                     order: Optional[str] = None, descending: bool = False,
                     columns: str = "*") -> Result: ...

    async def insert(self, table: str, rows: Sequence[Dict[str, Any]]) -> Result: ...

    async def update(self, table: str, values: Dict[str, Any], *,
                     filters: Filters) -> Result: ...

    async def delete(self, table: str, *, filters: Filters) -> Result: ...


async def settle(call: Awaitable[Result], timeout: Optional[float] = None) -> Result:
    """
    Await a persistence call and fold every failure mode into a Result.

    Args:
        call: Pending persistence coroutine
        timeout: Seconds before the call is abandoned and reported as failed;
            ``None`` waits indefinitely

    Returns:
        The adapter's Result, or a failure Result for timeouts and adapter
        exceptions
    """
    try:
        if timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Persistence call timed out after {timeout}s")
        return Result.failure(f"No response after {timeout} seconds", TIMEOUT_ERROR)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Persistence call raised: {e}")
        return Result.failure(str(e) or type(e).__name__, NETWORK_ERROR)
