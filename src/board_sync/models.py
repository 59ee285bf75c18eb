"""
Pydantic models and shared value types for the board sync client.

Rows coming from the backing store are validated into immutable records
(Board, Task, Member, Comment, Notification); presence entries keep the
camelCase wire keys used by other clients on the channel. Change-feed
events, drop-zone rectangles and failure notices are plain dataclasses.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import BoardSyncError


class TaskStatus(str, Enum):
    """Status buckets; each one is rendered as a board column."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class TaskPriority(str, Enum):
    """Task priority levels."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class MemberStatus(str, Enum):
    """Board membership state; pending members are invited but not yet visible."""

    PENDING = "pending"
    ACCEPTED = "accepted"


class ChangeOperation(str, Enum):
    """Row operations reported by the change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Columns a patch may never rewrite
IMMUTABLE_TASK_FIELDS = frozenset({"id", "board_id"})


class Board(BaseModel):
    """A board owned by its creator and shared with accepted members."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str = Field(min_length=1, max_length=200, description="Board title")
    owner_id: str = Field(description="User id of the creator")
    created_at: Optional[str] = Field(default=None, description="ISO creation timestamp")


class Task(BaseModel):
    """A card on a board. Replaced wholesale on every change, never merged."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    board_id: str
    title: str = Field(min_length=1, description="Card title")
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    position: float = Field(default=0.0, description="Ordering key within a status bucket")
    due_date: Optional[str] = Field(default=None, description="ISO due date")
    assignee_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        """Reject whitespace-only titles."""
        if not v.strip():
            raise ValueError("Title is required")
        return v

    def apply(self, patch: Dict[str, Any]) -> "Task":
        """
        Return a copy of this task with ``patch`` applied and re-validated.

        Args:
            patch: Column name to new value mapping

        Returns:
            New Task instance; this instance is left untouched

        Raises:
            ValueError: unknown columns, identity columns or invalid values
        """
        unknown = set(patch) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        for name in IMMUTABLE_TASK_FIELDS & set(patch):
            if patch[name] != getattr(self, name):
                raise ValueError(f"Task field '{name}' cannot be changed")
        return Task.model_validate({**self.model_dump(), **patch})

    def to_record(self, fields: Optional[set] = None) -> Dict[str, Any]:
        """Serialize to a JSON-ready row, optionally limited to ``fields``."""
        return self.model_dump(mode="json", include=fields)


class Member(BaseModel):
    """A board collaborator joined with its profile."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    status: MemberStatus = MemberStatus.PENDING

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@")[0]
        return self.user_id


class Assignee(BaseModel):
    """Someone a task can be assigned to: the owner or an accepted member."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    name: str
    initials: str


class PresenceEntry(BaseModel):
    """
    Ephemeral per-session presence record published on a board channel.

    Attribute names are snake_case; the wire form (``to_wire``) keeps the
    camelCase keys every client on the channel reads.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: Optional[str] = None
    online_at: str = Field(alias="onlineAt", description="ISO timestamp of last publish")
    editing_task_id: Optional[str] = Field(default=None, alias="editingTaskId")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Comment(BaseModel):
    """A comment in a task's discussion thread."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    task_id: str
    user_id: str
    content: str = Field(min_length=1)
    created_at: Optional[str] = None
    author_name: Optional[str] = None


class Notification(BaseModel):
    """In-app notification row; INVITE notifications drive the invite inbox."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    user_id: str
    type: str
    content: Optional[str] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False

    @field_validator("meta_data", mode="before")
    @classmethod
    def parse_meta_data(cls, v):
        """Accept JSON text as stored by SQLite backends."""
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v


@dataclass(frozen=True)
class UserIdentity:
    """The signed-in user this client acts as."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@")[0]
        return "Me"


@dataclass(frozen=True)
class ChangeEvent:
    """A typed row change delivered by the change feed."""

    operation: ChangeOperation
    schema: str
    table: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @property
    def row_id(self) -> Optional[str]:
        """Primary key of the affected row (deletes only carry ``old_record``)."""
        row_id = self.record.get("id") or self.old_record.get("id")
        return str(row_id) if row_id is not None else None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """
        Build an event from a transport payload.

        Args:
            payload: ``{eventType, schema, table, new, old}`` as delivered by
                the change-feed transport

        Raises:
            ValueError: unknown event type
        """
        event_type = str(payload.get("eventType") or payload.get("type") or "").upper()
        return cls(
            operation=ChangeOperation(event_type),
            schema=payload.get("schema") or "public",
            table=payload.get("table") or "",
            record=dict(payload.get("new") or {}),
            old_record=dict(payload.get("old") or {}),
        )


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle in the shared page coordinate space."""

    x: float
    y: float
    width: float
    height: float

    def contains(self, px: float, py: float) -> bool:
        """Point containment, inclusive on all four edges."""
        return (self.x <= px <= self.x + self.width
                and self.y <= py <= self.y + self.height)

    @classmethod
    def from_layout(cls, layout: Dict[str, float]) -> "Rect":
        return cls(layout["x"], layout["y"], layout["width"], layout["height"])


@dataclass
class FailureNotice:
    """User-visible message emitted after a failed mutation was rolled back."""

    title: str
    message: str
    task_id: Optional[str] = None
    error: Optional[BoardSyncError] = None


def initials_for(name: str) -> str:
    """Two-letter avatar initials for a display name."""
    return name[:2].upper() if name else "??"
