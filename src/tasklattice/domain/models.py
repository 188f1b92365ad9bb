"""Core domain models for tasklattice."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle states. Each status is also a storage grouping."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    ARCHIVE = "archive"


class TaskPriority(str, Enum):
    """Task priority levels."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank (lower sorts first)."""
        return {"high": 1, "medium": 2, "low": 3}[self.value]


class NodeKind(str, Enum):
    """Origin of a graph node."""

    TASK = "task"  # Top-level record
    SUBTASK = "subtask"  # Checklist item synthesized from a parent record
    DECOMPOSED_CHILD = "decomposed_child"  # Independent record with a parent_id


class RelationshipType(str, Enum):
    """Payload flavor carried by a PARENT_CHILD edge."""

    SUBTASK = "subtask"
    DECOMPOSITION = "decomposition"


def subtask_node_id(parent_id: str, position: int) -> str:
    """Graph id of the checklist item at zero-based ``position``."""
    return f"{parent_id}-{position + 1}"


class SubtaskItem(BaseModel):
    """Checklist entry stored inside a parent record."""

    title: str
    is_complete: bool = False


class TaskNote(BaseModel):
    """Timestamped free-text note."""

    timestamp: datetime = Field(default_factory=utc_now)
    content: str


class DependencyRef(BaseModel):
    """Reference to a prerequisite task.

    The target may not exist (yet); ``status`` is informational only and is
    ``unknown`` or ``not found`` when the target cannot be resolved.
    """

    id: str
    status: str = "unknown"


class TaskRecord(BaseModel):
    """Authoritative task record as held by the record store.

    Attributes:
        id: Opaque identifier, immutable once assigned
        semantic_id: Optional human-readable label (e.g. ``SYNC-2.01``)
        location: Storage location of the record, filled in by the store
    """

    id: str
    semantic_id: str | None = None
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: datetime = Field(default_factory=utc_now)
    parent_id: str | None = None
    subtasks: list[SubtaskItem] = Field(default_factory=list)
    notes: list[TaskNote] = Field(default_factory=list)
    dependencies: list[DependencyRef] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    location: str | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title cannot be empty")
        return v

    @property
    def dependency_ids(self) -> list[str]:
        """Declared dependency ids in declaration order, without duplicates."""
        seen: dict[str, None] = {}
        for dep in self.dependencies:
            seen.setdefault(dep.id, None)
        return list(seen)

    @property
    def node_kind(self) -> NodeKind:
        return NodeKind.DECOMPOSED_CHILD if self.parent_id else NodeKind.TASK


class GraphNode(BaseModel):
    """Node mirrored into the graph index.

    ``has_children``, ``complexity_score`` and ``is_atomic`` only exist in the
    graph and feed selection heuristics.
    """

    id: str
    semantic_id: str | None = None
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    location: str | None = None
    kind: NodeKind = NodeKind.TASK
    has_children: bool = False
    complexity_score: float | None = None
    is_atomic: bool | None = None

    @classmethod
    def from_record(cls, record: TaskRecord) -> "GraphNode":
        return cls(
            id=record.id,
            semantic_id=record.semantic_id,
            title=record.title,
            description=record.description,
            status=record.status,
            priority=record.priority,
            created_at=record.created_at,
            location=record.location,
            kind=record.node_kind,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "GraphNode":
        return cls.model_validate(row)


class DependencyEdge(BaseModel):
    """DEPENDS_ON edge: ``from_id`` requires ``to_id`` to be done first."""

    from_id: str
    to_id: str
    created_at: datetime = Field(default_factory=utc_now)


class ParentChildEdge(BaseModel):
    """PARENT_CHILD edge shared by checklist subtasks and decompositions.

    Readers must check ``relationship_type``: ``position``/``is_complete`` are
    only meaningful for subtasks, ``decomposed_at``/``decomposition_type``
    only for decompositions.
    """

    parent_id: str
    child_id: str
    relationship_type: RelationshipType
    position: int | None = None
    is_complete: bool | None = None
    created_at: datetime = Field(default_factory=utc_now)
    decomposed_at: datetime | None = None
    decomposition_type: str | None = None
