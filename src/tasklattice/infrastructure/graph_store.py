"""Typed command set and backend interface for the graph index.

Callers never build query text. They send one of a small set of commands
(create/update/delete node, create/update/delete edge, or a named traversal)
and every backend interprets them against its own storage model.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tasklattice.domain.models import (
    DependencyEdge,
    GraphNode,
    NodeKind,
    ParentChildEdge,
    TaskPriority,
    TaskStatus,
)


class GraphCapability(str, Enum):
    """Query capabilities a backend can declare."""

    TRAVERSAL = "traversal"  # Core one-hop and readiness traversals
    SELECTION = "selection"  # Multi-hop selection traversals used by the task selector


class EdgeKind(str, Enum):
    """Relationship kinds held by the graph."""

    DEPENDS_ON = "DEPENDS_ON"
    PARENT_CHILD = "PARENT_CHILD"


class TraversalName(str, Enum):
    """Named traversals. Parameters are listed next to each name."""

    # Core traversals
    ALL_NODES = "all_nodes"
    NODE = "node"  # id
    DEPENDENCIES = "dependencies"  # id
    DEPENDENTS = "dependents"  # id
    DEPENDENCY_EDGES = "dependency_edges"
    DANGLING_DEPENDENCIES = "dangling_dependencies"
    CHILDREN = "children"  # parent_id
    PARENT = "parent"  # child_id
    NEXT_SUBTASK = "next_subtask"
    NEXT_TOP_LEVEL = "next_top_level"

    # Selection traversals
    CONTEXT_SIBLINGS = "context_siblings"  # task_ids
    HIGH_PRIORITY_SUBTASKS = "high_priority_subtasks"
    DECOMPOSED_ENTRY = "decomposed_entry"
    INDEPENDENT_TASKS = "independent_tasks"  # skip_decomposed
    ANY_PENDING = "any_pending"
    DEEPEST_LEAF = "deepest_leaf"  # max_depth
    SHALLOWEST_READY = "shallowest_ready"


SELECTION_TRAVERSALS = frozenset(
    {
        TraversalName.CONTEXT_SIBLINGS,
        TraversalName.HIGH_PRIORITY_SUBTASKS,
        TraversalName.DECOMPOSED_ENTRY,
        TraversalName.INDEPENDENT_TASKS,
        TraversalName.ANY_PENDING,
        TraversalName.DEEPEST_LEAF,
        TraversalName.SHALLOWEST_READY,
    }
)


class NodeFields(BaseModel):
    """Patch of node fields. Only explicitly set fields are written."""

    semantic_id: str | None = None
    title: str | None = None
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    location: str | None = None
    kind: NodeKind | None = None
    has_children: bool | None = None
    complexity_score: float | None = None
    is_atomic: bool | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(extra="forbid")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class EdgeFields(BaseModel):
    """Patch of PARENT_CHILD payload fields."""

    position: int | None = None
    is_complete: bool | None = None
    decomposition_type: str | None = None

    model_config = ConfigDict(extra="forbid")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreateNode(BaseModel):
    node: GraphNode


class UpdateNodeFields(BaseModel):
    node_id: str
    fields: NodeFields


class DeleteNode(BaseModel):
    """Delete a node together with every edge touching it."""

    node_id: str


class CreateEdge(BaseModel):
    edge: DependencyEdge | ParentChildEdge


class UpdateEdgeFields(BaseModel):
    kind: EdgeKind
    from_id: str
    to_id: str
    fields: EdgeFields


class DeleteEdge(BaseModel):
    kind: EdgeKind
    from_id: str
    to_id: str


class Traverse(BaseModel):
    name: TraversalName
    params: dict[str, Any] = Field(default_factory=dict)


GraphCommand = (
    CreateNode | UpdateNodeFields | DeleteNode | CreateEdge | UpdateEdgeFields | DeleteEdge | Traverse
)


class GraphStore(ABC):
    """Storage backend for the graph index.

    Result rows are plain dicts. Node rows carry every ``GraphNode`` field;
    ``CHILDREN``/``PARENT`` rows nest the related node under ``child`` or
    ``parent`` next to the edge payload; mutation commands return a single
    ``{"affected": n}`` row.
    """

    name: str = "graph-store"
    capabilities: frozenset[GraphCapability] = frozenset()

    @abstractmethod
    async def initialize(self) -> None:
        """Create the schema. Must be idempotent and must raise on failure."""

    @abstractmethod
    async def execute(self, command: GraphCommand) -> list[dict[str, Any]]:
        """Run one command and return its result rows in order."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

    def supports(self, capability: GraphCapability) -> bool:
        return capability in self.capabilities


def priority_rank(priority: TaskPriority | str | None) -> int:
    """Rank used by every priority ordering (high < medium < low)."""
    if priority is None:
        return 3
    return TaskPriority(priority).rank
