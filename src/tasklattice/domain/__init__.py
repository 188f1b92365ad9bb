"""Domain models for tasklattice."""

from tasklattice.domain.models import (
    DependencyEdge,
    DependencyRef,
    GraphNode,
    NodeKind,
    ParentChildEdge,
    RelationshipType,
    SubtaskItem,
    TaskNote,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    subtask_node_id,
)

__all__ = [
    "DependencyEdge",
    "DependencyRef",
    "GraphNode",
    "NodeKind",
    "ParentChildEdge",
    "RelationshipType",
    "SubtaskItem",
    "TaskNote",
    "TaskPriority",
    "TaskRecord",
    "TaskStatus",
    "subtask_node_id",
]
