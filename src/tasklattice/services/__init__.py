"""Service layer: graph queries, synchronization and task selection."""

from tasklattice.services.graph_index import CycleReport, DependencyInfo, GraphIndex, HierarchyLink
from tasklattice.services.sync_engine import (
    MirrorResult,
    RepairResult,
    SyncChanges,
    SyncEngine,
    SyncResult,
    SyncState,
    VerifyResult,
)
from tasklattice.services.task_selector import (
    SelectionContext,
    SelectionResult,
    SelectionStrategy,
    TaskSelector,
)

__all__ = [
    "CycleReport",
    "DependencyInfo",
    "GraphIndex",
    "HierarchyLink",
    "MirrorResult",
    "RepairResult",
    "SelectionContext",
    "SelectionResult",
    "SelectionStrategy",
    "SyncChanges",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "TaskSelector",
    "VerifyResult",
]
