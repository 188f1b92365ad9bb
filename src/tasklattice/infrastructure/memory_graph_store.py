"""Dict-backed graph store for tests and throwaway indexes."""

from datetime import datetime, timezone
from typing import Any

from tasklattice.domain.models import DependencyEdge, GraphNode, ParentChildEdge, TaskStatus
from tasklattice.infrastructure.exceptions import (
    EdgeEndpointMissingError,
    GraphStoreError,
    UnsupportedTraversalError,
)
from tasklattice.infrastructure.graph_store import (
    CreateEdge,
    CreateNode,
    DeleteEdge,
    DeleteNode,
    EdgeKind,
    GraphCapability,
    GraphCommand,
    GraphStore,
    Traverse,
    TraversalName,
    UpdateEdgeFields,
    UpdateNodeFields,
    priority_rank,
)
from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)


class InMemoryGraphStore(GraphStore):
    """Graph index kept in plain dicts.

    Only the core traversals are implemented; selection traversals raise
    :class:`UnsupportedTraversalError` so callers exercise their fallback path.
    """

    name = "memory"
    capabilities = frozenset({GraphCapability.TRAVERSAL})

    def __init__(self) -> None:
        self.nodes: dict[str, GraphNode] = {}
        self.depends_on: dict[tuple[str, str], DependencyEdge] = {}
        self.parent_child: dict[tuple[str, str], ParentChildEdge] = {}
        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True

    async def close(self) -> None:
        self._initialized = False

    async def execute(self, command: GraphCommand) -> list[dict[str, Any]]:
        if not self._initialized:
            raise GraphStoreError("Graph store not initialized")

        if isinstance(command, Traverse):
            return self._traverse(command)
        if isinstance(command, CreateNode):
            if command.node.id in self.nodes:
                raise GraphStoreError(f"Node {command.node.id} already exists")
            self.nodes[command.node.id] = command.node.model_copy()
            return [{"affected": 1}]
        if isinstance(command, UpdateNodeFields):
            node = self.nodes.get(command.node_id)
            if node is None:
                return [{"affected": 0}]
            changes = command.fields.changes()
            changes.setdefault("updated_at", datetime.now(timezone.utc))
            self.nodes[command.node_id] = node.model_copy(update=changes)
            return [{"affected": 1}]
        if isinstance(command, DeleteNode):
            return [{"affected": self._delete_node(command.node_id)}]
        if isinstance(command, CreateEdge):
            return [{"affected": self._create_edge(command.edge)}]
        if isinstance(command, UpdateEdgeFields):
            if command.kind is not EdgeKind.PARENT_CHILD:
                raise GraphStoreError(f"{command.kind.value} edges carry no updatable fields")
            key = (command.from_id, command.to_id)
            edge = self.parent_child.get(key)
            changes = command.fields.changes()
            if edge is None or not changes:
                return [{"affected": 0}]
            self.parent_child[key] = edge.model_copy(update=changes)
            return [{"affected": 1}]
        if isinstance(command, DeleteEdge):
            table = self.depends_on if command.kind is EdgeKind.DEPENDS_ON else self.parent_child
            removed = table.pop((command.from_id, command.to_id), None)
            return [{"affected": 0 if removed is None else 1}]
        raise GraphStoreError(f"Unknown graph command: {type(command).__name__}")

    def _delete_node(self, node_id: str) -> int:
        if self.nodes.pop(node_id, None) is None:
            return 0
        # Mirror ON DELETE CASCADE
        for table in (self.depends_on, self.parent_child):
            for key in [k for k in table if node_id in k]:
                del table[key]
        return 1

    def _create_edge(self, edge: DependencyEdge | ParentChildEdge) -> int:
        if isinstance(edge, DependencyEdge):
            kind, key, table = EdgeKind.DEPENDS_ON, (edge.from_id, edge.to_id), self.depends_on
        else:
            kind, key, table = EdgeKind.PARENT_CHILD, (edge.parent_id, edge.child_id), self.parent_child
        if key[0] not in self.nodes or key[1] not in self.nodes:
            raise EdgeEndpointMissingError(kind.value, *key)
        if key in table:
            return 0
        table[key] = edge.model_copy()
        return 1

    # Traversals
    def _traverse(self, command: Traverse) -> list[dict[str, Any]]:
        params = command.params
        name = command.name
        if name is TraversalName.ALL_NODES:
            return [self._dump(self.nodes[k]) for k in sorted(self.nodes)]
        if name is TraversalName.NODE:
            node = self.nodes.get(params["id"])
            return [] if node is None else [self._dump(node)]
        if name is TraversalName.DEPENDENCIES:
            return self._neighbors(
                [to_id for (from_id, to_id) in self.depends_on if from_id == params["id"]]
            )
        if name is TraversalName.DEPENDENTS:
            return self._neighbors(
                [from_id for (from_id, to_id) in self.depends_on if to_id == params["id"]]
            )
        if name is TraversalName.DEPENDENCY_EDGES:
            return [{"from_id": f, "to_id": t} for (f, t) in sorted(self.depends_on)]
        if name is TraversalName.DANGLING_DEPENDENCIES:
            return [
                {"from_id": f, "to_id": t}
                for (f, t) in sorted(self.depends_on)
                if t not in self.nodes
            ]
        if name is TraversalName.CHILDREN:
            edges = [e for e in self.parent_child.values() if e.parent_id == params["parent_id"]]
            edges.sort(key=lambda e: (999 if e.position is None else e.position, e.created_at, e.child_id))
            return [self._edge_row(e, "child", e.child_id) for e in edges]
        if name is TraversalName.PARENT:
            edges = [e for e in self.parent_child.values() if e.child_id == params["child_id"]]
            edges.sort(key=lambda e: (e.created_at, e.parent_id))
            return [self._edge_row(e, "parent", e.parent_id) for e in edges]
        if name is TraversalName.NEXT_SUBTASK:
            return self._next_subtask()
        if name is TraversalName.NEXT_TOP_LEVEL:
            child_ids = {child for (_parent, child) in self.parent_child}
            candidates = [
                n
                for n in self.nodes.values()
                if n.status is TaskStatus.PENDING and n.id not in child_ids and self._ready(n.id)
            ]
            candidates.sort(key=lambda n: (priority_rank(n.priority), n.created_at, n.id))
            return [self._dump(n) for n in candidates[:1]]
        raise UnsupportedTraversalError(self.name, name.value)

    def _next_subtask(self) -> list[dict[str, Any]]:
        candidates = []
        for edge in self.parent_child.values():
            parent = self.nodes[edge.parent_id]
            child = self.nodes[edge.child_id]
            if (
                parent.status is TaskStatus.IN_PROGRESS
                and child.status is TaskStatus.PENDING
                and self._ready(child.id)
            ):
                position = 999 if edge.position is None else edge.position
                candidates.append(
                    ((priority_rank(parent.priority), position, child.created_at, child.id), child)
                )
        candidates.sort(key=lambda item: item[0])
        return [self._dump(child) for _key, child in candidates[:1]]

    def _ready(self, node_id: str) -> bool:
        for from_id, to_id in self.depends_on:
            if from_id != node_id:
                continue
            target = self.nodes.get(to_id)
            if target is None or target.status is not TaskStatus.DONE:
                return False
        return True

    def _neighbors(self, ids: list[str]) -> list[dict[str, Any]]:
        return [
            {"id": i, "title": self.nodes[i].title, "status": self.nodes[i].status.value}
            for i in sorted(ids)
            if i in self.nodes
        ]

    def _edge_row(self, edge: ParentChildEdge, role: str, node_id: str) -> dict[str, Any]:
        row = edge.model_dump(exclude={"parent_id", "child_id"})
        row[role] = self._dump(self.nodes[node_id])
        return row

    @staticmethod
    def _dump(node: GraphNode) -> dict[str, Any]:
        return node.model_dump()
