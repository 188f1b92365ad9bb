"""Relationship and query layer over a graph store.

This is the only component that issues traversals. It turns raw store rows
into domain models and implements the graph algorithms that need more than
a single query (cycle detection, two-phase next-task search).
"""

from collections import defaultdict
from typing import Any

from pydantic import BaseModel, Field

from tasklattice.domain.models import (
    DependencyEdge,
    GraphNode,
    NodeKind,
    ParentChildEdge,
    RelationshipType,
    TaskStatus,
    utc_now,
)
from tasklattice.infrastructure.exceptions import UnsupportedTraversalError
from tasklattice.infrastructure.graph_store import (
    CreateEdge,
    CreateNode,
    DeleteEdge,
    DeleteNode,
    EdgeFields,
    EdgeKind,
    GraphCapability,
    GraphStore,
    NodeFields,
    SELECTION_TRAVERSALS,
    Traverse,
    TraversalName,
    UpdateEdgeFields,
    UpdateNodeFields,
)
from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)


class DependencyInfo(BaseModel):
    """One-hop neighbor across a DEPENDS_ON edge."""

    id: str
    title: str
    status: TaskStatus


class HierarchyLink(BaseModel):
    """A related node together with the PARENT_CHILD edge that links it."""

    node: GraphNode
    edge: ParentChildEdge


class CycleReport(BaseModel):
    """A node that can reach itself, with one cycle through it.

    ``cycle`` starts at ``task_id``; the closing edge runs from the last
    element back to the first.
    """

    task_id: str
    cycle: list[str] = Field(default_factory=list)


class GraphIndex:
    """Derived, rebuildable graph of tasks and their relationships."""

    def __init__(self, store: GraphStore):
        self.store = store

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    def supports(self, capability: GraphCapability) -> bool:
        return self.store.supports(capability)

    async def _traverse(self, name: TraversalName, **params: Any) -> list[dict[str, Any]]:
        return await self.store.execute(Traverse(name=name, params=params))

    @staticmethod
    def _affected(rows: list[dict[str, Any]]) -> int:
        return int(rows[0]["affected"]) if rows else 0

    # Nodes
    async def get_node(self, node_id: str) -> GraphNode | None:
        rows = await self._traverse(TraversalName.NODE, id=node_id)
        return GraphNode.from_row(rows[0]) if rows else None

    async def list_nodes(self) -> list[GraphNode]:
        return [GraphNode.from_row(row) for row in await self._traverse(TraversalName.ALL_NODES)]

    async def count_record_nodes(self) -> int:
        """Number of nodes that mirror a stored record (checklist nodes excluded)."""
        return sum(1 for node in await self.list_nodes() if node.kind is not NodeKind.SUBTASK)

    async def create_node(self, node: GraphNode) -> None:
        await self.store.execute(CreateNode(node=node))

    async def update_node(self, node_id: str, **fields: Any) -> bool:
        """Overwrite the given node fields.

        Returns:
            True if the node existed
        """
        rows = await self.store.execute(
            UpdateNodeFields(node_id=node_id, fields=NodeFields(**fields))
        )
        return self._affected(rows) > 0

    async def delete_node(self, node_id: str) -> bool:
        """Delete a node, its checklist subtask nodes and every edge touching them."""
        for link in await self.get_children(node_id):
            if link.node.kind is NodeKind.SUBTASK:
                await self.store.execute(DeleteNode(node_id=link.node.id))
        rows = await self.store.execute(DeleteNode(node_id=node_id))
        deleted = self._affected(rows) > 0
        if deleted:
            logger.debug("graph_node_deleted", node_id=node_id)
        return deleted

    async def set_complexity(
        self, node_id: str, complexity_score: float | None, is_atomic: bool | None
    ) -> bool:
        return await self.update_node(
            node_id, complexity_score=complexity_score, is_atomic=is_atomic
        )

    # Dependencies
    async def add_dependency(self, from_id: str, to_id: str) -> bool:
        """Create ``from_id`` DEPENDS_ON ``to_id``.

        Returns:
            True if a new edge was created, False if it already existed

        Raises:
            EdgeEndpointMissingError: If either node does not exist
        """
        rows = await self.store.execute(CreateEdge(edge=DependencyEdge(from_id=from_id, to_id=to_id)))
        return self._affected(rows) > 0

    async def remove_dependency(self, from_id: str, to_id: str) -> bool:
        rows = await self.store.execute(
            DeleteEdge(kind=EdgeKind.DEPENDS_ON, from_id=from_id, to_id=to_id)
        )
        return self._affected(rows) > 0

    async def remove_all_dependencies(self, task_id: str) -> int:
        removed = 0
        for dep in await self.get_dependencies(task_id):
            if await self.remove_dependency(task_id, dep.id):
                removed += 1
        return removed

    async def get_dependencies(self, task_id: str) -> list[DependencyInfo]:
        """Tasks ``task_id`` depends on, ordered by id."""
        rows = await self._traverse(TraversalName.DEPENDENCIES, id=task_id)
        return [DependencyInfo.model_validate(row) for row in rows]

    async def get_dependents(self, task_id: str) -> list[DependencyInfo]:
        """Tasks that depend on ``task_id``, ordered by id."""
        rows = await self._traverse(TraversalName.DEPENDENTS, id=task_id)
        return [DependencyInfo.model_validate(row) for row in rows]

    async def dependency_edges(self) -> list[tuple[str, str]]:
        rows = await self._traverse(TraversalName.DEPENDENCY_EDGES)
        return [(row["from_id"], row["to_id"]) for row in rows]

    async def dangling_dependencies(self) -> list[tuple[str, str]]:
        """DEPENDS_ON edges whose target node no longer exists."""
        rows = await self._traverse(TraversalName.DANGLING_DEPENDENCIES)
        return [(row["from_id"], row["to_id"]) for row in rows]

    async def detect_circular_dependencies(self) -> list[CycleReport]:
        """Find every node that can reach itself through DEPENDS_ON edges.

        Works for cycles of any length, including self-loops.

        Returns:
            One report per node on a cycle, ordered by node id
        """
        graph: dict[str, list[str]] = defaultdict(list)
        for from_id, to_id in await self.dependency_edges():
            graph[from_id].append(to_id)

        reports = []
        for node in sorted(graph):
            cycle = self._cycle_through(node, graph)
            if cycle:
                reports.append(CycleReport(task_id=node, cycle=cycle))

        if reports:
            logger.info("circular_dependencies_found", nodes=[r.task_id for r in reports])
        return reports

    @staticmethod
    def _cycle_through(start: str, graph: dict[str, list[str]]) -> list[str] | None:
        """DFS from ``start`` until it is reached again; returns the path or None."""
        path = [start]
        visited = {start}
        stack = [iter(graph.get(start, []))]

        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                stack.pop()
                path.pop()
                continue
            if neighbor == start:
                return list(path)
            if neighbor in visited:
                continue
            visited.add(neighbor)
            path.append(neighbor)
            stack.append(iter(graph.get(neighbor, [])))
        return None

    # Hierarchy
    async def create_unified_parent_child_relationship(
        self,
        parent_id: str,
        child_id: str,
        relationship_type: RelationshipType,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Link parent to child and flag the parent as having children.

        Args:
            parent_id: Parent node id
            child_id: Child node id
            relationship_type: ``subtask`` or ``decomposition``
            metadata: ``position``/``is_complete`` for subtasks,
                ``decomposition_type``/``decomposed_at`` for decompositions

        Returns:
            True if a new edge was created

        Raises:
            EdgeEndpointMissingError: If either node does not exist
        """
        metadata = metadata or {}
        if relationship_type is RelationshipType.SUBTASK:
            edge = ParentChildEdge(
                parent_id=parent_id,
                child_id=child_id,
                relationship_type=relationship_type,
                position=metadata.get("position", 0),
                is_complete=metadata.get("is_complete", False),
            )
        else:
            edge = ParentChildEdge(
                parent_id=parent_id,
                child_id=child_id,
                relationship_type=relationship_type,
                decomposed_at=metadata.get("decomposed_at") or utc_now(),
                decomposition_type=metadata.get("decomposition_type", "automatic"),
            )
        rows = await self.store.execute(CreateEdge(edge=edge))
        await self.update_node(parent_id, has_children=True)
        return self._affected(rows) > 0

    async def update_subtask_edge(
        self, parent_id: str, child_id: str, position: int, is_complete: bool
    ) -> bool:
        rows = await self.store.execute(
            UpdateEdgeFields(
                kind=EdgeKind.PARENT_CHILD,
                from_id=parent_id,
                to_id=child_id,
                fields=EdgeFields(position=position, is_complete=is_complete),
            )
        )
        return self._affected(rows) > 0

    async def set_decomposition_type(
        self, parent_id: str, child_id: str, decomposition_type: str
    ) -> bool:
        rows = await self.store.execute(
            UpdateEdgeFields(
                kind=EdgeKind.PARENT_CHILD,
                from_id=parent_id,
                to_id=child_id,
                fields=EdgeFields(decomposition_type=decomposition_type),
            )
        )
        return self._affected(rows) > 0

    async def remove_parent_link(self, parent_id: str, child_id: str) -> bool:
        rows = await self.store.execute(
            DeleteEdge(kind=EdgeKind.PARENT_CHILD, from_id=parent_id, to_id=child_id)
        )
        return self._affected(rows) > 0

    async def refresh_has_children(self, node_id: str) -> bool:
        """Recompute ``has_children`` from the actual edges."""
        has_children = await self.has_children(node_id)
        await self.update_node(node_id, has_children=has_children)
        return has_children

    async def has_children(self, node_id: str) -> bool:
        return bool(await self._traverse(TraversalName.CHILDREN, parent_id=node_id))

    async def get_children(self, parent_id: str) -> list[HierarchyLink]:
        """Children ordered by declared position, then creation order."""
        rows = await self._traverse(TraversalName.CHILDREN, parent_id=parent_id)
        return [self._link(row, "child", parent_id=parent_id) for row in rows]

    async def get_parent_links(self, child_id: str) -> list[HierarchyLink]:
        rows = await self._traverse(TraversalName.PARENT, child_id=child_id)
        return [self._link(row, "parent", child_id=child_id) for row in rows]

    async def get_parent(self, child_id: str) -> HierarchyLink | None:
        links = await self.get_parent_links(child_id)
        return links[0] if links else None

    @staticmethod
    def _link(row: dict[str, Any], role: str, **ids: str) -> HierarchyLink:
        payload = dict(row)
        node = GraphNode.from_row(payload.pop(role))
        if role == "child":
            ids["child_id"] = node.id
        else:
            ids["parent_id"] = node.id
        return HierarchyLink(node=node, edge=ParentChildEdge(**payload, **ids))

    # Selection
    async def find_next_task(self) -> GraphNode | None:
        """Two-phase default search.

        First a pending, ready subtask of an in-progress parent; otherwise a
        pending, ready top-level task by priority then creation time.
        """
        for name in (TraversalName.NEXT_SUBTASK, TraversalName.NEXT_TOP_LEVEL):
            rows = await self._traverse(name)
            if rows:
                return GraphNode.from_row(rows[0])
        return None

    async def selection_query(self, name: TraversalName, **params: Any) -> GraphNode | None:
        """Run one selection traversal and return its top candidate.

        Raises:
            UnsupportedTraversalError: If the store lacks the selection capability
        """
        if name in SELECTION_TRAVERSALS and not self.supports(GraphCapability.SELECTION):
            raise UnsupportedTraversalError(self.store.name, name.value)
        rows = await self._traverse(name, **params)
        return GraphNode.from_row(rows[0]) if rows else None
