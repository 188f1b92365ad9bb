"""Graph index backend on SQLite adjacency tables."""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from aiosqlite import Connection

from tasklattice.domain.models import DependencyEdge, GraphNode, ParentChildEdge
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
)
from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)

NODE_COLUMNS = (
    "id",
    "semantic_id",
    "title",
    "description",
    "status",
    "priority",
    "created_at",
    "updated_at",
    "location",
    "kind",
    "has_children",
    "complexity_score",
    "is_atomic",
)
EDGE_COLUMNS = (
    "relationship_type",
    "position",
    "is_complete",
    "created_at",
    "decomposed_at",
    "decomposition_type",
)
EDGE_TABLES = {EdgeKind.DEPENDS_ON: "depends_on", EdgeKind.PARENT_CHILD: "parent_child"}

# Bound on parent/child chain length when computing hierarchy depth
MAX_LINEAGE_DEPTH = 64


def _rank(alias: str) -> str:
    return (
        f"CASE {alias}.priority WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END"
    )


def _ready(alias: str) -> str:
    """SQL predicate: every DEPENDS_ON target of ``alias`` is done."""
    return f"""NOT EXISTS (
        SELECT 1 FROM depends_on d JOIN nodes dep ON dep.id = d.to_id
        WHERE d.from_id = {alias}.id AND dep.status <> 'done'
    )"""


def _has_parent(alias: str) -> str:
    return f"EXISTS (SELECT 1 FROM parent_child up WHERE up.child_id = {alias}.id)"


def _has_child(alias: str) -> str:
    return f"EXISTS (SELECT 1 FROM parent_child down WHERE down.parent_id = {alias}.id)"


def _columns(alias: str, prefix: str = "") -> str:
    return ", ".join(f"{alias}.{col} AS {prefix}{col}" for col in NODE_COLUMNS)


def _to_sql(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _node_row(row: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    node = {col: row[f"{prefix}{col}"] for col in NODE_COLUMNS}
    node["has_children"] = bool(node["has_children"])
    if node["is_atomic"] is not None:
        node["is_atomic"] = bool(node["is_atomic"])
    return node


def _edge_row(row: dict[str, Any], prefix: str = "r_") -> dict[str, Any]:
    edge = {col: row[f"{prefix}{col}"] for col in EDGE_COLUMNS}
    if edge["is_complete"] is not None:
        edge["is_complete"] = bool(edge["is_complete"])
    return edge


class SQLiteGraphStore(GraphStore):
    """Graph index held in SQLite: one node table and two edge tables.

    Edges reference nodes with ``ON DELETE CASCADE`` so deleting a node removes
    every edge touching it. A single long-lived connection is used per store.
    """

    name = "sqlite"
    capabilities = frozenset({GraphCapability.TRAVERSAL, GraphCapability.SELECTION})

    def __init__(self, db_path: Path) -> None:
        """Initialize store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._conn: Connection | None = None
        self._traversals: dict[TraversalName, Callable[..., Awaitable[list[dict[str, Any]]]]] = {
            TraversalName.ALL_NODES: self._all_nodes,
            TraversalName.NODE: self._node,
            TraversalName.DEPENDENCIES: self._dependencies,
            TraversalName.DEPENDENTS: self._dependents,
            TraversalName.DEPENDENCY_EDGES: self._dependency_edges,
            TraversalName.DANGLING_DEPENDENCIES: self._dangling_dependencies,
            TraversalName.CHILDREN: self._children,
            TraversalName.PARENT: self._parent,
            TraversalName.NEXT_SUBTASK: self._next_subtask,
            TraversalName.NEXT_TOP_LEVEL: self._next_top_level,
            TraversalName.CONTEXT_SIBLINGS: self._context_siblings,
            TraversalName.HIGH_PRIORITY_SUBTASKS: self._high_priority_subtasks,
            TraversalName.DECOMPOSED_ENTRY: self._decomposed_entry,
            TraversalName.INDEPENDENT_TASKS: self._independent_tasks,
            TraversalName.ANY_PENDING: self._any_pending,
            TraversalName.DEEPEST_LEAF: self._deepest_leaf,
            TraversalName.SHALLOWEST_READY: self._shallowest_ready,
        }

    async def initialize(self) -> None:
        """Open the connection and create the schema.

        Raises:
            GraphStoreError: If the database cannot be opened or the schema
                cannot be created
        """
        if self._conn is not None:
            return
        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self.db_path))
            conn.row_factory = aiosqlite.Row
            # SQLite defaults to foreign_keys=OFF; cascades depend on it
            await conn.execute("PRAGMA foreign_keys=ON")
            if str(self.db_path) != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute("PRAGMA busy_timeout=5000")
            await self._create_tables(conn)
            await conn.commit()
        except (aiosqlite.Error, OSError) as e:
            raise GraphStoreError(f"Failed to initialize graph store at {self.db_path}: {e}") from e
        self._conn = conn
        logger.info("graph_store_initialized", backend=self.name, path=str(self.db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("graph_store_closed", backend=self.name)

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[Connection]:
        if self._conn is None:
            raise GraphStoreError("Graph store not initialized")
        yield self._conn

    async def _create_tables(self, conn: Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                semantic_id TEXT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                priority TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                location TEXT,
                kind TEXT NOT NULL DEFAULT 'task',
                has_children INTEGER NOT NULL DEFAULT 0,
                complexity_score REAL,
                is_atomic INTEGER,
                CHECK(status IN ('pending', 'in-progress', 'done', 'archive')),
                CHECK(priority IN ('high', 'medium', 'low')),
                CHECK(kind IN ('task', 'subtask', 'decomposed_child'))
            )
            """
        )
        # Self-loops are allowed; cycle detection reports them
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS depends_on (
                from_id TEXT NOT NULL,
                to_id TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                PRIMARY KEY (from_id, to_id),
                FOREIGN KEY (from_id) REFERENCES nodes(id) ON DELETE CASCADE,
                FOREIGN KEY (to_id) REFERENCES nodes(id) ON DELETE CASCADE
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS parent_child (
                parent_id TEXT NOT NULL,
                child_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                position INTEGER,
                is_complete INTEGER,
                created_at TIMESTAMP NOT NULL,
                decomposed_at TIMESTAMP,
                decomposition_type TEXT,
                PRIMARY KEY (parent_id, child_id),
                FOREIGN KEY (parent_id) REFERENCES nodes(id) ON DELETE CASCADE,
                FOREIGN KEY (child_id) REFERENCES nodes(id) ON DELETE CASCADE,
                CHECK(relationship_type IN ('subtask', 'decomposition'))
            )
            """
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_depends_on_to ON depends_on(to_id)")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_parent_child_child ON parent_child(child_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_nodes_status_created ON nodes(status, created_at)"
        )

    # Command dispatch
    async def execute(self, command: GraphCommand) -> list[dict[str, Any]]:
        try:
            if isinstance(command, Traverse):
                handler = self._traversals.get(command.name)
                if handler is None:
                    raise UnsupportedTraversalError(self.name, command.name.value)
                return await handler(**command.params)
            if isinstance(command, CreateNode):
                return await self._create_node(command.node)
            if isinstance(command, UpdateNodeFields):
                return await self._update_node(command)
            if isinstance(command, DeleteNode):
                return await self._mutate("DELETE FROM nodes WHERE id = ?", (command.node_id,))
            if isinstance(command, CreateEdge):
                return await self._create_edge(command.edge)
            if isinstance(command, UpdateEdgeFields):
                return await self._update_edge(command)
            if isinstance(command, DeleteEdge):
                return await self._delete_edge(command)
        except aiosqlite.Error as e:
            logger.error("graph_command_failed", command=type(command).__name__, error=str(e))
            raise GraphStoreError(f"{type(command).__name__} failed: {e}") from e
        raise GraphStoreError(f"Unknown graph command: {type(command).__name__}")

    async def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def _mutate(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return [{"affected": cursor.rowcount}]

    async def _nodes(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        return [_node_row(row) for row in await self._query(sql, params)]

    # Mutations
    async def _create_node(self, node: GraphNode) -> list[dict[str, Any]]:
        data = node.model_dump()
        placeholders = ", ".join("?" for _ in NODE_COLUMNS)
        try:
            return await self._mutate(
                f"INSERT INTO nodes ({', '.join(NODE_COLUMNS)}) VALUES ({placeholders})",
                tuple(_to_sql(data[col]) for col in NODE_COLUMNS),
            )
        except aiosqlite.IntegrityError as e:
            raise GraphStoreError(f"Node {node.id} already exists") from e

    async def _update_node(self, command: UpdateNodeFields) -> list[dict[str, Any]]:
        changes = command.fields.changes()
        changes.setdefault("updated_at", datetime.now(timezone.utc))
        # Column names come from the NodeFields model, never from callers
        set_clause = ", ".join(f"{col} = ?" for col in changes)
        return await self._mutate(
            f"UPDATE nodes SET {set_clause} WHERE id = ?",
            tuple(_to_sql(v) for v in changes.values()) + (command.node_id,),
        )

    async def _require_endpoints(self, kind: EdgeKind, from_id: str, to_id: str) -> None:
        rows = await self._query(
            "SELECT COUNT(DISTINCT id) AS n FROM nodes WHERE id IN (?, ?)", (from_id, to_id)
        )
        expected = 1 if from_id == to_id else 2
        if rows[0]["n"] != expected:
            raise EdgeEndpointMissingError(kind.value, from_id, to_id)

    async def _create_edge(self, edge: DependencyEdge | ParentChildEdge) -> list[dict[str, Any]]:
        if isinstance(edge, DependencyEdge):
            await self._require_endpoints(EdgeKind.DEPENDS_ON, edge.from_id, edge.to_id)
            return await self._mutate(
                "INSERT OR IGNORE INTO depends_on (from_id, to_id, created_at) VALUES (?, ?, ?)",
                (edge.from_id, edge.to_id, _to_sql(edge.created_at)),
            )
        await self._require_endpoints(EdgeKind.PARENT_CHILD, edge.parent_id, edge.child_id)
        return await self._mutate(
            """
            INSERT OR IGNORE INTO parent_child (
                parent_id, child_id, relationship_type, position, is_complete,
                created_at, decomposed_at, decomposition_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                edge.parent_id,
                edge.child_id,
                _to_sql(edge.relationship_type),
                edge.position,
                _to_sql(edge.is_complete),
                _to_sql(edge.created_at),
                _to_sql(edge.decomposed_at),
                edge.decomposition_type,
            ),
        )

    async def _update_edge(self, command: UpdateEdgeFields) -> list[dict[str, Any]]:
        if command.kind is not EdgeKind.PARENT_CHILD:
            raise GraphStoreError(f"{command.kind.value} edges carry no updatable fields")
        changes = command.fields.changes()
        if not changes:
            return [{"affected": 0}]
        set_clause = ", ".join(f"{col} = ?" for col in changes)
        return await self._mutate(
            f"UPDATE parent_child SET {set_clause} WHERE parent_id = ? AND child_id = ?",
            tuple(_to_sql(v) for v in changes.values()) + (command.from_id, command.to_id),
        )

    async def _delete_edge(self, command: DeleteEdge) -> list[dict[str, Any]]:
        table = EDGE_TABLES[command.kind]
        source, target = (
            ("from_id", "to_id") if command.kind is EdgeKind.DEPENDS_ON else ("parent_id", "child_id")
        )
        return await self._mutate(
            f"DELETE FROM {table} WHERE {source} = ? AND {target} = ?",
            (command.from_id, command.to_id),
        )

    # Core traversals
    async def _all_nodes(self) -> list[dict[str, Any]]:
        return await self._nodes(f"SELECT {_columns('n')} FROM nodes n ORDER BY n.id")

    async def _node(self, id: str) -> list[dict[str, Any]]:
        return await self._nodes(f"SELECT {_columns('n')} FROM nodes n WHERE n.id = ?", (id,))

    async def _dependencies(self, id: str) -> list[dict[str, Any]]:
        return await self._query(
            """
            SELECT dep.id AS id, dep.title AS title, dep.status AS status
            FROM depends_on d JOIN nodes dep ON dep.id = d.to_id
            WHERE d.from_id = ?
            ORDER BY dep.id
            """,
            (id,),
        )

    async def _dependents(self, id: str) -> list[dict[str, Any]]:
        return await self._query(
            """
            SELECT t.id AS id, t.title AS title, t.status AS status
            FROM depends_on d JOIN nodes t ON t.id = d.from_id
            WHERE d.to_id = ?
            ORDER BY t.id
            """,
            (id,),
        )

    async def _dependency_edges(self) -> list[dict[str, Any]]:
        return await self._query(
            "SELECT from_id, to_id FROM depends_on ORDER BY from_id, to_id"
        )

    async def _dangling_dependencies(self) -> list[dict[str, Any]]:
        return await self._query(
            """
            SELECT d.from_id AS from_id, d.to_id AS to_id
            FROM depends_on d LEFT JOIN nodes n ON n.id = d.to_id
            WHERE n.id IS NULL
            ORDER BY d.from_id, d.to_id
            """
        )

    async def _children(self, parent_id: str) -> list[dict[str, Any]]:
        edge_cols = ", ".join(f"r.{col} AS r_{col}" for col in EDGE_COLUMNS)
        rows = await self._query(
            f"""
            SELECT {edge_cols}, {_columns('c', 'n_')}
            FROM parent_child r JOIN nodes c ON c.id = r.child_id
            WHERE r.parent_id = ?
            ORDER BY COALESCE(r.position, 999), r.created_at, c.id
            """,
            (parent_id,),
        )
        return [{"child": _node_row(row, "n_"), **_edge_row(row)} for row in rows]

    async def _parent(self, child_id: str) -> list[dict[str, Any]]:
        edge_cols = ", ".join(f"r.{col} AS r_{col}" for col in EDGE_COLUMNS)
        rows = await self._query(
            f"""
            SELECT {edge_cols}, {_columns('p', 'n_')}
            FROM parent_child r JOIN nodes p ON p.id = r.parent_id
            WHERE r.child_id = ?
            ORDER BY r.created_at, p.id
            """,
            (child_id,),
        )
        return [{"parent": _node_row(row, "n_"), **_edge_row(row)} for row in rows]

    async def _next_subtask(self) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('st')}
            FROM parent_child r
            JOIN nodes parent ON parent.id = r.parent_id
            JOIN nodes st ON st.id = r.child_id
            WHERE parent.status = 'in-progress'
              AND st.status = 'pending'
              AND {_ready('st')}
            ORDER BY {_rank('parent')}, COALESCE(r.position, 999), st.created_at, st.id
            LIMIT 1
            """
        )

    async def _next_top_level(self) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('t')} FROM nodes t
            WHERE t.status = 'pending'
              AND {_ready('t')}
              AND NOT {_has_parent('t')}
            ORDER BY {_rank('t')}, t.created_at, t.id
            LIMIT 1
            """
        )

    # Selection traversals
    async def _context_siblings(self, task_ids: list[str]) -> list[dict[str, Any]]:
        if not task_ids:
            return []
        placeholders = ", ".join("?" for _ in task_ids)
        return await self._nodes(
            f"""
            SELECT DISTINCT {_columns('sib')}
            FROM parent_child recent
            JOIN parent_child rs ON rs.parent_id = recent.parent_id
            JOIN nodes sib ON sib.id = rs.child_id
            WHERE recent.child_id IN ({placeholders})
              AND sib.id NOT IN ({placeholders})
              AND sib.status = 'pending'
              AND {_ready('sib')}
            ORDER BY {_rank('sib')}, sib.created_at, sib.id
            LIMIT 1
            """,
            tuple(task_ids) * 2,
        )

    async def _high_priority_subtasks(self) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('child')}
            FROM parent_child r
            JOIN nodes parent ON parent.id = r.parent_id
            JOIN nodes child ON child.id = r.child_id
            WHERE child.status = 'pending'
              AND parent.priority = 'high'
              AND {_ready('child')}
            ORDER BY CASE WHEN parent.status = 'in-progress' THEN 0 ELSE 1 END,
                     COALESCE(r.position, 999), child.created_at, child.id
            LIMIT 1
            """
        )

    async def _decomposed_entry(self) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('child')}
            FROM parent_child r
            JOIN nodes parent ON parent.id = r.parent_id
            JOIN nodes child ON child.id = r.child_id
            WHERE parent.has_children = 1
              AND parent.status = 'pending'
              AND child.status = 'pending'
              AND {_ready('child')}
              AND NOT {_has_child('child')}
            ORDER BY {_rank('parent')}, COALESCE(r.position, 999), child.created_at, child.id
            LIMIT 1
            """
        )

    async def _independent_tasks(self, skip_decomposed: bool = True) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('t')} FROM nodes t
            WHERE t.status = 'pending'
              AND {_ready('t')}
              AND NOT {_has_parent('t')}
              AND (t.has_children = 0 OR ? = 0)
            ORDER BY {_rank('t')}, t.created_at, t.id
            LIMIT 1
            """,
            (int(skip_decomposed),),
        )

    async def _any_pending(self) -> list[dict[str, Any]]:
        return await self._nodes(
            f"""
            SELECT {_columns('t')} FROM nodes t
            WHERE t.status = 'pending'
            ORDER BY {_rank('t')}, t.created_at, t.id
            LIMIT 1
            """
        )

    async def _deepest_leaf(self, max_depth: int = 3) -> list[dict[str, Any]]:
        rows = await self._query(
            f"""
            WITH RECURSIVE chain(node_id, depth) AS (
                SELECT r.child_id, 1
                FROM parent_child r JOIN nodes root ON root.id = r.parent_id
                WHERE root.status IN ('pending', 'in-progress')
                  AND NOT {_has_parent('root')}
                UNION
                SELECT r.child_id, chain.depth + 1
                FROM chain JOIN parent_child r ON r.parent_id = chain.node_id
                WHERE chain.depth < ?
            )
            SELECT {_columns('leaf')}, MAX(chain.depth) AS depth
            FROM chain JOIN nodes leaf ON leaf.id = chain.node_id
            WHERE leaf.status = 'pending'
              AND NOT {_has_child('leaf')}
              AND {_ready('leaf')}
            GROUP BY leaf.id
            ORDER BY depth DESC, {_rank('leaf')}, leaf.created_at, leaf.id
            LIMIT 1
            """,
            (max_depth,),
        )
        return [{**_node_row(row), "depth": row["depth"]} for row in rows]

    async def _shallowest_ready(self) -> list[dict[str, Any]]:
        rows = await self._query(
            f"""
            WITH RECURSIVE lineage(node_id, depth) AS (
                SELECT n.id, 0 FROM nodes n WHERE NOT {_has_parent('n')}
                UNION
                SELECT r.child_id, lineage.depth + 1
                FROM lineage JOIN parent_child r ON r.parent_id = lineage.node_id
                WHERE lineage.depth < {MAX_LINEAGE_DEPTH}
            )
            SELECT {_columns('t')}, COALESCE(MIN(lineage.depth), 0) AS depth
            FROM nodes t LEFT JOIN lineage ON lineage.node_id = t.id
            WHERE t.status = 'pending'
              AND {_ready('t')}
            GROUP BY t.id
            ORDER BY depth, {_rank('t')}, t.created_at, t.id
            LIMIT 1
            """
        )
        return [{**_node_row(row), "depth": row["depth"]} for row in rows]
