"""Reconciliation of the record store into the graph index.

The record store is authoritative. The engine keeps the graph a faithful
projection of it with as little re-scanning as possible:

- full reconciliation (create/update/delete diffing plus edge convergence)
- immediate single-record mirrors after in-process writes
- tiered smart sync driven by an external-change detector
- an outbox of mirrors that failed, replayed by the next full pass
"""

import time
from collections.abc import Callable, Collection
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from tasklattice.domain.models import (
    GraphNode,
    NodeKind,
    RelationshipType,
    TaskRecord,
    TaskStatus,
    subtask_node_id,
)
from tasklattice.infrastructure.config import SyncConfig
from tasklattice.infrastructure.exceptions import EdgeEndpointMissingError, TaskLatticeError
from tasklattice.infrastructure.logger import get_logger
from tasklattice.infrastructure.outbox import Outbox, OutboxEntry, OutboxOperation
from tasklattice.infrastructure.record_store import MarkdownRecordStore, task_id_from_filename
from tasklattice.services.graph_index import GraphIndex

logger = get_logger(__name__)

SyncPriority = Literal["high", "medium", "low"]

# Node fields owned by the record; any difference triggers an overwrite
MIRRORED_FIELDS = ("title", "status", "priority", "description", "location", "semantic_id", "kind")


class ChangeMarker(BaseModel):
    """Marks a record as just written by this process."""

    operation: str
    marked_at: float


class SyncState(BaseModel):
    """Mutable bookkeeping of one sync engine.

    Times are epoch seconds so they compare directly with file mtimes.
    """

    last_sync_time: float | None = None
    last_external_check: float | None = None
    known_mtimes: dict[str, float] = Field(default_factory=dict)
    recent_changes: dict[str, ChangeMarker] = Field(default_factory=dict)


class SyncChanges(BaseModel):
    """Per-kind counts of graph changes applied by a pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    dependencies: int = 0
    subtasks: int = 0
    hierarchy: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return (
            self.created
            + self.updated
            + self.deleted
            + self.dependencies
            + self.subtasks
            + self.hierarchy
        )


class SyncResult(BaseModel):
    status: Literal["already_synced", "synced", "failed"]
    changes: SyncChanges = Field(default_factory=SyncChanges)
    error: str | None = None
    details: list[str] = Field(default_factory=list)


class MirrorResult(BaseModel):
    """Outcome of an immediate single-record mirror.

    ``queued`` means the graph write failed and an outbox entry was recorded;
    the next full reconciliation repairs it.
    """

    task_id: str
    operation: OutboxOperation
    status: Literal["mirrored", "queued"]
    changes: SyncChanges = Field(default_factory=SyncChanges)
    error: str | None = None


class RepairIssue(BaseModel):
    kind: Literal["missing_dependency", "circular_dependency"]
    task_id: str
    target_id: str | None = None
    cycle: list[str] = Field(default_factory=list)
    action: str


class RepairResult(BaseModel):
    issues: list[RepairIssue] = Field(default_factory=list)

    @property
    def issues_fixed(self) -> int:
        return len(self.issues)

    def missing_for(self, task_id: str) -> list[RepairIssue]:
        return [
            issue
            for issue in self.issues
            if issue.kind == "missing_dependency" and issue.task_id == task_id
        ]


class VerifyResult(BaseModel):
    """Comparison of the record store against the graph index."""

    in_sync: bool
    record_count: int
    node_count: int
    missing_in_graph: list[str] = Field(default_factory=list)
    extra_in_graph: list[str] = Field(default_factory=list)
    stale_nodes: list[str] = Field(default_factory=list)
    dependency_mismatches: list[str] = Field(default_factory=list)

    @property
    def difference(self) -> int:
        return self.record_count - self.node_count


class SyncEngine:
    """Keeps a graph index consistent with a record store."""

    def __init__(
        self,
        records: MarkdownRecordStore,
        graph: GraphIndex,
        config: SyncConfig | None = None,
        outbox: Outbox | None = None,
        state: SyncState | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize sync engine.

        Args:
            records: Authoritative record store
            graph: Graph index to keep in sync
            config: Sync tuning (interval and marker TTL)
            outbox: Durable log of failed immediate mirrors (optional)
            state: Pre-existing sync state, e.g. shared with a test
            clock: Time source returning epoch seconds
        """
        self.records = records
        self.graph = graph
        self.config = config or SyncConfig()
        self.outbox = outbox
        self.state = state or SyncState()
        self.clock = clock

    # Staleness
    async def latest_file_mod_time(self) -> float:
        return await self.records.latest_modification_time()

    async def needs_sync(self) -> bool:
        """True if any record changed since the last full reconciliation.

        Fails open: any error while checking reports the graph as stale.
        """
        if self.state.last_sync_time is None:
            return True
        try:
            if await self._outbox_pending():
                return True
            return await self.latest_file_mod_time() > self.state.last_sync_time
        except OSError as e:
            logger.warning("sync_check_failed", error=str(e))
            return True

    async def _outbox_pending(self) -> bool:
        return self.outbox is not None and await self.outbox.pending()

    async def ensure_synced(self) -> SyncResult:
        """Reconcile if stale. Never raises; failures come back as a result."""
        if not await self.needs_sync():
            logger.debug("sync_cache_hit")
            return SyncResult(status="already_synced")
        return await self._full_sync(reason="stale")

    async def _full_sync(self, reason: str) -> SyncResult:
        logger.info("sync_started", reason=reason)
        try:
            started_at = self.clock()
            changes, details, failed = await self._reconcile()
            self.state.last_sync_time = started_at
            if self.outbox is not None:
                await self.outbox.clear()
                for entry in failed.values():
                    await self.outbox.append(entry)
            await self._rebaseline(exclude=failed.keys())
        except Exception as e:
            logger.error("sync_failed", reason=reason, error=str(e))
            return SyncResult(status="failed", error=str(e))

        logger.info("sync_completed", reason=reason, changes=changes.total, failed=changes.failed)
        return SyncResult(status="synced", changes=changes, details=details)

    async def _rebaseline(self, exclude: Collection[str] = ()) -> None:
        # Records that failed stay unknown so the next scan flags them again
        stats = await self.records.stat_all()
        self.state.known_mtimes = {
            stat.location: stat.mtime for stat in stats if stat.task_id not in exclude
        }
        self.state.last_external_check = self.clock()
        self.state.recent_changes.clear()

    # Full reconciliation
    async def reconcile_all(self) -> SyncChanges:
        """Run one full create/update/delete pass plus edge convergence.

        Raises:
            TaskLatticeError: If records cannot be listed or the graph is unreachable
        """
        changes, _details, _failed = await self._reconcile()
        return changes

    async def _reconcile(
        self,
    ) -> tuple[SyncChanges, list[str], dict[str, OutboxEntry]]:
        """One full pass.

        Returns:
            Change counts, failure details and an outbox entry per id that
            failed
        """
        changes = SyncChanges()
        details: list[str] = []
        failed: dict[str, OutboxEntry] = {}

        def fail(task_id: str, operation: OutboxOperation, event: str, error: Exception) -> None:
            logger.error(event, task_id=task_id, error=str(error))
            changes.failed += 1
            details.append(f"{task_id}: {error}")
            failed[task_id] = OutboxEntry(task_id=task_id, operation=operation, error=str(error))

        records = await self.records.list_all()
        nodes = {node.id: node for node in await self.graph.list_nodes()}
        record_ids = {record.id for record in records}

        for record in records:
            try:
                outcome = await self._upsert_node(record, nodes.get(record.id))
            except TaskLatticeError as e:
                fail(record.id, "upsert", "record_reconcile_failed", e)
                continue
            if outcome == "created":
                changes.created += 1
            elif outcome == "updated":
                changes.updated += 1

        # Checklist nodes belong to their parent's subtask reconciliation
        orphaned_parents: set[str] = set()
        for node_id, node in nodes.items():
            if node_id in record_ids or node.kind is NodeKind.SUBTASK:
                continue
            try:
                parents = [link.node.id for link in await self.graph.get_parent_links(node_id)]
                if await self.graph.delete_node(node_id):
                    changes.deleted += 1
                    orphaned_parents.update(parents)
            except TaskLatticeError as e:
                fail(node_id, "delete", "node_delete_failed", e)

        for parent_id in sorted(orphaned_parents & record_ids):
            try:
                await self.graph.refresh_has_children(parent_id)
            except TaskLatticeError as e:
                fail(parent_id, "upsert", "record_edges_failed", e)

        for record in records:
            try:
                changes.dependencies += await self.sync_task_dependencies(record)
                changes.subtasks += await self.sync_subtasks(record)
                changes.hierarchy += await self.sync_parent_link(record)
            except TaskLatticeError as e:
                fail(record.id, "upsert", "record_edges_failed", e)

        return changes, details, failed

    @staticmethod
    def needs_update(record: TaskRecord, node: GraphNode) -> bool:
        mirrored = GraphNode.from_record(record)
        return any(getattr(mirrored, field) != getattr(node, field) for field in MIRRORED_FIELDS)

    async def _upsert_node(self, record: TaskRecord, node: GraphNode | None) -> str | None:
        if node is None:
            await self.graph.create_node(GraphNode.from_record(record))
            logger.debug("graph_node_created", task_id=record.id)
            return "created"
        if self.needs_update(record, node):
            mirrored = GraphNode.from_record(record)
            await self.graph.update_node(
                record.id, **{field: getattr(mirrored, field) for field in MIRRORED_FIELDS}
            )
            logger.debug("graph_node_updated", task_id=record.id)
            return "updated"
        return None

    async def sync_task_dependencies(self, record: TaskRecord) -> int:
        """Make the node's DEPENDS_ON edges equal the record's declared list.

        Edges to tasks that are not in the graph are logged and skipped.

        Returns:
            Number of edges added or removed
        """
        declared = record.dependency_ids
        current = {dep.id for dep in await self.graph.get_dependencies(record.id)}
        changed = 0

        for dep_id in declared:
            if dep_id in current:
                continue
            try:
                if await self.graph.add_dependency(record.id, dep_id):
                    changed += 1
            except EdgeEndpointMissingError as e:
                logger.warning(
                    "dependency_edge_skipped", task_id=record.id, depends_on=dep_id, error=str(e)
                )

        for dep_id in sorted(current - set(declared)):
            if await self.graph.remove_dependency(record.id, dep_id):
                changed += 1

        return changed

    async def sync_subtasks(self, record: TaskRecord) -> int:
        """Reconcile checklist nodes ``<id>-1..N`` with the record's subtasks.

        Returns:
            Number of checklist nodes created, updated or deleted
        """
        owned = {
            link.node.id: link
            for link in await self.graph.get_children(record.id)
            if link.node.kind is NodeKind.SUBTASK
        }
        changed = 0

        for position, item in enumerate(record.subtasks):
            child_id = subtask_node_id(record.id, position)
            status = TaskStatus.DONE if item.is_complete else TaskStatus.PENDING
            link = owned.pop(child_id, None)

            if link is None:
                orphan = await self.graph.get_node(child_id)
                if orphan is None:
                    await self.graph.create_node(
                        GraphNode(
                            id=child_id,
                            title=item.title,
                            status=status,
                            priority=record.priority,
                            created_at=record.created_at,
                            kind=NodeKind.SUBTASK,
                        )
                    )
                else:
                    await self.graph.update_node(
                        child_id, title=item.title, status=status, priority=record.priority
                    )
                await self.graph.create_unified_parent_child_relationship(
                    record.id,
                    child_id,
                    RelationshipType.SUBTASK,
                    {"position": position, "is_complete": item.is_complete},
                )
                changed += 1
                continue

            node_stale = (
                link.node.title != item.title
                or link.node.status != status
                or link.node.priority != record.priority
            )
            edge_stale = link.edge.position != position or link.edge.is_complete != item.is_complete
            if node_stale:
                await self.graph.update_node(
                    child_id, title=item.title, status=status, priority=record.priority
                )
            if edge_stale:
                await self.graph.update_subtask_edge(record.id, child_id, position, item.is_complete)
            if node_stale or edge_stale:
                changed += 1

        for child_id in sorted(owned):
            await self.graph.delete_node(child_id)
            changed += 1
        if owned:
            await self.graph.refresh_has_children(record.id)

        return changed

    async def sync_parent_link(self, record: TaskRecord) -> int:
        """Keep exactly one decomposition edge from ``parent_id`` to the record.

        Returns:
            Number of hierarchy edges created or removed
        """
        links = [
            link
            for link in await self.graph.get_parent_links(record.id)
            if link.edge.relationship_type is RelationshipType.DECOMPOSITION
        ]
        changed = 0

        for link in links:
            if link.edge.parent_id != record.parent_id:
                await self.graph.remove_parent_link(link.edge.parent_id, record.id)
                await self.graph.refresh_has_children(link.edge.parent_id)
                changed += 1

        if record.parent_id and not any(link.edge.parent_id == record.parent_id for link in links):
            try:
                if await self.graph.create_unified_parent_child_relationship(
                    record.parent_id, record.id, RelationshipType.DECOMPOSITION
                ):
                    changed += 1
            except EdgeEndpointMissingError as e:
                logger.warning(
                    "parent_edge_skipped", task_id=record.id, parent_id=record.parent_id, error=str(e)
                )

        return changed

    # External change detection
    def record_change(self, task_id: str, operation: str) -> None:
        """Mark a record as just written by this process.

        Must be called right after every in-process record write so the
        detector does not mistake the write for a foreign edit.
        """
        self.state.recent_changes[task_id] = ChangeMarker(
            operation=operation, marked_at=self.clock()
        )

    def _expire_markers(self, now: float) -> None:
        ttl = self.config.change_marker_ttl_seconds
        for task_id in [
            tid for tid, marker in self.state.recent_changes.items() if now - marker.marked_at > ttl
        ]:
            del self.state.recent_changes[task_id]

    async def detect_external_changes(self) -> list[str]:
        """Ids of records changed by someone other than this process.

        Compares current file mtimes against the last known ones. Changes
        to records carrying a recent in-process marker are absorbed and
        their markers cleared.
        """
        now = self.clock()
        self._expire_markers(now)
        stats = await self.records.stat_all()
        current = {stat.location: stat for stat in stats}
        known = self.state.known_mtimes

        touched: set[str] = set()
        for location, stat in current.items():
            previous = known.get(location)
            if previous is None or stat.mtime > previous:
                touched.add(stat.task_id)
        for location in known.keys() - current.keys():
            task_id = task_id_from_filename(Path(location).name)
            if task_id is not None:
                touched.add(task_id)

        marked = touched & self.state.recent_changes.keys()
        for task_id in marked:
            del self.state.recent_changes[task_id]
        external = sorted(touched - marked)

        self.state.known_mtimes = {location: stat.mtime for location, stat in current.items()}
        self.state.last_external_check = now
        if external:
            logger.info("external_changes_detected", task_ids=external)
        return external

    async def smart_sync(self, priority: SyncPriority = "medium") -> SyncResult:
        """Tiered sync used before reads.

        ``high`` always scans for external changes, ``medium`` scans once the
        configured interval has elapsed, ``low`` only scans if it never has.
        A full reconciliation runs when the scan finds foreign edits, when
        the outbox holds failed mirrors or when no full pass has happened yet.
        Never raises.
        """
        try:
            last_check = self.state.last_external_check
            if priority == "high":
                scan = True
            elif priority == "medium":
                scan = (
                    last_check is None
                    or self.clock() - last_check >= self.config.medium_interval_seconds
                )
            else:
                scan = last_check is None

            if self.state.last_sync_time is None:
                return await self._full_sync(reason="initial")
            if await self._outbox_pending():
                return await self._full_sync(reason="outbox")
            if not scan:
                logger.debug("smart_sync_cache_hit", priority=priority)
                return SyncResult(status="already_synced")
            if await self.detect_external_changes():
                return await self._full_sync(reason="external_changes")
            return SyncResult(status="already_synced")
        except Exception as e:
            logger.error("smart_sync_failed", priority=priority, error=str(e))
            return SyncResult(status="failed", error=str(e))

    # Immediate mirrors
    async def mirror_record(self, task_id: str) -> MirrorResult:
        """Project one record into the graph right after it was written.

        Applies the same rules as the full pass. On failure an outbox entry
        is recorded and a ``queued`` result returned; never raises.
        """
        try:
            record = await self.records.read_by_id(task_id)
            if record is None:
                return await self.mirror_deletion(task_id)
            changes = SyncChanges()
            outcome = await self._upsert_node(record, await self.graph.get_node(task_id))
            if outcome == "created":
                changes.created += 1
            elif outcome == "updated":
                changes.updated += 1
            changes.dependencies += await self.sync_task_dependencies(record)
            changes.subtasks += await self.sync_subtasks(record)
            changes.hierarchy += await self.sync_parent_link(record)
            await self._fold_in(task_id)
        except Exception as e:
            logger.error("mirror_failed", task_id=task_id, error=str(e))
            await self._queue(task_id, "upsert", e)
            return MirrorResult(task_id=task_id, operation="upsert", status="queued", error=str(e))

        logger.debug("record_mirrored", task_id=task_id, changes=changes.total)
        return MirrorResult(task_id=task_id, operation="upsert", status="mirrored", changes=changes)

    async def mirror_deletion(self, task_id: str) -> MirrorResult:
        """Remove a deleted record's node, checklist nodes and edges. Never raises."""
        try:
            changes = SyncChanges()
            parent = await self.graph.get_parent(task_id)
            if await self.graph.delete_node(task_id):
                changes.deleted += 1
            if parent is not None:
                await self.graph.refresh_has_children(parent.node.id)
            await self._fold_in(task_id)
        except Exception as e:
            logger.error("mirror_failed", task_id=task_id, operation="delete", error=str(e))
            await self._queue(task_id, "delete", e)
            return MirrorResult(task_id=task_id, operation="delete", status="queued", error=str(e))

        return MirrorResult(task_id=task_id, operation="delete", status="mirrored", changes=changes)

    async def _fold_in(self, task_id: str) -> None:
        """Record the mirrored file state so the detector treats it as known."""
        known = self.state.known_mtimes
        for location in [loc for loc in known if task_id_from_filename(Path(loc).name) == task_id]:
            del known[location]
        stat = await self.records.stat(task_id)
        if stat is not None:
            known[stat.location] = stat.mtime
        self.state.recent_changes.pop(task_id, None)

    async def _queue(self, task_id: str, operation: OutboxOperation, error: Exception) -> None:
        if self.outbox is None:
            return
        try:
            await self.outbox.append(
                OutboxEntry(task_id=task_id, operation=operation, error=str(error))
            )
        except OSError as e:
            logger.error("outbox_write_failed", task_id=task_id, error=str(e))

    # Maintenance
    async def repair_dependencies(self) -> RepairResult:
        """Drop dangling dependency edges, then break every cycle.

        Each cycle is broken by deleting the edge from its last node back to
        its first. Only the graph is changed; records keep their declared
        dependencies. Must be requested explicitly.

        Raises:
            TaskLatticeError: If the graph cannot be read or written
        """
        result = RepairResult()

        for from_id, to_id in await self.graph.dangling_dependencies():
            await self.graph.remove_dependency(from_id, to_id)
            result.issues.append(
                RepairIssue(
                    kind="missing_dependency", task_id=from_id, target_id=to_id, action="removed"
                )
            )

        # Each round removes one edge, so the edge count bounds the loop
        for _ in range(len(await self.graph.dependency_edges()) + 1):
            reports = await self.graph.detect_circular_dependencies()
            if not reports:
                break
            cycle = reports[0].cycle
            await self.graph.remove_dependency(cycle[-1], cycle[0])
            result.issues.append(
                RepairIssue(
                    kind="circular_dependency",
                    task_id=reports[0].task_id,
                    target_id=cycle[0],
                    cycle=cycle,
                    action=f"removed {cycle[-1]} -> {cycle[0]}",
                )
            )

        logger.info("dependencies_repaired", issues=result.issues_fixed)
        return result

    async def verify_sync_status(self) -> VerifyResult:
        """Compare records with their graph mirrors without changing anything.

        Raises:
            TaskLatticeError: If either store cannot be read
        """
        records = {record.id: record for record in await self.records.list_all()}
        nodes = {
            node.id: node
            for node in await self.graph.list_nodes()
            if node.kind is not NodeKind.SUBTASK
        }

        missing = sorted(records.keys() - nodes.keys())
        extra = sorted(nodes.keys() - records.keys())
        stale = sorted(
            task_id
            for task_id in records.keys() & nodes.keys()
            if self.needs_update(records[task_id], nodes[task_id])
        )
        mismatches = []
        for task_id in sorted(records.keys() & nodes.keys()):
            declared = {dep for dep in records[task_id].dependency_ids if dep in nodes}
            actual = {dep.id for dep in await self.graph.get_dependencies(task_id)}
            if declared != actual:
                mismatches.append(task_id)

        result = VerifyResult(
            in_sync=not (missing or extra or stale or mismatches),
            record_count=len(records),
            node_count=len(nodes),
            missing_in_graph=missing,
            extra_in_graph=extra,
            stale_nodes=stale,
            dependency_mismatches=mismatches,
        )
        logger.info("sync_verified", in_sync=result.in_sync, difference=result.difference)
        return result

    def clear_cache(self) -> None:
        """Forget all sync bookkeeping so the next check reconciles."""
        # Reset in place; the state object may be shared with the caller
        self.state.last_sync_time = None
        self.state.last_external_check = None
        self.state.known_mtimes.clear()
        self.state.recent_changes.clear()
        logger.debug("sync_cache_cleared")

    async def clear_graph(self) -> int:
        """Delete every node and edge from the graph.

        Returns:
            Number of nodes deleted
        """
        deleted = 0
        for node in await self.graph.list_nodes():
            # Checklist nodes may already be gone with their parent
            if await self.graph.delete_node(node.id):
                deleted += 1
        self.clear_cache()
        logger.info("graph_cleared", nodes=deleted)
        return deleted
