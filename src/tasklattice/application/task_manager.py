"""Task manager: sequences record writes, change markers and graph mirrors.

Every mutation follows the same order:

1. write the record store (authoritative)
2. mark the change so the external-change detector ignores the echo
3. mirror the record into the graph before returning

A failed mirror never undoes the record write; it is queued in the outbox
and repaired by the next full reconciliation. Reads run a smart sync at the
tier their correctness needs before touching the graph.
"""

import re
import time
from uuid import uuid4

from pydantic import BaseModel, Field

from tasklattice.domain.models import (
    DependencyRef,
    GraphNode,
    NodeKind,
    SubtaskItem,
    TaskPriority,
    TaskRecord,
    TaskStatus,
)
from tasklattice.infrastructure.config import ConfigManager
from tasklattice.infrastructure.exceptions import TaskLatticeError
from tasklattice.infrastructure.logger import get_logger
from tasklattice.infrastructure.outbox import Outbox
from tasklattice.infrastructure.record_store import MarkdownRecordStore
from tasklattice.infrastructure.sqlite_graph_store import SQLiteGraphStore
from tasklattice.services.graph_index import DependencyInfo, GraphIndex, HierarchyLink
from tasklattice.services.sync_engine import (
    MirrorResult,
    RepairResult,
    SyncEngine,
    SyncResult,
    VerifyResult,
)
from tasklattice.services.task_selector import SelectionContext, TaskSelector

logger = get_logger(__name__)

# Checked in order; the first stream with a matching keyword wins
STREAM_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("TEST", ("test", "coverage")),
    ("SYNC", ("sync", "synchron")),
    ("DEPLOY", ("deploy", "release", "publish")),
    ("GIT", ("git", "version control", "commit")),
    ("DOC", ("doc", "guide", "readme")),
    ("API", ("api", "endpoint", "route")),
    ("AUTH", ("auth", "security", "login")),
    ("DATA", ("data", "database", "schema")),
    ("UI", ("ui", "interface", "frontend")),
]
DEFAULT_STREAM = "TASK"
_SEMANTIC_RE = re.compile(r"^([A-Z]+)-(\d+)\.(\d+)$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class TaskManagerError(TaskLatticeError):
    """Base exception for task manager errors."""

    pass


class TaskNotFoundError(TaskManagerError):
    """Raised when a task id doesn't exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTaskError(TaskManagerError):
    """Raised when task input fails validation."""

    pass


class TaskWriteResult(BaseModel):
    """A completed record write and the outcome of its graph mirror."""

    task_id: str
    task: TaskRecord | None = None
    mirror: MirrorResult

    @property
    def mirrored(self) -> bool:
        return self.mirror.status == "mirrored"


class ChildSpec(BaseModel):
    """Caller-supplied description of one decomposed child task."""

    title: str
    description: str = ""
    priority: TaskPriority | None = None


class DecompositionResult(BaseModel):
    parent: TaskRecord
    children: list[TaskWriteResult] = Field(default_factory=list)
    decomposition_type: str


class NextTaskResult(BaseModel):
    """Selected task with its justification.

    ``record`` is the task's own record, or the owning record when the
    selected node is a checklist item.
    """

    task: GraphNode | None
    reason: str
    record: TaskRecord | None = None
    parent: GraphNode | None = None


class DependencyCheck(BaseModel):
    task_id: str
    dependencies: list[DependencyInfo]
    blocking: list[DependencyInfo]
    has_circular: bool
    ready: bool


class DependentsReport(BaseModel):
    task_id: str
    dependents: list[DependencyInfo]
    impacted: list[DependencyInfo]
    total_dependents: int
    blocked_count: int


class DependencyStatistics(BaseModel):
    total_dependencies: int
    completed_dependencies: int
    total_dependents: int
    blocked_dependents: int


class DependencyGraphReport(BaseModel):
    task: GraphNode
    dependencies: list[DependencyInfo]
    dependents: list[DependencyInfo]
    statistics: DependencyStatistics


def _base36(value: int) -> str:
    digits = ""
    while value:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
    return digits or "0"


def generate_task_id() -> str:
    """Opaque id: base-36 millisecond timestamp plus random suffix."""
    return f"{_base36(int(time.time() * 1000))}-{uuid4().hex[:6]}"


def detect_stream(title: str, description: str = "") -> str:
    text = f"{title} {description}".lower()
    for stream, keywords in STREAM_KEYWORDS:
        # Keywords match at word starts ("docs" hits "doc", "build" misses "ui")
        if any(re.search(rf"\b{re.escape(keyword)}", text) for keyword in keywords):
            return stream
    return DEFAULT_STREAM


class TaskManager:
    """Orchestrates the record store, sync engine, graph index and selector.

    Usage:
        manager = TaskManager.from_config(ConfigManager(project_root))
        await manager.initialize()

        t1 = await manager.create_task("Write schema", priority="high")
        await manager.create_task("Load data", dependencies=[t1.task_id])

        next_task = await manager.find_next_task()
    """

    def __init__(
        self,
        records: MarkdownRecordStore,
        graph: GraphIndex,
        sync: SyncEngine,
        selector: TaskSelector,
    ):
        self.records = records
        self.graph = graph
        self.sync = sync
        self.selector = selector

    @classmethod
    def from_config(cls, config_manager: ConfigManager) -> "TaskManager":
        """Wire the default stack: markdown records and a SQLite graph index."""
        config = config_manager.load_config()
        records = MarkdownRecordStore(config_manager.get_tasks_dir())
        graph = GraphIndex(SQLiteGraphStore(config_manager.get_graph_db_path()))
        sync = SyncEngine(
            records, graph, config=config.sync, outbox=Outbox(config_manager.get_outbox_path())
        )
        return cls(records, graph, sync, TaskSelector(graph, config.selection))

    async def initialize(self) -> SyncResult:
        """Prepare both stores and bring the graph up to date.

        Raises:
            RecordStoreError: If the record store cannot be prepared
            GraphStoreError: If the graph schema cannot be created
        """
        await self.records.initialize()
        await self.graph.initialize()
        result = await self.sync.ensure_synced()
        logger.info("task_manager_initialized", sync_status=result.status)
        return result

    async def close(self) -> None:
        await self.graph.close()
        logger.info("task_manager_closed")

    # Write path
    async def _after_write(self, task_id: str, operation: str) -> MirrorResult:
        self.sync.record_change(task_id, operation)
        if operation == "deleted":
            return await self.sync.mirror_deletion(task_id)
        return await self.sync.mirror_record(task_id)

    async def _require_record(self, task_id: str) -> TaskRecord:
        record = await self.records.read_by_id(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    async def _save(self, record: TaskRecord, operation: str = "updated") -> TaskWriteResult:
        await self.records.save(record)
        mirror = await self._after_write(record.id, operation)
        return TaskWriteResult(task_id=record.id, task=record, mirror=mirror)

    async def create_task(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        dependencies: list[str] | None = None,
        parent_id: str | None = None,
    ) -> TaskWriteResult:
        """Create a task record and mirror it into the graph.

        Dependencies may name tasks that do not exist yet; they are kept in
        the record and linked in the graph once the target appears.

        Raises:
            InvalidTaskError: If title, priority or dependencies are invalid
            TaskNotFoundError: If ``parent_id`` names a missing task
        """
        if not isinstance(title, str) or not title.strip():
            raise InvalidTaskError("Title cannot be empty")
        try:
            priority = TaskPriority(priority)
        except ValueError as e:
            valid = ", ".join(p.value for p in TaskPriority)
            raise InvalidTaskError(f"Invalid priority: {priority}. Must be one of: {valid}") from e
        dependencies = dependencies or []
        if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
            raise InvalidTaskError("Dependencies must be a list of task ids")
        if parent_id is not None:
            await self._require_record(parent_id)

        task_id = generate_task_id()
        while await self.records.exists(task_id):
            task_id = generate_task_id()

        record = TaskRecord(
            id=task_id,
            semantic_id=await self.generate_semantic_id(title, description, dependencies),
            title=title,
            description=description,
            priority=priority,
            parent_id=parent_id,
            dependencies=[DependencyRef(id=dep_id) for dep_id in dependencies],
        )
        await self.records.create(record)
        mirror = await self._after_write(task_id, "created")

        logger.info(
            "task_created",
            task_id=task_id,
            semantic_id=record.semantic_id,
            mirrored=mirror.status == "mirrored",
        )
        return TaskWriteResult(task_id=task_id, task=record, mirror=mirror)

    async def update_task_status(self, task_id: str, status: TaskStatus | str) -> TaskWriteResult:
        """Move a task to a new status.

        Raises:
            InvalidTaskError: If ``status`` is not a known status
            TaskNotFoundError: If the task doesn't exist
        """
        try:
            status = TaskStatus(status)
        except ValueError as e:
            raise InvalidTaskError(f"Invalid status: {status}") from e
        record = await self._require_record(task_id)
        old_status = record.status
        record.status = status
        result = await self._save(record)
        logger.info(
            "task_status_updated", task_id=task_id, old=old_status.value, new=status.value
        )
        return result

    async def add_note(self, task_id: str, content: str) -> TaskWriteResult:
        if not content or not content.strip():
            raise InvalidTaskError("Note cannot be empty")
        await self._require_record(task_id)
        record = await self.records.add_note(task_id, content.strip())
        mirror = await self._after_write(task_id, "updated")
        return TaskWriteResult(task_id=task_id, task=record, mirror=mirror)

    async def add_dependency(self, task_id: str, depends_on: str) -> TaskWriteResult:
        """Declare that ``task_id`` requires ``depends_on`` to be done first.

        Self-dependencies and cycles are accepted; cycle detection reports
        them and ``repair_dependencies`` can break them.
        """
        record = await self._require_record(task_id)
        if depends_on not in record.dependency_ids:
            record.dependencies.append(DependencyRef(id=depends_on))
        return await self._save(record)

    async def remove_dependency(self, task_id: str, depends_on: str) -> TaskWriteResult:
        record = await self._require_record(task_id)
        record.dependencies = [dep for dep in record.dependencies if dep.id != depends_on]
        return await self._save(record)

    async def breakdown_task(self, task_id: str, subtasks: list[str]) -> TaskWriteResult:
        """Replace a task's checklist. An empty list removes every subtask.

        Raises:
            InvalidTaskError: If any subtask title is empty
            TaskNotFoundError: If the task doesn't exist
        """
        if any(not isinstance(title, str) or not title.strip() for title in subtasks):
            raise InvalidTaskError("Subtask titles cannot be empty")
        record = await self._require_record(task_id)
        record.subtasks = [SubtaskItem(title=title.strip()) for title in subtasks]
        result = await self._save(record)
        logger.info("task_broken_down", task_id=task_id, subtasks=len(subtasks))
        return result

    async def complete_subtask(
        self, task_id: str, position: int, is_complete: bool = True
    ) -> TaskWriteResult:
        record = await self._require_record(task_id)
        if not 0 <= position < len(record.subtasks):
            raise InvalidTaskError(f"Task {task_id} has no subtask at position {position}")
        record.subtasks[position].is_complete = is_complete
        return await self._save(record)

    async def delete_task(self, task_id: str) -> TaskWriteResult:
        """Delete a record together with its node, checklist nodes and edges."""
        await self._require_record(task_id)
        await self.records.delete(task_id)
        mirror = await self._after_write(task_id, "deleted")
        logger.info("task_deleted", task_id=task_id)
        return TaskWriteResult(task_id=task_id, mirror=mirror)

    async def decompose_task(
        self,
        task_id: str,
        children: list[ChildSpec],
        decomposition_type: str = "automatic",
    ) -> DecompositionResult:
        """Split a task into independent child records.

        Raises:
            TaskNotFoundError: If the task doesn't exist
            TaskManagerError: If the task already has children
        """
        await self.sync.smart_sync("high")
        parent = await self._require_record(task_id)
        if await self.graph.has_children(task_id):
            raise TaskManagerError(f"Task {task_id} already has subtasks")
        if not children:
            raise InvalidTaskError("Decomposition needs at least one child")

        created = []
        for spec in children:
            child = await self.create_task(
                title=spec.title,
                description=spec.description,
                priority=spec.priority or parent.priority,
                parent_id=task_id,
            )
            if child.mirrored:
                await self.graph.set_decomposition_type(task_id, child.task_id, decomposition_type)
            created.append(child)

        logger.info(
            "task_decomposed",
            task_id=task_id,
            children=len(created),
            decomposition_type=decomposition_type,
        )
        return DecompositionResult(
            parent=parent, children=created, decomposition_type=decomposition_type
        )

    async def set_task_complexity(
        self, task_id: str, complexity_score: float | None, is_atomic: bool | None
    ) -> GraphNode:
        """Store selection hints on the task's graph node."""
        await self.sync.smart_sync("medium")
        if not await self.graph.set_complexity(task_id, complexity_score, is_atomic):
            raise TaskNotFoundError(task_id)
        return await self._require_node(task_id)

    # Read path
    async def get_task(self, task_id: str) -> TaskRecord | None:
        """Read a record with dependency statuses taken from the graph."""
        await self.sync.smart_sync("medium")
        record = await self.records.read_by_id(task_id)
        if record is None:
            return None
        linked = {dep.id: dep.status.value for dep in await self.graph.get_dependencies(task_id)}
        record.dependencies = [
            DependencyRef(id=dep_id, status=linked.get(dep_id, "not found"))
            for dep_id in record.dependency_ids
        ]
        return record

    async def list_tasks(
        self, status: TaskStatus | str | None = None, priority: TaskPriority | str | None = None
    ) -> list[TaskRecord]:
        """List records ordered by priority, then creation time."""
        records = await self.records.list_all()
        if status is not None:
            records = [r for r in records if r.status == TaskStatus(status)]
        if priority is not None:
            records = [r for r in records if r.priority == TaskPriority(priority)]
        return sorted(records, key=lambda r: (r.priority.rank, r.created_at, r.id))

    async def find_next_task(self, context: SelectionContext | None = None) -> GraphNode | None:
        await self.sync.smart_sync("high")
        task = await self.selector.find_next_task(context)
        if task is None:
            logger.info("no_actionable_tasks")
        return task

    async def find_next_task_with_reason(
        self, context: SelectionContext | None = None
    ) -> NextTaskResult:
        task = await self.find_next_task(context)
        reason = await self.selector.get_selection_reason(task, context)
        if task is None:
            return NextTaskResult(task=None, reason=reason)

        parent_link = await self.graph.get_parent(task.id)
        parent = parent_link.node if parent_link is not None else None
        owner_id = parent.id if task.kind is NodeKind.SUBTASK and parent is not None else task.id
        record = await self.records.read_by_id(owner_id)
        return NextTaskResult(task=task, reason=reason, record=record, parent=parent)

    async def _require_node(self, task_id: str) -> GraphNode:
        node = await self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)
        return node

    async def check_dependencies(self, task_id: str) -> DependencyCheck:
        await self.sync.smart_sync("high")
        await self._require_node(task_id)
        dependencies = await self.graph.get_dependencies(task_id)
        cycles = await self.graph.detect_circular_dependencies()
        blocking = [dep for dep in dependencies if dep.status is not TaskStatus.DONE]
        return DependencyCheck(
            task_id=task_id,
            dependencies=dependencies,
            blocking=blocking,
            has_circular=any(report.task_id == task_id for report in cycles),
            ready=not blocking,
        )

    async def get_dependents(self, task_id: str) -> DependentsReport:
        await self.sync.smart_sync("medium")
        dependents = await self.graph.get_dependents(task_id)
        impacted = [
            dep
            for dep in dependents
            if dep.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
        ]
        return DependentsReport(
            task_id=task_id,
            dependents=dependents,
            impacted=impacted,
            total_dependents=len(dependents),
            blocked_count=len(impacted),
        )

    async def get_full_dependency_graph(self, task_id: str) -> DependencyGraphReport:
        await self.sync.smart_sync("high")
        node = await self._require_node(task_id)
        dependencies = await self.graph.get_dependencies(task_id)
        dependents = await self.graph.get_dependents(task_id)
        return DependencyGraphReport(
            task=node,
            dependencies=dependencies,
            dependents=dependents,
            statistics=DependencyStatistics(
                total_dependencies=len(dependencies),
                completed_dependencies=sum(
                    1 for d in dependencies if d.status is TaskStatus.DONE
                ),
                total_dependents=len(dependents),
                blocked_dependents=sum(1 for d in dependents if d.status is not TaskStatus.DONE),
            ),
        )

    async def get_task_children(self, task_id: str) -> list[HierarchyLink]:
        await self.sync.smart_sync("medium")
        return await self.graph.get_children(task_id)

    async def get_task_parent(self, task_id: str) -> HierarchyLink | None:
        await self.sync.smart_sync("medium")
        return await self.graph.get_parent(task_id)

    # Maintenance
    async def sync_now(self, force: bool = False) -> SyncResult:
        """Run a full reconciliation if stale (always when ``force``)."""
        if force:
            self.sync.clear_cache()
        return await self.sync.ensure_synced()

    async def verify_sync(self) -> VerifyResult:
        return await self.sync.verify_sync_status()

    async def repair_dependencies(self) -> RepairResult:
        await self.sync.smart_sync("high")
        return await self.sync.repair_dependencies()

    # Semantic labels
    async def generate_semantic_id(
        self, title: str, description: str, dependencies: list[str]
    ) -> str:
        """Label of the form ``STREAM-phase.seq`` (e.g. ``SYNC-2.01``)."""
        stream = detect_stream(title, description)
        phase = await self._calculate_phase(dependencies)
        sequence = await self._next_sequence(stream, phase)
        return f"{stream}-{phase}.{sequence:02d}"

    async def _calculate_phase(self, dependencies: list[str]) -> int:
        """One past the highest phase among labelled dependencies, else 1."""
        phases = []
        for dep_id in dependencies:
            dep = await self.records.read_by_id(dep_id)
            if dep is None or not dep.semantic_id:
                continue
            match = _SEMANTIC_RE.match(dep.semantic_id)
            if match:
                phases.append(int(match.group(2)))
        return max(phases) + 1 if phases else 1

    async def _next_sequence(self, stream: str, phase: int) -> int:
        highest = 0
        for record in await self.records.list_all():
            match = _SEMANTIC_RE.match(record.semantic_id or "")
            if match and match.group(1) == stream and int(match.group(2)) == phase:
                highest = max(highest, int(match.group(3)))
        return highest + 1
