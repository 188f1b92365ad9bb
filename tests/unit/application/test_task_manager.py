"""Unit tests for TaskManager.

Tests cover:
- Task creation, validation and id/semantic label generation
- Status, note, dependency and checklist mutations mirrored into the graph
- Deletion and decomposition
- Read paths with graph-derived dependency status
- Next-task selection with reasons
- Failed mirrors queued and replayed
- Wiring from configuration
"""

import re
from pathlib import Path

import pytest
from tasklattice.application.task_manager import (
    ChildSpec,
    InvalidTaskError,
    TaskManager,
    TaskManagerError,
    TaskNotFoundError,
    detect_stream,
    generate_task_id,
)
from tasklattice.domain.models import GraphNode, NodeKind, RelationshipType, TaskPriority, TaskStatus
from tasklattice.infrastructure.config import ConfigManager
from tasklattice.infrastructure.exceptions import GraphStoreError
from tasklattice.services.task_selector import SelectionContext


class TestIdentifiers:
    """Tests for task ids and semantic labels."""

    def test_generate_task_id_shape(self) -> None:
        task_id = generate_task_id()
        assert re.fullmatch(r"[0-9a-z]+-[0-9a-f]{6}", task_id)
        assert generate_task_id() != task_id

    def test_detect_stream(self) -> None:
        assert detect_stream("Write unit tests") == "TEST"
        assert detect_stream("Update docs") == "DOC"
        assert detect_stream("Build parser") == "TASK"
        assert detect_stream("Refactor", "touches the database schema") == "DATA"

    @pytest.mark.asyncio
    async def test_semantic_ids_count_per_stream_and_phase(self, task_manager: TaskManager) -> None:
        first = await task_manager.create_task("Write unit tests")
        second = await task_manager.create_task("Raise coverage")
        third = await task_manager.create_task("Test runner", dependencies=[first.task_id])
        other = await task_manager.create_task("Something else")

        assert first.task.semantic_id == "TEST-1.01"
        assert second.task.semantic_id == "TEST-1.02"
        assert third.task.semantic_id == "TEST-2.01"
        assert other.task.semantic_id == "TASK-1.01"


class TestCreateTask:
    """Tests for create_task."""

    @pytest.mark.asyncio
    async def test_create_writes_record_and_node(self, task_manager: TaskManager) -> None:
        result = await task_manager.create_task("Write schema", "SQL tables", priority="high")

        record = await task_manager.records.read_by_id(result.task_id)
        node = await task_manager.graph.get_node(result.task_id)

        assert result.mirrored is True
        assert record.title == "Write schema"
        assert record.priority == TaskPriority.HIGH
        assert node.title == "Write schema"
        assert node.location == record.location

    @pytest.mark.asyncio
    async def test_validation(self, task_manager: TaskManager) -> None:
        with pytest.raises(InvalidTaskError):
            await task_manager.create_task("   ")
        with pytest.raises(InvalidTaskError, match="Invalid priority"):
            await task_manager.create_task("x", priority="urgent")
        with pytest.raises(InvalidTaskError):
            await task_manager.create_task("x", dependencies="abc")
        with pytest.raises(TaskNotFoundError):
            await task_manager.create_task("x", parent_id="missing")

    @pytest.mark.asyncio
    async def test_dependency_on_unknown_task_tolerated(self, task_manager: TaskManager) -> None:
        result = await task_manager.create_task("Later", dependencies=["not-yet"])

        task = await task_manager.get_task(result.task_id)

        assert result.mirrored is True
        assert [(d.id, d.status) for d in task.dependencies] == [("not-yet", "not found")]
        assert await task_manager.graph.get_dependencies(result.task_id) == []

    @pytest.mark.asyncio
    async def test_failed_mirror_keeps_record(
        self, task_manager: TaskManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def locked(node: GraphNode) -> None:
            raise GraphStoreError("database is locked")

        with monkeypatch.context() as patch:
            patch.setattr(task_manager.graph, "create_node", locked)
            result = await task_manager.create_task("Survives")

        assert result.mirrored is False
        assert await task_manager.records.exists(result.task_id)
        assert await task_manager.graph.get_node(result.task_id) is None

        assert (await task_manager.find_next_task()).id == result.task_id
        assert await task_manager.sync.outbox.pending() is False


class TestMutations:
    """Tests for status, note and dependency changes."""

    @pytest.mark.asyncio
    async def test_update_status_moves_record(self, task_manager: TaskManager) -> None:
        created = await task_manager.create_task("Move me")

        await task_manager.update_task_status(created.task_id, "in-progress")

        record = await task_manager.records.read_by_id(created.task_id)
        node = await task_manager.graph.get_node(created.task_id)
        assert Path(record.location).parent.name == "in-progress"
        assert node.status == TaskStatus.IN_PROGRESS
        assert node.location == record.location

    @pytest.mark.asyncio
    async def test_update_status_errors(self, task_manager: TaskManager) -> None:
        created = await task_manager.create_task("x")
        with pytest.raises(InvalidTaskError):
            await task_manager.update_task_status(created.task_id, "blocked")
        with pytest.raises(TaskNotFoundError):
            await task_manager.update_task_status("missing", "done")

    @pytest.mark.asyncio
    async def test_add_note(self, task_manager: TaskManager) -> None:
        created = await task_manager.create_task("x")

        await task_manager.add_note(created.task_id, "  halfway there ")

        task = await task_manager.get_task(created.task_id)
        assert [n.content for n in task.notes] == ["halfway there"]
        with pytest.raises(InvalidTaskError):
            await task_manager.add_note(created.task_id, " ")

    @pytest.mark.asyncio
    async def test_add_and_remove_dependency(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("First")
        t2 = await task_manager.create_task("Second")

        await task_manager.add_dependency(t2.task_id, t1.task_id)
        await task_manager.add_dependency(t2.task_id, t1.task_id)

        record = await task_manager.records.read_by_id(t2.task_id)
        assert record.dependency_ids == [t1.task_id]
        assert [d.id for d in await task_manager.graph.get_dependencies(t2.task_id)] == [t1.task_id]

        await task_manager.remove_dependency(t2.task_id, t1.task_id)

        assert await task_manager.graph.get_dependencies(t2.task_id) == []

    @pytest.mark.asyncio
    async def test_self_dependency_reported_as_cycle(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("Loop")
        await task_manager.add_dependency(t1.task_id, t1.task_id)

        check = await task_manager.check_dependencies(t1.task_id)

        assert check.has_circular is True
        assert check.ready is False


class TestChecklist:
    """Tests for breakdown_task and complete_subtask."""

    @pytest.mark.asyncio
    async def test_breakdown_creates_checklist_nodes(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Feature")

        await task_manager.breakdown_task(task.task_id, ["design", " build "])

        children = await task_manager.get_task_children(task.task_id)
        assert [link.node.title for link in children] == ["design", "build"]
        assert all(link.node.kind is NodeKind.SUBTASK for link in children)
        assert [link.edge.position for link in children] == [0, 1]

    @pytest.mark.asyncio
    async def test_complete_subtask(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Feature")
        await task_manager.breakdown_task(task.task_id, ["design", "build"])

        await task_manager.complete_subtask(task.task_id, 1)

        children = await task_manager.get_task_children(task.task_id)
        assert children[1].node.status == TaskStatus.DONE
        assert children[1].edge.is_complete is True
        with pytest.raises(InvalidTaskError):
            await task_manager.complete_subtask(task.task_id, 5)

    @pytest.mark.asyncio
    async def test_empty_breakdown_clears(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Feature")
        await task_manager.breakdown_task(task.task_id, ["design"])

        await task_manager.breakdown_task(task.task_id, [])

        assert await task_manager.get_task_children(task.task_id) == []
        assert (await task_manager.graph.get_node(task.task_id)).has_children is False

    @pytest.mark.asyncio
    async def test_blank_subtask_rejected(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Feature")
        with pytest.raises(InvalidTaskError):
            await task_manager.breakdown_task(task.task_id, ["ok", ""])


class TestDeleteAndDecompose:
    """Tests for delete_task and decompose_task."""

    @pytest.mark.asyncio
    async def test_delete_removes_node_and_edges(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("Base")
        await task_manager.breakdown_task(t1.task_id, ["a"])
        t2 = await task_manager.create_task("Top", dependencies=[t1.task_id])

        result = await task_manager.delete_task(t1.task_id)

        assert result.mirrored is True
        assert await task_manager.graph.get_node(t1.task_id) is None
        assert await task_manager.graph.get_node(f"{t1.task_id}-1") is None
        assert await task_manager.graph.get_dependencies(t2.task_id) == []
        with pytest.raises(TaskNotFoundError):
            await task_manager.delete_task(t1.task_id)

    @pytest.mark.asyncio
    async def test_decompose_creates_child_records(self, task_manager: TaskManager) -> None:
        parent = await task_manager.create_task("Epic", priority="high")

        result = await task_manager.decompose_task(
            parent.task_id,
            [ChildSpec(title="Part one"), ChildSpec(title="Part two", priority=TaskPriority.LOW)],
            decomposition_type="manual",
        )

        assert len(result.children) == 2
        assert result.children[0].task.priority == TaskPriority.HIGH
        assert result.children[1].task.priority == TaskPriority.LOW
        links = await task_manager.get_task_children(parent.task_id)
        assert {link.node.id for link in links} == {c.task_id for c in result.children}
        assert all(link.edge.relationship_type is RelationshipType.DECOMPOSITION for link in links)
        assert all(link.edge.decomposition_type == "manual" for link in links)
        child_parent = await task_manager.get_task_parent(result.children[0].task_id)
        assert child_parent.node.id == parent.task_id

    @pytest.mark.asyncio
    async def test_decompose_twice_rejected(self, task_manager: TaskManager) -> None:
        parent = await task_manager.create_task("Epic")
        await task_manager.decompose_task(parent.task_id, [ChildSpec(title="Part")])

        with pytest.raises(TaskManagerError, match="already has subtasks"):
            await task_manager.decompose_task(parent.task_id, [ChildSpec(title="Again")])

    @pytest.mark.asyncio
    async def test_decompose_needs_children(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Epic")
        with pytest.raises(InvalidTaskError):
            await task_manager.decompose_task(task.task_id, [])


class TestReads:
    """Tests for read paths."""

    @pytest.mark.asyncio
    async def test_get_task_reports_graph_status(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("Base")
        t2 = await task_manager.create_task("Top", dependencies=[t1.task_id])
        await task_manager.update_task_status(t1.task_id, "done")

        task = await task_manager.get_task(t2.task_id)

        assert task.dependencies[0].status == "done"
        assert await task_manager.get_task("missing") is None

    @pytest.mark.asyncio
    async def test_list_tasks_order_and_filters(self, task_manager: TaskManager) -> None:
        low = await task_manager.create_task("Low", priority="low")
        high = await task_manager.create_task("High", priority="high")
        medium = await task_manager.create_task("Medium")
        await task_manager.update_task_status(medium.task_id, "done")

        ordered = [t.id for t in await task_manager.list_tasks()]
        pending = [t.id for t in await task_manager.list_tasks(status="pending")]
        only_low = [t.id for t in await task_manager.list_tasks(priority="low")]

        assert ordered == [high.task_id, medium.task_id, low.task_id]
        assert pending == [high.task_id, low.task_id]
        assert only_low == [low.task_id]

    @pytest.mark.asyncio
    async def test_dependency_reports(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("Base")
        t2 = await task_manager.create_task("Top", dependencies=[t1.task_id])

        check = await task_manager.check_dependencies(t2.task_id)
        dependents = await task_manager.get_dependents(t1.task_id)
        report = await task_manager.get_full_dependency_graph(t1.task_id)

        assert [d.id for d in check.blocking] == [t1.task_id]
        assert check.ready is False
        assert dependents.total_dependents == 1
        assert dependents.blocked_count == 1
        assert report.statistics.total_dependents == 1
        assert report.statistics.blocked_dependents == 1
        assert report.statistics.total_dependencies == 0
        with pytest.raises(TaskNotFoundError):
            await task_manager.check_dependencies("missing")

    @pytest.mark.asyncio
    async def test_set_task_complexity(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Estimate me")

        node = await task_manager.set_task_complexity(task.task_id, 0.8, False)

        assert node.complexity_score == 0.8
        assert node.is_atomic is False
        with pytest.raises(TaskNotFoundError):
            await task_manager.set_task_complexity("missing", 0.1, True)


class TestNextTask:
    """Tests for next-task selection through the manager."""

    @pytest.mark.asyncio
    async def test_no_tasks(self, task_manager: TaskManager) -> None:
        result = await task_manager.find_next_task_with_reason()

        assert result.task is None
        assert result.reason == "No actionable tasks found"

    @pytest.mark.asyncio
    async def test_checklist_item_returns_owner_record(self, task_manager: TaskManager) -> None:
        task = await task_manager.create_task("Feature", priority="high")
        await task_manager.breakdown_task(task.task_id, ["design", "build"])
        await task_manager.update_task_status(task.task_id, "in-progress")

        result = await task_manager.find_next_task_with_reason()

        assert result.task.id == f"{task.task_id}-1"
        assert result.record.id == task.task_id
        assert result.parent.id == task.task_id
        assert result.reason == "Subtask of in-progress parent: Feature"

    @pytest.mark.asyncio
    async def test_recent_context(self, task_manager: TaskManager) -> None:
        parent = await task_manager.create_task("Epic")
        decomposition = await task_manager.decompose_task(
            parent.task_id, [ChildSpec(title="One"), ChildSpec(title="Two")]
        )
        one, two = (child.task_id for child in decomposition.children)
        await task_manager.update_task_status(one, "done")

        result = await task_manager.find_next_task_with_reason(
            SelectionContext(recent_task_ids=[one])
        )

        assert result.task.id == two


class TestMaintenance:
    """Tests for sync, verification and repair entry points."""

    @pytest.mark.asyncio
    async def test_sync_now_force(self, task_manager: TaskManager) -> None:
        await task_manager.create_task("x")

        forced = await task_manager.sync_now(force=True)

        assert forced.status == "synced"
        assert forced.changes.total == 0

    @pytest.mark.asyncio
    async def test_verify_after_writes(self, task_manager: TaskManager) -> None:
        t1 = await task_manager.create_task("a")
        await task_manager.create_task("b", dependencies=[t1.task_id])

        result = await task_manager.verify_sync()

        assert result.in_sync is True
        assert result.record_count == 2

    @pytest.mark.asyncio
    async def test_repair_breaks_cycle_in_graph_only(self, task_manager: TaskManager) -> None:
        a = await task_manager.create_task("a")
        b = await task_manager.create_task("b", dependencies=[a.task_id])
        await task_manager.add_dependency(a.task_id, b.task_id)

        result = await task_manager.repair_dependencies()

        assert result.issues_fixed == 1
        assert await task_manager.graph.detect_circular_dependencies() == []
        record = await task_manager.records.read_by_id(a.task_id)
        assert record.dependency_ids == [b.task_id]


class TestFromConfig:
    """Tests for TaskManager.from_config."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("TASKLATTICE_TASKS_DIR", raising=False)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path / "home"))

        manager = TaskManager.from_config(ConfigManager(project_root=tmp_path))
        await manager.initialize()
        created = await manager.create_task("Persist me")
        await manager.close()

        reopened = TaskManager.from_config(ConfigManager(project_root=tmp_path))
        await reopened.initialize()
        node = await reopened.graph.get_node(created.task_id)
        await reopened.close()

        assert (tmp_path / ".tasks" / ".graph.db").exists()
        assert node is not None
        assert node.title == "Persist me"
