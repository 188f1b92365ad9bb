"""Unit tests for TaskSelector.

Tests cover:
- Smart strategy step order
- Depth-first and breadth-first strategies
- Fallback to the simple strategy without the selection capability
- Fallback when a selection traversal fails
- Selection reasons
"""

from datetime import timedelta

import pytest
from conftest import BASE_TIME
from tasklattice.domain.models import GraphNode, RelationshipType, TaskPriority, TaskStatus
from tasklattice.infrastructure.config import SelectionConfig
from tasklattice.infrastructure.exceptions import GraphStoreError
from tasklattice.infrastructure.memory_graph_store import InMemoryGraphStore
from tasklattice.services.graph_index import GraphIndex
from tasklattice.services.task_selector import (
    GENERIC_REASON,
    NO_TASK_REASON,
    SelectionContext,
    SelectionStrategy,
    TaskSelector,
)


async def add(graph: GraphIndex, node_id: str, minutes: int = 0, **fields) -> None:
    await graph.create_node(
        GraphNode(
            id=node_id,
            title=f"Task {node_id}",
            created_at=BASE_TIME + timedelta(minutes=minutes),
            **fields,
        )
    )


async def decompose(graph: GraphIndex, parent_id: str, *child_ids: str) -> None:
    for child_id in child_ids:
        await graph.create_unified_parent_child_relationship(
            parent_id, child_id, RelationshipType.DECOMPOSITION
        )


class TestSmartStrategy:
    """Tests for the smart strategy."""

    @pytest.mark.asyncio
    async def test_context_sibling_first(self, graph: GraphIndex) -> None:
        await add(graph, "urgent", priority=TaskPriority.HIGH)
        await add(graph, "p")
        await add(graph, "c1")
        await add(graph, "c2", minutes=1)
        await decompose(graph, "p", "c1", "c2")
        await graph.update_node("c1", status=TaskStatus.DONE)
        selector = TaskSelector(graph)

        context = SelectionContext(recent_task_ids=["c1"])
        chosen = await selector.find_next_task(context)

        assert chosen.id == "c2"

    @pytest.mark.asyncio
    async def test_high_priority_parent_subtasks(self, graph: GraphIndex) -> None:
        await add(graph, "plain", priority=TaskPriority.HIGH)
        await add(graph, "hp", priority=TaskPriority.HIGH, minutes=1)
        await add(graph, "hp-child", minutes=2)
        await decompose(graph, "hp", "hp-child")

        chosen = await TaskSelector(graph).find_next_task()

        assert chosen.id == "hp-child"

    @pytest.mark.asyncio
    async def test_decomposed_entry_before_independent(self, graph: GraphIndex) -> None:
        await add(graph, "plain", priority=TaskPriority.HIGH)
        await add(graph, "p", priority=TaskPriority.LOW)
        await add(graph, "c1")
        await add(graph, "c2", minutes=1)
        await decompose(graph, "p", "c1", "c2")
        await graph.add_dependency("c1", "c2")

        chosen = await TaskSelector(graph).find_next_task()

        assert chosen.id == "c2"

    @pytest.mark.asyncio
    async def test_independent_skips_decomposed_parent(self, graph: GraphIndex) -> None:
        await add(graph, "p", priority=TaskPriority.HIGH, has_children=True)
        await add(graph, "plain", priority=TaskPriority.LOW)

        chosen = await TaskSelector(graph).find_next_task()

        assert chosen.id == "plain"

    @pytest.mark.asyncio
    async def test_any_pending_as_last_resort(self, graph: GraphIndex) -> None:
        await add(graph, "blocked")
        await add(graph, "other", status=TaskStatus.IN_PROGRESS)
        await graph.add_dependency("blocked", "other")

        chosen = await TaskSelector(graph).find_next_task()

        assert chosen.id == "blocked"

    @pytest.mark.asyncio
    async def test_nothing_pending(self, graph: GraphIndex) -> None:
        await add(graph, "done", status=TaskStatus.DONE)

        result = await TaskSelector(graph).select()

        assert result.task is None
        assert result.reason == NO_TASK_REASON


class TestOtherStrategies:
    """Tests for simple, depth-first and breadth-first strategies."""

    @pytest.mark.asyncio
    async def test_simple_respects_readiness(self, graph: GraphIndex) -> None:
        await add(graph, "blocked", priority=TaskPriority.HIGH)
        await add(graph, "other", status=TaskStatus.IN_PROGRESS)
        await graph.add_dependency("blocked", "other")
        selector = TaskSelector(graph, SelectionConfig(strategy="simple"))

        assert await selector.find_next_task() is None

    @pytest.mark.asyncio
    async def test_depth_first_prefers_deep_leaf(self, graph: GraphIndex) -> None:
        await add(graph, "root")
        await add(graph, "mid")
        await add(graph, "leaf", priority=TaskPriority.LOW)
        await add(graph, "shallow", priority=TaskPriority.HIGH)
        await decompose(graph, "root", "mid", "shallow")
        await decompose(graph, "mid", "leaf")
        selector = TaskSelector(graph, SelectionConfig(strategy="depth-first"))

        assert (await selector.find_next_task()).id == "leaf"

    @pytest.mark.asyncio
    async def test_depth_first_falls_back_to_simple(self, graph: GraphIndex) -> None:
        await add(graph, "solo")
        selector = TaskSelector(graph, SelectionConfig(strategy="depth-first"))

        assert (await selector.find_next_task()).id == "solo"

    @pytest.mark.asyncio
    async def test_breadth_first_prefers_shallow(self, graph: GraphIndex) -> None:
        await add(graph, "root", status=TaskStatus.IN_PROGRESS)
        await add(graph, "child", priority=TaskPriority.HIGH)
        await add(graph, "top", priority=TaskPriority.LOW)
        await decompose(graph, "root", "child")
        selector = TaskSelector(graph, SelectionConfig(strategy="breadth-first"))

        assert (await selector.find_next_task()).id == "top"


class TestFallback:
    """Tests for degraded selection paths."""

    @pytest.mark.asyncio
    async def test_store_without_selection_uses_simple(
        self, memory_store: InMemoryGraphStore
    ) -> None:
        graph = GraphIndex(memory_store)
        await add(graph, "low", priority=TaskPriority.LOW)
        await add(graph, "high", priority=TaskPriority.HIGH, minutes=1)
        selector = TaskSelector(graph, SelectionConfig(strategy="depth-first"))

        result = await selector.select(SelectionContext(recent_task_ids=["low"]))

        assert result.task.id == "high"
        assert result.strategy is SelectionStrategy.SIMPLE
        assert result.reason == GENERIC_REASON

    @pytest.mark.asyncio
    async def test_traversal_error_falls_back(
        self, graph: GraphIndex, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await add(graph, "a")

        async def failing(*args, **kwargs):
            raise GraphStoreError("query timed out")

        monkeypatch.setattr(graph, "selection_query", failing)

        assert (await TaskSelector(graph).find_next_task()).id == "a"


class TestReasons:
    """Tests for get_selection_reason."""

    @pytest.mark.asyncio
    async def test_in_progress_parent(self, graph: GraphIndex) -> None:
        await add(graph, "p", status=TaskStatus.IN_PROGRESS)
        await add(graph, "c")
        await decompose(graph, "p", "c")
        selector = TaskSelector(graph)

        reason = await selector.get_selection_reason(await graph.get_node("c"))

        assert reason == "Subtask of in-progress parent: Task p"

    @pytest.mark.asyncio
    async def test_decomposed_parent(self, graph: GraphIndex) -> None:
        await add(graph, "p")
        await add(graph, "c")
        await decompose(graph, "p", "c")

        reason = await TaskSelector(graph).get_selection_reason(await graph.get_node("c"))

        assert reason == "First actionable subtask of decomposed task: Task p"

    @pytest.mark.asyncio
    async def test_top_level_reasons(self, graph: GraphIndex) -> None:
        await add(graph, "h", priority=TaskPriority.HIGH)
        await add(graph, "m")
        selector = TaskSelector(graph)
        high = await graph.get_node("h")
        medium = await graph.get_node("m")

        assert await selector.get_selection_reason(high) == "High priority independent task"
        assert (
            await selector.get_selection_reason(medium, SelectionContext(recent_task_ids=["x"]))
            == "Related to recent work context"
        )
        assert (
            await selector.get_selection_reason(medium)
            == "Next available task by priority and creation time"
        )
