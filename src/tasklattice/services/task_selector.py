"""Next-task selection over the graph index."""

from collections.abc import Awaitable, Callable
from enum import Enum

from pydantic import BaseModel, Field

from tasklattice.domain.models import GraphNode, TaskPriority, TaskStatus
from tasklattice.infrastructure.config import SelectionConfig
from tasklattice.infrastructure.exceptions import GraphStoreError
from tasklattice.infrastructure.graph_store import GraphCapability, TraversalName
from tasklattice.infrastructure.logger import get_logger
from tasklattice.services.graph_index import GraphIndex

logger = get_logger(__name__)

GENERIC_REASON = "Selected by priority and creation time"
NO_TASK_REASON = "No actionable tasks found"


class SelectionStrategy(str, Enum):
    SMART = "smart"
    SIMPLE = "simple"
    DEPTH_FIRST = "depth-first"
    BREADTH_FIRST = "breadth-first"


class SelectionContext(BaseModel):
    """Work-context hint: the tasks most recently touched."""

    recent_task_ids: list[str] = Field(default_factory=list)


class SelectionResult(BaseModel):
    task: GraphNode | None
    reason: str
    strategy: SelectionStrategy


class TaskSelector:
    """Picks the single best next task.

    The ``smart`` strategy tries, in order: siblings of recent work,
    subtasks of high-priority parents, the entry point of a decomposed
    task, independent top-level tasks and finally any pending task.
    Stores without the selection capability get the ``simple`` strategy.
    """

    def __init__(self, graph: GraphIndex, config: SelectionConfig | None = None):
        self.graph = graph
        self.config = config or SelectionConfig()

    @property
    def strategy(self) -> SelectionStrategy:
        return SelectionStrategy(self.config.strategy)

    def _selection_supported(self) -> bool:
        return self.graph.supports(GraphCapability.SELECTION)

    async def find_next_task(self, context: SelectionContext | None = None) -> GraphNode | None:
        context = context or SelectionContext()
        if not self._selection_supported():
            return await self._find_simple()

        strategies: dict[SelectionStrategy, Callable[[], Awaitable[GraphNode | None]]] = {
            SelectionStrategy.SIMPLE: self._find_simple,
            SelectionStrategy.DEPTH_FIRST: self._find_depth_first,
            SelectionStrategy.BREADTH_FIRST: self._find_breadth_first,
            SelectionStrategy.SMART: lambda: self._find_smart(context),
        }
        try:
            return await strategies[self.strategy]()
        except GraphStoreError as e:
            logger.error("task_selection_failed", strategy=self.strategy.value, error=str(e))
            return await self._find_simple()

    async def select(self, context: SelectionContext | None = None) -> SelectionResult:
        """Next task together with a human-readable justification."""
        task = await self.find_next_task(context)
        reason = await self.get_selection_reason(task, context)
        strategy = self.strategy if self._selection_supported() else SelectionStrategy.SIMPLE
        return SelectionResult(task=task, reason=reason, strategy=strategy)

    async def _find_simple(self) -> GraphNode | None:
        return await self.graph.find_next_task()

    async def _find_smart(self, context: SelectionContext) -> GraphNode | None:
        steps: list[tuple[TraversalName, dict]] = []
        if context.recent_task_ids:
            steps.append(
                (TraversalName.CONTEXT_SIBLINGS, {"task_ids": list(context.recent_task_ids)})
            )
        steps += [
            (TraversalName.HIGH_PRIORITY_SUBTASKS, {}),
            (TraversalName.DECOMPOSED_ENTRY, {}),
            (TraversalName.INDEPENDENT_TASKS, {"skip_decomposed": self.config.skip_decomposed}),
            (TraversalName.ANY_PENDING, {}),
        ]
        for name, params in steps:
            task = await self.graph.selection_query(name, **params)
            if task is not None:
                logger.debug("task_selected", step=name.value, task_id=task.id)
                return task
        return None

    async def _find_depth_first(self) -> GraphNode | None:
        task = await self.graph.selection_query(
            TraversalName.DEEPEST_LEAF, max_depth=self.config.max_depth
        )
        return task if task is not None else await self._find_simple()

    async def _find_breadth_first(self) -> GraphNode | None:
        return await self.graph.selection_query(TraversalName.SHALLOWEST_READY)

    async def get_selection_reason(
        self, task: GraphNode | None, context: SelectionContext | None = None
    ) -> str:
        if task is None:
            return NO_TASK_REASON
        if not self._selection_supported():
            return GENERIC_REASON

        try:
            parent = await self.graph.get_parent(task.id)
        except GraphStoreError as e:
            logger.debug("selection_reason_failed", task_id=task.id, error=str(e))
            return GENERIC_REASON

        if parent is not None:
            if parent.node.status is TaskStatus.IN_PROGRESS:
                return f"Subtask of in-progress parent: {parent.node.title}"
            if parent.node.has_children:
                return f"First actionable subtask of decomposed task: {parent.node.title}"
            return f"Subtask of: {parent.node.title}"
        if task.priority is TaskPriority.HIGH:
            return "High priority independent task"
        if context is not None and context.recent_task_ids:
            return "Related to recent work context"
        return "Next available task by priority and creation time"
