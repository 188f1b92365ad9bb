"""Pytest configuration and fixtures."""

import os
import time
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from tasklattice.application.task_manager import TaskManager
from tasklattice.domain.models import (
    DependencyRef,
    SubtaskItem,
    TaskPriority,
    TaskRecord,
    TaskStatus,
)
from tasklattice.infrastructure.config import SelectionConfig, SyncConfig
from tasklattice.infrastructure.memory_graph_store import InMemoryGraphStore
from tasklattice.infrastructure.outbox import Outbox
from tasklattice.infrastructure.record_store import MarkdownRecordStore
from tasklattice.infrastructure.sqlite_graph_store import SQLiteGraphStore
from tasklattice.services.graph_index import GraphIndex
from tasklattice.services.sync_engine import SyncEngine
from tasklattice.services.task_selector import TaskSelector

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    """Wall clock that tests can push forward."""

    def __init__(self) -> None:
        self.offset = 0.0

    def __call__(self) -> float:
        return time.time() + self.offset

    def advance(self, seconds: float) -> None:
        self.offset += seconds


def make_record(
    task_id: str,
    title: str | None = None,
    priority: TaskPriority = TaskPriority.MEDIUM,
    status: TaskStatus = TaskStatus.PENDING,
    dependencies: list[str] | None = None,
    subtasks: list[str] | None = None,
    parent_id: str | None = None,
    minutes: int = 0,
) -> TaskRecord:
    """Build a record; ``minutes`` offsets its creation time for ordering."""
    return TaskRecord(
        id=task_id,
        title=title or f"Task {task_id}",
        priority=priority,
        status=status,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        dependencies=[DependencyRef(id=dep) for dep in dependencies or []],
        subtasks=[SubtaskItem(title=item) for item in subtasks or []],
        parent_id=parent_id,
    )


def touch_external(path: str | Path, seconds_ahead: float = 5.0) -> None:
    """Push a file's mtime forward, as an editor outside the process would."""
    stamp = time.time() + seconds_ahead
    os.utime(path, (stamp, stamp))


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def tasks_dir(tmp_path: Path) -> Path:
    return tmp_path / ".tasks"


@pytest.fixture
async def record_store(tasks_dir: Path) -> MarkdownRecordStore:
    store = MarkdownRecordStore(tasks_dir)
    await store.initialize()
    return store


@pytest.fixture
async def sqlite_store() -> AsyncGenerator[SQLiteGraphStore, None]:
    """In-memory SQLite graph store."""
    store = SQLiteGraphStore(Path(":memory:"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def memory_store() -> AsyncGenerator[InMemoryGraphStore, None]:
    store = InMemoryGraphStore()
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def graph(sqlite_store: SQLiteGraphStore) -> GraphIndex:
    return GraphIndex(sqlite_store)


@pytest.fixture
def outbox(tasks_dir: Path) -> Outbox:
    return Outbox(tasks_dir / ".outbox.jsonl")


@pytest.fixture
def sync_engine(
    record_store: MarkdownRecordStore, graph: GraphIndex, outbox: Outbox, clock: Clock
) -> SyncEngine:
    return SyncEngine(
        record_store,
        graph,
        config=SyncConfig(medium_interval_seconds=30.0, change_marker_ttl_seconds=10.0),
        outbox=outbox,
        clock=clock,
    )


@pytest.fixture
async def task_manager(
    record_store: MarkdownRecordStore, graph: GraphIndex, sync_engine: SyncEngine
) -> AsyncGenerator[TaskManager, None]:
    """Task manager over an in-memory SQLite graph and a temp record directory."""
    selector = TaskSelector(graph, SelectionConfig())
    manager = TaskManager(record_store, graph, sync_engine, selector)
    await manager.initialize()
    yield manager
    await manager.close()
