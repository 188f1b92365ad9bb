"""Unit tests for MarkdownRecordStore.

Tests cover:
- Directory layout and file naming
- Create/read/save round trips through markdown
- Status moves between directories
- Dependency annotation when rendering
- Modification-time queries
- Unreadable files are skipped
"""

from pathlib import Path

import pytest
from conftest import make_record
from tasklattice.domain.models import SubtaskItem, TaskPriority, TaskStatus
from tasklattice.infrastructure.exceptions import RecordNotFoundError, RecordStoreError
from tasklattice.infrastructure.record_store import (
    MarkdownRecordStore,
    parse_record,
    render_record,
    slugify,
)


class TestLayout:
    """Tests for directory layout and naming."""

    @pytest.mark.asyncio
    async def test_initialize_creates_status_dirs(self, record_store: MarkdownRecordStore) -> None:
        for status in ("pending", "in-progress", "done", "archive"):
            assert (record_store.tasks_dir / status).is_dir()

    def test_slugify(self) -> None:
        assert slugify("Fix  the Parser!") == "fix-the-parser"
        assert slugify("***") == "task"

    @pytest.mark.asyncio
    async def test_create_writes_into_status_dir(self, record_store: MarkdownRecordStore) -> None:
        location = await record_store.create(make_record("t1", title="Write docs"))

        path = Path(location)
        assert path.parent.name == "pending"
        assert path.name == "t1_write-docs.md"
        assert path.exists()

    @pytest.mark.asyncio
    async def test_create_duplicate_rejected(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t1"))
        with pytest.raises(RecordStoreError):
            await record_store.create(make_record("t1", title="Other"))


class TestReadWrite:
    """Tests for record round trips."""

    @pytest.mark.asyncio
    async def test_read_back_fields(self, record_store: MarkdownRecordStore) -> None:
        record = make_record(
            "t1",
            title="Parse config",
            priority=TaskPriority.HIGH,
            subtasks=["read file", "validate"],
            parent_id="p1",
        )
        record.description = "Load YAML\nand validate it."
        record.semantic_id = "DATA-1.01"
        record.files = ["src/config.py"]
        await record_store.create(record)

        loaded = await record_store.read_by_id("t1")

        assert loaded is not None
        assert loaded.title == "Parse config"
        assert loaded.priority == TaskPriority.HIGH
        assert loaded.semantic_id == "DATA-1.01"
        assert loaded.parent_id == "p1"
        assert loaded.description == "Load YAML\nand validate it."
        assert [s.title for s in loaded.subtasks] == ["read file", "validate"]
        assert loaded.files == ["src/config.py"]
        assert loaded.created_at == record.created_at
        assert loaded.location is not None

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, record_store: MarkdownRecordStore) -> None:
        assert await record_store.read_by_id("nope") is None
        assert await record_store.exists("nope") is False

    @pytest.mark.asyncio
    async def test_subtask_completion_persists(self, record_store: MarkdownRecordStore) -> None:
        record = make_record("t1", subtasks=["a", "b"])
        await record_store.create(record)
        record.subtasks[1] = SubtaskItem(title="b", is_complete=True)
        await record_store.save(record)

        loaded = await record_store.read_by_id("t1")

        assert [s.is_complete for s in loaded.subtasks] == [False, True]

    @pytest.mark.asyncio
    async def test_save_missing_raises(self, record_store: MarkdownRecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await record_store.save(make_record("ghost"))

    @pytest.mark.asyncio
    async def test_add_note(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t1"))
        await record_store.add_note("t1", "Started work")

        loaded = await record_store.read_by_id("t1")

        assert [n.content for n in loaded.notes] == ["Started work"]

    @pytest.mark.asyncio
    async def test_delete(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t1"))
        await record_store.delete("t1")

        assert await record_store.read_by_id("t1") is None
        with pytest.raises(RecordNotFoundError):
            await record_store.delete("t1")


class TestStatusMoves:
    """Tests for status directory transitions."""

    @pytest.mark.asyncio
    async def test_move_relocates_file(self, record_store: MarkdownRecordStore) -> None:
        old = Path(await record_store.create(make_record("t1")))
        new = Path(await record_store.move_to_status("t1", TaskStatus.IN_PROGRESS))

        assert not old.exists()
        assert new.parent.name == "in-progress"
        loaded = await record_store.read_by_id("t1")
        assert loaded.status == TaskStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_directory_wins_over_status_line(self, record_store: MarkdownRecordStore) -> None:
        path = Path(await record_store.create(make_record("t1")))
        moved = record_store.tasks_dir / "done" / path.name
        path.rename(moved)

        loaded = await record_store.read_by_id("t1")

        assert loaded.status == TaskStatus.DONE
        assert loaded.location == str(moved)


class TestDependencies:
    """Tests for dependency rendering and parsing."""

    @pytest.mark.asyncio
    async def test_existing_dependency_rendered_as_link(
        self, record_store: MarkdownRecordStore
    ) -> None:
        await record_store.create(make_record("t1", title="Base"))
        location = await record_store.create(make_record("t2", dependencies=["t1"]))

        text = Path(location).read_text()
        loaded = await record_store.read_by_id("t2")

        assert "[t1 - Base](" in text
        assert loaded.dependency_ids == ["t1"]
        assert loaded.dependencies[0].status == "pending"

    @pytest.mark.asyncio
    async def test_missing_dependency_kept(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t2", dependencies=["later"]))

        loaded = await record_store.read_by_id("t2")

        assert loaded.dependency_ids == ["later"]
        assert loaded.dependencies[0].status == "not found"

    def test_render_without_resolver(self) -> None:
        text = render_record(make_record("t2", dependencies=["t1"]))
        assert "- t1 [unknown]" in text
        assert parse_record(text).dependency_ids == ["t1"]


class TestStats:
    """Tests for modification-time queries."""

    @pytest.mark.asyncio
    async def test_empty_store_latest_is_zero(self, record_store: MarkdownRecordStore) -> None:
        assert await record_store.latest_modification_time() == 0.0

    @pytest.mark.asyncio
    async def test_stat_all_and_stat(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t1"))
        await record_store.create(make_record("t2"))

        stats = await record_store.stat_all()
        one = await record_store.stat("t1")

        assert sorted(s.task_id for s in stats) == ["t1", "t2"]
        assert one is not None and one.task_id == "t1"
        assert await record_store.stat("missing") is None
        assert await record_store.latest_modification_time() == max(s.mtime for s in stats)


class TestCorruptFiles:
    """Tests for unreadable record files."""

    @pytest.mark.asyncio
    async def test_unparseable_file_skipped(self, record_store: MarkdownRecordStore) -> None:
        await record_store.create(make_record("t1"))
        (record_store.tasks_dir / "pending" / "bad_file.md").write_text("no title here\n")

        records = await record_store.list_all()

        assert [r.id for r in records] == ["t1"]

    def test_parse_missing_id_raises(self) -> None:
        with pytest.raises(RecordStoreError):
            parse_record("# Title only\n")
