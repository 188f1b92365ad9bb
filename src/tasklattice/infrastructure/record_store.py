"""Markdown-file record store: the authoritative copy of every task.

Each record lives in ``<tasks_dir>/<status>/<id>_<slug>.md``. The directory a
file sits in determines the record's status; moving a record between status
directories is how status transitions are persisted.
"""

import asyncio
import os
import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from tasklattice.domain.models import (
    DependencyRef,
    SubtaskItem,
    TaskNote,
    TaskRecord,
    TaskStatus,
    utc_now,
)
from tasklattice.infrastructure.exceptions import RecordNotFoundError, RecordStoreError
from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)

RECORD_SUFFIX = ".md"
STATUS_DIRS = [status.value for status in TaskStatus]

_LINKED_DEP_RE = re.compile(r"^- \[(\S+) - [^\]]*\]\([^)]*\)\s*\[([^\]]+)\]\s*$")
_PLAIN_DEP_RE = re.compile(r"^- (\S+)\s*\[([^\]]+)\]\s*$")
_SUBTASK_RE = re.compile(r"^- \[([ xX])\] (.+)$")
_METADATA_FIELDS = {
    "**ID:** ": "id",
    "**Semantic:** ": "semantic_id",
    "**Status:** ": "status",
    "**Priority:** ": "priority",
    "**Created:** ": "created_at",
    "**Parent:** ": "parent_id",
}


class RecordStat(BaseModel):
    """Modification metadata for one record file."""

    task_id: str
    location: str
    mtime: float


def slugify(title: str, max_length: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def record_filename(record: TaskRecord) -> str:
    return f"{record.id}_{slugify(record.title)}{RECORD_SUFFIX}"


def task_id_from_filename(filename: str) -> str | None:
    if not filename.endswith(RECORD_SUFFIX) or "_" not in filename:
        return None
    return filename.split("_", 1)[0] or None


def render_record(
    record: TaskRecord, resolve: Callable[[str], TaskRecord | None] | None = None
) -> str:
    """Render a record as markdown.

    Args:
        record: Record to render
        resolve: Optional lookup used to annotate dependencies with their
            current title, location and status

    Returns:
        Markdown document text
    """
    lines = [f"# {record.title}", "", f"**ID:** {record.id}"]
    if record.semantic_id:
        lines.append(f"**Semantic:** {record.semantic_id}")
    lines.append(f"**Status:** {record.status.value}")
    lines.append(f"**Priority:** {record.priority.value}")
    lines.append(f"**Created:** {record.created_at.isoformat()}")
    if record.parent_id:
        lines.append(f"**Parent:** {record.parent_id}")
    lines += ["", "## Description", record.description or "No description provided.", ""]

    if record.subtasks:
        lines.append("## Tasks")
        for item in record.subtasks:
            lines.append(f"- [{'x' if item.is_complete else ' '}] {item.title}")
        lines.append("")

    if record.dependencies:
        lines.append("## Dependencies")
        for dep in record.dependencies:
            target = resolve(dep.id) if resolve else None
            if target is not None and target.location:
                rel = os.path.relpath(target.location, _status_dir_hint(record))
                lines.append(
                    f"- [{dep.id} - {target.title}]({rel.replace(' ', '%20')}) "
                    f"[{target.status.value}]"
                )
            else:
                status = "not found" if resolve else dep.status
                lines.append(f"- {dep.id} [{status}]")
        lines.append("")

    if record.files:
        lines.append("## Files")
        lines += [f"- {path}" for path in record.files]
        lines.append("")

    lines.append("## Notes")
    for note in record.notes:
        lines += [f"### {note.timestamp.isoformat()}", note.content, ""]

    return "\n".join(lines).rstrip("\n") + "\n"


def _status_dir_hint(record: TaskRecord) -> str:
    if record.location:
        return str(Path(record.location).parent.parent / record.status.value)
    return record.status.value


def parse_record(text: str) -> TaskRecord:
    """Parse a markdown document produced by :func:`render_record`.

    Raises:
        RecordStoreError: If required fields are missing or invalid
    """
    fields: dict[str, object] = {}
    description: list[str] = []
    subtasks: list[SubtaskItem] = []
    dependencies: list[DependencyRef] = []
    files: list[str] = []
    notes: list[TaskNote] = []
    section: str | None = None
    note_stamp: str | None = None
    note_lines: list[str] = []

    def flush_note() -> None:
        if note_stamp is None:
            return
        try:
            timestamp = datetime.fromisoformat(note_stamp)
        except ValueError as e:
            raise RecordStoreError(f"Malformed note timestamp: {note_stamp!r}") from e
        notes.append(TaskNote(timestamp=timestamp, content="\n".join(note_lines).strip()))

    for line in text.splitlines():
        if line.startswith("# ") and "title" not in fields:
            fields["title"] = line[2:].strip()
            continue
        if section is None:
            for prefix, name in _METADATA_FIELDS.items():
                if line.startswith(prefix):
                    fields[name] = line[len(prefix) :].strip()
                    break
        if line.startswith("## "):
            section = line[3:].strip().lower()
            continue

        if section == "description":
            description.append(line)
        elif section == "tasks" and (match := _SUBTASK_RE.match(line)):
            subtasks.append(
                SubtaskItem(title=match.group(2).strip(), is_complete=match.group(1) != " ")
            )
        elif section == "dependencies" and line.startswith("- "):
            match = _LINKED_DEP_RE.match(line) or _PLAIN_DEP_RE.match(line)
            if match:
                dependencies.append(DependencyRef(id=match.group(1), status=match.group(2)))
        elif section == "files" and line.startswith("- "):
            files.append(line[2:].strip())
        elif section == "notes":
            if line.startswith("### "):
                flush_note()
                note_stamp = line[4:].strip()
                note_lines = []
            elif note_stamp is not None:
                note_lines.append(line)
    flush_note()

    desc = "\n".join(description).strip()
    if desc == "No description provided.":
        desc = ""

    try:
        return TaskRecord(
            **fields,
            description=desc,
            subtasks=subtasks,
            dependencies=dependencies,
            files=files,
            notes=notes,
        )
    except (ValidationError, TypeError) as e:
        raise RecordStoreError(f"Malformed task record: {e}") from e


class MarkdownRecordStore:
    """Task records as markdown files grouped into status directories.

    All public methods are coroutines; blocking file I/O runs in a worker
    thread so callers on the event loop are never blocked.
    """

    def __init__(self, tasks_dir: Path) -> None:
        """Initialize record store.

        Args:
            tasks_dir: Root directory holding one sub-directory per status
        """
        self.tasks_dir = tasks_dir

    async def initialize(self) -> None:
        """Create the status directory layout."""
        await asyncio.to_thread(self._initialize_sync)
        logger.info("record_store_initialized", tasks_dir=str(self.tasks_dir))

    def _initialize_sync(self) -> None:
        for status in STATUS_DIRS:
            (self.tasks_dir / status).mkdir(parents=True, exist_ok=True)

    # Reads
    async def list_all(self) -> list[TaskRecord]:
        """Read every record. Unparseable files are logged and skipped."""
        return await asyncio.to_thread(self._list_all_sync)

    async def read_by_id(self, task_id: str) -> TaskRecord | None:
        """Read one record, or None if no file exists for ``task_id``."""
        return await asyncio.to_thread(self._read_by_id_sync, task_id)

    async def exists(self, task_id: str) -> bool:
        return await asyncio.to_thread(lambda: self._find_path(task_id) is not None)

    async def stat_all(self) -> list[RecordStat]:
        """Modification times of every record file, without parsing content."""
        return await asyncio.to_thread(self._stat_all_sync)

    async def stat(self, task_id: str) -> RecordStat | None:
        """Modification metadata for one record, or None if it does not exist."""
        return await asyncio.to_thread(self._stat_sync, task_id)

    async def latest_modification_time(self) -> float:
        """Latest mtime across all record files (0.0 when there are none)."""
        stats = await self.stat_all()
        return max((stat.mtime for stat in stats), default=0.0)

    # Writes
    async def create(self, record: TaskRecord) -> str:
        """Write a new record into its status directory.

        Returns:
            Location of the written file

        Raises:
            RecordStoreError: If a record with the same id already exists
        """
        return await asyncio.to_thread(self._create_sync, record)

    async def save(self, record: TaskRecord) -> str:
        """Rewrite an existing record, relocating it if its status changed.

        Raises:
            RecordNotFoundError: If no record exists for ``record.id``
        """
        return await asyncio.to_thread(self._save_sync, record)

    async def move_to_status(self, task_id: str, status: TaskStatus) -> str:
        """Rewrite a record with a new status and move it to that directory.

        Raises:
            RecordNotFoundError: If no record exists for ``task_id``
        """
        record = await self._require(task_id)
        record.status = status
        return await self.save(record)

    async def add_note(self, task_id: str, content: str) -> TaskRecord:
        """Append a timestamped note to a record."""
        record = await self._require(task_id)
        record.notes.append(TaskNote(timestamp=utc_now(), content=content))
        await self.save(record)
        return record

    async def delete(self, task_id: str) -> None:
        """Remove a record file.

        Raises:
            RecordNotFoundError: If no record exists for ``task_id``
        """
        await asyncio.to_thread(self._delete_sync, task_id)

    async def _require(self, task_id: str) -> TaskRecord:
        record = await self.read_by_id(task_id)
        if record is None:
            raise RecordNotFoundError(task_id)
        return record

    # Blocking helpers (run in worker threads)
    def _iter_files(self) -> list[tuple[str, Path]]:
        found = []
        for status in STATUS_DIRS:
            directory = self.tasks_dir / status
            if not directory.is_dir():
                logger.debug("status_dir_missing", status=status)
                continue
            for path in sorted(directory.iterdir()):
                if path.is_file() and path.suffix == RECORD_SUFFIX:
                    found.append((status, path))
        return found

    def _find_path(self, task_id: str) -> Path | None:
        prefix = f"{task_id}_"
        for _status, path in self._iter_files():
            if path.name.startswith(prefix):
                return path
        return None

    def _load(self, status: str, path: Path) -> TaskRecord:
        record = parse_record(path.read_text(encoding="utf-8"))
        # Directory wins over the status line inside the file
        record.status = TaskStatus(status)
        record.location = str(path)
        return record

    def _list_all_sync(self) -> list[TaskRecord]:
        records = []
        for status, path in self._iter_files():
            try:
                records.append(self._load(status, path))
            except (OSError, RecordStoreError) as e:
                logger.warning("record_unreadable", path=str(path), error=str(e))
        return records

    def _read_by_id_sync(self, task_id: str) -> TaskRecord | None:
        path = self._find_path(task_id)
        if path is None:
            return None
        return self._load(path.parent.name, path)

    def _stat_all_sync(self) -> list[RecordStat]:
        stats = []
        for _status, path in self._iter_files():
            task_id = task_id_from_filename(path.name)
            if task_id is None:
                continue
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                # Moved or deleted between listing and stat
                continue
            stats.append(RecordStat(task_id=task_id, location=str(path), mtime=mtime))
        return stats

    def _stat_sync(self, task_id: str) -> RecordStat | None:
        path = self._find_path(task_id)
        if path is None:
            return None
        try:
            return RecordStat(task_id=task_id, location=str(path), mtime=path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def _resolve_dependency(self, task_id: str) -> TaskRecord | None:
        try:
            return self._read_by_id_sync(task_id)
        except (OSError, RecordStoreError):
            return None

    def _write(self, record: TaskRecord, previous: Path | None) -> str:
        target = self.tasks_dir / record.status.value / record_filename(record)
        record.location = str(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_record(record, self._resolve_dependency), encoding="utf-8")
        if previous is not None and previous != target:
            previous.unlink(missing_ok=True)
        return str(target)

    def _create_sync(self, record: TaskRecord) -> str:
        if self._find_path(record.id) is not None:
            raise RecordStoreError(f"Task {record.id} already exists")
        location = self._write(record, None)
        logger.info("record_created", task_id=record.id, location=location)
        return location

    def _save_sync(self, record: TaskRecord) -> str:
        previous = self._find_path(record.id)
        if previous is None:
            raise RecordNotFoundError(record.id)
        location = self._write(record, previous)
        logger.debug("record_saved", task_id=record.id, location=location)
        return location

    def _delete_sync(self, task_id: str) -> None:
        path = self._find_path(task_id)
        if path is None:
            raise RecordNotFoundError(task_id)
        path.unlink()
        logger.info("record_deleted", task_id=task_id)
