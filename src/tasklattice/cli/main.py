"""tasklattice CLI - markdown task records with a dependency graph index."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tasklattice import __version__
from tasklattice.application.task_manager import TaskManager, TaskManagerError
from tasklattice.domain.models import TaskPriority, TaskStatus
from tasklattice.infrastructure.config import ConfigManager
from tasklattice.infrastructure.exceptions import TaskLatticeError
from tasklattice.infrastructure.logger import setup_logging
from tasklattice.services.task_selector import SelectionContext

T = TypeVar("T")

app = typer.Typer(
    name="tasklattice",
    help="Track development tasks as markdown records with a queryable dependency graph",
    no_args_is_help=True,
)

console = Console()

PRIORITY_STYLES = {"high": "red", "medium": "yellow", "low": "green"}


# ===== Helper Functions =====
async def _get_manager(project_root: Path | None = None) -> TaskManager:
    """Build and initialize a task manager for the current project."""
    config_manager = ConfigManager(project_root)
    config = config_manager.load_config()
    setup_logging(log_level=config.log_level, log_dir=config_manager.get_log_dir())

    manager = TaskManager.from_config(config_manager)
    await manager.initialize()
    return manager


def _run(action: Callable[[TaskManager], Awaitable[T]]) -> T:
    """Run one command against an initialized manager, reporting failures."""

    async def _main() -> T:
        manager = await _get_manager()
        try:
            return await action(manager)
        finally:
            await manager.close()

    try:
        return asyncio.run(_main())
    except TaskManagerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except TaskLatticeError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        raise typer.Exit(2) from e


def _mirror_warning(mirrored: bool) -> None:
    if not mirrored:
        console.print("[yellow]Graph update queued; it will be applied on the next sync[/yellow]")


# ===== Commands =====
@app.command()
def version() -> None:
    """Show tasklattice version."""
    console.print(f"[bold]tasklattice[/bold] version [cyan]{__version__}[/cyan]")


@app.command()
def init() -> None:
    """Create the task directories and graph index, then sync."""

    async def _init(manager: TaskManager) -> None:
        result = await manager.sync_now()
        console.print(f"[green]✓[/green] Initialized tasks in [cyan]{manager.records.tasks_dir}[/cyan]")
        console.print(f"[dim]Sync: {result.status} ({result.changes.total} changes)[/dim]")

    _run(_init)


@app.command()
def create(
    title: str = typer.Argument(..., help="Task title"),
    description: str = typer.Option("", "--description", "-d", help="Task description"),
    priority: str = typer.Option("medium", "--priority", "-p", help="high, medium or low"),
    depends_on: list[str] = typer.Option([], "--depends-on", help="Prerequisite task id"),
    parent: str | None = typer.Option(None, "--parent", help="Parent task id"),
) -> None:
    """Create a new task."""

    async def _create(manager: TaskManager) -> None:
        result = await manager.create_task(
            title=title,
            description=description,
            priority=priority,
            dependencies=list(depends_on),
            parent_id=parent,
        )
        console.print(
            f"[green]✓[/green] Created [cyan]{result.task_id}[/cyan] "
            f"([magenta]{result.task.semantic_id}[/magenta]) {result.task.title}"
        )
        _mirror_warning(result.mirrored)

    _run(_create)


@app.command()
def show(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Show a task with its dependencies and subtasks."""

    async def _show(manager: TaskManager) -> None:
        task = await manager.get_task(task_id)
        if task is None:
            console.print(f"[red]Error:[/red] Task {task_id} not found")
            raise typer.Exit(1)

        console.print(f"[bold]{task.title}[/bold]")
        console.print(f"ID: [cyan]{task.id}[/cyan]  Semantic: [magenta]{task.semantic_id or '-'}[/magenta]")
        console.print(f"Status: {task.status.value}  Priority: {task.priority.value}")
        console.print(f"Created: {task.created_at:%Y-%m-%d %H:%M}")
        if task.parent_id:
            console.print(f"Parent: {task.parent_id}")
        if task.description:
            console.print(f"\n{task.description}")
        if task.subtasks:
            console.print("\n[bold]Subtasks:[/bold]")
            for position, item in enumerate(task.subtasks):
                mark = "x" if item.is_complete else " "
                console.print(f"  {position}. {escape(f'[{mark}]')} {escape(item.title)}")
        if task.dependencies:
            console.print("\n[bold]Dependencies:[/bold]")
            for dep in task.dependencies:
                console.print(f"  - {dep.id} {escape(f'[{dep.status}]')}")
        if task.notes:
            console.print("\n[bold]Notes:[/bold]")
            for note in task.notes:
                console.print(f"  [dim]{note.timestamp:%Y-%m-%d %H:%M}[/dim] {note.content}")

    _run(_show)


@app.command("list")
def list_tasks(
    status: str | None = typer.Option(None, help="Filter by status"),
    priority: str | None = typer.Option(None, help="Filter by priority"),
) -> None:
    """List tasks by priority, then creation time."""
    if status is not None and status not in {s.value for s in TaskStatus}:
        valid_values = ", ".join(s.value for s in TaskStatus)
        raise typer.BadParameter(f"Invalid status '{status}'. Valid values: {valid_values}")
    if priority is not None and priority not in {p.value for p in TaskPriority}:
        valid_values = ", ".join(p.value for p in TaskPriority)
        raise typer.BadParameter(f"Invalid priority '{priority}'. Valid values: {valid_values}")

    async def _list(manager: TaskManager) -> None:
        tasks = await manager.list_tasks(status=status, priority=priority)
        table = Table(title="Tasks")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Semantic", style="magenta")
        table.add_column("Title")
        table.add_column("Priority", justify="center")
        table.add_column("Status", style="yellow")
        table.add_column("Created", style="blue")

        for task in tasks:
            style = PRIORITY_STYLES[task.priority.value]
            table.add_row(
                task.id,
                task.semantic_id or "-",
                task.title if len(task.title) <= 50 else task.title[:47] + "...",
                f"[{style}]{task.priority.value}[/{style}]",
                task.status.value,
                task.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    _run(_list)


@app.command()
def status(
    task_id: str = typer.Argument(..., help="Task ID"),
    new_status: str = typer.Argument(..., help="pending, in-progress, done or archive"),
) -> None:
    """Change a task's status."""

    async def _status(manager: TaskManager) -> None:
        result = await manager.update_task_status(task_id, new_status)
        console.print(f"[green]✓[/green] {task_id} is now [yellow]{new_status}[/yellow]")
        _mirror_warning(result.mirrored)

    _run(_status)


@app.command()
def note(
    task_id: str = typer.Argument(..., help="Task ID"),
    content: str = typer.Argument(..., help="Note text"),
) -> None:
    """Append a progress note to a task."""

    async def _note(manager: TaskManager) -> None:
        await manager.add_note(task_id, content)
        console.print(f"[green]✓[/green] Note added to {task_id}")

    _run(_note)


@app.command()
def depend(
    task_id: str = typer.Argument(..., help="Dependent task ID"),
    depends_on: str = typer.Argument(..., help="Prerequisite task ID"),
    remove: bool = typer.Option(False, "--remove", help="Remove the dependency instead"),
) -> None:
    """Add or remove a dependency between two tasks."""

    async def _depend(manager: TaskManager) -> None:
        if remove:
            result = await manager.remove_dependency(task_id, depends_on)
            console.print(f"[green]✓[/green] {task_id} no longer depends on {depends_on}")
        else:
            result = await manager.add_dependency(task_id, depends_on)
            console.print(f"[green]✓[/green] {task_id} now depends on {depends_on}")
        _mirror_warning(result.mirrored)

    _run(_depend)


@app.command("next")
def next_task(
    recent: list[str] = typer.Option([], "--recent", help="Recently touched task id"),
) -> None:
    """Show the next actionable task and why it was picked."""

    async def _next(manager: TaskManager) -> None:
        result = await manager.find_next_task_with_reason(
            SelectionContext(recent_task_ids=list(recent))
        )
        if result.task is None:
            console.print(f"[dim]{result.reason}[/dim]")
            return
        console.print(f"[bold]{result.task.title}[/bold] ([cyan]{result.task.id}[/cyan])")
        console.print(f"Priority: {result.task.priority.value}")
        console.print(f"[dim]{result.reason}[/dim]")

    _run(_next)


@app.command()
def deps(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Show a task's dependencies and dependents."""

    async def _deps(manager: TaskManager) -> None:
        report = await manager.get_full_dependency_graph(task_id)
        check = await manager.check_dependencies(task_id)

        table = Table(title=f"Dependency graph for {report.task.title}")
        table.add_column("Direction")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Status", style="yellow")
        for dep in report.dependencies:
            table.add_row("depends on", dep.id, dep.title, dep.status.value)
        for dep in report.dependents:
            table.add_row("required by", dep.id, dep.title, dep.status.value)
        console.print(table)

        ready = "[green]ready[/green]" if check.ready else f"[red]blocked by {len(check.blocking)}[/red]"
        console.print(f"Readiness: {ready}")
        if check.has_circular:
            console.print("[red]Task is part of a dependency cycle[/red]")

    _run(_deps)


@app.command()
def sync(
    force: bool = typer.Option(False, "--force", help="Reconcile even if nothing looks stale"),
) -> None:
    """Reconcile the graph index with the task records."""

    async def _sync(manager: TaskManager) -> None:
        result = await manager.sync_now(force=force)
        if result.status == "failed":
            console.print(f"[red]Sync failed:[/red] {result.error}")
            raise typer.Exit(1)
        changes = result.changes
        console.print(f"[green]✓[/green] {result.status}")
        console.print(
            f"[dim]created={changes.created} updated={changes.updated} deleted={changes.deleted} "
            f"dependencies={changes.dependencies} subtasks={changes.subtasks} "
            f"hierarchy={changes.hierarchy} failed={changes.failed}[/dim]"
        )

    _run(_sync)


@app.command()
def verify() -> None:
    """Compare task records with the graph index without changing anything."""

    async def _verify(manager: TaskManager) -> None:
        result = await manager.verify_sync()
        if result.in_sync:
            console.print(f"[green]✓[/green] In sync ({result.record_count} tasks)")
            return
        console.print(
            f"[yellow]Out of sync[/yellow]: {result.record_count} records, {result.node_count} nodes"
        )
        for label, ids in (
            ("Missing in graph", result.missing_in_graph),
            ("Extra in graph", result.extra_in_graph),
            ("Stale nodes", result.stale_nodes),
            ("Dependency mismatches", result.dependency_mismatches),
        ):
            if ids:
                console.print(f"  {label}: {', '.join(ids)}")
        raise typer.Exit(1)

    _run(_verify)


@app.command()
def repair() -> None:
    """Remove dangling dependency edges and break dependency cycles."""

    async def _repair(manager: TaskManager) -> None:
        result = await manager.repair_dependencies()
        if not result.issues:
            console.print("[green]✓[/green] No dependency issues found")
            return
        for issue in result.issues:
            if issue.kind == "missing_dependency":
                console.print(f"  {issue.task_id}: removed edge to missing {issue.target_id}")
            else:
                console.print(f"  {issue.task_id}: cycle {' -> '.join(issue.cycle)}; {issue.action}")
        console.print(f"[green]✓[/green] Repaired {result.issues_fixed} issue(s)")

    _run(_repair)


if __name__ == "__main__":
    app()
