"""CLI entrypoint for shikigami."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from shikigami import __version__
from shikigami.config import Settings
from shikigami.controllers import (
    AddTaskCommand,
    AuditLogCommand,
    BlockedByCommand,
    DependencyCommand,
    DependencyTreeCommand,
    FailTaskCommand,
    FinishTaskCommand,
    ImportTasksCommand,
    InitCommand,
    LedgerAddCommand,
    LedgerListCommand,
    ListTasksCommand,
    MutateTaskCommand,
    ReadyTasksCommand,
    RemoveTaskCommand,
    ShikigamiCliController,
    ShowTaskCommand,
    StartTaskCommand,
    UpdateTaskCommand,
)
from shikigami.core.errors import ShikigamiError
from shikigami.core.models import DependencyType, LedgerEntryType, TaskStatus
from shikigami.logging_setup import setup_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ShikigamiCliController()

CommandT = TypeVar("CommandT")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to SHIKIGAMI_DB_PATH or .shikigami/shiki.db).",
)
JSON_OPTION = click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print machine-readable JSON.",
)


@click.group()
@click.version_option(version=__version__, prog_name="shiki")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr.")
def shiki(verbose: bool) -> None:
    """Dependency-aware task tracker for autonomous workers."""

    try:
        level = "DEBUG" if verbose else Settings.from_env().logging.level
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    setup_logging(level)


@shiki.command("init")
@DB_PATH_OPTION
def init(db_path: Path | None) -> None:
    """Create or migrate the task database."""

    _run(CONTROLLER.init, InitCommand(db_path=db_path))


@shiki.command("add")
@DB_PATH_OPTION
@click.option("--title", "-t", required=True, help="Task title.")
@click.option("--description", "-d", required=True, help="What needs to be done.")
@click.option("--priority", "-p", type=int, default=0, show_default=True, help="Higher first.")
@click.option("--parent", default=None, help="Parent task id or prefix.")
@click.option("--doc", "external_doc_id", default=None, help="Requirements document id.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Task id or prefix this task depends on. Can be repeated.",
)
@click.option(
    "--type",
    "dependency_type",
    type=click.Choice(DependencyType.values(), case_sensitive=False),
    default=DependencyType.BLOCKS.value,
    show_default=True,
    help="Edge type for --depends-on.",
)
def add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: int,
    parent: str | None,
    external_doc_id: str | None,
    depends_on: tuple[str, ...],
    dependency_type: str,
) -> None:
    """Create a task; it starts ready when nothing blocks it."""

    _run(
        CONTROLLER.add,
        AddTaskCommand(
            db_path=db_path,
            title=title,
            description=description,
            priority=priority,
            parent=parent,
            external_doc_id=external_doc_id,
            depends_on=depends_on,
            dependency_type=dependency_type,
        ),
    )


@shiki.command("show")
@DB_PATH_OPTION
@JSON_OPTION
@click.argument("task_ref")
def show(db_path: Path | None, as_json: bool, task_ref: str) -> None:
    """Show one task with its dependencies and ledger."""

    _run(
        CONTROLLER.show,
        ShowTaskCommand(
            db_path=db_path,
            task_ref=task_ref,
            output_format="json" if as_json else "text",
        ),
    )


@shiki.command("list")
@DB_PATH_OPTION
@JSON_OPTION
@click.option(
    "--status",
    type=click.Choice(TaskStatus.values(), case_sensitive=False),
    default=None,
    help="Only tasks in this status.",
)
@click.option("--all", "show_all", is_flag=True, default=False, help="Include done and failed.")
@click.option("--deleted", is_flag=True, default=False, help="Only removed tasks.")
@click.option("--doc", "external_doc_id", default=None, help="Only tasks for this document.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max tasks to print.")
def list_tasks(  # noqa: PLR0913
    db_path: Path | None,
    as_json: bool,
    status: str | None,
    show_all: bool,
    deleted: bool,
    external_doc_id: str | None,
    limit: int | None,
) -> None:
    """List active tasks by priority."""

    _run(
        CONTROLLER.list_tasks,
        ListTasksCommand(
            db_path=db_path,
            status=status,
            show_all=show_all,
            deleted=deleted,
            external_doc_id=external_doc_id,
            limit=limit,
            output_format="json" if as_json else "text",
        ),
    )


@shiki.command("ready")
@DB_PATH_OPTION
@JSON_OPTION
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max tasks to print.")
def ready(db_path: Path | None, as_json: bool, limit: int | None) -> None:
    """List tasks that can be started now."""

    _run(
        CONTROLLER.ready,
        ReadyTasksCommand(
            db_path=db_path,
            limit=limit,
            output_format="json" if as_json else "text",
        ),
    )


@shiki.command("start")
@DB_PATH_OPTION
@click.option("--assignee", default=None, help="Worker id (defaults to SHIKIGAMI_ACTOR).")
@click.argument("task_ref")
def start(db_path: Path | None, assignee: str | None, task_ref: str) -> None:
    """Claim a task and print the handoffs to read first."""

    _run(
        CONTROLLER.start,
        StartTaskCommand(db_path=db_path, task_ref=task_ref, assignee=assignee),
    )


@shiki.command("finish")
@DB_PATH_OPTION
@click.option("--output", "output_ref", required=True, help="Commit hash or output reference.")
@click.option("--handoff", default=None, help="Note for whoever picks up dependent tasks.")
@click.argument("task_ref")
def finish(db_path: Path | None, output_ref: str, handoff: str | None, task_ref: str) -> None:
    """Mark a task done and report what it unblocked."""

    _run(
        CONTROLLER.finish,
        FinishTaskCommand(
            db_path=db_path,
            task_ref=task_ref,
            output_ref=output_ref,
            handoff=handoff,
        ),
    )


@shiki.command("fail")
@DB_PATH_OPTION
@click.option("--reason", default=None, help="Why it failed; kept as a handoff note.")
@click.argument("task_ref")
def fail(db_path: Path | None, reason: str | None, task_ref: str) -> None:
    """Mark a task failed."""

    _run(CONTROLLER.fail, FailTaskCommand(db_path=db_path, task_ref=task_ref, reason=reason))


@shiki.command("retry")
@DB_PATH_OPTION
@click.argument("task_ref")
def retry(db_path: Path | None, task_ref: str) -> None:
    """Reset a failed task so it can be claimed again."""

    _run(CONTROLLER.retry, MutateTaskCommand(db_path=db_path, task_ref=task_ref))


@shiki.command("update")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(TaskStatus.values(), case_sensitive=False),
    default=None,
    help="New status.",
)
@click.option("--assignee", default=None, help="New assignee.")
@click.option("--unassign", "clear_assignee", is_flag=True, default=False, help="Clear assignee.")
@click.option("--priority", type=int, default=None, help="New priority.")
@click.argument("task_ref")
def update(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    assignee: str | None,
    clear_assignee: bool,
    priority: int | None,
    task_ref: str,
) -> None:
    """Change status, assignee or priority of a task."""

    _run(
        CONTROLLER.update,
        UpdateTaskCommand(
            db_path=db_path,
            task_ref=task_ref,
            status=status,
            assignee=assignee,
            clear_assignee=clear_assignee,
            priority=priority,
        ),
    )


@shiki.command("remove")
@DB_PATH_OPTION
@click.option("--reason", default=None, help="Why the task is removed.")
@click.option("--hard", is_flag=True, default=False, help="Delete permanently with its ledger.")
@click.argument("task_ref")
def remove(db_path: Path | None, reason: str | None, hard: bool, task_ref: str) -> None:
    """Remove a task (restorable unless --hard)."""

    _run(
        CONTROLLER.remove,
        RemoveTaskCommand(db_path=db_path, task_ref=task_ref, reason=reason, hard=hard),
    )


@shiki.command("restore")
@DB_PATH_OPTION
@click.argument("task_ref")
def restore(db_path: Path | None, task_ref: str) -> None:
    """Bring back a removed task."""

    _run(CONTROLLER.restore, MutateTaskCommand(db_path=db_path, task_ref=task_ref))


@shiki.command("log")
@DB_PATH_OPTION
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max entries to print.")
@click.argument("task_ref")
def log(db_path: Path | None, limit: int | None, task_ref: str) -> None:
    """Show the audit trail of a task, newest first."""

    _run(CONTROLLER.log, AuditLogCommand(db_path=db_path, task_ref=task_ref, limit=limit))


@shiki.group()
def ledger() -> None:
    """Handoff and learning notes."""


@ledger.command("list")
@DB_PATH_OPTION
@click.option(
    "--type",
    "entry_type",
    type=click.Choice(LedgerEntryType.values(), case_sensitive=False),
    default=None,
    help="Only entries of this type.",
)
@click.argument("task_ref")
def ledger_list(db_path: Path | None, entry_type: str | None, task_ref: str) -> None:
    """Show ledger entries in the order they were written."""

    _run(
        CONTROLLER.ledger_list,
        LedgerListCommand(db_path=db_path, task_ref=task_ref, entry_type=entry_type),
    )


@ledger.command("add")
@DB_PATH_OPTION
@click.option(
    "--type",
    "entry_type",
    type=click.Choice(LedgerEntryType.values(), case_sensitive=False),
    default=LedgerEntryType.LEARNING.value,
    show_default=True,
    help="Entry type.",
)
@click.option("--author", default=None, help="Author id (defaults to SHIKIGAMI_ACTOR).")
@click.argument("task_ref")
@click.argument("content")
def ledger_add(
    db_path: Path | None,
    entry_type: str,
    author: str | None,
    task_ref: str,
    content: str,
) -> None:
    """Attach a note to a task."""

    _run(
        CONTROLLER.ledger_add,
        LedgerAddCommand(
            db_path=db_path,
            task_ref=task_ref,
            entry_type=entry_type,
            content=content,
            author=author,
        ),
    )


@shiki.group()
def deps() -> None:
    """Dependency edges between tasks."""


@deps.command("add")
@DB_PATH_OPTION
@click.option(
    "--type",
    "dependency_type",
    type=click.Choice(DependencyType.values(), case_sensitive=False),
    default=DependencyType.BLOCKS.value,
    show_default=True,
    help="Edge type.",
)
@click.argument("task_ref")
@click.argument("depends_on")
def deps_add(db_path: Path | None, dependency_type: str, task_ref: str, depends_on: str) -> None:
    """Make TASK_REF depend on DEPENDS_ON."""

    _run(
        CONTROLLER.deps_add,
        DependencyCommand(
            db_path=db_path,
            task_ref=task_ref,
            depends_on=depends_on,
            dependency_type=dependency_type,
        ),
    )


@deps.command("remove")
@DB_PATH_OPTION
@click.argument("task_ref")
@click.argument("depends_on")
def deps_remove(db_path: Path | None, task_ref: str, depends_on: str) -> None:
    """Drop the edge from TASK_REF to DEPENDS_ON."""

    _run(
        CONTROLLER.deps_remove,
        DependencyCommand(db_path=db_path, task_ref=task_ref, depends_on=depends_on),
    )


@deps.command("tree")
@DB_PATH_OPTION
@click.option(
    "--depth",
    "max_depth",
    type=click.IntRange(min=0),
    default=None,
    help="Max hops from the task (defaults to SHIKIGAMI_TREE_MAX_DEPTH).",
)
@click.argument("task_ref")
def deps_tree(db_path: Path | None, max_depth: int | None, task_ref: str) -> None:
    """Print everything a task depends on, transitively."""

    _run(
        CONTROLLER.deps_tree,
        DependencyTreeCommand(db_path=db_path, task_ref=task_ref, max_depth=max_depth),
    )


@deps.command("blocked")
@DB_PATH_OPTION
@click.argument("task_ref")
def deps_blocked(db_path: Path | None, task_ref: str) -> None:
    """Show what a task is still waiting on."""

    _run(CONTROLLER.deps_blocked, BlockedByCommand(db_path=db_path, task_ref=task_ref))


@shiki.command("import")
@DB_PATH_OPTION
@click.option("--dry-run", is_flag=True, default=False, help="Validate without writing.")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_tasks(db_path: Path | None, dry_run: bool, file: Path) -> None:
    """Import tasks from a JSON file (one object or a list)."""

    _run(
        CONTROLLER.import_tasks,
        ImportTasksCommand(db_path=db_path, file=file, dry_run=dry_run),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (ShikigamiError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    shiki()
