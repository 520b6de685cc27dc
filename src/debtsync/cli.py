"""debt CLI — debt markers anchored to file:line, stored per repository in JSON.

Commands:
    debt init [NAME]                 create debt.toml + empty debt files
    debt add FILE LINE TITLE         anchor a new debt item
    debt list                        table of debt items
    debt show ID                     one item with its links
    debt update ID [--title ...]     change fields of an item
    debt remove ID                   delete an item
    debt link ID TARGET --rel R      add/replace a link to another item
    debt unlink ID TARGET            drop a link
    debt migrate-user OLD NEW        rename a username on every item
    debt shift FILE START            apply a line edit (-r removed, -i inserted)
    debt mv SRC DST                  move a file/dir on disk and follow it
    debt relocate REPO PATH          move a repository's debt file
    debt status                      repositories and counts
    debt refresh                     re-read every debt file
    debt watch                       follow edits/renames on disk
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from debtsync import paths
from debtsync.config import init_config, load_config
from debtsync.edits import EditEvent
from debtsync.models import Complexity, Priority, Relationship, Risk, Status
from debtsync.moves import MoveEvent
from debtsync.workspace import Workspace

if TYPE_CHECKING:
    from debtsync.models import DebtItem, Repository

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MISSING = "(missing)"


def _open_ws() -> Workspace:
    try:
        return Workspace.open()
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _find_item(ws: Workspace, debt_id: str) -> DebtItem:
    """Find an item by full id or unique id prefix."""
    exact = ws.service.find(debt_id)
    if exact is not None:
        return exact
    matches = [item for item in ws.service.all() if item.id.startswith(debt_id)]
    if not matches:
        raise click.ClickException(f"Debt not found: {debt_id}")
    if len(matches) > 1:
        raise click.ClickException(f"Ambiguous id prefix {debt_id!r} ({len(matches)} matches)")
    return matches[0]


def _find_repo(ws: Workspace, name_or_path: str) -> Repository:
    repos = ws.service.repositories()
    for repo in repos:
        if repo.name == name_or_path:
            return repo
    abs_path = paths.absolute(name_or_path, Path.cwd())
    for repo in repos:
        if ws.service.policy.same(repo.absolute_path, abs_path):
            return repo
    raise click.ClickException(f"Unknown repository: {name_or_path}")


def _choice(enum_type: type) -> click.Choice:
    return click.Choice([e.value for e in enum_type])


def _field_options(func: Any) -> Any:
    """Options shared by `add` and `update`; all default to None (= unchanged)."""
    options = [
        click.option("--description", "-d", default=None),
        click.option("--user", "username", default=None, help="Owner (default: configured username)"),
        click.option("--wanted-level", type=click.IntRange(1, 5), default=None),
        click.option("--complexity", type=_choice(Complexity), default=None),
        click.option("--status", type=_choice(Status), default=None),
        click.option("--priority", type=_choice(Priority), default=None),
        click.option("--risk", type=_choice(Risk), default=None),
        click.option("--target-version", default=None),
        click.option("--comment", default=None),
        click.option("--estimation", type=click.IntRange(min=0), default=None),
        click.option("--jira", default=None),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _field_changes(opts: dict[str, Any]) -> dict[str, Any]:
    enums = {"complexity": Complexity, "status": Status, "priority": Priority, "risk": Risk}
    changes: dict[str, Any] = {}
    for key, value in opts.items():
        if value is None:
            continue
        changes[key] = enums[key](value) if key in enums else value
    return changes


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="debtsync")
@click.option("--verbose", "-v", count=True, help="Log to stderr (-v info, -vv debug)")
def cli(verbose: int) -> None:
    """debt — technical debt markers that follow your code."""
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(message)s")


# ---------------------------------------------------------------------------
# debt init
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
@click.option("--user", "username", default=None, help="Username recorded on new debts")
def init(name: str | None, root: str, username: str | None) -> None:
    """Create debt.toml and the debt files of every repository."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, name=name, username=username)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("debt.toml already exists — skipping init")

    ws = Workspace.open(cfg=load_config(root_path))
    for repo in ws.service.repositories():
        click.echo(f"{repo.name:<20} {repo.json_path}")


# ---------------------------------------------------------------------------
# debt add / update / remove
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file", type=click.Path())
@click.argument("line", type=click.IntRange(min=1))
@click.argument("title")
@_field_options
def add(file: str, line: int, title: str, **opts: Any) -> None:
    """Anchor a new debt item at FILE:LINE."""
    ws = _open_ws()
    changes = _field_changes(opts)
    item = ws.service.create_item(Path(file).resolve(), line, title=title, **changes)
    if item is None:
        raise click.ClickException(f"No configured repository contains {file}")
    click.echo(item.id)


@cli.command()
@click.argument("debt_id")
@click.option("--title", "-t", default=None)
@click.option("--line", type=click.IntRange(min=1), default=None)
@_field_options
def update(debt_id: str, **opts: Any) -> None:
    """Change fields of a debt item."""
    ws = _open_ws()
    item = _find_item(ws, debt_id)
    changes = _field_changes(opts)
    if not changes:
        raise click.UsageError("Nothing to update")
    if not ws.service.update(item, item.replace(**changes)):
        raise click.ClickException(f"Debt changed concurrently: {item.id}")
    click.echo(f"Updated {item.id}")


@cli.command()
@click.argument("debt_id")
def remove(debt_id: str) -> None:
    """Delete a debt item. Links pointing at it are left as they are."""
    ws = _open_ws()
    item = _find_item(ws, debt_id)
    ws.service.remove(item)
    click.echo(f"Removed {item.id} ({item.file}:{item.line})")


# ---------------------------------------------------------------------------
# debt list / show
# ---------------------------------------------------------------------------


@cli.command("list")
@click.option("--repo", "repo_name", default=None, help="Only this repository (name or path)")
@click.option("--file", "file_filter", default=None, help="Only items whose file contains this text")
@click.option("--status", type=_choice(Status), default=None)
@click.option("--user", "username", default=None)
def list_cmd(repo_name: str | None, file_filter: str | None, status: str | None, username: str | None) -> None:
    """List debt items."""
    from rich.console import Console
    from rich.table import Table

    ws = _open_ws()
    snapshot = ws.service.snapshot()
    if repo_name:
        repo = _find_repo(ws, repo_name)
        snapshot = {repo: snapshot.get(repo, [])}

    table = Table(title=f"debt — {ws.cfg.name}", show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Repository")
    table.add_column("Location")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("User")
    table.add_column("Links", justify="right")

    shown = 0
    for repo, items in snapshot.items():
        for item in items:
            if file_filter and file_filter not in item.file:
                continue
            if status and item.status.value != status:
                continue
            if username and item.username != username:
                continue
            table.add_row(
                item.id[:8], repo.name, f"{item.file}:{item.line}", item.title,
                item.status.value, item.priority.value, item.username, str(len(item.links) or ""),
            )
            shown += 1

    Console().print(table)
    click.echo(f"{shown} item(s)")


@cli.command()
@click.argument("debt_id")
def show(debt_id: str) -> None:
    """Show a debt item and the items it links to."""
    ws = _open_ws()
    item = _find_item(ws, debt_id)
    repo = ws.service.repository_of(item)
    click.echo(f"{item.title or '(untitled)'}  [{item.id}]")
    click.echo(f"  location   : {item.file}:{item.line}")
    click.echo(f"  repository : {repo.name if repo else '?'}")
    click.echo(f"  status     : {item.status.value}   priority: {item.priority.value}   "
               f"risk: {item.risk.value}   complexity: {item.complexity.value}")
    click.echo(f"  wanted     : {item.wanted_level}/5   estimation: {item.estimation}")
    for label, value in (
        ("user", item.username), ("target", item.target_version), ("module", item.current_module),
        ("jira", item.jira), ("description", item.description), ("comment", item.comment),
    ):
        if value:
            click.echo(f"  {label:<11}: {value}")
    links = ws.service.resolve_links(item)
    if links:
        click.echo("  links:")
        for link in links:
            click.echo(f"    {link.relationship.value:<10} {link.target_id[:8]}  {link.title or _MISSING}")


# ---------------------------------------------------------------------------
# debt link / unlink
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("debt_id")
@click.argument("target_id")
@click.option("--rel", "relationship", type=_choice(Relationship), required=True)
def link(debt_id: str, target_id: str, relationship: str) -> None:
    """Link DEBT_ID to TARGET_ID (replaces any existing link between them)."""
    ws = _open_ws()
    item = _find_item(ws, debt_id)
    target = _find_item(ws, target_id)
    if target.id == item.id:
        raise click.ClickException("A debt cannot link to itself")
    updated = item.to_builder().link(target.id, Relationship(relationship)).build()
    ws.service.update(item, updated)
    click.echo(f"{item.id[:8]} --{relationship}--> {target.id[:8]}")


@cli.command()
@click.argument("debt_id")
@click.argument("target_id")
def unlink(debt_id: str, target_id: str) -> None:
    """Remove the link from DEBT_ID to TARGET_ID (the target may no longer exist)."""
    ws = _open_ws()
    item = _find_item(ws, debt_id)
    matches = [t for t in item.links if t.startswith(target_id)]
    if len(matches) != 1:
        raise click.ClickException(f"No unique link matching {target_id!r}")
    ws.service.update(item, item.to_builder().unlink(matches[0]).build())
    click.echo(f"Unlinked {matches[0]}")


# ---------------------------------------------------------------------------
# debt migrate-user
# ---------------------------------------------------------------------------


@cli.command("migrate-user")
@click.argument("old")
@click.argument("new")
def migrate_user(old: str, new: str) -> None:
    """Rename a username on every debt item of every repository."""
    ws = _open_ws()
    n = ws.service.migrate_username(old, new)
    click.echo(f"Updated {n} item(s)")


# ---------------------------------------------------------------------------
# debt shift / mv / relocate
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file", type=click.Path())
@click.argument("start", type=click.IntRange(min=1))
@click.option("--removed", "-r", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--inserted", "-i", type=click.IntRange(min=0), default=0, show_default=True)
def shift(file: str, start: int, removed: int, inserted: int) -> None:
    """Tell the store that REMOVED lines at START were replaced by INSERTED lines."""
    ws = _open_ws()
    n = ws.service.apply_edit(EditEvent(str(Path(file).resolve()), start, removed, inserted))
    click.echo(f"Shifted {n} item(s)")


@cli.command()
@click.argument("src", type=click.Path(exists=True))
@click.argument("dst", type=click.Path())
def mv(src: str, dst: str) -> None:
    """Move a file or directory on disk and carry its debts along."""
    ws = _open_ws()
    src_path = Path(src).resolve()
    dst_path = Path(dst).resolve()
    if dst_path.is_dir():
        dst_path = dst_path / src_path.name
    if dst_path.exists():
        raise click.ClickException(f"Destination exists: {dst_path}")
    is_dir = src_path.is_dir()
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src_path), str(dst_path))
    n = ws.service.apply_moves([MoveEvent.between(src_path, dst_path, is_directory=is_dir)])
    click.echo(f"Moved {src_path} -> {dst_path} ({n} debt item(s) updated)")


@cli.command()
@click.argument("repo_name")
@click.argument("storage_path")
def relocate(repo_name: str, storage_path: str) -> None:
    """Move a repository's debt file to STORAGE_PATH (absolute or repo-relative)."""
    ws = _open_ws()
    repo = _find_repo(ws, repo_name)
    if ws.service.relocate_storage(repo.absolute_path, storage_path):
        click.echo(f"Moved {repo.json_path}")
    else:
        click.echo(f"Debt file not moved; {repo.name} now reads {storage_path}")
    click.echo(f"Set debt_path = \"{storage_path}\" for this repository in debt.toml to keep it")


# ---------------------------------------------------------------------------
# debt status / refresh / watch
# ---------------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show repositories, their debt files and item counts."""
    from rich.console import Console
    from rich.table import Table

    ws = _open_ws()
    console = Console()

    table = Table(title=f"debt — {ws.cfg.name}", show_header=True, header_style="bold")
    table.add_column("Repository", no_wrap=True)
    table.add_column("Root", style="dim")
    table.add_column("Debt file")
    table.add_column("Items", justify="right")

    total = 0
    for repo, items in ws.service.snapshot().items():
        total += len(items)
        path = repo.json_path
        if path in ws.service.store.unreadable:
            file_cell = f"[red]{path} (unreadable, not saved)[/red]"
        else:
            file_cell = str(path)
        table.add_row(repo.name, str(repo.absolute_path), file_cell, str(len(items)))

    console.print(table)
    console.print(f"Config: {ws.cfg.config_path}   user: {ws.cfg.username or '-'}   "
                  f"case-sensitive paths: {ws.cfg.case_sensitive}   total: {total}")


@cli.command()
def refresh() -> None:
    """Re-read every repository's debt file, creating missing ones."""
    ws = _open_ws()
    ws.service.refresh()
    for repo, items in ws.service.snapshot().items():
        click.echo(f"{repo.name:<20} {len(items):>5}  {repo.json_path}")


@cli.command()
@click.option("--poll", is_flag=True, help="Poll instead of using inotify")
def watch(poll: bool) -> None:
    """Follow file edits, renames and moves until interrupted."""
    from debtsync.watcher import run_from_config

    cfg = load_config()
    click.echo(f"Watching {cfg.root} (Ctrl-C to stop)")
    try:
        run_from_config(cfg.root, poll=poll)
    except KeyboardInterrupt:
        click.echo("Stopped")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()
