"""Filesystem watcher: feeds renames, moves and saved edits into the debt service.

Designed to run as a long-lived process:
    python -m debtsync.watcher PROJECT_ROOT

inotify (Linux):
    IN_MOVED_FROM + IN_MOVED_TO with the same cookie in one read batch
        -> MoveEvent (rename if the parent is unchanged, move otherwise)
    IN_CLOSE_WRITE / unpaired IN_MOVED_TO of a file carrying debts
        -> line diff against the last snapshot -> EditEvents
    IN_CREATE / IN_MOVED_TO of a directory
        -> start watching it

Falls back to polling if inotify is unavailable (macOS, Docker): inode
snapshots detect moves, mtime changes trigger the same diff.

SIGHUP re-reads debt.toml (moving JSON files whose configured path changed).
"""

from __future__ import annotations

import logging
import os
import sys
import time
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any

from debtsync import paths
from debtsync.edits import events_from_diff
from debtsync.moves import MoveEvent
from debtsync.workspace import Workspace

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from debtsync.edits import EditEvent
    from debtsync.paths import PathPolicy
    from debtsync.service import DebtService

logger = logging.getLogger("debtsync.watcher")

_INOTIFY_TIMEOUT_MS = 1000
_MAX_SNAPSHOT_BYTES = 4_000_000

# ---------------------------------------------------------------------------
# SIGHUP config reload
# ---------------------------------------------------------------------------

# Mutable container so the signal handler and loop can share state without globals.
_reload_state: list[bool] = [False]     # [0] = SIGHUP reload requested


class _ReloadRequestedError(Exception):
    """Raised from within a watcher loop to trigger a config reload."""


def _handle_sighup(signum: int, frame: object) -> None:  # noqa: ARG001
    _reload_state[0] = True
    logger.info("SIGHUP received — config reload requested")


# ---------------------------------------------------------------------------
# Exclusion
# ---------------------------------------------------------------------------

def is_excluded(path: str | Path, root: str | Path, patterns: Iterable[str], *, is_dir: bool = False) -> bool:
    """Match path (relative to root) against glob patterns like ``**/.git/**``."""
    rel = os.path.relpath(path, root).replace(os.sep, "/")
    if rel == ".":
        return False
    candidate = "./" + rel + ("/" if is_dir else "")
    return any(fnmatch(candidate, pat) or fnmatch(rel, pat) for pat in patterns)


# ---------------------------------------------------------------------------
# Content snapshots
# ---------------------------------------------------------------------------

def _read_lines(path: str) -> list[str] | None:
    try:
        if os.path.getsize(path) > _MAX_SNAPSHOT_BYTES:
            return None
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()
    except OSError:
        return None


class ContentTracker:
    """Line snapshots of every file that currently carries a debt item."""

    def __init__(self, policy: PathPolicy) -> None:
        self.policy = policy
        self._snapshots: dict[str, tuple[str, list[str]]] = {}   # key -> (path, lines)

    def __contains__(self, path: str | Path) -> bool:
        return self.policy.key(path) in self._snapshots

    def tracked(self) -> list[str]:
        return [p for p, _ in self._snapshots.values()]

    def refresh(self, service: DebtService) -> None:
        """Snapshot newly anchored files and forget files without debts."""
        wanted: dict[str, str] = {}
        for repo, items in service.snapshot().items():
            for item in items:
                abs_path = self.policy.to_absolute(item.file, repo)
                wanted[self.policy.key(abs_path)] = abs_path
        for key in list(self._snapshots):
            if key not in wanted:
                del self._snapshots[key]
        for key, abs_path in wanted.items():
            if key in self._snapshots:
                continue
            lines = _read_lines(abs_path)
            if lines is not None:
                self._snapshots[key] = (abs_path, lines)

    def diff(self, path: str | Path) -> list[EditEvent]:
        """Edit events turning the stored snapshot of path into its current content."""
        key = self.policy.key(path)
        entry = self._snapshots.get(key)
        if entry is None:
            return []
        abs_path, old_lines = entry
        new_lines = _read_lines(abs_path)
        if new_lines is None:
            return []
        self._snapshots[key] = (abs_path, new_lines)
        return events_from_diff(abs_path, old_lines, new_lines)

    def moved(self, events: Iterable[MoveEvent]) -> None:
        """Carry snapshots along with renamed files and directories."""
        for event in events:
            old_abs, new_abs = paths.normalize(event.old_path), paths.normalize(event.new_path)
            for key, (abs_path, lines) in list(self._snapshots.items()):
                if event.is_directory:
                    target = self.policy.rebase(abs_path, old_abs, new_abs)
                else:
                    target = new_abs if self.policy.same(abs_path, old_abs) else None
                if target is None:
                    continue
                del self._snapshots[key]
                self._snapshots[self.policy.key(target)] = (target, lines)


def _dispatch(service: DebtService, tracker: ContentTracker, moves: Sequence[MoveEvent], changed: Iterable[str]) -> None:
    if moves:
        try:
            n = service.apply_moves(moves)
            tracker.moved(moves)
            if n:
                logger.info("remapped %d debt item(s) after %d move(s)", n, len(moves))
        except Exception:
            logger.exception("failed to apply %d move(s)", len(moves))
    for path in changed:
        if path not in tracker:
            continue
        try:
            events = tracker.diff(path)
            if events:
                n = service.apply_edits(events)
                logger.info("file edited: %s (%d hunk(s), %d line update(s))", path, len(events), n)
        except Exception:
            logger.exception("failed to process edit of %s", path)
    tracker.refresh(service)


# ---------------------------------------------------------------------------
# inotify watcher
# ---------------------------------------------------------------------------

@dataclass
class _Batch:
    moves: list[MoveEvent]
    changed: list[str]
    new_dirs: list[Path]


def classify_inotify(batch: Iterable[Any], watched: dict[int, Path], flags: Any, excluded: Any) -> _Batch:
    """Turn one inotify read batch into moves, changed files and new directories.

    ``excluded(path, is_dir)`` filters editor temp/backup files: a move whose
    source or target is excluded is not a rename of the debt-carrying file.
    """
    moves: list[MoveEvent] = []
    changed: list[str] = []
    new_dirs: list[Path] = []
    pending_from: dict[int, tuple[Path, bool]] = {}

    for event in batch:
        if not event.name or event.wd not in watched:
            continue
        path = watched[event.wd] / event.name
        is_dir = bool(event.mask & flags.ISDIR)

        if event.mask & flags.MOVED_FROM:
            pending_from[event.cookie] = (path, is_dir)
        elif event.mask & flags.MOVED_TO:
            source = pending_from.pop(event.cookie, None)
            if source is not None and not excluded(source[0], is_dir) and not excluded(path, is_dir):
                moves.append(MoveEvent.between(source[0], path, is_directory=is_dir))
            elif is_dir:
                new_dirs.append(path)
            elif not excluded(path, False):
                # Atomic save (temp file renamed over the original) or moved in from outside
                changed.append(str(path))
        elif event.mask & flags.CREATE:
            if is_dir:
                new_dirs.append(path)
        elif event.mask & flags.CLOSE_WRITE and not is_dir:
            changed.append(str(path))

    return _Batch(moves, changed, new_dirs)


def watch_inotify(ws: Workspace, tracker: ContentTracker) -> None:
    """Watch all repository roots using inotify_simple (Linux). Blocks forever."""
    import inotify_simple  # type: ignore[import]

    inotify = inotify_simple.INotify()
    flags = inotify_simple.flags  # type: ignore[attr-defined]
    mask = flags.CLOSE_WRITE | flags.MOVED_FROM | flags.MOVED_TO | flags.CREATE

    exclude = ws.cfg.watch.exclude
    roots = [repo.absolute_path for repo in ws.service.repositories()]
    watched: dict[int, Path] = {}

    def root_of(path: Path) -> Path:
        return next((r for r in roots if ws.service.policy.is_under(path, r)), path)

    def excluded(path: Path, is_dir: bool) -> bool:
        return is_excluded(path, root_of(path), exclude, is_dir=is_dir)

    def add_tree(directory: Path) -> None:
        for current, dirnames, _ in os.walk(directory):
            dirnames[:] = [d for d in dirnames if not excluded(Path(current) / d, True)]
            try:
                wd = inotify.add_watch(current, mask)
            except OSError:
                continue
            watched[wd] = Path(current)

    for root in roots:
        if root.exists():
            add_tree(root)

    logger.info("inotify watching %d repositories (%d dirs), tracking %d files",
                len(roots), len(watched), len(tracker.tracked()))

    while True:
        batch = classify_inotify(inotify.read(timeout=_INOTIFY_TIMEOUT_MS), watched, flags, excluded)

        for move in batch.moves:
            if not move.is_directory:
                continue
            # Watch descriptors follow the inode; keep their paths current
            old_abs, new_abs = paths.normalize(move.old_path), paths.normalize(move.new_path)
            for wd, dir_path in list(watched.items()):
                rebased = ws.service.policy.rebase(str(dir_path), old_abs, new_abs)
                if rebased is not None:
                    watched[wd] = Path(rebased)

        if batch.moves or batch.changed:
            _dispatch(ws.service, tracker, batch.moves, batch.changed)
        for new_dir in batch.new_dirs:
            if new_dir.is_dir():
                add_tree(new_dir)

        if _reload_state[0]:
            raise _ReloadRequestedError


# ---------------------------------------------------------------------------
# Polling fallback
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Stat:
    path: str
    is_dir: bool
    mtime: float


def scan(roots: Iterable[Path], exclude: Sequence[str]) -> dict[tuple[int, int], _Stat]:
    """Map (device, inode) -> current path for everything under roots."""
    seen: dict[tuple[int, int], _Stat] = {}
    for root in roots:
        if not root.exists():
            continue
        for current, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not is_excluded(Path(current) / d, root, exclude, is_dir=True)]
            entries = [(d, True) for d in dirnames] + [
                (f, False) for f in filenames if not is_excluded(Path(current) / f, root, exclude)
            ]
            for name, is_dir in entries:
                full = os.path.join(current, name)
                try:
                    st = os.stat(full, follow_symlinks=False)
                except OSError:
                    continue
                seen[(st.st_dev, st.st_ino)] = _Stat(paths.normalize(full), is_dir, st.st_mtime)
    return seen


def detect_moves(
    before: dict[tuple[int, int], _Stat],
    after: dict[tuple[int, int], _Stat],
    policy: PathPolicy,
) -> list[MoveEvent]:
    """Moves implied by inodes changing path, minus those explained by a moved parent directory."""
    moves = [
        MoveEvent.between(old.path, new.path, is_directory=new.is_dir)
        for inode, old in before.items()
        if (new := after.get(inode)) is not None and new.path != old.path
    ]
    dir_moves = [m for m in moves if m.is_directory]
    return [
        m for m in moves
        if not any(
            d is not m and policy.rebase(m.old_path, d.old_path, d.new_path) == m.new_path
            for d in dir_moves
        )
    ]


def detect_changes(before: dict[tuple[int, int], _Stat], after: dict[tuple[int, int], _Stat]) -> list[str]:
    """Files modified in place, or replaced by a new inode at the same path."""
    old_by_path = {s.path: (inode, s) for inode, s in before.items() if not s.is_dir}
    changed: list[str] = []
    for inode, stat in after.items():
        if stat.is_dir:
            continue
        previous = old_by_path.get(stat.path)
        if previous is None:
            continue
        old_inode, old_stat = previous
        if old_inode != inode or old_stat.mtime != stat.mtime:
            changed.append(stat.path)
    return changed


def watch_poll(ws: Workspace, tracker: ContentTracker, interval: float | None = None) -> None:
    """Polling fallback for macOS/Docker. Rescans every interval seconds."""
    interval = interval if interval is not None else ws.cfg.watch.poll_interval
    roots = [repo.absolute_path for repo in ws.service.repositories()]
    logger.info("polling %d repositories interval=%.1fs", len(roots), interval)
    previous = scan(roots, ws.cfg.watch.exclude)

    while True:
        time.sleep(interval)
        current = scan(roots, ws.cfg.watch.exclude)
        moves = detect_moves(previous, current, ws.service.policy)
        changed = detect_changes(previous, current)
        if moves or changed:
            _dispatch(ws.service, tracker, moves, changed)
        previous = current

        if _reload_state[0]:
            raise _ReloadRequestedError


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run(ws: Workspace, *, poll: bool = False) -> None:
    tracker = ContentTracker(ws.service.policy)
    tracker.refresh(ws.service)
    if poll:
        watch_poll(ws, tracker)
        return
    try:
        watch_inotify(ws, tracker)
    except ImportError:
        logger.warning("inotify_simple not available, falling back to polling")
        watch_poll(ws, tracker)


def run_from_config(config_root: Path | None = None, *, poll: bool = False) -> None:
    """Open the workspace and start watching. Handles SIGHUP for live config reload."""
    import signal as _signal

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    if hasattr(_signal, "SIGHUP"):
        _signal.signal(_signal.SIGHUP, _handle_sighup)

    ws = Workspace.open(config_root)
    while True:
        _reload_state[0] = False
        try:
            run(ws, poll=poll)
            break  # run() loops forever normally; break only if it exits cleanly
        except _ReloadRequestedError:
            logger.info("Reloading config from %s", ws.root)
            ws.reload()


if __name__ == "__main__":
    # Accept optional project root as argument
    root = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    run_from_config(root)
