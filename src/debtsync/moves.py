"""Rename/move tracking: remap stored debt paths when files or directories move.

A batch of events is planned against a working copy of the store, in event
order, so chained moves (a -> b, then b -> c) compose. The plan is a list of
:class:`Remap` entries that the service applies in one go.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from debtsync import paths

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from pathlib import Path

    from debtsync.models import DebtItem, Repository
    from debtsync.paths import PathPolicy


class MoveKind(str, Enum):
    RENAME = "rename"
    MOVE = "move"


@dataclass(frozen=True)
class MoveEvent:
    """A file or directory that now lives at new_path instead of old_path."""

    kind: MoveKind
    old_path: str
    new_path: str
    is_directory: bool = False

    @classmethod
    def between(cls, old_path: str | Path, new_path: str | Path, *, is_directory: bool = False) -> MoveEvent:
        """Build an event, calling it a rename when the parent directory is unchanged."""
        old, new = paths.to_posix(old_path), paths.to_posix(new_path)
        same_parent = posixpath.dirname(paths.normalize(old)) == posixpath.dirname(paths.normalize(new))
        kind = MoveKind.RENAME if same_parent else MoveKind.MOVE
        return cls(kind, old, new, is_directory)


@dataclass(frozen=True)
class Remap:
    old: DebtItem
    new: DebtItem
    source: Repository
    target: Repository

    @property
    def crosses_repositories(self) -> bool:
        return self.source != self.target


@dataclass
class _Entry:
    repo: Repository
    item: DebtItem
    origin_repo: Repository
    origin_item: DebtItem


class PathSynchronizer:
    """Plans path remaps for a set of repositories under one path policy."""

    def __init__(
        self,
        repositories: Iterable[Repository],
        policy: PathPolicy,
        project_root: str | Path | None = None,
    ) -> None:
        self.repositories = list(repositories)
        self.policy = policy
        self.project_root = project_root

    def _absolute(self, path: str) -> str:
        return paths.absolute(path, self.project_root)

    def _remap_path(self, current_abs: str, event: MoveEvent, old_abs: str, new_abs: str) -> str | None:
        if event.is_directory:
            return self.policy.rebase(current_abs, old_abs, new_abs)
        return new_abs if self.policy.same(current_abs, old_abs) else None

    def plan(
        self,
        state: Mapping[Repository, Sequence[DebtItem]],
        events: Iterable[MoveEvent],
    ) -> list[Remap]:
        entries = [
            _Entry(repo, item, repo, item)
            for repo, items in state.items()
            for item in items
        ]
        for event in events:
            old_abs = self._absolute(event.old_path)
            new_abs = self._absolute(event.new_path)
            if old_abs == new_abs:
                continue
            for entry in entries:
                current_abs = self.policy.to_absolute(entry.item.file, entry.repo)
                moved_abs = self._remap_path(current_abs, event, old_abs, new_abs)
                if moved_abs is None:
                    continue
                # Outside every known root the item stays where it is, with an absolute path
                target = self.policy.find_repository(moved_abs, self.repositories) or entry.repo
                entry.repo = target
                entry.item = entry.item.with_file(self.policy.to_stored(moved_abs, target))

        return [
            Remap(e.origin_item, e.item, e.origin_repo, e.repo)
            for e in entries
            if e.item != e.origin_item or e.repo != e.origin_repo
        ]
