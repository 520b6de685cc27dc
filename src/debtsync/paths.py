"""Path comparison and repository resolution.

Stored debt paths are POSIX-style strings, relative to the owning repository
root when one is known and absolute otherwise. Every comparison goes through a
single :class:`PathPolicy` so case handling is never mixed between call sites.
"""

from __future__ import annotations

import os
import posixpath
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from debtsync.models import Repository


def default_case_sensitive() -> bool:
    """Case-insensitive on the platforms whose default filesystems are."""
    return sys.platform not in ("win32", "darwin")


def to_posix(path: str | Path) -> str:
    return str(path).replace("\\", "/")


def normalize(path: str | Path) -> str:
    """Absolute-if-given, lexically normalized POSIX string (no symlink resolution)."""
    s = to_posix(path)
    if not s:
        return ""
    norm = posixpath.normpath(s)
    return "" if norm == "." else norm


def absolute(path: str | Path, base: str | Path | None = None) -> str:
    """Normalize path, resolving relative paths against base (or the cwd)."""
    p = to_posix(path)
    if not posixpath.isabs(p) and not _is_windows_abs(p):
        p = posixpath.join(to_posix(base if base is not None else os.getcwd()), p)
    return normalize(p)


def _is_windows_abs(p: str) -> bool:
    return len(p) > 2 and p[1] == ":" and p[2] == "/"


def is_absolute(path: str) -> bool:
    p = to_posix(path)
    return posixpath.isabs(p) or _is_windows_abs(p)


@dataclass(frozen=True)
class PathPolicy:
    """Fixed path-comparison policy for one deployment."""

    case_sensitive: bool = True

    def key(self, path: str | Path) -> str:
        s = normalize(path)
        return s if self.case_sensitive else s.casefold()

    def same(self, a: str | Path, b: str | Path) -> bool:
        return self.key(a) == self.key(b)

    def is_under(self, path: str | Path, root: str | Path) -> bool:
        """True if path equals root or lies below it (component-wise, not string prefix)."""
        p, r = self.key(path), self.key(root)
        if not r:
            return False
        if p == r:
            return True
        prefix = r if r.endswith("/") else r + "/"
        return p.startswith(prefix)

    def relative_to(self, path: str | Path, root: str | Path) -> str | None:
        """Return path relative to root (original casing kept), or None if not under it."""
        if not self.is_under(path, root):
            return None
        p, r = normalize(path), normalize(root)
        if len(p) == len(r):
            return ""
        cut = len(r) if r.endswith("/") else len(r) + 1
        return p[cut:]

    def rebase(self, path: str, old_prefix: str, new_prefix: str) -> str | None:
        """Swap old_prefix for new_prefix, keeping the suffix. None if path isn't under old_prefix."""
        suffix = self.relative_to(path, old_prefix)
        if suffix is None:
            return None
        new = normalize(new_prefix)
        return posixpath.join(new, suffix) if suffix else new

    # ------------------------------------------------------------------
    # Repository resolution
    # ------------------------------------------------------------------

    def find_repository(self, abs_path: str | Path, repositories: Iterable[Repository]) -> Repository | None:
        """Pick the repository whose root is the longest path-prefix of abs_path."""
        best: Repository | None = None
        best_len = -1
        for repo in repositories:
            root = normalize(repo.absolute_path)
            if self.is_under(abs_path, root) and len(root) > best_len:
                best, best_len = repo, len(root)
        return best

    def to_stored(self, abs_path: str | Path, repo: Repository | None) -> str:
        """Express abs_path the way it is persisted for repo: relative when inside it, else absolute."""
        if repo is not None:
            rel = self.relative_to(abs_path, repo.absolute_path)
            if rel:
                return rel
        return normalize(abs_path)

    def display(self, abs_path: str | Path, repo: Repository | None, project_root: str | Path | None = None) -> str:
        """Best-effort short form for messages: repo-relative, then project-relative, then absolute."""
        stored = self.to_stored(abs_path, repo)
        if not is_absolute(stored) or project_root is None:
            return stored
        rel = self.relative_to(abs_path, project_root)
        return rel or stored

    def to_absolute(self, stored: str, repo: Repository | None) -> str:
        """Inverse of :meth:`to_stored` for items owned by repo."""
        if is_absolute(stored) or repo is None:
            return normalize(stored)
        return absolute(stored, repo.absolute_path)
