"""Read and write per-repository debt.json files.

DebtFileStore is the public API:
    store = DebtFileStore()
    items = store.load(repo)
    store.save(repo, items)

debt.json layout (one file per repository, pretty-printed):
    [
      {"id": "...", "file": "src/app.py", "line": 12, "title": ..., "links": {"<id>": "Before"}, ...},
      ...
    ]

Writes are whole-file: the list is serialized in memory, written to a temp file,
then renamed over the target, all while holding flock(LOCK_EX) on the sidecar
<name>.lock. Readers take LOCK_SH on the same sidecar when it exists. A file that failed to parse
is remembered and never overwritten for the rest of the session.
"""

from __future__ import annotations

import fcntl
import json
import logging
import shutil
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import TYPE_CHECKING, Any

from debtsync.models import DebtItem

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from debtsync.models import Repository

logger = logging.getLogger("debtsync.storage")

_EMPTY_FILE = "[]"


def _lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def _file_lock(path: Path, operation: int) -> Iterator[None]:
    """Hold flock(operation) on the sidecar lock file of path."""
    with _lock_path(path).open("a") as f:
        fcntl.flock(f, operation)
        yield


class CorruptDebtFileError(ValueError):
    """The file exists but is not a JSON array."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


def dumps(items: Iterable[DebtItem]) -> str:
    return json.dumps([item.to_dict() for item in items], indent=2, ensure_ascii=False)


def parse_items(data: Any, source: Path | str = "<memory>") -> list[DebtItem]:
    """Turn a decoded JSON document into items, skipping entries that aren't objects."""
    if not isinstance(data, list):
        raise CorruptDebtFileError(Path(source), f"expected a JSON array, got {type(data).__name__}")
    items: list[DebtItem] = []
    for idx, obj in enumerate(data):
        if not isinstance(obj, dict):
            logger.warning("skipping non-object entry #%d in %s", idx, source)
            continue
        items.append(DebtItem.from_dict(obj))
    return items


def loads(text: str, source: Path | str = "<memory>") -> list[DebtItem]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptDebtFileError(Path(source), str(exc)) from exc
    return parse_items(data, source)


class DebtFileStore:
    """JSON-backed item storage, one file per repository."""

    def __init__(self) -> None:
        self.unreadable: set[Path] = set()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def resolve(repo: Repository) -> Path:
        return repo.json_path

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read(self, repo: Repository) -> list[DebtItem]:
        """Read a repository's items. Raises CorruptDebtFileError / OSError."""
        path = self.resolve(repo)
        if not path.exists():
            return []
        # The sidecar only exists once something has been saved here
        lock = _file_lock(path, fcntl.LOCK_SH) if _lock_path(path).exists() else nullcontext()
        with lock, path.open(encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return []
        return loads(text, path)

    def load(self, repo: Repository) -> list[DebtItem]:
        """Read a repository's items; any failure is logged and yields an empty list."""
        path = self.resolve(repo)
        try:
            items = self.read(repo)
        except CorruptDebtFileError as exc:
            self.unreadable.add(path)
            logger.warning("failed to parse %s, repository %s starts empty: %s", path, repo.name, exc.reason)
            return []
        except OSError:
            self.unreadable.add(path)
            logger.exception("failed to read %s, repository %s starts empty", path, repo.name)
            return []
        self.unreadable.discard(path)
        logger.info("loaded %d debt item(s) from %s", len(items), path)
        return items

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def ensure_exists(self, repo: Repository) -> Path:
        """Create parent dirs and an empty array file. Never touches an existing file."""
        path = self.resolve(repo)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as f:
                f.write(_EMPTY_FILE)
            logger.info("created %s", path)
        except FileExistsError:
            pass
        except OSError:
            logger.exception("failed to create %s", path)
        return path

    def save(self, repo: Repository, items: Iterable[DebtItem]) -> bool:
        """Replace the repository file with items. Returns False if nothing was written."""
        path = self.resolve(repo)
        if path in self.unreadable:
            logger.warning("not saving %s: file could not be parsed this session, changes kept in memory", path)
            return False
        payload = dumps(items)
        try:
            self._write_atomic(path, payload)
        except OSError:
            logger.exception("failed to write %s, changes kept in memory", path)
            return False
        logger.info("saved debts for %s to %s", repo.name, path)
        return True

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with _file_lock(path, fcntl.LOCK_EX):
            try:
                tmp.write_text(payload, encoding="utf-8")
                tmp.replace(path)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise

    def relocate(self, repo: Repository, old_path: str, new_path: str) -> bool:
        """Move the repository file from old_path to new_path (both absolute or root-relative).

        Skips when both resolve to the same file, when the old file is missing,
        or when the destination already exists.
        """
        old_key = repo.with_storage_path(old_path).json_path
        new_key = repo.with_storage_path(new_path).json_path
        old, new = old_key.resolve(), new_key.resolve()
        if old == new:
            return False
        if not old.exists():
            logger.debug("relocate: nothing at %s for %s", old, repo.name)
            return False
        if new.exists():
            logger.warning("relocate: target %s already exists, not overwriting (repository %s)", new, repo.name)
            return False
        try:
            new.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(old), str(new))
            _lock_path(old).unlink(missing_ok=True)
        except OSError:
            logger.exception("relocate: failed to move %s -> %s", old, new)
            return False
        if old_key in self.unreadable:
            self.unreadable.discard(old_key)
            self.unreadable.add(new_key)
        logger.info("moved debt file %s -> %s", old, new)
        return True
