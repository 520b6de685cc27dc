"""DebtService: the authoritative repository -> items map.

Every public operation takes the service lock, so edits, moves, CRUD calls and
refreshes are applied one at a time. Mutations persist the repositories they
touched before returning and then fire a single change notification (outside
the lock, so listeners may call back into the service).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from debtsync import paths
from debtsync.edits import plan_line_shifts
from debtsync.models import DEFAULT_DEBT_FILE_PATH, DebtItem, LinkView, Repository
from debtsync.moves import PathSynchronizer
from debtsync.paths import PathPolicy
from debtsync.registry import NullModuleResolver
from debtsync.storage import DebtFileStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from debtsync.edits import EditEvent
    from debtsync.moves import MoveEvent
    from debtsync.registry import (
        ChangeListener,
        ModuleLabelResolver,
        RepositoryRegistry,
        SelectionListener,
    )

logger = logging.getLogger("debtsync.service")

# Shown for links whose target no longer exists
MISSING_TITLE = ""


def _index_of(items: list[DebtItem], target: DebtItem) -> int:
    """Index of the first item structurally equal to target, or -1."""
    for i, item in enumerate(items):
        if item == target:
            return i
    return -1


def _identity_index(items: list[DebtItem], target: DebtItem) -> int:
    for i, item in enumerate(items):
        if item is target:
            return i
    return -1


class DebtService:
    """Owns the debt items of every repository in a workspace."""

    def __init__(
        self,
        registry: RepositoryRegistry,
        *,
        store: DebtFileStore | None = None,
        policy: PathPolicy | None = None,
        project_root: Path | str | None = None,
        module_resolver: ModuleLabelResolver | None = None,
        username: str = "",
    ) -> None:
        self.registry = registry
        self.store = store or DebtFileStore()
        self.policy = policy or PathPolicy()
        self.project_root = Path(project_root) if project_root is not None else None
        self.module_resolver = module_resolver or NullModuleResolver()
        self.username = username
        self._lock = threading.RLock()
        self._debts: dict[Repository, list[DebtItem]] = {}
        self._listeners: list[ChangeListener] = []
        self._selection_listeners: list[SelectionListener] = []

    # ------------------------------------------------------------------
    # Notification channels
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_selection(self, listener: SelectionListener) -> Callable[[], None]:
        self._selection_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._selection_listeners:
                self._selection_listeners.remove(listener)

        return unsubscribe

    def select(self, file: str, line: int) -> None:
        """Relay a request to focus (file, line) to whoever displays it."""
        for listener in list(self._selection_listeners):
            try:
                listener(file, line)
            except Exception:
                logger.exception("selection listener failed")

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("change listener failed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def repositories(self) -> list[Repository]:
        with self._lock:
            return list(self._debts)

    def snapshot(self) -> dict[Repository, list[DebtItem]]:
        with self._lock:
            return {repo: list(items) for repo, items in self._debts.items()}

    def all(self) -> list[DebtItem]:
        """Flattened copy of every repository's items."""
        with self._lock:
            return [item for items in self._debts.values() for item in items]

    def items_for(self, repo_root: Path | str) -> list[DebtItem]:
        with self._lock:
            repo = self._repository_for_root(repo_root)
            return list(self._debts[repo]) if repo is not None else []

    def find(self, debt_id: str) -> DebtItem | None:
        with self._lock:
            for items in self._debts.values():
                for item in items:
                    if item.id == debt_id:
                        return item
        return None

    def repository_of(self, item: DebtItem) -> Repository | None:
        with self._lock:
            for repo, items in self._debts.items():
                if _index_of(items, item) >= 0:
                    return repo
        return None

    def title_for(self, debt_id: str) -> str:
        """Title of the item with debt_id, or a placeholder if it no longer exists."""
        item = self.find(debt_id)
        return item.title if item is not None else MISSING_TITLE

    def resolve_links(self, item: DebtItem) -> list[LinkView]:
        return [
            LinkView(target_id, self.title_for(target_id), relationship)
            for target_id, relationship in item.links.items()
        ]

    def find_repository(self, abs_path: Path | str) -> Repository | None:
        """Repository whose root is the longest prefix of abs_path."""
        with self._lock:
            return self.policy.find_repository(abs_path, self._debts)

    def to_repo_relative(self, any_path: Path | str, repo_root: Path | str | None) -> str:
        abs_path = paths.absolute(any_path, self.project_root)
        if repo_root:
            rel = self.policy.relative_to(abs_path, repo_root)
            if rel:
                return rel
        return abs_path

    def absolute_path_of(self, item: DebtItem) -> str:
        return self.policy.to_absolute(item.file, self.repository_of(item))

    def _repository_for_root(self, repo_root: Path | str) -> Repository | None:
        for repo in self._debts:
            if self.policy.same(repo.absolute_path, repo_root):
                return repo
        return None

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    def refresh(self) -> None:
        """Re-read the repository list and every repository's file, replacing in-memory state."""
        with self._lock:
            repositories = self.registry.repositories()
            debts: dict[Repository, list[DebtItem]] = {}
            for repo in repositories:
                debts[repo] = self.store.load(repo)
                self.store.ensure_exists(repo)
            self._debts = debts
            total = sum(len(items) for items in debts.values())
            logger.info("loaded %d debt item(s) from %d repositories", total, len(debts))
        self._notify()

    def _save(self, repositories: Iterable[Repository]) -> None:
        for repo in repositories:
            try:
                self.store.save(repo, self._debts.get(repo, []))
            except Exception:
                logger.exception("failed to save repository %s, continuing", repo.name)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, item: DebtItem, repo_root: Path | str) -> bool:
        with self._lock:
            repo = self._repository_for_root(repo_root)
            if repo is None:
                logger.warning("cannot add debt to unknown repository %s: %s", repo_root, item.summary())
                return False
            if any(existing.id == item.id for items in self._debts.values() for existing in items):
                logger.warning("debt id %s already exists, not adding: %s", item.id, item.summary())
                return False
            self._debts[repo].append(item)
            logger.info(
                "added debt %s: %s desc=%r complexity=%s status=%s priority=%s risk=%s",
                item.id, item.summary(), item.description,
                item.complexity.value, item.status.value, item.priority.value, item.risk.value,
            )
            self._save([repo])
        self._notify()
        return True

    def create_item(
        self,
        path: Path | str,
        line: int,
        *,
        repo_root: Path | str | None = None,
        **fields: Any,
    ) -> DebtItem | None:
        """Create and add a debt anchored at path:line, the way an "add debt" action does.

        The path is stored relative to its owning repository, the module label
        comes from the configured resolver and the username defaults to the
        service's user.
        """
        abs_path = paths.absolute(path, self.project_root)
        with self._lock:
            repo = (
                self._repository_for_root(repo_root)
                if repo_root is not None
                else self.policy.find_repository(abs_path, self._debts)
            )
            if repo is None:
                logger.warning("no repository owns %s, debt not created", abs_path)
                return None
            stored = self.policy.to_stored(abs_path, repo)
        fields.setdefault("username", self.username)
        if "current_module" not in fields:
            fields["current_module"] = self.module_resolver.resolve(abs_path) or ""
        item = DebtItem(file=stored, line=line, **fields)
        if not self.add(item, repo.absolute_path):
            return None
        return item

    def remove(self, item: DebtItem) -> bool:
        with self._lock:
            for repo, items in self._debts.items():
                idx = _index_of(items, item)
                if idx < 0:
                    continue
                del items[idx]
                logger.info("removed debt %s: %s", item.id, item.summary())
                self._save([repo])
                break
            else:
                logger.warning("attempted to remove non-existing debt: %s", item.summary())
                return False
        self._notify()
        return True

    def update(self, old: DebtItem, new: DebtItem) -> bool:
        """Swap old for new at the same position."""
        with self._lock:
            for repo, items in self._debts.items():
                idx = _index_of(items, old)
                if idx < 0:
                    continue
                items[idx] = new
                logger.info(
                    "updated debt %s: %s:%d -> %s:%d title=%r -> %r status=%s -> %s",
                    new.id, old.file, old.line, new.file, new.line,
                    old.title, new.title, old.status.value, new.status.value,
                )
                self._save([repo])
                break
            else:
                logger.warning("attempted to update non-existing debt: %s", old.summary())
                return False
        self._notify()
        return True

    def migrate_username(self, old_username: str, new_username: str) -> int:
        """Rewrite username on every matching item. Returns the number of items changed."""
        if not old_username.strip() or old_username == new_username:
            return 0
        logger.info("migrating username %r -> %r", old_username, new_username)
        with self._lock:
            touched: list[Repository] = []
            changed = 0
            for repo, items in self._debts.items():
                repo_changed = False
                for i, item in enumerate(items):
                    if item.username == old_username:
                        items[i] = item.with_username(new_username)
                        changed += 1
                        repo_changed = True
                if repo_changed:
                    touched.append(repo)
            if not changed:
                logger.info("username migration: no items to update")
                return 0
            self._save(touched)
            logger.info("username migration complete, %d item(s) changed", changed)
        self._notify()
        return changed

    # ------------------------------------------------------------------
    # Synchronizers
    # ------------------------------------------------------------------

    def apply_edit(self, event: EditEvent) -> int:
        return self.apply_edits([event])

    def apply_edits(self, events: Iterable[EditEvent]) -> int:
        """Shift debt lines for a sequence of edits, in order. Returns the number of line updates."""
        pending = [e for e in events if not e.is_noop]
        if not pending:
            return 0
        with self._lock:
            touched: dict[Repository, None] = {}
            count = 0
            for event in pending:
                edited = paths.absolute(event.file, self.project_root)
                for repo, items in self._debts.items():
                    updates = plan_line_shifts(
                        items,
                        event,
                        lambda it, repo=repo: self.policy.same(self.policy.to_absolute(it.file, repo), edited),
                    )
                    for old, new in updates:
                        items[_identity_index(items, old)] = new
                    if updates:
                        touched[repo] = None
                        count += len(updates)
                        logger.info(
                            "shifted %d debt line(s) in %s start=%d removed=%d inserted=%d",
                            len(updates), self.policy.display(edited, repo, self.project_root),
                            event.start_line, event.removed, event.inserted,
                        )
            if not touched:
                return 0
            self._save(touched)
        self._notify()
        return count

    def apply_moves(self, events: Iterable[MoveEvent]) -> int:
        """Remap stored paths for a batch of renames/moves. Returns the number of items remapped."""
        batch = list(events)
        if not batch:
            return 0
        with self._lock:
            synchronizer = PathSynchronizer(self._debts, self.policy, self.project_root)
            remaps = synchronizer.plan(self._debts, batch)
            if not remaps:
                return 0
            touched: dict[Repository, None] = {}
            for remap in remaps:
                source = self._debts[remap.source]
                idx = _identity_index(source, remap.old)
                if remap.crosses_repositories:
                    del source[idx]
                    self._debts[remap.target].append(remap.new)
                    logger.info(
                        "moved debt %s from %s to %s: %s -> %s",
                        remap.new.id, remap.source.name, remap.target.name, remap.old.file, remap.new.file,
                    )
                else:
                    source[idx] = remap.new
                    logger.info("remapped debt %s: %s -> %s", remap.new.id, remap.old.file, remap.new.file)
                touched[remap.source] = None
                touched[remap.target] = None
            self._save(touched)
        self._notify()
        return len(remaps)

    # ------------------------------------------------------------------
    # Storage location changes
    # ------------------------------------------------------------------

    def relocate_storage(self, repo_root: Path | str, storage_path: str) -> bool:
        """Point a repository at a new JSON location, moving its file when that's safe.

        The existing file is moved unless the destination already exists; in
        that case the destination is kept and becomes the repository's data.
        """
        with self._lock:
            moved = self._relocate(repo_root, storage_path)
            if moved is None:
                return False
        self._notify()
        return moved

    def _relocate(self, repo_root: Path | str, storage_path: str) -> bool | None:
        repo = self._repository_for_root(repo_root)
        if repo is None:
            logger.warning("cannot relocate storage of unknown repository %s", repo_root)
            return None
        moved = self.store.relocate(repo, repo.storage_path, storage_path)
        new_repo = repo.with_storage_path(storage_path)
        self._debts = {
            (new_repo if r is repo else r): items for r, items in self._debts.items()
        }
        if not moved and new_repo.json_path.exists():
            self._debts[new_repo] = self.store.load(new_repo)
        self.store.ensure_exists(new_repo)
        return moved

    def relocate_all(
        self,
        old_overrides: Mapping[str, str] | None,
        new_overrides: Mapping[str, str] | None,
        default_path: str = DEFAULT_DEBT_FILE_PATH,
    ) -> int:
        """Move JSON files of every root whose configured path changed. Returns files moved."""
        old_overrides = old_overrides or {}
        new_overrides = new_overrides or {}
        roots: dict[str, None] = dict.fromkeys([*old_overrides, *new_overrides])
        relocated = False
        moved = 0
        with self._lock:
            for repo in self._debts:
                roots.setdefault(str(repo.absolute_path), None)
            for root in roots:
                if not root.strip():
                    continue
                old_path = old_overrides.get(root) or default_path
                new_path = new_overrides.get(root) or default_path
                if old_path == new_path:
                    continue
                if self._repository_for_root(root) is not None:
                    moved += int(bool(self._relocate(root, new_path)))
                    relocated = True
                else:
                    repo = Repository(Path(root), storage_path=old_path)
                    moved += int(self.store.relocate(repo, old_path, new_path))
        if relocated:
            self._notify()
        return moved
