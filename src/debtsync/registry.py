"""Collaborator protocols consumed by the debt service, plus default implementations."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from debtsync.config import DebtConfig
    from debtsync.models import Repository

# Fired after every successful mutation; listeners re-query the service
ChangeListener = Callable[[], None]
# Relayed request for a UI to focus (file, line)
SelectionListener = Callable[[str, int], None]


@runtime_checkable
class RepositoryRegistry(Protocol):
    """Source of the known repository roots."""

    def repositories(self) -> list[Repository]:
        """Return the current ordered list of repositories."""
        ...


@runtime_checkable
class ModuleLabelResolver(Protocol):
    """Maps an absolute file path to an opaque module label."""

    def resolve(self, abs_path: str) -> str | None: ...


class ConfigRegistry:
    """Repositories taken from debt.toml, re-read on every call."""

    def __init__(self, cfg: DebtConfig) -> None:
        self.cfg = cfg

    def repositories(self) -> list[Repository]:
        return self.cfg.build_repositories()


class StaticRegistry:
    """A fixed repository list (embedding hosts, tests)."""

    def __init__(self, repositories: list[Repository]) -> None:
        self._repositories = list(repositories)

    def repositories(self) -> list[Repository]:
        return list(self._repositories)

    def set(self, repositories: list[Repository]) -> None:
        self._repositories = list(repositories)


class NullModuleResolver:
    def resolve(self, abs_path: str) -> str | None:  # noqa: ARG002
        return None
