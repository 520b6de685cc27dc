"""Workspace: the per-project context that owns one DebtService."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from debtsync.config import DebtConfig, load_config
from debtsync.registry import ConfigRegistry, NullModuleResolver
from debtsync.service import DebtService
from debtsync.storage import DebtFileStore

if TYPE_CHECKING:
    from debtsync.registry import ModuleLabelResolver, RepositoryRegistry

logger = logging.getLogger("debtsync.workspace")


def _storage_paths(cfg: DebtConfig) -> dict[str, str]:
    """Effective JSON path of every configured repository, keyed by absolute root."""
    return {str(repo.absolute_path): repo.storage_path for repo in cfg.build_repositories()}


@dataclass
class Workspace:
    cfg: DebtConfig
    service: DebtService

    @classmethod
    def open(
        cls,
        root: Path | str | None = None,
        *,
        cfg: DebtConfig | None = None,
        registry: RepositoryRegistry | None = None,
        module_resolver: ModuleLabelResolver | None = None,
    ) -> Workspace:
        """Load config (unless given), build the service and load every repository."""
        cfg = cfg or load_config(root)
        service = DebtService(
            registry or ConfigRegistry(cfg),
            store=DebtFileStore(),
            policy=cfg.policy,
            project_root=cfg.root,
            module_resolver=module_resolver or NullModuleResolver(),
            username=cfg.username,
        )
        service.refresh()
        return cls(cfg=cfg, service=service)

    @property
    def root(self) -> Path:
        return self.cfg.root

    def reload(self) -> None:
        """Re-read debt.toml, move JSON files whose configured path changed, then reload."""
        old_cfg = self.cfg
        new_cfg = load_config(old_cfg.root)
        moved = self.service.relocate_all(_storage_paths(old_cfg), _storage_paths(new_cfg))
        if moved:
            logger.info("moved %d debt file(s) after config change", moved)
        self.cfg = new_cfg
        self.service.policy = new_cfg.policy
        self.service.username = new_cfg.username
        if isinstance(self.service.registry, ConfigRegistry):
            self.service.registry.cfg = new_cfg
        self.service.refresh()
