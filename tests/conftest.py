"""Shared fixtures: services over temporary repositories."""

from __future__ import annotations

from pathlib import Path

import pytest

from debtsync.models import Repository
from debtsync.paths import PathPolicy
from debtsync.registry import StaticRegistry
from debtsync.service import DebtService
from debtsync.storage import DebtFileStore


@pytest.fixture
def repo(tmp_path: Path) -> Repository:
    root = tmp_path / "app"
    root.mkdir()
    return Repository(root, display_name="app")


@pytest.fixture
def make_service(tmp_path: Path):
    """Build a refreshed service over the given repositories."""

    def _make(*repos: Repository, case_sensitive: bool = True, username: str = "alice") -> DebtService:
        service = DebtService(
            StaticRegistry(list(repos)),
            store=DebtFileStore(),
            policy=PathPolicy(case_sensitive=case_sensitive),
            project_root=tmp_path,
            username=username,
        )
        service.refresh()
        return service

    return _make


@pytest.fixture
def service(make_service, repo: Repository) -> DebtService:
    return make_service(repo)
