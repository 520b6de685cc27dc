"""DebtConfig: project-local config for the debt store.

Default layout (all relative to the project root):

    debt.toml             # project config (git-tracked)
    .env                  # optional: DEBT_USERNAME (gitignore this)
    dev/
        debt.json         # debt items of the root repository (git-tracked)
    <repo>/dev/debt.json  # one file per configured repository

debt.toml example:

    [debt]
    name = "my-project"
    username = "alice"            # or DEBT_USERNAME in .env / the environment
    # debt_path = "dev/debt.json" # default per-repository file
    # case_sensitive = true       # default: false on Windows/macOS, true elsewhere

    [[repositories]]
    path = "."
    name = "app"
    # debt_path = "docs/debt.json"   # absolute, or relative to the repository root

    [[repositories]]
    path = "libs/core"

    [watch]
    poll_interval = 1.0
    exclude = ["**/.git/**", "**/node_modules/**"]
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from debtsync.models import DEFAULT_DEBT_FILE_PATH, Repository
from debtsync.paths import PathPolicy, default_case_sensitive

_CONFIG_FILENAME = "debt.toml"
_USERNAME_ENV = "DEBT_USERNAME"

_DEFAULT_EXCLUDE = [
    "**/.git/**", "**/.hg/**", "**/.svn/**",
    "**/__pycache__/**", "**/node_modules/**",
    "**/.venv/**", "**/dist/**", "**/build/**",
    # editor temp/backup files, so save-by-rename isn't mistaken for a move
    "**/*.tmp", "**/*~", "**/*.sw?", "**/.#*",
]


@dataclass
class RepositoryConfig:
    """A [[repositories]] entry in debt.toml."""
    path: str                               # relative to project root, or absolute
    name: str = ""
    debt_path: str = ""                     # override; empty = [debt].debt_path

    def to_repository(self, root: Path, default_debt_path: str) -> Repository:
        p = Path(self.path).expanduser()
        abs_path = Path(os.path.normpath(p if p.is_absolute() else root / p))
        return Repository(
            absolute_path=abs_path,
            display_name=self.name or abs_path.name,
            storage_path=self.debt_path or default_debt_path,
        )


@dataclass
class WatchConfig:
    poll_interval: float = 1.0
    exclude: list[str] = field(default_factory=lambda: list(_DEFAULT_EXCLUDE))


@dataclass
class DebtConfig:
    """Resolved configuration for a debt project."""

    root: Path                      # directory that contains debt.toml
    name: str = ""
    username: str = ""
    debt_path: str = DEFAULT_DEBT_FILE_PATH
    case_sensitive: bool = field(default_factory=default_case_sensitive)
    repositories: list[RepositoryConfig] = field(default_factory=list)
    watch: WatchConfig = field(default_factory=WatchConfig)

    @property
    def config_path(self) -> Path:
        return self.root / _CONFIG_FILENAME

    @property
    def policy(self) -> PathPolicy:
        return PathPolicy(case_sensitive=self.case_sensitive)

    def build_repositories(self) -> list[Repository]:
        """Repositories described by this config; the project root alone when none are listed."""
        entries = self.repositories or [RepositoryConfig(path=".", name=self.name)]
        seen: set[Path] = set()
        repos: list[Repository] = []
        for entry in entries:
            repo = entry.to_repository(self.root, self.debt_path)
            if repo.absolute_path in seen:
                continue
            seen.add(repo.absolute_path)
            repos.append(repo)
        return repos


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file (no external dependency)."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def load_config(root: Path | str | None = None) -> DebtConfig:
    """Load debt.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root).resolve() if root else Path.cwd().resolve())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)

    debt_section = raw.get("debt", {})
    watch_section = raw.get("watch", {})

    repositories = [
        RepositoryConfig(
            path=str(r.get("path", ".")),
            name=str(r.get("name", "")),
            debt_path=str(r.get("debt_path", "")),
        )
        for r in raw.get("repositories", [])
    ]

    # Environment wins over .env, which wins over debt.toml
    username = (
        os.environ.get(_USERNAME_ENV)
        or env.get(_USERNAME_ENV)
        or str(debt_section.get("username", ""))
    )

    case_sensitive = debt_section.get("case_sensitive")

    return DebtConfig(
        root=root_path,
        name=debt_section.get("name", root_path.name),
        username=username,
        debt_path=str(debt_section.get("debt_path", DEFAULT_DEBT_FILE_PATH)) or DEFAULT_DEBT_FILE_PATH,
        case_sensitive=default_case_sensitive() if case_sensitive is None else bool(case_sensitive),
        repositories=repositories,
        watch=WatchConfig(
            poll_interval=float(watch_section.get("poll_interval", 1.0)),
            exclude=list(watch_section.get("exclude", _DEFAULT_EXCLUDE)),
        ),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for debt.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None, username: str | None = None) -> Path:
    """Write a default debt.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"debt.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    user_line = f'username = "{username}"' if username else '# username = ""        # or DEBT_USERNAME in .env'
    content = f"""\
[debt]
name = "{project_name}"
{user_line}
# debt_path = "{DEFAULT_DEBT_FILE_PATH}"   # default per-repository file
# case_sensitive = true               # default: false on Windows/macOS, true elsewhere

# One entry per source-tree root; without any, the project root is the only repository.
# [[repositories]]
# path = "."
# name = "{project_name}"
# debt_path = ""      # absolute, or relative to the repository root

# [watch]
# poll_interval = 1.0
# exclude = ["**/.git/**", "**/node_modules/**"]
"""
    config_path.write_text(content)
    return config_path
