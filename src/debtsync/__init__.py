"""Per-repository technical-debt store: JSON files as source of truth.

Layout (one file per repository root):
    <repo>/
        dev/
            debt.json     # debt items, pretty-printed JSON array (git-tracked)
    debt.toml             # project config: repositories, username, storage paths

debt.json entries:
    {"id": "<uuid>", "file": "src/app.py", "line": 12, "title": ..., "status": "Submitted",
     "links": {"<other id>": "Before"}, ...}

Items are anchored at (file, line). Line numbers follow edits of the file
(edits.py), stored paths follow renames and moves (moves.py), and every
mutation is persisted before listeners are notified (service.py).
"""

from debtsync.config import DebtConfig, init_config, load_config
from debtsync.models import DebtItem, Relationship, Repository
from debtsync.service import DebtService
from debtsync.storage import DebtFileStore
from debtsync.workspace import Workspace

__all__ = [
    "DebtConfig",
    "DebtFileStore",
    "DebtItem",
    "DebtService",
    "Relationship",
    "Repository",
    "Workspace",
    "init_config",
    "load_config",
]
