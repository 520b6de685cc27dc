"""Data models for the per-repository debt store."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger("debtsync.models")

DEFAULT_DEBT_FILE_PATH = "dev/debt.json"

MIN_WANTED_LEVEL = 1
MAX_WANTED_LEVEL = 5
DEFAULT_WANTED_LEVEL = 3


def new_debt_id() -> str:
    """Generate a stable, globally unique debt ID."""
    return str(uuid.uuid4())


class Status(str, Enum):
    SUBMITTED = "Submitted"
    TO_ANALYZE = "ToAnalyze"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    FIXED = "Fixed"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Complexity(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class Risk(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Relationship(str, Enum):
    """Directed link kind from one debt item to another."""

    DUPLICATED = "Duplicated"
    BEFORE = "Before"
    AFTER = "After"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_type: type[E], value: Any, default: E) -> E:
    """Parse an enum literal by value, falling back to default on anything unknown."""
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        return enum_type(value.strip())
    except ValueError:
        return default


def parse_relationship(value: Any) -> Relationship | None:
    """Parse a persisted ``links`` value: a single name or a list of names.

    Only one relationship per target is kept, so for the list form the last
    parseable entry wins. Returns None when nothing usable is found.
    """
    candidates = value if isinstance(value, list) else [value]
    relationship: Relationship | None = None
    for candidate in candidates:
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        try:
            relationship = Relationship(candidate.strip())
        except ValueError:
            continue
    return relationship


def _as_str(d: dict[str, Any], key: str, default: str = "") -> str:
    v = d.get(key)
    if v is None:
        return default
    if isinstance(v, (dict, list)):
        return default
    return str(v)


def _as_int(d: dict[str, Any], key: str, default: int) -> int:
    v = d.get(key)
    if v is None or isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class DebtItem:
    """A piece of acknowledged technical debt anchored at (file, line).

    Values are immutable: every change produces a new item through
    :meth:`replace`, the ``with_*`` helpers or :meth:`to_builder`.
    """

    file: str
    line: int = 1
    title: str = ""
    description: str = ""
    username: str = ""
    wanted_level: int = DEFAULT_WANTED_LEVEL
    complexity: Complexity = Complexity.MEDIUM
    status: Status = Status.SUBMITTED
    priority: Priority = Priority.MEDIUM
    risk: Risk = Risk.MEDIUM
    target_version: str = ""
    comment: str = ""
    estimation: int = 0
    current_module: str = ""
    links: dict[str, Relationship] = field(default_factory=dict)
    jira: str = ""
    id: str = field(default_factory=new_debt_id)

    def __post_init__(self) -> None:
        if self.line < 1:
            msg = f"line must be >= 1, got {self.line}"
            raise ValueError(msg)
        if not MIN_WANTED_LEVEL <= self.wanted_level <= MAX_WANTED_LEVEL:
            msg = f"wanted_level must be in [{MIN_WANTED_LEVEL}, {MAX_WANTED_LEVEL}], got {self.wanted_level}"
            raise ValueError(msg)
        if self.estimation < 0:
            msg = f"estimation must be >= 0, got {self.estimation}"
            raise ValueError(msg)
        if not self.id:
            object.__setattr__(self, "id", new_debt_id())
        # Blank optional text is stored as "", the form the reader produces
        for name in ("jira", "current_module"):
            if not getattr(self, name).strip():
                object.__setattr__(self, name, "")
        # Own a private copy so callers can't mutate links behind our back
        object.__setattr__(self, "links", dict(self.links))

    # ------------------------------------------------------------------
    # Copy-with-change
    # ------------------------------------------------------------------

    def replace(self, **changes: Any) -> DebtItem:
        return replace(self, **changes)

    def with_file(self, file: str) -> DebtItem:
        return replace(self, file=file)

    def with_line(self, line: int) -> DebtItem:
        return replace(self, line=line)

    def with_username(self, username: str) -> DebtItem:
        return replace(self, username=username)

    def with_links(self, links: dict[str, Relationship]) -> DebtItem:
        return replace(self, links=links)

    def to_builder(self) -> DebtItemBuilder:
        return DebtItemBuilder(**{f.name: getattr(self, f.name) for f in fields(self)})

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DebtItem:
        """Build an item from its persisted form, tolerating legacy and malformed fields."""
        current_module = _as_str(d, "currentModule")
        if not current_module.strip():
            current_module = _as_str(d, "moduleParent")

        links: dict[str, Relationship] = {}
        raw_links = d.get("links")
        if isinstance(raw_links, dict):
            for target, value in raw_links.items():
                relationship = parse_relationship(value)
                if relationship is None:
                    logger.debug("skipping malformed link %r -> %r", target, value)
                    continue
                links[str(target)] = relationship

        wanted_level = _as_int(d, "wantedLevel", DEFAULT_WANTED_LEVEL)
        if not MIN_WANTED_LEVEL <= wanted_level <= MAX_WANTED_LEVEL:
            wanted_level = DEFAULT_WANTED_LEVEL

        return cls(
            id=_as_str(d, "id") or new_debt_id(),
            file=_as_str(d, "file"),
            line=max(1, _as_int(d, "line", 1)),
            title=_as_str(d, "title"),
            description=_as_str(d, "description"),
            username=_as_str(d, "username"),
            wanted_level=wanted_level,
            complexity=parse_enum(Complexity, d.get("complexity"), Complexity.MEDIUM),
            status=parse_enum(Status, d.get("status"), Status.SUBMITTED),
            priority=parse_enum(Priority, d.get("priority"), Priority.MEDIUM),
            risk=parse_enum(Risk, d.get("risk"), Risk.MEDIUM),
            target_version=_as_str(d, "targetVersion"),
            comment=_as_str(d, "comment"),
            estimation=max(0, _as_int(d, "estimation", 0)),
            current_module=current_module,
            links=links,
            jira=_as_str(d, "jira"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file": self.file,
            "line": self.line,
            "title": self.title,
            "description": self.description,
            "username": self.username,
            "wantedLevel": self.wanted_level,
            "complexity": self.complexity.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "risk": self.risk.value,
            "targetVersion": self.target_version,
            "comment": self.comment,
            "estimation": self.estimation,
            "currentModule": self.current_module,
            "links": {target: rel.value for target, rel in self.links.items()},
            "jira": self.jira,
        }

    def summary(self) -> str:
        return f"{self.file}:{self.line} title={self.title!r} user={self.username or '-'}"


@dataclass
class DebtItemBuilder:
    """Mutable staging area for a new :class:`DebtItem`."""

    file: str = ""
    line: int = 1
    title: str = ""
    description: str = ""
    username: str = ""
    wanted_level: int = DEFAULT_WANTED_LEVEL
    complexity: Complexity = Complexity.MEDIUM
    status: Status = Status.SUBMITTED
    priority: Priority = Priority.MEDIUM
    risk: Risk = Risk.MEDIUM
    target_version: str = ""
    comment: str = ""
    estimation: int = 0
    current_module: str = ""
    links: dict[str, Relationship] = field(default_factory=dict)
    jira: str = ""
    id: str = ""

    def link(self, target_id: str, relationship: Relationship) -> DebtItemBuilder:
        self.links = {**self.links, target_id: relationship}
        return self

    def unlink(self, target_id: str) -> DebtItemBuilder:
        self.links = {k: v for k, v in self.links.items() if k != target_id}
        return self

    def build(self) -> DebtItem:
        return DebtItem(**{f.name: getattr(self, f.name) for f in fields(self)})


@dataclass(frozen=True)
class Repository:
    """A source-tree root owning one debt JSON file."""

    absolute_path: Path
    display_name: str = ""
    storage_path: str = DEFAULT_DEBT_FILE_PATH   # absolute, or relative to absolute_path

    @property
    def name(self) -> str:
        return self.display_name or self.absolute_path.name

    @property
    def json_path(self) -> Path:
        p = Path(self.storage_path or DEFAULT_DEBT_FILE_PATH)
        return p if p.is_absolute() else self.absolute_path / p

    def with_storage_path(self, storage_path: str) -> Repository:
        return replace(self, storage_path=storage_path)


@dataclass(frozen=True)
class LinkView:
    """A resolved outgoing link, for display. ``title`` is empty when the target is gone."""

    target_id: str
    title: str
    relationship: Relationship
