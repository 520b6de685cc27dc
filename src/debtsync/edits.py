"""Line-shift tracking: keep debt anchors on the right line as a file is edited.

Rules for an edit replacing ``removed`` lines with ``inserted`` lines at
``start_line`` (1-based), with ``end = start_line + removed``:

    line > end                  -> max(1, line + inserted - removed)
    start_line <= line <= end   -> max(1, start_line)   (follow the edited region)
    line < start_line           -> unchanged

An edit that neither removes nor inserts a line break is a no-op.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from debtsync.models import DebtItem


@dataclass(frozen=True)
class EditEvent:
    """A text edit expressed in line counts."""

    file: str           # absolute path, or relative to the project root
    start_line: int     # 1-based
    removed: int = 0
    inserted: int = 0

    @property
    def delta(self) -> int:
        return self.inserted - self.removed

    @property
    def end_line(self) -> int:
        return self.start_line + self.removed

    @property
    def is_noop(self) -> bool:
        return self.removed == 0 and self.inserted == 0


def shift_line(line: int, event: EditEvent) -> int:
    """Return the new anchor line for line after event."""
    if event.is_noop:
        return line
    if line > event.end_line:
        return max(1, line + event.delta)
    if event.start_line <= line:
        return max(1, event.start_line)
    return line


def plan_line_shifts(
    items: Iterable[DebtItem],
    event: EditEvent,
    matches: Callable[[DebtItem], bool],
) -> list[tuple[DebtItem, DebtItem]]:
    """Compute (old, new) pairs for the items of the edited file whose line changes."""
    if event.is_noop:
        return []
    updates: list[tuple[DebtItem, DebtItem]] = []
    for item in items:
        if not matches(item):
            continue
        new_line = shift_line(item.line, event)
        if new_line != item.line:
            updates.append((item, item.with_line(new_line)))
    return updates


def events_from_diff(file: str, old_lines: Sequence[str], new_lines: Sequence[str]) -> list[EditEvent]:
    """Describe the change old_lines -> new_lines as edit events, bottom-up.

    Events are ordered from the end of the file upwards so each one can be
    applied on its own using pre-edit line numbers.

    Hunks are mapped onto the character-range model an editor reports: a
    replaced block of k lines by m lines spans k-1 old and m-1 new line breaks
    (the last line's newline is untouched), while pure deletions and
    insertions cover whole lines.
    """
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    events: list[EditEvent] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if tag == "replace":
            event = EditEvent(file, i1 + 1, removed=(i2 - i1) - 1, inserted=(j2 - j1) - 1)
        elif tag == "delete":
            event = EditEvent(file, i1 + 1, removed=i2 - i1)
        else:  # insert
            event = EditEvent(file, i1 + 1, inserted=j2 - j1)
        if not event.is_noop:
            events.append(event)
    events.reverse()
    return events
