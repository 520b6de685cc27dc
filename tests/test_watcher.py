"""Tests for the filesystem watcher's event classification and dispatch."""

from collections import namedtuple
from pathlib import Path
from types import SimpleNamespace

import pytest

from debtsync.models import DebtItem, Repository
from debtsync.moves import MoveKind
from debtsync.paths import PathPolicy
from debtsync.service import DebtService
from debtsync.watcher import (
    ContentTracker,
    _dispatch,
    classify_inotify,
    detect_changes,
    detect_moves,
    is_excluded,
    scan,
)

Event = namedtuple("Event", ["wd", "mask", "cookie", "name"])

FLAGS = SimpleNamespace(CLOSE_WRITE=0x8, MOVED_FROM=0x40, MOVED_TO=0x80, CREATE=0x100, ISDIR=0x40000000)
EXCLUDE = ["**/.git/**", "**/*.tmp", "**/*~"]


def _never(path, is_dir):
    return False


class TestIsExcluded:
    def test_patterns(self, tmp_path: Path):
        assert is_excluded(tmp_path / ".git", tmp_path, EXCLUDE, is_dir=True)
        assert is_excluded(tmp_path / "src" / "a.py.tmp", tmp_path, EXCLUDE)
        assert is_excluded(tmp_path / "a.py~", tmp_path, EXCLUDE)
        assert not is_excluded(tmp_path / "src" / "a.py", tmp_path, EXCLUDE)
        assert not is_excluded(tmp_path, tmp_path, EXCLUDE, is_dir=True)


class TestClassifyInotify:
    def test_paired_move_is_rename(self, tmp_path: Path):
        batch = [
            Event(1, FLAGS.MOVED_FROM, 7, "Foo.txt"),
            Event(1, FLAGS.MOVED_TO, 7, "Bar.txt"),
        ]
        result = classify_inotify(batch, {1: tmp_path}, FLAGS, _never)
        assert len(result.moves) == 1
        move = result.moves[0]
        assert move.kind is MoveKind.RENAME
        assert move.new_path.endswith("/Bar.txt")
        assert result.changed == []

    def test_move_between_directories(self, tmp_path: Path):
        batch = [
            Event(1, FLAGS.MOVED_FROM, 3, "sub"),
            Event(2, FLAGS.MOVED_TO | FLAGS.ISDIR, 3, "sub"),
        ]
        result = classify_inotify(batch, {1: tmp_path / "a", 2: tmp_path / "b"}, FLAGS, _never)
        assert result.moves[0].kind is MoveKind.MOVE
        assert result.moves[0].is_directory

    def test_atomic_save_is_an_edit(self, tmp_path: Path):
        def excluded(path, is_dir):
            return is_excluded(path, tmp_path, EXCLUDE, is_dir=is_dir)

        batch = [
            Event(1, FLAGS.CLOSE_WRITE, 0, "a.py.tmp"),
            Event(1, FLAGS.MOVED_FROM, 9, "a.py.tmp"),
            Event(1, FLAGS.MOVED_TO, 9, "a.py"),
        ]
        result = classify_inotify(batch, {1: tmp_path}, FLAGS, excluded)
        assert result.moves == []
        assert str(tmp_path / "a.py") in result.changed

    def test_new_directory_and_write(self, tmp_path: Path):
        batch = [
            Event(1, FLAGS.CREATE | FLAGS.ISDIR, 0, "pkg"),
            Event(1, FLAGS.CLOSE_WRITE, 0, "a.py"),
            Event(5, FLAGS.CLOSE_WRITE, 0, "unknown.py"),
        ]
        result = classify_inotify(batch, {1: tmp_path}, FLAGS, _never)
        assert result.new_dirs == [tmp_path / "pkg"]
        assert result.changed == [str(tmp_path / "a.py")]


class TestPolling:
    def test_detects_rename_and_edit(self, tmp_path: Path):
        (tmp_path / "a.txt").write_text("one\n")
        (tmp_path / "b.txt").write_text("two\n")
        before = scan([tmp_path], EXCLUDE)
        (tmp_path / "a.txt").rename(tmp_path / "c.txt")
        (tmp_path / "b.txt").write_text("two\nmore\n")
        after = scan([tmp_path], EXCLUDE)

        moves = detect_moves(before, after, PathPolicy())
        assert [(Path(m.old_path).name, Path(m.new_path).name) for m in moves] == [("a.txt", "c.txt")]
        # mtime resolution can hide the edit; the inode-based move must not show up as a change
        assert all(Path(p).name == "b.txt" for p in detect_changes(before, after))

    def test_children_of_moved_directory_are_folded(self, tmp_path: Path):
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "x.txt").write_text("x")
        before = scan([tmp_path], EXCLUDE)
        (tmp_path / "d").rename(tmp_path / "e")
        after = scan([tmp_path], EXCLUDE)
        moves = detect_moves(before, after, PathPolicy())
        assert len(moves) == 1
        assert moves[0].is_directory


class TestDispatch:
    @pytest.fixture
    def setup(self, service: DebtService, repo: Repository):
        src = repo.absolute_path / "src"
        src.mkdir()
        foo = src / "Foo.txt"
        foo.write_text("".join(f"line{i}\n" for i in range(1, 11)))
        service.add(DebtItem(file="src/Foo.txt", line=5), repo.absolute_path)
        tracker = ContentTracker(service.policy)
        tracker.refresh(service)
        return service, tracker, foo

    def test_saved_edit_shifts_lines(self, setup):
        service, tracker, foo = setup
        lines = foo.read_text().splitlines()
        foo.write_text("\n".join([*lines[:1], "new1", "new2", "new3", *lines[1:]]) + "\n")
        _dispatch(service, tracker, [], [str(foo)])
        assert service.all()[0].line == 8

    def test_rename_then_edit_follows_file(self, setup):
        from debtsync.moves import MoveEvent

        service, tracker, foo = setup
        bar = foo.with_name("Bar.txt")
        foo.rename(bar)
        _dispatch(service, tracker, [MoveEvent.between(foo, bar)], [])
        assert service.all()[0].file == "src/Bar.txt"
        assert str(bar) in tracker

        bar.write_text("top\n" + bar.read_text())
        _dispatch(service, tracker, [], [str(bar)])
        assert service.all()[0].line == 6

    def test_untracked_file_is_ignored(self, setup, repo: Repository):
        service, tracker, _ = setup
        other = repo.absolute_path / "other.txt"
        other.write_text("x\n")
        _dispatch(service, tracker, [], [str(other)])
        assert service.all()[0].line == 5
