"""Tests for DebtService: CRUD, synchronizers, persistence and notifications."""

import json
import shutil
import threading
from pathlib import Path

import pytest

from debtsync.edits import EditEvent, shift_line
from debtsync.models import DebtItem, Relationship, Repository
from debtsync.moves import MoveEvent
from debtsync.service import MISSING_TITLE, DebtService


def _persisted(repo: Repository) -> list[dict]:
    return json.loads(repo.json_path.read_text())


class TestRefresh:
    def test_creates_empty_files(self, service: DebtService, repo: Repository):
        assert _persisted(repo) == []
        assert service.repositories() == [repo]

    def test_loads_existing_items(self, make_service, repo: Repository):
        repo.json_path.parent.mkdir(parents=True)
        repo.json_path.write_text(json.dumps([{"id": "1", "file": "a.py", "line": 4}]))
        service = make_service(repo)
        assert [(i.id, i.line) for i in service.items_for(repo.absolute_path)] == [("1", 4)]

    def test_corrupt_repository_starts_empty(self, make_service, repo: Repository):
        repo.json_path.parent.mkdir(parents=True)
        repo.json_path.write_text("{oops")
        service = make_service(repo)
        assert service.all() == []
        service.add(DebtItem(file="a.py"), repo.absolute_path)
        assert len(service.all()) == 1
        assert repo.json_path.read_text() == "{oops"


class TestCrud:
    def test_add_persists_and_notifies(self, service: DebtService, repo: Repository):
        calls = []
        service.subscribe(lambda: calls.append(1))
        item = DebtItem(file="a.py", title="t")
        assert service.add(item, repo.absolute_path) is True
        assert _persisted(repo)[0]["id"] == item.id
        assert calls == [1]

    def test_add_to_unknown_repository(self, service: DebtService, tmp_path: Path):
        assert service.add(DebtItem(file="a.py"), tmp_path / "nope") is False
        assert service.all() == []

    def test_duplicate_id_refused(self, service: DebtService, repo: Repository):
        item = DebtItem(file="a.py", id="same")
        service.add(item, repo.absolute_path)
        assert service.add(DebtItem(file="b.py", id="same"), repo.absolute_path) is False
        assert len(service.all()) == 1

    def test_remove(self, service: DebtService, repo: Repository):
        item = DebtItem(file="a.py")
        service.add(item, repo.absolute_path)
        assert service.remove(item) is True
        assert service.remove(item) is False
        assert _persisted(repo) == []

    def test_update_keeps_position(self, service: DebtService, repo: Repository):
        first, second = DebtItem(file="a.py"), DebtItem(file="b.py")
        service.add(first, repo.absolute_path)
        service.add(second, repo.absolute_path)
        assert service.update(first, first.replace(title="new")) is True
        assert [i.title for i in service.items_for(repo.absolute_path)] == ["new", ""]
        assert service.update(first, first) is False

    def test_create_item(self, service: DebtService, repo: Repository):
        item = service.create_item(repo.absolute_path / "src" / "x.py", 7, title="slow")
        assert item is not None
        assert item.file == "src/x.py"
        assert item.username == "alice"
        assert service.repository_of(item) == repo

    def test_create_item_outside_repositories(self, service: DebtService, tmp_path: Path):
        assert service.create_item(tmp_path / "elsewhere.py", 1) is None

    def test_listener_errors_are_contained(self, service: DebtService, repo: Repository):
        calls = []

        def broken():
            raise RuntimeError("boom")

        service.subscribe(broken)
        service.subscribe(lambda: calls.append(1))
        assert service.add(DebtItem(file="a.py"), repo.absolute_path)
        assert calls == [1]

    def test_unsubscribe(self, service: DebtService, repo: Repository):
        calls = []
        unsubscribe = service.subscribe(lambda: calls.append(1))
        unsubscribe()
        service.add(DebtItem(file="a.py"), repo.absolute_path)
        assert calls == []


class TestLinks:
    def test_dangling_link_after_target_removed(self, service: DebtService, repo: Repository):
        b = DebtItem(file="b.py", title="B", id="1")
        c = DebtItem(file="c.py", title="C", id="2")
        a = DebtItem(file="a.py", title="A", links={"1": Relationship.DUPLICATED, "2": Relationship.BEFORE})
        for it in (a, b, c):
            service.add(it, repo.absolute_path)
        service.remove(b)
        a_now = service.find(a.id)
        assert a_now.links == {"1": Relationship.DUPLICATED, "2": Relationship.BEFORE}
        titles = {v.target_id: v.title for v in service.resolve_links(a_now)}
        assert titles == {"1": MISSING_TITLE, "2": "C"}
        # removing the dangling link leaves only the live one
        service.update(a_now, a_now.to_builder().unlink("1").build())
        assert service.find(a.id).links == {"2": Relationship.BEFORE}


class TestMigrateUsername:
    def test_rewrites_matching_items(self, service: DebtService, repo: Repository):
        for user in ("bob", "carol", "bob"):
            service.add(DebtItem(file="a.py", username=user), repo.absolute_path)
        assert service.migrate_username("bob", "robert") == 2
        assert sorted(i.username for i in service.all()) == ["carol", "robert", "robert"]
        assert sorted(d["username"] for d in _persisted(repo)) == ["carol", "robert", "robert"]

    @pytest.mark.parametrize(("old", "new"), [("", "x"), ("  ", "x"), ("bob", "bob"), ("nobody", "x")])
    def test_noops(self, service: DebtService, repo: Repository, old: str, new: str):
        service.add(DebtItem(file="a.py", username="bob"), repo.absolute_path)
        assert service.migrate_username(old, new) == 0


class TestSynchronizers:
    def test_edit_then_rename(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="src/Foo.txt", line=5, title="t"), repo.absolute_path)
        foo = repo.absolute_path / "src" / "Foo.txt"

        assert service.apply_edit(EditEvent(str(foo), 2, inserted=3)) == 1
        assert service.all()[0].line == 8
        assert _persisted(repo)[0]["line"] == 8

        assert service.apply_moves([MoveEvent.between(foo, foo.with_name("Bar.txt"))]) == 1
        moved = service.all()[0]
        assert (moved.file, moved.line) == ("src/Bar.txt", 8)
        assert _persisted(repo)[0]["file"] == "src/Bar.txt"

    def test_edit_of_other_file(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="a.py", line=5), repo.absolute_path)
        assert service.apply_edit(EditEvent(str(repo.absolute_path / "b.py"), 1, inserted=4)) == 0

    def test_noop_edit_does_not_notify(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="a.py", line=5), repo.absolute_path)
        calls = []
        service.subscribe(lambda: calls.append(1))
        assert service.apply_edit(EditEvent(str(repo.absolute_path / "a.py"), 1)) == 0
        assert calls == []

    def test_directory_rename(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="b/x.txt"), repo.absolute_path)
        service.add(DebtItem(file="bc/y.txt"), repo.absolute_path)
        root = repo.absolute_path
        assert service.apply_moves([MoveEvent.between(root / "b", root / "c", is_directory=True)]) == 1
        assert sorted(i.file for i in service.all()) == ["bc/y.txt", "c/x.txt"]

    def test_move_between_repositories(self, make_service, tmp_path: Path):
        app = Repository(tmp_path / "app")
        lib = Repository(tmp_path / "lib")
        service = make_service(app, lib)
        item = DebtItem(file="x.py", line=3)
        service.add(item, app.absolute_path)
        service.apply_moves([MoveEvent.between(app.absolute_path / "x.py", lib.absolute_path / "y.py")])
        assert service.items_for(app.absolute_path) == []
        moved = service.items_for(lib.absolute_path)
        assert [(i.id, i.file, i.line) for i in moved] == [(item.id, "y.py", 3)]
        assert _persisted(app) == []
        assert _persisted(lib)[0]["file"] == "y.py"


class TestRelocation:
    def test_relocate_storage(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="a.py"), repo.absolute_path)
        assert service.relocate_storage(repo.absolute_path, "docs/debt.json") is True
        new_repo = service.repositories()[0]
        assert new_repo.json_path == repo.absolute_path / "docs" / "debt.json"
        assert not repo.json_path.exists()
        assert len(service.items_for(repo.absolute_path)) == 1
        service.add(DebtItem(file="b.py"), repo.absolute_path)
        assert len(_persisted(new_repo)) == 2

    def test_existing_target_wins(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="a.py"), repo.absolute_path)
        target = repo.absolute_path / "docs" / "debt.json"
        target.parent.mkdir(parents=True)
        target.write_text(json.dumps([{"id": "t", "file": "t.py"}]))
        assert service.relocate_storage(repo.absolute_path, "docs/debt.json") is False
        assert repo.json_path.exists()
        assert [i.id for i in service.all()] == ["t"]

    def test_unknown_repository(self, service: DebtService, tmp_path: Path):
        assert service.relocate_storage(tmp_path / "nope", "x.json") is False

    def test_relocate_all(self, service: DebtService, repo: Repository):
        service.add(DebtItem(file="a.py"), repo.absolute_path)
        root = str(repo.absolute_path)
        assert service.relocate_all({}, {root: "meta/debt.json"}) == 1
        assert (repo.absolute_path / "meta" / "debt.json").exists()
        assert service.relocate_all({root: "meta/debt.json"}, {root: "meta/debt.json"}) == 0


class TestSelection:
    def test_select_is_relayed(self, service: DebtService):
        seen = []
        service.subscribe_selection(lambda f, line: seen.append((f, line)))
        service.select("src/a.py", 4)
        assert seen == [("src/a.py", 4)]


class TestQueries:
    def test_path_helpers(self, service: DebtService, repo: Repository, tmp_path: Path):
        root = repo.absolute_path
        assert service.find_repository(root / "src" / "x.py") == repo
        assert service.find_repository(tmp_path / "elsewhere.py") is None
        assert service.to_repo_relative(root / "src" / "x.py", root) == "src/x.py"
        assert service.to_repo_relative("app/x.py", None) == (tmp_path / "app" / "x.py").as_posix()

        item = DebtItem(file="src/x.py")
        service.add(item, root)
        assert service.absolute_path_of(item) == (root / "src" / "x.py").as_posix()

    def test_refresh_follows_registry(self, service: DebtService, repo: Repository, tmp_path: Path):
        lib = Repository(tmp_path / "lib")
        service.registry.set([repo, lib])
        service.refresh()
        assert service.repositories() == [repo, lib]
        assert lib.json_path.exists()


class TestPersistenceFailures:
    @pytest.fixture
    def two_repos(self, make_service, tmp_path: Path):
        app = Repository(tmp_path / "app")
        lib = Repository(tmp_path / "lib")
        return make_service(app, lib), app, lib

    @staticmethod
    def _break(repo: Repository) -> None:
        # a plain file where the debt directory should be makes every write fail
        shutil.rmtree(repo.json_path.parent)
        repo.json_path.parent.write_text("")

    def test_save_reports_failure(self, two_repos):
        service, app, _ = two_repos
        self._break(app)
        assert service.store.save(app, [DebtItem(file="a.py")]) is False

    def test_failed_repository_does_not_block_others(self, two_repos):
        service, app, lib = two_repos
        item = DebtItem(file="x.py", line=3)
        service.add(item, app.absolute_path)
        self._break(app)

        moves = [MoveEvent.between(app.absolute_path / "x.py", lib.absolute_path / "x.py")]
        assert service.apply_moves(moves) == 1
        assert service.items_for(app.absolute_path) == []
        assert [(i.id, i.file) for i in service.all()] == [(item.id, "x.py")]
        assert [(d["id"], d["file"]) for d in _persisted(lib)] == [(item.id, "x.py")]

    def test_change_kept_in_memory(self, two_repos):
        service, app, _ = two_repos
        item = DebtItem(file="a.py", title="old")
        service.add(item, app.absolute_path)
        self._break(app)
        assert service.update(item, item.replace(title="new")) is True
        assert service.find(item.id).title == "new"


class TestConcurrency:
    def test_parallel_edits_and_moves_serialize(self, service: DebtService, repo: Repository):
        root = repo.absolute_path
        anchored = [DebtItem(file="a.py", line=n) for n in (1, 5, 40)]
        renamed = DebtItem(file="b.txt", line=3)
        for it in (*anchored, renamed):
            service.add(it, root)
        edit = EditEvent(str(root / "a.py"), 1, inserted=1)

        def edit_worker():
            for _ in range(25):
                service.apply_edits([edit])

        def move_worker():
            for i in range(10):
                src, dst = ("b.txt", "c.txt") if i % 2 == 0 else ("c.txt", "b.txt")
                service.apply_moves([MoveEvent.between(root / src, root / dst)])

        threads = [threading.Thread(target=edit_worker) for _ in range(4)]
        threads.append(threading.Thread(target=move_worker))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        expected = {}
        for it in anchored:
            line = it.line
            for _ in range(100):
                line = shift_line(line, edit)
            expected[it.id] = line
        lines = {i.id: i.line for i in service.all() if i.file == "a.py"}
        assert lines == expected == {anchored[0].id: 1, anchored[1].id: 105, anchored[2].id: 140}
        assert service.find(renamed.id).file == "b.txt"
        assert _persisted(repo) == [i.to_dict() for i in service.all()]
