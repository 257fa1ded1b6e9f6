from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import create_engine, text

from portfolio.config import Settings
from portfolio.db import ConnectionStatus, open_database, open_local_database
from portfolio.schemas import InitiativeRecord, Phase
from portfolio.store import SqlStore, copy_store


def _record(id="P-1", **kw) -> InitiativeRecord:
    base = dict(id=id, name=f"Initiative {id}", owner="Xavier", status="Active",
                categories=["Plat"], tags=["urgent"],
                phases=[Phase(name="Build", end_date="2024-05-01", color="blue")])
    base.update(kw)
    return InitiativeRecord(**base)


class TestInitiatives:
    def test_get_missing_returns_none(self, store):
        assert store.get_by_id("nope") is None

    def test_upsert_round_trip(self, store):
        store.upsert(_record())
        loaded = store.get_by_id("P-1")
        assert loaded.name == "Initiative P-1"
        assert loaded.tags == ["urgent"]
        assert loaded.phases[0].model_dump()["color"] == "blue"
        assert loaded.created_at is not None and loaded.updated_at is not None

    def test_upsert_keeps_created_at(self, store):
        first = store.upsert(_record(created_at=datetime(2023, 1, 1, tzinfo=UTC)))
        second = store.upsert(_record(name="Renamed", created_at=None))
        assert second.name == "Renamed"
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert store.count() == 1

    def test_delete(self, store):
        store.upsert(_record())
        store.add_note("P-1", "hello")
        assert store.delete("P-1") is True
        assert store.delete("P-1") is False
        assert store.list_notes("P-1") == []

    def test_list_all(self, store):
        store.upsert(_record("P-1"))
        store.upsert(_record("P-2"))
        assert {r.id for r in store.list_all()} == {"P-1", "P-2"}


class TestNotes:
    def test_add_and_list(self, store):
        store.upsert(_record())
        note = store.add_note("P-1", "Kickoff done", "me")
        assert note["text"] == "Kickoff done"
        assert [n["id"] for n in store.list_notes("P-1")] == [note["id"]]
        assert store.delete_note(note["id"]) is True
        assert store.delete_note(note["id"]) is False

    def test_note_for_missing_initiative(self, store):
        assert store.add_note("missing", "x") is None


class TestActivities:
    def test_latest_ten_newest_first(self, store):
        for n in range(12):
            store.add_activity("update", f"activity {n}")
        items = store.list_activities()
        assert len(items) == 10
        assert items[0]["text"] == "activity 11"
        assert items[-1]["text"] == "activity 2"


class TestSnapshots:
    def test_create_and_list(self, store):
        snap = store.create_snapshot("before review", [{"id": "P-1", "name": "A"}])
        assert snap["data"] == [{"id": "P-1", "name": "A"}]
        listed = store.list_snapshots()
        assert listed[0]["note"] == "before review"
        assert "data" not in listed[0]
        assert store.get_snapshot(snap["id"])["data"][0]["id"] == "P-1"
        assert store.get_snapshot(9999) is None


class TestCopyStore:
    def test_copies_everything(self, store, tmp_path):
        store.upsert(_record("P-1"))
        store.add_note("P-1", "note one")
        store.create_snapshot("s", [{"id": "P-1"}])
        target = SqlStore(open_local_database(tmp_path / "cloud.db"))
        counts = copy_store(store, target)
        assert counts == {"initiatives": 1, "notes": 1, "snapshots": 1}
        assert target.get_by_id("P-1").tags == ["urgent"]
        # Notes are not duplicated on a second run
        copy_store(store, target)
        assert len(target.list_notes("P-1")) == 1


class TestOpenDatabase:
    def test_local_when_no_url(self, tmp_path):
        db = open_database(Settings(data_dir=tmp_path))
        assert db.backend == "local"
        assert db.status is ConnectionStatus.LOCAL
        assert db.health_check()
        db.dispose()

    def test_cloud_failure_falls_back_to_local(self, tmp_path):
        settings = Settings(data_dir=tmp_path, database_url=f"sqlite:///{tmp_path}/missing/dir/x.db")
        db = open_database(settings)
        assert db.backend == "local"
        assert db.status is ConnectionStatus.ERROR
        db.dispose()

    def test_cloud_connects(self, tmp_path):
        db = open_database(Settings(data_dir=tmp_path, database_url=f"sqlite:///{tmp_path}/cloud.db"))
        assert db.backend == "cloud"
        assert db.status is ConnectionStatus.CONNECTED
        db.dispose()

    def test_old_database_gets_new_columns(self, tmp_path):
        path = tmp_path / "old.db"
        engine = create_engine(f"sqlite:///{path}")
        with engine.begin() as conn:
            conn.execute(text(
                "CREATE TABLE initiatives (id VARCHAR(100) PRIMARY KEY, name TEXT NOT NULL, owner VARCHAR(300), "
                "status VARCHAR(50) NOT NULL, start_date VARCHAR(40), target_date VARCHAR(40), "
                "categories_json TEXT, tags_json TEXT, phases_json TEXT, created_at DATETIME)"
            ))
        engine.dispose()
        store = SqlStore(open_local_database(path))
        store.upsert(_record())
        assert store.get_by_id("P-1").key_initiative == "No"
