"""
Tests for storage backends and scoped transactions
"""

import pytest
from dataclasses import dataclass
from datetime import datetime, timezone

from coinbook.errors import InvalidArgument, StoreFailure
from coinbook.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, utc_now
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "coinbook.db")
    yield backend
    backend.close()


@dataclass
class Sample(StorageRecord):
    label: str
    amount: int = 0


class TestStorageRecord:
    """Test record serialization"""

    def test_round_trip_through_dict(self):
        now = utc_now()
        record = Sample(id=7, created_at=now, updated_at=now, label="seven", amount=3)

        data = record.to_dict()
        assert data["created_at"] == now.isoformat()

        restored = Sample.from_dict(data)
        assert restored == record

    def test_from_dict_ignores_unknown_fields(self):
        now = utc_now().isoformat()
        restored = Sample.from_dict({
            "id": 1, "created_at": now, "updated_at": now,
            "label": "x", "stale_column": True
        })
        assert restored.label == "x"

    def test_utc_now_has_millisecond_precision(self):
        now = utc_now()
        assert now.tzinfo == timezone.utc
        assert now.microsecond % 1000 == 0


class TestBasicOperations:
    """CRUD operations shared by every backend"""

    def test_save_load_delete(self, storage):
        storage.save("things", "1", {"id": 1, "label": "one"})

        assert storage.load("things", "1") == {"id": 1, "label": "one"}
        assert storage.exists("things", "1")
        assert storage.count("things") == 1

        assert storage.delete("things", "1")
        assert not storage.delete("things", "1")
        assert storage.load("things", "1") is None

    def test_save_replaces(self, storage):
        storage.save("things", "1", {"id": 1, "label": "one"})
        storage.save("things", "1", {"id": 1, "label": "uno"})

        assert storage.count("things") == 1
        assert storage.load("things", "1")["label"] == "uno"

    def test_find_matches_every_filter(self, storage):
        storage.save("things", "1", {"id": 1, "owner": 5, "coin": 1})
        storage.save("things", "2", {"id": 2, "owner": 5, "coin": 2})
        storage.save("things", "3", {"id": 3, "owner": 6, "coin": 1})

        assert {r["id"] for r in storage.find("things", {"owner": 5})} == {1, 2}
        assert [r["id"] for r in storage.find("things", {"owner": 5, "coin": 2})] == [2]
        assert storage.find("things", {"owner": 99}) == []

    def test_find_by_string_value(self, storage):
        storage.save("things", "a", {"id": 1, "external_id": "abc"})
        assert len(storage.find("things", {"external_id": "abc"})) == 1

    def test_clear_table(self, storage):
        storage.save("things", "1", {"id": 1})
        storage.save("things", "2", {"id": 2})
        storage.clear_table("things")
        assert storage.count("things") == 0

    def test_next_id_is_per_table_and_increasing(self, storage):
        assert storage.next_id("coins") == 1
        assert storage.next_id("coins") == 2
        assert storage.next_id("users") == 1
        assert storage.next_id("coins") == 3

    def test_insert_if_absent_keeps_existing_row(self, storage):
        assert storage.insert_if_absent("things", "1", {"id": 1, "label": "first"})
        assert not storage.insert_if_absent("things", "1", {"id": 1, "label": "second"})

        assert storage.load("things", "1")["label"] == "first"
        assert storage.count("things") == 1

    def test_rejects_unsafe_table_names(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "names.db")
        with pytest.raises(InvalidArgument):
            storage.save("things; DROP TABLE x", "1", {"id": 1})
        storage.close()


class TestAtomicScope:
    """Scoped transactions"""

    def test_commit_keeps_writes(self, storage):
        with storage.atomic():
            storage.save("things", "1", {"id": 1})
            assert storage.in_transaction
        assert not storage.in_transaction
        assert storage.exists("things", "1")

    def test_exception_rolls_back_every_write(self, storage):
        storage.save("things", "1", {"id": 1, "value": "before"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("things", "1", {"id": 1, "value": "after"})
                storage.save("things", "2", {"id": 2})
                storage.delete("things", "1")
                raise RuntimeError("boom")

        assert storage.load("things", "1") == {"id": 1, "value": "before"}
        assert not storage.exists("things", "2")
        assert not storage.in_transaction

    def test_rollback_returns_allocated_keys(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                assert storage.next_id("things") == 1
                raise RuntimeError("boom")

        assert storage.next_id("things") == 1

    def test_nested_scope_joins_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("things", "1", {"id": 1})
                # Inner exit does not commit on its own
                raise RuntimeError("boom")

        assert not storage.exists("things", "1")

    def test_failed_inner_scope_poisons_outer(self, storage):
        with pytest.raises(StoreFailure):
            with storage.atomic():
                storage.save("things", "1", {"id": 1})
                try:
                    with storage.atomic():
                        raise ValueError("inner")
                except ValueError:
                    pass

        assert not storage.exists("things", "1")
        assert not storage.in_transaction

    def test_scope_is_reusable_after_failure(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                raise RuntimeError("boom")

        with storage.atomic():
            storage.save("things", "1", {"id": 1})
        assert storage.exists("things", "1")


class TestSQLiteStorage:
    """SQLite specifics"""

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("things", "1", {"id": 1, "label": "kept"})
        first.next_id("things")
        first.close()

        second = SQLiteStorage(path)
        assert second.load("things", "1")["label"] == "kept"
        assert second.next_id("things") == 2
        second.close()

    def test_driver_errors_surface_as_store_failure(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "errors.db")
        with pytest.raises(StoreFailure):
            with storage.atomic():
                storage.save("things", "1", {"id": 1})
                storage._connection.execute("SELECT * FROM no_such_table")

        assert not storage.exists("things", "1")
        storage.close()


class TestCreateStorage:
    """Backend selection from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_absolute_path(self, tmp_path):
        path = tmp_path / "url.db"
        storage = create_storage(f"sqlite:///{path}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(path)
        storage.close()

    def test_unknown_scheme(self):
        with pytest.raises(InvalidArgument):
            create_storage("mysql://localhost/coinbook")
