"""Tests for the SQLite local store."""

from datetime import datetime, timedelta

import pytest

from driftsync.data.database import LocalDatabase
from driftsync.data.records import PENDING, SYNCED, Patient, Payment, Visit
from driftsync.sync import StorageError


@pytest.fixture
def database():
    """Create an in-memory local store."""
    db = LocalDatabase(":memory:", "tablet-1")
    db.connect()
    yield db
    db.close()


class TestRecords:
    """Tests for record CRUD."""

    def test_insert_and_get(self, database):
        """Test inserting a record stamps it as a pending local change."""
        stored = database.insert(Patient(id="p1", name="Ada", device_id="elsewhere"))

        record = database.get("patients", "p1")
        assert record.name == "Ada"
        assert record.sync_status == PENDING
        assert record.device_id == "tablet-1"
        assert record.last_modified == stored.last_modified

    def test_insert_duplicate_rejected(self, database):
        """Test a live id cannot be inserted twice."""
        database.insert(Patient(id="p1", name="Ada"))

        with pytest.raises(StorageError):
            database.insert(Patient(id="p1", name="Other"))

    def test_update_advances_last_modified(self, database):
        """Test updates move last_modified forward and mark pending."""
        first = database.insert(Patient(id="p1", name="Ada"))
        database.mark_records_as_synced("patients", ["p1"])

        updated = database.update(Patient(id="p1", name="Ada L.", phone="555"))

        assert updated.name == "Ada L."
        assert updated.phone == "555"
        assert updated.sync_status == PENDING
        assert updated.last_modified > first.last_modified

    def test_update_missing_record(self, database):
        """Test updating an unknown record raises."""
        with pytest.raises(StorageError):
            database.update(Patient(id="missing", name="Nobody"))

    def test_delete_leaves_tombstone(self, database):
        """Test deletes are hidden but still synced."""
        database.insert(Patient(id="p1", name="Ada"))
        database.mark_records_as_synced("patients", ["p1"])

        assert database.delete("patients", "p1") is True
        assert database.get("patients", "p1") is None
        assert database.list_all("patients") == []

        changes = database.get_changed_records_since()
        assert changes["patients"][0]["id"] == "p1"
        assert changes["patients"][0]["deleted"] is True

    def test_delete_missing(self, database):
        """Test deleting an unknown record reports False."""
        assert database.delete("patients", "missing") is False

    def test_search(self, database):
        """Test substring search over record content."""
        database.insert(Patient(id="p1", name="Ada Lovelace"))
        database.insert(Patient(id="p2", name="Grace Hopper"))

        results = database.search("patients", "hopper")

        assert [r.id for r in results] == ["p2"]

    def test_unknown_table(self, database):
        """Test unknown tables raise StorageError."""
        with pytest.raises(StorageError):
            database.list_all("invoices")

    def test_record_kinds_kept_apart(self, database):
        """Test each kind lives in its own table."""
        database.insert(Patient(id="p1", name="Ada"))
        database.insert(Visit(id="v1", patient_id="p1", fee=25.0))
        database.insert(Payment(id="pay1", patient_id="p1", amount=25))

        assert database.get("visits", "v1").fee == 25.0
        assert database.get("payments", "pay1").amount == 25.0
        assert database.get_stats()["tables"] == {"patients": 1, "visits": 1, "payments": 1}


class TestSyncSupport:
    """Tests for change tracking and remote application."""

    def test_pending_changes_tracked(self, database):
        """Test pending records are reported until marked synced."""
        database.insert(Patient(id="p1", name="Ada"))
        database.insert(Patient(id="p2", name="Grace"))

        assert database.get_pending_changes_count() == 2
        changes = database.get_changed_records_since()
        assert sorted(r["id"] for r in changes["patients"]) == ["p1", "p2"]

        assert database.mark_records_as_synced("patients", ["p1", "p2"]) == 2
        assert database.get_pending_changes_count() == 0
        assert database.get_changed_records_since() == {}

    def test_mark_synced_skips_newer_versions(self, database):
        """Test a record edited after it was pushed stays pending."""
        database.insert(Patient(id="p1", name="Ada"))
        database.insert(Patient(id="p2", name="Grace"))
        rows = database.get_changed_records_since()["patients"]
        pushed = {r["id"]: r["last_modified"] for r in rows}
        database.update(Patient(id="p1", name="Ada Lovelace"))

        assert database.mark_records_as_synced("patients", ["p1", "p2"], pushed) == 1
        assert database.get("patients", "p1").sync_status == PENDING
        assert database.get("patients", "p2").sync_status == SYNCED

    def test_changed_since_filters_by_time(self, database):
        """Test the since filter excludes older changes."""
        database.insert(Patient(id="p1", name="Ada"))

        later = datetime.now() + timedelta(hours=1)

        assert database.get_changed_records_since(later) == {}

    def test_apply_new_remote_record(self, database):
        """Test a remote record unknown locally is stored as synced."""
        remote = Patient(id="p9", name="Remote", device_id="tablet-2").to_sync_json()

        conflicts = database.apply_remote_changes({"patients": [remote]})

        assert conflicts == []
        record = database.get("patients", "p9")
        assert record.name == "Remote"
        assert record.sync_status == SYNCED
        assert record.device_id == "tablet-2"

    def test_unknown_remote_table_ignored(self, database):
        """Test changes for unknown tables are skipped."""
        assert database.apply_remote_changes({"invoices": [{"id": "x"}]}) == []

    def test_conflict_stored_once(self, database):
        """Test storing the same conflict twice keeps one row."""
        remote = Patient(id="p1", name="Ada").to_sync_json()
        del remote["last_modified"]

        database.apply_remote_changes({"patients": [remote]})
        database.apply_remote_changes({"patients": [remote]})

        assert len(database.get_pending_conflicts()) == 1

    def test_transaction_rolls_back(self, database):
        """Test a failing body leaves no partial writes."""

        def body():
            database.insert(Patient(id="p1", name="Ada"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            database.execute_in_transaction(body)

        assert database.get("patients", "p1") is None

    def test_last_sync_time(self, database):
        """Test the last sync time persists with millisecond precision."""
        assert database.get_last_sync_time() is None
        when = datetime(2026, 1, 1, 10, 0, 0, 123000)

        database.set_last_sync_time(when)

        assert database.get_last_sync_time() == when


class TestSnapshots:
    """Tests for export and import of whole-store snapshots."""

    def test_export_import(self, database):
        """Test a snapshot restores every record as synced."""
        database.insert(Patient(id="p1", name="Ada"))
        database.insert(Visit(id="v1", patient_id="p1"))
        snapshot = database.export_snapshot()

        other = LocalDatabase(":memory:", "tablet-2")
        other.connect()
        other.insert(Patient(id="stale", name="Old"))

        assert other.import_snapshot(snapshot) == 2
        assert other.get("patients", "stale") is None
        assert other.get("patients", "p1").sync_status == SYNCED
        assert other.get_pending_changes_count() == 0
        other.close()

    def test_file_database(self, tmp_path):
        """Test a file-backed store persists across connections."""
        path = tmp_path / "nested" / "local.db"
        db = LocalDatabase(path, "tablet-1")
        db.connect()
        db.insert(Patient(id="p1", name="Ada"))
        db.close()

        reopened = LocalDatabase(path, "tablet-1")
        reopened.connect()
        assert reopened.get("patients", "p1").name == "Ada"
        reopened.close()
