"""SQLite-backed local store for syncable records.

Each record kind lives in its own table holding the sync JSON payload next
to indexed sync metadata. Deletes are tombstones so they can be synced.
"""

import json
import logging
import sqlite3
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..sync.conflicts import detect_conflict
from ..sync.exceptions import StorageError
from ..sync.models import ConflictResolution, SyncConflict
from .records import (
    PENDING,
    RECORD_TYPES,
    SYNCED,
    SyncableRecord,
    from_epoch_ms,
    record_type,
    to_epoch_ms,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECORD_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    last_modified INTEGER NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    device_id TEXT NOT NULL DEFAULT '',
    deleted INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_{table}_sync ON {table}(sync_status, last_modified);
"""

SCHEMA = """
-- Conflicts detected while applying remote changes
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_data TEXT NOT NULL,
    remote_data TEXT NOT NULL,
    conflict_timestamp TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    description TEXT,
    resolution_status TEXT NOT NULL DEFAULT 'pending',
    resolved_data TEXT,
    resolution_time TEXT,
    resolution_strategy TEXT,
    notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_conflicts_status ON sync_conflicts(resolution_status);

-- Key/value sync bookkeeping (last sync time, last backup id, ...)
CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT NOT NULL
);
"""


class LocalDatabase:
    """Local record store used by the sync engine."""

    def __init__(self, db_path: str | Path, device_id: str):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            device_id: Identifier stamped on local writes.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.device_id = device_id
        self._conn: sqlite3.Connection | None = None
        self._in_transaction = False

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        for table in RECORD_TYPES:
            self._conn.executescript(RECORD_TABLE_SCHEMA.format(table=table))
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info(f"LocalDatabase connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _commit(self) -> None:
        if not self._in_transaction:
            self._ensure_connected().commit()

    def execute_in_transaction(self, body: Callable[[], T]) -> T:
        """Run body atomically, rolling back every write if it raises.

        Nested calls join the outer transaction.
        """
        conn = self._ensure_connected()
        if self._in_transaction:
            return body()

        self._in_transaction = True
        try:
            result = body()
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            logger.warning("Transaction rolled back", exc_info=True)
            raise
        finally:
            self._in_transaction = False

    # Record access

    def _check_table(self, table_name: str) -> type[SyncableRecord]:
        try:
            return record_type(table_name)
        except ValueError as e:
            raise StorageError(str(e)) from None

    def _write(self, record: SyncableRecord) -> SyncableRecord:
        conn = self._ensure_connected()
        try:
            conn.execute(
                f"""
                INSERT OR REPLACE INTO {record.table_name} (
                    id, payload, last_modified, sync_status, device_id, deleted
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    json.dumps(record.to_sync_json()),
                    to_epoch_ms(record.last_modified),
                    record.sync_status,
                    record.device_id,
                    int(record.deleted),
                ),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {record.table_name}/{record.id}: {e}") from e
        self._commit()
        return record

    def _row_to_record(self, table_name: str, row: sqlite3.Row) -> SyncableRecord:
        return record_type(table_name).from_sync_json(json.loads(row["payload"]))

    def _get_any(self, table_name: str, record_id: str) -> SyncableRecord | None:
        """Fetch a record including tombstones."""
        self._check_table(table_name)
        row = self._ensure_connected().execute(
            f"SELECT payload FROM {table_name} WHERE id = ?", (record_id,)
        ).fetchone()
        return self._row_to_record(table_name, row) if row else None

    def insert(self, record: SyncableRecord) -> SyncableRecord:
        """Store a new local record.

        Raises:
            StorageError: If a live record with the same id exists.
        """
        self._check_table(record.table_name)
        existing = self._get_any(record.table_name, record.id)
        if existing is not None and not existing.deleted:
            raise StorageError(f"{record.table_name}/{record.id} already exists")
        stored = self._write(record.touch(self.device_id))
        logger.debug(f"Inserted {record.table_name}/{record.id}")
        return stored

    def get(self, table_name: str, record_id: str) -> SyncableRecord | None:
        record = self._get_any(table_name, record_id)
        if record is None or record.deleted:
            return None
        return record

    def list_all(self, table_name: str) -> list[SyncableRecord]:
        self._check_table(table_name)
        cursor = self._ensure_connected().execute(
            f"SELECT payload FROM {table_name} WHERE deleted = 0 ORDER BY last_modified DESC"
        )
        return [self._row_to_record(table_name, row) for row in cursor]

    def update(self, record: SyncableRecord) -> SyncableRecord:
        """Store a local modification.

        Raises:
            StorageError: If the record does not exist.
        """
        current = self.get(record.table_name, record.id)
        if current is None:
            raise StorageError(f"{record.table_name}/{record.id} not found")
        changes = {
            f.name: getattr(record, f.name)
            for f in fields(record)
            if f.name not in ("id", "last_modified", "sync_status", "device_id")
        }
        return self._write(current.touch(self.device_id, **changes))

    def delete(self, table_name: str, record_id: str) -> bool:
        """Tombstone a record so the delete can be synced."""
        current = self.get(table_name, record_id)
        if current is None:
            return False
        self._write(current.touch(self.device_id, deleted=True))
        logger.debug(f"Deleted {table_name}/{record_id}")
        return True

    def search(self, table_name: str, query: str, limit: int = 50) -> list[SyncableRecord]:
        """Case-insensitive substring search over record content."""
        self._check_table(table_name)
        cursor = self._ensure_connected().execute(
            f"""
            SELECT payload FROM {table_name}
            WHERE deleted = 0 AND payload LIKE ?
            ORDER BY last_modified DESC
            LIMIT ?
            """,
            (f"%{query}%", limit),
        )
        return [self._row_to_record(table_name, row) for row in cursor]

    def save_sync_json(
        self,
        table_name: str,
        data: dict[str, Any],
        sync_status: str,
        touch: bool = False,
    ) -> SyncableRecord:
        """Write a sync JSON snapshot as the stored version of a record.

        Args:
            table_name: Target table.
            data: Sync JSON of the record.
            sync_status: Status to store the record with.
            touch: Stamp the write as a fresh local mutation.
        """
        record = self._check_table(table_name).from_sync_json(data)
        if touch:
            current = self._get_any(table_name, record.id)
            if current is not None and current.last_modified > record.last_modified:
                record = replace(record, last_modified=current.last_modified)
            record = record.touch(self.device_id)
        return self._write(record.with_status(sync_status))

    # Sync support

    def get_changed_records_since(
        self, since: datetime | None = None
    ) -> dict[str, list[dict[str, Any]]]:
        """Pending local changes per table, as sync JSON.

        Args:
            since: If given, only changes made after this time.
        """
        conn = self._ensure_connected()
        since_ms = to_epoch_ms(since) if since else -1
        changes: dict[str, list[dict[str, Any]]] = {}
        for table in RECORD_TYPES:
            cursor = conn.execute(
                f"""
                SELECT payload FROM {table}
                WHERE sync_status = ? AND last_modified > ?
                ORDER BY last_modified ASC
                """,
                (PENDING, since_ms),
            )
            rows = [json.loads(row["payload"]) for row in cursor]
            if rows:
                changes[table] = rows
        return changes

    def mark_records_as_synced(
        self,
        table_name: str,
        record_ids: list[str],
        pushed_versions: dict[str, int] | None = None,
    ) -> int:
        """Mark records as synced.

        Args:
            table_name: Table the records live in.
            record_ids: Ids the remote accepted.
            pushed_versions: ``last_modified`` (epoch ms) of each record as it
                was pushed. A record edited since then stays pending.

        Returns:
            Number of records updated.
        """
        if not record_ids:
            return 0
        pushed_versions = pushed_versions or {}
        count = 0
        for record_id in record_ids:
            record = self._get_any(table_name, record_id)
            if record is None or record.sync_status == SYNCED:
                continue
            pushed = pushed_versions.get(record_id)
            if pushed is not None and to_epoch_ms(record.last_modified) != int(pushed):
                logger.debug(f"{table_name}/{record_id} changed during push, left pending")
                continue
            self._write(record.with_status(SYNCED))
            count += 1

        logger.debug(f"Marked {count} {table_name} records as synced")
        return count

    def apply_remote_changes(
        self,
        changes: dict[str, list[dict[str, Any]]],
        base_reference: datetime | None = None,
    ) -> list[SyncConflict]:
        """Apply incoming remote records, collecting conflicts.

        Records that conflict with local edits are not applied; the conflict
        is stored instead. Runs in one transaction.

        Args:
            changes: Per-table lists of remote sync JSON.
            base_reference: Time of the last successful sync, used when a
                remote record does not say which version it was based on.

        Returns:
            Newly detected conflicts still awaiting resolution.
        """

        def body() -> list[SyncConflict]:
            conflicts: list[SyncConflict] = []
            applied = 0
            for table_name, remote_records in changes.items():
                if table_name not in RECORD_TYPES:
                    logger.warning(f"Ignoring remote changes for unknown table {table_name}")
                    continue
                for remote in remote_records:
                    remote_id = remote.get("id") if isinstance(remote, dict) else None
                    local = self._get_any(table_name, str(remote_id)) if remote_id else None
                    local_data = local.to_sync_json() if local else None
                    conflict = detect_conflict(
                        table_name, local_data, remote, base_reference
                    )
                    if conflict is None:
                        self.save_sync_json(table_name, remote, sync_status=SYNCED)
                        applied += 1
                        continue
                    if self.is_conflict_resolved(conflict.id):
                        # Already decided on an earlier pass
                        continue
                    self.store_conflict(conflict)
                    conflicts.append(conflict)
            logger.info(
                f"Applied {applied} remote changes, {len(conflicts)} conflicts"
            )
            return conflicts

        return self.execute_in_transaction(body)

    def get_pending_changes_count(self) -> int:
        conn = self._ensure_connected()
        total = 0
        for table in RECORD_TYPES:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE sync_status = ?", (PENDING,)
            ).fetchone()
            total += row[0]
        return total

    # Conflicts

    def store_conflict(self, conflict: SyncConflict) -> None:
        """Persist a conflict; storing the same conflict again is a no-op."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT OR IGNORE INTO sync_conflicts (
                id, table_name, record_id, local_data, remote_data,
                conflict_timestamp, conflict_type, description
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.id,
                conflict.table_name,
                conflict.record_id,
                json.dumps(conflict.local_data),
                json.dumps(conflict.remote_data),
                conflict.conflict_time.isoformat(),
                conflict.type.value,
                conflict.description,
            ),
        )
        self._commit()

    def _row_to_conflict(self, row: sqlite3.Row) -> SyncConflict:
        return SyncConflict.from_dict(
            {
                **dict(row),
                "local_data": json.loads(row["local_data"]),
                "remote_data": json.loads(row["remote_data"]),
            }
        )

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        row = self._ensure_connected().execute(
            "SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)
        ).fetchone()
        return self._row_to_conflict(row) if row else None

    def get_pending_conflicts(self) -> list[SyncConflict]:
        cursor = self._ensure_connected().execute(
            """
            SELECT * FROM sync_conflicts
            WHERE resolution_status = 'pending'
            ORDER BY conflict_timestamp ASC, id ASC
            """
        )
        return [self._row_to_conflict(row) for row in cursor]

    def is_conflict_resolved(self, conflict_id: str) -> bool:
        row = self._ensure_connected().execute(
            "SELECT resolution_status FROM sync_conflicts WHERE id = ?", (conflict_id,)
        ).fetchone()
        return row is not None and row["resolution_status"] == "resolved"

    def resolve_conflict(self, resolution: ConflictResolution) -> bool:
        """Record a resolution.

        Returns:
            False if the conflict was already resolved or does not exist.
        """
        cursor = self._ensure_connected().execute(
            """
            UPDATE sync_conflicts
            SET resolution_status = 'resolved',
                resolved_data = ?,
                resolution_time = ?,
                resolution_strategy = ?,
                notes = ?
            WHERE id = ? AND resolution_status = 'pending'
            """,
            (
                json.dumps(resolution.resolved_data),
                resolution.resolution_time.isoformat(),
                resolution.strategy.value,
                resolution.notes,
                resolution.conflict_id,
            ),
        )
        self._commit()
        return cursor.rowcount > 0

    # Metadata

    def get_metadata(self, key: str) -> str | None:
        row = self._ensure_connected().execute(
            "SELECT value FROM sync_metadata WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        self._ensure_connected().execute(
            """
            INSERT OR REPLACE INTO sync_metadata (key, value, updated_at)
            VALUES (?, ?, ?)
            """,
            (key, value, datetime.now().isoformat()),
        )
        self._commit()

    def get_last_sync_time(self) -> datetime | None:
        value = self.get_metadata("last_sync_time")
        return from_epoch_ms(int(value)) if value else None

    def set_last_sync_time(self, when: datetime) -> None:
        self.set_metadata("last_sync_time", str(to_epoch_ms(when)))

    # Snapshots

    def export_snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """All records, tombstones included, as sync JSON per table."""
        conn = self._ensure_connected()
        snapshot = {}
        for table in RECORD_TYPES:
            cursor = conn.execute(f"SELECT payload FROM {table} ORDER BY id ASC")
            snapshot[table] = [json.loads(row["payload"]) for row in cursor]
        return snapshot

    def import_snapshot(self, tables: dict[str, list[dict[str, Any]]]) -> int:
        """Replace all records with a snapshot, marking them synced.

        Returns:
            Number of records imported.
        """

        def body() -> int:
            conn = self._ensure_connected()
            count = 0
            for table in RECORD_TYPES:
                conn.execute(f"DELETE FROM {table}")
                for data in tables.get(table, []):
                    self.save_sync_json(table, data, sync_status=SYNCED)
                    count += 1
            return count

        count = self.execute_in_transaction(body)
        logger.info(f"Imported snapshot with {count} records")
        return count

    def get_stats(self) -> dict[str, Any]:
        """Record counts per table and sync bookkeeping."""
        conn = self._ensure_connected()
        stats: dict[str, Any] = {"device_id": self.device_id, "tables": {}}
        for table in RECORD_TYPES:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE deleted = 0"
            ).fetchone()
            stats["tables"][table] = row[0]
        stats["pending_changes"] = self.get_pending_changes_count()
        stats["pending_conflicts"] = conn.execute(
            "SELECT COUNT(*) FROM sync_conflicts WHERE resolution_status = 'pending'"
        ).fetchone()[0]
        return stats
