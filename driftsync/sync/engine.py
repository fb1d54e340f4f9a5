"""Sync engine: one entry point for every sync pass.

Both the operation queue and the background scheduler funnel into
``SyncEngine.run_sync``. The state machine guarantees at most one active
pass; a second caller gets a deferred result instead of a parallel pass.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..data.records import to_epoch_ms
from .conflicts import ConflictResolver
from .metrics import SyncMetrics
from .exceptions import DataIntegrityError, SyncError, SyncInProgressError
from .models import (
    BackupData,
    ConflictResolution,
    ResolutionStrategy,
    SyncResult,
    SyncResultStatus,
)
from .operation_queue import NetworkOperation
from .state import SyncStateMachine, SyncStatus

if TYPE_CHECKING:
    from ..cloud.client import CloudClient
    from ..data.database import LocalDatabase

logger = logging.getLogger(__name__)


class SyncEngine:
    """Orchestrates pull, conflict detection, push, backup and restore."""

    def __init__(
        self,
        database: "LocalDatabase",
        remote: "CloudClient",
        state: SyncStateMachine,
        owner_id: str = "default",
        metrics: SyncMetrics | None = None,
    ):
        self.database = database
        self.remote = remote
        self.state = state
        self.owner_id = owner_id
        self.metrics = metrics or SyncMetrics()
        self.resolver = ConflictResolver(database, state, self.metrics)

    def refresh_pending_changes(self) -> int:
        """Recompute the pending change count after local mutations."""
        count = self.database.get_pending_changes_count()
        self.state.set_pending_changes(count)
        return count

    def load_persisted_state(self) -> None:
        """Seed the live state from what the store remembers."""
        self.state.restore_times(self.database.get_last_sync_time())
        self.state.add_conflicts([c.id for c in self.database.get_pending_conflicts()])
        self.refresh_pending_changes()

    async def run_sync(self) -> SyncResult:
        """Run one sync pass.

        Incremental when a previous sync is known, full otherwise.
        """
        result = await self._run_sync()
        self.metrics.record_result(result)
        return result

    async def _run_sync(self) -> SyncResult:
        since = self.database.get_last_sync_time()
        mode = "incremental" if since else "full"
        try:
            self.state.begin(SyncStatus.SYNCING, f"Starting {mode} sync")
        except SyncInProgressError as e:
            logger.info(f"Sync deferred: {e}")
            return SyncResult.deferred(str(e))

        started = time.monotonic()
        pass_started = datetime.now()
        try:
            self.state.update_progress(0.1, "Fetching remote changes")
            remote_changes = await self.remote.pull_changes(
                to_epoch_ms(since) if since else None
            )

            self.state.update_progress(0.3, "Applying remote changes")
            conflicts = self.database.apply_remote_changes(remote_changes, since)
            self.metrics.record_conflicts(len(conflicts))
            if conflicts:
                self.state.add_conflicts([c.id for c in conflicts])

            self.state.update_progress(0.5, "Uploading local changes")
            # Records with an open conflict wait for their resolution
            conflicted = {
                (c.table_name, c.record_id) for c in self.database.get_pending_conflicts()
            }
            local_changes = {
                table: [r for r in rows if (table, r["id"]) not in conflicted]
                for table, rows in self.database.get_changed_records_since().items()
            }
            local_changes = {t: rows for t, rows in local_changes.items() if rows}
            accepted = await self.remote.push_changes(local_changes)
            self.metrics.record_transfer(
                pulled=sum(len(rows) for rows in remote_changes.values()),
                pushed=sum(len(rows) for rows in local_changes.values()),
            )

            self.state.update_progress(0.9, "Finalizing")
            counts: dict[str, int] = {}
            for table, ids in accepted.items():
                pushed = {r["id"]: r["last_modified"] for r in local_changes.get(table, [])}
                counts[table] = self.database.mark_records_as_synced(table, ids, pushed)
            for table, rows in remote_changes.items():
                counts[table] = counts.get(table, 0) + len(rows)

            self.database.set_last_sync_time(pass_started)
            self.refresh_pending_changes()
            self.state.complete()
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=not isinstance(e, SyncError))
            self.state.fail(str(e))
            return SyncResult.failure(str(e), duration=time.monotonic() - started)

        duration = time.monotonic() - started
        outstanding = list(self.state.state.conflicts)
        logger.info(
            f"Sync complete ({mode}): {sum(counts.values())} records, "
            f"{len(outstanding)} conflicts outstanding, {duration:.2f}s"
        )
        if outstanding:
            return SyncResult.partial(counts, outstanding, duration=duration)
        return SyncResult.success(counts, duration=duration, metadata={"mode": mode})

    async def retry(self) -> SyncResult:
        """Acknowledge a failed pass and run again."""
        self.state.reset()
        return await self.run_sync()

    def sync_operation(self, max_retries: int = 3) -> NetworkOperation:
        """Wrap a sync pass as a queueable operation.

        The action raises when the pass fails so the queue can retry it.
        """

        async def action() -> None:
            result = await self.run_sync()
            if result.status == SyncResultStatus.FAILURE:
                # Leave the error state so the queued retry can begin again
                self.state.reset()
                raise SyncError(result.error_message or "sync failed")
            if result.status == SyncResultStatus.DEFERRED:
                raise SyncError(result.error_message or "sync deferred")

        return NetworkOperation(
            id=f"sync-{uuid.uuid4().hex[:8]}",
            description="Synchronize local and remote changes",
            action=action,
            max_retries=max_retries,
        )

    async def create_backup(self, device_id: str | None = None) -> SyncResult:
        """Upload a checksummed snapshot of the whole local store."""
        result = await self._create_backup(device_id)
        self.metrics.record_result(result, kind="backup")
        return result

    async def _create_backup(self, device_id: str | None) -> SyncResult:
        try:
            self.state.begin(SyncStatus.BACKING_UP, "Collecting records")
        except SyncInProgressError as e:
            return SyncResult.deferred(str(e))

        started = time.monotonic()
        try:
            tables = self.database.export_snapshot()
            backup = BackupData.create(
                owner_id=self.owner_id,
                device_id=device_id or self.database.device_id,
                tables=tables,
            )
            self.state.update_progress(0.5, "Uploading backup")
            name = f"backup_{backup.timestamp.strftime('%Y%m%d_%H%M%S')}"
            backup_id = await self.remote.upload_backup(name, backup.to_dict())
            self.database.set_metadata("last_backup_id", backup_id)
            self.state.update_progress(1.0, "Backup uploaded")
            self.state.complete()
        except Exception as e:
            logger.error(f"Backup failed: {e}", exc_info=not isinstance(e, SyncError))
            self.state.fail(str(e))
            return SyncResult.failure(str(e), duration=time.monotonic() - started)

        counts = {table: len(rows) for table, rows in tables.items()}
        return SyncResult.success(
            counts,
            duration=time.monotonic() - started,
            metadata={"backup_id": backup_id, "checksum": backup.checksum},
        )

    async def restore_from_backup(self, backup_id: str | None = None) -> SyncResult:
        """Replace the local store with a remote backup.

        Args:
            backup_id: Backup to restore; the latest one if None.
        """
        result = await self._restore_from_backup(backup_id)
        self.metrics.record_result(result, kind="restore")
        return result

    async def _restore_from_backup(self, backup_id: str | None) -> SyncResult:
        try:
            self.state.begin(SyncStatus.RESTORING, "Locating backup")
        except SyncInProgressError as e:
            return SyncResult.deferred(str(e))

        started = time.monotonic()
        try:
            backup_id = backup_id or await self.remote.latest_backup()
            if not backup_id:
                raise DataIntegrityError("No backup available to restore")

            self.state.update_progress(0.2, "Downloading backup")
            backup = BackupData.from_dict(await self.remote.download_backup(backup_id))

            self.state.update_progress(0.6, "Validating backup")
            if not backup.validate_integrity():
                raise DataIntegrityError(f"Backup {backup_id} failed checksum validation")

            self.state.update_progress(0.8, "Importing records")
            imported = self.database.import_snapshot(backup.tables)
            self.refresh_pending_changes()
            self.state.complete()
        except Exception as e:
            logger.error(f"Restore failed: {e}", exc_info=not isinstance(e, SyncError))
            self.state.fail(str(e))
            return SyncResult.failure(str(e), duration=time.monotonic() - started)

        logger.info(f"Restored {imported} records from backup {backup_id}")
        return SyncResult.success(
            {table: len(rows) for table, rows in backup.tables.items()},
            duration=time.monotonic() - started,
            metadata={"backup_id": backup_id},
        )

    def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        resolved_data: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> ConflictResolution:
        return self.resolver.resolve(conflict_id, strategy, resolved_data, notes)

    def resolve_conflicts(self, strategy: ResolutionStrategy) -> list[ConflictResolution]:
        return self.resolver.resolve_all(strategy)
