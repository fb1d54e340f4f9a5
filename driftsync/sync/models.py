"""Value types exchanged between the sync engine, store and remote."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConflictType(Enum):
    """Nature of a divergence between local and remote copies."""

    UPDATE = "updateConflict"  # both sides edited
    DELETE = "deleteConflict"  # one side deleted
    CREATE = "createConflict"  # both created the same id
    INVALID_DATA = "invalidDataConflict"  # snapshot malformed, needs a human


class ResolutionStrategy(Enum):
    USE_LOCAL = "useLocal"
    USE_REMOTE = "useRemote"
    MERGE = "merge"
    MANUAL = "manual"


@dataclass(frozen=True)
class SyncConflict:
    """A record changed on both sides since the last successful sync."""

    id: str
    table_name: str
    record_id: str
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    conflict_time: datetime
    type: ConflictType
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "local_data": self.local_data,
            "remote_data": self.remote_data,
            "conflict_timestamp": self.conflict_time.isoformat(),
            "conflict_type": self.type.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncConflict":
        return cls(
            id=data["id"],
            table_name=data["table_name"],
            record_id=data["record_id"],
            local_data=data["local_data"],
            remote_data=data["remote_data"],
            conflict_time=datetime.fromisoformat(data["conflict_timestamp"]),
            type=ConflictType(data["conflict_type"]),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class ConflictResolution:
    """Outcome chosen for a SyncConflict."""

    conflict_id: str
    strategy: ResolutionStrategy
    resolved_data: dict[str, Any] | None
    resolution_time: datetime
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "resolution_strategy": self.strategy.value,
            "resolved_data": self.resolved_data,
            "resolution_time": self.resolution_time.isoformat(),
            "notes": self.notes,
        }


class SyncResultStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"  # finished with outstanding conflicts
    DEFERRED = "deferred"  # another operation was active
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    """Result of a sync, backup or restore run."""

    status: SyncResultStatus
    synced_counts: dict[str, int] = field(default_factory=dict)
    conflict_ids: list[str] = field(default_factory=list)
    error_message: str | None = None
    duration: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status in (SyncResultStatus.SUCCESS, SyncResultStatus.PARTIAL)

    @property
    def total_synced(self) -> int:
        return sum(self.synced_counts.values())

    @classmethod
    def success(
        cls,
        synced_counts: dict[str, int] | None = None,
        duration: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> "SyncResult":
        return cls(
            status=SyncResultStatus.SUCCESS,
            synced_counts=synced_counts or {},
            duration=duration,
            metadata=metadata or {},
        )

    @classmethod
    def partial(
        cls,
        synced_counts: dict[str, int],
        conflict_ids: list[str],
        duration: float = 0.0,
    ) -> "SyncResult":
        return cls(
            status=SyncResultStatus.PARTIAL,
            synced_counts=synced_counts,
            conflict_ids=conflict_ids,
            duration=duration,
        )

    @classmethod
    def failure(cls, error_message: str, duration: float = 0.0) -> "SyncResult":
        return cls(
            status=SyncResultStatus.FAILURE,
            error_message=error_message,
            duration=duration,
        )

    @classmethod
    def deferred(cls, reason: str) -> "SyncResult":
        return cls(status=SyncResultStatus.DEFERRED, error_message=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "synced_counts": self.synced_counts,
            "conflict_ids": self.conflict_ids,
            "error_message": self.error_message,
            "duration": self.duration,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


BACKUP_VERSION = "1.0"


@dataclass(frozen=True)
class BackupData:
    """Full snapshot of the local store, checksummed for integrity."""

    owner_id: str
    device_id: str
    timestamp: datetime
    version: str
    tables: dict[str, list[dict[str, Any]]]
    checksum: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def calculate_checksum(
        owner_id: str,
        device_id: str,
        timestamp: datetime,
        version: str,
        tables: dict[str, list[dict[str, Any]]],
    ) -> str:
        canonical = json.dumps(
            {
                "owner_id": owner_id,
                "device_id": device_id,
                "timestamp": timestamp.isoformat(),
                "version": version,
                "tables": tables,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def create(
        cls,
        owner_id: str,
        device_id: str,
        tables: dict[str, list[dict[str, Any]]],
        metadata: dict[str, Any] | None = None,
    ) -> "BackupData":
        timestamp = datetime.now()
        checksum = cls.calculate_checksum(
            owner_id, device_id, timestamp, BACKUP_VERSION, tables
        )
        return cls(
            owner_id=owner_id,
            device_id=device_id,
            timestamp=timestamp,
            version=BACKUP_VERSION,
            tables=tables,
            checksum=checksum,
            metadata=metadata or {},
        )

    def validate_integrity(self) -> bool:
        expected = self.calculate_checksum(
            self.owner_id, self.device_id, self.timestamp, self.version, self.tables
        )
        return expected == self.checksum

    @property
    def record_count(self) -> int:
        return sum(len(rows) for rows in self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "device_id": self.device_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "tables": self.tables,
            "checksum": self.checksum,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupData":
        return cls(
            owner_id=data["owner_id"],
            device_id=data["device_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            version=data.get("version", BACKUP_VERSION),
            tables=data.get("tables", {}),
            checksum=data["checksum"],
            metadata=data.get("metadata", {}),
        )
