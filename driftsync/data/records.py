"""Syncable record kinds and their sync JSON encoding.

Every record carries sync metadata (last_modified, sync_status, device_id)
next to its domain fields. Identity for sync purposes is the id alone.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Any, ClassVar

PENDING = "pending"
SYNCED = "synced"

# Keys that describe a record's sync history rather than its content
METADATA_KEYS = frozenset({"last_modified", "sync_status", "device_id", "base_modified"})


def now_ms() -> datetime:
    """Current local time truncated to millisecond precision."""
    now = datetime.now()
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_epoch_ms(value: datetime) -> int:
    return round(value.timestamp() * 1000)


def from_epoch_ms(value: int | float) -> datetime:
    millis = int(value)
    return datetime.fromtimestamp(millis // 1000).replace(
        microsecond=(millis % 1000) * 1000
    )


def strip_metadata(data: dict[str, Any]) -> dict[str, Any]:
    """Return the content part of a sync JSON snapshot."""
    return {k: v for k, v in data.items() if k not in METADATA_KEYS}


@dataclass(frozen=True, eq=False, kw_only=True)
class SyncableRecord:
    """Base shape shared by all record kinds."""

    table_name: ClassVar[str] = ""
    date_fields: ClassVar[tuple[str, ...]] = ()
    amount_fields: ClassVar[tuple[str, ...]] = ()

    id: str
    last_modified: datetime = field(default_factory=now_ms)
    sync_status: str = PENDING
    device_id: str = ""
    deleted: bool = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SyncableRecord):
            return NotImplemented
        return self.table_name == other.table_name and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.table_name, self.id))

    def to_sync_json(self) -> dict[str, Any]:
        """Serialize to a flat snake_case map."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "last_modified":
                value = to_epoch_ms(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data

    @classmethod
    def from_sync_json(cls, data: dict[str, Any]) -> "SyncableRecord":
        """Build a record from sync JSON.

        The payload's own sync_status and device_id are kept as-is.
        """
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name == "last_modified":
                value = from_epoch_ms(value)
            elif value is not None and f.name in cls.date_fields:
                value = datetime.fromisoformat(value)
            elif value is not None and f.name in cls.amount_fields:
                value = float(value)
            elif f.name == "deleted":
                value = bool(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def content(self) -> dict[str, Any]:
        return strip_metadata(self.to_sync_json())

    def touch(self, device_id: str, **changes: Any) -> "SyncableRecord":
        """Return a locally mutated copy stamped as pending.

        last_modified always moves forward, even when the clock does not.
        """
        stamp = max(now_ms(), self.last_modified + timedelta(milliseconds=1))
        return replace(
            self,
            last_modified=stamp,
            sync_status=PENDING,
            device_id=device_id,
            **changes,
        )

    def with_status(self, sync_status: str) -> "SyncableRecord":
        return replace(self, sync_status=sync_status)


@dataclass(frozen=True, eq=False, kw_only=True)
class Patient(SyncableRecord):
    table_name: ClassVar[str] = "patients"
    date_fields: ClassVar[tuple[str, ...]] = ("date_of_birth",)

    name: str
    phone: str = ""
    date_of_birth: datetime | None = None
    address: str | None = None
    emergency_contact: str | None = None


@dataclass(frozen=True, eq=False, kw_only=True)
class Visit(SyncableRecord):
    table_name: ClassVar[str] = "visits"
    date_fields: ClassVar[tuple[str, ...]] = ("visit_date", "follow_up_date")
    amount_fields: ClassVar[tuple[str, ...]] = ("fee",)

    patient_id: str
    visit_date: datetime = field(default_factory=now_ms)
    diagnosis: str | None = None
    treatment: str | None = None
    prescriptions: str | None = None
    notes: str | None = None
    fee: float | None = None
    follow_up_date: datetime | None = None


@dataclass(frozen=True, eq=False, kw_only=True)
class Payment(SyncableRecord):
    table_name: ClassVar[str] = "payments"
    date_fields: ClassVar[tuple[str, ...]] = ("payment_date",)
    amount_fields: ClassVar[tuple[str, ...]] = ("amount",)

    patient_id: str
    amount: float
    visit_id: str | None = None
    payment_date: datetime = field(default_factory=now_ms)
    payment_method: str = "cash"
    notes: str | None = None


RECORD_TYPES: dict[str, type[SyncableRecord]] = {
    cls.table_name: cls for cls in (Patient, Visit, Payment)
}


def record_type(table_name: str) -> type[SyncableRecord]:
    """Look up the record kind stored in a table."""
    try:
        return RECORD_TYPES[table_name]
    except KeyError:
        raise ValueError(f"Unknown table: {table_name}") from None
