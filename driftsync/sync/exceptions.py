"""Exception types raised by the sync engine and its collaborators."""

from enum import Enum


class SyncError(Exception):
    """Base class for sync failures."""

    def __init__(self, message: str, code: str = "SYNC_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class NetworkErrorType(Enum):
    NO_CONNECTION = "no_connection"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"


class NetworkError(SyncError):
    """Transport failure talking to the remote store."""

    def __init__(
        self,
        message: str,
        error_type: NetworkErrorType = NetworkErrorType.UNKNOWN,
        status_code: int | None = None,
    ):
        super().__init__(message, code=f"NETWORK_{error_type.name}")
        self.error_type = error_type
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.error_type in (
            NetworkErrorType.NO_CONNECTION,
            NetworkErrorType.TIMEOUT,
            NetworkErrorType.SERVER_ERROR,
            NetworkErrorType.RATE_LIMITED,
        )


class StorageError(SyncError):
    def __init__(self, message: str):
        super().__init__(message, code="STORAGE_ERROR")


class DataIntegrityError(SyncError):
    """Backup or snapshot data failed validation."""

    def __init__(self, message: str):
        super().__init__(message, code="DATA_INTEGRITY_ERROR")


class SyncInProgressError(SyncError):
    """An operation was started while another one is active."""

    def __init__(self, active_status: str):
        super().__init__(
            f"Cannot start: '{active_status}' is already in progress",
            code="SYNC_IN_PROGRESS",
        )
        self.active_status = active_status


class InvalidTransitionError(SyncError):
    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid state transition {current} -> {requested}",
            code="INVALID_TRANSITION",
        )
        self.current = current
        self.requested = requested
