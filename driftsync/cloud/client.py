"""HTTP client for the remote store.

Handles change push/pull and backup upload/download with retry logic.
"""

import asyncio
import logging
from typing import Any, Iterator

import httpx

from ..sync.exceptions import NetworkError, NetworkErrorType

logger = logging.getLogger(__name__)


class CloudClient:
    """Client for the remote store shared by one owner's devices.

    Uses exponential backoff for server errors, timeouts and refused
    connections. Client errors are not retried.
    """

    def __init__(
        self,
        base_url: str,
        owner_id: str,
        device_id: str,
        api_token: str | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        batch_size: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the remote store (e.g., "https://sync.example").
            owner_id: Logical owner whose devices share data.
            device_id: This device's identifier.
            api_token: Optional bearer token.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            batch_size: Maximum records per push request.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url
        self.owner_id = owner_id
        self.device_id = device_id
        self.api_token = api_token
        self.max_retries = max_retries
        self.timeout = timeout
        self.batch_size = max(batch_size, 1)
        self._transport = transport
        self.available = False
        self.backoff_base = 1.0

    def _headers(self) -> dict[str, str]:
        headers = {"X-Device-Id": self.device_id}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> tuple[Any, NetworkError | None]:
        """Make HTTP request with exponential backoff retry.

        Returns:
            Tuple of (response_data, error).
        """
        if not self.base_url:
            return None, NetworkError(
                "No remote URL configured", NetworkErrorType.NO_CONNECTION
            )

        url = f"{self.base_url.rstrip('/')}{path}"
        backoff = self.backoff_base
        last_error: NetworkError | None = None

        async with self._client() as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, url, json=json_data, params=params
                    )

                    if response.status_code in (200, 201):
                        return response.json(), None

                    if response.status_code == 404 and allow_not_found:
                        return None, None

                    if response.status_code in (401, 403):
                        return None, NetworkError(
                            f"HTTP {response.status_code}: not authorized",
                            NetworkErrorType.UNAUTHORIZED,
                            response.status_code,
                        )

                    if response.status_code == 429 or response.status_code >= 500:
                        # Retryable
                        error_type = (
                            NetworkErrorType.RATE_LIMITED
                            if response.status_code == 429
                            else NetworkErrorType.SERVER_ERROR
                        )
                        last_error = NetworkError(
                            f"HTTP {response.status_code}",
                            error_type,
                            response.status_code,
                        )
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, NetworkError(
                            f"HTTP {response.status_code}: {response.text}",
                            NetworkErrorType.CLIENT_ERROR,
                            response.status_code,
                        )

                except httpx.ConnectError as e:
                    last_error = NetworkError(
                        f"Connection failed: {e}", NetworkErrorType.NO_CONNECTION
                    )
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    last_error = NetworkError("Request timeout", NetworkErrorType.TIMEOUT)
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, NetworkError(str(e), NetworkErrorType.UNKNOWN)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        return None, last_error or NetworkError(
            f"Max retries ({self.max_retries}) exceeded"
        )

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        data, error = await self._request_with_retry(method, path, **kwargs)
        if error:
            raise error
        return data

    async def initialize(self) -> bool:
        """Check that the remote store is reachable.

        Never raises: an unreachable remote must not stop startup.
        """
        try:
            data, error = await self._request_with_retry("GET", "/api/health")
        except Exception as e:
            logger.warning(f"Remote store initialization failed: {e}")
            self.available = False
            return False

        if error:
            logger.warning(f"Remote store unavailable: {error}")
            self.available = False
        else:
            logger.info(f"Remote store ready at {self.base_url}")
            self.available = True
        return self.available

    async def pull_changes(self, since_ms: int | None = None) -> dict[str, list[dict]]:
        """Fetch records changed remotely since a point in time.

        Args:
            since_ms: Epoch milliseconds of the last successful sync, or None
                for everything.

        Returns:
            Per-table lists of sync JSON.
        """
        params = {"owner_id": self.owner_id, "device_id": self.device_id}
        if since_ms is not None:
            params["since"] = since_ms
        data = await self._call("GET", "/api/sync/changes", params=params)
        return data.get("changes", {}) if data else {}

    async def push_changes(
        self, changes: dict[str, list[dict]]
    ) -> dict[str, list[str]]:
        """Send local changes, at most batch_size records per request.

        Returns:
            Per-table ids the remote accepted.
        """
        accepted: dict[str, list[str]] = {}
        for batch in self._batches(changes):
            payload = {
                "owner_id": self.owner_id,
                "device_id": self.device_id,
                "changes": batch,
            }
            data = await self._call("POST", "/api/sync/changes", json_data=payload)
            for table, ids in (data or {}).get("accepted_ids", {}).items():
                accepted.setdefault(table, []).extend(ids)
        return accepted

    def _batches(self, changes: dict[str, list[dict]]) -> Iterator[dict[str, list[dict]]]:
        batch: dict[str, list[dict]] = {}
        size = 0
        for table, rows in changes.items():
            for row in rows:
                batch.setdefault(table, []).append(row)
                size += 1
                if size >= self.batch_size:
                    yield batch
                    batch, size = {}, 0
        if batch:
            yield batch

    async def upload_backup(self, name: str, backup: dict[str, Any]) -> str:
        """Upload a backup.

        Returns:
            Remote backup id.
        """
        payload = {"owner_id": self.owner_id, "name": name, "backup": backup}
        data = await self._call("POST", "/api/backups", json_data=payload)
        backup_id = data.get("backup_id") if data else None
        if not backup_id:
            raise NetworkError("Backup upload returned no id", NetworkErrorType.UNKNOWN)
        logger.info(f"Uploaded backup {name} as {backup_id}")
        return backup_id

    async def download_backup(self, backup_id: str) -> dict[str, Any]:
        data = await self._call("GET", f"/api/backups/{backup_id}")
        if not data:
            raise NetworkError(
                f"Backup {backup_id} is empty", NetworkErrorType.CLIENT_ERROR
            )
        return data

    async def latest_backup(self) -> str | None:
        """Id of the owner's most recent backup, or None if there is none."""
        data = await self._call(
            "GET",
            "/api/backups/latest",
            params={"owner_id": self.owner_id},
            allow_not_found=True,
        )
        return data.get("backup_id") if data else None
