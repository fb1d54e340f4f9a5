"""Connectivity-gated queue of network operations.

Operations wait in FIFO order until the eligibility predicate holds, then
run one at a time in a single-flight drain. Failed operations are retried on
later drains up to their retry budget.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..events import EventChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkOperation:
    """A unit of work that needs the network.

    Retry counts are tracked by the queue, not on the operation.
    """

    id: str
    description: str
    action: Callable[[], Awaitable[Any]]
    max_retries: int = 3
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class OperationFailure:
    """Reported when an operation has used up its retries."""

    operation: NetworkOperation
    attempts: int
    error: str


class OperationQueue:
    """FIFO buffer of NetworkOperations drained while eligible."""

    def __init__(
        self,
        is_eligible: Callable[[], bool],
        retry_delay_seconds: float | None = None,
    ):
        """Initialize the queue.

        Args:
            is_eligible: Predicate checked before every operation runs.
            retry_delay_seconds: If set, schedule another drain this long
                after a pass that left failed operations waiting.
        """
        self._is_eligible = is_eligible
        self.retry_delay_seconds = retry_delay_seconds

        self._buffer: deque[NetworkOperation] = deque()
        self._snapshot: deque[NetworkOperation] = deque()
        self._retry_counts: dict[str, int] = {}

        self._draining = False
        self._drain_requested = False
        self._drain_task: asyncio.Task | None = None
        self._retry_handle: asyncio.TimerHandle | None = None

        self.failures: EventChannel[OperationFailure] = EventChannel("operation_failures")

    @property
    def pending_count(self) -> int:
        return len(self._buffer) + len(self._snapshot)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def pending_ids(self) -> list[str]:
        """Ids of operations not yet executed, in the order they will run."""
        return [op.id for op in self._snapshot] + [op.id for op in self._buffer]

    def retry_count(self, operation_id: str) -> int:
        return self._retry_counts.get(operation_id, 0)

    def enqueue(self, operation: NetworkOperation) -> None:
        """Add an operation and drain right away if eligible.

        Raises:
            ValueError: If an operation with the same id is already waiting.
        """
        if operation.id in self.pending_ids():
            raise ValueError(f"Operation already queued: {operation.id}")

        self._buffer.append(operation)
        logger.debug(
            f"Operation queued: {operation.id} ({self.pending_count} total)"
        )

        if self._is_eligible():
            self._trigger_drain()

    def remove(self, operation_id: str) -> bool:
        """Remove a waiting operation by id."""
        for pending in (self._buffer, self._snapshot):
            for op in pending:
                if op.id == operation_id:
                    pending.remove(op)
                    self._retry_counts.pop(operation_id, None)
                    logger.debug(f"Operation removed: {operation_id}")
                    return True
        return False

    def clear(self) -> int:
        """Drop every waiting operation.

        Returns:
            Number of operations dropped.
        """
        count = self.pending_count
        self._buffer.clear()
        self._snapshot.clear()
        self._retry_counts.clear()
        self._cancel_retry_timer()
        if count:
            logger.info(f"Cleared {count} queued operations")
        return count

    def on_eligibility_change(self, eligible: bool) -> None:
        """Subscriber for the connectivity monitor's eligibility channel."""
        if eligible and self._buffer:
            self._trigger_drain()

    def _trigger_drain(self) -> None:
        if self._draining:
            self._drain_requested = True
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, drain deferred")
            return
        self._drain_task = loop.create_task(self.drain())

    async def drain(self) -> None:
        """Run buffered operations in order while eligible.

        Only one drain runs at a time. A trigger arriving mid-drain is
        remembered and served by one more pass once this one finishes.
        """
        if self._draining:
            self._drain_requested = True
            return

        self._draining = True
        try:
            while True:
                self._drain_requested = False
                await self._drain_pass()
                if not (self._drain_requested and self._buffer and self._is_eligible()):
                    break
        finally:
            self._draining = False
            # Anything not reached stays queued in original order
            if self._snapshot:
                self._buffer.extendleft(reversed(self._snapshot))
                self._snapshot.clear()

        self._schedule_retry()

    async def _drain_pass(self) -> None:
        if not self._buffer:
            return

        self._snapshot.extend(self._buffer)
        self._buffer.clear()
        logger.info(f"Processing {len(self._snapshot)} queued operations")

        while self._snapshot:
            if not self._is_eligible():
                logger.info(
                    f"Sync no longer eligible, keeping {len(self._snapshot)} "
                    "operations queued"
                )
                # Remainder goes back ahead of anything enqueued mid-drain
                self._buffer.extendleft(reversed(self._snapshot))
                self._snapshot.clear()
                return

            operation = self._snapshot.popleft()
            try:
                await operation.action()
            except Exception as e:
                self._handle_failure(operation, e)
            else:
                self._retry_counts.pop(operation.id, None)
                logger.debug(f"Operation completed: {operation.id}")

    def _handle_failure(self, operation: NetworkOperation, error: Exception) -> None:
        retries = self._retry_counts.get(operation.id, 0)
        if retries < operation.max_retries:
            self._retry_counts[operation.id] = retries + 1
            self._buffer.append(operation)
            logger.warning(
                f"Operation {operation.id} failed ({error}), "
                f"retry {retries + 1}/{operation.max_retries} queued"
            )
            return

        self._retry_counts.pop(operation.id, None)
        logger.error(
            f"Operation {operation.id} ({operation.description}) failed permanently "
            f"after {retries + 1} attempts: {error}"
        )
        self.failures.publish(OperationFailure(operation, retries + 1, str(error)))

    def _schedule_retry(self) -> None:
        if self.retry_delay_seconds is None or self._retry_handle is not None:
            return
        if not any(op.id in self._retry_counts for op in self._buffer):
            return
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self.retry_delay_seconds, self._on_retry_timer)
        logger.debug(f"Retry drain scheduled in {self.retry_delay_seconds}s")

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        if self._buffer and self._is_eligible():
            self._trigger_drain()

    def _cancel_retry_timer(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def wait_idle(self) -> None:
        """Wait until a scheduled or running drain has finished."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.gather(self._drain_task, return_exceptions=True)

    async def close(self) -> None:
        """Stop timers and wait for a running drain to finish."""
        self._cancel_retry_timer()
        await self.wait_idle()
        self._drain_task = None
