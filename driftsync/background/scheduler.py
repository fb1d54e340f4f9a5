"""Background sync scheduling.

Translates the power policy into task intervals and constraints, registers
three task identities with the host, and maps fired task ids to handlers.
"""

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from ..sync.models import SyncResultStatus
from ..sync.state import SyncStatus
from .host import (
    BackoffKind,
    BackoffPolicy,
    Constraints,
    ExistingWorkPolicy,
    TaskHost,
    TaskRequest,
)
from .power import detect_battery_optimized

if TYPE_CHECKING:
    from ..sync.engine import SyncEngine

logger = logging.getLogger(__name__)

PERIODIC_SYNC_TASK = "driftsync_periodic_sync"
IMMEDIATE_SYNC_TASK = "driftsync_immediate_sync"
CONNECTIVITY_SYNC_TASK = "driftsync_connectivity_sync"

NORMAL_SYNC_INTERVAL = timedelta(minutes=30)
BATTERY_OPTIMIZED_SYNC_INTERVAL = timedelta(hours=2)
BACKOFF_DELAY = timedelta(minutes=5)
IMMEDIATE_SYNC_DELAY = timedelta(seconds=5)
CONNECTIVITY_SYNC_DELAY = timedelta(seconds=10)

TaskHandler = Callable[[dict[str, Any] | None], Awaitable[bool]]


async def dispatch_task(
    task_id: str,
    input_data: dict[str, Any] | None,
    handlers: Mapping[str, TaskHandler],
) -> bool:
    """Run the handler registered for a fired task.

    Never raises: unknown ids and handler failures report False so the host
    can apply its own retry policy.
    """
    handler = handlers.get(task_id)
    if handler is None:
        logger.warning(f"Unknown background task: {task_id}")
        return False

    try:
        success = bool(await handler(input_data))
    except Exception as e:
        logger.error(f"Background task {task_id} failed: {e}", exc_info=True)
        return False

    logger.info(f"Background task {task_id} {'succeeded' if success else 'failed'}")
    return success


def build_task_handlers(engine: "SyncEngine") -> dict[str, TaskHandler]:
    """Map every task identity to a sync pass on the given engine."""

    async def run_sync(input_data: dict[str, Any] | None) -> bool:
        result = await engine.run_sync()
        if result.status == SyncResultStatus.DEFERRED:
            # Another pass is active and covers this one, unless we are stuck in error
            return engine.state.state.status != SyncStatus.ERROR
        return result.is_success

    return {
        PERIODIC_SYNC_TASK: run_sync,
        IMMEDIATE_SYNC_TASK: run_sync,
        CONNECTIVITY_SYNC_TASK: run_sync,
    }


class BackgroundScheduler:
    """Registers sync tasks with a TaskHost according to the power policy."""

    def __init__(
        self,
        host: TaskHost,
        handlers: Mapping[str, TaskHandler],
        battery_probe: Callable[[], bool] = detect_battery_optimized,
    ):
        """Initialize the scheduler.

        Args:
            host: Platform scheduler to register with.
            handlers: Task id to handler table used on dispatch.
            battery_probe: Returns whether the battery-saving profile applies.
                Read once, on initialize().
        """
        self.host = host
        self.handlers = dict(handlers)
        self._battery_probe = battery_probe
        self._initialized = False
        self.battery_optimized = False
        self._pending: set[asyncio.Task] = set()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Register the dispatch entry point and read the power policy.

        Safe to call more than once.
        """
        if self._initialized:
            return

        try:
            self.battery_optimized = bool(self._battery_probe())
        except Exception as e:
            logger.warning(f"Battery policy probe failed, using normal profile: {e}")
            self.battery_optimized = False

        try:
            await self.host.initialize(self._dispatch)
        except Exception as e:
            logger.error(f"Host scheduler initialization failed: {e}")

        self._initialized = True
        logger.info(
            f"Background scheduler initialized (battery_optimized={self.battery_optimized})"
        )

    async def _dispatch(self, task_id: str, input_data: dict[str, Any] | None) -> bool:
        return await dispatch_task(task_id, input_data, self.handlers)

    def _battery_constraints(self) -> Constraints:
        return Constraints(
            network_connected=True,
            requires_battery_not_low=not self.battery_optimized,
            requires_charging=self.battery_optimized,
        )

    def periodic_request(self) -> TaskRequest:
        interval = (
            BATTERY_OPTIMIZED_SYNC_INTERVAL
            if self.battery_optimized
            else NORMAL_SYNC_INTERVAL
        )
        return TaskRequest(
            unique_name=PERIODIC_SYNC_TASK,
            task_name=PERIODIC_SYNC_TASK,
            constraints=self._battery_constraints(),
            backoff=BackoffPolicy(BackoffKind.EXPONENTIAL, BACKOFF_DELAY.total_seconds()),
            frequency_seconds=interval.total_seconds(),
            existing_policy=ExistingWorkPolicy.KEEP,
        )

    def immediate_request(self, input_data: dict[str, Any] | None = None) -> TaskRequest:
        return TaskRequest(
            unique_name=IMMEDIATE_SYNC_TASK,
            task_name=IMMEDIATE_SYNC_TASK,
            constraints=Constraints(network_connected=True, requires_battery_not_low=True),
            backoff=BackoffPolicy(BackoffKind.EXPONENTIAL, BACKOFF_DELAY.total_seconds()),
            initial_delay_seconds=IMMEDIATE_SYNC_DELAY.total_seconds(),
            existing_policy=ExistingWorkPolicy.REPLACE,
            input_data=input_data,
        )

    def connectivity_request(self) -> TaskRequest:
        return TaskRequest(
            unique_name=CONNECTIVITY_SYNC_TASK,
            task_name=CONNECTIVITY_SYNC_TASK,
            constraints=self._battery_constraints(),
            backoff=BackoffPolicy(BackoffKind.EXPONENTIAL, BACKOFF_DELAY.total_seconds()),
            initial_delay_seconds=CONNECTIVITY_SYNC_DELAY.total_seconds(),
            existing_policy=ExistingWorkPolicy.REPLACE,
        )

    async def _register(self, request: TaskRequest) -> bool:
        await self.initialize()
        try:
            if request.is_periodic:
                await self.host.register_periodic(request)
            else:
                await self.host.register_one_off(request)
        except Exception as e:
            logger.error(f"Failed to register {request.unique_name}: {e}")
            return False
        logger.debug(f"Registered {request.unique_name}")
        return True

    async def register_periodic_sync(self) -> bool:
        return await self._register(self.periodic_request())

    async def schedule_immediate_sync(self, input_data: dict[str, Any] | None = None) -> bool:
        """Request a sync soon; repeated requests within the delay collapse."""
        return await self._register(self.immediate_request(input_data))

    async def schedule_connectivity_sync(self) -> bool:
        return await self._register(self.connectivity_request())

    def on_connectivity_change(self, connected: bool) -> None:
        """Subscriber for the monitor's connectivity channel."""
        if not connected:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, connectivity sync not scheduled")
            return
        task = loop.create_task(self.schedule_connectivity_sync())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def cancel_task(self, task_id: str) -> None:
        """Stop future runs of one task. Failures are logged only."""
        try:
            await self.host.cancel_by_unique_name(task_id)
            logger.info(f"Cancelled background task {task_id}")
        except Exception as e:
            logger.error(f"Failed to cancel {task_id}: {e}")

    async def cancel_all(self) -> None:
        """Stop future runs of every task. Failures are logged only."""
        try:
            await self.host.cancel_all()
            logger.info("Cancelled all background tasks")
        except Exception as e:
            logger.error(f"Failed to cancel background tasks: {e}")
