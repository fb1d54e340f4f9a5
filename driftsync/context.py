"""Composition root.

Builds every sync component from a Config and wires them together. Callers
hold a SyncContext instead of reaching for process-wide singletons.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable

from .background import (
    AsyncioTaskHost,
    BackgroundScheduler,
    TaskHost,
    build_task_handlers,
    is_battery_low,
    resolve_battery_policy,
)
from .background.power import is_on_external_power
from .cloud import CloudClient
from .config import Config, ConnectivityConfig
from .connectivity import (
    ConnectivityMonitor,
    ConnectivityProbe,
    ConnectivityType,
    StaticConnectivityProbe,
    SysfsConnectivityProbe,
)
from .data.database import LocalDatabase
from .sync import (
    NetworkOperation,
    OperationQueue,
    SyncEngine,
    SyncMetrics,
    SyncStateMachine,
)

logger = logging.getLogger(__name__)


def build_probe(config: ConnectivityConfig) -> ConnectivityProbe:
    if config.probe == "static":
        return StaticConnectivityProbe(ConnectivityType(config.static_type))
    return SysfsConnectivityProbe()


class SyncContext:
    """Owns the database, remote client, monitor, queue, scheduler and engine."""

    def __init__(
        self,
        config: Config,
        database: LocalDatabase | None = None,
        remote: CloudClient | None = None,
        probe: ConnectivityProbe | None = None,
        host: TaskHost | None = None,
        battery_probe: Callable[[], bool] | None = None,
    ):
        """Build components, using injected ones where given."""
        self.config = config
        power_path = config.scheduler.power_supply_path

        self.database = database or LocalDatabase(
            config.database.path, config.device.device_id
        )
        self.remote = remote or CloudClient(
            base_url=config.cloud.url,
            owner_id=config.device.owner_id,
            device_id=config.device.device_id,
            api_token=config.cloud.api_token,
            max_retries=config.cloud.max_retries,
            timeout=config.cloud.timeout_seconds,
            batch_size=config.cloud.batch_size,
        )
        self.state = SyncStateMachine()
        self.metrics = SyncMetrics()
        self.engine = SyncEngine(
            self.database,
            self.remote,
            self.state,
            owner_id=config.device.owner_id,
            metrics=self.metrics,
        )

        self.monitor = ConnectivityMonitor(
            probe or build_probe(config.connectivity),
            wifi_preferred_sync=config.connectivity.wifi_preferred_sync,
            poll_interval_seconds=config.connectivity.poll_interval_seconds,
        )
        self.queue = OperationQueue(
            self.monitor.sync_eligible,
            retry_delay_seconds=config.queue.retry_delay_seconds,
        )

        self.host = host or AsyncioTaskHost(
            is_connected=lambda: self.monitor.is_connected,
            is_battery_low=partial(is_battery_low, power_path),
            is_charging=partial(is_on_external_power, power_path),
        )
        self.scheduler = BackgroundScheduler(
            self.host,
            build_task_handlers(self.engine),
            battery_probe=battery_probe
            or partial(resolve_battery_policy, config.scheduler.battery_optimized, power_path),
        )

        self._unsubscribe: list[Callable[[], None]] = []
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect storage, start monitoring and register background work."""
        if self._initialized:
            return

        self.database.connect()
        self.engine.load_persisted_state()

        self._unsubscribe = [
            self.monitor.eligibility.subscribe(self.queue.on_eligibility_change),
            self.queue.failures.subscribe(self.metrics.record_operation_failure),
        ]
        if self.config.scheduler.enabled:
            self._unsubscribe.append(
                self.monitor.connectivity.subscribe(self.scheduler.on_connectivity_change)
            )
        await self.monitor.initialize()

        if self.config.cloud.enabled:
            await self.remote.initialize()

        if self.config.scheduler.enabled:
            await self.scheduler.initialize()
            await self.scheduler.register_periodic_sync()

        self._initialized = True
        logger.info(f"Sync context ready for device {self.config.device.device_id}")

    def request_sync(self) -> NetworkOperation:
        """Queue a sync pass; it runs as soon as sync is eligible."""
        operation = self.engine.sync_operation(max_retries=self.config.queue.max_retries)
        self.queue.enqueue(operation)
        return operation

    async def dispose(self) -> None:
        """Tear everything down in reverse order."""
        logger.info("Disposing sync context...")
        await self.scheduler.cancel_all()
        await self.host.wait_idle()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.queue.clear()
        await self.queue.close()
        await self.monitor.dispose()
        self.database.close()
        self._initialized = False
        logger.info("Sync context disposed")

    def get_status(self) -> dict[str, Any]:
        return {
            "device_id": self.config.device.device_id,
            "state": self.state.state.to_dict(),
            "connectivity": self.monitor.get_status(),
            "queue": {
                "pending": self.queue.pending_count,
                "draining": self.queue.is_draining,
            },
            "scheduler": {
                "initialized": self.scheduler.is_initialized,
                "battery_optimized": self.scheduler.battery_optimized,
            },
            "remote": {
                "url": self.remote.base_url,
                "available": self.remote.available,
            },
            "metrics": self.metrics.summary(),
        }


async def run_context(config: Config, stop_event: asyncio.Event | None = None) -> None:
    """Run the sync context until interrupted or stop_event is set."""
    context = SyncContext(config)
    stop_event = stop_event or asyncio.Event()

    try:
        await context.initialize()
        context.request_sync()
        await stop_event.wait()
    finally:
        await context.dispose()
