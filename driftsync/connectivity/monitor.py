"""Connectivity monitor.

Tracks the current link classification and publishes a notification on each
channel only when the value that channel carries actually changes.
"""

import asyncio
import logging
from typing import Any

from ..events import EventChannel
from .probe import ConnectivityProbe
from .types import QUALITY_BY_TYPE, ConnectivityType, NetworkQuality

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Observes the network link and derives sync eligibility.

    Channels:
        connectivity: bool, published when "connected" flips.
        wifi: bool, published when "on wifi" flips.
        type_changes: ConnectivityType, published on any classification change.
        eligibility: bool, published when sync_eligible() flips.
    """

    def __init__(
        self,
        probe: ConnectivityProbe | None = None,
        wifi_preferred_sync: bool = True,
        poll_interval_seconds: float | None = None,
    ):
        self._probe = probe
        self._wifi_preferred_sync = wifi_preferred_sync
        self._poll_interval = poll_interval_seconds
        self._type = ConnectivityType.NONE
        self._task: asyncio.Task | None = None
        self._running = False

        self.connectivity: EventChannel[bool] = EventChannel("connectivity")
        self.wifi: EventChannel[bool] = EventChannel("wifi")
        self.type_changes: EventChannel[ConnectivityType] = EventChannel("connection_type")
        self.eligibility: EventChannel[bool] = EventChannel("sync_eligibility")

    @property
    def connection_type(self) -> ConnectivityType:
        return self._type

    @property
    def is_connected(self) -> bool:
        return self._type != ConnectivityType.NONE

    @property
    def is_wifi(self) -> bool:
        return self._type == ConnectivityType.WIFI

    @property
    def wifi_preferred_sync(self) -> bool:
        return self._wifi_preferred_sync

    @wifi_preferred_sync.setter
    def wifi_preferred_sync(self, value: bool) -> None:
        was_eligible = self.sync_eligible()
        self._wifi_preferred_sync = value
        logger.info(f"Wifi-preferred sync {'enabled' if value else 'disabled'}")
        if self.sync_eligible() != was_eligible:
            self.eligibility.publish(self.sync_eligible())

    def sync_eligible(self) -> bool:
        """Whether the current link may be used for sync."""
        if not self.is_connected:
            return False
        if self._wifi_preferred_sync:
            return self.is_wifi
        return True

    def network_quality(self) -> NetworkQuality:
        return QUALITY_BY_TYPE[self._type]

    def update(self, connection_type: ConnectivityType) -> None:
        """Record a new classification and notify on real changes."""
        if connection_type == self._type:
            return

        was_connected = self.is_connected
        was_wifi = self.is_wifi
        was_eligible = self.sync_eligible()

        logger.info(f"Connectivity changed: {self._type.value} -> {connection_type.value}")
        self._type = connection_type

        self.type_changes.publish(connection_type)
        if self.is_connected != was_connected:
            self.connectivity.publish(self.is_connected)
        if self.is_wifi != was_wifi:
            self.wifi.publish(self.is_wifi)
        if self.sync_eligible() != was_eligible:
            self.eligibility.publish(self.sync_eligible())

    async def refresh(self) -> ConnectivityType:
        """Ask the probe for the current classification."""
        if self._probe is None:
            return self._type
        try:
            detected = await self._probe.detect()
        except Exception as e:
            logger.warning(f"Connectivity probe failed, assuming offline: {e}")
            detected = ConnectivityType.NONE
        self.update(detected)
        return detected

    async def initialize(self) -> None:
        """Read the initial classification and start polling."""
        await self.refresh()
        if self._poll_interval and self._probe is not None and not self._running:
            self._running = True
            self._task = asyncio.create_task(self._poll_loop())
            logger.info(f"Connectivity polling started (interval={self._poll_interval}s)")

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            await self.refresh()

    async def dispose(self) -> None:
        """Stop polling and drop all subscribers."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for channel in (self.connectivity, self.wifi, self.type_changes, self.eligibility):
            channel.clear()

    def get_status(self) -> dict[str, Any]:
        return {
            "connection_type": self._type.value,
            "connected": self.is_connected,
            "wifi": self.is_wifi,
            "wifi_preferred_sync": self._wifi_preferred_sync,
            "sync_eligible": self.sync_eligible(),
            "network_quality": self.network_quality().value,
        }
