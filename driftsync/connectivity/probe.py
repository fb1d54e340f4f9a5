"""Link classification probes."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from .types import ConnectivityType

logger = logging.getLogger(__name__)

# Interfaces that never carry the device's uplink
IGNORED_PREFIXES = ("lo", "docker", "veth", "br-", "virbr")

MOBILE_PREFIXES = ("wwan", "rmnet", "ppp", "ccmni")
VPN_PREFIXES = ("tun", "tap", "wg", "ipsec", "utun")
BLUETOOTH_PREFIXES = ("bnep", "bt-pan")
ETHERNET_PREFIXES = ("eth", "en", "em")

# When several links are up, the first match in this order wins
PRIORITY = (
    ConnectivityType.WIFI,
    ConnectivityType.ETHERNET,
    ConnectivityType.MOBILE,
    ConnectivityType.VPN,
    ConnectivityType.BLUETOOTH,
    ConnectivityType.OTHER,
)


class ConnectivityProbe(ABC):
    """Abstract source of the current link classification."""

    @abstractmethod
    async def detect(self) -> ConnectivityType:
        """Classify the current network link."""
        pass


class StaticConnectivityProbe(ConnectivityProbe):
    """Reports a fixed classification (mock mode and tests)."""

    def __init__(self, connection_type: ConnectivityType = ConnectivityType.WIFI):
        self.connection_type = connection_type

    async def detect(self) -> ConnectivityType:
        return self.connection_type


class SysfsConnectivityProbe(ConnectivityProbe):
    """Classifies links from /sys/class/net (no extra dependency)."""

    def __init__(self, root: str | Path = "/sys/class/net"):
        self.root = Path(root)

    async def detect(self) -> ConnectivityType:
        found = set()
        try:
            interfaces = sorted(self.root.iterdir())
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            logger.warning(f"Cannot list network interfaces in {self.root}: {e}")
            return ConnectivityType.NONE

        for iface in interfaces:
            if iface.name.startswith(IGNORED_PREFIXES):
                continue
            if self._is_up(iface):
                found.add(self._classify(iface))

        for candidate in PRIORITY:
            if candidate in found:
                return candidate
        return ConnectivityType.NONE

    def _read(self, path: Path) -> str:
        try:
            return path.read_text().strip()
        except (FileNotFoundError, PermissionError, OSError):
            return ""

    def _is_up(self, iface: Path) -> bool:
        operstate = self._read(iface / "operstate")
        if operstate == "up":
            return True
        # Point-to-point links often report "unknown" while carrying traffic
        return operstate == "unknown" and self._read(iface / "carrier") == "1"

    def _classify(self, iface: Path) -> ConnectivityType:
        name = iface.name
        if (iface / "wireless").exists() or (iface / "phy80211").exists():
            return ConnectivityType.WIFI
        if name.startswith(MOBILE_PREFIXES):
            return ConnectivityType.MOBILE
        if name.startswith(VPN_PREFIXES):
            return ConnectivityType.VPN
        if name.startswith(BLUETOOTH_PREFIXES):
            return ConnectivityType.BLUETOOTH
        if name.startswith(ETHERNET_PREFIXES):
            return ConnectivityType.ETHERNET
        return ConnectivityType.OTHER
