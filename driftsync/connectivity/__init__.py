"""Network link monitoring."""

from .monitor import ConnectivityMonitor
from .probe import ConnectivityProbe, StaticConnectivityProbe, SysfsConnectivityProbe
from .types import ConnectivityType, NetworkQuality

__all__ = [
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "ConnectivityType",
    "NetworkQuality",
    "StaticConnectivityProbe",
    "SysfsConnectivityProbe",
]
