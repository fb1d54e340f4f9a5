"""Connectivity classification values."""

from enum import Enum


class ConnectivityType(Enum):
    NONE = "none"
    WIFI = "wifi"
    MOBILE = "mobile"
    ETHERNET = "ethernet"
    BLUETOOTH = "bluetooth"
    VPN = "vpn"
    OTHER = "other"


class NetworkQuality(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


QUALITY_BY_TYPE = {
    ConnectivityType.NONE: NetworkQuality.NONE,
    ConnectivityType.WIFI: NetworkQuality.HIGH,
    ConnectivityType.ETHERNET: NetworkQuality.HIGH,
    ConnectivityType.MOBILE: NetworkQuality.MEDIUM,
    ConnectivityType.BLUETOOTH: NetworkQuality.LOW,
    ConnectivityType.VPN: NetworkQuality.LOW,
    ConnectivityType.OTHER: NetworkQuality.UNKNOWN,
}
