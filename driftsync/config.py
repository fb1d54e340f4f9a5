"""Configuration loading for driftsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DeviceConfig:
    device_id: str = "driftsync-device"
    owner_id: str = "default"


@dataclass
class DatabaseConfig:
    path: str = "~/.driftsync/local.db"


@dataclass
class CloudConfig:
    """Configuration for the remote store."""

    enabled: bool = True
    url: str = ""
    api_token: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    batch_size: int = 500


@dataclass
class ConnectivityConfig:
    """Configuration for link monitoring."""

    wifi_preferred_sync: bool = True
    poll_interval_seconds: float = 15.0
    probe: str = "sysfs"  # "sysfs" or "static"
    static_type: str = "wifi"  # used when probe is "static"


@dataclass
class QueueConfig:
    max_retries: int = 3
    retry_delay_seconds: float | None = 30.0


@dataclass
class SchedulerConfig:
    """Configuration for background sync scheduling."""

    enabled: bool = True
    battery_optimized: str | bool = "auto"  # "auto", true or false
    power_supply_path: str = "/sys/class/power_supply"


@dataclass
class ConflictConfig:
    default_strategy: str = "manual"


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DRIFTSYNC_ prefix."""
    return os.environ.get(f"DRIFTSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Device overrides
    if device_id := _get_env("DEVICE_ID"):
        config.device.device_id = device_id
    if owner_id := _get_env("OWNER_ID"):
        config.device.owner_id = owner_id

    if db_path := _get_env("DB_PATH"):
        config.database.path = db_path

    # Cloud overrides
    if cloud_enabled := _get_env("CLOUD_ENABLED"):
        config.cloud.enabled = _is_true(cloud_enabled)
    if url := _get_env("CLOUD_URL"):
        config.cloud.url = url
    if token := _get_env("CLOUD_API_TOKEN"):
        config.cloud.api_token = token
    if timeout := _get_env("CLOUD_TIMEOUT"):
        config.cloud.timeout_seconds = float(timeout)

    # Connectivity overrides
    if wifi_only := _get_env("WIFI_PREFERRED_SYNC"):
        config.connectivity.wifi_preferred_sync = _is_true(wifi_only)
    if probe := _get_env("CONNECTIVITY_PROBE"):
        config.connectivity.probe = probe
    if static_type := _get_env("CONNECTIVITY_STATIC_TYPE"):
        config.connectivity.static_type = static_type

    # Scheduler overrides
    if scheduler_enabled := _get_env("SCHEDULER_ENABLED"):
        config.scheduler.enabled = _is_true(scheduler_enabled)
    if battery := _get_env("BATTERY_OPTIMIZED"):
        config.scheduler.battery_optimized = (
            "auto" if battery.lower() == "auto" else _is_true(battery)
        )

    if strategy := _get_env("CONFLICT_STRATEGY"):
        config.conflicts.default_strategy = strategy

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    device_id=device_data.get("device_id", config.device.device_id),
                    owner_id=device_data.get("owner_id", config.device.owner_id),
                )

            if "database" in data:
                config.database = DatabaseConfig(
                    path=data["database"].get("path", config.database.path)
                )

            # Parse cloud config
            if "cloud" in data:
                cloud_data = data["cloud"]
                config.cloud = CloudConfig(
                    enabled=cloud_data.get("enabled", config.cloud.enabled),
                    url=cloud_data.get("url", config.cloud.url),
                    api_token=cloud_data.get("api_token"),
                    timeout_seconds=cloud_data.get(
                        "timeout_seconds", config.cloud.timeout_seconds
                    ),
                    max_retries=cloud_data.get("max_retries", config.cloud.max_retries),
                    batch_size=cloud_data.get("batch_size", config.cloud.batch_size),
                )

            # Parse connectivity config
            if "connectivity" in data:
                conn_data = data["connectivity"]
                config.connectivity = ConnectivityConfig(
                    wifi_preferred_sync=conn_data.get(
                        "wifi_preferred_sync", config.connectivity.wifi_preferred_sync
                    ),
                    poll_interval_seconds=conn_data.get(
                        "poll_interval_seconds",
                        config.connectivity.poll_interval_seconds,
                    ),
                    probe=conn_data.get("probe", config.connectivity.probe),
                    static_type=conn_data.get(
                        "static_type", config.connectivity.static_type
                    ),
                )

            if "queue" in data:
                queue_data = data["queue"]
                config.queue = QueueConfig(
                    max_retries=queue_data.get("max_retries", config.queue.max_retries),
                    retry_delay_seconds=queue_data.get(
                        "retry_delay_seconds", config.queue.retry_delay_seconds
                    ),
                )

            # Parse scheduler config
            if "scheduler" in data:
                sched_data = data["scheduler"]
                config.scheduler = SchedulerConfig(
                    enabled=sched_data.get("enabled", config.scheduler.enabled),
                    battery_optimized=sched_data.get(
                        "battery_optimized", config.scheduler.battery_optimized
                    ),
                    power_supply_path=sched_data.get(
                        "power_supply_path", config.scheduler.power_supply_path
                    ),
                )

            if "conflicts" in data:
                config.conflicts = ConflictConfig(
                    default_strategy=data["conflicts"].get(
                        "default_strategy", config.conflicts.default_strategy
                    )
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
