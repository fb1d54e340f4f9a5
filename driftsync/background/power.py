"""Power state readers using /sys/class/power_supply (no psutil dependency)."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_POWER_SUPPLY_PATH = "/sys/class/power_supply"
EXTERNAL_SUPPLY_TYPES = ("Mains", "USB", "USB_C", "USB_PD", "USB_DCP", "USB_CDP", "Wireless")
LOW_BATTERY_PERCENT = 15


def _read(path: Path) -> str:
    try:
        return path.read_text().strip()
    except (FileNotFoundError, PermissionError, OSError):
        return ""


def _supplies(power_supply_path: str | Path) -> list[Path]:
    try:
        return sorted(Path(power_supply_path).iterdir())
    except (FileNotFoundError, PermissionError, NotADirectoryError, OSError):
        return []


def _batteries(power_supply_path: str | Path) -> list[Path]:
    return [
        supply
        for supply in _supplies(power_supply_path)
        if _read(supply / "type") == "Battery" and _read(supply / "present") in ("", "1")
    ]


def is_on_external_power(power_supply_path: str | Path = DEFAULT_POWER_SUPPLY_PATH) -> bool:
    """Whether any mains/USB supply reports online.

    Devices without a battery are treated as always on external power.
    """
    if not _batteries(power_supply_path):
        return True
    for supply in _supplies(power_supply_path):
        if _read(supply / "type") in EXTERNAL_SUPPLY_TYPES and _read(supply / "online") == "1":
            return True
    return any(
        _read(battery / "status") in ("Charging", "Full")
        for battery in _batteries(power_supply_path)
    )


def is_battery_low(power_supply_path: str | Path = DEFAULT_POWER_SUPPLY_PATH) -> bool:
    """Whether the battery is below the low threshold and not charging."""
    if is_on_external_power(power_supply_path):
        return False
    for battery in _batteries(power_supply_path):
        try:
            if int(_read(battery / "capacity")) < LOW_BATTERY_PERCENT:
                return True
        except ValueError:
            continue
    return False


def detect_battery_optimized(power_supply_path: str | Path = DEFAULT_POWER_SUPPLY_PATH) -> bool:
    """Whether background work should follow the battery-saving profile.

    True when the device runs on battery without external power. Any probe
    failure yields False.
    """
    try:
        optimized = bool(_batteries(power_supply_path)) and not is_on_external_power(
            power_supply_path
        )
    except Exception as e:
        logger.warning(f"Battery status probe failed, assuming not optimized: {e}")
        return False
    logger.debug(f"Battery-optimized policy: {optimized}")
    return optimized


def resolve_battery_policy(
    setting: str | bool,
    power_supply_path: str | Path = DEFAULT_POWER_SUPPLY_PATH,
) -> bool:
    """Turn the configured battery_optimized setting into a boolean."""
    if isinstance(setting, bool):
        return setting
    if str(setting).lower() == "auto":
        return detect_battery_optimized(power_supply_path)
    return str(setting).lower() in ("true", "1", "yes")
