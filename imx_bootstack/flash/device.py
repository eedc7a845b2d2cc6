"""Block device checks for flashing.

This module handles all device-related validation before anything is
written to removable storage:
- Validate the device path exists and is a block device
- Ensure whole-device only (reject partitions like /dev/sdb1)
- Refuse the device holding the running system's root filesystem
- Check mount status
- Name partitions of a device and report its bus type
"""

import logging
import os
import re
import stat
from dataclasses import dataclass
from pathlib import Path

from imx_bootstack.errors import BootstackError, ToolExecutionError
from imx_bootstack.shell import run_command

logger = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """Information about a validated block device.

    Attributes:
        path: Absolute path to the device (e.g., '/dev/sdb').
        is_mounted: Whether any partitions on this device are mounted.
        mount_points: Mount points if the device is mounted.
        size_bytes: Size of the device in bytes (if available).
        device_type: Human-readable bus type (SD card, USB drive, ...).
    """

    path: str
    is_mounted: bool
    mount_points: list[str]
    size_bytes: int | None = None
    device_type: str = "unknown"


class DeviceValidationError(BootstackError):
    """Base exception for device validation errors."""


class DeviceNotFoundError(DeviceValidationError):
    """Device path does not exist."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device not found: {device_path}", error_code="DEVICE_NOT_FOUND"
        )
        self.device_path = device_path


class NotBlockDeviceError(DeviceValidationError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Not a block device: {device_path}", error_code="NOT_BLOCK_DEVICE"
        )
        self.device_path = device_path


class PartitionDeviceError(DeviceValidationError):
    """Device appears to be a partition, not a whole device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device appears to be a partition, not a whole device: {device_path}. "
            "Only whole devices (e.g., /dev/sdb, /dev/mmcblk0) are supported.",
            error_code="PARTITION_NOT_ALLOWED",
        )
        self.device_path = device_path


class DeviceMountedError(DeviceValidationError):
    """Device or its partitions are mounted."""

    def __init__(self, device_path: str, mount_points: list[str]) -> None:
        super().__init__(
            f"Device {device_path} has mounted partitions: {', '.join(mount_points)}. "
            "Unmount all partitions before flashing.",
            error_code="DEVICE_MOUNTED",
        )
        self.device_path = device_path
        self.mount_points = mount_points


class SystemDeviceError(DeviceValidationError):
    """Device appears to be the system root device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device {device_path} appears to be the system root device. "
            "Refusing to flash to avoid data loss.",
            error_code="SYSTEM_DEVICE",
        )
        self.device_path = device_path


# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1
_PARTITION_PATTERN_NVME = re.compile(r"^/dev/nvme\d+n\d+p(\d+)$")
# /dev/mmcblk0p1
_PARTITION_PATTERN_MMC = re.compile(r"^/dev/mmcblk\d+p(\d+)$")
# /dev/loop0p1
_PARTITION_PATTERN_LOOP = re.compile(r"^/dev/loop\d+p(\d+)$")

_PARTITION_PATTERNS = (
    _PARTITION_PATTERN_SD,
    _PARTITION_PATTERN_NVME,
    _PARTITION_PATTERN_MMC,
    _PARTITION_PATTERN_LOOP,
)


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition.

    Args:
        device_path: Path to the device.

    Returns:
        True if the path appears to be a partition, False otherwise.
    """
    return any(pattern.match(device_path) for pattern in _PARTITION_PATTERNS)


def partition_path(device_path: str, number: int) -> str:
    """Return the path of partition ``number`` on a whole device.

    Devices whose name ends in a digit (mmcblk0, nvme0n1, loop0) take a
    ``p`` separator: /dev/mmcblk0 -> /dev/mmcblk0p1, /dev/sdb -> /dev/sdb1.
    """
    separator = "p" if device_path[-1:].isdigit() else ""
    return f"{device_path}{separator}{number}"


def partition_to_whole_device(partition: str) -> str:
    """Convert a partition path to its whole device path.

    Paths that do not look like partitions are returned unchanged.
    """
    match = _PARTITION_PATTERN_SD.match(partition)
    if match:
        return partition[: -len(match.group(1))]

    for pattern in (
        _PARTITION_PATTERN_NVME,
        _PARTITION_PATTERN_MMC,
        _PARTITION_PATTERN_LOOP,
    ):
        if pattern.match(partition):
            return partition[: partition.rfind("p")]

    return partition


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device."""
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def get_mount_points(device_path: str) -> list[str]:
    """Get mount points for a device and its partitions.

    Parses /proc/mounts to find any mounted partitions associated with the
    given device.

    Args:
        device_path: Path to the device (e.g., '/dev/sdb').

    Returns:
        List of mount points (empty if none mounted).
    """
    mount_points: list[str] = []
    device_name = Path(device_path).name

    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) < 2:
                    continue
                mounted_name = Path(parts[0]).name
                if mounted_name == device_name:
                    mount_points.append(parts[1])
                elif (
                    mounted_name.startswith(device_name)
                    and len(mounted_name) > len(device_name)
                    and (
                        mounted_name[len(device_name)].isdigit()
                        or mounted_name[len(device_name)] == "p"
                    )
                ):
                    mount_points.append(parts[1])
    except OSError:
        logger.warning("Could not read /proc/mounts, skipping mount check")

    return mount_points


def get_root_device() -> str | None:
    """Get the whole device holding the root filesystem, or None if unknown."""
    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[1] == "/":
                    return partition_to_whole_device(parts[0])
    except OSError:
        logger.warning("Could not read /proc/mounts to determine root device")

    return None


def get_device_size(device_path: str) -> int | None:
    """Get the size of a block device in bytes from sysfs."""
    size_path = Path(f"/sys/block/{Path(device_path).name}/size")
    try:
        if size_path.exists():
            # 512-byte sectors
            return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError) as e:
        logger.warning("Could not read device size for %s: %s", device_path, e)

    return None


def describe_device_type(device_path: str) -> str:
    """Report the bus type of a device using udev properties.

    Returns:
        'SD card', 'USB drive', or 'unknown'.
    """
    try:
        result = run_command(
            ["udevadm", "info", "--query=property", f"--name={device_path}"],
            capture_output=True,
            check=False,
        )
    except ToolExecutionError as e:
        logger.debug("Cannot query udev for %s: %s", device_path, e.message)
        return "unknown"
    if result.returncode != 0:
        return "unknown"

    properties = dict(
        line.split("=", 1) for line in result.output.splitlines() if "=" in line
    )
    if properties.get("ID_DRIVE_FLASH_SD") == "1":
        return "SD card"
    if properties.get("ID_BUS") == "usb":
        return "USB drive"
    return "unknown"


def list_block_devices() -> str:
    """Return a listing of the host's block devices for error reports."""
    try:
        result = run_command(
            ["lsblk", "-o", "NAME,SIZE,TYPE,MOUNTPOINT"],
            capture_output=True,
            check=False,
        )
    except ToolExecutionError as e:
        return f"(lsblk unavailable: {e.message})"
    return result.output


def validate_device(
    device_path: str,
    *,
    check_mount: bool = True,
    check_system_device: bool = True,
    allow_mounted: bool = False,
) -> DeviceInfo:
    """Validate a device path for flashing.

    On a path that is not a block device the host's block devices are
    logged, so the user can pick the right one.

    Args:
        device_path: Path to the device to validate.
        check_mount: Whether to check if the device is mounted.
        check_system_device: Whether to refuse the system root device.
        allow_mounted: If True, warn about mounted devices but don't raise.

    Returns:
        DeviceInfo with validation results.

    Raises:
        DeviceNotFoundError: Device path does not exist.
        NotBlockDeviceError: Path is not a block device.
        PartitionDeviceError: Device is a partition, not a whole device.
        SystemDeviceError: Device is the system root device.
        DeviceMountedError: Device is mounted and allow_mounted is False.
    """
    device_path = os.path.abspath(device_path)
    logger.debug("Validating device: %s", device_path)

    if not os.path.exists(device_path):
        logger.error("Device not found: %s", device_path)
        logger.info("Available block devices:\n%s", list_block_devices())
        raise DeviceNotFoundError(device_path)

    if not is_block_device(device_path):
        logger.error("Not a block device: %s", device_path)
        logger.info("Available block devices:\n%s", list_block_devices())
        raise NotBlockDeviceError(device_path)

    if is_partition_path(device_path):
        logger.error("Device is a partition: %s", device_path)
        raise PartitionDeviceError(device_path)

    if check_system_device:
        root_device = get_root_device()
        if root_device and device_path == root_device:
            logger.error("Device is system root: %s", device_path)
            raise SystemDeviceError(device_path)

    mount_points: list[str] = []
    if check_mount:
        mount_points = get_mount_points(device_path)
        if mount_points and not allow_mounted:
            logger.error("Device is mounted: %s at %s", device_path, mount_points)
            raise DeviceMountedError(device_path, mount_points)
        elif mount_points:
            logger.warning(
                "Device %s has mounted partitions: %s", device_path, mount_points
            )

    size_bytes = get_device_size(device_path)
    device_type = describe_device_type(device_path)
    logger.info(
        "Device validated: %s (%s, size=%s, mounted=%s)",
        device_path,
        device_type,
        size_bytes,
        bool(mount_points),
    )

    return DeviceInfo(
        path=device_path,
        is_mounted=bool(mount_points),
        mount_points=mount_points,
        size_bytes=size_bytes,
        device_type=device_type,
    )


__all__ = [
    "DeviceInfo",
    "DeviceMountedError",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "describe_device_type",
    "get_device_size",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "list_block_devices",
    "partition_path",
    "partition_to_whole_device",
    "validate_device",
]
