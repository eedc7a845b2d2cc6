"""Removable storage flashing.

This module handles:
- Device validation (whole-device only, never the system disk)
- Label-based partition discovery, creation and scoped mounting
- Raw boot image writes at the boot ROM offset
- Dry-run and confirmation handling
- FlashRecord persistence
"""

from imx_bootstack.flash.device import (
    DeviceInfo,
    DeviceMountedError,
    DeviceNotFoundError,
    DeviceValidationError,
    NotBlockDeviceError,
    PartitionDeviceError,
    SystemDeviceError,
    validate_device,
)
from imx_bootstack.flash.models import FlashRecord
from imx_bootstack.flash.partitions import (
    PartitionNotFoundError,
    TargetDevice,
    mounted_partitions,
    resolve_partitions,
)
from imx_bootstack.flash.service import (
    FlashDeviceRequiredError,
    FlashOutcome,
    FlashSummary,
    flash_boot_image,
    flash_device,
    flash_kernel_artifacts,
    get_flash_records,
)
from imx_bootstack.flash.writer import (
    ImageNotFoundError,
    WriteError,
    WriteResult,
    compose_dd_command,
    write_boot_image,
)

__all__ = [
    # Models
    "FlashRecord",
    # Device validation
    "DeviceInfo",
    "DeviceMountedError",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "validate_device",
    # Partitions
    "PartitionNotFoundError",
    "TargetDevice",
    "mounted_partitions",
    "resolve_partitions",
    # Writer
    "ImageNotFoundError",
    "WriteError",
    "WriteResult",
    "compose_dd_command",
    "write_boot_image",
    # Service
    "FlashDeviceRequiredError",
    "FlashOutcome",
    "FlashSummary",
    "flash_boot_image",
    "flash_device",
    "flash_kernel_artifacts",
    "get_flash_records",
]
