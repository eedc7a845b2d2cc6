"""Raw boot image writes.

The i.MX8M boot ROM reads the composite boot image from a fixed 32 KiB
offset on SD/eMMC, so the image is written with dd at that offset without
touching the partition table in the first sector.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from imx_bootstack.errors import BootstackError, OperationCancelled
from imx_bootstack.flash.device import validate_device
from imx_bootstack.flash.partitions import (
    BOOT_PARTITION_START,
    BOOT_PARTITION_START_BYTES,
)
from imx_bootstack.shell import format_command, privileged, run_command
from imx_bootstack.types import ConfirmCallback, WriteOutcome

logger = logging.getLogger(__name__)

BOOT_IMAGE_BLOCK_SIZE = "1K"
BOOT_IMAGE_SEEK_BLOCKS = 32
BOOT_IMAGE_OFFSET_BYTES = BOOT_IMAGE_SEEK_BLOCKS * 1024


class WriteError(BootstackError):
    """Base exception for write errors."""


class ImageNotFoundError(WriteError):
    """Image file does not exist."""

    def __init__(self, image_path: Path) -> None:
        super().__init__(
            f"Image file not found: {image_path}", error_code="IMAGE_NOT_FOUND"
        )
        self.image_path = image_path


@dataclass
class WriteResult:
    """Result of a boot image write.

    Attributes:
        outcome: Whether the image was written or only described.
        command: The dd command line (as run, or as it would run).
        image_path: Image that was written.
        device_path: Target device.
        device_type: Reported bus type of the device.
        bytes_written: Image size when written, 0 for a dry run.
    """

    outcome: WriteOutcome
    command: str
    image_path: Path
    device_path: str
    device_type: str
    bytes_written: int = 0


def compose_dd_command(image_path: Path, device_path: str) -> list[str]:
    """Compose the dd command writing the boot image at its fixed offset."""
    return [
        "dd",
        f"if={image_path}",
        f"of={device_path}",
        f"bs={BOOT_IMAGE_BLOCK_SIZE}",
        f"seek={BOOT_IMAGE_SEEK_BLOCKS}",
        "conv=fsync",
    ]


def write_boot_image(
    image_path: Path,
    device_path: str,
    *,
    dry_run: bool = False,
    assume_yes: bool = False,
    confirm: ConfirmCallback | None = None,
) -> WriteResult:
    """Write the composite boot image to a block device.

    Preconditions are checked before anything is written. A dry run logs
    the exact command and returns without prompting. Otherwise the user
    must affirm the write unless ``assume_yes`` is set.

    Args:
        image_path: Composite boot image.
        device_path: Whole block device.
        dry_run: Describe the write without performing it.
        assume_yes: Skip the confirmation prompt.
        confirm: Callback asking the user; a missing callback declines.

    Returns:
        WriteResult describing the write.

    Raises:
        ImageNotFoundError: The image does not exist.
        DeviceValidationError: The device is missing, not a block device,
            a partition, or the system disk.
        OperationCancelled: The user declined.
        ToolExecutionError: dd or sync failed.
    """
    if not image_path.is_file():
        raise ImageNotFoundError(image_path)

    info = validate_device(device_path, allow_mounted=True)
    image_size = image_path.stat().st_size
    command = privileged(compose_dd_command(image_path, info.path))
    command_str = format_command(command)

    if BOOT_IMAGE_OFFSET_BYTES + image_size > BOOT_PARTITION_START_BYTES:
        logger.warning(
            "Boot image (%d bytes) extends past %s and overlaps the BOOT partition "
            "region",
            image_size,
            BOOT_PARTITION_START,
        )

    if dry_run:
        logger.info("Dry run: flashing skipped. Command would be: %s", command_str)
        return WriteResult(
            outcome=WriteOutcome.DRY_RUN,
            command=command_str,
            image_path=image_path,
            device_path=info.path,
            device_type=info.device_type,
        )

    if not assume_yes:
        prompt = (
            f"Write {image_path.name} to {info.path} ({info.device_type})? "
            "Existing data in the boot region will be overwritten."
        )
        if confirm is None or not confirm(prompt):
            logger.info("Boot image write to %s cancelled", info.path)
            raise OperationCancelled()

    logger.info("Writing %s to %s", image_path, info.path)
    run_command(command)
    run_command(["sync"])
    logger.info("Boot image written to %s (%d bytes)", info.path, image_size)

    return WriteResult(
        outcome=WriteOutcome.WRITTEN,
        command=command_str,
        image_path=image_path,
        device_path=info.path,
        device_type=info.device_type,
        bytes_written=image_size,
    )


__all__ = [
    "BOOT_IMAGE_BLOCK_SIZE",
    "BOOT_IMAGE_OFFSET_BYTES",
    "BOOT_IMAGE_SEEK_BLOCKS",
    "ImageNotFoundError",
    "WriteError",
    "WriteResult",
    "compose_dd_command",
    "write_boot_image",
]
