"""Partition discovery, creation and mounting.

The target device carries a fixed two-partition layout on an msdos table:

    1: FAT32, label BOOT,   1MiB  .. 256MiB   kernel images and device trees
    2: ext4,  label rootfs, 256MiB .. 100%    kernel modules

Partitions are found by filesystem label. Missing ones are created, and the
device is re-scanned afterwards; a label that is still missing is fatal.
"""

import fnmatch
import json
import logging
import tempfile
from collections.abc import Generator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from imx_bootstack.errors import BootstackError, ToolExecutionError
from imx_bootstack.flash.device import partition_path
from imx_bootstack.shell import privileged, run_command

logger = logging.getLogger(__name__)

BOOT_PARTITION_LABEL = "BOOT"
BOOT_PARTITION_START = "1MiB"
BOOT_PARTITION_START_BYTES = 1024 * 1024
BOOT_PARTITION_END = "256MiB"
ROOTFS_PARTITION_START = BOOT_PARTITION_END
ROOTFS_PARTITION_END = "100%"


class PartitionNotFoundError(BootstackError):
    """A required partition is still missing after creation."""

    def __init__(self, device: str, label: str) -> None:
        super().__init__(
            f"No partition labelled {label!r} on {device} after partitioning",
            error_code="PARTITION_NOT_FOUND",
        )
        self.device = device
        self.label = label


@dataclass
class PartitionInfo:
    """A partition of the target device.

    Attributes:
        path: Partition device path (e.g., '/dev/sdb1').
        label: Filesystem label, if any.
    """

    path: str
    label: str | None


@dataclass
class TargetDevice:
    """The flash target with its boot and root partitions resolved."""

    device: str
    boot: PartitionInfo
    rootfs: PartitionInfo


@dataclass
class MountedPartitions:
    """Temporary mount points of the target partitions."""

    boot: Path
    rootfs: Path


def list_partitions(device: str) -> list[PartitionInfo]:
    """List the partitions of ``device`` with their labels using lsblk."""
    result = run_command(
        ["lsblk", "--json", "--list", "--output", "PATH,LABEL,TYPE", device],
        capture_output=True,
    )
    try:
        entries = json.loads(result.output).get("blockdevices", [])
    except json.JSONDecodeError as e:
        raise ToolExecutionError(
            f"Unparseable lsblk output for {device}: {e}",
            command=result.command,
            error_code="LSBLK_OUTPUT_INVALID",
        ) from e

    return [
        PartitionInfo(path=entry["path"], label=entry.get("label"))
        for entry in entries
        if entry.get("type") == "part"
    ]


def find_partition(
    partitions: list[PartitionInfo],
    label: str,
    *,
    pattern: bool = False,
) -> PartitionInfo | None:
    """Return the first partition whose label matches.

    Args:
        partitions: Partitions to search.
        label: Exact label, or a glob when ``pattern`` is set.
        pattern: Match ``label`` as an fnmatch-style glob.
    """
    for partition in partitions:
        if partition.label is None:
            continue
        if pattern and fnmatch.fnmatchcase(partition.label, label):
            return partition
        if not pattern and partition.label == label:
            return partition
    return None


def _parted(device: str, *args: str) -> None:
    run_command(privileged(["parted", "--script", device, *args]))


def _settle() -> None:
    run_command(privileged(["udevadm", "settle"]))


def create_full_layout(device: str, rootfs_label: str) -> None:
    """Write a new msdos table with the boot and root partitions.

    Everything previously on the device is lost, so the new partitions are
    numbered 1 and 2.
    """
    logger.info("Creating boot and root partitions on %s", device)
    _parted(device, "mklabel", "msdos")
    _parted(
        device, "mkpart", "primary", "fat32", BOOT_PARTITION_START, BOOT_PARTITION_END
    )
    _parted(
        device,
        "mkpart",
        "primary",
        "ext4",
        ROOTFS_PARTITION_START,
        ROOTFS_PARTITION_END,
    )
    _settle()
    boot_partition = partition_path(device, 1)
    run_command(
        privileged(
            ["mkfs.vfat", "-F", "32", "-n", BOOT_PARTITION_LABEL, boot_partition]
        )
    )
    run_command(
        privileged(["mkfs.ext4", "-F", "-L", rootfs_label, partition_path(device, 2)])
    )
    _settle()


def create_rootfs_partition(
    device: str,
    rootfs_label: str,
    existing: list[PartitionInfo],
) -> str:
    """Add the root partition after an existing boot partition.

    The partition number parted assigns depends on the table already on the
    device, so the new partition is whichever one ``existing`` lacks.

    Args:
        device: Whole block device.
        rootfs_label: Label given to the new ext4 filesystem.
        existing: Partitions on the device before creation.

    Returns:
        Path of the formatted partition.

    Raises:
        PartitionNotFoundError: No new partition appeared.
    """
    logger.info("Creating root partition on %s", device)
    _parted(
        device,
        "mkpart",
        "primary",
        "ext4",
        ROOTFS_PARTITION_START,
        ROOTFS_PARTITION_END,
    )
    _settle()

    known = {partition.path for partition in existing}
    created = [p for p in list_partitions(device) if p.path not in known]
    if not created:
        raise PartitionNotFoundError(device, rootfs_label)

    path = created[0].path
    run_command(privileged(["mkfs.ext4", "-F", "-L", rootfs_label, path]))
    _settle()
    return path


def resolve_partitions(
    device: str,
    *,
    boot_pattern: str,
    rootfs_label: str,
) -> TargetDevice:
    """Find the boot and root partitions, creating them when missing.

    Args:
        device: Whole block device.
        boot_pattern: Glob matched against the boot partition label.
        rootfs_label: Exact label of the root partition.

    Returns:
        TargetDevice with both partitions.

    Raises:
        PartitionNotFoundError: A partition is still missing after creation.
    """
    partitions = list_partitions(device)
    boot = find_partition(partitions, boot_pattern, pattern=True)
    rootfs = find_partition(partitions, rootfs_label)

    if boot is not None and rootfs is not None:
        logger.info(
            "Found partitions %s (boot) and %s (rootfs)", boot.path, rootfs.path
        )
        return TargetDevice(device=device, boot=boot, rootfs=rootfs)

    if boot is None:
        create_full_layout(device, rootfs_label)
    else:
        create_rootfs_partition(device, rootfs_label, partitions)

    partitions = list_partitions(device)
    boot = find_partition(partitions, boot_pattern, pattern=True)
    if boot is None:
        raise PartitionNotFoundError(device, boot_pattern)
    rootfs = find_partition(partitions, rootfs_label)
    if rootfs is None:
        raise PartitionNotFoundError(device, rootfs_label)

    logger.info("Using partitions %s (boot) and %s (rootfs)", boot.path, rootfs.path)
    return TargetDevice(device=device, boot=boot, rootfs=rootfs)


@contextmanager
def mounted(partition: str, name: str) -> Generator[Path, None, None]:
    """Mount ``partition`` on a fresh temporary directory.

    The partition is unmounted and the directory removed on every exit
    path. A failed unmount is logged and leaves the directory in place.
    """
    mount_point = Path(tempfile.mkdtemp(prefix=f"imx-bootstack-{name}-"))
    try:
        run_command(privileged(["mount", partition, str(mount_point)]))
    except BaseException:
        mount_point.rmdir()
        raise

    try:
        yield mount_point
    finally:
        result = run_command(privileged(["umount", str(mount_point)]), check=False)
        if result.returncode != 0:
            logger.error(
                "Failed to unmount %s from %s; leaving mount point in place",
                partition,
                mount_point,
            )
        else:
            mount_point.rmdir()


@contextmanager
def mounted_partitions(
    target: TargetDevice,
) -> Generator[MountedPartitions, None, None]:
    """Mount both target partitions for the duration of the block."""
    with ExitStack() as stack:
        boot = stack.enter_context(mounted(target.boot.path, "boot"))
        rootfs = stack.enter_context(mounted(target.rootfs.path, "rootfs"))
        yield MountedPartitions(boot=boot, rootfs=rootfs)


__all__ = [
    "BOOT_PARTITION_END",
    "BOOT_PARTITION_LABEL",
    "BOOT_PARTITION_START",
    "BOOT_PARTITION_START_BYTES",
    "ROOTFS_PARTITION_END",
    "ROOTFS_PARTITION_START",
    "MountedPartitions",
    "PartitionInfo",
    "PartitionNotFoundError",
    "TargetDevice",
    "create_full_layout",
    "create_rootfs_partition",
    "find_partition",
    "list_partitions",
    "mounted",
    "mounted_partitions",
    "resolve_partitions",
]
