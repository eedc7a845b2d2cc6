"""Flash service layer.

This module provides the high-level flash operations used by the pipeline:
- flash_kernel_artifacts: copy kernel images, device trees and modules to
  the BOOT and rootfs partitions (creating them when missing)
- flash_boot_image: write the composite boot image at its raw offset
- flash_device: flash whatever build outputs exist, with FlashRecord
  persistence

Safety rules:
- Explicit device paths only (no guessing)
- Pre-flight validation before any write
- Explicit confirmation unless --yes, and dry-run support
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from imx_bootstack.builds.staging import KERNEL_IMAGE_NAMES, validate_kernel_output
from imx_bootstack.config import Settings
from imx_bootstack.db import get_session
from imx_bootstack.errors import (
    BootstackError,
    ConfigurationError,
    MissingOutputError,
    OperationCancelled,
)
from imx_bootstack.flash.device import validate_device
from imx_bootstack.flash.models import FlashRecord
from imx_bootstack.flash.partitions import (
    BOOT_PARTITION_END,
    BOOT_PARTITION_START,
    ROOTFS_PARTITION_END,
    mounted_partitions,
    resolve_partitions,
)
from imx_bootstack.flash.writer import write_boot_image
from imx_bootstack.shell import privileged, run_command
from imx_bootstack.types import ConfirmCallback, FlashKind, FlashStatus

logger = logging.getLogger(__name__)


class FlashDeviceRequiredError(ConfigurationError):
    """A flash was requested without a target device."""

    def __init__(self) -> None:
        super().__init__(
            "A flash device is required for flashing (-f/--flash-device)",
            error_code="FLASH_DEVICE_REQUIRED",
        )


@dataclass
class FlashOutcome:
    """Result of one flash operation.

    Attributes:
        kind: What was flashed.
        device_path: Target device.
        dry_run: Whether the operation was only described.
        device_type: Reported bus type of the device.
        details: Human-readable lines describing what happened.
    """

    kind: FlashKind
    device_path: str
    dry_run: bool
    device_type: str = "unknown"
    details: list[str] = field(default_factory=list)


@dataclass
class FlashSummary:
    """Every flash operation of one flash request."""

    device_path: str
    outcomes: list[FlashOutcome] = field(default_factory=list)


def kernel_output_ready(settings: Settings) -> bool:
    """Whether the kernel output directory holds a kernel image."""
    output_dir = settings.kernel_output_dir
    return any((output_dir / name).is_file() for name in KERNEL_IMAGE_NAMES)


def boot_image_ready(settings: Settings) -> bool:
    """Whether the composite boot image exists."""
    return settings.boot_image_path.is_file()


def _confirm_or_cancel(
    prompt: str, *, assume_yes: bool, confirm: ConfirmCallback | None
) -> None:
    if assume_yes:
        return
    if confirm is None or not confirm(prompt):
        raise OperationCancelled()


def flash_kernel_artifacts(
    settings: Settings,
    device_path: str,
    *,
    confirm: ConfirmCallback | None = None,
) -> FlashOutcome:
    """Copy the staged kernel artifacts to the device's partitions.

    Kernel images and every device-tree blob go to the BOOT partition; the
    module tree goes to the rootfs partition. Missing partitions are
    created first.

    Args:
        settings: Build configuration.
        device_path: Whole block device.
        confirm: Callback asking the user to affirm the operation.

    Returns:
        FlashOutcome for the operation.

    Raises:
        MissingOutputError: The kernel output directory is incomplete.
        DeviceValidationError: The device failed validation.
        OperationCancelled: The user declined.
    """
    output_dir = settings.kernel_output_dir
    validate_kernel_output(output_dir)
    info = validate_device(device_path)

    images = [
        output_dir / name
        for name in KERNEL_IMAGE_NAMES
        if (output_dir / name).is_file()
    ]
    dtbs = sorted((output_dir / "dts").rglob("*.dtb"))
    modules_dir = output_dir / "rootfs"

    outcome = FlashOutcome(
        kind=FlashKind.KERNEL,
        device_path=info.path,
        dry_run=settings.dry_run,
        device_type=info.device_type,
    )
    outcome.details.append(
        f"BOOT ({settings.boot_label_pattern}): {len(images)} kernel image(s), "
        f"{len(dtbs)} device tree(s)"
    )
    outcome.details.append(f"{settings.rootfs_label}: modules from {modules_dir}")

    if settings.dry_run:
        logger.info(
            "Dry run: would copy kernel artifacts to %s; missing partitions would be "
            "created (FAT32 %s-%s, ext4 %s-%s)",
            info.path,
            BOOT_PARTITION_START,
            BOOT_PARTITION_END,
            BOOT_PARTITION_END,
            ROOTFS_PARTITION_END,
        )
        return outcome

    _confirm_or_cancel(
        f"Copy kernel artifacts to {info.path} ({info.device_type})? "
        "Missing partitions will be created, erasing the device.",
        assume_yes=settings.assume_yes,
        confirm=confirm,
    )

    target = resolve_partitions(
        info.path,
        boot_pattern=settings.boot_label_pattern,
        rootfs_label=settings.rootfs_label,
    )
    with mounted_partitions(target) as mounts:
        logger.info("Copying kernel images and device trees to %s", target.boot.path)
        boot_files = [str(path) for path in (*images, *dtbs)]
        run_command(privileged(["cp", *boot_files, str(mounts.boot)]))
        if modules_dir.is_dir():
            logger.info("Copying kernel modules to %s", target.rootfs.path)
            run_command(
                privileged(["cp", "-a", f"{modules_dir}/.", str(mounts.rootfs)])
            )
        else:
            logger.warning(
                "No staged modules in %s; rootfs left untouched", modules_dir
            )
        run_command(["sync"])

    logger.info("Kernel artifacts flashed to %s", info.path)
    return outcome


def flash_boot_image(
    settings: Settings,
    device_path: str,
    *,
    confirm: ConfirmCallback | None = None,
) -> FlashOutcome:
    """Write the composite boot image to the device."""
    result = write_boot_image(
        settings.boot_image_path,
        device_path,
        dry_run=settings.dry_run,
        assume_yes=settings.assume_yes,
        confirm=confirm,
    )
    return FlashOutcome(
        kind=FlashKind.BOOT_IMAGE,
        device_path=result.device_path,
        dry_run=settings.dry_run,
        device_type=result.device_type,
        details=[result.command],
    )


@contextmanager
def _flash_record(
    session_factory: sessionmaker[Session] | None,
    *,
    run_id: str,
    kind: FlashKind,
    source: Path,
    device_path: str,
    dry_run: bool,
) -> Generator[FlashRecord | None, None, None]:
    """Track one flash operation as a FlashRecord when history is enabled."""
    if session_factory is None:
        yield None
        return

    with get_session(session_factory) as session:
        record = FlashRecord(
            run_id=run_id,
            kind=kind.value,
            source_path=str(source),
            device_path=device_path,
            dry_run=dry_run,
        )
        record.mark_running()
        session.add(record)
        session.commit()
        try:
            yield record
        except (OperationCancelled, KeyboardInterrupt):
            record.mark_cancelled()
            session.commit()
            raise
        except BootstackError as e:
            record.mark_failed(e.error_code, e.message)
            session.commit()
            raise
        except Exception as e:
            record.mark_failed(type(e).__name__, str(e))
            session.commit()
            raise
        record.mark_succeeded(dry_run=dry_run)


def flash_device(
    settings: Settings,
    *,
    run_id: str,
    confirm: ConfirmCallback | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> FlashSummary:
    """Flash every available build output to the configured device.

    Kernel artifacts are flashed when the kernel output directory holds a
    kernel image; the boot image when it exists.

    Raises:
        FlashDeviceRequiredError: No device was configured.
        MissingOutputError: Nothing has been built yet.
    """
    device_path = settings.flash_device
    if not device_path:
        raise FlashDeviceRequiredError()

    operations = []
    if kernel_output_ready(settings):
        operations.append(
            (FlashKind.KERNEL, settings.kernel_output_dir, flash_kernel_artifacts)
        )
    if boot_image_ready(settings):
        operations.append(
            (FlashKind.BOOT_IMAGE, settings.boot_image_path, flash_boot_image)
        )
    if not operations:
        raise MissingOutputError(
            f"Nothing to flash: no kernel image in {settings.kernel_output_dir} "
            f"and no boot image at {settings.boot_image_path}"
        )

    summary = FlashSummary(device_path=device_path)
    for kind, source, operation in operations:
        with _flash_record(
            session_factory,
            run_id=run_id,
            kind=kind,
            source=source,
            device_path=device_path,
            dry_run=settings.dry_run,
        ) as record:
            outcome = operation(settings, device_path, confirm=confirm)
            if record is not None:
                record.device_type = outcome.device_type
        summary.outcomes.append(outcome)
    return summary


def get_flash_records(
    session: Session,
    *,
    device_path: str | None = None,
    run_id: str | None = None,
    status: FlashStatus | None = None,
    limit: int = 100,
) -> list[FlashRecord]:
    """Query flash records with optional filters, newest first."""
    stmt = select(FlashRecord)
    if device_path is not None:
        stmt = stmt.where(FlashRecord.device_path == device_path)
    if run_id is not None:
        stmt = stmt.where(FlashRecord.run_id == run_id)
    if status is not None:
        stmt = stmt.where(FlashRecord.status == status.value)

    stmt = stmt.order_by(FlashRecord.requested_at.desc(), FlashRecord.id.desc())
    return list(session.execute(stmt.limit(limit)).scalars().all())


__all__ = [
    "FlashDeviceRequiredError",
    "FlashOutcome",
    "FlashSummary",
    "boot_image_ready",
    "flash_boot_image",
    "flash_device",
    "flash_kernel_artifacts",
    "get_flash_records",
    "kernel_output_ready",
]
