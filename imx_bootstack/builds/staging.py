"""Artifact staging.

This module handles:
- Creating and checking the kernel output directory
- Copying kernel images and device-tree blobs out of the kernel tree
- Installing kernel modules into a disposable staging tree
- Validating that a kernel output directory is complete
- Gathering the inputs of the composite boot image into the tools directory
"""

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from imx_bootstack.builds.toolchain import make_command, toolchain_env
from imx_bootstack.config import Settings
from imx_bootstack.errors import BootstackError, MissingOutputError
from imx_bootstack.shell import run_command

logger = logging.getLogger(__name__)

# Checked in this order; every one present is staged
KERNEL_IMAGE_NAMES = ("Image", "Image.gz", "zImage", "uImage")

UBOOT_BINARIES = ("u-boot.bin", "u-boot-nodtb.bin", "spl/u-boot-spl.bin")


class OutputDirectoryError(BootstackError):
    """The output directory cannot be created or written."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"Output directory {path} is not usable: {reason}",
            error_code="OUTPUT_DIR_UNUSABLE",
        )
        self.path = path


@dataclass
class KernelArtifacts:
    """Kernel artifacts staged into the output directory.

    Attributes:
        output_dir: Kernel output directory.
        images: Kernel image files copied.
        dtb_dir: Directory holding the device-tree blobs.
        modules_dir: Installed module tree (``lib/modules/...`` root).
    """

    output_dir: Path
    images: list[Path]
    dtb_dir: Path
    modules_dir: Path


def require_output(path: Path, description: str) -> Path:
    """Return ``path`` if it exists.

    Raises:
        MissingOutputError: The expected output is absent.
    """
    if not path.exists():
        raise MissingOutputError(f"{description} not found: {path}", path=str(path))
    return path


def copy_artifact(source: Path, dest_dir: Path, name: str | None = None) -> Path:
    """Copy a build output into ``dest_dir``.

    Args:
        source: File to copy; must exist.
        dest_dir: Destination directory (created if needed).
        name: Optional destination file name.

    Returns:
        Path of the copy.

    Raises:
        MissingOutputError: ``source`` does not exist.
    """
    require_output(source, "Build output")
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / (name or source.name)
    shutil.copy2(source, target)
    logger.debug("Copied %s -> %s", source, target)
    return target


def ensure_output_dir(path: Path) -> Path:
    """Create the output directory, or check that an existing one is writable.

    Raises:
        OutputDirectoryError: The directory cannot be created or written.
    """
    if path.exists():
        if not path.is_dir():
            raise OutputDirectoryError(path, "not a directory")
        if not os.access(path, os.W_OK):
            raise OutputDirectoryError(path, "not writable")
        return path

    try:
        path.mkdir(parents=True)
    except OSError as e:
        raise OutputDirectoryError(path, str(e)) from e
    logger.info("Created output directory %s", path)
    return path


def stage_kernel_images(settings: Settings) -> list[Path]:
    """Copy every recognised kernel image into the output directory.

    Returns:
        Copied image paths, in KERNEL_IMAGE_NAMES order.

    Raises:
        MissingOutputError: The kernel build produced no recognised image.
    """
    boot_dir = settings.kernel_dir / "arch" / settings.arch / "boot"
    output_dir = settings.kernel_output_dir
    copied = [
        copy_artifact(boot_dir / name, output_dir)
        for name in KERNEL_IMAGE_NAMES
        if (boot_dir / name).is_file()
    ]
    if not copied:
        raise MissingOutputError(
            f"No kernel image ({', '.join(KERNEL_IMAGE_NAMES)}) in {boot_dir}",
            path=str(boot_dir),
        )
    logger.info("Staged kernel images: %s", ", ".join(p.name for p in copied))
    return copied


def stage_device_trees(settings: Settings) -> Path:
    """Copy device-tree blobs into ``<output>/dts``.

    With the ``all`` selector the whole dts tree is copied. Otherwise the
    dts directory is recreated and only the selected blobs are copied.

    Returns:
        The output dts directory.

    Raises:
        MissingOutputError: A selected blob or the dts tree is missing.
    """
    source_dir = settings.kernel_dir / "arch" / settings.arch / "boot" / "dts"
    dest_dir = settings.kernel_output_dir / "dts"
    selection = settings.dts_selection

    require_output(source_dir, "Device-tree directory")
    if selection.build_all:
        shutil.copytree(source_dir, dest_dir, dirs_exist_ok=True)
        logger.info("Copied device-tree tree %s -> %s", source_dir, dest_dir)
        return dest_dir

    if dest_dir.exists():
        shutil.rmtree(dest_dir)
    dest_dir.mkdir(parents=True)
    for name in selection.names:
        blob = source_dir / f"{name}.dtb"
        copy_artifact(blob, dest_dir, name=Path(name).name + ".dtb")
    logger.info("Staged %d device-tree blobs into %s", len(selection.names), dest_dir)
    return dest_dir


def install_modules(settings: Settings) -> Path:
    """Install kernel modules and stage them as ``<output>/rootfs``.

    The staging directory is removed and recreated on every call, so stale
    modules from a previous build never survive.

    Returns:
        The staged module tree in the output directory.
    """
    staging = settings.modules_staging_dir
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    run_command(
        make_command(
            settings,
            f"ARCH={settings.arch}",
            "INSTALL_MOD_STRIP=1",
            f"INSTALL_MOD_PATH={staging}",
            "modules_install",
            parallel=False,
        ),
        cwd=settings.kernel_dir,
        env_override=toolchain_env(settings),
    )

    dest = settings.kernel_output_dir / "rootfs"
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(staging, dest, symlinks=True)
    logger.info("Kernel modules staged in %s", dest)
    return dest


def validate_kernel_output(output_dir: Path) -> None:
    """Check that a kernel output directory is complete.

    Raises:
        MissingOutputError: No kernel image, or no non-empty dts directory.
    """
    if not any((output_dir / name).is_file() for name in KERNEL_IMAGE_NAMES):
        raise MissingOutputError(
            f"Kernel image not found in {output_dir}", path=str(output_dir)
        )
    dts_dir = output_dir / "dts"
    if not dts_dir.is_dir() or not any(dts_dir.iterdir()):
        raise MissingOutputError(
            f"Device-tree directory missing or empty: {dts_dir}", path=str(dts_dir)
        )


def stage_kernel_artifacts(settings: Settings) -> KernelArtifacts:
    """Stage kernel images, device trees and modules, then validate.

    Returns:
        KernelArtifacts describing the output directory.
    """
    output_dir = ensure_output_dir(settings.kernel_output_dir)
    images = stage_kernel_images(settings)
    dtb_dir = stage_device_trees(settings)
    modules_dir = install_modules(settings)
    validate_kernel_output(output_dir)
    logger.info("Kernel artifacts ready in %s", output_dir)
    return KernelArtifacts(
        output_dir=output_dir, images=images, dtb_dir=dtb_dir, modules_dir=modules_dir
    )


def stage_boot_inputs(settings: Settings) -> list[Path]:
    """Gather the composite boot image inputs into the tools directory.

    U-Boot binaries, U-Boot's mkimage, the selected U-Boot DTBs and the
    imx-mkimage SoC sources and scripts are copied. The trusted firmware
    must already have been staged by the ATF stage.

    Returns:
        Paths of every staged file.

    Raises:
        MissingOutputError: A U-Boot output, an imx-mkimage file or
            ``bl31.bin`` is missing.
    """
    tools_dir = settings.tools_dir
    uboot_dir = settings.uboot_dir
    mkimage_dir = settings.mkimage_dir
    staged: list[Path] = []

    require_output(tools_dir / "bl31.bin", "Trusted firmware (run the atf target)")

    for binary in UBOOT_BINARIES:
        staged.append(copy_artifact(uboot_dir / binary, tools_dir))
    staged.append(
        copy_artifact(uboot_dir / "tools" / "mkimage", tools_dir, name="mkimage_uboot")
    )
    for dtb in settings.uboot_dtb_list:
        staged.append(copy_artifact(uboot_dir / "arch" / "arm" / "dts" / dtb, tools_dir))

    soc_dir = mkimage_dir / "iMX8M"
    staged.append(copy_artifact(soc_dir / "soc.mak", tools_dir))
    sources = [
        *sorted(soc_dir.glob("*.c")),
        *sorted(soc_dir.glob("*.sh")),
        *sorted((mkimage_dir / "scripts").glob("*.sh")),
    ]
    for source in sources:
        staged.append(copy_artifact(source, tools_dir))

    dtb_check = mkimage_dir / "scripts" / "dtb_check.sh"
    if dtb_check.is_file():
        staged.append(copy_artifact(dtb_check, settings.root / "scripts"))

    logger.info("Staged %d boot image inputs into %s", len(staged), tools_dir)
    return staged


__all__ = [
    "KERNEL_IMAGE_NAMES",
    "UBOOT_BINARIES",
    "KernelArtifacts",
    "OutputDirectoryError",
    "copy_artifact",
    "ensure_output_dir",
    "install_modules",
    "require_output",
    "stage_boot_inputs",
    "stage_device_trees",
    "stage_kernel_artifacts",
    "stage_kernel_images",
    "validate_kernel_output",
]
