"""Build stages.

Each stage drives make inside one source tree with the cross toolchain
environment and checks the stage's output afterwards. A successful make
with a missing output is still a failure.
"""

import logging
from pathlib import Path

from imx_bootstack.builds.staging import copy_artifact, require_output
from imx_bootstack.builds.toolchain import make_command, toolchain_env
from imx_bootstack.config import Settings
from imx_bootstack.errors import ConfigurationError, MissingOutputError
from imx_bootstack.shell import run_command

logger = logging.getLogger(__name__)


class DeviceTreeNotFoundError(ConfigurationError):
    """A requested device-tree source does not exist."""

    def __init__(self, names: list[str], dts_dir: Path) -> None:
        super().__init__(
            f"Device-tree source not found in {dts_dir}: {', '.join(names)}",
            error_code="DTS_NOT_FOUND",
        )
        self.names = names


def dts_source_dir(settings: Settings) -> Path:
    return settings.kernel_dir / "arch" / settings.arch / "boot" / "dts"


def build_kernel(settings: Settings) -> None:
    """Configure and build the kernel."""
    env = toolchain_env(settings)
    cwd = settings.kernel_dir

    if settings.clean_kernel:
        logger.info("Cleaning kernel tree")
        run_command(
            make_command(settings, "mrproper", parallel=False),
            cwd=cwd,
            env_override=env,
        )

    logger.info("Configuring kernel with %s", settings.kernel_defconfig)
    run_command(
        make_command(settings, settings.kernel_defconfig, parallel=False),
        cwd=cwd,
        env_override=env,
    )

    logger.info("Building kernel with %d jobs", settings.jobs)
    run_command(make_command(settings), cwd=cwd, env_override=env)


def build_device_trees(settings: Settings) -> list[Path]:
    """Build the selected device trees.

    Every named source is checked before the first make call, so a bad
    name fails the stage without building anything.

    Returns:
        The built blob paths, or the dts directory for the ``all`` selector.

    Raises:
        DeviceTreeNotFoundError: A named source does not exist.
        MissingOutputError: The build did not produce the expected output.
    """
    env = toolchain_env(settings)
    cwd = settings.kernel_dir
    dts_dir = dts_source_dir(settings)
    selection = settings.dts_selection

    if selection.build_all:
        logger.info("Building all device trees")
        run_command(make_command(settings, "dtbs"), cwd=cwd, env_override=env)
        if not dts_dir.is_dir():
            raise MissingOutputError(
                f"Device-tree directory not found after build: {dts_dir}",
                path=str(dts_dir),
            )
        return [dts_dir]

    missing = [
        name for name in selection.names if not (dts_dir / f"{name}.dts").is_file()
    ]
    if missing:
        raise DeviceTreeNotFoundError(missing, dts_dir)

    built: list[Path] = []
    for name in selection.names:
        relative = Path("arch") / settings.arch / "boot" / "dts" / f"{name}.dtb"
        logger.info("Building device tree %s", name)
        run_command(make_command(settings, str(relative)), cwd=cwd, env_override=env)
        built.append(require_output(cwd / relative, "Device-tree blob"))
    return built


def build_uboot(settings: Settings) -> Path:
    """Configure and build U-Boot.

    Returns:
        Path to ``u-boot.bin``.
    """
    env = toolchain_env(settings)
    cwd = settings.uboot_dir

    run_command(
        make_command(settings, "mrproper", parallel=False),
        cwd=cwd,
        env_override=env,
    )
    logger.info("Configuring U-Boot with %s", settings.uboot_defconfig)
    run_command(
        make_command(settings, settings.uboot_defconfig, parallel=False),
        cwd=cwd,
        env_override=env,
    )
    logger.info("Building U-Boot with %d jobs", settings.jobs)
    run_command(make_command(settings), cwd=cwd, env_override=env)
    return require_output(cwd / "u-boot.bin", "U-Boot binary")


def build_atf(settings: Settings) -> Path:
    """Build the BL31 trusted firmware and stage it in the tools directory.

    LDFLAGS is removed from the environment since the ATF build passes it
    straight to ld.

    Returns:
        Path to the staged ``bl31.bin``.
    """
    cwd = settings.atf_dir
    logger.info("Building ATF for %s", settings.atf_platform)
    run_command(
        make_command(settings, f"PLAT={settings.atf_platform}", "bl31"),
        cwd=cwd,
        env_override=toolchain_env(settings),
        unset_env=("LDFLAGS",),
    )
    bl31 = require_output(
        cwd / "build" / settings.atf_platform / "release" / "bl31.bin",
        "ATF binary",
    )
    return copy_artifact(bl31, settings.tools_dir)


def build_boot_image(settings: Settings) -> Path:
    """Assemble the composite boot image with imx-mkimage's soc.mak.

    Returns:
        Path to the boot image.
    """
    cwd = settings.tools_dir
    run_command(
        make_command(settings, "-f", "soc.mak", "clean", parallel=False), cwd=cwd
    )
    logger.info("Assembling %s (%s)", settings.output_image, settings.mkimage_target)
    run_command(
        make_command(
            settings,
            "-f",
            "soc.mak",
            f"SOC={settings.soc_target}",
            f"SOC_DIR={settings.tools_dir_name}",
            f"dtbs={settings.uboot_dtbs}",
            "MKIMG=./mkimage_imx8",
            "PAD_IMAGE=./pad_image.sh",
            f"CC={settings.make_cc}",
            f"OUTIMG={settings.output_image}",
            settings.mkimage_target,
            parallel=False,
        ),
        cwd=cwd,
    )
    return require_output(settings.boot_image_path, "Boot image")


__all__ = [
    "DeviceTreeNotFoundError",
    "build_atf",
    "build_boot_image",
    "build_device_trees",
    "build_kernel",
    "build_uboot",
    "dts_source_dir",
]
