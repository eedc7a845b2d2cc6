"""Host tool checks.

Every target needs a known set of host executables. Missing ones are
reported up front; with the user's consent they are installed through
apt-get and checked again before the run continues.
"""

import logging
import shutil
from collections.abc import Iterable

from imx_bootstack.builds.toolchain import cross_compiler_tools
from imx_bootstack.config import Settings
from imx_bootstack.errors import DependencyError, ToolExecutionError
from imx_bootstack.shell import privileged, run_command
from imx_bootstack.types import BuildTarget, ConfirmCallback

logger = logging.getLogger(__name__)

# Debian/Ubuntu packages providing each tool
APT_PACKAGES: dict[str, str] = {
    "git": "git",
    "make": "make",
    "gcc": "gcc",
    "aarch64-linux-gnu-gcc": "gcc-aarch64-linux-gnu",
    "ccache": "ccache",
    "bison": "bison",
    "flex": "flex",
    "bc": "bc",
    "lsblk": "util-linux",
    "mount": "util-linux",
    "umount": "util-linux",
    "parted": "parted",
    "mkfs.vfat": "dosfstools",
    "mkfs.ext4": "e2fsprogs",
    "udevadm": "udev",
    "dd": "coreutils",
    "sync": "coreutils",
    "cp": "coreutils",
}

_GIT_TOOLS = ("git",)
_KERNEL_TOOLS = ("make", "gcc", "bison", "flex", "bc")
_FIRMWARE_TOOLS = ("make", "gcc")
_FLASH_TOOLS = (
    "lsblk",
    "udevadm",
    "parted",
    "mkfs.vfat",
    "mkfs.ext4",
    "mount",
    "umount",
    "cp",
    "dd",
    "sync",
)
_SOURCE_BUILD_TARGETS = (
    BuildTarget.KERNEL,
    BuildTarget.DTS,
    BuildTarget.UBOOT,
    BuildTarget.ATF,
)


def required_tools(settings: Settings, target: BuildTarget) -> list[str]:
    """Return the host tools ``target`` needs, without duplicates."""
    cross = cross_compiler_tools(settings.cross_compile)
    build_tools = [*_GIT_TOOLS, *_KERNEL_TOOLS, *cross]

    if target in _SOURCE_BUILD_TARGETS:
        tools = build_tools
    elif target is BuildTarget.IMAGE:
        tools = [*_GIT_TOOLS, *_FIRMWARE_TOOLS]
    elif target in (BuildTarget.BUILD, BuildTarget.ALL):
        tools = [*build_tools, *(_FLASH_TOOLS if settings.flash_device else ())]
    elif target is BuildTarget.FLASH:
        tools = list(_FLASH_TOOLS)
    else:
        tools = []
    return list(dict.fromkeys(tools))


def missing_tools(tools: Iterable[str]) -> list[str]:
    """Return the tools not found on PATH."""
    return [tool for tool in tools if shutil.which(tool) is None]


def install_packages(tools: list[str]) -> None:
    """Install the apt packages providing ``tools``.

    Raises:
        ToolExecutionError: apt-get failed.
    """
    packages = sorted({APT_PACKAGES.get(tool, tool) for tool in tools})
    logger.info("Installing packages: %s", ", ".join(packages))
    run_command(privileged(["apt-get", "update"]))
    run_command(privileged(["apt-get", "install", "-y", *packages]))


def ensure_dependencies(
    tools: Iterable[str],
    *,
    confirm: ConfirmCallback | None = None,
    assume_yes: bool = False,
) -> None:
    """Check that every tool is available, offering to install missing ones.

    Args:
        tools: Executables that must be on PATH.
        confirm: Callback asking whether to install missing packages.
        assume_yes: Install without asking.

    Raises:
        DependencyError: Tools are still missing (installation declined,
            unavailable or unsuccessful).
    """
    tools = list(dict.fromkeys(tools))
    missing = missing_tools(tools)
    if not missing:
        logger.debug("All host tools present: %s", ", ".join(tools))
        return

    logger.warning("Missing host tools: %s", ", ".join(missing))
    if shutil.which("apt-get") is None:
        raise DependencyError(missing)

    prompt = f"Install the packages providing {', '.join(missing)} with apt-get?"
    if not assume_yes and (confirm is None or not confirm(prompt)):
        raise DependencyError(missing)

    try:
        install_packages(missing)
    except ToolExecutionError as e:
        logger.error("Package installation failed: %s", e.message)
        raise DependencyError(missing) from e

    still_missing = missing_tools(missing)
    if still_missing:
        raise DependencyError(still_missing)
    logger.info("Installed missing host tools")


__all__ = [
    "APT_PACKAGES",
    "ensure_dependencies",
    "install_packages",
    "missing_tools",
    "required_tools",
]
