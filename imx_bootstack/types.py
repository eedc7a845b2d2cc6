"""Shared type definitions for imx_bootstack.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

# Asks the user a yes/no question; True means affirmed
ConfirmCallback = Callable[[str], bool]


class BuildTarget(str, Enum):
    """Top-level pipeline targets."""

    KERNEL = "kernel"
    DTS = "dts"
    UBOOT = "uboot"
    ATF = "atf"
    IMAGE = "image"
    BUILD = "build"
    ALL = "all"
    FLASH = "flash"
    CLEAN = "clean"


class CleanTarget(str, Enum):
    """Sub-targets accepted by ``clean:<sub>``."""

    KERNEL = "kernel"
    UBOOT = "uboot"
    ATF = "atf"
    IMAGE = "image"
    ALL = "all"


class StepStatus(str, Enum):
    """Status of a recorded pipeline step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class FlashStatus(str, Enum):
    """Status of a flash operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DRY_RUN = "dry-run"


class FlashKind(str, Enum):
    """What a flash operation writes to the device."""

    BOOT_IMAGE = "boot-image"
    KERNEL = "kernel"


class WriteOutcome(str, Enum):
    """Outcome of a raw image write."""

    WRITTEN = "written"
    DRY_RUN = "dry-run"


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        command: Shell-quoted command line.
        returncode: Process exit status.
        output: Captured output (only when capture was requested).
    """

    command: str
    returncode: int
    output: str = ""


@dataclass(frozen=True)
class DtsSelection:
    """Parsed device-tree selector.

    An empty ``names`` tuple means every device tree of the architecture.
    """

    names: tuple[str, ...] = ()

    @property
    def build_all(self) -> bool:
        """Whether the selector requests every device tree."""
        return not self.names

    @classmethod
    def parse(cls, selector: str) -> "DtsSelection":
        """Parse ``all`` or a comma-separated list of DTS names.

        Whitespace around names is trimmed, empty entries are dropped, and a
        trailing ``.dts``/``.dtb`` is tolerated.

        Raises:
            ValueError: If the selector names nothing.
        """
        selector = selector.strip()
        if selector == "all":
            return cls()

        names: list[str] = []
        for raw in selector.split(","):
            name = raw.strip()
            for suffix in (".dts", ".dtb"):
                if name.endswith(suffix):
                    name = name[: -len(suffix)]
            if name and name not in names:
                names.append(name)

        if not names:
            raise ValueError(f"Device-tree selector names nothing: {selector!r}")
        return cls(names=tuple(names))

    def __str__(self) -> str:
        return "all" if self.build_all else ",".join(self.names)


__all__ = [
    "BuildTarget",
    "ConfirmCallback",
    "CleanTarget",
    "CommandResult",
    "DtsSelection",
    "FlashKind",
    "FlashStatus",
    "StepStatus",
    "WriteOutcome",
]
