"""Cross toolchain environment and make command composition."""

from imx_bootstack.config import Settings


def toolchain_env(settings: Settings) -> dict[str, str]:
    """Return the environment selecting the target architecture and compiler."""
    return {"ARCH": settings.arch, "CROSS_COMPILE": settings.cross_compile}


def make_command(settings: Settings, *args: str, parallel: bool = True) -> list[str]:
    """Compose a make invocation.

    Args:
        settings: Build configuration (jobs and verbosity).
        *args: Make targets and variable assignments.
        parallel: Add ``-j<jobs>``.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["make"]
    if parallel:
        cmd.append(f"-j{settings.jobs}")
    if settings.verbose:
        cmd.append("V=1")
    cmd.extend(args)
    return cmd


def cross_compiler_tools(cross_compile: str) -> list[str]:
    """Return the executables a CROSS_COMPILE value depends on.

    ``"ccache aarch64-linux-gnu-"`` needs both ``ccache`` and
    ``aarch64-linux-gnu-gcc``.
    """
    parts = cross_compile.split()
    if not parts:
        return []
    return [*parts[:-1], f"{parts[-1]}gcc"]


__all__ = ["cross_compiler_tools", "make_command", "toolchain_env"]
