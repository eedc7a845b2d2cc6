"""External command execution.

Every external tool (git, make, dd, parted, ...) is started through
run_command, which logs the command line, relays the tool's output line by
line to the log, and turns a non-zero exit into a ToolExecutionError.
"""

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from imx_bootstack.errors import ToolExecutionError
from imx_bootstack.types import CommandResult

logger = logging.getLogger(__name__)
tool_logger = logging.getLogger("imx_bootstack.tool")


def format_command(command: Sequence[str | Path]) -> str:
    """Return a shell-quoted representation of a command."""
    return shlex.join(str(part) for part in command)


def privileged(command: Sequence[str | Path]) -> list[str]:
    """Prefix a command with sudo when not running as root.

    Args:
        command: Command to elevate.

    Returns:
        Command list, prefixed with ``sudo`` if required and available.
    """
    parts = [str(part) for part in command]
    if os.geteuid() == 0 or shutil.which("sudo") is None:
        return parts
    return ["sudo", *parts]


def build_env(
    env_override: Mapping[str, str] | None = None,
    unset: Iterable[str] = (),
) -> dict[str, str]:
    """Compose the child environment from the current process environment."""
    env = dict(os.environ)
    if env_override:
        env.update(env_override)
    for name in unset:
        env.pop(name, None)
    return env


def run_command(
    command: Sequence[str | Path],
    *,
    cwd: Path | None = None,
    env_override: Mapping[str, str] | None = None,
    unset_env: Iterable[str] = (),
    capture_output: bool = False,
    check: bool = True,
) -> CommandResult:
    """Run an external command to completion.

    Output is streamed to the ``imx_bootstack.tool`` logger as it arrives.
    With ``capture_output`` the output is collected and returned instead.
    There is no timeout.

    Args:
        command: Command and arguments.
        cwd: Working directory for the command.
        env_override: Environment variables to set for the child.
        unset_env: Environment variables to remove for the child.
        capture_output: Return stdout instead of relaying it.
        check: Raise on non-zero exit status.

    Returns:
        CommandResult with the exit status and any captured output.

    Raises:
        ToolExecutionError: If the command cannot be started, or exits
            non-zero while ``check`` is set.
    """
    argv = [str(part) for part in command]
    cmd_str = format_command(argv)
    if cwd is not None:
        logger.info("Running: %s (in %s)", cmd_str, cwd)
    else:
        logger.info("Running: %s", cmd_str)

    env = build_env(env_override, unset_env)

    try:
        if capture_output:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
            )
            returncode = completed.returncode
            output = completed.stdout
            if completed.stderr:
                for line in completed.stderr.splitlines():
                    tool_logger.debug(line)
        else:
            output = ""
            with subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            ) as process:
                assert process.stdout is not None
                for line in process.stdout:
                    tool_logger.info(line.rstrip())
            returncode = process.returncode
    except OSError as e:
        raise ToolExecutionError(
            f"Failed to execute {argv[0]}: {e}",
            command=cmd_str,
            error_code="EXECUTION_ERROR",
        ) from e

    if check and returncode != 0:
        raise ToolExecutionError(
            f"Command failed with exit code {returncode}: {cmd_str}",
            command=cmd_str,
            returncode=returncode,
        )

    return CommandResult(command=cmd_str, returncode=returncode, output=output)


__all__ = [
    "build_env",
    "format_command",
    "privileged",
    "run_command",
]
