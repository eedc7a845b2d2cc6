"""Error taxonomy for imx_bootstack.

Every failure raised by the pipeline derives from BootstackError and carries
a human-readable message plus a stable error code. The CLI maps the
exception's exit_code to the process exit status.
"""

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class BootstackError(Exception):
    """Base exception for all pipeline failures."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ConfigurationError(BootstackError):
    """Invalid or incomplete configuration or invocation."""

    def __init__(self, message: str, error_code: str = "CONFIGURATION_ERROR") -> None:
        super().__init__(message, error_code=error_code)


class DependencyError(BootstackError):
    """Required host tools are missing."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required host tools: {', '.join(missing)}",
            error_code="MISSING_DEPENDENCIES",
        )
        self.missing = missing


class ToolExecutionError(BootstackError):
    """An external tool could not be started or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        error_code: str = "COMMAND_FAILED",
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.command = command
        self.returncode = returncode


class MissingOutputError(BootstackError):
    """A stage finished but its expected output is absent."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, error_code="MISSING_OUTPUT")
        self.path = path


class OperationCancelled(BootstackError):
    """The user declined a destructive operation."""

    exit_code = EXIT_SUCCESS

    def __init__(self, message: str = "Operation cancelled.") -> None:
        super().__init__(message, error_code="CANCELLED")


__all__ = [
    "EXIT_FAILURE",
    "EXIT_SUCCESS",
    "BootstackError",
    "ConfigurationError",
    "DependencyError",
    "MissingOutputError",
    "OperationCancelled",
    "ToolExecutionError",
]
