"""procshell exceptions."""

from typing import TYPE_CHECKING, Dict, List, Optional
from dataclasses import dataclass

if TYPE_CHECKING:
    from .exec.multiplexer import OutputSource
    from .exec.output import CommandOutput


@dataclass
class SpecViolation:
    """Single problem found while validating a process spec or config file."""
    message: str
    field: str = ""


class ProcshellError(Exception):
    """Base class for every error raised by procshell."""


class InvalidProcessSpecError(ProcshellError, ValueError):
    """Raised when a ProcessSpec is malformed.

    Carries every violation found so callers can report them together
    instead of fixing one field at a time.
    """

    def __init__(self, errors: List[SpecViolation]):
        self.errors = errors

        messages = []
        for error in errors:
            prefix = f"{error.field}: " if error.field else ""
            messages.append(f"Invalid process spec: {prefix}{error.message}")

        super().__init__("\n".join(messages))


class ConfigValidationError(ProcshellError, ValueError):
    """Raised when a procshell config file cannot be loaded."""

    def __init__(self, errors: List[SpecViolation]):
        self.errors = errors
        super().__init__("\n".join(f"Config error: {e.message}" for e in errors))


class CommandSpawnError(ProcshellError):
    """The executable could not be started (missing, not executable, bad cwd)."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class CommandFailedError(ProcshellError):
    """A command exited non-zero while validation was enabled."""

    def __init__(self, command: str, output: "CommandOutput"):
        self.command = command
        self.output = output
        self.exit_code = output.exit_code
        self.stdout = output.stdout
        self.stderr = output.stderr

        message = f"Command '{command}' failed with exit code {self.exit_code}"
        if self.stderr:
            message += f"\nstderr:\n{self.stderr}"
        super().__init__(message)


class CommandCanceledError(ProcshellError):
    """The run was cancelled; ``output`` holds whatever was captured before."""

    def __init__(self, command: str, output: Optional["CommandOutput"] = None):
        self.command = command
        self.output = output
        super().__init__(f"Command '{command}' was cancelled")


class OutputReadError(ProcshellError):
    """Reading one or both output channels failed."""

    def __init__(
        self,
        command: str,
        errors: Dict["OutputSource", BaseException],
        output: Optional["CommandOutput"] = None,
    ):
        self.command = command
        self.errors = errors
        self.output = output

        details = ", ".join(f"{source.value}: {exc}" for source, exc in errors.items())
        super().__init__(f"Failed to read output of '{command}' ({details})")


class UsageError(ProcshellError, RuntimeError):
    """The API was used in a way it does not support."""


class ResultConsumedError(UsageError):
    """A CommandResult was executed (or piped from) more than once."""


class MockSessionError(UsageError):
    """Mock session misuse: double enable, or use without a session."""
