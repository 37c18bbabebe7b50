"""
procshell: run external programs from Python without losing any output.

    from procshell import command

    output = command("echo", "hello").capture()
    assert output.stdout == "hello"
"""

import logging

from .exec import (
    CancellationToken,
    CommandOutput,
    CommandResult,
    ExecutionMode,
    ExecutionState,
    OutputSource,
    ProcessSpec,
    TaggedLine,
    ValidationPolicy,
)
from . import testing
from .builder import CommandBuilder, command
from .exceptions import (
    CommandCanceledError,
    CommandFailedError,
    CommandSpawnError,
    ConfigValidationError,
    InvalidProcessSpecError,
    MockSessionError,
    OutputReadError,
    ProcshellError,
    ResultConsumedError,
    SpecViolation,
    UsageError,
)

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "CancellationToken",
    "CommandBuilder",
    "CommandCanceledError",
    "CommandFailedError",
    "CommandOutput",
    "CommandResult",
    "CommandSpawnError",
    "ConfigValidationError",
    "ExecutionMode",
    "ExecutionState",
    "InvalidProcessSpecError",
    "MockSessionError",
    "OutputReadError",
    "OutputSource",
    "ProcessSpec",
    "ProcshellError",
    "ResultConsumedError",
    "SpecViolation",
    "TaggedLine",
    "UsageError",
    "ValidationPolicy",
    "command",
    "testing",
]
