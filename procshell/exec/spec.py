"""
Immutable description of one external invocation.
"""

import collections.abc
import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import IO, Dict, List, Mapping, Optional, Tuple, Union

from .. import config
from ..exceptions import InvalidProcessSpecError, SpecViolation
from .cancellation import CancellationToken


StdinSource = Union[str, bytes, IO[bytes]]


class ValidationPolicy(str, Enum):
    """What to do when a command exits non-zero."""
    THROW_ON_NON_ZERO_EXIT = "throw"
    NONE = "none"


@dataclass(frozen=True)
class ProcessSpec:
    """
    Everything needed to start one process.

    Attributes:
        executable: Command name or path (resolved through config overrides)
        arguments: Argument vector, passed to the child unmodified
        working_directory: Directory to run in (default: caller's cwd)
        environment: Overrides merged over the inherited environment;
            a None value removes the variable
        stdin: Text, bytes or a readable binary file for the child's stdin
        validation: Whether a non-zero exit raises CommandFailedError
        cancellation_token: Token that cancels this invocation
    """
    executable: str
    arguments: Tuple[str, ...] = ()
    working_directory: Optional[Path] = None
    environment: Mapping[str, Optional[str]] = field(default_factory=dict, hash=False)
    stdin: Optional[StdinSource] = None
    validation: ValidationPolicy = ValidationPolicy.THROW_ON_NON_ZERO_EXIT
    cancellation_token: Optional[CancellationToken] = None

    def __post_init__(self):
        errors: List[SpecViolation] = []

        if not isinstance(self.executable, str) or not self.executable.strip():
            errors.append(SpecViolation("executable must be a non-empty string", field="executable"))

        if isinstance(self.arguments, (str, bytes)):
            errors.append(SpecViolation(
                "arguments must be a sequence of strings, not a single string", field="arguments"
            ))
        elif not isinstance(self.arguments, collections.abc.Iterable):
            errors.append(SpecViolation(
                f"arguments must be a sequence of strings, got {type(self.arguments).__name__}", field="arguments"
            ))
        else:
            arguments = tuple(self.arguments)
            for index, arg in enumerate(arguments):
                if not isinstance(arg, str):
                    errors.append(SpecViolation(
                        f"argument {index} must be a string, got {type(arg).__name__}", field="arguments"
                    ))
            object.__setattr__(self, "arguments", arguments)

        if not isinstance(self.environment, collections.abc.Mapping):
            errors.append(SpecViolation(
                f"environment must be a mapping, got {type(self.environment).__name__}", field="environment"
            ))
        else:
            environment = dict(self.environment)
            for name, value in environment.items():
                if not isinstance(name, str) or not name or "=" in name:
                    errors.append(SpecViolation(f"invalid environment variable name {name!r}", field="environment"))
                elif value is not None and not isinstance(value, str):
                    errors.append(SpecViolation(f"value of {name} must be a string or None", field="environment"))
            object.__setattr__(self, "environment", MappingProxyType(environment))

        if self.working_directory is not None:
            object.__setattr__(self, "working_directory", Path(self.working_directory))

        if self.stdin is not None and not isinstance(self.stdin, (str, bytes)) and not hasattr(self.stdin, "read"):
            errors.append(SpecViolation("stdin must be str, bytes or a readable binary file", field="stdin"))

        try:
            object.__setattr__(self, "validation", ValidationPolicy(self.validation))
        except ValueError:
            errors.append(SpecViolation(f"unknown validation policy {self.validation!r}", field="validation"))

        if errors:
            raise InvalidProcessSpecError(errors)

    @property
    def key(self) -> Tuple[str, Tuple[str, ...]]:
        """Exact-match identity used by the mock registry."""
        return (self.executable, self.arguments)

    @property
    def validates(self) -> bool:
        return self.validation == ValidationPolicy.THROW_ON_NON_ZERO_EXIT

    def argv(self) -> List[str]:
        """Argument vector for the child, with the executable override applied."""
        return [config.get_command_path(self.executable), *self.arguments]

    def child_env(self) -> Optional[Dict[str, str]]:
        """Inherited environment plus overrides, or None to inherit unchanged."""
        if not self.environment:
            return None

        env = os.environ.copy()
        for name, value in self.environment.items():
            if value is None:
                env.pop(name, None)
            else:
                env[name] = value
        return env

    def cwd(self) -> Optional[str]:
        return str(self.working_directory) if self.working_directory is not None else None

    def to_command_string(self) -> str:
        """Shell-quoted command line; environment and cwd are not shown."""
        return shlex.join([self.executable, *self.arguments])

