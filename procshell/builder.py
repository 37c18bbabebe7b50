"""
Fluent assembly of commands.

    output = (
        command("git", "log", "--oneline")
        .with_working_directory(repo)
        .with_environment_variable("GIT_PAGER", "cat")
        .capture()
    )

The builder is mutable and cheap; each execution method builds a fresh
CommandResult from the current state, so one builder can run many times.
"""

from pathlib import Path
from typing import AsyncIterator, Dict, Iterator, List, Mapping, Optional, Union

from .exec.cancellation import CancellationToken
from .exec.multiplexer import TaggedLine
from .exec.output import CommandOutput
from .exec.result import CommandResult
from .exec.spec import ProcessSpec, StdinSource, ValidationPolicy


class CommandBuilder:
    """Collects the parts of a ProcessSpec."""

    def __init__(self, executable: str, *arguments: str):
        self.executable = executable
        self._arguments: List[str] = list(arguments)
        self._working_directory: Optional[Path] = None
        self._environment: Dict[str, Optional[str]] = {}
        self._stdin: Optional[StdinSource] = None
        self._validation = ValidationPolicy.THROW_ON_NON_ZERO_EXIT
        self._token: Optional[CancellationToken] = None

    def with_arguments(self, *arguments: str) -> "CommandBuilder":
        self._arguments.extend(arguments)
        return self

    def with_working_directory(self, path: Union[str, Path]) -> "CommandBuilder":
        self._working_directory = Path(path)
        return self

    def with_environment_variable(self, name: str, value: Optional[str]) -> "CommandBuilder":
        """Set ``name`` for the child; ``None`` removes it from the inherited environment."""
        self._environment[name] = value
        return self

    def with_environment(self, variables: Mapping[str, Optional[str]]) -> "CommandBuilder":
        self._environment.update(variables)
        return self

    def with_standard_input(self, source: StdinSource) -> "CommandBuilder":
        self._stdin = source
        return self

    def with_no_validation(self) -> "CommandBuilder":
        self._validation = ValidationPolicy.NONE
        return self

    def with_validation(self, policy: ValidationPolicy = ValidationPolicy.THROW_ON_NON_ZERO_EXIT) -> "CommandBuilder":
        self._validation = ValidationPolicy(policy)
        return self

    def with_cancellation_token(self, token: CancellationToken) -> "CommandBuilder":
        self._token = token
        return self

    def spec(self) -> ProcessSpec:
        """
        Raises:
            InvalidProcessSpecError: If the collected parts are malformed
        """
        return ProcessSpec(
            executable=self.executable,
            arguments=tuple(self._arguments),
            working_directory=self._working_directory,
            environment=dict(self._environment),
            stdin=self._stdin,
            validation=self._validation,
            cancellation_token=self._token,
        )

    def build(self) -> CommandResult:
        return CommandResult(self.spec())

    def to_command_string(self) -> str:
        return self.spec().to_command_string()

    def pipe(self, executable: str, *arguments: str) -> CommandResult:
        return self.build().pipe(executable, *arguments)

    def run(self, token: Optional[CancellationToken] = None) -> int:
        return self.build().run(token)

    def capture(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return self.build().capture(token)

    def run_and_capture(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return self.build().run_and_capture(token)

    def passthrough(self, token: Optional[CancellationToken] = None) -> int:
        return self.build().passthrough(token)

    def select(self, token: Optional[CancellationToken] = None) -> str:
        return self.build().select(token)

    def stream_combined(self, token: Optional[CancellationToken] = None) -> Iterator[TaggedLine]:
        return self.build().stream_combined(token)

    def stream_stdout(self, token: Optional[CancellationToken] = None) -> Iterator[str]:
        return self.build().stream_stdout(token)

    def stream_stderr(self, token: Optional[CancellationToken] = None) -> Iterator[str]:
        return self.build().stream_stderr(token)

    def stream_to_file(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> int:
        return self.build().stream_to_file(path, token)

    async def run_async(self, token: Optional[CancellationToken] = None) -> int:
        return await self.build().run_async(token)

    async def capture_async(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return await self.build().capture_async(token)

    async def run_and_capture_async(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return await self.build().run_and_capture_async(token)

    async def passthrough_async(self, token: Optional[CancellationToken] = None) -> int:
        return await self.build().passthrough_async(token)

    async def select_async(self, token: Optional[CancellationToken] = None) -> str:
        return await self.build().select_async(token)

    async def stream_to_file_async(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> int:
        return await self.build().stream_to_file_async(path, token)

    def stream_combined_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[TaggedLine]:
        return self.build().stream_combined_async(token)

    def stream_stdout_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        return self.build().stream_stdout_async(token)

    def stream_stderr_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        return self.build().stream_stderr_async(token)

    def __repr__(self) -> str:
        return f"CommandBuilder({self.executable!r}, arguments={self._arguments!r})"


def command(executable: str, *arguments: str) -> CommandBuilder:
    """Start building an invocation of ``executable``."""
    return CommandBuilder(executable, *arguments)
