"""
CommandResult: one not-yet-run invocation and its execution modes.

A CommandResult is single-use. Exactly one execution-mode call (or one
``pipe()``) may consume it; the stage's own output and exit code stay
readable afterwards.
"""

import asyncio
import contextvars
import functools
import logging
import queue
import threading
from contextlib import closing
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator, List, Optional, Tuple, TypeVar, Union

from .. import config
from ..exceptions import CommandCanceledError, CommandFailedError, ResultConsumedError
from .cancellation import CancellationToken
from .multiplexer import OutputSink, OutputSource, TaggedLine
from .output import CommandOutput
from .pipeline import ExecutionMode, PipelineRunner
from .spec import ProcessSpec


logger = logging.getLogger(__name__)

T = TypeVar("T")

_DONE = object()


class ExecutionState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAULTED = "faulted"
    CANCELED = "canceled"


class CommandResult:
    """
    Owns one invocation (or the terminal stage of a pipeline).

    Execution modes:
        run: echo both channels to the console, return the exit code
        capture: capture silently, return CommandOutput
        run_and_capture: echo and capture
        passthrough: hand the terminal to the child, return the exit code
        select: stderr to the console, return captured stdout
        stream_combined / stream_stdout / stream_stderr: iterate lines live
        stream_to_file: write stdout lines to a file as they arrive

    Each mode has an ``*_async`` twin that runs on the default executor.
    """

    def __init__(self, spec: ProcessSpec, upstream: Optional["CommandResult"] = None):
        self.spec = spec
        self._upstream = upstream
        self._lock = threading.Lock()
        self._claimed = False
        self._state = ExecutionState.NOT_STARTED
        self._output: Optional[CommandOutput] = None

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def output(self) -> Optional[CommandOutput]:
        """This stage's output once it has finished (or been cancelled)."""
        return self._output

    @property
    def exit_code(self) -> Optional[int]:
        return self._output.exit_code if self._output is not None else None

    @property
    def stages(self) -> Tuple["CommandResult", ...]:
        """Every stage of the pipeline ending here, head first."""
        chain: List[CommandResult] = []
        stage: Optional[CommandResult] = self
        while stage is not None:
            chain.append(stage)
            stage = stage._upstream
        return tuple(reversed(chain))

    def to_command_string(self) -> str:
        return " | ".join(stage.spec.to_command_string() for stage in self.stages)

    def pipe(self, executable: str, *arguments: str) -> "CommandResult":
        """
        Connect this command's stdout to a new command's stdin.

        The new stage inherits the working directory and validation policy.
        This result is consumed by the call.
        """
        spec = ProcessSpec(
            executable=executable,
            arguments=arguments,
            working_directory=self.spec.working_directory,
            validation=self.spec.validation,
        )
        self._claim()
        return CommandResult(spec, upstream=self)

    def run(self, token: Optional[CancellationToken] = None) -> int:
        return self._execute(ExecutionMode.RUN, token).exit_code

    def capture(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return self._execute(ExecutionMode.CAPTURE, token)

    def run_and_capture(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return self._execute(ExecutionMode.RUN_AND_CAPTURE, token)

    def passthrough(self, token: Optional[CancellationToken] = None) -> int:
        return self._execute(ExecutionMode.PASSTHROUGH, token).exit_code

    def select(self, token: Optional[CancellationToken] = None) -> str:
        """Run an interactive picker and return what it printed on stdout."""
        return self._execute(ExecutionMode.SELECT, token).stdout.rstrip("\r\n")

    def stream_combined(self, token: Optional[CancellationToken] = None) -> Iterator[TaggedLine]:
        """
        Yield lines from both channels as they arrive.

        Closing the iterator early cancels the run. Validation and other
        failures are raised once the stream is exhausted.
        """
        self._claim()
        return self._stream(token)

    def stream_stdout(self, token: Optional[CancellationToken] = None) -> Iterator[str]:
        return self._filtered(self.stream_combined(token), OutputSource.STDOUT)

    def stream_stderr(self, token: Optional[CancellationToken] = None) -> Iterator[str]:
        return self._filtered(self.stream_combined(token), OutputSource.STDERR)

    def stream_to_file(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> int:
        """Write stdout lines to ``path`` as they arrive. Returns the exit code."""
        encoding = config.get_settings().encoding
        with open(path, "w", encoding=encoding) as f:
            lines = self.stream_combined(token)
            with closing(lines):
                for line in lines:
                    if line.source == OutputSource.STDOUT:
                        f.write(line.text + "\n")
        return self.exit_code

    def stream_combined_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[TaggedLine]:
        """
        Async twin of ``stream_combined``, for ``async for``.

        Closing the iterator, or cancelling the task iterating it, cancels
        the run.
        """
        self._claim()
        return self._stream_async(token)

    def stream_stdout_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        return self._filtered_async(self.stream_combined_async(token), OutputSource.STDOUT)

    def stream_stderr_async(self, token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        return self._filtered_async(self.stream_combined_async(token), OutputSource.STDERR)

    async def run_async(self, token: Optional[CancellationToken] = None) -> int:
        return await self._in_thread(self.run, token)

    async def capture_async(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return await self._in_thread(self.capture, token)

    async def run_and_capture_async(self, token: Optional[CancellationToken] = None) -> CommandOutput:
        return await self._in_thread(self.run_and_capture, token)

    async def passthrough_async(self, token: Optional[CancellationToken] = None) -> int:
        return await self._in_thread(self.passthrough, token)

    async def select_async(self, token: Optional[CancellationToken] = None) -> str:
        return await self._in_thread(self.select, token)

    async def stream_to_file_async(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> int:
        return await self._in_thread(functools.partial(self.stream_to_file, path), token)

    def _claim(self) -> None:
        with self._lock:
            if self._claimed:
                raise ResultConsumedError(
                    f"'{self.to_command_string()}' has already been executed or piped; build a new command"
                )
            self._claimed = True

    def _execute(
        self,
        mode: ExecutionMode,
        token: Optional[CancellationToken],
        sink: Optional[OutputSink] = None,
        claim: bool = True,
    ) -> CommandOutput:
        if claim:
            self._claim()

        stages = self.stages
        effective = CancellationToken.linked(token, *(stage.spec.cancellation_token for stage in stages))
        runner = PipelineRunner([stage.spec for stage in stages], mode, effective, sink)

        for stage in stages:
            stage._state = ExecutionState.RUNNING
        try:
            outputs = runner.execute()
        except CommandCanceledError:
            self._finish(stages, runner.outputs, ExecutionState.CANCELED)
            raise
        except BaseException:
            self._finish(stages, runner.outputs, ExecutionState.FAULTED)
            raise
        finally:
            effective.detach()

        self._finish(stages, outputs, ExecutionState.COMPLETED)
        output = outputs[-1]
        if self.spec.validates and not output.success:
            logger.debug(f"{runner.command} exited with {output.exit_code}, raising")
            raise CommandFailedError(runner.command, output)
        return output

    @staticmethod
    def _finish(
        stages: Tuple["CommandResult", ...],
        outputs: List[Optional[CommandOutput]],
        state: ExecutionState,
    ) -> None:
        for stage, output in zip(stages, outputs):
            stage._output = output
            stage._state = state

    def _start_stream(
        self,
        own: CancellationToken,
    ) -> Tuple[threading.Thread, "queue.Queue", List[BaseException]]:
        """Run the pipeline on a worker thread; its lines arrive on the returned queue."""
        sink = OutputSink()
        lines = sink.subscribe()
        failure: List[BaseException] = []

        def worker() -> None:
            try:
                self._execute(ExecutionMode.STREAM, own, sink, claim=False)
            except BaseException as e:
                failure.append(e)
            finally:
                lines.put(_DONE)

        context = contextvars.copy_context()
        thread = threading.Thread(target=context.run, args=(worker,), name="procshell-stream", daemon=True)
        thread.start()
        return thread, lines, failure

    def _stream(self, token: Optional[CancellationToken]) -> Iterator[TaggedLine]:
        own = CancellationToken.linked(token)
        thread, lines, failure = self._start_stream(own)

        finished = False
        try:
            while True:
                item = lines.get()
                if item is _DONE:
                    finished = True
                    break
                yield item
        finally:
            if not finished:
                own.cancel()
            thread.join()
            own.detach()

        if failure:
            raise failure[0]

    async def _stream_async(self, token: Optional[CancellationToken]) -> AsyncIterator[TaggedLine]:
        own = CancellationToken.linked(token)
        thread, lines, failure = self._start_stream(own)

        finished = False
        try:
            while not finished:
                # Wait for one line off the event loop, then drain what is already queued
                batch = [await asyncio.to_thread(lines.get)]
                while True:
                    try:
                        batch.append(lines.get_nowait())
                    except queue.Empty:
                        break
                for item in batch:
                    if item is _DONE:
                        finished = True
                        break
                    yield item
        finally:
            if not finished:
                own.cancel()
            await asyncio.to_thread(thread.join)
            own.detach()

        if failure:
            raise failure[0]

    @staticmethod
    def _filtered(lines: Iterator[TaggedLine], source: OutputSource) -> Iterator[str]:
        with closing(lines):
            for line in lines:
                if line.source == source:
                    yield line.text

    @staticmethod
    async def _filtered_async(lines: AsyncIterator[TaggedLine], source: OutputSource) -> AsyncIterator[str]:
        try:
            async for line in lines:
                if line.source == source:
                    yield line.text
        finally:
            await lines.aclose()

    async def _in_thread(self, method: Callable[..., T], token: Optional[CancellationToken]) -> T:
        own = CancellationToken.linked(token)
        try:
            return await asyncio.to_thread(method, own)
        except asyncio.CancelledError:
            own.cancel()
            raise
        finally:
            own.detach()

    def __repr__(self) -> str:
        return f"CommandResult({self.to_command_string()!r}, state={self._state.value})"
