"""
Spawning and supervising a chain of processes.

A single command is a pipeline of one stage. Consecutive real stages are
connected with OS pipes, so a long-running producer streams into its consumer
without being buffered here. The execution mode decides what happens to the
terminal stage's channels; every stage's stderr is drained into that stage's
own sink (or handed to the host, in interactive modes) and is never dropped.
"""

import logging
import subprocess
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import IO, TYPE_CHECKING, List, Optional, Union

from .. import config
from ..exceptions import CommandCanceledError, CommandSpawnError
from .cancellation import CancellationToken
from .multiplexer import OutputMultiplexer, OutputSink, OutputSource
from .output import CommandOutput
from .spec import ProcessSpec

if TYPE_CHECKING:
    from ..testing.mock import MockRegistration


logger = logging.getLogger(__name__)

FeedSource = Union[bytes, IO[bytes]]


class ExecutionMode(str, Enum):
    """How the terminal stage's channels are wired."""
    RUN = "run"
    CAPTURE = "capture"
    RUN_AND_CAPTURE = "run_and_capture"
    PASSTHROUGH = "passthrough"
    SELECT = "select"
    STREAM = "stream"

    @property
    def interactive(self) -> bool:
        """Child talks to the host terminal directly."""
        return self in (ExecutionMode.PASSTHROUGH, ExecutionMode.SELECT)

    @property
    def echo(self) -> frozenset:
        """Channels written to the host console as they are read."""
        if self in (ExecutionMode.RUN, ExecutionMode.RUN_AND_CAPTURE, ExecutionMode.PASSTHROUGH):
            return frozenset(OutputSource)
        if self == ExecutionMode.SELECT:
            return frozenset({OutputSource.STDERR})
        return frozenset()


class PipelineRunner:
    """
    Runs one or more ProcessSpecs as a pipeline.

    ``outputs`` holds one CommandOutput per stage once ``execute`` returns,
    and whatever could be collected if it raised.
    """

    def __init__(
        self,
        specs: List[ProcessSpec],
        mode: ExecutionMode,
        token: CancellationToken,
        sink: Optional[OutputSink] = None,
    ):
        """
        Initialize the runner.

        Args:
            specs: Stages, head first
            mode: Execution mode applied to the terminal stage
            token: Cancels every stage
            sink: Sink for the terminal stage (streaming modes subscribe to it)
        """
        if not specs:
            raise ValueError("A pipeline needs at least one stage")

        self.specs = specs
        self.mode = mode
        self.token = token
        self.command = " | ".join(spec.to_command_string() for spec in specs)
        self.outputs: List[Optional[CommandOutput]] = [None] * len(specs)

        self._settings = config.get_settings()
        self._sinks = [OutputSink() for _ in specs]
        if sink is not None:
            self._sinks[-1] = sink
        self._procs: List[Optional[subprocess.Popen]] = [None] * len(specs)
        self._muxes: List[Optional[OutputMultiplexer]] = [None] * len(specs)
        self._feeders: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._kill_timer: Optional[threading.Timer] = None
        self._started_at: Optional[datetime] = None
        self._start_times: List[Optional[datetime]] = [None] * len(specs)

    def execute(self) -> List[CommandOutput]:
        """
        Run every stage to completion.

        Returns:
            One CommandOutput per stage, head first

        Raises:
            CommandCanceledError: The token was cancelled
            CommandSpawnError: A stage could not be started
            OutputReadError: A channel could not be read
            Exception: Whatever a mock registration was configured to throw
        """
        if self.token.cancelled:
            raise CommandCanceledError(self.command)

        self._started_at = _now()
        registrations = self._intercept()
        self._apply_mock_behaviour(registrations)

        logger.debug(f"Executing command: {self.command} (mode={self.mode.value})")
        remove_callback = self.token.add_callback(self._on_cancel)
        try:
            self._spawn_all(registrations)
            self._wait_all()
        except BaseException:
            self._abort()
            raise
        finally:
            remove_callback()
            if self._kill_timer is not None:
                self._kill_timer.cancel()

        terminal = self.outputs[-1]
        if self.token.cancelled:
            raise CommandCanceledError(self.command, terminal)

        for index, mux in enumerate(self._muxes):
            if mux is not None:
                mux.raise_for_errors(self.specs[index].to_command_string(), self.outputs[index])

        return list(self.outputs)

    def _intercept(self) -> List[Optional["MockRegistration"]]:
        from ..testing.mock import current_session

        session = current_session()
        if session is None:
            return [None] * len(self.specs)
        return [session.intercept(spec) for spec in self.specs]

    def _apply_mock_behaviour(self, registrations: List[Optional["MockRegistration"]]) -> None:
        for spec, registration in zip(self.specs, registrations):
            if registration is None:
                continue
            logger.debug(f"Mocked command: {spec.to_command_string()}")
            if registration.delay_sec > 0 and self.token.wait(registration.delay_sec):
                raise CommandCanceledError(self.command)
            if registration.exception is not None:
                raise registration.exception

    def _spawn_all(self, registrations: List[Optional["MockRegistration"]]) -> None:
        count = len(self.specs)
        previous: Optional[subprocess.Popen] = None
        feed: Optional[FeedSource] = None

        for index, (spec, registration) in enumerate(zip(self.specs, registrations)):
            last = index == count - 1
            echo = self.mode.echo if last else self._upstream_echo()
            mux = OutputMultiplexer(self._sinks[index], echo=echo, name=spec.executable)
            self._muxes[index] = mux

            if registration is not None:
                canned = registration.output()
                mux.replay(canned.output_lines)
                self.outputs[index] = CommandOutput(
                    mux.sink.lines(), canned.exit_code, start_time=self._started_at, exit_time=_now()
                )
                feed = _encode_stdout(canned, self._settings.encoding)
                previous = None
                continue

            if index == 0:
                stdin, feed = self._head_stdin(spec)
            elif previous is not None:
                stdin, feed = previous.stdout, None
            else:
                stdin = subprocess.PIPE

            next_is_mocked = not last and registrations[index + 1] is not None
            if not last:
                stdout = subprocess.DEVNULL if next_is_mocked else subprocess.PIPE
            elif self.mode == ExecutionMode.PASSTHROUGH:
                stdout = None
            else:
                stdout = subprocess.PIPE
            stderr = None if self.mode.interactive else subprocess.PIPE

            proc = self._popen(index, spec, stdin, stdout, stderr)

            if previous is not None and previous.stdout is not None:
                # The child holds its own copy; closing ours lets the producer see SIGPIPE
                previous.stdout.close()
            if stdin == subprocess.PIPE:
                self._start_feeder(proc, feed)
            feed = None

            if last:
                mux.attach(proc.stdout, OutputSource.STDOUT)
            mux.attach(proc.stderr, OutputSource.STDERR)
            previous = proc

    def _head_stdin(self, spec: ProcessSpec):
        source = spec.stdin
        if source is None:
            return (None if self.mode.interactive else subprocess.DEVNULL), None
        if isinstance(source, str):
            return subprocess.PIPE, source.encode(self._settings.encoding)
        if isinstance(source, bytes):
            return subprocess.PIPE, source
        try:
            source.fileno()
            return source, None
        except (AttributeError, OSError, ValueError):
            # In-memory file objects have no descriptor; copy them through a pipe
            return subprocess.PIPE, source

    def _upstream_echo(self) -> frozenset:
        if self.mode in (ExecutionMode.RUN, ExecutionMode.RUN_AND_CAPTURE):
            return frozenset({OutputSource.STDERR})
        return frozenset()

    def _popen(self, index: int, spec: ProcessSpec, stdin, stdout, stderr) -> subprocess.Popen:
        argv = spec.argv()
        self._start_times[index] = _now()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                cwd=spec.cwd(),
                env=spec.child_env(),
            )
        except (OSError, ValueError) as e:
            raise CommandSpawnError(spec.to_command_string(), str(e)) from e

        with self._lock:
            self._procs[index] = proc
        if self.token.cancelled:
            self._terminate_all()
        logger.debug(f"Started pid {proc.pid}: {spec.to_command_string()}")
        return proc

    def _start_feeder(self, proc: subprocess.Popen, feed: Optional[FeedSource]) -> None:
        thread = threading.Thread(
            target=_feed_stdin,
            args=(proc.stdin, feed),
            name=f"procshell-stdin-{proc.pid}",
            daemon=True,
        )
        self._feeders.append(thread)
        thread.start()

    def _wait_all(self) -> None:
        for index, proc in enumerate(self._procs):
            if proc is None:
                continue
            proc.wait()
            exited = _now()

            mux = self._muxes[index]
            # After a forced kill a grandchild may still hold the pipe open
            timeout = self._settings.kill_grace_sec if self.token.cancelled else None
            if mux is not None and not mux.join(timeout):
                logger.warning(f"Output readers of {self.specs[index].executable} did not finish")

            self.outputs[index] = CommandOutput(
                self._sinks[index].lines(), proc.returncode, start_time=self._start_times[index], exit_time=exited
            )
            logger.debug(f"{self.specs[index].executable} exited with {proc.returncode}")

        for feeder in self._feeders:
            feeder.join(self._settings.kill_grace_sec)

    def _on_cancel(self) -> None:
        logger.debug(f"Cancelling: {self.command}")
        self._terminate_all()

    def _terminate_all(self) -> None:
        with self._lock:
            procs = [proc for proc in self._procs if proc is not None]
            if self._kill_timer is None and procs:
                self._kill_timer = threading.Timer(self._settings.kill_grace_sec, self._kill_survivors)
                self._kill_timer.daemon = True
                self._kill_timer.start()
        for proc in procs:
            _terminate(proc)

    def _abort(self) -> None:
        """Stop every started stage after a failure and reap it."""
        self._terminate_all()
        for proc in self._procs:
            if proc is None:
                continue
            try:
                proc.wait(timeout=self._settings.kill_grace_sec)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        for mux in self._muxes:
            if mux is not None:
                mux.join(self._settings.kill_grace_sec)

    def _kill_survivors(self) -> None:
        with self._lock:
            procs = [proc for proc in self._procs if proc is not None]
        for proc in procs:
            if proc.poll() is None:
                logger.warning(f"pid {proc.pid} ignored terminate, killing")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass


def _encode_stdout(output: CommandOutput, encoding: str) -> Optional[bytes]:
    lines = [line.text for line in output.output_lines if line.source == OutputSource.STDOUT]
    if not lines:
        return None
    return ("\n".join(lines) + "\n").encode(encoding)


def _feed_stdin(stream: Optional[IO[bytes]], feed: Optional[FeedSource]) -> None:
    """Write ``feed`` to a child's stdin, then close it so the child sees EOF."""
    if stream is None:
        return
    try:
        if isinstance(feed, bytes):
            stream.write(feed)
        elif feed is not None:
            for chunk in iter(lambda: feed.read(64 * 1024), b""):
                stream.write(chunk)
    except BrokenPipeError:
        logger.debug("Child closed stdin before all input was written")
    except (OSError, ValueError) as e:
        logger.warning(f"Writing stdin failed: {e}")
    finally:
        try:
            stream.close()
        except (BrokenPipeError, OSError):
            pass
