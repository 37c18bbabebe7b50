"""
Concurrent draining of a child's stdout and stderr into one ordered sequence.

Each channel gets its own reader thread. Readers push decoded lines into a
single OutputSink, which stamps them with a sequence number under one lock.
That lock is the only shared state between the readers, so a slow or silent
channel never holds up the other one, and a child can never block on a full
pipe while we wait on its sibling.
"""

import logging
import queue
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import IO, TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Set, TextIO, Union

from .. import config
from ..exceptions import OutputReadError

if TYPE_CHECKING:
    from .output import CommandOutput


logger = logging.getLogger(__name__)


class OutputSource(str, Enum):
    """Channel a line was read from."""
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class TaggedLine:
    """One captured line, without its terminator."""
    text: str
    source: OutputSource
    sequence: int
    timestamp: datetime

    @property
    def is_error(self) -> bool:
        return self.source == OutputSource.STDERR


class OutputSink:
    """
    Append-only, thread-safe sequence of TaggedLines.

    Subscribers receive every line appended after they subscribe through an
    unbounded queue, so appending never waits on a consumer.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._lines: List[TaggedLine] = []
        self._errors: Dict[OutputSource, BaseException] = {}
        self._subscribers: List["queue.Queue[TaggedLine]"] = []

    def append(self, text: str, source: OutputSource) -> TaggedLine:
        with self._lock:
            line = TaggedLine(
                text=text,
                source=source,
                sequence=len(self._lines) + 1,
                timestamp=datetime.now(timezone.utc),
            )
            self._lines.append(line)
            for subscriber in self._subscribers:
                subscriber.put(line)
        return line

    def record_error(self, source: OutputSource, error: BaseException) -> None:
        with self._lock:
            self._errors.setdefault(source, error)

    def subscribe(self) -> "queue.Queue[TaggedLine]":
        subscriber: "queue.Queue[TaggedLine]" = queue.Queue()
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def lines(self) -> List[TaggedLine]:
        """Snapshot of every line appended so far, in sequence order."""
        with self._lock:
            return list(self._lines)

    @property
    def errors(self) -> Dict[OutputSource, BaseException]:
        with self._lock:
            return dict(self._errors)


class OutputMultiplexer:
    """
    Drains up to two binary channels into an OutputSink.

    Lines from the channels listed in ``echo`` (or both, with ``echo=True``)
    are also written to the host console at the point they are read: stdout
    lines to ``sys.stdout``, stderr lines to ``sys.stderr`` (resolved when the
    multiplexer is created).
    """

    def __init__(
        self,
        sink: Optional[OutputSink] = None,
        echo: Union[bool, Iterable[OutputSource]] = False,
        name: str = "process",
    ):
        self.sink = sink if sink is not None else OutputSink()
        if echo is True:
            self.echo: FrozenSet[OutputSource] = frozenset(OutputSource)
        elif echo is False:
            self.echo = frozenset()
        else:
            self.echo = frozenset(echo)
        self.name = name
        self._encoding = config.get_settings().encoding
        self._threads: List[threading.Thread] = []
        self._console: Dict[OutputSource, TextIO] = {
            OutputSource.STDOUT: sys.stdout,
            OutputSource.STDERR: sys.stderr,
        }
        self._console_lock = threading.Lock()
        self._echo_failed: Set[OutputSource] = set()

    def attach(self, stream: Optional[IO[bytes]], source: OutputSource) -> None:
        """Start draining ``stream``. ``None`` is ignored (channel not piped)."""
        if stream is None:
            return

        thread = threading.Thread(
            target=self._drain,
            args=(stream, source),
            name=f"procshell-{source.value}-{self.name}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every reader to reach end-of-stream.

        Returns:
            True if all readers finished within ``timeout``
        """
        for thread in self._threads:
            thread.join(timeout)
        return not any(thread.is_alive() for thread in self._threads)

    @property
    def errors(self) -> Dict[OutputSource, BaseException]:
        return self.sink.errors

    def raise_for_errors(self, command: str, output: Optional["CommandOutput"] = None) -> None:
        """
        Raises:
            OutputReadError: If any channel failed, with every channel's error
        """
        errors = self.errors
        if errors:
            raise OutputReadError(command, errors, output)

    def replay(self, lines: Iterable[TaggedLine]) -> None:
        """Feed already-materialized lines through the sink and console echo."""
        for line in lines:
            self._echo(self.sink.append(line.text, line.source))

    def _drain(self, stream: IO[bytes], source: OutputSource) -> None:
        try:
            for raw in iter(stream.readline, b""):
                text = raw.decode(self._encoding, errors="replace").rstrip("\r\n")
                self._echo(self.sink.append(text, source))
        except (OSError, ValueError) as e:
            logger.warning(f"Reading {source.value} of {self.name} failed: {e}")
            self.sink.record_error(source, e)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _echo(self, line: TaggedLine) -> None:
        """
        Write ``line`` to its console stream if that channel is echoed.

        A console that cannot be written to stops echo for that channel only;
        the line is already in the sink, so nothing is lost.
        """
        if line.source not in self.echo:
            return
        target = self._console[line.source]
        with self._console_lock:
            if line.source in self._echo_failed:
                return
            try:
                target.write(line.text + "\n")
                target.flush()
            except (OSError, ValueError) as e:
                logger.warning(f"Echoing {line.source.value} of {self.name} failed, echo disabled: {e}")
                self._echo_failed.add(line.source)
