"""
Frozen result of a finished invocation.

The string views (stdout, stderr, combined, lines) are derived from the tagged
lines on first access and cached. Concurrent first readers race on a
double-checked lock, so each view is built exactly once and every later read
returns the same object.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, TypeVar

from .multiplexer import OutputSource, TaggedLine


T = TypeVar("T")

_UNSET: Any = object()


class CommandOutput:
    """
    Exit code plus every captured line, in arrival order.

    ``start_time`` and ``exit_time`` are UTC timestamps taken just before the
    process was spawned and right after it was reaped; both are None for
    outputs that were not produced by a run.
    """

    def __init__(
        self,
        output_lines: Iterable[TaggedLine],
        exit_code: int,
        start_time: Optional[datetime] = None,
        exit_time: Optional[datetime] = None,
    ):
        self._lines: Tuple[TaggedLine, ...] = tuple(output_lines)
        self._exit_code = exit_code
        self.start_time = start_time
        self.exit_time = exit_time
        self._lock = threading.Lock()
        self._stdout: Any = _UNSET
        self._stderr: Any = _UNSET
        self._combined: Any = _UNSET
        self._all_lines: Any = _UNSET

    @classmethod
    def from_text(cls, stdout: str = "", stderr: str = "", exit_code: int = 0) -> "CommandOutput":
        """
        Build an output from whole stdout/stderr strings.

        Stdout lines are sequenced before stderr lines; used for canned
        results where no real interleaving exists.
        """
        now = datetime.now(timezone.utc)
        lines = []
        for source, text in ((OutputSource.STDOUT, stdout), (OutputSource.STDERR, stderr)):
            for part in (text or "").splitlines():
                lines.append(TaggedLine(part, source, len(lines) + 1, now))
        return cls(lines, exit_code)

    @classmethod
    def empty(cls, exit_code: int = 0) -> "CommandOutput":
        return cls((), exit_code)

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def success(self) -> bool:
        return self._exit_code == 0

    @property
    def run_time(self) -> Optional[timedelta]:
        if self.start_time is None or self.exit_time is None:
            return None
        return self.exit_time - self.start_time

    @property
    def output_lines(self) -> Tuple[TaggedLine, ...]:
        return self._lines

    @property
    def stdout(self) -> str:
        """Stdout lines joined with newlines."""
        return self._memoized("_stdout", lambda: self._join(OutputSource.STDOUT))

    @property
    def stderr(self) -> str:
        """Stderr lines joined with newlines."""
        return self._memoized("_stderr", lambda: self._join(OutputSource.STDERR))

    @property
    def combined(self) -> str:
        """Both channels joined with newlines, in the order lines arrived."""
        return self._memoized("_combined", lambda: self._join(None))

    @property
    def lines(self) -> Tuple[str, ...]:
        """Non-empty lines of ``combined``."""
        return self._memoized("_all_lines", lambda: tuple(l.text for l in self._lines if l.text))

    @property
    def stdout_lines(self) -> Tuple[str, ...]:
        return tuple(l.text for l in self._lines if l.source == OutputSource.STDOUT and l.text)

    @property
    def stderr_lines(self) -> Tuple[str, ...]:
        return tuple(l.text for l in self._lines if l.source == OutputSource.STDERR and l.text)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data form, e.g. for JSON logs."""
        return {
            "exit_code": self._exit_code,
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }

    def _join(self, source: Optional[OutputSource]) -> str:
        return "\n".join(l.text for l in self._lines if source is None or l.source == source)

    def _memoized(self, attr: str, compute: Callable[[], T]) -> T:
        value = getattr(self, attr)
        if value is _UNSET:
            with self._lock:
                value = getattr(self, attr)
                if value is _UNSET:
                    value = compute()
                    setattr(self, attr, value)
        return value

    def __repr__(self) -> str:
        return f"CommandOutput(exit_code={self._exit_code}, lines={len(self._lines)})"
