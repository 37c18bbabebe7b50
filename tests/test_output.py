"""
Tests for CommandOutput views and memoization.
"""

import threading
from datetime import datetime, timedelta, timezone

from procshell.exec import CommandOutput, OutputSource, TaggedLine


def _line(text, source, sequence):
    return TaggedLine(text, source, sequence, datetime.now(timezone.utc))


class TestCommandOutput:
    """Derived views over tagged lines."""

    def test_views_split_by_channel(self):
        """stdout/stderr hold their own lines; combined keeps arrival order."""
        output = CommandOutput(
            [
                _line("out1", OutputSource.STDOUT, 1),
                _line("err1", OutputSource.STDERR, 2),
                _line("out2", OutputSource.STDOUT, 3),
            ],
            exit_code=0,
        )

        assert output.stdout == "out1\nout2"
        assert output.stderr == "err1"
        assert output.combined == "out1\nerr1\nout2"
        assert output.lines == ("out1", "err1", "out2")
        assert output.success is True

    def test_lines_skip_empty(self):
        """lines, stdout_lines and stderr_lines drop empty lines."""
        output = CommandOutput(
            [
                _line("a", OutputSource.STDOUT, 1),
                _line("", OutputSource.STDOUT, 2),
                _line("", OutputSource.STDERR, 3),
                _line("b", OutputSource.STDERR, 4),
            ],
            exit_code=0,
        )

        assert output.stdout == "a\n"
        assert output.lines == ("a", "b")
        assert output.stdout_lines == ("a",)
        assert output.stderr_lines == ("b",)

    def test_non_zero_exit(self):
        """success reflects the exit code."""
        output = CommandOutput.empty(exit_code=42)
        assert output.exit_code == 42
        assert output.success is False
        assert output.stdout == ""
        assert output.lines == ()

    def test_from_text(self):
        """from_text splits text into tagged lines, stdout first."""
        output = CommandOutput.from_text("one\ntwo\n", "warn", exit_code=3)

        assert [l.source for l in output.output_lines] == [
            OutputSource.STDOUT, OutputSource.STDOUT, OutputSource.STDERR,
        ]
        assert [l.sequence for l in output.output_lines] == [1, 2, 3]
        assert output.stdout == "one\ntwo"
        assert output.stderr == "warn"
        assert output.exit_code == 3

    def test_views_are_memoized(self):
        """Repeated reads return the identical object."""
        output = CommandOutput.from_text("x\ny", "z")

        assert output.stdout is output.stdout
        assert output.stderr is output.stderr
        assert output.combined is output.combined
        assert output.lines is output.lines

    def test_concurrent_first_access(self):
        """Concurrent first readers all see the same object."""
        output = CommandOutput.from_text("\n".join(f"line{i}" for i in range(5000)))
        barrier = threading.Barrier(8)
        seen = []
        lock = threading.Lock()

        def read():
            barrier.wait()
            value = output.combined
            with lock:
                seen.append(value)

        threads = [threading.Thread(target=read) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(seen) == 8
        assert all(value is seen[0] for value in seen)

    def test_to_dict(self):
        """to_dict exposes plain data."""
        output = CommandOutput.from_text("hi", "", exit_code=0)
        assert output.to_dict() == {"exit_code": 0, "success": True, "stdout": "hi", "stderr": ""}

    def test_timing(self):
        """run_time is the span between start and exit, when both are known."""
        start = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        output = CommandOutput([], 0, start_time=start, exit_time=start + timedelta(seconds=2))

        assert output.run_time == timedelta(seconds=2)
        assert CommandOutput.from_text("x").run_time is None
