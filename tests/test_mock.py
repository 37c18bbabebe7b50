"""
Tests for the command mocking layer.
"""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from procshell import command
from procshell.exceptions import CommandCanceledError, CommandFailedError, MockSessionError
from procshell.exec import CancellationToken, ExecutionState
from procshell.testing import mock


class TestMockSession:
    """Session lifecycle and isolation."""

    def test_git_status(self, command_mock):
        """A registered command returns its canned output and is recorded."""
        mock.setup("git", "status").returns("On branch main", "", 0)

        output = command("git", "status").capture()

        assert output.stdout == "On branch main"
        assert output.exit_code == 0
        mock.verify_called("git", "status")
        assert mock.call_count("git", "status") == 1
        assert mock.calls()[0].mocked is True

    def test_double_enable(self, command_mock):
        """Enabling twice in one context is an error."""
        with pytest.raises(MockSessionError):
            mock.enable()

    def test_requires_session(self):
        """setup and verify_called need an active session."""
        assert not mock.is_enabled()
        with pytest.raises(MockSessionError):
            mock.setup("git", "status")
        with pytest.raises(MockSessionError):
            mock.verify_called("git", "status")
        assert mock.call_count("git") == 0
        assert mock.calls() == []

    def test_scope_closes_on_exception(self):
        """Leaving the with block by exception clears the session."""
        with pytest.raises(RuntimeError):
            with mock.enable():
                mock.setup("git", "status").returns("x")
                raise RuntimeError("test failure")

        assert not mock.is_enabled()
        scope = mock.enable()
        scope.close()
        scope.close()
        assert not mock.is_enabled()

    def test_verify_called_failure(self, command_mock):
        """verify_called raises AssertionError when nothing matched."""
        command("echo", "real").capture()

        with pytest.raises(AssertionError, match="git status"):
            mock.verify_called("git", "status")

    def test_exact_match_only(self, command_mock):
        """Different arguments fall through to real execution."""
        mock.setup("echo", "mocked").returns("canned")

        output = command("echo", "real").capture()

        assert output.stdout == "real"
        assert mock.calls()[0].mocked is False
        assert mock.call_count("echo", "real") == 1

    def test_isolated_from_other_threads(self, command_mock):
        """An unrelated thread does not see this session."""
        seen = []
        thread = threading.Thread(target=lambda: seen.append(mock.is_enabled()))
        thread.start()
        thread.join()
        assert seen == [False]

    def test_propagates_to_async_variants(self, command_mock):
        """Async variants run inside the caller's session."""
        mock.setup("fzf").returns("choice")

        selected = asyncio.run(command("fzf").select_async())

        assert selected == "choice"
        mock.verify_called("fzf")

    def test_reset(self, command_mock):
        """reset clears registrations and calls but keeps the session."""
        mock.setup("git", "status").returns("x")
        command("git", "status").capture()

        mock.reset()

        assert mock.is_enabled()
        assert mock.calls() == []
        with pytest.raises(AssertionError):
            mock.verify_called("git", "status")


class TestMockBehaviour:
    """Canned results, errors and delays."""

    def test_returns_error(self, command_mock):
        """returns_error fails validation like a real failure."""
        mock.setup("git", "push").returns_error("rejected", exit_code=128)

        with pytest.raises(CommandFailedError) as exc_info:
            command("git", "push").capture()

        assert exc_info.value.exit_code == 128
        assert exc_info.value.stderr == "rejected"

    def test_returns_error_without_validation(self, command_mock):
        """With validation off the canned failure is returned."""
        mock.setup("git", "push").returns_error("rejected", exit_code=1)

        output = command("git", "push").with_no_validation().capture()

        assert output.success is False
        assert output.stderr == "rejected"

    def test_throws_class(self, command_mock):
        """A configured exception class is raised with its message."""
        mock.setup("git", "fetch").throws(ConnectionError, "network down")
        result = command("git", "fetch").build()

        with pytest.raises(ConnectionError, match="network down"):
            result.capture()
        assert result.state == ExecutionState.FAULTED

    def test_throws_instance(self, command_mock):
        """A configured exception instance is raised as-is."""
        error = PermissionError("nope")
        mock.setup("rm", "-rf", "/").throws(error)

        with pytest.raises(PermissionError) as exc_info:
            command("rm", "-rf", "/").capture()
        assert exc_info.value is error

    def test_delay(self, command_mock):
        """A delayed mock waits before answering."""
        mock.setup("slow").returns("done").delays(timedelta(milliseconds=200))
        start = time.monotonic()

        output = command("slow").capture()

        assert output.stdout == "done"
        assert time.monotonic() - start >= 0.15

    def test_delay_honours_cancellation(self, command_mock):
        """Cancelling during a delay raises CommandCanceledError promptly."""
        mock.setup("slow").returns("done").delays(30)
        token = CancellationToken().cancel_after(0.2)
        start = time.monotonic()

        with pytest.raises(CommandCanceledError):
            command("slow").capture(token)
        assert time.monotonic() - start < 10

    def test_delay_counts_toward_run_time(self, command_mock):
        """A mocked output is timed like a real one."""
        mock.setup("slow").returns("done").delays(timedelta(milliseconds=200))

        output = command("slow").capture()

        assert output.start_time <= output.exit_time
        assert output.run_time >= timedelta(milliseconds=150)

    def test_async_stream_canned_output(self, command_mock):
        """Async streams see canned lines from the session."""
        mock.setup("ls").returns("a\nb")

        async def main():
            return [line async for line in command("ls").stream_stdout_async()]

        assert asyncio.run(main()) == ["a", "b"]

    def test_negative_delay(self, command_mock):
        """Negative delays are rejected."""
        with pytest.raises(ValueError):
            mock.setup("slow").delays(-1)

    def test_run_echoes_canned_output(self, command_mock, capsys):
        """run shows canned output the way a real process would."""
        mock.setup("git", "status").returns("clean", "hint")

        assert command("git", "status").run() == 0

        captured = capsys.readouterr()
        assert captured.out == "clean\n"
        assert captured.err == "hint\n"

    def test_stream_canned_output(self, command_mock):
        """Streaming modes yield canned lines."""
        mock.setup("ls").returns("a\nb")
        assert list(command("ls").stream_stdout()) == ["a", "b"]


class TestMockedPipelines:
    """Mocks inside pipelines."""

    def test_mocked_head_feeds_real_stage(self, command_mock):
        """Canned stdout of a mocked stage is piped to the next real stage."""
        mock.setup("git", "branch").returns("main\nfeature/x\nrelease")

        output = command("git", "branch").pipe("grep", "feature").capture()

        assert output.stdout == "feature/x"
        assert mock.call_count("git", "branch") == 1
        assert mock.call_count("grep", "feature") == 1

    def test_real_head_mocked_tail(self, command_mock):
        """A mocked terminal stage answers regardless of its input."""
        mock.setup("fzf").returns("picked")

        selected = command("seq", "1", "1000").pipe("fzf").select()

        assert selected == "picked"

    def test_every_stage_recorded(self, command_mock):
        """Each stage of a pipeline yields one call record."""
        command("echo", "x").pipe("cat").capture()
        assert [c.executable for c in mock.calls()] == ["echo", "cat"]
