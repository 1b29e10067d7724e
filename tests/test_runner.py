"""Tests for external command execution."""

import os

import pytest

from proxsave.context import RunContext
from proxsave.exceptions import CommandNotFoundError, DeadlineExceededError, OperationCancelledError
from proxsave.process.runner import (
    SYSTEM_PATH_DIRS,
    CommandResult,
    ProcessRunner,
    ensure_system_path,
    summarize_output,
)


class TestCommandResult:
    """Tests for CommandResult."""

    def test_ok_and_text(self):
        result = CommandResult(b"caf\xc3\xa9\n", 0)
        assert result.ok
        assert result.text == "café\n"

    def test_nonzero_exit_is_not_ok(self):
        assert not CommandResult(b"", 2).ok


class TestProcessRunner:
    """Tests for ProcessRunner."""

    def test_combines_stdout_and_stderr(self):
        result = ProcessRunner().run(
            RunContext.background(), "sh", "-c", "echo out; echo err >&2; exit 3"
        )

        assert result.exit_code == 3
        assert b"out" in result.output
        assert b"err" in result.output

    def test_extra_env_is_visible(self):
        result = ProcessRunner().run_with_env(
            RunContext.background(), {"PBS_REPOSITORY": "root@pam@localhost:main"}, "sh", "-c", "echo $PBS_REPOSITORY"
        )
        assert result.text.strip() == "root@pam@localhost:main"

    def test_missing_command_raises(self):
        with pytest.raises(CommandNotFoundError) as excinfo:
            ProcessRunner().run(RunContext.background(), "proxsave-definitely-missing")
        assert excinfo.value.command == "proxsave-definitely-missing"

    def test_deadline_kills_process(self):
        ctx = RunContext.background().with_timeout(0.2)
        with pytest.raises(DeadlineExceededError):
            ProcessRunner(poll_interval=0.05).run(ctx, "sleep", "5")

    def test_cancelled_context_never_starts(self):
        ctx = RunContext.background()
        ctx.cancel()
        with pytest.raises(OperationCancelledError):
            ProcessRunner().run(ctx, "true")

    def test_locate(self):
        path, found = ProcessRunner().locate("sh")
        assert found
        assert os.path.basename(path) == "sh"
        assert ProcessRunner().locate("proxsave-definitely-missing") == (None, False)


class TestSummarizeOutput:
    """Tests for summarize_output()."""

    def test_collapses_lines(self):
        assert summarize_output("a\nb\r\nc\n") == "a | b | c"

    def test_empty_output(self):
        assert summarize_output(b"  \n") == "(no stdout/stderr)"

    def test_truncates_long_output(self):
        summary = summarize_output("x" * 50, limit=10)
        assert summary == "x" * 10 + "…"


class TestEnsureSystemPath:
    """Tests for ensure_system_path()."""

    def test_appends_sbin_without_duplicates(self):
        environ = {"PATH": "/usr/bin:/usr/sbin"}
        path = ensure_system_path(environ)

        entries = path.split(os.pathsep)
        assert entries[:2] == ["/usr/bin", "/usr/sbin"]
        for directory in SYSTEM_PATH_DIRS:
            assert entries.count(directory) == 1

    def test_empty_path(self):
        environ = {}
        ensure_system_path(environ)
        assert environ["PATH"].split(os.pathsep) == list(SYSTEM_PATH_DIRS)
