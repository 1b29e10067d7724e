"""External command execution.

Every external command the engine runs goes through a ``ProcessRunner``.
Tests replace it with a fake that returns canned output.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from proxsave.context import RunContext
from proxsave.exceptions import CommandNotFoundError
from proxsave.logging import LoggerFactory

log = LoggerFactory.for_process()

SYSTEM_PATH_DIRS = ("/usr/local/sbin", "/usr/sbin", "/sbin")
OUTPUT_SUMMARY_LIMIT = 2048


@dataclass(frozen=True)
class CommandResult:
    """Combined stdout+stderr and exit status of one command."""

    output: bytes
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


def summarize_output(text: str | bytes, limit: int = OUTPUT_SUMMARY_LIMIT) -> str:
    """Collapse command output into a single bounded log line."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    if not text:
        return "(no stdout/stderr)"
    text = text.replace("\r\n", "\n").replace("\n", " | ")
    if len(text) > limit:
        text = text[:limit] + "…"
    return text


def ensure_system_path(environ: dict[str, str] | None = None) -> str:
    """Append the sbin directories to PATH, keeping order and dropping duplicates."""
    environ = os.environ if environ is None else environ
    current = [p for p in environ.get("PATH", "").split(os.pathsep) if p]
    merged: list[str] = []
    for entry in [*current, *SYSTEM_PATH_DIRS]:
        if entry not in merged:
            merged.append(entry)
    environ["PATH"] = os.pathsep.join(merged)
    return environ["PATH"]


class ProcessRunner:
    """Run external commands with cancellation and deadlines.

    Output is buffered and only returned once the process has exited, so a
    caller never sees partial output.
    """

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval

    def locate(self, name: str) -> tuple[str | None, bool]:
        path = shutil.which(name)
        return path, path is not None

    def run(self, ctx: RunContext, name: str, *args: str) -> CommandResult:
        return self.run_with_env(ctx, None, name, *args)

    def run_with_env(
        self,
        ctx: RunContext,
        extra_env: Mapping[str, str] | None,
        name: str,
        *args: str,
    ) -> CommandResult:
        ctx.check()
        command: Sequence[str] = [name, *args]
        env = None
        if extra_env:
            env = dict(os.environ)
            env.update(extra_env)

        log.trace(f"Running command: {' '.join(command)}")
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except FileNotFoundError as error:
            raise CommandNotFoundError(name) from error

        while True:
            timeout = self.poll_interval
            remaining = ctx.remaining()
            if remaining is not None:
                timeout = min(timeout, max(remaining, 0.001))
            try:
                output, _ = process.communicate(timeout=timeout)
                break
            except subprocess.TimeoutExpired:
                err = ctx.error()
                if err is not None:
                    process.kill()
                    process.communicate()
                    log.debug(f"Killed `{' '.join(command)}`: {err}")
                    raise err

        return CommandResult(output=output or b"", exit_code=process.returncode)
