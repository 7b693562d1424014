"""Local command execution for gate steps.

This module provides the LocalExecutor class that runs external tools as
subprocesses, streaming their output to the gate log line by line while
capturing it for the comparison report.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Protocol

from .exceptions import CommandError
from .logger import logger

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

# Exit status reported for a command killed by the step timeout
TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""

    argv: list[str]
    exit_code: int
    output: str
    duration_seconds: float
    error_output: str = ""

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


def _collect_lines(pipe: IO[str], lines: list[str], stream: bool) -> None:
    """Drain a separate stderr pipe so the child never blocks on a full buffer."""
    for line in pipe:
        lines.append(line)
        if stream and line.strip():
            logger.info(line.rstrip())


class Executor(Protocol):
    """Anything able to run a command in the gate's work tree."""

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        stream: bool = True,
        merge_stderr: bool = True,
    ) -> CommandResult: ...

    def close(self) -> None: ...


class LocalExecutor:
    """Runs commands as local subprocesses inside a fixed working directory."""

    def __init__(self, workdir: str) -> None:
        """Initialise executor for a work tree.

        Args:
            workdir: Directory every command runs in.
        """
        self.workdir = workdir

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        stream: bool = True,
        merge_stderr: bool = True,
    ) -> CommandResult:
        """Execute a command, streaming its output to the log.

        Args:
            argv: Command and arguments.
            env: Extra environment variables layered over the current environment.
            timeout: Seconds after which the command is killed, if set.
            check: Raise on a non-zero exit status.
            stream: Log each output line at INFO as it arrives.
            merge_stderr: Capture stderr into ``output``; when False it is kept in
                ``error_output`` so machine-readable stdout stays parseable.

        Returns:
            The command result with the full captured output.

        Raises:
            CommandError: If ``check`` is set and the command fails.
        """
        argv = list(argv)
        command = shlex.join(argv)
        logger.debug("Executing command in %s: %s", self.workdir, command)

        start_time = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=self.workdir,
                env={**os.environ, **(env or {})},
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            # Missing binaries surface as a failed command rather than a crash
            logger.debug("Could not start %s: %s", argv[0], e)
            result = CommandResult(argv, 127, str(e), time.monotonic() - start_time)
            if check:
                raise CommandError(command, result.exit_code, result.output) from e
            return result

        timed_out = threading.Event()
        timer = None
        reader = None
        lines: list[str] = []
        error_lines: list[str] = []

        def kill_on_timeout() -> None:
            timed_out.set()
            process.kill()

        try:
            if timeout is not None:
                timer = threading.Timer(timeout, kill_on_timeout)
                timer.start()
            if process.stderr is not None:
                reader = threading.Thread(
                    target=_collect_lines, args=(process.stderr, error_lines, stream), daemon=True
                )
                reader.start()

            assert process.stdout is not None
            for line in process.stdout:
                lines.append(line)
                if stream and line.strip():
                    logger.info(line.rstrip())
            exit_code = process.wait()
            if reader:
                reader.join()
        except BaseException:
            # Cancellation or interrupt: never leave the tool running behind us
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            raise
        finally:
            if timer:
                timer.cancel()

        if timed_out.is_set():
            logger.error("⏱️ Command timed out after %s seconds: %s", timeout, command)
            exit_code = TIMEOUT_EXIT_CODE

        result = CommandResult(
            argv,
            exit_code,
            "".join(lines),
            time.monotonic() - start_time,
            error_output="".join(error_lines),
        )
        logger.debug("Command finished [exit=%d] in %.1fs", exit_code, result.duration_seconds)

        if check and exit_code != 0:
            raise CommandError(command, exit_code, result.error_output + result.output)
        return result

    def close(self) -> None:
        """Nothing to release for local execution."""
