"""SSH command execution on a dedicated benchmarking host.

Instruction-count measurements are most stable on a quiet machine, so the gate
can run every step on an existing remote host instead of the CI runner. This
module provides an executor with the same interface as the local one, built on
Paramiko, with real-time output streaming.
"""

from __future__ import annotations

import select
import shlex
import time
from typing import TYPE_CHECKING

import paramiko

from .exceptions import CommandError, GateError
from .executor import TIMEOUT_EXIT_CODE, CommandResult
from .logger import logger

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

# First line the remote shell prints, followed by its process group id
PGID_MARKER = "__bench_gate_pgid__"


class SSHExecutor:
    """Runs gate commands in a work tree on a remote host over SSH."""

    def __init__(self, ssh_host: str, ssh_port: int, ssh_user: str, workdir: str) -> None:
        """Initialise SSH session parameters."""
        self.ssh_host = ssh_host
        self.ssh_port = ssh_port
        self.ssh_user = ssh_user
        self.workdir = workdir
        self.client: paramiko.SSHClient | None = None
        self.remote_pgid: int | None = None

    def connect(self, timeout: int = 30) -> None:
        """Establish SSH connection using Paramiko.

        Raises:
            GateError: If the connection fails.
        """
        if self.client:
            transport = self.client.get_transport()
            if transport and transport.is_active():
                logger.debug("SSH session already connected.")
                return

        logger.info(
            "🔗 Connecting to benchmark host %s@%s:%s",
            self.ssh_user,
            self.ssh_host,
            self.ssh_port,
        )
        try:
            self.client = paramiko.SSHClient()
            self.client.load_system_host_keys()
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            self.client.connect(
                hostname=self.ssh_host,
                port=self.ssh_port,
                username=self.ssh_user,
                timeout=timeout,
                auth_timeout=timeout,
                banner_timeout=timeout,
            )
            # Enable keepalive to detect broken connections during long measurements
            transport = self.client.get_transport()
            if transport:
                transport.set_keepalive(30)
        except paramiko.AuthenticationException as e:
            msg = f"Authentication failed: {e}"
            raise GateError(msg, step="connect") from e
        except (paramiko.SSHException, OSError) as e:
            msg = f"SSH connection failed: {e}"
            raise GateError(msg, step="connect") from e

    def _ensure_connected(self) -> paramiko.Transport:
        """Ensure SSH client is connected and reconnect if necessary.

        Returns:
            The active transport.

        Raises:
            GateError: If no active transport can be obtained.
        """
        if not self.client:
            self.connect()
        transport = self.client.get_transport() if self.client else None
        if not transport or not transport.is_active():
            logger.warning("SSH connection lost, reconnecting...")
            self.close()
            self.connect()
            transport = self.client.get_transport() if self.client else None
        if not transport:
            msg = "SSH session is not properly initialised after connection attempt."
            raise GateError(msg, step="connect")
        return transport

    def build_command(self, argv: Sequence[str], env: Mapping[str, str] | None = None) -> str:
        """Render a command line that runs in the remote work tree with the given environment.

        Returns:
            A shell command string.
        """
        exports = [f"{key}={shlex.quote(value)}" for key, value in (env or {}).items()]
        prefix = f"env {' '.join(exports)} " if exports else ""
        return f"cd {shlex.quote(self.workdir)} && {prefix}{shlex.join(argv)}"

    def _process_chunk_data(
        self, chunk: str, line_buffer: str, lines: list[str], stream: bool
    ) -> str:
        """Split a chunk into lines, treating carriage returns as line ends.

        Returns:
            The unfinished trailing line.
        """
        for char in chunk:
            if char in "\r\n":
                if line_buffer.startswith(PGID_MARKER):
                    self.remote_pgid = int(line_buffer.split()[1])
                elif line_buffer.strip():
                    lines.append(line_buffer + "\n")
                    if stream:
                        logger.info(line_buffer.rstrip())
                line_buffer = ""
            else:
                line_buffer += char
        return line_buffer

    def _terminate_remote(self, transport: paramiko.Transport) -> None:
        """Signal the process group of the command still running on the host."""
        if self.remote_pgid is None:
            logger.warning("⚠️ Remote process group unknown, command may still be running")
            return
        logger.warning("🛑 Stopping remote process group %d", self.remote_pgid)
        try:
            killer = transport.open_session()
            killer.exec_command(f"kill -TERM -- -{self.remote_pgid}")
            deadline = time.monotonic() + 10
            while not killer.exit_status_ready() and time.monotonic() < deadline:
                time.sleep(0.1)
            killer.close()
        except (paramiko.SSHException, OSError) as e:
            logger.warning("⚠️ Could not stop remote command: %s", e)

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
        """Execute a command remotely with real-time output streaming.

        The remote shell reports its process id first. sshd starts it as a session
        leader, so that id names the process group holding every tool it spawns, and
        a timeout or cancellation stops the whole group.

        Returns:
            The command result; stderr is kept apart in ``error_output`` unless
            ``merge_stderr`` is set.

        Raises:
            CommandError: If ``check`` is set and the command fails.
        """
        argv = list(argv)
        command = self.build_command(argv, env)
        transport = self._ensure_connected()
        logger.debug("Executing remote command: %s", command)

        start_time = time.monotonic()
        deadline = start_time + timeout if timeout is not None else None
        self.remote_pgid = None
        channel = transport.open_session()
        channel.set_combine_stderr(merge_stderr)
        channel.exec_command(f"echo {PGID_MARKER} $$; {command}")

        lines: list[str] = []
        error_lines: list[str] = []
        line_buffer = ""
        error_buffer = ""
        timed_out = False
        try:
            while (
                not channel.exit_status_ready()
                or channel.recv_ready()
                or channel.recv_stderr_ready()
            ):
                if deadline is not None and time.monotonic() > deadline:
                    timed_out = True
                    self._terminate_remote(transport)
                    break
                select.select([channel], [], [], 0.1)
                if channel.recv_ready():
                    chunk = channel.recv(4096).decode("utf-8", errors="replace")
                    line_buffer = self._process_chunk_data(chunk, line_buffer, lines, stream)
                if channel.recv_stderr_ready():
                    chunk = channel.recv_stderr(4096).decode("utf-8", errors="replace")
                    error_buffer = self._process_chunk_data(
                        chunk, error_buffer, error_lines, stream
                    )
            for rest, captured in ((line_buffer, lines), (error_buffer, error_lines)):
                if rest.strip():
                    captured.append(rest)
                    if stream:
                        logger.info(rest.rstrip())
            exit_code = TIMEOUT_EXIT_CODE if timed_out else channel.recv_exit_status()
        except BaseException:
            # Cancellation or interrupt: closing the channel alone leaves the tools running
            self._terminate_remote(transport)
            raise
        finally:
            channel.close()

        if timed_out:
            logger.error("⏱️ Remote command timed out after %s seconds: %s", timeout, command)

        result = CommandResult(
            argv,
            exit_code,
            "".join(lines),
            time.monotonic() - start_time,
            error_output="".join(error_lines),
        )
        logger.debug("SSH Response [exit=%d]: %r", exit_code, result.output[-500:])

        if check and exit_code != 0:
            raise CommandError(shlex.join(argv), exit_code, result.error_output + result.output)
        return result

    def close(self) -> None:
        """Close the SSH session."""
        if self.client:
            self.client.close()
            self.client = None
