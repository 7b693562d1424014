"""Tests for the SSH executor's command building and output handling."""

from __future__ import annotations

import paramiko
import pytest

from benchgate import ssh_session
from benchgate.exceptions import CommandError, GateCancelledError, GateError
from benchgate.ssh_session import PGID_MARKER, SSHExecutor


@pytest.fixture
def session() -> SSHExecutor:
    return SSHExecutor("bench-1", 22, "ci", "/srv/reth tree")


class TestBuildCommand:

    def test_runs_in_quoted_workdir(self, session) -> None:
        command = session.build_command(["git", "rev-parse", "HEAD"])

        assert command == "cd '/srv/reth tree' && git rev-parse HEAD"

    def test_environment_prefix(self, session) -> None:
        command = session.build_command(
            ["cargo", "bench", "--", "--baseline=base"],
            {"BASELINE": "base", "CARGO_TERM_COLOR": "always"},
        )

        assert command == (
            "cd '/srv/reth tree' && env BASELINE=base CARGO_TERM_COLOR=always "
            "cargo bench -- --baseline=base"
        )

    def test_shell_script_is_quoted(self, session) -> None:
        command = session.build_command(["sh", "-c", "command -v \"iai-callgrind-runner\""])

        assert command.endswith("sh -c 'command -v \"iai-callgrind-runner\"'")


class TestOutputHandling:

    def test_chunk_split_on_newlines_and_carriage_returns(self, session) -> None:
        lines: list[str] = []

        rest = session._process_chunk_data("Compiling\r  50%\r100%\nInstr", "", lines, False)

        assert lines == ["Compiling\n", "  50%\n", "100%\n"]
        assert rest == "Instr"

    def test_blank_lines_dropped(self, session) -> None:
        lines: list[str] = []

        session._process_chunk_data("a\n\n\nb\n", "", lines, False)

        assert lines == ["a\n", "b\n"]


def test_connection_failure_raises_gate_error(session, monkeypatch) -> None:
    def refuse(self, **kwargs) -> None:
        raise paramiko.SSHException("Connection refused")

    monkeypatch.setattr(paramiko.SSHClient, "connect", refuse)

    with pytest.raises(GateError, match="SSH connection failed") as excinfo:
        session.connect(timeout=1)
    assert excinfo.value.step == "connect"


def test_authentication_failure(session, monkeypatch) -> None:
    def deny(self, **kwargs) -> None:
        raise paramiko.AuthenticationException("denied")

    monkeypatch.setattr(paramiko.SSHClient, "connect", deny)

    with pytest.raises(GateError, match="Authentication failed"):
        session.connect(timeout=1)


def test_close_without_connection(session) -> None:
    session.close()

    assert session.client is None


class FakeChannel:
    """Paramiko channel replaying canned stdout and stderr chunks."""

    def __init__(
        self,
        stdout: list[bytes] | None = None,
        stderr: list[bytes] | None = None,
        exit_code: int = 0,
        interrupt: BaseException | None = None,
    ) -> None:
        self.stdout = list(stdout or [])
        self.stderr = list(stderr or [])
        self.exit_code = exit_code
        self.interrupt = interrupt
        self.combine_stderr: bool | None = None
        self.commands: list[str] = []
        self.closed = False

    def set_combine_stderr(self, combine: bool) -> None:
        self.combine_stderr = combine

    def exec_command(self, command: str) -> None:
        self.commands.append(command)

    def exit_status_ready(self) -> bool:
        return not self.stdout and not self.stderr

    def recv_ready(self) -> bool:
        if not self.stdout and self.interrupt:
            raise self.interrupt
        return bool(self.stdout)

    def recv(self, nbytes: int) -> bytes:
        return self.stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self.stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self.stderr.pop(0)

    def recv_exit_status(self) -> int:
        return self.exit_code

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, *channels: FakeChannel) -> None:
        self.channels = list(channels)
        self.opened: list[FakeChannel] = []

    def open_session(self) -> FakeChannel:
        channel = self.channels.pop(0)
        self.opened.append(channel)
        return channel


@pytest.fixture
def connected(session, monkeypatch):
    """Attach a fake transport to the session and return a setter for its channels."""
    monkeypatch.setattr(ssh_session.select, "select", lambda r, w, x, timeout: (r, [], []))

    def attach(*channels: FakeChannel) -> FakeTransport:
        transport = FakeTransport(*channels)
        monkeypatch.setattr(session, "_ensure_connected", lambda: transport)
        return transport

    return attach


class TestRemoteRun:

    def test_process_group_line_is_not_captured(self, session, connected) -> None:
        channel = FakeChannel([f"{PGID_MARKER} 4242\nHEAD is now at bbbbbbb\n".encode()])
        connected(channel)

        result = session.run(["git", "checkout", "HEAD"])

        assert result.output == "HEAD is now at bbbbbbb\n"
        assert session.remote_pgid == 4242
        assert channel.commands[0].startswith(f"echo {PGID_MARKER} $$; cd '/srv/reth tree' && ")
        assert channel.closed

    def test_separate_stderr_keeps_stdout_clean(self, session, connected) -> None:
        channel = FakeChannel(
            [f"{PGID_MARKER} 7\n".encode(), b'{"packages": []}'],
            [b"    Updating crates.io index\n"],
        )
        connected(channel)

        result = session.run(["cargo", "metadata"], merge_stderr=False, stream=False)

        assert channel.combine_stderr is False
        assert result.output == '{"packages": []}'
        assert result.error_output == "    Updating crates.io index\n"

    def test_failure_carries_stderr(self, session, connected) -> None:
        connected(FakeChannel([f"{PGID_MARKER} 7\n".encode()], [b"error: boom\n"], exit_code=101))

        with pytest.raises(CommandError) as excinfo:
            session.run(["cargo", "bench"], merge_stderr=False)

        assert excinfo.value.exit_code == 101
        assert "error: boom" in excinfo.value.output

    def test_cancellation_stops_remote_process_group(self, session, connected) -> None:
        cancelled = GateCancelledError("superseded", step="cancelled", exit_code=143)
        channel = FakeChannel([f"{PGID_MARKER} 4242\n".encode()], interrupt=cancelled)
        killer = FakeChannel()
        transport = connected(channel, killer)

        with pytest.raises(GateCancelledError):
            session.run(["cargo", "bench", "--", "--baseline=base"])

        assert transport.opened == [channel, killer]
        assert killer.commands == ["kill -TERM -- -4242"]
        assert killer.closed
        assert channel.closed

    def test_cancellation_before_process_group_known(self, session, connected) -> None:
        channel = FakeChannel(interrupt=KeyboardInterrupt())
        transport = connected(channel)

        with pytest.raises(KeyboardInterrupt):
            session.run(["cargo", "bench"])

        assert transport.opened == [channel]
        assert channel.closed
