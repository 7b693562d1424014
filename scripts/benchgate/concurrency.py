"""Cancel-on-supersede exclusivity per trigger group.

At most one gate execution may be in flight per trigger group. Each execution
records a claim file for its group; a new execution for the same group
terminates the process named in the existing claim and waits for it to exit
before writing its own claim and starting its first step.
"""

from __future__ import annotations

import fcntl
import json
import os
import signal
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import GateCancelledError
from .logger import logger
from .models import sanitise_label

if TYPE_CHECKING:
    from types import FrameType, TracebackType

POLL_INTERVAL = 0.2


@dataclass
class GroupClaim:
    """The execution currently holding a trigger group."""

    group: str
    pid: int
    execution_id: str
    started_at: str


def process_running(pid: int) -> bool:
    """Whether a process exists and has not exited.

    Zombies (exited but not yet reaped) count as not running.

    Returns:
        True if the process is alive.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    stat = Path(f"/proc/{pid}/stat")
    try:
        # Field 3 is the state; the command name in field 2 may contain spaces
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


class ConcurrencyGroup:
    """Claims a trigger group, cancelling any execution already holding it."""

    def __init__(
        self, state_dir: Path, group: str, cancel_timeout: float = 30.0, pid: int | None = None
    ) -> None:
        """Initialise the group claim.

        Args:
            state_dir: Directory shared by all executions on this machine.
            group: Trigger group id.
            cancel_timeout: Seconds to wait for a superseded execution to exit
                before killing it.
            pid: Process id recorded in the claim (defaults to this process).
        """
        self.state_dir = state_dir
        self.group = group
        self.cancel_timeout = cancel_timeout
        self.pid = pid if pid is not None else os.getpid()
        self.execution_id = uuid.uuid4().hex
        name = sanitise_label(group)
        self.claim_path = state_dir / f"{name}.json"
        self.lock_path = state_dir / f"{name}.lock"

    def read_claim(self) -> GroupClaim | None:
        """Return the current claim for the group, if any and readable."""
        try:
            data = json.loads(self.claim_path.read_text(encoding="utf-8"))
            return GroupClaim(**data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            logger.warning("⚠️ Ignoring unreadable claim %s: %s", self.claim_path, e)
            return None

    def _cancel(self, claim: GroupClaim) -> None:
        """Terminate a superseded execution and wait for it to exit."""
        logger.warning(
            "⏹️ Cancelling in-flight execution %s (pid %d) for group '%s'",
            claim.execution_id,
            claim.pid,
            self.group,
        )
        try:
            os.kill(claim.pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        deadline = time.monotonic() + self.cancel_timeout
        while time.monotonic() < deadline:
            if not process_running(claim.pid):
                logger.info("✅ Superseded execution %d exited", claim.pid)
                return
            time.sleep(POLL_INTERVAL)

        logger.warning("Superseded execution %d did not exit in time, killing it", claim.pid)
        try:
            os.kill(claim.pid, signal.SIGKILL)
        except ProcessLookupError:
            return

    def acquire(self) -> GroupClaim | None:
        """Claim the group, cancelling the current holder first.

        Returns:
            The claim that was superseded, or None if the group was free.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a+") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                previous = self.read_claim()
                superseded = None
                if previous and previous.pid != self.pid and process_running(previous.pid):
                    self._cancel(previous)
                    superseded = previous

                claim = GroupClaim(
                    group=self.group,
                    pid=self.pid,
                    execution_id=self.execution_id,
                    started_at=datetime.now(tz=UTC).isoformat(),
                )
                tmp_path = self.claim_path.with_suffix(".tmp")
                tmp_path.write_text(json.dumps(asdict(claim)), encoding="utf-8")
                tmp_path.replace(self.claim_path)
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

        logger.debug("Claimed group '%s' as execution %s", self.group, self.execution_id)
        return superseded

    def release(self) -> None:
        """Drop the claim if it is still ours.

        Lock-free: the superseding execution holds the group lock while it
        waits for this process to exit.
        """
        claim = self.read_claim()
        if claim and claim.execution_id == self.execution_id:
            self.claim_path.unlink(missing_ok=True)
            logger.debug("Released group '%s'", self.group)

    def __enter__(self) -> ConcurrencyGroup:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def install_cancel_handler() -> None:
    """Turn SIGTERM from a superseding execution into a GateCancelledError."""

    def handle_sigterm(signum: int, _frame: FrameType | None) -> None:
        msg = "Superseded by a newer execution in the same trigger group"
        raise GateCancelledError(msg, step="cancelled", exit_code=128 + signum)

    signal.signal(signal.SIGTERM, handle_sigterm)
