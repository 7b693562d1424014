"""Error taxonomy for the regression gate.

Every failure the gate can report derives from ``GateError`` so the entry point
can log it once and turn it into a process exit status. Subclasses mirror the
classes of failure a gate execution can hit: toolchain, generation,
measurement, comparison, ordering and cancellation.
"""

from __future__ import annotations


class GateError(Exception):
    """Base exception for failures that should abort the gate without a traceback."""

    def __init__(
        self, message: str, step: str = "", exit_code: int | None = None, output: str = ""
    ) -> None:
        """Initialise GateError with message and step context.

        Args:
            message: The user-friendly error message.
            step: Name of the gate step that failed, if any.
            exit_code: Exit status of the failing command, if a command failed.
            output: Captured output of the failing command, kept verbatim.
        """
        super().__init__(message)
        self.message = message
        self.step = step
        self.exit_code = exit_code
        self.output = output


class CommandError(GateError):
    """A subprocess exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, output: str = "") -> None:
        """Initialise CommandError from the failed command line.

        Args:
            command: The command line that was executed.
            exit_code: Its exit status.
            output: Combined stdout/stderr of the command.
        """
        super().__init__(
            f"Command '{command}' failed with exit code {exit_code}.",
            exit_code=exit_code,
            output=output,
        )
        self.command = command


class ToolchainError(GateError):
    """The instrumentation runner is missing or does not match the harness version."""


class GenerationError(GateError):
    """The test vector generator failed."""


class MeasurementError(GateError):
    """A checkout or baseline measurement failed."""


class ComparisonError(GateError):
    """The candidate measurement failed or the runner reported a regression."""


class VectorsMutatedError(ComparisonError):
    """Test vectors changed between the baseline and candidate phases."""


class GateOrderError(GateError):
    """A gate operation was called out of order or after a terminal state."""


class GateCancelledError(GateError):
    """The execution was superseded by a newer one in the same trigger group."""
