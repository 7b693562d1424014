"""Invocation of the external tools the gate orchestrates.

This module provides the VectorGenerator and BenchmarkRunner classes. Both are
thin wrappers that assemble the configured command line, add the pass-through
environment and hand the command to an executor; they never interpret results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .logger import logger

if TYPE_CHECKING:
    from .executor import CommandResult, Executor
    from .models import GateConfig

SAVE_DIRECTIVE = "--save-baseline"
COMPARE_DIRECTIVE = "--baseline"


class VectorGenerator:
    """Runs the test vector generator in the current work tree."""

    def __init__(self, executor: Executor, config: GateConfig) -> None:
        """Initialise generator wrapper.

        Args:
            executor: Executor bound to the work tree.
            config: Gate configuration with the generator command.
        """
        self.executor = executor
        self.config = config

    def generate(self) -> CommandResult:
        """Generate test vectors.

        Returns:
            The generator's command result.

        Raises:
            CommandError: If the generator exits non-zero.
        """
        argv = self.config.generator_argv
        logger.info("🧬 Generating test vectors: %s", " ".join(argv))
        return self.executor.run(
            argv, env=self.config.subprocess_env(), timeout=self.config.step_timeout
        )


class BenchmarkRunner:
    """Runs the benchmark harness in save or compare mode."""

    def __init__(self, executor: Executor, config: GateConfig) -> None:
        """Initialise runner wrapper.

        Args:
            executor: Executor bound to the work tree.
            config: Gate configuration with the benchmark command.
        """
        self.executor = executor
        self.config = config

    def build_argv(self, directive: str, label: str) -> list[str]:
        """Append a baseline directive after the harness argument separator.

        Returns:
            The full argument vector.
        """
        argv = self.config.bench_argv
        if "--" not in argv:
            argv.append("--")
        argv.append(f"{directive}={label}")
        return argv

    def _run(self, directive: str, label: str, *, check: bool) -> CommandResult:
        argv = self.build_argv(directive, label)
        logger.debug("Benchmark command: %s", " ".join(argv))
        return self.executor.run(
            argv,
            env=self.config.subprocess_env(label),
            timeout=self.config.step_timeout,
            check=check,
        )

    def save(self, label: str) -> CommandResult:
        """Measure the checked-out tree and persist the results under ``label``.

        Returns:
            The runner's command result.

        Raises:
            CommandError: If the runner exits non-zero.
        """
        logger.info("💾 Measuring baseline and saving as '%s'", label)
        return self._run(SAVE_DIRECTIVE, label, check=True)

    def compare(self, label: str) -> CommandResult:
        """Measure the checked-out tree against the snapshot saved under ``label``.

        The result is returned even on a non-zero exit so the caller can build a
        report from the runner's own output.

        Returns:
            The runner's command result.
        """
        logger.info("📊 Measuring candidate against baseline '%s'", label)
        return self._run(COMPARE_DIRECTIVE, label, check=False)
