"""Toolchain verification before any measurement runs.

The benchmark harness library and the instrumentation runner binary must be
the same version, otherwise the harness refuses to run. This module checks
that pairing up front so a mismatch fails fast as a toolchain error instead of
surfacing halfway through the baseline phase.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from .exceptions import CommandError, ToolchainError
from .logger import logger

if TYPE_CHECKING:
    from .executor import Executor

VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?)")


class ToolchainVerifier:
    """Checks that the instrumentation runner matches the harness dependency."""

    def __init__(self, executor: Executor, runner_binary: str, harness_crate: str) -> None:
        """Initialise verifier.

        Args:
            executor: Executor bound to the work tree.
            runner_binary: Runner binary name or path.
            harness_crate: Name of the harness package in the cargo metadata.
        """
        self.executor = executor
        self.runner_binary = runner_binary
        self.harness_crate = harness_crate

    def required_version(self) -> str:
        """Read the harness version the work tree depends on from cargo metadata.

        Returns:
            The version string.

        Raises:
            ToolchainError: If cargo metadata fails or does not list the harness.
        """
        try:
            result = self.executor.run(
                ["cargo", "metadata", "--format-version=1"],
                check=True,
                stream=False,
                merge_stderr=False,
            )
        except CommandError as e:
            msg = f"cargo metadata failed: {e.message}"
            raise ToolchainError(
                msg, step="toolchain", exit_code=e.exit_code, output=e.output
            ) from e

        try:
            metadata = json.loads(result.output)
        except json.JSONDecodeError as e:
            msg = "cargo metadata did not return valid JSON"
            raise ToolchainError(msg, step="toolchain", output=result.output[:500]) from e

        versions = sorted(
            {
                package["version"]
                for package in metadata.get("packages", [])
                if package.get("name") == self.harness_crate
            }
        )
        if not versions:
            msg = f"Package '{self.harness_crate}' not found in cargo metadata"
            raise ToolchainError(msg, step="toolchain")
        if len(versions) > 1:
            logger.warning(
                "⚠️ Multiple %s versions in dependency graph: %s", self.harness_crate, versions
            )
        return versions[-1]

    def installed_version(self) -> str:
        """Ask the runner binary for its version.

        Returns:
            The version string reported by the runner.

        Raises:
            ToolchainError: If the runner is missing or its output has no version.
        """
        located = self.executor.run(
            ["sh", "-c", f'command -v "{self.runner_binary}"'], check=False, stream=False
        )
        if located.exit_code != 0 or not located.output.strip():
            msg = (
                f"❌ {self.runner_binary} not found on PATH.\n"
                f"💡 Install the runner matching {self.harness_crate} before running the gate."
            )
            raise ToolchainError(msg, step="toolchain")
        logger.debug("Runner located at %s", located.output.strip())

        try:
            result = self.executor.run([self.runner_binary, "--version"], stream=False)
        except CommandError as e:
            msg = f"{self.runner_binary} --version failed: {e.message}"
            raise ToolchainError(
                msg, step="toolchain", exit_code=e.exit_code, output=e.output
            ) from e

        match = VERSION_PATTERN.search(result.output)
        if not match:
            msg = f"Could not parse a version from: {result.output.strip()!r}"
            raise ToolchainError(msg, step="toolchain", output=result.output)
        return match.group(1)

    def verify(self) -> str:
        """Fail unless the runner version equals the harness version.

        Returns:
            The verified version.

        Raises:
            ToolchainError: On a missing runner or version mismatch.
        """
        logger.info("🔧 Verifying %s toolchain...", self.runner_binary)
        required = self.required_version()
        installed = self.installed_version()
        if installed != required:
            msg = (
                f"❌ {self.runner_binary} {installed} does not match "
                f"{self.harness_crate} {required}.\n"
                f"💡 Install {self.runner_binary} {required} to measure this work tree."
            )
            raise ToolchainError(msg, step="toolchain")
        logger.info("✅ %s %s matches %s", self.runner_binary, installed, self.harness_crate)
        return installed
