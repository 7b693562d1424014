"""Benchmark regression gate.

This module provides the RegressionGate class, an explicit state machine over
the baseline-and-compare protocol:

    INIT -> VECTORS_GENERATED -> BASELINE_CAPTURED -> COMPARED
    (any non-terminal state) -> FAILED

Each operation is only accepted in the state its predecessor leaves behind,
so generation always precedes the baseline measurement and the baseline is
always persisted before the candidate is checked out. Any failure moves the
gate to FAILED and no further operation runs.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from .checkout import GitCheckout
from .exceptions import (
    CommandError,
    ComparisonError,
    GateCancelledError,
    GateError,
    GateOrderError,
    GenerationError,
    MeasurementError,
    VectorsMutatedError,
)
from .logger import log_group, logger
from .models import GateOutcome, GateState, RevisionRef, StepResult
from .report import ComparisonReport, RunnerExitPolicy
from .tools import BenchmarkRunner, VectorGenerator
from .vectors import VectorFingerprint, fingerprint_vectors

if TYPE_CHECKING:
    from .executor import CommandResult, Executor
    from .models import GateConfig
    from .report import RegressionPolicy
    from .toolchain import ToolchainVerifier

# Exit status for any failed step
FAILURE_EXIT_CODE = 1


class RegressionGate:
    """Runs one gate execution: generate, save baseline, compare."""

    def __init__(
        self,
        config: GateConfig,
        executor: Executor,
        baseline: RevisionRef,
        candidate: RevisionRef,
        policy: RegressionPolicy | None = None,
        verifier: ToolchainVerifier | None = None,
    ) -> None:
        """Initialise the gate.

        Args:
            config: Gate configuration.
            executor: Executor bound to the work tree.
            baseline: Revision measured first and saved as the snapshot.
            candidate: Revision measured against the snapshot.
            policy: Regression policy; defaults to trusting the runner's exit status.
            verifier: Optional toolchain check run before the first step.
        """
        self.config = config
        self.executor = executor
        self.baseline = baseline
        self.candidate = candidate
        self.policy = policy or RunnerExitPolicy()
        self.verifier = verifier

        self.checkout = GitCheckout(executor, timeout=config.step_timeout)
        self.generator = VectorGenerator(executor, config)
        self.runner = BenchmarkRunner(executor, config)

        self.state = GateState.INIT
        self.steps: list[StepResult] = []
        self.fingerprint: VectorFingerprint | None = None
        self.saved_label: str | None = None
        self.report: ComparisonReport | None = None

    def _require(self, expected: GateState, operation: str) -> None:
        """Reject an operation unless the gate is in the expected state.

        Raises:
            GateOrderError: If the gate is in any other state.
        """
        if self.state is not expected:
            msg = (
                f"{operation}() requires state {expected.value}, "
                f"but the gate is {self.state.value}"
            )
            raise GateOrderError(msg, step=operation)

    def _fail(self, error: GateError) -> GateError:
        self.state = GateState.FAILED
        logger.error("❌ %s", error.message)
        return error

    def _record(self, step: str, result: CommandResult) -> None:
        self.steps.append(
            StepResult(
                step=step,
                command=result.command,
                exit_code=result.exit_code,
                output=result.output,
                duration_seconds=result.duration_seconds,
            )
        )

    def _record_failure(self, step: str, error: CommandError) -> None:
        self.steps.append(
            StepResult(
                step=step,
                command=error.command,
                exit_code=error.exit_code if error.exit_code is not None else FAILURE_EXIT_CODE,
                output=error.output,
            )
        )

    def verify_toolchain(self) -> None:
        """Check the instrumentation runner before any step runs.

        Raises:
            ToolchainError: If the runner is missing or mismatched.
        """
        self._require(GateState.INIT, "verify_toolchain")
        if self.verifier is None:
            return
        with log_group("Verify toolchain"):
            try:
                self.verifier.verify()
            except GateError as e:
                raise self._fail(e) from e

    def generate_vectors(self) -> VectorFingerprint:
        """Check out the baseline tree and generate the test vectors once.

        Returns:
            The fingerprint of the generated vectors.

        Raises:
            GenerationError: If the generator fails or produces nothing.
            MeasurementError: If the baseline cannot be checked out.
        """
        self._require(GateState.INIT, "generate_vectors")
        with log_group("Generate test vectors"):
            try:
                # Pin the candidate before the work tree moves away from it
                commit = self.checkout.resolve(self.candidate.name)
                self.candidate = RevisionRef(commit, self.candidate.role)
                self.checkout.ensure_clean_worktree()
                self.checkout.checkout(self.baseline, clean=True)
            except GateError as e:
                raise self._fail(e) from e

            try:
                result = self.generator.generate()
            except CommandError as e:
                self._record_failure("generate_vectors", e)
                error = GenerationError(
                    f"Test vector generation failed: {e.message}",
                    step="generate_vectors",
                    exit_code=e.exit_code,
                    output=e.output,
                )
                raise self._fail(error) from e
            self._record("generate_vectors", result)

            fingerprint = fingerprint_vectors(self.executor, self.config.vectors_dir)
            if not fingerprint.file_count:
                error = GenerationError(
                    f"Generator produced no test vectors under {self.config.vectors_dir}",
                    step="generate_vectors",
                )
                raise self._fail(error)

        self.fingerprint = fingerprint
        self.state = GateState.VECTORS_GENERATED
        logger.info(
            "✅ Generated %d test vector files (sha256 %s)",
            fingerprint.file_count,
            fingerprint.digest[:16],
        )
        return fingerprint

    def capture_baseline(self, label: str) -> StepResult:
        """Measure the baseline revision and save it under ``label``.

        Returns:
            The save step's result.

        Raises:
            MeasurementError: If the checkout or the runner fails.
        """
        self._require(GateState.VECTORS_GENERATED, "capture_baseline")
        with log_group(f"Save baseline '{label}'"):
            try:
                self.checkout.checkout(self.baseline, clean=False)
                result = self.runner.save(label)
            except CommandError as e:
                self._record_failure("capture_baseline", e)
                error = MeasurementError(
                    f"Baseline measurement failed: {e.message}",
                    step="capture_baseline",
                    exit_code=e.exit_code,
                    output=e.output,
                )
                raise self._fail(error) from e
            except GateError as e:
                raise self._fail(e) from e
            self._record("capture_baseline", result)

        self.saved_label = label
        self.state = GateState.BASELINE_CAPTURED
        logger.info("✅ Baseline '%s' saved from %s", label, self.baseline)
        return self.steps[-1]

    def capture_and_compare(self, label: str) -> ComparisonReport:
        """Measure the candidate revision against the snapshot saved under ``label``.

        Returns:
            The comparison report.

        Raises:
            GateOrderError: If no baseline was saved under ``label`` in this execution.
            VectorsMutatedError: If the test vectors changed since generation.
            ComparisonError: If the runner fails or the regression policy rejects the report.
        """
        self._require(GateState.BASELINE_CAPTURED, "capture_and_compare")
        if label != self.saved_label:
            msg = f"No baseline saved as '{label}' in this execution (saved: '{self.saved_label}')"
            raise GateOrderError(msg, step="capture_and_compare")

        with log_group(f"Compare against '{label}'"):
            try:
                self.checkout.checkout(self.candidate, clean=False)
            except GateError as e:
                raise self._fail(e) from e

            current = fingerprint_vectors(self.executor, self.config.vectors_dir)
            if self.fingerprint is not None and current.digest != self.fingerprint.digest:
                changed = self.fingerprint.changed_files(current)
                error = VectorsMutatedError(
                    f"Test vectors changed since generation: {', '.join(changed[:10])}",
                    step="capture_and_compare",
                )
                raise self._fail(error)

            result = self.runner.compare(label)
            self._record("capture_and_compare", result)

        report = ComparisonReport.from_runner(
            label=label,
            baseline=self.baseline.name,
            candidate=self.candidate.name,
            exit_code=result.exit_code,
            output=result.output,
        )
        report.verdict = self.policy.evaluate(report)
        self.report = report

        if not report.verdict.passed:
            reason = "; ".join(report.verdict.reasons) or "regression policy rejected the report"
            error = ComparisonError(
                f"Comparison against '{label}' failed: {reason}",
                step="capture_and_compare",
                exit_code=result.exit_code,
                output=result.output,
            )
            raise self._fail(error)

        self.state = GateState.COMPARED
        logger.info("✅ Candidate %s compared against '%s'", self.candidate, label)
        return report

    def run(self, label: str) -> GateOutcome:
        """Execute the whole protocol in order, stopping at the first failure.

        Returns:
            The outcome; its exit code is zero only if every step succeeded.
        """
        started = time.monotonic()
        logger.info("🚀 Starting regression gate: %s → %s", self.baseline, self.candidate)
        try:
            self.verify_toolchain()
            self.generate_vectors()
            self.capture_baseline(label)
            self.capture_and_compare(label)
        except GateError as e:
            if self.state is not GateState.FAILED:
                self._fail(e)
            exit_code = FAILURE_EXIT_CODE
            if isinstance(e, GateCancelledError) and e.exit_code:
                exit_code = e.exit_code
            return GateOutcome(
                state=self.state,
                steps=self.steps,
                report=self.report,
                error=e.message,
                exit_code=exit_code,
            )
        except BaseException:
            self.state = GateState.FAILED
            raise

        logger.info("🎉 Regression gate passed in %.1fs", time.monotonic() - started)
        return GateOutcome(state=self.state, steps=self.steps, report=self.report)
