#!/usr/bin/env python3
"""Benchmark Regression Gate.

Orchestration tool that guards integration against performance regressions
measured with low-variance instruction counts. One execution runs a strict
sequence: generate deterministic test vectors under the baseline revision,
measure the baseline and save it under a named label, check out the candidate
revision without discarding those artefacts, and measure it against the saved
baseline. The process exit status is zero only if every step succeeded.

The gate only runs for pushes to the trunk branch and merge queue validation;
pull request events are skipped. Executions are grouped by workflow and
originating branch (or run id), and a newer execution cancels an in-flight one
in the same group.

Key Features:
- Explicit state machine enforcing the generate/save/compare ordering
- Test vector fingerprinting across both measurement phases
- Runner toolchain verification before any measurement
- Optional execution on a dedicated benchmarking host over SSH
- JSON/Markdown reports, CI step summary and optional webhook publication
"""

from __future__ import annotations

import argparse
from pathlib import Path

from benchgate.concurrency import ConcurrencyGroup, install_cancel_handler
from benchgate.exceptions import GateCancelledError, GateError
from benchgate.executor import LocalExecutor
from benchgate.gate import FAILURE_EXIT_CODE, RegressionGate
from benchgate.logger import configure_logging, logger
from benchgate.models import GateConfig, GateOutcome, RevisionRef, validate_label
from benchgate.publisher import ReportPublisher
from benchgate.report import policy_from_config
from benchgate.results_manager import ResultsManager
from benchgate.ssh_session import SSHExecutor
from benchgate.toolchain import ToolchainVerifier
from benchgate.trigger import TriggerEvent, should_run

# Exit status for invalid configuration
CONFIG_EXIT_CODE = 2


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments overriding the environment configuration.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Benchmark regression gate: save a baseline, compare a candidate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration is read from a .env file overlaid by the environment, e.g.:
  BASELINE=base                      Baseline label
  CARGO_TERM_COLOR=always            Colour toggle passed to every tool
  IAI_CALLGRIND_RUNNER=...           Instrumentation runner binary
  VECTOR_GENERATOR_CMD=...           Test vector generator command
  BENCH_PACKAGE / BENCH_TARGET / BENCH_PROFILE / BENCH_FEATURES
  REGRESSION_THRESHOLD_PCT=...       Optional threshold policy
  REMOTE_HOST / REMOTE_WORKDIR       Optional benchmarking host
        """,
    )
    parser.add_argument("--env-file", default=".env", help="Path of the .env file")
    parser.add_argument("--workdir", type=Path, help="Work tree to measure")
    parser.add_argument("--baseline-ref", help="Baseline revision (default: base ref or trunk)")
    parser.add_argument("--candidate-ref", help="Candidate revision (default: GITHUB_SHA or HEAD)")
    parser.add_argument("--label", help="Baseline label (default: BASELINE or 'base')")
    parser.add_argument("--results-dir", type=Path, help="Directory for report artefacts")
    parser.add_argument(
        "--skip-toolchain-check",
        action="store_true",
        help="Do not verify the instrumentation runner version",
    )
    parser.add_argument(
        "--ignore-trigger",
        action="store_true",
        help="Run even for events the triggering policy skips",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> GateConfig:
    """Build the configuration and apply command line overrides.

    Returns:
        The effective configuration.

    Raises:
        ValueError: If a setting or the label override is invalid.
    """
    config = GateConfig.from_dotenv(args.env_file)
    if args.workdir:
        config.workdir = args.workdir
    if args.results_dir:
        config.results_dir = args.results_dir
    if args.label is not None:
        validate_label(args.label)
    return config


def report_outcome(
    outcome: GateOutcome, config: GateConfig, results: ResultsManager, group: str
) -> None:
    """Print, persist and publish the result of a gate execution."""
    report = outcome.report
    if report:
        results.print_summary(report, config.regression_metric)
        results.save_report(report, config.regression_metric)
        results.append_step_summary(report, config.regression_metric)
        if config.report_webhook_url:
            ReportPublisher(config.report_webhook_url).publish(
                report, group, config.regression_metric
            )
    results.save_outcome(outcome)


def run_gate(args: argparse.Namespace, config: GateConfig) -> int:
    """Apply the triggering policy, claim the trigger group and run the gate.

    Returns:
        The process exit status.
    """
    event = TriggerEvent.from_github_env()
    run, reason = should_run(event, config.trunk_branch)
    if not run and not args.ignore_trigger:
        logger.info("⏭️ Skipping regression gate: %s", reason)
        return 0
    logger.info("🎯 Regression gate triggered by %s", reason)

    group = event.concurrency_group
    label = args.label or config.label_for_group(group)
    baseline = RevisionRef(args.baseline_ref or event.baseline_ref(config.trunk_branch), "baseline")
    candidate = RevisionRef(args.candidate_ref or event.candidate_ref(), "candidate")

    logger.info("🏷️ Baseline label: %s", label)
    logger.info("👥 Trigger group: %s", group)

    if config.remote_host:
        executor = SSHExecutor(
            config.remote_host, config.remote_port, config.remote_user, config.effective_workdir
        )
    else:
        executor = LocalExecutor(config.effective_workdir)

    verifier = None
    if not args.skip_toolchain_check:
        verifier = ToolchainVerifier(executor, config.runner_binary, config.harness_crate)

    results = ResultsManager(config.results_dir)
    install_cancel_handler()
    claim = ConcurrencyGroup(config.state_dir, group, config.cancel_timeout)
    try:
        with claim:
            gate = RegressionGate(
                config,
                executor,
                baseline,
                candidate,
                policy=policy_from_config(config),
                verifier=verifier,
            )
            outcome = gate.run(label)
        report_outcome(outcome, config, results, group)
    except GateCancelledError as e:
        logger.warning("⏹️ %s", e.message)
        return e.exit_code or FAILURE_EXIT_CODE
    except GateError as e:
        logger.error("Regression gate failed: %s", e.message)
        return FAILURE_EXIT_CODE
    finally:
        executor.close()
        results.close()

    if not outcome.passed:
        logger.error("💥 Regression gate failed: %s", outcome.error)
    return outcome.exit_code


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the regression gate.

    Raises:
        SystemExit: With the gate's exit status.
    """
    args = parse_arguments(argv)
    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        raise SystemExit(CONFIG_EXIT_CODE) from e

    configure_logging(config.term_color, verbose=args.verbose)

    try:
        exit_code = run_gate(args, config)
    except KeyboardInterrupt as e:
        logger.info("⏹️ Regression gate interrupted by user")
        raise SystemExit(FAILURE_EXIT_CODE) from e
    except Exception as e:
        logger.exception("Unexpected error in regression gate")
        raise SystemExit(FAILURE_EXIT_CODE) from e

    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
