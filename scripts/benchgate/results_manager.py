"""Results management for gate executions.

This module provides the ResultsManager class for writing the comparison
report and step log to the results directory, appending a summary to the CI
step summary, and printing the delta table to the console.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .logger import add_file_handler, logger

if TYPE_CHECKING:
    from .models import GateOutcome
    from .report import ComparisonReport


class ResultsManager:
    """Persists gate artefacts and prints the comparison summary.

    Every method tolerates a missing results directory so the gate works
    without one; the console summary is always printed.
    """

    def __init__(self, base_dir: Path | None, step_summary: str | None = None) -> None:
        """Initialise results manager.

        Args:
            base_dir: Directory for artefacts, or None to skip writing files.
            step_summary: Path of the CI step summary file (``GITHUB_STEP_SUMMARY``).
        """
        self.base_dir = base_dir
        self.step_summary = (
            step_summary if step_summary is not None else os.getenv("GITHUB_STEP_SUMMARY")
        )
        self.file_handler: logging.FileHandler | None = None
        if self.base_dir:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            self.file_handler = add_file_handler(self.base_dir / "gate.log")

    def close(self) -> None:
        """Detach and close the gate log file handler."""
        if self.file_handler:
            logger.removeHandler(self.file_handler)
            self.file_handler.close()
            self.file_handler = None

    def save_report(self, report: ComparisonReport, metric: str = "Instructions") -> None:
        """Write the report as JSON, Markdown and a CSV of all deltas."""
        if not self.base_dir:
            return

        (self.base_dir / "comparison_report.json").write_text(
            json.dumps(report.to_dict(), indent=2), encoding="utf-8"
        )
        (self.base_dir / "comparison_report.md").write_text(
            report.to_markdown(metric), encoding="utf-8"
        )
        with Path(self.base_dir / "deltas.csv").open("w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(
                f, fieldnames=["benchmark", "metric", "new", "old", "change_pct"]
            )
            writer.writeheader()
            for delta in report.deltas:
                writer.writerow(asdict(delta))
        logger.info("📁 Comparison report written to %s", self.base_dir)

    def save_outcome(self, outcome: GateOutcome) -> None:
        """Write the per-step record of the execution."""
        if not self.base_dir:
            return

        record = {
            "finished_at": datetime.now(tz=UTC).isoformat(),
            "state": outcome.state.value,
            "exit_code": outcome.exit_code,
            "error": outcome.error,
            "steps": [
                {
                    "step": step.step,
                    "command": step.command,
                    "exit_code": step.exit_code,
                    "duration_seconds": round(step.duration_seconds, 3),
                }
                for step in outcome.steps
            ],
        }
        (self.base_dir / "outcome.json").write_text(json.dumps(record, indent=2), encoding="utf-8")

    def append_step_summary(self, report: ComparisonReport, metric: str = "Instructions") -> None:
        """Append the Markdown report to the CI step summary, when one is available."""
        if not self.step_summary:
            return
        try:
            with Path(self.step_summary).open("a", encoding="utf-8") as f:
                f.write(report.to_markdown(metric))
        except OSError as e:
            logger.warning("⚠️ Could not write step summary: %s", e)

    def print_summary(self, report: ComparisonReport, metric: str = "Instructions") -> None:
        """Log the per-benchmark delta table for one metric."""
        rows = report.deltas_for(metric)
        logger.info("=== COMPARISON AGAINST '%s' ===", report.label)
        logger.info("Baseline: %s | Candidate: %s", report.baseline, report.candidate)

        if not rows:
            logger.warning("No %s metrics found in runner output", metric)
        else:
            width = max(len(d.benchmark) for d in rows)
            logger.info("%-*s | %12s | %12s | %10s", width, "Benchmark", "New", "Old", "Change")
            for delta in rows:
                change = "n/a" if delta.change_pct is None else f"{delta.change_pct:+.3f}%"
                logger.info(
                    "%-*s | %12s | %12s | %10s",
                    width,
                    delta.benchmark,
                    "n/a" if delta.new is None else delta.new,
                    "n/a" if delta.old is None else delta.old,
                    change,
                )

        if report.verdict:
            for reason in report.verdict.reasons:
                logger.error("  ❌ %s", reason)
            if report.verdict.passed:
                logger.info("✅ Comparison passed (%s policy)", report.verdict.policy)
            else:
                logger.error("❌ Comparison failed (%s policy)", report.verdict.policy)
