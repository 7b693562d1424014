"""Comparison report model, runner output parsing and regression policies.

The runner prints one block per benchmark with a line per metric in the form
``<metric>: <new>|<old> (<change>)``. This module turns that output into
BenchmarkDelta entries and decides pass/fail through a pluggable policy. By
default the decision is the runner's own exit status; a numeric threshold is
only applied when explicitly configured.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .logger import ANSI_ESCAPES

if TYPE_CHECKING:
    from .models import GateConfig

METRIC_LINE = re.compile(
    r"^\s+(?P<metric>[A-Za-z][A-Za-z0-9 +/-]*?):\s+"
    r"(?P<new>\d+|N/A)\|(?P<old>\d+|N/A)"
    r"(?:\s+\((?P<change>[^)]*)\))?"
)
CHANGE_PCT = re.compile(r"^(?P<pct>[+-]?\d+(?:\.\d+)?)%$")
REGRESSION_LINE = re.compile(r"regress", re.IGNORECASE)
NO_CHANGE = "No change"


@dataclass
class BenchmarkDelta:
    """One metric of one benchmark, new value against the saved baseline."""

    benchmark: str
    metric: str
    new: int | None
    old: int | None
    change_pct: float | None

    @property
    def is_new(self) -> bool:
        """Whether the benchmark had no value in the baseline."""
        return self.old is None


def _parse_count(value: str) -> int | None:
    return None if value == "N/A" else int(value)


def _parse_change(change: str | None, new: int | None, old: int | None) -> float | None:
    if change is not None:
        change = change.strip()
        if change == NO_CHANGE:
            return 0.0
        match = CHANGE_PCT.match(change)
        if match:
            return float(match.group("pct"))
    # Older runner versions omit the percentage; derive it when both sides are known
    if new is not None and old:
        return round((new - old) / old * 100, 5)
    if new is not None and old == 0:
        return 0.0 if new == 0 else None
    return None


def parse_runner_output(output: str) -> list[BenchmarkDelta]:
    """Extract per-benchmark metric deltas from the runner's compare output.

    Returns:
        Deltas in the order they appear in the output.
    """
    deltas: list[BenchmarkDelta] = []
    benchmark = ""
    for raw_line in output.splitlines():
        # The runner colours names and numbers when CARGO_TERM_COLOR=always
        line = ANSI_ESCAPES.sub("", raw_line).rstrip()
        if not line.strip():
            continue
        match = METRIC_LINE.match(line)
        if match:
            new = _parse_count(match.group("new"))
            old = _parse_count(match.group("old"))
            deltas.append(
                BenchmarkDelta(
                    benchmark=benchmark or "<unnamed>",
                    metric=match.group("metric").strip(),
                    new=new,
                    old=old,
                    change_pct=_parse_change(match.group("change"), new, old),
                )
            )
        elif not line[0].isspace():
            benchmark = line.strip()
    return deltas


@dataclass
class PolicyVerdict:
    """Pass/fail decision with the reasons behind a failure."""

    passed: bool
    policy: str
    reasons: list[str] = field(default_factory=list)


@dataclass
class ComparisonReport:
    """Result of measuring the candidate against a saved baseline."""

    label: str
    baseline: str
    candidate: str
    exit_code: int
    output: str
    deltas: list[BenchmarkDelta] = field(default_factory=list)
    verdict: PolicyVerdict | None = None

    @classmethod
    def from_runner(
        cls, label: str, baseline: str, candidate: str, exit_code: int, output: str
    ) -> ComparisonReport:
        """Build a report from the runner's compare-mode result.

        Returns:
            The report, not yet evaluated by a policy.
        """
        return cls(
            label=label,
            baseline=baseline,
            candidate=candidate,
            exit_code=exit_code,
            output=output,
            deltas=parse_runner_output(output),
        )

    @property
    def passed(self) -> bool:
        if self.verdict is not None:
            return self.verdict.passed
        return self.exit_code == 0

    @property
    def benchmarks(self) -> list[str]:
        return list(dict.fromkeys(d.benchmark for d in self.deltas))

    def deltas_for(self, metric: str) -> list[BenchmarkDelta]:
        """Return every delta of one metric, matched case-insensitively."""
        return [d for d in self.deltas if d.metric.lower() == metric.lower()]

    def has_zero_delta(self) -> bool:
        """Whether every parsed metric is unchanged from the baseline."""
        return bool(self.deltas) and all(d.change_pct == 0.0 for d in self.deltas)

    def runner_regression_lines(self) -> list[str]:
        """Lines in which the runner itself reports a regression."""
        lines = (ANSI_ESCAPES.sub("", line).strip() for line in self.output.splitlines())
        return [line for line in lines if REGRESSION_LINE.search(line)]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_markdown(self, metric: str = "Instructions") -> str:
        """Render a short Markdown summary suitable for a CI step summary.

        Returns:
            The Markdown text.
        """
        status = "✅ passed" if self.passed else "❌ failed"
        lines = [
            f"### Benchmark comparison against `{self.label}`: {status}",
            "",
            f"Baseline `{self.baseline}` → candidate `{self.candidate}`"
            f" (runner exit code {self.exit_code})",
            "",
        ]
        rows = self.deltas_for(metric)
        if rows:
            lines += [
                f"| Benchmark | {metric} (new) | {metric} (old) | Change |",
                "|---|---:|---:|---:|",
            ]
            for delta in rows:
                change = "n/a" if delta.change_pct is None else f"{delta.change_pct:+.3f}%"
                old = "n/a" if delta.old is None else str(delta.old)
                new = "n/a" if delta.new is None else str(delta.new)
                lines.append(f"| `{delta.benchmark}` | {new} | {old} | {change} |")
        else:
            lines.append("_No benchmark metrics found in runner output._")
        if self.verdict and self.verdict.reasons:
            lines += ["", *[f"- {reason}" for reason in self.verdict.reasons]]
        return "\n".join(lines) + "\n"


class RegressionPolicy(Protocol):
    """Decides whether a comparison report passes the gate."""

    def evaluate(self, report: ComparisonReport) -> PolicyVerdict: ...


class RunnerExitPolicy:
    """Trust the runner: the report passes exactly when the runner exited zero."""

    name = "runner-exit"

    def evaluate(self, report: ComparisonReport) -> PolicyVerdict:
        if report.exit_code == 0:
            return PolicyVerdict(passed=True, policy=self.name)
        reasons = report.runner_regression_lines() or [
            f"Runner exited with status {report.exit_code}"
        ]
        return PolicyVerdict(passed=False, policy=self.name, reasons=reasons)


class ThresholdPolicy:
    """Fail when any benchmark's metric grows by more than a percentage.

    The runner's exit status is still honoured; the threshold only adds failures.
    """

    name = "threshold"

    def __init__(self, max_increase_pct: float, metric: str = "Instructions") -> None:
        """Initialise threshold policy.

        Args:
            max_increase_pct: Largest tolerated increase, in percent.
            metric: Metric the threshold applies to.

        Raises:
            ValueError: If the threshold is negative.
        """
        if max_increase_pct < 0:
            msg = f"Regression threshold must not be negative: {max_increase_pct}"
            raise ValueError(msg)
        self.max_increase_pct = max_increase_pct
        self.metric = metric

    def evaluate(self, report: ComparisonReport) -> PolicyVerdict:
        verdict = RunnerExitPolicy().evaluate(report)
        reasons = list(verdict.reasons)
        for delta in report.deltas_for(self.metric):
            if delta.change_pct is not None and delta.change_pct > self.max_increase_pct:
                reasons.append(
                    f"{delta.benchmark}: {self.metric} {delta.old} → {delta.new} "
                    f"({delta.change_pct:+.3f}% > +{self.max_increase_pct}%)"
                )
        return PolicyVerdict(passed=not reasons, policy=self.name, reasons=reasons)


def policy_from_config(config: GateConfig) -> RegressionPolicy:
    """Choose the regression policy for a configuration.

    Returns:
        A threshold policy when a threshold is configured, else the runner-exit policy.
    """
    if config.regression_threshold_pct is None:
        return RunnerExitPolicy()
    return ThresholdPolicy(config.regression_threshold_pct, config.regression_metric)
