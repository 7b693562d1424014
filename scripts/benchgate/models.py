"""Data models and configuration classes for the benchmark regression gate.

This module contains the dataclasses and enums shared across the gate,
providing a single source of truth for configuration, revision references,
gate states and step results.
"""

from __future__ import annotations

import os
import re
import shlex
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import dotenv_values

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .report import ComparisonReport

DEFAULT_LABEL = "base"
DEFAULT_GENERATOR_CMD = "cargo run --bin reth --features dev -- test-vectors tables"
COLOUR_MODES = ("always", "never", "auto")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


class GateState(Enum):
    """Lifecycle states of a single gate execution."""

    INIT = "init"
    VECTORS_GENERATED = "vectors_generated"
    BASELINE_CAPTURED = "baseline_captured"
    COMPARED = "compared"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further operation may run from this state."""
        return self in {GateState.COMPARED, GateState.FAILED}


@dataclass(frozen=True)
class RevisionRef:
    """A point in source history the gate checks out and measures."""

    name: str
    role: str

    def __str__(self) -> str:
        return f"{self.role} ({self.name})"


@dataclass
class StepResult:
    """Outcome of one gate step, kept for the report and the log."""

    step: str
    command: str
    exit_code: int
    output: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class GateOutcome:
    """Final result of a gate execution.

    The exit code is the logical AND of every step: zero only when all steps
    succeeded and the regression policy accepted the comparison report.
    """

    state: GateState
    steps: list[StepResult] = field(default_factory=list)
    report: ComparisonReport | None = None
    error: str = ""
    exit_code: int = 0

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


def sanitise_label(name: str) -> str:
    """Make a string safe for use as a runner baseline name.

    Returns:
        The name with every character outside ``[A-Za-z0-9_]`` replaced by ``_``.
    """
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


def validate_label(label: str) -> str:
    """Check a baseline label is usable as a runner baseline name as given.

    Returns:
        The label unchanged.

    Raises:
        ValueError: If the label is empty or holds characters outside ``[A-Za-z0-9_]``.
    """
    if not label or sanitise_label(label) != label:
        msg = f"Invalid baseline label: {label!r} (use letters, digits and '_')"
        raise ValueError(msg)
    return label


@dataclass
class GateConfig:
    """Configuration settings for a gate execution.

    Values come from a ``.env`` file overlaid by the process environment, with
    defaults matching the storage benchmark the gate was written for.
    """

    # Source tree
    workdir: Path = field(default_factory=Path.cwd)
    trunk_branch: str = "main"

    # Baseline snapshot
    baseline_label: str = DEFAULT_LABEL
    label_per_group: bool = False

    # Test vector generator
    vector_generator_cmd: str = DEFAULT_GENERATOR_CMD
    vectors_dir: str = "testdata/micro/db"

    # Benchmark runner
    bench_cmd: str | None = None
    bench_package: str = "reth-db"
    bench_target: str = "iai"
    bench_profile: str = "profiling"
    bench_features: str = "test-utils"
    runner_binary: str = "iai-callgrind-runner"
    harness_crate: str = "iai-callgrind"
    term_color: str = "auto"

    # Gate bookkeeping
    results_dir: Path | None = None
    state_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "bench-gate")
    cancel_timeout: float = 30.0
    step_timeout: float | None = None

    # Regression policy and report publication
    regression_threshold_pct: float | None = None
    regression_metric: str = "Instructions"
    report_webhook_url: str | None = None

    # Remote benchmarking host
    remote_host: str | None = None
    remote_port: int = 22
    remote_user: str = "root"
    remote_workdir: str | None = None

    def __post_init__(self) -> None:
        """Validate enumerated settings after object creation.

        Raises:
            ValueError: If the colour mode or baseline label is invalid.
        """
        if self.term_color not in COLOUR_MODES:
            msg = f"Invalid CARGO_TERM_COLOR value: {self.term_color} (expected {COLOUR_MODES})"
            raise ValueError(msg)
        validate_label(self.baseline_label)
        if self.remote_host and not self.remote_workdir:
            msg = "REMOTE_WORKDIR is required when REMOTE_HOST is set"
            raise ValueError(msg)

    @classmethod
    def from_dotenv(
        cls, env_file: str | Path = ".env", environ: Mapping[str, str] | None = None
    ) -> GateConfig:
        """Create configuration from a .env file overlaid by the environment.

        Returns:
            GateConfig: An instance populated from the merged settings.
        """
        values: dict[str, str | None] = {}
        if Path(env_file).is_file():
            values.update(dotenv_values(env_file))
        values.update(os.environ if environ is None else environ)

        def get(key: str) -> str | None:
            value = values.get(key)
            return value if value not in {None, ""} else None

        def get_int(key: str, default: int) -> int:
            value = get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                msg = f"Invalid integer value for environment variable {key}: {value}"
                raise ValueError(msg) from e

        def get_float(key: str) -> float | None:
            value = get(key)
            if value is None:
                return None
            try:
                return float(value)
            except ValueError as e:
                msg = f"Invalid number for environment variable {key}: {value}"
                raise ValueError(msg) from e

        def get_bool(key: str) -> bool:
            value = (get(key) or "").lower()
            if value in TRUE_VALUES:
                return True
            if value in FALSE_VALUES:
                return False
            msg = f"Invalid boolean for environment variable {key}: {value}"
            raise ValueError(msg)

        defaults = cls()
        results_dir = get("RESULTS_DIR")
        state_dir = get("STATE_DIR")
        cancel_timeout = get_float("CANCEL_TIMEOUT")

        return cls(
            workdir=Path(get("WORKDIR") or defaults.workdir),
            trunk_branch=get("TRUNK_BRANCH") or defaults.trunk_branch,
            baseline_label=get("BASELINE") or DEFAULT_LABEL,
            label_per_group=get_bool("BASELINE_LABEL_PER_GROUP"),
            vector_generator_cmd=get("VECTOR_GENERATOR_CMD") or DEFAULT_GENERATOR_CMD,
            vectors_dir=get("VECTORS_DIR") or defaults.vectors_dir,
            bench_cmd=get("BENCH_CMD"),
            bench_package=get("BENCH_PACKAGE") or defaults.bench_package,
            bench_target=get("BENCH_TARGET") or defaults.bench_target,
            bench_profile=get("BENCH_PROFILE") or defaults.bench_profile,
            bench_features=get("BENCH_FEATURES") or defaults.bench_features,
            runner_binary=get("IAI_CALLGRIND_RUNNER") or defaults.runner_binary,
            harness_crate=get("HARNESS_CRATE") or defaults.harness_crate,
            term_color=(get("CARGO_TERM_COLOR") or defaults.term_color).lower(),
            results_dir=Path(results_dir) if results_dir else None,
            state_dir=Path(state_dir) if state_dir else defaults.state_dir,
            cancel_timeout=cancel_timeout if cancel_timeout is not None else 30.0,
            step_timeout=get_float("STEP_TIMEOUT"),
            regression_threshold_pct=get_float("REGRESSION_THRESHOLD_PCT"),
            regression_metric=get("REGRESSION_METRIC") or defaults.regression_metric,
            report_webhook_url=get("REPORT_WEBHOOK_URL"),
            remote_host=get("REMOTE_HOST"),
            remote_port=get_int("REMOTE_PORT", 22),
            remote_user=get("REMOTE_USER") or defaults.remote_user,
            remote_workdir=get("REMOTE_WORKDIR"),
        )

    def label_for_group(self, group: str | None) -> str:
        """Derive the baseline label for a trigger group.

        Returns:
            The configured label, suffixed with the sanitised group id when
            per-group labels are enabled.
        """
        if not self.label_per_group or not group:
            return self.baseline_label
        return f"{self.baseline_label}_{sanitise_label(group)}"

    @property
    def generator_argv(self) -> list[str]:
        """Argument vector for the test vector generator."""
        return shlex.split(self.vector_generator_cmd)

    @property
    def bench_argv(self) -> list[str]:
        """Argument vector for the benchmark runner, without the mode directive."""
        if self.bench_cmd:
            return shlex.split(self.bench_cmd)

        argv = ["cargo", "bench"]
        for flag, value in (
            ("-p", self.bench_package),
            ("--bench", self.bench_target),
            ("--profile", self.bench_profile),
            ("--features", self.bench_features),
        ):
            if value:
                argv.extend([flag, value])
        return argv

    @property
    def effective_workdir(self) -> str:
        """Work tree path on whichever host runs the commands."""
        if self.remote_host and self.remote_workdir:
            return self.remote_workdir
        return str(self.workdir)

    def subprocess_env(self, label: str | None = None) -> dict[str, str]:
        """Pass-through environment handed to every invoked tool.

        Args:
            label: Baseline label the tool works with; omitted for tools that have none.

        Returns:
            Environment variables for the colour toggle, baseline label and runner selection.
        """
        env = {
            "CARGO_TERM_COLOR": self.term_color,
            "IAI_CALLGRIND_RUNNER": self.runner_binary,
        }
        if label is not None:
            env["BASELINE"] = label
        return env
