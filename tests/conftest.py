"""Shared fixtures for the regression gate tests.

The FakeWorkTree executor stands in for a real repository and toolchain: it
answers the git, generator, fingerprint and runner commands the gate issues,
keeps untracked test vectors and saved baselines across checkouts the way a
real work tree does, and records every command for ordering assertions.
"""

from __future__ import annotations

import hashlib
import json
import shlex
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from benchgate.exceptions import CommandError
from benchgate.executor import CommandResult
from benchgate.models import GateConfig, RevisionRef

BASE_SHA = "a" * 40
CANDIDATE_SHA = "b" * 40
SLOW_SHA = "c" * 40

HARNESS_VERSION = "0.14.0"

# Benchmarks reported by the fake runner, as (name, share of the commit's cost)
BENCHMARKS = (("tables::put", 1.0), ("tables::get", 0.5))


def format_runner_line(
    metric: str, new: int | None, old: int | None, *, colour: bool = False
) -> str:
    """Render one metric line the way the instrumentation runner prints it."""
    new_text = "N/A" if new is None else str(new)
    if colour:
        new_text = f"\x1b[1m{new_text}\x1b[0m"
    old_text = "N/A" if old is None else str(old)
    if new is None or old is None:
        change = "(No change)" if new == old else ""
    elif new == old:
        change = "(No change)"
    else:
        change = f"({(new - old) / old * 100:+.5f}%) [{new / old:+.5f}x]"
        if colour:
            change = f"\x1b[31m{change}\x1b[0m"
    return f"  {metric + ':':<25}{new_text}|{old_text:<16}{change}".rstrip()


class FakeWorkTree:
    """In-memory work tree and toolchain answering the commands the gate runs."""

    def __init__(
        self,
        costs: Mapping[str, int] | None = None,
        refs: Mapping[str, str] | None = None,
        head: str = CANDIDATE_SHA,
    ) -> None:
        self.costs = dict(costs or {BASE_SHA: 10_000, CANDIDATE_SHA: 10_000, SLOW_SHA: 12_000})
        self.refs = dict(refs or {"main": BASE_SHA})
        self.remote_refs: dict[str, str] = {}
        self.head = head
        self.fetch_head: str | None = None

        self.dirty = False
        self.generator_fails = False
        self.generator_writes = True
        self.save_fails = False
        self.fail_on_regression = True
        self.runner_installed = True
        self.runner_version = HARNESS_VERSION
        self.harness_version = HARNESS_VERSION
        self.on_checkout: Callable[[FakeWorkTree, str], None] | None = None

        self.vectors: dict[str, str] = {}
        self.baselines: dict[str, dict[str, int]] = {}
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self.merged: list[bool] = []
        self.closed = False

    # -- helpers for assertions ---------------------------------------------

    def commands(self) -> list[str]:
        return [shlex.join(argv) for argv in self.calls]

    def index_of(self, predicate: Callable[[list[str]], bool]) -> int:
        """Position of the first recorded command matching ``predicate``, or -1."""
        for index, argv in enumerate(self.calls):
            if predicate(argv):
                return index
        return -1

    def count(self, predicate: Callable[[list[str]], bool]) -> int:
        return sum(1 for argv in self.calls if predicate(argv))

    # -- command simulation -------------------------------------------------

    def _resolve(self, ref: str) -> str | None:
        if ref == "HEAD":
            return self.head
        if ref == "FETCH_HEAD":
            return self.fetch_head
        if ref in self.refs:
            return self.refs[ref]
        if ref in self.costs:
            return ref
        return None

    def _git(self, args: list[str]) -> tuple[int, str]:
        command = args[0]
        if command == "rev-parse":
            ref = args[-1].removesuffix("^{commit}")
            commit = self._resolve(ref)
            return (0, f"{commit}\n") if commit else (1, "")
        if command == "fetch":
            ref = args[-1]
            if ref in self.remote_refs:
                self.fetch_head = self.remote_refs[ref]
                self.costs.setdefault(self.fetch_head, 10_000)
                return 0, ""
            return 128, f"fatal: couldn't find remote ref {ref}\n"
        if command == "status":
            return 0, " M Cargo.toml\n" if self.dirty else ""
        if command == "checkout":
            self.head = args[-1]
            if self.on_checkout:
                self.on_checkout(self, self.head)
            return 0, f"HEAD is now at {self.head[:7]}\n"
        if command == "clean":
            removed = "".join(f"Removing testdata/micro/db/{p}\n" for p in sorted(self.vectors))
            self.vectors.clear()
            return 0, removed
        return 1, f"unsupported git command: {args}\n"

    def _shell(self, script: str) -> tuple[int, str]:
        if "sha256sum" in script:
            lines = [
                f"{hashlib.sha256(content.encode()).hexdigest()}  ./{path}\n"
                for path, content in sorted(self.vectors.items())
            ]
            return 0, "".join(lines)
        if "command -v" in script:
            if self.runner_installed:
                return 0, "/usr/local/bin/iai-callgrind-runner\n"
            return 1, ""
        return 1, f"unsupported script: {script}\n"

    def _generate(self) -> tuple[int, str]:
        if self.generator_fails:
            return 101, "error: could not compile `reth`\n"
        if self.generator_writes:
            self.vectors = {
                "tables/accounts.bin": f"accounts generated at {self.head}",
                "tables/storage.bin": f"storage generated at {self.head}",
            }
        return 0, "Generated test vectors for 2 tables\n"

    def _bench(self, argv: list[str]) -> tuple[int, str]:
        directive = argv[-1]
        colour = self.envs[-1].get("CARGO_TERM_COLOR") == "always"
        cost = self.costs[self.head]
        counts = {name: int(cost * share) for name, share in BENCHMARKS}

        if directive.startswith("--save-baseline="):
            if self.save_fails:
                return 101, "error: benchmark `iai` panicked\n"
            label = directive.split("=", 1)[1]
            self.baselines[label] = counts
            output = "".join(
                f"reth_db_iai::{name}\n{format_runner_line('Instructions', count, None)}\n"
                for name, count in counts.items()
            )
            return 0, output

        label = directive.split("=", 1)[1]
        saved = self.baselines.get(label)
        if saved is None:
            return 1, f"error: baseline '{label}' not found\n"
        lines = []
        regressed = []
        for name, count in counts.items():
            old = saved[name]
            header = f"reth_db_iai::{name}"
            lines.append(f"\x1b[32m{header}\x1b[0m" if colour else header)
            lines.append(format_runner_line("Instructions", count, old, colour=colour))
            lines.append(format_runner_line("L1 Hits", count * 2, old * 2, colour=colour))
            if count > old:
                regressed.append(
                    f"Performance has regressed: Instructions ({count} > {old}) "
                    f"regressed by {(count - old) / old * 100:+.5f}% (>+0.00000%)"
                )
        lines.extend(regressed)
        exit_code = 3 if regressed and self.fail_on_regression else 0
        return exit_code, "\n".join(lines) + "\n"

    def _dispatch(self, argv: list[str]) -> tuple[int, str]:
        if argv[0] == "git":
            return self._git(argv[1:])
        if argv[:2] == ["sh", "-c"]:
            return self._shell(argv[2])
        if argv[:2] == ["cargo", "metadata"]:
            packages = [
                {"name": "reth-db", "version": "1.0.0"},
                {"name": "iai-callgrind", "version": self.harness_version},
            ]
            return 0, json.dumps({"packages": packages})
        if argv[:2] == ["cargo", "run"]:
            return self._generate()
        if argv[:2] == ["cargo", "bench"]:
            return self._bench(argv)
        if argv[-1] == "--version":
            return 0, f"iai-callgrind-runner {self.runner_version}\n"
        return 127, f"{argv[0]}: command not found\n"

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        stream: bool = True,
        merge_stderr: bool = True,
    ) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        self.merged.append(merge_stderr)
        exit_code, output = self._dispatch(argv)
        if check and exit_code != 0:
            raise CommandError(shlex.join(argv), exit_code, output)
        return CommandResult(argv, exit_code, output, 0.01)

    def close(self) -> None:
        self.closed = True


def is_generator(argv: list[str]) -> bool:
    return argv[:2] == ["cargo", "run"]


def is_save(argv: list[str]) -> bool:
    return argv[:2] == ["cargo", "bench"] and argv[-1].startswith("--save-baseline=")


def is_compare(argv: list[str]) -> bool:
    return argv[:2] == ["cargo", "bench"] and argv[-1].startswith("--baseline=")


def is_clean(argv: list[str]) -> bool:
    return argv[:2] == ["git", "clean"]


def is_checkout_of(commit: str) -> Callable[[list[str]], bool]:
    return lambda argv: argv[:2] == ["git", "checkout"] and argv[-1] == commit


@pytest.fixture
def worktree() -> FakeWorkTree:
    return FakeWorkTree()


@pytest.fixture
def config(tmp_path: Path) -> GateConfig:
    return GateConfig(workdir=tmp_path, state_dir=tmp_path / "state")


@pytest.fixture
def baseline() -> RevisionRef:
    return RevisionRef("main", "baseline")


@pytest.fixture
def candidate() -> RevisionRef:
    return RevisionRef(CANDIDATE_SHA, "candidate")


@pytest.fixture(autouse=True)
def _no_github_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the CI environment of the test runner out of the gate under test."""
    for key in (
        "GITHUB_ACTIONS",
        "GITHUB_EVENT_NAME",
        "GITHUB_EVENT_PATH",
        "GITHUB_REF_NAME",
        "GITHUB_BASE_REF",
        "GITHUB_HEAD_REF",
        "GITHUB_RUN_ID",
        "GITHUB_WORKFLOW",
        "GITHUB_SHA",
        "GITHUB_STEP_SUMMARY",
        "BASELINE",
        "BASELINE_LABEL_PER_GROUP",
        "CARGO_TERM_COLOR",
        "REGRESSION_THRESHOLD_PCT",
        "REMOTE_HOST",
    ):
        monkeypatch.delenv(key, raising=False)
