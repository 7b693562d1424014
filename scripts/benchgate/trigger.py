"""Triggering policy and trigger-group identity.

The gate's full instrumented measurement is reserved for integration: pushes
to the trunk branch and merge-queue validation runs. Ordinary pull request
events are skipped. This module reads the CI event metadata, applies that
policy, and derives the concurrency group an execution belongs to.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .logger import logger

if TYPE_CHECKING:
    from collections.abc import Mapping

SKIPPED_EVENTS = frozenset({"pull_request", "pull_request_target"})
MERGE_QUEUE_EVENT = "merge_group"
PUSH_EVENT = "push"
BRANCH_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class TriggerEvent:
    """CI metadata describing why the gate was started."""

    event_name: str | None = None
    ref_name: str | None = None
    base_ref: str | None = None
    head_ref: str | None = None
    run_id: str | None = None
    workflow: str | None = None
    sha: str | None = None

    @classmethod
    def from_github_env(cls, environ: Mapping[str, str] | None = None) -> TriggerEvent:
        """Build the event from GitHub Actions environment variables.

        Missing variables leave fields unset, which describes a local run.

        Returns:
            The trigger event.
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> str | None:
            return env.get(key) or None

        event_name = get("GITHUB_EVENT_NAME")
        base_ref = get("GITHUB_BASE_REF")
        if event_name == MERGE_QUEUE_EVENT and not base_ref:
            base_ref = _merge_group_base_ref(get("GITHUB_EVENT_PATH"))

        return cls(
            event_name=event_name,
            ref_name=get("GITHUB_REF_NAME"),
            base_ref=base_ref,
            head_ref=get("GITHUB_HEAD_REF"),
            run_id=get("GITHUB_RUN_ID"),
            workflow=get("GITHUB_WORKFLOW"),
            sha=get("GITHUB_SHA"),
        )

    @property
    def concurrency_group(self) -> str:
        """Group id: workflow identity plus the originating branch or run id."""
        return f"{self.workflow or 'bench-gate'}-{self.head_ref or self.run_id or 'local'}"

    def baseline_ref(self, trunk_branch: str) -> str:
        """The revision to measure first: the target branch, else the trunk."""
        return self.base_ref or trunk_branch

    def candidate_ref(self) -> str:
        """The revision under evaluation: the triggering commit, else the current HEAD."""
        return self.sha or "HEAD"


def _merge_group_base_ref(event_path: str | None) -> str | None:
    """Read the merge group's target branch from the event payload, if available.

    Returns:
        The branch name without the ``refs/heads/`` prefix, or None.
    """
    if not event_path:
        return None
    try:
        payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("⚠️ Could not read event payload %s: %s", event_path, e)
        return None

    base_ref = (payload.get("merge_group") or {}).get("base_ref")
    if not base_ref:
        return None
    return base_ref.removeprefix(BRANCH_PREFIX)


def should_run(event: TriggerEvent, trunk_branch: str) -> tuple[bool, str]:
    """Apply the triggering policy.

    Returns:
        Whether the gate should execute, and a human-readable reason.
    """
    if event.event_name in SKIPPED_EVENTS:
        return False, f"'{event.event_name}' events are not benchmarked"

    if event.event_name == PUSH_EVENT:
        if event.ref_name != trunk_branch:
            return False, f"push to '{event.ref_name}' is not a push to '{trunk_branch}'"
        return True, f"push to trunk branch '{trunk_branch}'"

    if event.event_name == MERGE_QUEUE_EVENT:
        return True, "merge queue validation"

    if event.event_name is None:
        return True, "local invocation"
    return True, f"'{event.event_name}' event"
