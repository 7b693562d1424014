"""Revision checkout for the baseline and candidate phases.

This module provides the GitCheckout class that moves the work tree between the
baseline and candidate revisions, optionally cleaning untracked files so the
baseline is measured from a pristine tree.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .exceptions import CommandError, MeasurementError
from .logger import logger

if TYPE_CHECKING:
    from .executor import Executor
    from .models import RevisionRef

# Build output holds the runner's saved baselines and the compilation cache
CLEAN_EXCLUDES = ("/target/",)


class GitCheckout:
    """Checks out revisions in the gate's work tree via git."""

    def __init__(self, executor: Executor, timeout: float | None = None) -> None:
        """Initialise checkout helper.

        Args:
            executor: Executor bound to the work tree.
            timeout: Per-command timeout in seconds, if any.
        """
        self.executor = executor
        self.timeout = timeout
        self.current_commit: str | None = None

    def _git(self, *args: str, check: bool = True) -> str:
        result = self.executor.run(["git", *args], timeout=self.timeout, check=check, stream=False)
        return result.output.strip() if result.exit_code == 0 else ""

    def resolve(self, ref: str) -> str:
        """Resolve a branch, tag or commit to a commit id, fetching it from origin if needed.

        Returns:
            The full commit id.

        Raises:
            MeasurementError: If the ref cannot be found locally or on origin.
        """
        commit = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if commit:
            return commit

        logger.info("📥 Fetching %s from origin", ref)
        try:
            self._git("fetch", "--no-tags", "--depth=1", "origin", ref)
            return self._git("rev-parse", "--verify", "FETCH_HEAD^{commit}")
        except CommandError as e:
            msg = f"Could not resolve revision '{ref}': {e.message}"
            raise MeasurementError(
                msg, step="checkout", exit_code=e.exit_code, output=e.output
            ) from e

    def checkout(self, revision: RevisionRef, *, clean: bool) -> str:
        """Check out a revision, optionally removing untracked and ignored files.

        Args:
            revision: The revision to check out.
            clean: When False, untracked artefacts such as generated test vectors
                and saved baselines are left in place.

        Returns:
            The commit id now checked out.

        Raises:
            MeasurementError: If git fails.
        """
        commit = self.resolve(revision.name)
        if commit == self.current_commit and not clean:
            logger.info("📌 %s already checked out at %s", revision, commit[:12])
            return commit

        logger.info("🔀 Checking out %s at %s (clean=%s)", revision, commit[:12], clean)
        try:
            self._git("checkout", "--force", "--detach", commit)
            if clean:
                excludes = [f"--exclude={pattern}" for pattern in CLEAN_EXCLUDES]
                self._git("clean", "-ffdx", *excludes)
        except CommandError as e:
            msg = f"Checkout of {revision} failed: {e.message}"
            raise MeasurementError(
                msg, step="checkout", exit_code=e.exit_code, output=e.output
            ) from e

        self.current_commit = commit
        return commit

    def ensure_clean_worktree(self) -> None:
        """Refuse to switch revisions over uncommitted changes to tracked files.

        Raises:
            MeasurementError: If tracked files are modified.
        """
        status = self._git("status", "--porcelain", "--untracked-files=no")
        if status:
            msg = (
                "❌ Work tree has uncommitted changes to tracked files.\n"
                "💡 Commit or stash them; the gate checks out other revisions in place.\n"
                f"{status}"
            )
            raise MeasurementError(msg, step="checkout")

    def head(self) -> str:
        """Return the commit id currently checked out."""
        return self._git("rev-parse", "HEAD")
