"""Tests for revision checkout."""

from __future__ import annotations

import pytest

from benchgate.checkout import GitCheckout
from benchgate.exceptions import MeasurementError
from benchgate.models import RevisionRef
from conftest import BASE_SHA, CANDIDATE_SHA, is_clean


class TestGitCheckout:

    def test_resolve_local_ref(self, worktree) -> None:
        assert GitCheckout(worktree).resolve("main") == BASE_SHA
        assert not any(argv[:2] == ["git", "fetch"] for argv in worktree.calls)

    def test_resolve_fetches_unknown_ref(self, worktree) -> None:
        worktree.remote_refs["release"] = "d" * 40

        assert GitCheckout(worktree).resolve("release") == "d" * 40

    def test_resolve_unknown_everywhere(self, worktree) -> None:
        with pytest.raises(MeasurementError, match="Could not resolve revision 'nope'"):
            GitCheckout(worktree).resolve("nope")

    def test_clean_checkout_removes_untracked_files(self, worktree) -> None:
        worktree.vectors = {"tables/a.bin": "stale"}
        checkout = GitCheckout(worktree)

        assert checkout.checkout(RevisionRef("main", "baseline"), clean=True) == BASE_SHA
        assert worktree.head == BASE_SHA
        assert worktree.vectors == {}
        assert checkout.current_commit == BASE_SHA

    def test_plain_checkout_keeps_untracked_files(self, worktree) -> None:
        worktree.vectors = {"tables/a.bin": "generated"}
        checkout = GitCheckout(worktree)

        checkout.checkout(RevisionRef(CANDIDATE_SHA, "candidate"), clean=False)

        assert worktree.vectors == {"tables/a.bin": "generated"}
        assert worktree.count(is_clean) == 0

    def test_same_commit_without_clean_is_skipped(self, worktree) -> None:
        checkout = GitCheckout(worktree)
        checkout.checkout(RevisionRef("main", "baseline"), clean=True)
        checkouts = worktree.count(lambda argv: argv[:2] == ["git", "checkout"])

        checkout.checkout(RevisionRef(BASE_SHA, "baseline"), clean=False)

        assert worktree.count(lambda argv: argv[:2] == ["git", "checkout"]) == checkouts

    def test_dirty_worktree(self, worktree) -> None:
        worktree.dirty = True

        with pytest.raises(MeasurementError, match="Cargo.toml"):
            GitCheckout(worktree).ensure_clean_worktree()

    def test_head(self, worktree) -> None:
        assert GitCheckout(worktree).head() == CANDIDATE_SHA
