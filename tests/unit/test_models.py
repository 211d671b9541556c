from __future__ import annotations

import pytest

from patcheval.models import Commit, CommitResult, FoldPolicy, StageResult, fold


def test_fold_identity_law() -> None:
    assert fold(FoldPolicy.ALL, []) is True
    assert fold(FoldPolicy.ANY, []) is False


def test_fold_and_or() -> None:
    assert fold(FoldPolicy.ALL, [True, False]) is False
    assert fold(FoldPolicy.ALL, [True, True]) is True
    assert fold(FoldPolicy.ANY, [False, True]) is True
    assert fold(FoldPolicy.ANY, [False, False]) is False


def test_fold_unresolved_sub_result_yields_none() -> None:
    assert fold(FoldPolicy.ALL, [True, None]) is None


def test_empty_merge_detection() -> None:
    assert Commit(id="m", parent_count=2, patch="").is_empty_merge is True
    assert Commit(id="m", parent_count=2, patch="diff --git a/x b/x").is_empty_merge is False
    assert Commit(id="c", parent_count=1, patch="").is_empty_merge is False


def test_commit_result_is_append_only() -> None:
    cr = CommitResult(commit_id="c1")
    cr.record(StageResult(stage="bug-01"))
    with pytest.raises(ValueError):
        cr.record(StageResult(stage="bug-01"))
