from __future__ import annotations

import subprocess
from types import SimpleNamespace

import pytest

from patcheval.errors import CommitNotFound, RefResolutionError
from patcheval.gitops.walker import CommitRange, GitWalker


def _fake_git(table, calls):
    """table: tuple(args after `git -C repo`) -> (returncode, stdout str)."""

    def run(cmd, capture_output=True, check=False, timeout=None):
        args = tuple(cmd[3:])
        calls.append(args)
        rc, out = table.get(args, (1, ""))
        return SimpleNamespace(returncode=rc, stdout=out.encode("utf-8"), stderr=b"fatal: bad revision")

    return run


def test_resolve_prefers_direct_lookup(monkeypatch):
    calls = []
    table = {("rev-parse", "--verify", "--quiet", "v1.0^{commit}"): (0, "aaa\n")}
    monkeypatch.setattr(subprocess, "run", _fake_git(table, calls))
    assert GitWalker(repo_path=".").resolve("v1.0") == "aaa"
    assert len(calls) == 1


def test_resolve_falls_back_to_ref_name_suffix(monkeypatch):
    calls = []
    table = {
        ("for-each-ref", "--format=%(refname) %(objectname)"): (0, "refs/heads/main bbb\nrefs/remotes/origin/feature/x ccc\n"),
        ("rev-parse", "--verify", "--quiet", "refs/remotes/origin/feature/x^{commit}"): (0, "ccc\n"),
    }
    monkeypatch.setattr(subprocess, "run", _fake_git(table, calls))
    assert GitWalker(repo_path=".").resolve("feature/x") == "ccc"


def test_resolve_unknown_ref_raises(monkeypatch):
    table = {("for-each-ref", "--format=%(refname) %(objectname)"): (0, "refs/heads/main bbb\n")}
    monkeypatch.setattr(subprocess, "run", _fake_git(table, []))
    with pytest.raises(CommitNotFound):
        GitWalker(repo_path=".").resolve("nope")


def test_single_ref_range_starts_at_first_parent(monkeypatch):
    table = {
        ("rev-parse", "--verify", "--quiet", "abc^{commit}"): (0, "abc\n"),
        ("rev-list", "--parents", "-n", "1", "abc"): (0, "abc p1 p2\n"),
    }
    monkeypatch.setattr(subprocess, "run", _fake_git(table, []))
    rng = GitWalker(repo_path=".").resolve_range("abc")
    assert (rng.start_id, rng.end_id) == ("p1", "abc")


def test_commit_ids_are_oldest_first_and_root_range_has_no_exclusion(monkeypatch):
    calls = []
    table = {("rev-list", "--topo-order", "--reverse", "e"): (0, "r\nm\ne\n")}
    monkeypatch.setattr(subprocess, "run", _fake_git(table, calls))
    ids = GitWalker(repo_path=".").commit_ids(CommitRange(start_ref="r", end_ref="e", start_id=None, end_id="e"))
    assert ids == ["r", "m", "e"]


def test_load_reads_message_parents_and_patch(monkeypatch):
    table = {
        ("show", "-s", "--format=%P%x00%B", "c2"): (0, "c1\x00Fix overflow\n\nLonger body.\n"),
        ("diff", "--no-color", "--no-ext-diff", "c1", "c2"): (0, "diff --git a/x b/x\n"),
    }
    monkeypatch.setattr(subprocess, "run", _fake_git(table, []))
    c = GitWalker(repo_path=".").load("c2")
    assert c.message_short == "Fix overflow"
    assert c.message == "Fix overflow\n\nLonger body."
    assert c.patch.startswith("diff --git")
    assert c.parent_count == 1


def test_git_failure_is_reported(monkeypatch):
    monkeypatch.setattr(subprocess, "run", _fake_git({}, []))
    with pytest.raises(RefResolutionError):
        GitWalker(repo_path=".").parents("zzz")
