from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Tuple

from patcheval.errors import CommitNotFound, RefResolutionError
from patcheval.models import Commit


@dataclass(frozen=True)
class CommitRange:
    start_ref: str
    end_ref: str
    # None when the range starts at a root commit (nothing to hide).
    start_id: Optional[str]
    end_id: str


@dataclass(frozen=True)
class GitWalker:
    """
    Enumerates commits between two refs, oldest first, by shelling out to `git`.
    """

    repo_path: str
    timeout_s: float = 300.0

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            r = subprocess.run(
                ["git", "-C", self.repo_path, *args],
                capture_output=True,
                check=False,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RefResolutionError(f"git_failed: {' '.join(args)}: {e}") from e
        if check and r.returncode != 0:
            err = (r.stderr or b"").decode("utf-8", errors="replace").strip()
            raise RefResolutionError(f"git_failed: {' '.join(args)}: {err[:500]}")
        return r

    def _text(self, *args: str) -> str:
        return (self._git(*args).stdout or b"").decode("utf-8", errors="replace")

    def ensure_repo(self) -> None:
        if not os.path.isdir(self.repo_path):
            raise RefResolutionError(f"repo_not_found: {self.repo_path}")
        r = self._git("rev-parse", "--git-dir", check=False)
        if r.returncode != 0:
            raise RefResolutionError(f"repo_not_git: {self.repo_path}")

    def resolve(self, user_input: str) -> str:
        """
        Resolve a user-supplied ref: direct id/rev lookup first, then a scan of reference
        names ending with the input (or whose target id equals it).
        """
        ref = (user_input or "").strip()
        if not ref:
            raise CommitNotFound("empty ref")
        r = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if r.returncode == 0:
            return r.stdout.decode("utf-8", errors="replace").strip()

        listing = self._text("for-each-ref", "--format=%(refname) %(objectname)")
        for line in listing.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            name, target = parts
            if name.endswith(ref) or target == ref:
                peeled = self._git("rev-parse", "--verify", "--quiet", f"{name}^{{commit}}", check=False)
                if peeled.returncode == 0:
                    return peeled.stdout.decode("utf-8", errors="replace").strip()
        raise CommitNotFound(f"commit_not_found: {user_input} does not correspond to a commit, tag or branch")

    def parents(self, commit_id: str) -> List[str]:
        out = self._text("rev-list", "--parents", "-n", "1", commit_id).split()
        return out[1:]

    def resolve_range(self, start_ref: str, end_ref: Optional[str] = None) -> CommitRange:
        end_ref = end_ref or start_ref
        start_id: Optional[str] = self.resolve(start_ref)
        end_id = self.resolve(end_ref)
        if start_id == end_id:
            ps = self.parents(end_id)
            start_id = ps[0] if ps else None
        return CommitRange(start_ref=start_ref, end_ref=end_ref, start_id=start_id, end_id=end_id)

    def _rev_list_args(self, rng: CommitRange) -> List[str]:
        args = ["rev-list", "--topo-order", "--reverse", rng.end_id]
        if rng.start_id:
            args.append(f"^{rng.start_id}")
        return args

    def commit_ids(self, rng: CommitRange) -> List[str]:
        return [x for x in self._text(*self._rev_list_args(rng)).split() if x]

    def _header(self, commit_id: str) -> Tuple[List[str], str]:
        raw = self._text("show", "-s", "--format=%P%x00%B", commit_id)
        parents_s, _, message = raw.partition("\x00")
        return parents_s.split(), message.rstrip("\n")

    def patch(self, commit_id: str, parents: List[str]) -> str:
        if parents:
            return self._text("diff", "--no-color", "--no-ext-diff", parents[0], commit_id)
        return self._text("diff-tree", "-p", "--root", "--no-commit-id", "--no-color", commit_id)

    def load(self, commit_id: str) -> Commit:
        parents, message = self._header(commit_id)
        lines = message.splitlines()
        return Commit(
            id=commit_id,
            message_short=lines[0].strip() if lines else "",
            message=message,
            patch=self.patch(commit_id, parents),
            parent_count=len(parents),
        )
