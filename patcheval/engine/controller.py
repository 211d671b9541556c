from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from patcheval.engine.cancel import CancellationToken
from patcheval.engine.plan_runner import PlanRunner, replayed_result
from patcheval.errors import BackendError, CatalogError, RunCancelled, TemplateMissing
from patcheval.models import CheckpointRow, Commit, CommitResult, StageResult, StageSpec
from patcheval.telemetry.progress import ProgressReporter


logger = logging.getLogger(__name__)

# Configuration problems repeat for every commit; they end the run instead of being logged per commit.
FATAL_ERRORS = (BackendError, CatalogError, TemplateMissing, RunCancelled)


class CheckpointSink(Protocol):
    def append(self, row: CheckpointRow) -> None: ...


@dataclass
class RunTotals:
    commits_done: int = 0
    commits_skipped: int = 0
    commits_failed: int = 0
    stages_run: int = 0
    prompt_size: int = 0
    response_size: int = 0
    prompt_tokens: int = 0
    generated_tokens: int = 0
    verdicts: Counter = field(default_factory=Counter)


class RunController:
    """
    Iterates the commit set, runs the plan per commit and persists one checkpoint row per
    (commit, stage) as soon as that stage resolves.

    With a resume index (commit -> stage -> row from an earlier checkpoint), commits whose
    recorded stages already settle them are excluded; partially recorded commits replay
    their recorded stages and run only the missing ones.
    """

    def __init__(
        self,
        *,
        runner: PlanRunner,
        checkpoint: CheckpointSink,
        progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancellationToken] = None,
        resume_index: Optional[Mapping[str, Mapping[str, CheckpointRow]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.checkpoint = checkpoint
        self.progress = progress or ProgressReporter(echo=lambda *a, **k: None)
        self.cancel = cancel or CancellationToken()
        self.resume_index = dict(resume_index or {})
        self.clock = clock
        self.totals = RunTotals()
        self.commit_n = 0
        self.eta_s = 0.0
        self._started: Optional[float] = None
        self.runner.listener = self

    # StageListener
    def stage_started(self, commit: Commit, spec: StageSpec) -> None:
        self.progress.stage_started(commit, spec)

    def stage_finished(self, commit: Commit, result: StageResult) -> None:
        self.checkpoint.append(CheckpointRow.from_stage(commit, result))
        t = self.totals
        t.stages_run += 1
        t.prompt_size += result.prompt_size
        t.response_size += result.response_size
        t.prompt_tokens += result.prompt_tokens or 0
        t.generated_tokens += result.generated_tokens or 0
        t.verdicts[result.verdict.value] += 1
        self.progress.stage_finished(commit, result)

    def recorded_for(self, commit_id: str) -> Dict[str, StageResult]:
        rows = self.resume_index.get(commit_id) or {}
        out: Dict[str, StageResult] = {}
        for spec in self.runner.plan:
            row = rows.get(spec.name)
            if row is not None:
                out[spec.name] = replayed_result(spec, row)
        return out

    def is_done(self, commit_id: str) -> bool:
        if commit_id not in self.resume_index:
            return False
        return self.runner.is_settled(self.recorded_for(commit_id))

    def pending(self, commit_ids: Iterable[str]) -> List[str]:
        return [c for c in commit_ids if not self.is_done(c)]

    def _update_eta(self, total: int) -> None:
        if self._started is None or self.commit_n <= 0:
            self.eta_s = 0.0
            return
        elapsed = self.clock() - self._started
        self.eta_s = elapsed / self.commit_n * max(0, total - self.commit_n)

    def run_commit(self, commit: Commit) -> CommitResult:
        recorded = self.recorded_for(commit.id)
        for r in recorded.values():
            self.progress.stage_replayed(r)
        try:
            result = self.runner.run(commit, recorded=recorded)
        finally:
            self.progress.stop()
        if result.skipped:
            self.totals.commits_skipped += 1
            self.progress.commit_skipped(commit)
        else:
            self.progress.commit_finished(result)
        return result

    def run(self, commits: Iterable[Commit], *, total: Optional[int] = None) -> List[CommitResult]:
        commits = commits if total is not None else list(commits)
        total = total if total is not None else len(commits)  # type: ignore[arg-type]
        self._started = self.clock()
        results: List[CommitResult] = []
        try:
            for commit in commits:
                self.cancel.check()
                if self.is_done(commit.id):
                    logger.info("commit %s already recorded, skipping", commit.id)
                    continue
                self.commit_n += 1
                self.progress.commit_started(commit, n=self.commit_n, total=total, eta_s=self.eta_s)
                try:
                    result = self.run_commit(commit)
                except FATAL_ERRORS:
                    raise
                except Exception:  # noqa: BLE001
                    logger.exception("commit %s failed, continuing with next commit", commit.id)
                    self.totals.commits_failed += 1
                    result = CommitResult(commit_id=commit.id, message_short=commit.message_short)
                results.append(result)
                self.totals.commits_done += 1
                self._update_eta(total)
        finally:
            self.progress.stop()
        self.progress.run_finished(
            processed=self.totals.commits_done - self.totals.commits_skipped,
            skipped=self.totals.commits_skipped,
            elapsed_s=self.clock() - self._started,
            stats=dict(self.totals.verdicts),
        )
        return results
