from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Protocol

from patcheval.engine.executor import StageExecutor, stage_contribution
from patcheval.engine.outcomes import compose_outcomes
from patcheval.models import CheckpointRow, Commit, CommitResult, OutcomeSpec, StageResult, StageSpec, Verdict
from patcheval.prompting.renderer import PromptParams


logger = logging.getLogger(__name__)


class StageListener(Protocol):
    def stage_started(self, commit: Commit, spec: StageSpec) -> None: ...

    def stage_finished(self, commit: Commit, result: StageResult) -> None: ...


def replayed_result(spec: StageSpec, row: CheckpointRow) -> StageResult:
    """Rebuild a StageResult from a persisted checkpoint row (no response text survives)."""
    return StageResult(
        stage=spec.name,
        verdict=row.verdict,
        classifying=spec.classifying,
        contribution=stage_contribution(spec, row.verdict),
        prompt_size=row.prompt_size,
        response_size=row.response_size,
        elapsed_s=row.elapsed_s,
        replayed=True,
    )


def next_fail_count(spec: StageSpec, verdict: Verdict, fails: int) -> int:
    # Only resolved classifying stages move the counter; free-text and exhausted stages leave it alone.
    if not spec.classifying:
        return fails
    if verdict is Verdict.ok:
        return 0
    if verdict is Verdict.fail:
        return fails + 1
    return fails


@dataclass
class PlanRunner:
    """
    Runs the plan's stages for one commit, in order, feeding each stage the previous
    and the first stage's raw responses, and stops early after `skip_threshold`
    consecutive failed classifying stages.
    """

    executor: StageExecutor
    plan: List[StageSpec]
    outcomes: List[OutcomeSpec] = field(default_factory=list)
    skip_threshold: int = 1
    process_merge_commits: bool = False
    listener: Optional[StageListener] = None

    def should_skip(self, commit: Commit) -> bool:
        if commit.is_empty_merge:
            return True
        return commit.is_merge and not self.process_merge_commits

    def _threshold_hit(self, fails: int) -> bool:
        return self.skip_threshold > 0 and fails >= self.skip_threshold

    def is_settled(self, recorded: Mapping[str, StageResult]) -> bool:
        """
        True when previously recorded results already cover this commit: every planned
        stage is present, or the recorded verdicts reach the early-exit threshold.
        """
        if not recorded:
            return False
        fails = 0
        for spec in self.plan:
            r = recorded.get(spec.name)
            if r is None:
                return False
            fails = next_fail_count(spec, r.verdict, fails)
            if self._threshold_hit(fails):
                return True
        return True

    def run(self, commit: Commit, recorded: Optional[Mapping[str, StageResult]] = None) -> CommitResult:
        result = CommitResult(commit_id=commit.id, message_short=commit.message_short)
        if self.should_skip(commit):
            logger.info("skipping merge commit %s (parents=%d, empty=%s)", commit.id, commit.parent_count, commit.is_empty_merge)
            return result

        recorded = recorded or {}
        response_prev = ""
        response_first = ""
        fails = 0
        for i, spec in enumerate(self.plan):
            prior = recorded.get(spec.name)
            if prior is not None:
                sr = prior
            else:
                params = PromptParams.for_commit(commit, response_prev=response_prev, response_first=response_first)
                if self.listener is not None:
                    self.listener.stage_started(commit, spec)
                sr = self.executor.run(spec, params)
                if self.listener is not None:
                    self.listener.stage_finished(commit, sr)
            result.record(sr)

            response_prev = sr.response
            if i == 0:
                response_first = sr.response

            fails = next_fail_count(spec, sr.verdict, fails)
            result.consecutive_fails = fails
            if self._threshold_hit(fails):
                logger.info("commit %s: %d consecutive fails, skipping remaining stages", commit.id, fails)
                result.early_exit = True
                break

        result.skipped = False
        result.outcomes = compose_outcomes(self.outcomes, result.stages)
        return result
