from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from patcheval.errors import CatalogError


class Verdict(str, Enum):
    ok = "ok"
    fail = "fail"
    unknown = "unknown"


class FoldPolicy(str, Enum):
    """
    How sub-results of one stage invocation combine.
    ALL folds with AND (identity True), ANY folds with OR (identity False).
    """

    ALL = "ALL"
    ANY = "ANY"

    @property
    def identity(self) -> bool:
        return self is FoldPolicy.ALL


def fold(policy: FoldPolicy, values: Iterable[Optional[bool]]) -> Optional[bool]:
    """
    Fold sub-results starting from the policy identity. A None sub-result (unresolved)
    poisons the fold and yields None.
    """
    acc: Optional[bool] = policy.identity
    for v in values:
        if v is None:
            return None
        acc = (acc and v) if policy is FoldPolicy.ALL else (acc or v)
    return acc


class Commit(BaseModel):
    """
    One commit as produced by the walker. Treated as immutable opaque text.
    """

    model_config = {"frozen": True}

    id: str
    message_short: str = ""
    message: str = ""
    patch: str = ""
    parent_count: int = 1

    @property
    def is_merge(self) -> bool:
        return self.parent_count > 1

    @property
    def is_empty_merge(self) -> bool:
        return self.is_merge and not self.patch.strip()


class StageSpec(BaseModel):
    name: str
    ok: Optional[str] = Field(default=None, description="Regex that marks an 'ok' answer.")
    fail: Optional[str] = Field(default=None, description="Regex that marks a 'fail' answer.")
    policy: FoldPolicy = FoldPolicy.ANY
    repair_prompt: str = "Invalid response (retry %d/%d):"
    # Backend invocation knobs (model, options{...}); opaque to the engine.
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("ok", "fail")
    @classmethod
    def _rule_compiles(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid rule regex {v!r}: {e}") from e
        return v

    @model_validator(mode="after")
    def _rules_come_in_pairs(self) -> "StageSpec":
        if (self.ok is None) != (self.fail is None):
            raise ValueError(f"stage {self.name!r} must define both 'ok' and 'fail' rules or neither")
        return self

    @property
    def classifying(self) -> bool:
        return self.ok is not None and self.fail is not None


class OutcomeSpec(BaseModel):
    """
    Named commit-level outcome composed from stage contributions (e.g. LTS = bug AND stable).
    """

    name: str
    policy: FoldPolicy = FoldPolicy.ALL
    stages: List[str] = Field(default_factory=list)


class StageCatalog(BaseModel):
    stages: Dict[str, StageSpec] = Field(default_factory=dict)
    plan: List[str] = Field(default_factory=list)
    outcomes: List[OutcomeSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _plan_refers_to_known_stages(self) -> "StageCatalog":
        missing = [s for s in self.plan if s not in self.stages]
        if missing:
            raise ValueError(f"plan references unknown stages: {', '.join(missing)}")
        for o in self.outcomes:
            unknown = [s for s in o.stages if s not in self.stages]
            if unknown:
                raise ValueError(f"outcome {o.name!r} references unknown stages: {', '.join(unknown)}")
        return self

    def resolve_plan(self, names: Optional[List[str]] = None) -> List[StageSpec]:
        names = list(names if names is not None else self.plan)
        out: List[StageSpec] = []
        for n in names:
            spec = self.stages.get(n)
            if spec is None:
                raise CatalogError(f"stage_not_found: {n}")
            out.append(spec)
        return out


class GenerationRequest(BaseModel):
    model: str
    prompt: str
    options: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[List[int]] = None
    # Remaining top-level backend knobs (keep_alive, format, ...), sent as-is.
    extra: Dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    text: str
    context: Optional[List[int]] = None
    prompt_tokens: Optional[int] = None
    prompt_duration_s: Optional[float] = None
    generated_tokens: Optional[int] = None
    generated_duration_s: Optional[float] = None

    @property
    def prompt_tokens_per_s(self) -> Optional[float]:
        if not self.prompt_tokens or not self.prompt_duration_s:
            return None
        return self.prompt_tokens / self.prompt_duration_s

    @property
    def generated_tokens_per_s(self) -> Optional[float]:
        if not self.generated_tokens or not self.generated_duration_s:
            return None
        return self.generated_tokens / self.generated_duration_s


class StageResult(BaseModel):
    stage: str
    verdict: Verdict = Verdict.unknown
    classifying: bool = True
    # Folded contribution of this stage to named outcomes (None when unresolved).
    contribution: Optional[bool] = None
    response: str = ""
    prompt_size: int = 0
    response_size: int = 0
    prompt_tokens: Optional[int] = None
    generated_tokens: Optional[int] = None
    prompt_tokens_per_s: Optional[float] = None
    generated_tokens_per_s: Optional[float] = None
    elapsed_s: float = 0.0
    retries: int = 0
    transient_faults: int = 0
    # True when restored from a checkpoint rather than executed in this run.
    replayed: bool = False


class CommitResult(BaseModel):
    commit_id: str
    message_short: str = ""
    skipped: bool = True
    stages: Dict[str, StageResult] = Field(default_factory=dict)
    consecutive_fails: int = 0
    early_exit: bool = False
    outcomes: Dict[str, bool] = Field(default_factory=dict)

    def record(self, result: StageResult) -> None:
        if result.stage in self.stages:
            raise ValueError(f"stage_already_recorded: {self.commit_id}/{result.stage}")
        self.stages[result.stage] = result


class CheckpointRow(BaseModel):
    commit_id: str
    message_short: str
    stage: str
    verdict: Verdict
    prompt_size: int = 0
    response_size: int = 0
    elapsed_s: float = 0.0

    @classmethod
    def from_stage(cls, commit: Commit, result: StageResult) -> "CheckpointRow":
        return cls(
            commit_id=commit.id,
            message_short=commit.message_short,
            stage=result.stage,
            verdict=result.verdict,
            prompt_size=result.prompt_size,
            response_size=result.response_size,
            elapsed_s=result.elapsed_s,
        )
