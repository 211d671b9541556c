from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from patcheval.models import StageSpec, Verdict


class Classification(str, Enum):
    ok = "ok"
    fail = "fail"
    ambiguous = "ambiguous"
    # Stage has no rules: free-text answer, nothing to compose.
    passthrough = "passthrough"

    def to_verdict(self) -> Verdict:
        if self is Classification.ok:
            return Verdict.ok
        if self is Classification.fail:
            return Verdict.fail
        return Verdict.unknown


class Matcher(Protocol):
    def matches(self, response: str) -> bool: ...


@dataclass(frozen=True)
class RegexMatcher:
    """
    Unanchored regex search, same semantics as `text =~ /PATTERN/`.
    """

    pattern: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "_rx", re.compile(self.pattern))

    def matches(self, response: str) -> bool:
        return self._rx.search(response or "") is not None  # type: ignore[attr-defined]


def classify(response: str, ok: Optional[Matcher], fail: Optional[Matcher]) -> Classification:
    """
    Both rules matching is a protocol violation, never a verdict; so is neither matching.
    """
    if ok is None and fail is None:
        return Classification.passthrough
    is_ok = ok.matches(response) if ok is not None else False
    is_fail = fail.matches(response) if fail is not None else False
    if is_ok and is_fail:
        return Classification.ambiguous
    if is_ok:
        return Classification.ok
    if is_fail:
        return Classification.fail
    return Classification.ambiguous


@dataclass(frozen=True)
class StageClassifier:
    ok: Optional[Matcher] = None
    fail: Optional[Matcher] = None

    @classmethod
    def for_stage(cls, spec: StageSpec) -> "StageClassifier":
        return cls(
            ok=RegexMatcher(spec.ok) if spec.ok is not None else None,
            fail=RegexMatcher(spec.fail) if spec.fail is not None else None,
        )

    def classify(self, response: str) -> Classification:
        return classify(response, self.ok, self.fail)
