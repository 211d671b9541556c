from __future__ import annotations

from typing import Dict, Iterable, Mapping

from patcheval.models import OutcomeSpec, StageResult, fold


def compose_outcome(spec: OutcomeSpec, stages: Mapping[str, StageResult]) -> bool:
    """
    Missing or unresolved stages count as False, so an early-exited commit never passes
    an outcome that needs a stage it did not reach.
    """
    values = []
    for name in spec.stages:
        r = stages.get(name)
        values.append(bool(r is not None and r.contribution is True))
    return bool(fold(spec.policy, values))


def compose_outcomes(specs: Iterable[OutcomeSpec], stages: Mapping[str, StageResult]) -> Dict[str, bool]:
    return {s.name: compose_outcome(s, stages) for s in specs}
