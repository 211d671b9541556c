from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from patcheval.classifier.matcher import Classification, StageClassifier
from patcheval.engine.cancel import CancellationToken
from patcheval.errors import BackendTransientError
from patcheval.llm.ollama_client import GenerationBackend
from patcheval.models import GenerationRequest, GenerationResult, StageResult, StageSpec, Verdict, fold
from patcheval.prompting.renderer import PromptParams, PromptRenderer, format_repair
from patcheval.settings import Settings
from patcheval.telemetry.trace import TraceSink


logger = logging.getLogger(__name__)


class ExecutorState(str, Enum):
    init = "init"
    prompt_ready = "prompt_ready"
    awaiting_backend = "awaiting_backend"
    classified = "classified"
    transient_fault = "transient_fault"
    protocol_fault = "protocol_fault"
    resolved = "resolved"
    exhausted = "exhausted"


class AttemptKind(str, Enum):
    classified = "classified"
    passthrough = "passthrough"
    transient = "transient"
    protocol = "protocol"


@dataclass(frozen=True)
class AttemptOutcome:
    kind: AttemptKind
    classification: Optional[Classification] = None
    generation: Optional[GenerationResult] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ExecutorPolicy:
    max_retries: int = 5
    transient_backoff_s: float = 5.0
    num_predict_step: int = 0
    num_predict_cap: int = 2048
    carry_context: bool = False
    default_model: str = "miqu-1-70b"

    @classmethod
    def from_settings(cls, s: Settings) -> "ExecutorPolicy":
        return cls(
            max_retries=s.max_retries,
            transient_backoff_s=s.transient_backoff_s,
            num_predict_step=s.num_predict_step,
            num_predict_cap=s.num_predict_cap,
            carry_context=s.carry_context,
            default_model=s.default_model,
        )


def stage_contribution(spec: StageSpec, verdict: Verdict) -> Optional[bool]:
    """
    A stage's folded value: the policy identity folded with its classifying sub-results.
    Non-classifying stages contribute the bare identity; unresolved ones contribute None.
    """
    if not spec.classifying:
        return fold(spec.policy, [])
    if verdict is Verdict.unknown:
        return None
    return fold(spec.policy, [verdict is Verdict.ok])


@dataclass
class StageExecutor:
    """
    Drives one stage's request/retry/repair cycle:

        init -> prompt_ready -> awaiting_backend -> {classified | transient_fault | protocol_fault}
             -> resolved | exhausted

    Transient faults sleep and retry without consuming the retry budget. Protocol faults
    (ambiguous text) consume one retry each: the seed is bumped, the repair prompt is appended,
    num_predict may widen, and the request is re-issued until the budget runs out.
    """

    backend: GenerationBackend
    renderer: PromptRenderer
    policy: ExecutorPolicy = field(default_factory=ExecutorPolicy)
    trace: Optional[TraceSink] = None
    cancel: CancellationToken = field(default_factory=CancellationToken)

    def _trace(self, commit: str, stage: str, event: str, attempt: int, payload: Dict[str, Any]) -> None:
        if self.trace is not None:
            self.trace.write(commit=commit, stage=stage, event=event, attempt=attempt, payload=payload)

    def build_request(
        self,
        spec: StageSpec,
        prompt: str,
        *,
        retries: int,
        context: Optional[List[int]] = None,
    ) -> GenerationRequest:
        raw = copy.deepcopy(spec.options or {})
        model = str(raw.pop("model", None) or self.policy.default_model)
        options: Dict[str, Any] = dict(raw.pop("options", None) or {})
        if retries > 0:
            options["seed"] = int(options.get("seed") or 0) + retries
            if self.policy.num_predict_step > 0:
                base = int(options.get("num_predict") or self.policy.num_predict_step)
                options["num_predict"] = min(base + self.policy.num_predict_step * retries, self.policy.num_predict_cap)
        return GenerationRequest(model=model, prompt=prompt, options=options, context=context, extra=raw)

    def attempt(self, request: GenerationRequest, classifier: StageClassifier) -> AttemptOutcome:
        try:
            gen = self.backend.generate(request)
        except BackendTransientError as e:
            return AttemptOutcome(kind=AttemptKind.transient, error=str(e))
        c = classifier.classify(gen.text)
        if c is Classification.passthrough:
            return AttemptOutcome(kind=AttemptKind.passthrough, classification=c, generation=gen)
        if c is Classification.ambiguous:
            return AttemptOutcome(kind=AttemptKind.protocol, classification=c, generation=gen)
        return AttemptOutcome(kind=AttemptKind.classified, classification=c, generation=gen)

    def run(self, spec: StageSpec, params: PromptParams) -> StageResult:
        commit = params.commit
        classifier = StageClassifier.for_stage(spec)
        max_retries = max(1, int(self.policy.max_retries))
        started = time.monotonic()

        state = ExecutorState.init
        running_prompt = ""
        request_prompt = ""
        request: Optional[GenerationRequest] = None
        outcome: Optional[AttemptOutcome] = None

        retries = 0
        transient = 0
        attempt_n = 0
        context: Optional[List[int]] = None
        prompt_size = 0
        response_size = 0
        last: Optional[GenerationResult] = None
        verdict = Verdict.unknown

        while state not in (ExecutorState.resolved, ExecutorState.exhausted):
            if state is ExecutorState.init:
                running_prompt = self.renderer.render(spec.name, params)
                request_prompt = running_prompt
                state = ExecutorState.prompt_ready

            elif state is ExecutorState.prompt_ready:
                self.cancel.check()
                attempt_n += 1
                request = self.build_request(spec, request_prompt, retries=retries, context=context)
                state = ExecutorState.awaiting_backend

            elif state is ExecutorState.awaiting_backend:
                assert request is not None
                outcome = self.attempt(request, classifier)
                if outcome.kind is AttemptKind.transient:
                    state = ExecutorState.transient_fault
                    continue
                gen = outcome.generation
                assert gen is not None
                last = gen
                prompt_size += len(request.prompt)
                response_size += len(gen.text)
                self._trace(
                    commit,
                    spec.name,
                    "exchange",
                    attempt_n,
                    {
                        "prompt": request.prompt,
                        "response": gen.text,
                        "classification": outcome.classification.value if outcome.classification else None,
                        "prompt_length": len(request.prompt),
                        "response_length": len(gen.text),
                        "options": request.options,
                    },
                )
                state = ExecutorState.protocol_fault if outcome.kind is AttemptKind.protocol else ExecutorState.classified

            elif state is ExecutorState.transient_fault:
                assert request is not None and outcome is not None
                transient += 1
                logger.warning("backend transient fault commit=%s stage=%s: %s", commit, spec.name, outcome.error)
                self._trace(
                    commit,
                    spec.name,
                    "transient_fault",
                    attempt_n,
                    {"error": outcome.error, "prompt": request.prompt, "options": request.options},
                )
                self.cancel.sleep(self.policy.transient_backoff_s)
                state = ExecutorState.prompt_ready

            elif state is ExecutorState.classified:
                assert outcome is not None
                verdict = outcome.classification.to_verdict() if outcome.classification else Verdict.unknown
                state = ExecutorState.resolved

            elif state is ExecutorState.protocol_fault:
                assert last is not None
                retries += 1
                if retries >= max_retries:
                    logger.info("stage exhausted commit=%s stage=%s after %d attempts", commit, spec.name, retries)
                    self._trace(commit, spec.name, "exhausted", attempt_n, {"retries": retries})
                    verdict = Verdict.unknown
                    state = ExecutorState.exhausted
                    continue
                repair = format_repair(spec.repair_prompt, retries, max_retries)
                self._trace(commit, spec.name, "repair", attempt_n, {"retry": retries, "max_retries": max_retries})
                if self.policy.carry_context and last.context:
                    context = last.context
                    request_prompt = repair
                else:
                    running_prompt = f"{running_prompt}\n\n{repair}"
                    request_prompt = running_prompt
                state = ExecutorState.prompt_ready

        logger.debug("stage finished commit=%s stage=%s state=%s", commit, spec.name, state.value)
        return StageResult(
            stage=spec.name,
            verdict=verdict,
            classifying=spec.classifying,
            contribution=stage_contribution(spec, verdict),
            response=last.text if last else "",
            prompt_size=prompt_size,
            response_size=response_size,
            prompt_tokens=last.prompt_tokens if last else None,
            generated_tokens=last.generated_tokens if last else None,
            prompt_tokens_per_s=last.prompt_tokens_per_s if last else None,
            generated_tokens_per_s=last.generated_tokens_per_s if last else None,
            elapsed_s=time.monotonic() - started,
            retries=retries,
            transient_faults=transient,
        )


