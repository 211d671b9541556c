from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

from patcheval.engine.executor import ExecutorPolicy, StageExecutor
from patcheval.errors import BackendTransientError
from patcheval.models import CheckpointRow, GenerationRequest, GenerationResult
from patcheval.prompting.renderer import PromptRenderer


Reply = Union[str, Exception, GenerationResult]


class ScriptedBackend:
    """
    Replays canned replies in order; the last reply repeats once the script runs out.
    `responder` (request -> reply) takes precedence when given.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, responder: Optional[Callable[[GenerationRequest], Reply]] = None):
        self.replies = list(replies or [])
        self.responder = responder
        self.requests: List[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.responder is not None:
            reply = self.responder(request)
        else:
            idx = min(len(self.requests), len(self.replies)) - 1
            reply = self.replies[idx]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        return GenerationResult(text=reply)


def transient() -> BackendTransientError:
    return BackendTransientError("ollama_transport_error: ConnectError: connection refused")


class MemoryTrace:
    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def write(self, *, commit: str, stage: str, event: str, attempt: int = 0, payload: Optional[Dict[str, Any]] = None) -> None:
        self.records.append({"commit": commit, "stage": stage, "attempt": attempt, "event": event, "payload": payload or {}})

    def events(self, event: str) -> List[Dict[str, Any]]:
        return [r for r in self.records if r["event"] == event]


class MemoryCheckpoint:
    def __init__(self) -> None:
        self.rows: List[CheckpointRow] = []

    def append(self, row: CheckpointRow) -> None:
        self.rows.append(row)

    def pairs(self) -> List[tuple]:
        return [(r.commit_id, r.stage, r.verdict.value) for r in self.rows]


def templates(*names: str) -> Dict[str, str]:
    return {n: f"[{n}] {{{{commit}}}} {{{{message_short}}}}\nprev={{{{plan_response_prev}}}}\nfirst={{{{plan_response_first}}}}\n{{{{diff}}}}" for n in names}


def make_executor(backend: ScriptedBackend, *stage_names: str, trace: Optional[MemoryTrace] = None, **policy: Any) -> StageExecutor:
    policy.setdefault("transient_backoff_s", 0.0)
    return StageExecutor(
        backend=backend,
        renderer=PromptRenderer(templates=templates(*stage_names)),
        policy=ExecutorPolicy(**policy),
        trace=trace,
    )
