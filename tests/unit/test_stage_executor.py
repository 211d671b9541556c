from __future__ import annotations

import pytest

from fakes import MemoryTrace, ScriptedBackend, make_executor, transient
from patcheval.errors import BackendError, RunCancelled
from patcheval.models import Commit, FoldPolicy, GenerationResult, StageSpec, Verdict
from patcheval.prompting.renderer import PromptParams


BUG = StageSpec(
    name="bug-01",
    ok="BUGFIX",
    fail="NOT",
    policy=FoldPolicy.ANY,
    repair_prompt="Invalid response, reply 'BUGFIX' or 'NOT' (retry %d/%d):",
    options={"model": "m", "options": {"seed": 42, "temperature": 0.7}},
)
SUMMARY = StageSpec(name="commit-summary", options={"model": "m"})


def _params() -> PromptParams:
    return PromptParams.for_commit(Commit(id="c1", message_short="fix", patch="diff"))


def test_resolves_ok_on_first_attempt() -> None:
    backend = ScriptedBackend(["Looks like a BUGFIX"])
    r = make_executor(backend, "bug-01").run(BUG, _params())
    assert r.verdict is Verdict.ok
    assert r.retries == 0
    assert r.contribution is True
    assert r.response == "Looks like a BUGFIX"
    assert len(backend.requests) == 1
    assert backend.requests[0].model == "m"
    assert backend.requests[0].options["seed"] == 42


def test_retry_bound_then_unknown() -> None:
    backend = ScriptedBackend(["maybe?"])
    trace = MemoryTrace()
    r = make_executor(backend, "bug-01", trace=trace, max_retries=5).run(BUG, _params())
    assert r.verdict is Verdict.unknown
    assert r.retries == 5
    assert r.contribution is None
    assert len(backend.requests) == 5
    assert len(trace.events("exchange")) == 5
    assert len(trace.events("exhausted")) == 1


def test_both_rules_matching_is_a_protocol_fault() -> None:
    backend = ScriptedBackend(["BUGFIX or NOT", "NOT"])
    r = make_executor(backend, "bug-01").run(BUG, _params())
    assert r.verdict is Verdict.fail
    assert r.retries == 1


def test_transient_faults_do_not_consume_retries() -> None:
    backend = ScriptedBackend([transient(), transient(), transient(), "BUGFIX"])
    trace = MemoryTrace()
    r = make_executor(backend, "bug-01", trace=trace, max_retries=2).run(BUG, _params())
    assert r.verdict is Verdict.ok
    assert r.retries == 0
    assert r.transient_faults == 3
    assert len(trace.events("transient_fault")) == 3
    # transient attempts reuse the unmodified first prompt and seed
    assert {q.options["seed"] for q in backend.requests} == {42}
    assert len({q.prompt for q in backend.requests}) == 1


def test_repair_retry_perturbs_seed_and_appends_repair_prompt() -> None:
    backend = ScriptedBackend(["hmm", "still thinking", "NOT"])
    r = make_executor(backend, "bug-01", max_retries=5).run(BUG, _params())
    assert r.verdict is Verdict.fail
    assert r.retries == 2
    seeds = [q.options["seed"] for q in backend.requests]
    assert seeds == [42, 43, 44]
    first, second, third = (q.prompt for q in backend.requests)
    assert second.startswith(first)
    assert second.endswith("(retry 1/5):")
    assert third.endswith("(retry 2/5):")
    assert "(retry 1/5):" in third


def test_num_predict_widens_and_caps() -> None:
    backend = ScriptedBackend(["?"])
    make_executor(backend, "bug-01", max_retries=4, num_predict_step=100, num_predict_cap=250).run(BUG, _params())
    widths = [q.options.get("num_predict") for q in backend.requests]
    assert widths == [None, 200, 250, 250]


def test_carry_context_sends_repair_only_with_previous_context() -> None:
    backend = ScriptedBackend([GenerationResult(text="??", context=[1, 2, 3]), "BUGFIX"])
    make_executor(backend, "bug-01", carry_context=True).run(BUG, _params())
    retry = backend.requests[1]
    assert retry.context == [1, 2, 3]
    assert retry.prompt == "Invalid response, reply 'BUGFIX' or 'NOT' (retry 1/5):"


def test_free_text_stage_resolves_without_verdict() -> None:
    backend = ScriptedBackend(["A summary that mentions NOT and BUGFIX."])
    r = make_executor(backend, "commit-summary").run(SUMMARY, _params())
    assert r.verdict is Verdict.unknown
    assert r.classifying is False
    assert r.retries == 0
    # ANY identity
    assert r.contribution is False
    assert r.response_size == len("A summary that mentions NOT and BUGFIX.")


def test_backend_timing_is_carried() -> None:
    backend = ScriptedBackend([
        GenerationResult(text="BUGFIX", prompt_tokens=400, prompt_duration_s=2.0, generated_tokens=10, generated_duration_s=0.5)
    ])
    r = make_executor(backend, "bug-01").run(BUG, _params())
    assert r.prompt_tokens == 400
    assert r.prompt_tokens_per_s == pytest.approx(200.0)
    assert r.generated_tokens_per_s == pytest.approx(20.0)


def test_non_transient_backend_error_propagates() -> None:
    backend = ScriptedBackend([BackendError("ollama_http_404: model not found")])
    with pytest.raises(BackendError):
        make_executor(backend, "bug-01").run(BUG, _params())


def test_cancellation_is_checked_before_backend_call() -> None:
    backend = ScriptedBackend(["BUGFIX"])
    ex = make_executor(backend, "bug-01")
    ex.cancel.cancel("test")
    with pytest.raises(RunCancelled):
        ex.run(BUG, _params())
    assert backend.requests == []


def test_cancellation_stops_transient_backoff_loop() -> None:
    ex = make_executor(ScriptedBackend([transient()]), "bug-01")

    def responder(request):
        ex.cancel.cancel("operator abort")
        return transient()

    ex.backend = ScriptedBackend(responder=responder)
    with pytest.raises(RunCancelled):
        ex.run(BUG, _params())


def test_transient_fault_trace_carries_the_prompt_sent() -> None:
    backend = ScriptedBackend([transient(), "BUGFIX"])
    trace = MemoryTrace()
    make_executor(backend, "bug-01", trace=trace).run(BUG, _params())
    (fault,) = trace.events("transient_fault")
    assert fault["payload"]["prompt"] == backend.requests[0].prompt
    assert fault["payload"]["options"]["seed"] == 42
    assert "ConnectError" in fault["payload"]["error"]


def test_events_follow_state_transitions() -> None:
    backend = ScriptedBackend([transient(), "hmm", "NOT"])
    trace = MemoryTrace()
    r = make_executor(backend, "bug-01", trace=trace, max_retries=5).run(BUG, _params())
    assert [e["event"] for e in trace.records] == ["transient_fault", "exchange", "repair", "exchange"]
    assert [e["attempt"] for e in trace.records] == [1, 2, 2, 3]
    assert (r.verdict, r.retries, r.transient_faults) == (Verdict.fail, 1, 1)
