from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol

import httpx

from patcheval.errors import BackendError, BackendTransientError
from patcheval.models import GenerationRequest, GenerationResult


class GenerationBackend(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResult: ...


_TRANSIENT_HTTPX_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    httpx.ProtocolError,
    httpx.TimeoutException,
)


def _ns_to_s(v: Any) -> float | None:
    if isinstance(v, (int, float)) and v > 0:
        return float(v) / 1e9
    return None


@dataclass(frozen=True)
class OllamaClient:
    """
    Calls a local Ollama-compatible generation service.

    Endpoint: POST {base_url}/api/generate  (stream=false)
    Body: {model, prompt, options{...}, context?}
    Reply: {response, context?, prompt_eval_count?, prompt_eval_duration?, eval_count?, eval_duration?}

    Transport trouble surfaces as BackendTransientError and is retried by the caller;
    this client itself performs exactly one request.
    """

    base_url: str = "http://localhost:11434"
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 1800.0

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.read_timeout_s, connect=self.connect_timeout_s)

    def generate(self, request: GenerationRequest) -> GenerationResult:
        url = f"{self.base_url.rstrip('/')}/api/generate"
        payload: Dict[str, Any] = dict(request.extra or {})
        payload["model"] = request.model
        payload["prompt"] = request.prompt
        payload["stream"] = False
        if request.options:
            payload["options"] = dict(request.options)
        if request.context:
            payload["context"] = list(request.context)

        try:
            with httpx.Client(timeout=self._timeout()) as client:
                r = client.post(url, json=payload)
        except _TRANSIENT_HTTPX_ERRORS as e:
            raise BackendTransientError(f"ollama_transport_error: {type(e).__name__}: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise BackendTransientError(f"ollama_http_{r.status_code}: {r.text[:500]}")
        if r.status_code != 200:
            raise BackendError(f"ollama_http_{r.status_code}: {r.text[:1500]}")

        try:
            data = r.json()
        except ValueError as e:
            raise BackendTransientError(f"ollama_response_not_json: {r.text[:200]}") from e
        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise BackendTransientError(f"ollama_response_parse_error: {str(data)[:200]}")
        if data.get("error"):
            raise BackendTransientError(f"ollama_error: {data.get('error')}")

        ctx = data.get("context")
        return GenerationResult(
            text=data["response"],
            context=list(ctx) if isinstance(ctx, list) else None,
            prompt_tokens=data.get("prompt_eval_count"),
            prompt_duration_s=_ns_to_s(data.get("prompt_eval_duration")),
            generated_tokens=data.get("eval_count"),
            generated_duration_s=_ns_to_s(data.get("eval_duration")),
        )
