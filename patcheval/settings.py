from __future__ import annotations

import json
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Protocol-fault retry budget bounds.
MIN_RETRIES = 5
MAX_RETRIES = 10


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PATCHEVAL_", extra="ignore")

    # Repository to walk (must contain .git)
    repo_path: str = "."

    # Ollama-compatible generation backend
    backend_base_url: str = "http://localhost:11434"
    backend_connect_timeout_s: float = 10.0
    # Large models can take tens of minutes for a single answer on big diffs.
    backend_read_timeout_s: float = 1800.0
    # Fixed sleep between attempts after a transport failure (refused/reset/busy).
    transient_backoff_s: float = 5.0
    default_model: str = "miqu-1-70b"

    # Protocol-fault budget: attempts per stage before its verdict degrades to "unknown".
    max_retries: int = 5
    # Output-length widening on repair retries: num_predict grows by this step per retry (0 = never).
    num_predict_step: int = 0
    num_predict_cap: int = 2048
    # If true, a repair retry sends only the repair text plus the backend context of the previous attempt.
    carry_context: bool = False

    # Stop evaluating a commit after N consecutive failed classifying stages (0 disables).
    skip_commit_on_consecutive_fails: int = 1
    # Content-bearing merge commits are skipped unless this is set.
    process_merge_commits: bool = False

    # Stage catalog overrides (None = packaged defaults)
    stages_path: str | None = None
    prompts_dir: str | None = None
    # JSON list of stage names overriding the catalog plan, e.g. '["bug-01","stable-01"]'
    plan_json: str | None = None

    log_root: str = "logs"
    spinner_enabled: bool = True

    @field_validator("max_retries")
    @classmethod
    def _clamp_retries(cls, v: int) -> int:
        return max(MIN_RETRIES, min(int(v), MAX_RETRIES))

    def plan_override(self) -> List[str] | None:
        if not self.plan_json:
            return None
        try:
            data = json.loads(self.plan_json)
        except Exception as e:  # noqa: BLE001
            raise ValueError(f"plan_json_invalid: {e}") from e
        if not isinstance(data, list):
            raise ValueError("plan_json_invalid: expected a JSON list of stage names")
        return [str(x) for x in data if str(x).strip()]
