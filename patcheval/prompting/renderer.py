from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping

from patcheval.errors import CatalogError, TemplateMissing
from patcheval.models import Commit


PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")

PROMPT_TOKENS = ("commit", "message_short", "message", "diff", "plan_response_prev", "plan_response_first")


@dataclass(frozen=True)
class PromptParams:
    commit: str
    message_short: str = ""
    message: str = ""
    diff: str = ""
    plan_response_prev: str = ""
    plan_response_first: str = ""

    @classmethod
    def for_commit(cls, commit: Commit, *, response_prev: str = "", response_first: str = "") -> "PromptParams":
        return cls(
            commit=commit.id,
            message_short=commit.message_short,
            message=commit.message,
            diff=commit.patch,
            plan_response_prev=response_prev,
            plan_response_first=response_first,
        )

    def token_values(self) -> Dict[str, str]:
        return {k: str(getattr(self, k) or "") for k in PROMPT_TOKENS}


def render_template(template: str, params: PromptParams, *, stage: str = "") -> str:
    values = params.token_values()
    used = {m.group(1) for m in PROMPT_TOKEN_PATTERN.finditer(template)}
    unsupported = sorted(t for t in used if t not in values)
    if unsupported:
        raise CatalogError(f"prompt_template_unsupported_tokens stage={stage}: {', '.join(unsupported)}")
    return PROMPT_TOKEN_PATTERN.sub(lambda m: values[m.group(1)], template)


def format_repair(template: str, retry: int, max_retries: int) -> str:
    """
    Repair prompts carry printf-style counters ("retry %d/%d"); templates without them are used as-is.
    """
    if "%" not in template:
        return template
    try:
        return template % (retry, max_retries)
    except (TypeError, ValueError):
        return template


@dataclass
class PromptRenderer:
    """
    Stage name + parameters -> prompt text. Templates are `<stage>.md` files under `prompts_dir`,
    or given inline (tests, embedded catalogs).
    """

    prompts_dir: str | None = None
    templates: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._cache: Dict[str, str] = dict(self.templates)

    def template_for(self, stage: str) -> str:
        if stage in self._cache:
            return self._cache[stage]
        if self.prompts_dir:
            for suffix in (".md", ".txt"):
                p = Path(self.prompts_dir) / f"{stage}{suffix}"
                if p.is_file():
                    text = p.read_text(encoding="utf-8")
                    self._cache[stage] = text
                    return text
        raise TemplateMissing(f"prompt_template_missing: {stage}")

    def render(self, stage: str, params: PromptParams) -> str:
        return render_template(self.template_for(stage), params, stage=stage)
