from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from patcheval.errors import CatalogError
from patcheval.models import StageCatalog


CATALOG_DIR = Path(__file__).resolve().parent
DEFAULT_STAGES_PATH = CATALOG_DIR / "stages.yaml"
DEFAULT_PROMPTS_DIR = CATALOG_DIR / "prompts"


def parse_catalog(data: Dict[str, Any]) -> StageCatalog:
    if not isinstance(data, dict):
        raise CatalogError("stage_catalog_invalid: expected a mapping at top level")
    stages_raw = data.get("stages") or {}
    if not isinstance(stages_raw, dict):
        raise CatalogError("stage_catalog_invalid: 'stages' must be a mapping of name -> stage")
    stages: Dict[str, Any] = {}
    for name, body in stages_raw.items():
        body = dict(body or {})
        body["name"] = str(name)
        stages[str(name)] = body
    outcomes: List[Any] = list(data.get("outcomes") or [])
    try:
        return StageCatalog.model_validate(
            {"stages": stages, "plan": list(data.get("plan") or []), "outcomes": outcomes}
        )
    except ValidationError as e:
        raise CatalogError(f"stage_catalog_invalid: {e}") from e


def load_catalog(path: str | Path | None = None) -> StageCatalog:
    p = Path(path) if path else DEFAULT_STAGES_PATH
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise CatalogError(f"stage_catalog_not_found: {p}") from e
    except yaml.YAMLError as e:
        raise CatalogError(f"stage_catalog_yaml_error: {p}: {e}") from e
    return parse_catalog(data or {})
