"""Stage prompt templates and request construction.

Templates are YAML documents with `content` (instructions), `output_shape` (the
schema the stage's validator enforces) and `framing` (lead-in for the data). The
bundled templates live next to this package; a PROMPTS_DIR overrides them per stage.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel

from ..schemas.outputs import StageName

BUNDLED_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

JSON_ONLY_RULE = (
    "Respond with JSON only. Do not add explanations, headings or markdown fences. "
    "A response that is not valid JSON, or does not match the schema above exactly, is rejected."
)


class StagePrompt(BaseModel):
    stage: StageName
    system: str
    user: str


def load_prompt(name: str, prompts_dir: Optional[str] = None) -> Dict[str, Any]:
    candidates = []
    if prompts_dir:
        candidates.append(Path(prompts_dir) / f"{name}.yaml")
    candidates.append(BUNDLED_PROMPTS_DIR / f"{name}.yaml")

    for path in candidates:
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not data.get("content") or not data.get("output_shape"):
                raise ValueError(f"Prompt {path} must define 'content' and 'output_shape'")
            return data

    raise FileNotFoundError(f"Prompt {name} not found")


def serialize_payload(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _framing(template: Dict[str, Any], payload: Any) -> str:
    text = template.get("framing") or "Process the following input."
    if isinstance(payload, list):
        count = len(payload)
    elif isinstance(payload, dict):
        count = len(payload.get("normalizedSources") or [])
    else:
        count = 0
    person = ""
    if isinstance(payload, dict) and isinstance(payload.get("person"), dict):
        person = payload["person"].get("name") or ""
    return text.replace("{count}", str(count)).replace("{person}", person or "this person").strip()


def build_system_prompt(stage: StageName, prompts_dir: Optional[str] = None) -> str:
    template = load_prompt(stage.value, prompts_dir)
    return (
        f"{template['content'].strip()}\n\n"
        f"## Required Output Schema\n{template['output_shape'].strip()}\n\n"
        f"{JSON_ONLY_RULE}"
    )


def build_stage_prompt(stage: StageName, payload: Any, prompts_dir: Optional[str] = None) -> StagePrompt:
    template = load_prompt(stage.value, prompts_dir)
    user = f"{_framing(template, payload)}\n\n# Input\n{serialize_payload(payload)}"
    return StagePrompt(stage=stage, system=build_system_prompt(stage, prompts_dir), user=user)


def build_export_prompt(stage: StageName, payload: Any, prompts_dir: Optional[str] = None) -> str:
    """
    One self-contained text blob for pasting into an external AI tool: instructions,
    schema, and the data, with nothing assumed about the tool.
    """
    template = load_prompt(stage.value, prompts_dir)
    return (
        f"# AI Processing Request: {stage.value.capitalize()} Stage\n\n"
        f"## Instructions\n{template['content'].strip()}\n\n"
        f"## Required Output Schema\n{template['output_shape'].strip()}\n\n"
        f"## Data to Process\n{_framing(template, payload)}\n\n"
        f"```json\n{serialize_payload(payload)}\n```\n\n"
        f"## Expected Output Format\n{JSON_ONLY_RULE}\n"
    )
