import json

import pytest

from source_docs.llm.prompts import (
    build_export_prompt,
    build_stage_prompt,
    build_system_prompt,
    load_prompt,
)
from source_docs.schemas.outputs import StageName


@pytest.mark.parametrize("stage", list(StageName))
def test_system_prompt_states_schema_and_json_only(stage):
    """
    WHY: The stage hard-fails on non-conforming output, so the model must be told the shape.
    HOW: Build the system prompt for every stage.
    EXPECTED: The schema section and the JSON-only rule are present.
    """
    system = build_system_prompt(stage)
    assert "## Required Output Schema" in system
    assert "Respond with JSON only" in system


def test_stage_prompt_carries_payload_verbatim(sample_pack):
    payload = [s.to_dict() for s in sample_pack.sources]
    prompt = build_stage_prompt(StageName.NORMALIZE, payload)

    assert prompt.stage == StageName.NORMALIZE
    assert "3 genealogical sources" in prompt.user
    assert json.dumps(payload, indent=2, ensure_ascii=False) in prompt.user
    assert "sourceId" in prompt.system


def test_synthesize_framing_names_person(sample_pack):
    payload = {"person": sample_pack.person.to_dict(), "normalizedSources": [], "clusters": {"clusters": [], "standalone": []}}
    prompt = build_stage_prompt(StageName.SYNTHESIZE, payload)
    assert "Create a research dossier for John Smith." in prompt.user


def test_export_prompt_is_self_contained(sample_pack):
    """
    WHY: The export is pasted into an arbitrary tool with no other context.
    HOW: Build the cluster export prompt.
    EXPECTED: Instructions, schema, data and output rule in one blob.
    """
    payload = [{"sourceId": "S1", "summary": "x"}]
    text = build_export_prompt(StageName.CLUSTER, payload)

    assert text.startswith("# AI Processing Request: Cluster Stage")
    for section in ["## Instructions", "## Required Output Schema", "## Data to Process", "## Expected Output Format"]:
        assert section in text
    assert '"sourceId": "S1"' in text


def test_prompts_dir_overrides_bundled_template(tmp_path):
    (tmp_path / "cluster.yaml").write_text(
        "name: cluster\ncontent: Custom instructions\noutput_shape: '{}'\nframing: Go\n", encoding="utf-8"
    )
    assert load_prompt("cluster", str(tmp_path))["content"] == "Custom instructions"
    # stages without an override fall back to the bundled template
    assert "genealogist" in load_prompt("normalize", str(tmp_path))["content"]


def test_missing_prompt_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_prompt("nonexistent", str(tmp_path))
