import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from source_docs.schemas.evidence import (
    EvidencePack,
    derive_run_id,
    format_timestamp,
    infer_source_type,
    source_key,
)


def test_source_key_is_deterministic():
    """
    WHY: The key recognises the same record across captures, so it must be stable.
    HOW: Compute the key twice for the same inputs.
    EXPECTED: Identical 16-character hex strings.
    """
    first = source_key("Citation", "https://example.org/ark:/1", "Title")
    second = source_key("Citation", "https://example.org/ark:/1", "Title")
    assert first == second
    assert len(first) == 16
    int(first, 16)


def test_source_key_changes_with_each_field():
    base = source_key("c", "u", "t")
    assert source_key("c2", "u", "t") != base
    assert source_key("c", "u2", "t") != base
    assert source_key("c", "u", "t2") != base


def test_source_key_missing_fields_behave_as_empty():
    assert source_key(None, None, "Title") == source_key("", "", "Title")
    assert source_key(None, None, None) == source_key("", "", "")


def test_derive_run_id():
    assert derive_run_id("2024-01-02T03:04:05.678Z") == "2024-01-02T03-04-05-678Z"
    assert derive_run_id("2024-01-02T03:04:05Z") == "2024-01-02T03-04-05-000Z"
    assert derive_run_id("2024-01-02T04:04:05.678+01:00") == "2024-01-02T03-04-05-678Z"


def test_format_timestamp_is_utc_with_millis():
    value = datetime(2024, 1, 2, 3, 4, 5, 678900, tzinfo=timezone.utc)
    assert format_timestamp(value) == "2024-01-02T03:04:05.678Z"


@pytest.mark.parametrize("title,citation,expected", [
    ("United States Census, 1900", None, "record"),
    ("Ohio Deaths", "death certificate", "record"),
    ("Memories of Grandpa", None, "memory"),
    ("Life story", None, "story"),
    ("Family photo", None, "photo"),
    ("Find a Grave", None, "other"),
])
def test_infer_source_type(title, citation, expected):
    assert infer_source_type(title, citation) == expected


def test_pack_round_trips_camel_case(sample_pack):
    """
    WHY: Packs are exchanged with the browser extension as camelCase JSON.
    HOW: Serialize the sample pack and parse it back.
    EXPECTED: camelCase keys on disk and an equal model after parsing.
    """
    data = json.loads(sample_pack.to_json())
    assert data["schemaVersion"] == "1.0"
    assert data["sources"][0]["orderIndex"] == 0
    assert data["sources"][0]["sourceKey"] == sample_pack.sources[0].source_key
    assert "order_index" not in data["sources"][0]

    assert EvidencePack.model_validate(data) == sample_pack


def test_order_index_must_match_position(sample_pack):
    """
    WHY: sources[i].orderIndex == i is what lets every later artifact trust page order.
    HOW: Swap two sources without renumbering them.
    EXPECTED: Validation fails.
    """
    data = sample_pack.to_dict()
    data["sources"][0], data["sources"][1] = data["sources"][1], data["sources"][0]
    with pytest.raises(ValidationError, match="orderIndex"):
        EvidencePack.model_validate(data)


def test_source_ids_must_be_unique(sample_pack):
    data = sample_pack.to_dict()
    data["sources"][1]["id"] = "S1"
    with pytest.raises(ValidationError, match="not unique"):
        EvidencePack.model_validate(data)


def test_unknown_schema_version_rejected(sample_pack):
    data = sample_pack.to_dict()
    data["schemaVersion"] = "2.0"
    with pytest.raises(ValidationError):
        EvidencePack.model_validate(data)
