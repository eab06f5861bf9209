import json
from datetime import datetime, timezone

import pytest
from unittest.mock import patch

from source_docs.errors import CaptureError, RunNotFoundError
from source_docs.pipeline.ingest import import_evidence_pack
from source_docs.store import runs as runs_module
from source_docs.schemas.outputs import NormalizedSources

PERSON_ID = "KWJ1-234"
RUN_ID = "2024-01-02T03-04-05-678Z"


def test_import_writes_run_layout(store, imported_run):
    """
    WHY: The on-disk layout is an external contract shared with other tools.
    HOW: Import the sample pack into an empty store.
    EXPECTED: person.json, latest.json, the pack and the raw document at their fixed paths.
    """
    person_dir = store.root / "people" / PERSON_ID
    run_dir = person_dir / "runs" / RUN_ID

    assert imported_run.is_new is True
    assert imported_run.run_id == RUN_ID
    assert (run_dir / "evidence-pack.json").exists()
    assert (run_dir / "raw-document.md").read_text(encoding="utf-8").startswith("# John Smith")

    latest = json.loads((person_dir / "latest.json").read_text(encoding="utf-8"))
    assert latest == {"runId": RUN_ID, "runPath": f"people/{PERSON_ID}/runs/{RUN_ID}"}

    person = json.loads((person_dir / "person.json").read_text(encoding="utf-8"))
    assert person["familySearchId"] == PERSON_ID
    assert person["createdAt"] == person["updatedAt"] == "2024-05-06T07:08:09.000Z"


def test_reimport_is_idempotent(store, sample_pack, imported_run):
    """
    WHY: Re-importing the same capture must land in the same run, not create a new one.
    HOW: Import the sample pack a second time, later.
    EXPECTED: Same run id, one run on disk, createdAt kept and updatedAt moved.
    """
    later = lambda: datetime(2024, 7, 1, tzinfo=timezone.utc)
    again = import_evidence_pack(store, sample_pack.to_json(), now=later)

    assert again.run_id == imported_run.run_id
    assert again.is_new is False
    assert store.list_runs(PERSON_ID) == [RUN_ID]
    person = store.get_person(PERSON_ID)
    assert person.created_at == "2024-05-06T07:08:09.000Z"
    assert person.updated_at == "2024-07-01T00:00:00.000Z"


def test_run_id_is_derived_from_captured_at(store, sample_pack, fixed_now):
    sample_pack.run_id = "whatever"
    result = import_evidence_pack(store, sample_pack, now=fixed_now)
    assert result.run_id == RUN_ID
    assert store.load_pack(PERSON_ID, RUN_ID).run_id == RUN_ID


def test_latest_pointer_never_moves_backwards(store, sample_pack, imported_run, fixed_now):
    newer = sample_pack.model_copy(update={"captured_at": "2025-01-01T00:00:00.000Z"})
    import_evidence_pack(store, newer, now=fixed_now)
    older = sample_pack.model_copy(update={"captured_at": "2023-01-01T00:00:00.000Z"})
    import_evidence_pack(store, older, now=fixed_now)

    assert store.get_latest(PERSON_ID).run_id == "2025-01-01T00-00-00-000Z"
    assert store.list_runs(PERSON_ID) == [
        "2025-01-01T00-00-00-000Z",
        RUN_ID,
        "2023-01-01T00-00-00-000Z",
    ]


def test_import_rejects_invalid_pack(store):
    with pytest.raises(CaptureError):
        import_evidence_pack(store, "{not json")
    with pytest.raises(CaptureError):
        import_evidence_pack(store, {"runId": "x"})


def test_list_people(store, imported_run):
    people = store.list_people()
    assert [p.family_search_id for p in people] == [PERSON_ID]
    assert people[0].name == "John Smith"


def test_unsafe_ids_rejected(store):
    with pytest.raises(ValueError):
        store.run_dir("../etc", RUN_ID)
    with pytest.raises(ValueError):
        store.run_dir(PERSON_ID, "a/b")


def test_missing_run_raises(store):
    with pytest.raises(RunNotFoundError):
        store.load_pack(PERSON_ID, RUN_ID)


def test_normalized_files_per_source_in_pack_order(store, imported_run, normalized_entry):
    """
    WHY: Normalized output is stored one file per source and must come back in page order.
    HOW: Save entries out of order, then save a smaller result over them.
    EXPECTED: Reads follow the given order; files not in the newer result are removed.
    """
    entries = NormalizedSources.validate_python([normalized_entry(s) for s in ("S3", "S1", "S2")])
    store.save_normalized(PERSON_ID, RUN_ID, entries)

    directory = store.stages_dir(PERSON_ID, RUN_ID) / "normalized"
    assert sorted(p.name for p in directory.iterdir()) == ["S1.json", "S2.json", "S3.json"]
    loaded = store.load_normalized(PERSON_ID, RUN_ID, ["S1", "S2", "S3"])
    assert [n.source_id for n in loaded] == ["S1", "S2", "S3"]

    store.save_normalized(PERSON_ID, RUN_ID, entries[1:2])
    assert [p.name for p in directory.iterdir()] == ["S1.json"]


def test_writes_leave_no_temp_files(store, imported_run):
    store.save_state(PERSON_ID, RUN_ID, {"normalize": {"status": "pending"}})
    run_dir = store.run_dir(PERSON_ID, RUN_ID)
    leftovers = [p for p in run_dir.rglob("*") if p.name.endswith(".tmp")]
    assert leftovers == []
    assert store.load_state(PERSON_ID, RUN_ID) == {"normalize": {"status": "pending"}}


def test_import_rejects_unsafe_source_id(store, sample_pack, fixed_now):
    """
    WHY: Source ids become file names for normalized output, so they must be safe before anything is stored.
    HOW: Import a pack whose third source id contains a dot.
    EXPECTED: CaptureError naming the id, and no run is created.
    """
    data = sample_pack.to_dict()
    data["sources"][2]["id"] = "S3.photo"

    with pytest.raises(CaptureError, match="S3.photo"):
        import_evidence_pack(store, data, now=fixed_now)
    assert not store.run_exists(PERSON_ID, RUN_ID)


def test_failed_normalized_save_keeps_previous_set(store, imported_run, normalized_entry):
    """
    WHY: A re-attempt that fails while writing must not leave a half-replaced normalized set.
    HOW: Save a full set, then fail the second file write of a replacement set.
    EXPECTED: The error propagates, the original files and contents remain, and no staging directory is left.
    """
    first = NormalizedSources.validate_python([normalized_entry(s) for s in ("S1", "S2", "S3")])
    store.save_normalized(PERSON_ID, RUN_ID, first)
    stages = store.stages_dir(PERSON_ID, RUN_ID)
    before = {p.name: p.read_text(encoding="utf-8") for p in (stages / "normalized").iterdir()}

    real_write = runs_module.write_atomic
    calls = []

    def flaky_write(path, content):
        calls.append(path)
        if len(calls) == 2:
            raise OSError("disk full")
        return real_write(path, content)

    second = NormalizedSources.validate_python([normalized_entry(s, summary="changed") for s in ("S1", "S2")])
    with patch.object(runs_module, "write_atomic", side_effect=flaky_write):
        with pytest.raises(OSError):
            store.save_normalized(PERSON_ID, RUN_ID, second)

    after = {p.name: p.read_text(encoding="utf-8") for p in (stages / "normalized").iterdir()}
    assert after == before
    assert [p.name for p in stages.iterdir() if p.name.startswith(".normalized.")] == []


def test_recapture_with_new_content_discards_derived_artifacts(store, sample_pack, imported_run, fixed_now):
    """
    WHY: The redacted copy and stage state describe one version of the pack and go stale when it is replaced.
    HOW: Store a redacted pack and stage state, then re-import the same capture with changed source text.
    EXPECTED: The new pack is stored; the redacted copy and state are gone. An identical re-import keeps them.
    """
    store.save_redacted_pack(PERSON_ID, sample_pack)
    store.save_state(PERSON_ID, RUN_ID, {"normalize": {"status": "complete"}})

    import_evidence_pack(store, sample_pack, now=fixed_now)
    assert store.load_redacted_pack(PERSON_ID, RUN_ID) is not None
    assert store.load_state(PERSON_ID, RUN_ID) is not None

    data = sample_pack.to_dict()
    data["sources"][2]["rawText"] = "New text from recapture"
    import_evidence_pack(store, data, now=fixed_now)

    assert store.load_pack(PERSON_ID, RUN_ID).sources[2].raw_text == "New text from recapture"
    assert store.load_redacted_pack(PERSON_ID, RUN_ID) is None
    assert store.load_state(PERSON_ID, RUN_ID) is None
