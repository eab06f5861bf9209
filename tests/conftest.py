import json
from datetime import datetime, timezone

import pytest
from dotenv import load_dotenv

from source_docs.schemas.evidence import (
    Diagnostics,
    EvidencePack,
    IndexedField,
    IndexedInfo,
    PersonSnapshot,
    Source,
    source_key,
)
from source_docs.store.runs import RunStore

CAPTURED_AT = "2024-01-02T03:04:05.678Z"
RUN_ID = "2024-01-02T03-04-05-678Z"
PERSON_ID = "KWJ1-234"


@pytest.fixture(scope="session", autouse=True)
def _load_env():
    # Load .env once per session to avoid side-effects on import time
    load_dotenv()


def make_source(i: int, title: str, citation: str = None, source_type: str = "record", **fields) -> Source:
    return Source(
        id=f"S{i + 1}",
        order_index=i,
        source_key=source_key(citation, fields.get("web_page_url"), title),
        source_type=source_type,
        title=title,
        citation=citation,
        **fields,
    )


@pytest.fixture
def sample_pack() -> EvidencePack:
    sources = [
        make_source(
            0,
            "United States Census, 1900",
            "\"United States Census, 1900,\" database, FamilySearch, John Smith, Ohio.",
            date="1900",
            web_page_url="https://www.familysearch.org/ark:/61903/1:1:M9X1-ABC",
            attached_by="Jane Roe",
            attached_at="3 March 2019",
            reason_attached="Same name, parents and birthplace | matches family",
            indexed=IndexedInfo(fields=[
                IndexedField(label="Name", value="John Smith"),
                IndexedField(label="Birth Year", value="1872"),
                IndexedField(label="Residence", value="Columbus, Franklin, Ohio"),
            ]),
            raw_text="United States Census, 1900\nJohn Smith, Ohio",
            expanded=True,
            expansion_attempts=1,
            expansion_succeeded=True,
        ),
        make_source(
            1,
            "Ohio Deaths, 1908-1953",
            "Ohio Deaths, certificate 4411, John Smith, 1931.",
            date="14 June 1931",
            reason_attached="Contact descendant at jane.roe@example.com or 614-555-0199",
            indexed=IndexedInfo(fields=[
                IndexedField(label="Name", value="John Smith"),
                IndexedField(label="Death Date", value="14 June 1931"),
            ]),
            raw_text="Ohio Deaths\nInformant lived at 42 Maple Street, Columbus",
            expansion_attempts=1,
            expansion_succeeded=False,
        ),
        make_source(
            2,
            "Family photo",
            source_type="photo",
            raw_text="Photo of John Smith with children",
        ),
    ]
    return EvidencePack(
        run_id=RUN_ID,
        captured_at=CAPTURED_AT,
        extraction_duration_ms=4200,
        source_url=f"https://www.familysearch.org/tree/person/sources/{PERSON_ID}",
        page_title="John Smith - Sources",
        person=PersonSnapshot(family_search_id=PERSON_ID, name="John Smith", birth_date="1872", death_date="1931"),
        sources=sources,
        diagnostics=Diagnostics(total_sources=3, expanded_sections=1, failed_expansions=1, discovered_sources=3),
    )


@pytest.fixture
def fixed_now():
    return lambda: datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path) -> RunStore:
    return RunStore(str(tmp_path / "store"))


@pytest.fixture
def imported_run(store, sample_pack, fixed_now):
    from source_docs.pipeline.ingest import import_evidence_pack
    return import_evidence_pack(store, sample_pack, now=fixed_now)


def normalized_entry(source_id: str, **overrides) -> dict:
    entry = {
        "sourceId": source_id,
        "summary": f"Summary of {source_id}",
        "entities": [{"name": "John Smith", "type": "person", "role": "subject"}],
        "dates": [{"date": "1900", "type": "residence", "precision": "exact"}],
        "places": [{"name": "Ohio", "type": "residence"}],
        "relationships": [],
        "claims": [f"Claim from {source_id}"],
        "confidence": "high",
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def normalized_reply() -> str:
    return json.dumps([normalized_entry(sid) for sid in ("S1", "S2", "S3")])


@pytest.fixture
def cluster_reply() -> str:
    return json.dumps({
        "clusters": [{
            "id": "C1",
            "type": "same_event",
            "sourceIds": ["S1", "S2"],
            "reason": "Both describe John Smith of Ohio",
            "primarySourceId": "S1",
        }],
        "standalone": ["S3"],
    })


@pytest.fixture
def synthesis_reply() -> str:
    return json.dumps({
        "summary": "John Smith lived in Ohio and died in 1931.",
        "verifiedFacts": [{"fact": "Lived in Columbus in 1900", "sourceIds": ["S1"], "confidence": "high"}],
        "conflicts": [],
        "timeline": [
            {"date": "1900", "event": "Enumerated in Columbus", "sourceIds": ["S1"]},
            {"date": "14 June 1931", "event": "Died", "sourceIds": ["S2"]},
        ],
        "researchSuggestions": ["Search Ohio birth records for 1872"],
    })


@pytest.fixture(name="normalized_entry")
def normalized_entry_factory():
    return normalized_entry
