from source_docs.rendering.dossier import render_dossier
from source_docs.rendering.raw_document import (
    anchor,
    code_span,
    escape_cell,
    fenced_block,
    render_raw,
)
from source_docs.schemas.evidence import IndexedField
from source_docs.schemas.outputs import (
    Conflict,
    ConflictPosition,
    Synthesis,
    TimelineEntry,
    VerifiedFact,
)

STAMP = "2024-05-06T07:08:09.000Z"


def test_raw_document_is_deterministic(sample_pack):
    """
    WHY: The raw document is the human-auditable copy of a capture and must not drift.
    HOW: Render the same pack twice with the same injected timestamp.
    EXPECTED: Byte-identical output.
    """
    assert render_raw(sample_pack, generated_at=STAMP) == render_raw(sample_pack, generated_at=STAMP)


def test_every_source_has_exactly_one_anchor(sample_pack):
    """
    WHY: The table of contents and external links depend on one stable anchor per source.
    HOW: Count "{#id}" anchors in the rendered document.
    EXPECTED: Each source id appears as an anchor exactly once, and the TOC links to it.
    """
    text = render_raw(sample_pack, generated_at=STAMP)
    for source in sample_pack.sources:
        assert text.count(f"{{#{source.id}}}") == 1
        assert f"](#{source.id})" in text


def test_anchors_are_distinct_for_distinct_ids():
    """
    WHY: Two sources must never share a link target, even when their ids differ only in punctuation.
    HOW: Anchor ids that a space-to-dash rule would merge.
    EXPECTED: Plain ids are unchanged and every id gets its own anchor.
    """
    ids = ["S 1", "S-1", "S_1", "S_20_1", "S1"]
    anchors = [anchor(i) for i in ids]

    assert anchor("S1") == "S1"
    assert anchor("S-1") == "S-1"
    assert len(set(anchors)) == len(ids)


def test_sources_rendered_in_page_order(sample_pack):
    text = render_raw(sample_pack)
    positions = [text.index(f"### {s.id}: ") for s in sample_pack.sources]
    assert positions == sorted(positions)


def test_no_field_is_dropped(sample_pack):
    text = render_raw(sample_pack)
    census = sample_pack.sources[0]
    for value in [census.title, census.date, census.web_page_url, census.attached_by, census.source_key]:
        assert value in text
    for field in census.indexed.fields:
        assert field.value in text
    assert "John Smith, Ohio" in text
    assert "*End of Source S3*" in text


def test_table_delimiters_are_escaped(sample_pack):
    """
    WHY: A pipe inside a value must not split a markdown table row.
    HOW: Add an indexed value containing a pipe and a newline.
    EXPECTED: The pipe is escaped and the newline becomes <br>.
    """
    sample_pack.sources[0].indexed.fields.append(IndexedField(label="Notes", value="a | b\nc"))
    text = render_raw(sample_pack)
    assert "| Notes | a \\| b<br>c |" in text


def test_original_label_column_only_when_present(sample_pack):
    assert "Original Label" not in render_raw(sample_pack)
    sample_pack.sources[1].indexed.fields[0].label_raw = "Nombre"
    assert "| Field | Original Label | Value |" in render_raw(sample_pack)


def test_diagnostics_section_always_present(sample_pack):
    text = render_raw(sample_pack)
    assert "## Extraction Diagnostics" in text
    assert text.count("- None recorded.") == 2


def test_escape_helpers():
    assert escape_cell(None) == ""
    assert escape_cell("a\\b") == "a\\\\b"
    assert code_span("x`y") == "``x`y``"
    assert fenced_block("```\ncode\n```")[0] == "````text"


def _synthesis(**overrides):
    data = dict(summary="Summary.", verified_facts=[], conflicts=[], timeline=[], research_suggestions=[])
    data.update(overrides)
    return Synthesis(**data)


def test_dossier_renders_empty_sections_explicitly(sample_pack):
    """
    WHY: An empty section means the model found nothing, which differs from not being attempted.
    HOW: Render a synthesis with every list empty.
    EXPECTED: Every section heading is present with its "none found" sentence.
    """
    text = render_dossier(sample_pack.person, _synthesis(), run_id="r1", generated_at=STAMP)
    for heading in ["## Executive Summary", "## Verified Facts", "## Conflicts", "## Timeline", "## Research Suggestions"]:
        assert heading in text
    assert "No verified facts were found." in text
    assert "No conflicts were found between sources." in text
    assert "No timeline events were found." in text
    assert "No research suggestions were found." in text


def test_dossier_lines_carry_source_ids(sample_pack):
    synthesis = _synthesis(
        verified_facts=[VerifiedFact(fact="Born 1872", source_ids=["S1", "S2"], confidence="high")],
        conflicts=[Conflict(description="Birth year", positions=[
            ConflictPosition(claim="1872", source_ids=["S1"]),
            ConflictPosition(claim="1873", source_ids=["S2"]),
        ])],
        timeline=[TimelineEntry(date="1900", event="Census", source_ids=["S1"])],
        research_suggestions=["Check church records"],
    )
    text = render_dossier(sample_pack.person, synthesis)

    assert "- Born 1872 _(confidence: high, sources: S1, S2)_" in text
    assert "  - 1873 _(sources: S2)_" in text
    assert "- **1900**: Census _(sources: S1)_" in text
    assert "- Check church records" in text
    assert render_dossier(sample_pack.person, synthesis) == text
