"""Source Docs - evidence capture and staged AI synthesis for genealogical sources.

This package turns a captured FamilySearch sources page into a versioned Evidence
Pack, renders it into a lossless raw document, and drives a three-stage AI pipeline
(normalize -> cluster -> synthesize) whose outputs are schema-validated before they
are accepted.

Components:
- capture: paced, cancellable page extraction
- redaction: PII scrubbing before AI exposure
- rendering: raw document and contextualized dossier
- llm: prompts, completion client, JSON extraction
- pipeline: pack ingestion and stage orchestration
- store: versioned run storage
- main_cli: command line entry point
"""

__version__ = "1.0.0"
