"""Evidence Pack ingestion into the run store.

Importing the same capture twice lands in the same run directory: the run id is a
pure function of capturedAt. A recapture with different content replaces the pack
and sends every AI stage back to pending.
"""

import json
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from ..errors import CaptureError
from ..log import get_logger
from ..rendering.raw_document import render_raw
from ..schemas.evidence import EvidencePack, derive_run_id, format_timestamp
from ..store.runs import RunStore, check_id

logger = get_logger("ingest")


class IngestResult(BaseModel):
    person_id: str
    run_id: str
    run_path: str
    is_new: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_pack(data: Union[str, bytes, dict, EvidencePack]) -> EvidencePack:
    """Parse and validate an Evidence Pack from JSON text, a dict, or a model."""
    if isinstance(data, EvidencePack):
        return data
    try:
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        return EvidencePack.model_validate(data)
    except json.JSONDecodeError as e:
        raise CaptureError(f"Evidence pack is not valid JSON: {e}") from e
    except ValidationError as e:
        raise CaptureError(f"Evidence pack failed validation: {e}") from e


def import_evidence_pack(
    store: RunStore,
    data: Union[str, bytes, dict, EvidencePack],
    now: Optional[Callable[[], datetime]] = None,
) -> IngestResult:
    now = now or _utc_now
    pack = load_pack(data)

    person_id = pack.person.family_search_id
    if not person_id.strip():
        raise CaptureError("Evidence pack has no FamilySearch person id")

    try:
        run_id = derive_run_id(pack.captured_at)
    except ValueError as e:
        raise CaptureError(f"Evidence pack has an unreadable capturedAt {pack.captured_at!r}") from e
    if pack.run_id != run_id:
        logger.info(f"Normalizing run id {pack.run_id!r} -> {run_id!r}")
        pack = pack.model_copy(update={"run_id": run_id})

    # Ids name directories and files in the run store.
    try:
        check_id(person_id, "person id")
        for source in pack.sources:
            check_id(source.id, "source id")
    except ValueError as e:
        raise CaptureError(f"Evidence pack has an unusable id: {e}") from e

    is_new = not store.run_exists(person_id, run_id)
    replaced = not is_new and store.load_pack(person_id, run_id).to_dict() != pack.to_dict()
    stamp = format_timestamp(now())

    store.upsert_person(pack.person, stamp)
    store.save_pack(person_id, pack)
    if replaced:
        logger.warning(f"Run {run_id} was recaptured with different content; AI stages must be run again")
        store.discard_derived(person_id, run_id)
    store.save_raw_document(person_id, run_id, render_raw(pack, generated_at=stamp))

    # An older capture imported late must not move the pointer backwards.
    newest = store.list_runs(person_id)[0]
    store.set_latest(person_id, newest)

    logger.info(
        f"{'Imported' if is_new else 'Re-imported'} run {run_id} for {person_id} "
        f"({len(pack.sources)} sources, outcome={pack.diagnostics.outcome})"
    )
    return IngestResult(
        person_id=person_id,
        run_id=run_id,
        run_path=store.relative_run_path(person_id, run_id),
        is_new=is_new,
    )
