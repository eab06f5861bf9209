"""Versioned, file-based run store.

Layout under the store root:

    people/{personId}/person.json
    people/{personId}/latest.json                      {runId, runPath}
    people/{personId}/runs/{runId}/evidence-pack.json
    people/{personId}/runs/{runId}/redacted-pack.json
    people/{personId}/runs/{runId}/raw-document.md
    people/{personId}/runs/{runId}/ai-stages/normalized/{sourceId}.json
    people/{personId}/runs/{runId}/ai-stages/clustered.json
    people/{personId}/runs/{runId}/ai-stages/synthesis.json
    people/{personId}/runs/{runId}/ai-stages/state.json
    people/{personId}/runs/{runId}/ai-stages/.{stage}.lock, .state.lock
    people/{personId}/runs/{runId}/contextualized.md

Every write goes to a temp file in the target directory and is moved into place with
os.replace, so a reader never sees a half-written artifact. Same-key writers are
last-write-wins.
"""

import json
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from filelock import FileLock

from ..errors import RunNotFoundError
from ..log import get_logger
from ..schemas.evidence import ContractModel, EvidencePack, PersonSnapshot
from ..schemas.outputs import ClusterResult, NormalizedSource, Synthesis

logger = get_logger("store")

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

EVIDENCE_PACK = "evidence-pack.json"
REDACTED_PACK = "redacted-pack.json"
RAW_DOCUMENT = "raw-document.md"
CONTEXTUALIZED = "contextualized.md"
STAGES_DIR = "ai-stages"
NORMALIZED_DIR = "normalized"
CLUSTERED = "clustered.json"
SYNTHESIS = "synthesis.json"
STATE = "state.json"

# Seconds to wait for another writer of state.json
STATE_LOCK_TIMEOUT = 30


class PersonRecord(PersonSnapshot):
    created_at: str
    updated_at: str


class LatestPointer(ContractModel):
    run_id: str
    run_path: str


def check_id(value: str, what: str = "id") -> str:
    if not value or not SAFE_ID_RE.match(value):
        raise ValueError(f"Invalid {what} {value!r}: only letters, digits, '-' and '_' are allowed")
    return value


def write_atomic(path: Path, content: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


class RunStore:
    def __init__(self, root: str):
        self.root = Path(root)

    # Paths

    def person_dir(self, person_id: str) -> Path:
        return self.root / "people" / check_id(person_id, "person id")

    def run_dir(self, person_id: str, run_id: str) -> Path:
        return self.person_dir(person_id) / "runs" / check_id(run_id, "run id")

    def stages_dir(self, person_id: str, run_id: str) -> Path:
        return self.run_dir(person_id, run_id) / STAGES_DIR

    def relative_run_path(self, person_id: str, run_id: str) -> str:
        return f"people/{person_id}/runs/{run_id}"

    def _require_run(self, person_id: str, run_id: str) -> Path:
        path = self.run_dir(person_id, run_id)
        if not (path / EVIDENCE_PACK).exists():
            raise RunNotFoundError(f"No run {run_id} for person {person_id}")
        return path

    def _read_text(self, path: Path) -> str:
        if not path.exists():
            raise RunNotFoundError(f"Missing artifact: {path.relative_to(self.root)}")
        return path.read_text(encoding="utf-8")

    def _read_json(self, path: Path) -> Any:
        return json.loads(self._read_text(path))

    # People

    def upsert_person(self, person: PersonSnapshot, now: str) -> PersonRecord:
        path = self.person_dir(person.family_search_id) / "person.json"
        created_at = now
        if path.exists():
            created_at = PersonRecord.model_validate(self._read_json(path)).created_at
        record = PersonRecord(**person.model_dump(), created_at=created_at, updated_at=now)
        write_atomic(path, record.to_json() + "\n")
        return record

    def get_person(self, person_id: str) -> PersonRecord:
        path = self.person_dir(person_id) / "person.json"
        if not path.exists():
            raise RunNotFoundError(f"Unknown person {person_id}")
        return PersonRecord.model_validate(self._read_json(path))

    def list_people(self) -> List[PersonRecord]:
        people_dir = self.root / "people"
        if not people_dir.exists():
            return []
        people = []
        for entry in sorted(people_dir.iterdir()):
            if entry.is_dir() and (entry / "person.json").exists():
                people.append(self.get_person(entry.name))
        return people

    # Runs

    def list_runs(self, person_id: str) -> List[str]:
        """Run ids, newest first. Run ids sort chronologically as plain strings."""
        runs_dir = self.person_dir(person_id) / "runs"
        if not runs_dir.exists():
            return []
        runs = [p.name for p in runs_dir.iterdir() if (p / EVIDENCE_PACK).exists()]
        return sorted(runs, reverse=True)

    def set_latest(self, person_id: str, run_id: str) -> LatestPointer:
        pointer = LatestPointer(run_id=run_id, run_path=self.relative_run_path(person_id, run_id))
        write_atomic(self.person_dir(person_id) / "latest.json", pointer.to_json() + "\n")
        return pointer

    def get_latest(self, person_id: str) -> Optional[LatestPointer]:
        path = self.person_dir(person_id) / "latest.json"
        if not path.exists():
            return None
        return LatestPointer.model_validate(self._read_json(path))

    def run_exists(self, person_id: str, run_id: str) -> bool:
        return (self.run_dir(person_id, run_id) / EVIDENCE_PACK).exists()

    # Capture artifacts

    def save_pack(self, person_id: str, pack: EvidencePack):
        write_atomic(self.run_dir(person_id, pack.run_id) / EVIDENCE_PACK, pack.to_json() + "\n")

    def load_pack(self, person_id: str, run_id: str) -> EvidencePack:
        path = self._require_run(person_id, run_id)
        return EvidencePack.model_validate(self._read_json(path / EVIDENCE_PACK))

    def save_redacted_pack(self, person_id: str, pack: EvidencePack):
        write_atomic(self.run_dir(person_id, pack.run_id) / REDACTED_PACK, pack.to_json() + "\n")

    def load_redacted_pack(self, person_id: str, run_id: str) -> Optional[EvidencePack]:
        path = self._require_run(person_id, run_id) / REDACTED_PACK
        if not path.exists():
            return None
        return EvidencePack.model_validate(self._read_json(path))

    def save_raw_document(self, person_id: str, run_id: str, markdown: str):
        write_atomic(self.run_dir(person_id, run_id) / RAW_DOCUMENT, markdown)

    def load_raw_document(self, person_id: str, run_id: str) -> str:
        return self._read_text(self._require_run(person_id, run_id) / RAW_DOCUMENT)

    def save_dossier(self, person_id: str, run_id: str, markdown: str):
        write_atomic(self.run_dir(person_id, run_id) / CONTEXTUALIZED, markdown)

    def load_dossier(self, person_id: str, run_id: str) -> Optional[str]:
        path = self._require_run(person_id, run_id) / CONTEXTUALIZED
        return path.read_text(encoding="utf-8") if path.exists() else None

    # Stage artifacts

    def save_normalized(self, person_id: str, run_id: str, normalized: List[NormalizedSource]):
        """
        One file per source. The whole set is written into a staging directory and
        swapped in only once every file is written, so a failure part way through
        leaves the previous set untouched.
        """
        names = [f"{check_id(entry.source_id, 'source id')}.json" for entry in normalized]
        stages = self.stages_dir(person_id, run_id)
        stages.mkdir(parents=True, exist_ok=True)
        directory = stages / NORMALIZED_DIR

        staging = Path(tempfile.mkdtemp(dir=stages, prefix=f".{NORMALIZED_DIR}.", suffix=".tmp"))
        retired = None
        try:
            for name, entry in zip(names, normalized):
                write_atomic(staging / name, entry.to_json() + "\n")
            if directory.exists():
                retired = stages / f"{staging.name[:-len('.tmp')]}.old"
                os.replace(directory, retired)
            try:
                os.replace(staging, directory)
            except OSError:
                if retired is not None:
                    os.replace(retired, directory)
                    retired = None
                raise
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)

    def load_normalized(self, person_id: str, run_id: str, order: Iterable[str] = ()) -> List[NormalizedSource]:
        """Normalized entries in `order` (pack order); anything else follows by name."""
        directory = self._require_run(person_id, run_id) / STAGES_DIR / NORMALIZED_DIR
        files = {p.stem: p for p in directory.glob("*.json")} if directory.exists() else {}
        if not files:
            raise RunNotFoundError(f"No normalized output for run {run_id}")
        ordered = [sid for sid in order if sid in files]
        ordered += sorted(sid for sid in files if sid not in set(ordered))
        return [NormalizedSource.model_validate(self._read_json(files[sid])) for sid in ordered]

    def save_clusters(self, person_id: str, run_id: str, result: ClusterResult):
        write_atomic(self.stages_dir(person_id, run_id) / CLUSTERED, result.to_json() + "\n")

    def load_clusters(self, person_id: str, run_id: str) -> ClusterResult:
        path = self._require_run(person_id, run_id) / STAGES_DIR / CLUSTERED
        return ClusterResult.model_validate(self._read_json(path))

    def save_synthesis(self, person_id: str, run_id: str, synthesis: Synthesis):
        write_atomic(self.stages_dir(person_id, run_id) / SYNTHESIS, synthesis.to_json() + "\n")

    def load_synthesis(self, person_id: str, run_id: str) -> Synthesis:
        path = self._require_run(person_id, run_id) / STAGES_DIR / SYNTHESIS
        return Synthesis.model_validate(self._read_json(path))

    # Durable stage state

    def save_state(self, person_id: str, run_id: str, state: Dict[str, Any]):
        write_atomic(self.stages_dir(person_id, run_id) / STATE, _dump(state))

    def load_state(self, person_id: str, run_id: str) -> Optional[Dict[str, Any]]:
        path = self._require_run(person_id, run_id) / STAGES_DIR / STATE
        if not path.exists():
            return None
        return self._read_json(path)

    def discard_derived(self, person_id: str, run_id: str):
        """
        Forget everything computed from the evidence pack after it has been replaced:
        the redacted copy, the stage state and the dossier. Stage outputs stay on disk
        but every stage is pending again, so none of them is read before it is redone.
        """
        run_dir = self._require_run(person_id, run_id)
        with self.state_lock(person_id, run_id):
            for path in (run_dir / REDACTED_PACK, run_dir / STAGES_DIR / STATE, run_dir / CONTEXTUALIZED):
                if path.exists():
                    path.unlink()
        logger.info(f"Discarded derived artifacts for run {run_id}")

    # Locks (OS file locks, released when the holding process exits)

    def stage_lock(self, person_id: str, run_id: str, stage: str) -> FileLock:
        stages = self.stages_dir(person_id, run_id)
        stages.mkdir(parents=True, exist_ok=True)
        return FileLock(str(stages / f".{stage}.lock"))

    def state_lock(self, person_id: str, run_id: str) -> FileLock:
        stages = self.stages_dir(person_id, run_id)
        stages.mkdir(parents=True, exist_ok=True)
        return FileLock(str(stages / ".state.lock"), timeout=STATE_LOCK_TIMEOUT)
