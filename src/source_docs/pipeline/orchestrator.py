"""Staged AI pipeline: Normalize -> Cluster -> Synthesize.

Each stage moves pending -> processing -> complete | error. A stage may only start
once every earlier stage is complete, and that is checked before any prompt is built
or request sent. The direct path (completion endpoint) and the import path (text
pasted from an external tool) both hand their candidate text to one acceptance gate:
JSON extraction, then the stage schema, then the cross-artifact id checks. Nothing is
written over a stage's last good artifact until a new one has passed that gate.

Stage state is persisted to ai-stages/state.json after every transition, so a stage
waiting on an exported prompt survives a restart.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from filelock import Timeout
from pydantic import Field, ValidationError

from ..config import get_settings
from ..errors import (
    InvalidTransitionError,
    PreconditionError,
    ProviderError,
    RunNotFoundError,
    SchemaValidationError,
    StageBusyError,
    StageError,
    StorageError,
)
from ..llm.client import CompletionClient
from ..llm.parsing import extract_json
from ..llm.prompts import build_export_prompt, build_stage_prompt
from ..log import get_logger
from ..mlops.tracing import get_tracer
from ..redaction.redactor import redact, redaction_summary
from ..rendering.dossier import render_dossier
from ..schemas.evidence import ContractModel, EvidencePack, format_timestamp
from ..schemas.outputs import (
    STAGE_ORDER,
    ClusterResult,
    NormalizedSources,
    StageName,
    Synthesis,
    check_cluster_coverage,
    check_cluster_references,
    check_normalized_ids,
    check_synthesis_traceability,
)
from ..store.runs import RunStore

logger = get_logger("pipeline")


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


# processing -> processing covers a re-export, or a resumed attempt after a restart.
# complete -> pending is downstream invalidation; any -> pending is an explicit reset.
TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.PROCESSING},
    StageStatus.PROCESSING: {StageStatus.PROCESSING, StageStatus.COMPLETE, StageStatus.ERROR, StageStatus.PENDING},
    StageStatus.COMPLETE: {StageStatus.PROCESSING, StageStatus.PENDING},
    StageStatus.ERROR: {StageStatus.PROCESSING, StageStatus.PENDING},
}


class StageState(ContractModel):
    status: StageStatus = StageStatus.PENDING
    # "direct" or "import"; set while processing and kept once complete
    path: Optional[str] = None
    awaiting_import: bool = False
    error_kind: Optional[str] = None
    error: Optional[str] = None
    retry_hint: Optional[str] = None
    issues: List[str] = Field(default_factory=list)
    updated_at: Optional[str] = None


class PipelineState(ContractModel):
    normalize: StageState = Field(default_factory=StageState)
    cluster: StageState = Field(default_factory=StageState)
    synthesize: StageState = Field(default_factory=StageState)

    def stage(self, stage: StageName) -> StageState:
        return getattr(self, stage.value)


def format_validation_issues(error: ValidationError) -> List[str]:
    """'[0].confidence: Field required' style messages, one per failure."""
    issues = []
    for item in error.errors():
        path = ""
        for part in item["loc"]:
            if isinstance(part, int):
                path += f"[{part}]"
            else:
                path += f".{part}" if path else str(part)
        issues.append(f"{path or '(root)'}: {item['msg']}")
    return issues


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StageOrchestrator:
    def __init__(
        self,
        store: RunStore,
        person_id: str,
        run_id: str,
        client: Optional[CompletionClient] = None,
        use_redacted: bool = True,
        strict_coverage: Optional[bool] = None,
        prompts_dir: Optional[str] = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        if not store.run_exists(person_id, run_id):
            raise RunNotFoundError(f"No run {run_id} for person {person_id}")
        settings = get_settings()
        self.store = store
        self.person_id = person_id
        self.run_id = run_id
        self._client = client
        self.use_redacted = use_redacted
        self.strict_coverage = settings.STRICT_CLUSTER_COVERAGE if strict_coverage is None else strict_coverage
        self.prompts_dir = prompts_dir if prompts_dir is not None else settings.PROMPTS_DIR
        self.now = now

    @property
    def client(self) -> CompletionClient:
        if self._client is None:
            self._client = CompletionClient()
        return self._client

    # State

    def status(self) -> PipelineState:
        data = self.store.load_state(self.person_id, self.run_id)
        return PipelineState.model_validate(data) if data else PipelineState()

    def _save(self, state: PipelineState):
        self.store.save_state(self.person_id, self.run_id, state.to_dict())

    def _transition(self, stage: StageName, target: StageStatus, **fields) -> StageState:
        with self.store.state_lock(self.person_id, self.run_id):
            state = self.status()
            current = state.stage(stage)
            if target not in TRANSITIONS[current.status]:
                raise InvalidTransitionError(f"{stage.value}: cannot move from {current.status.value} to {target.value}")
            updated = StageState(status=target, updated_at=format_timestamp(self.now()), **fields)
            if target == StageStatus.COMPLETE and "path" not in fields:
                updated.path = current.path
            setattr(state, stage.value, updated)

            if target == StageStatus.COMPLETE:
                for later in STAGE_ORDER[STAGE_ORDER.index(stage) + 1:]:
                    if state.stage(later).status == StageStatus.COMPLETE:
                        logger.info(f"{later.value} is now out of date; returning it to pending")
                        setattr(state, later.value, StageState(status=StageStatus.PENDING, updated_at=updated.updated_at))
            self._save(state)
            return updated

    def _fail(self, stage: StageName, error: StageError):
        issues = getattr(error, "issues", [])
        self._transition(
            stage,
            StageStatus.ERROR,
            error_kind=error.kind,
            error=error.message,
            retry_hint=error.retry_hint,
            issues=issues,
        )
        logger.warning(f"{stage.value} failed ({error.kind}): {error.message}")

    def check_preconditions(self, stage: StageName):
        state = self.status()
        for earlier in STAGE_ORDER[:STAGE_ORDER.index(stage)]:
            if state.stage(earlier).status != StageStatus.COMPLETE:
                raise PreconditionError(
                    f"Cannot start {stage.value}: {earlier.value} is {state.stage(earlier).status.value}, not complete"
                )

    # Inputs

    def input_pack(self) -> EvidencePack:
        pack = self.store.load_pack(self.person_id, self.run_id)
        if not self.use_redacted:
            return pack
        redacted = self.store.load_redacted_pack(self.person_id, self.run_id)
        if redacted is None:
            result = redact(pack)
            redacted = result.redacted_pack
            self.store.save_redacted_pack(self.person_id, redacted)
            logger.info(f"{redaction_summary(result.redactions)} (living indicators: {result.has_living_indicators})")
        return redacted

    def stage_input(self, stage: StageName) -> Any:
        """The JSON payload a stage is given. Raises PreconditionError if it cannot exist yet."""
        self.check_preconditions(stage)
        pack = self.input_pack()
        if stage == StageName.NORMALIZE:
            return [s.to_dict() for s in pack.sources]

        try:
            normalized = self.store.load_normalized(self.person_id, self.run_id, pack.source_ids())
            if stage == StageName.CLUSTER:
                return [n.to_dict() for n in normalized]
            clusters = self.store.load_clusters(self.person_id, self.run_id)
        except RunNotFoundError as e:
            raise PreconditionError(f"Cannot start {stage.value}: {e}") from e
        return {
            "person": pack.person.to_dict(),
            "normalizedSources": [n.to_dict() for n in normalized],
            "clusters": clusters.to_dict(),
        }

    def _normalized_ids(self) -> List[str]:
        pack = self.input_pack()
        try:
            normalized = self.store.load_normalized(self.person_id, self.run_id, pack.source_ids())
        except RunNotFoundError as e:
            raise PreconditionError(str(e)) from e
        return [n.source_id for n in normalized]

    # Acceptance gate

    def _accept(self, stage: StageName, candidate_text: str):
        """Parse, validate and cross-check a candidate. Returns the typed artifact."""
        data = extract_json(candidate_text)

        try:
            if stage == StageName.NORMALIZE:
                artifact = NormalizedSources.validate_python(data)
            elif stage == StageName.CLUSTER:
                artifact = ClusterResult.model_validate(data)
            else:
                artifact = Synthesis.model_validate(data)
        except ValidationError as e:
            raise SchemaValidationError(stage.value, format_validation_issues(e)) from e

        if stage == StageName.NORMALIZE:
            issues = check_normalized_ids(artifact, self.input_pack().source_ids(), require_all=self.strict_coverage)
        elif stage == StageName.CLUSTER:
            normalized_ids = self._normalized_ids()
            issues = check_cluster_references(artifact, normalized_ids)
            coverage = check_cluster_coverage(artifact, normalized_ids)
            if self.strict_coverage:
                issues += coverage
            else:
                for issue in coverage:
                    logger.warning(f"cluster coverage: {issue}")
        else:
            issues = check_synthesis_traceability(artifact, self._normalized_ids())

        if issues:
            raise SchemaValidationError(stage.value, issues)
        return artifact

    def _store(self, stage: StageName, artifact):
        if stage == StageName.NORMALIZE:
            self.store.save_normalized(self.person_id, self.run_id, artifact)
        elif stage == StageName.CLUSTER:
            self.store.save_clusters(self.person_id, self.run_id, artifact)
        else:
            self.store.save_synthesis(self.person_id, self.run_id, artifact)
            self.render_dossier(artifact)

    def _complete(self, stage: StageName, candidate_text: str):
        tracer = get_tracer()
        try:
            artifact = self._accept(stage, candidate_text)
        except StageError as e:
            tracer.trace_validation(stage.value, e.kind, len(getattr(e, "issues", [])))
            self._fail(stage, e)
            raise
        try:
            self._store(stage, artifact)
        except (OSError, ValueError) as e:
            error = StorageError(f"Could not store {stage.value} output: {e}")
            tracer.trace_validation(stage.value, error.kind)
            self._fail(stage, error)
            raise error from e
        self._transition(stage, StageStatus.COMPLETE)
        tracer.trace_validation(stage.value, "complete")
        logger.info(f"{stage.value} complete for run {self.run_id}")
        return artifact

    # Paths

    @contextmanager
    def _attempt(self, stage: StageName):
        """Hold the run/stage lock for one attempt. Another process or thread holding it means busy."""
        lock = self.store.stage_lock(self.person_id, self.run_id, stage.value)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            raise StageBusyError(f"{stage.value} is already running for run {self.run_id}") from None
        try:
            yield
        finally:
            lock.release()

    def run_stage(self, stage: StageName):
        """Direct path: prompt the completion endpoint and accept its reply."""
        self.check_preconditions(stage)
        with self._attempt(stage):
            payload = self.stage_input(stage)
            prompt = build_stage_prompt(stage, payload, self.prompts_dir)
            self._transition(stage, StageStatus.PROCESSING, path="direct")

            tracer = get_tracer()
            with tracer.span(
                f"stage.{stage.value}",
                span_type="CHAIN",
                attributes={"person_id": self.person_id, "run_id": self.run_id, "path": "direct"},
            ):
                try:
                    with tracer.span("llm.complete", span_type="LLM"):
                        result = self.client.complete(prompt.system, prompt.user)
                        tracer.trace_completion(
                            result.model, len(prompt.system) + len(prompt.user), len(result.content), result.usage
                        )
                except ProviderError as e:
                    self._fail(stage, e)
                    raise
                return self._complete(stage, result.content)

    def export_prompt(self, stage: StageName) -> str:
        """Export path, first half: the prompt to paste elsewhere. Marks the stage as awaiting import."""
        self.check_preconditions(stage)
        with self._attempt(stage):
            text = build_export_prompt(stage, self.stage_input(stage), self.prompts_dir)
            self._transition(stage, StageStatus.PROCESSING, path="import", awaiting_import=True)
            logger.info(f"Exported {stage.value} prompt ({len(text)} chars); awaiting import")
            return text

    def import_result(self, stage: StageName, text: str):
        """Export path, second half: accept pasted text through the same gate as the direct path."""
        self.check_preconditions(stage)
        with self._attempt(stage):
            self._transition(stage, StageStatus.PROCESSING, path="import")
            with get_tracer().span(
                f"stage.{stage.value}",
                span_type="CHAIN",
                attributes={"person_id": self.person_id, "run_id": self.run_id, "path": "import"},
            ):
                return self._complete(stage, text)

    def reset_stage(self, stage: StageName) -> StageState:
        """Back to pending. Stored artifacts are left in place."""
        with self._attempt(stage):
            if self.status().stage(stage).status == StageStatus.PENDING:
                return self.status().stage(stage)
            return self._transition(stage, StageStatus.PENDING)

    # Output

    def render_dossier(self, synthesis: Optional[Synthesis] = None) -> str:
        synthesis = synthesis or self.store.load_synthesis(self.person_id, self.run_id)
        person = self.store.load_pack(self.person_id, self.run_id).person
        markdown = render_dossier(person, synthesis, run_id=self.run_id, generated_at=format_timestamp(self.now()))
        self.store.save_dossier(self.person_id, self.run_id, markdown)
        return markdown
