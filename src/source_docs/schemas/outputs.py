"""Pydantic schemas for the three AI stage artifacts.

Stage A (normalize) -> list[NormalizedSource]
Stage B (cluster)   -> ClusterResult
Stage C (synthesize)-> Synthesis

The structural schemas only check shape. The cross-artifact checks at the bottom
tie every sourceId back to the evidence it came from.
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Iterable, List, Literal, Optional

from pydantic import TypeAdapter

from .evidence import ContractModel

Confidence = Literal["high", "medium", "low"]


class Entity(ContractModel):
    name: str
    type: Literal["person", "place", "organization"]
    role: Optional[str] = None


class DateMention(ContractModel):
    date: str
    type: str
    precision: Literal["exact", "estimated", "range"]


class PlaceMention(ContractModel):
    name: str
    type: str


class Relationship(ContractModel):
    person1: str
    person2: str
    type: str


class NormalizedSource(ContractModel):
    source_id: str
    summary: str
    entities: List[Entity]
    dates: List[DateMention]
    places: List[PlaceMention]
    relationships: List[Relationship]
    claims: List[str]
    confidence: Confidence


NormalizedSources = TypeAdapter(List[NormalizedSource])


class SourceCluster(ContractModel):
    id: str
    type: Literal["same_record", "same_event", "overlapping_info", "related"]
    source_ids: List[str]
    reason: str
    primary_source_id: str


class ClusterResult(ContractModel):
    clusters: List[SourceCluster]
    standalone: List[str]


class VerifiedFact(ContractModel):
    fact: str
    source_ids: List[str]
    confidence: Confidence


class ConflictPosition(ContractModel):
    claim: str
    source_ids: List[str]


class Conflict(ContractModel):
    description: str
    positions: List[ConflictPosition]


class TimelineEntry(ContractModel):
    date: str
    event: str
    source_ids: List[str]


class Synthesis(ContractModel):
    summary: str
    verified_facts: List[VerifiedFact]
    conflicts: List[Conflict]
    timeline: List[TimelineEntry]
    research_suggestions: List[str]

    def cited_source_ids(self) -> List[tuple]:
        """Every (path, sourceId) pair cited anywhere in the synthesis."""
        cited = []
        for i, fact in enumerate(self.verified_facts):
            cited.extend((f"verifiedFacts[{i}].sourceIds", sid) for sid in fact.source_ids)
        for i, conflict in enumerate(self.conflicts):
            for j, position in enumerate(conflict.positions):
                cited.extend((f"conflicts[{i}].positions[{j}].sourceIds", sid) for sid in position.source_ids)
        for i, entry in enumerate(self.timeline):
            cited.extend((f"timeline[{i}].sourceIds", sid) for sid in entry.source_ids)
        return cited


# Cross-artifact checks. Each returns a list of human-readable issues; empty = pass.

def check_normalized_ids(normalized: List[NormalizedSource], pack_ids: Iterable[str], require_all: bool = True) -> List[str]:
    known = list(pack_ids)
    known_set = set(known)
    issues = []
    counts = Counter(n.source_id for n in normalized)
    for i, entry in enumerate(normalized):
        if entry.source_id not in known_set:
            issues.append(f"[{i}].sourceId: {entry.source_id!r} does not match any source in the evidence pack")
    for sid, count in counts.items():
        if count > 1:
            issues.append(f"sourceId {sid!r} appears {count} times; expected one entry per source")
    if require_all:
        missing = [sid for sid in known if sid not in counts]
        if missing:
            issues.append(f"missing normalized entries for sources: {', '.join(missing)}")
    return issues


def check_cluster_references(result: ClusterResult, normalized_ids: Iterable[str]) -> List[str]:
    """Referenced ids must be normalized ids; a primary must belong to its cluster."""
    known = set(normalized_ids)
    issues = []
    for i, cluster in enumerate(result.clusters):
        for sid in cluster.source_ids:
            if sid not in known:
                issues.append(f"clusters[{i}].sourceIds: unknown sourceId {sid!r}")
        if cluster.primary_source_id not in cluster.source_ids:
            issues.append(
                f"clusters[{i}].primarySourceId: {cluster.primary_source_id!r} is not a member of cluster {cluster.id!r}"
            )
    for sid in result.standalone:
        if sid not in known:
            issues.append(f"standalone: unknown sourceId {sid!r}")
    return issues


def check_cluster_coverage(result: ClusterResult, normalized_ids: Iterable[str]) -> List[str]:
    """Every normalized source must sit in exactly one cluster or in standalone."""
    placements = Counter()
    for cluster in result.clusters:
        placements.update(cluster.source_ids)
    placements.update(result.standalone)

    issues = []
    for sid in normalized_ids:
        if placements[sid] == 0:
            issues.append(f"sourceId {sid!r} is not placed in any cluster or in standalone")
        elif placements[sid] > 1:
            issues.append(f"sourceId {sid!r} is placed {placements[sid]} times; expected exactly once")
    return issues


def check_synthesis_traceability(synthesis: Synthesis, normalized_ids: Iterable[str]) -> List[str]:
    known = set(normalized_ids)
    return [
        f"{path}: {sid!r} does not trace back to a normalized source"
        for path, sid in synthesis.cited_source_ids()
        if sid not in known
    ]


class StageName(str, Enum):
    NORMALIZE = "normalize"
    CLUSTER = "cluster"
    SYNTHESIZE = "synthesize"


STAGE_ORDER = [StageName.NORMALIZE, StageName.CLUSTER, StageName.SYNTHESIZE]
