# storyforge/wire_schemas.py
"""
Pydantic models for everything the generative model sends back.

Keys are snake_case on the wire; camelCase spellings are accepted too since
models drift between the two. Scores are coerced and clamped instead of
rejected, so a rubric saying 3.6 or "4" still parses.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from storyforge.entities import (
    Entry,
    Interconnections,
    Ownership,
    Patch,
    PatchMatch,
    RelatedItemLink,
    RelationshipOperation,
)

RELATIONSHIP_KINDS = ("prerequisite", "parallel", "dependent", "related")

# Fix types (wire contract, append-only)
FIX_ADD_BIDIRECTIONAL_LINK = "add-bidirectional-link"
FIX_NORMALIZE_CONTRACT_ID = "normalize-contract-id"
FIX_NORMALIZE_TERM = "normalize-term-to-vocabulary"
FIX_TYPES = (FIX_ADD_BIDIRECTIONAL_LINK, FIX_NORMALIZE_CONTRACT_ID, FIX_NORMALIZE_TERM)


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


def _clamp_score(v: Any, lo: float = 0.0, hi: float = 5.0) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return lo
    return max(lo, min(hi, f))


def _norm_token(v: Any) -> str:
    """
    'stateModel' / 'state-model' / 'State Model' -> 'state_model'
    """
    s = str(v or "").strip()
    out = []
    for i, ch in enumerate(s):
        if ch.isupper() and i > 0 and s[i - 1].islower():
            out.append("_")
        out.append(ch.lower())
    return "".join(out).replace("-", "_").replace(" ", "_")


def _str_list(v: Any) -> list[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    return [str(x).strip() for x in v if str(x).strip()]


# -----------------------
# Patches
# -----------------------

class EntryPayload(WireModel):
    id: str
    text: str

    @field_validator("id", "text", mode="before")
    @classmethod
    def _to_str(cls, v: Any) -> str:
        return "" if v is None else str(v)


class MatchPayload(WireModel):
    id: str | None = None
    text_equals: str | None = None


class PatchMetadataPayload(WireModel):
    source: str = ""
    justification: str = ""


class PatchPayload(WireModel):
    op: Literal["add", "replace", "remove"]
    path: str
    entry: EntryPayload | None = None
    match: MatchPayload | None = None
    metadata: PatchMetadataPayload = Field(default_factory=PatchMetadataPayload)

    @field_validator("op", mode="before")
    @classmethod
    def _op_lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    def to_patch(self, default_source: str) -> Patch:
        return Patch(
            op=self.op,
            path=self.path.strip(),
            entry=Entry(id=self.entry.id.strip(), text=self.entry.text) if self.entry else None,
            match=PatchMatch(id=self.match.id, text_equals=self.match.text_equals) if self.match else None,
            # the calling advisor is authoritative for the source, whatever the model claims
            source=default_source,
            justification=(self.metadata.justification or "").strip(),
        )


class PatchListPayload(WireModel):
    """
    Patches are kept raw here and validated one at a time so a single
    malformed patch is rejected without losing its siblings.
    """
    title: str | None = None
    patches: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("patches", mode="before")
    @classmethod
    def _only_dicts(cls, v: Any) -> list:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("patches must be a list")
        return v


# -----------------------
# Judge rubric
# -----------------------

class SectionViolation(WireModel):
    section: str = ""
    quote: str = ""
    suggested_rewrite: str = ""


class ScoredDimension(WireModel):
    score: int = 0
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _round_score(cls, v: Any) -> int:
        return int(round(_clamp_score(v)))


class SectionSeparationScore(ScoredDimension):
    violations: list[SectionViolation] = Field(default_factory=list)

    @field_validator("violations", mode="before")
    @classmethod
    def _string_violations(cls, v: Any) -> list:
        out = []
        for item in v or []:
            if isinstance(item, str):
                out.append({"section": "", "quote": item, "suggested_rewrite": ""})
            elif isinstance(item, dict):
                out.append(item)
        return out


class CorrectnessScore(ScoredDimension):
    hallucinations: list[str] = Field(default_factory=list)

    @field_validator("hallucinations", mode="before")
    @classmethod
    def _hallucination_list(cls, v: Any) -> list[str]:
        return _str_list(v)


class TestabilityScore(ScoredDimension):
    outcome_ac_issues: list[str] = Field(default_factory=list)
    system_ac_issues: list[str] = Field(default_factory=list)

    @field_validator("outcome_ac_issues", "system_ac_issues", mode="before")
    @classmethod
    def _issue_lists(cls, v: Any) -> list[str]:
        return _str_list(v)


class CompletenessScore(ScoredDimension):
    missing_elements: list[str] = Field(default_factory=list)

    @field_validator("missing_elements", mode="before")
    @classmethod
    def _missing_list(cls, v: Any) -> list[str]:
        return _str_list(v)


class RelationshipPayload(WireModel):
    id: str = ""
    type: str
    operation: str
    name: str = ""
    evidence: str = ""
    canonical_name: str = ""
    source: str = ""
    target: str = ""
    confidence: float | None = None

    @field_validator("type", "operation", mode="before")
    @classmethod
    def _token(cls, v: Any) -> str:
        return _norm_token(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> float | None:
        if v is None:
            return None
        return _clamp_score(v, 0.0, 1.0)

    def to_operation(self, confidence: float) -> RelationshipOperation:
        return RelationshipOperation(
            id=self.id.strip(),
            type=self.type,
            operation=self.operation,
            name=self.name.strip(),
            evidence=self.evidence.strip(),
            canonical_name=(self.canonical_name or self.name).strip(),
            source=self.source.strip(),
            target=self.target.strip(),
            confidence=confidence,
        )


class JudgeRubric(WireModel):
    section_separation: SectionSeparationScore
    correctness_vs_context: CorrectnessScore
    testability: TestabilityScore
    completeness: CompletenessScore
    overall_score: float
    recommendation: Literal["approve", "rewrite", "manual-review"]
    new_relationships: list[RelationshipPayload] = Field(default_factory=list)
    needs_context_update: bool = False
    confidence_by_relationship: dict[str, float] = Field(default_factory=dict)

    @field_validator("overall_score", mode="before")
    @classmethod
    def _overall(cls, v: Any) -> float:
        return _clamp_score(v)

    @field_validator("recommendation", mode="before")
    @classmethod
    def _recommendation(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower().replace("_", "-").replace(" ", "-")
        return v

    @field_validator("new_relationships", mode="before")
    @classmethod
    def _relationship_dicts(cls, v: Any) -> list:
        return [r for r in (v or []) if isinstance(r, dict) and r.get("type") and r.get("operation")]

    def relationship_operations(self) -> list[RelationshipOperation]:
        """
        Relationship confidence comes from the relationship itself, then from
        confidence_by_relationship, and is 0 when neither is given.
        """
        out = []
        for r in self.new_relationships:
            conf = r.confidence
            if conf is None:
                conf = _clamp_score(self.confidence_by_relationship.get(r.id, 0.0), 0.0, 1.0)
            out.append(r.to_operation(conf))
        return out


# -----------------------
# Discovery
# -----------------------

class DiscoveryMentions(WireModel):
    components: list[str] = Field(default_factory=list)
    state_models: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)

    @field_validator("components", "state_models", "events", mode="before")
    @classmethod
    def _mention_lists(cls, v: Any) -> list[str]:
        return _str_list(v)


class DiscoveryRelation(WireModel):
    kind: str
    source: str
    target: str
    evidence: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> str:
        return _norm_token(v)


class DiscoveryPayload(WireModel):
    mentions: DiscoveryMentions = Field(default_factory=DiscoveryMentions)
    canonical_names: dict[str, list[str]]
    evidence: dict[str, str] = Field(default_factory=dict)
    vocabulary: dict[str, str] = Field(default_factory=dict)
    relations: list[DiscoveryRelation] = Field(default_factory=list)

    @field_validator("canonical_names", mode="before")
    @classmethod
    def _canonical(cls, v: Any) -> dict:
        if not isinstance(v, dict):
            raise ValueError("canonical_names must be an object")
        return {str(k): _str_list(m) for k, m in v.items()}

    @field_validator("evidence", "vocabulary", mode="before")
    @classmethod
    def _str_map(cls, v: Any) -> dict:
        if not v:
            return {}
        return {str(k): "" if val is None else str(val) for k, val in dict(v).items()}

    @field_validator("relations", mode="before")
    @classmethod
    def _relations(cls, v: Any) -> list:
        return [r for r in (v or []) if isinstance(r, dict) and r.get("source") and r.get("target")]


# -----------------------
# Interconnections (Pass 2)
# -----------------------

class RelatedItemPayload(WireModel):
    item_id: str
    relationship: str = "related"
    description: str = ""

    @field_validator("relationship", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> str:
        kind = _norm_token(v)
        return kind if kind in RELATIONSHIP_KINDS else "related"


class OwnershipPayload(WireModel):
    owns_state: list[str] = Field(default_factory=list)
    consumes_state: list[str] = Field(default_factory=list)
    emits_events: list[str] = Field(default_factory=list)
    listens_to_events: list[str] = Field(default_factory=list)

    @field_validator("owns_state", "consumes_state", "emits_events", "listens_to_events", mode="before")
    @classmethod
    def _id_lists(cls, v: Any) -> list[str]:
        return _str_list(v)


class InterconnectionPayload(WireModel):
    item_id: str = ""
    term_mapping: dict[str, str] = Field(default_factory=dict)
    contract_dependencies: list[str] = Field(default_factory=list)
    ownership: OwnershipPayload = Field(default_factory=OwnershipPayload)
    related_items: list[RelatedItemPayload] = Field(default_factory=list)

    @field_validator("contract_dependencies", mode="before")
    @classmethod
    def _dependency_list(cls, v: Any) -> list[str]:
        return _str_list(v)

    @field_validator("term_mapping", mode="before")
    @classmethod
    def _terms(cls, v: Any) -> dict:
        if not v:
            return {}
        return {str(k).strip(): str(val).strip() for k, val in dict(v).items() if val}

    def to_interconnections(self, item_id: str) -> Interconnections:
        o = self.ownership
        return Interconnections(
            item_id=item_id,
            term_mapping=dict(self.term_mapping),
            contract_dependencies=list(self.contract_dependencies),
            ownership=Ownership(
                owns_state=list(o.owns_state),
                consumes_state=list(o.consumes_state),
                emits_events=list(o.emits_events),
                listens_to_events=list(o.listens_to_events),
            ),
            related_items=[
                RelatedItemLink(item_id=r.item_id.strip(), relationship=r.relationship, description=r.description.strip())
                for r in self.related_items
            ],
        )


# -----------------------
# Global consistency (Pass 2b)
# -----------------------

class ConsistencyIssue(WireModel):
    description: str
    suggested_fix_type: str = ""
    confidence: float = 0.0
    affected_items: list[str] = Field(default_factory=list)

    @field_validator("affected_items", mode="before")
    @classmethod
    def _affected_list(cls, v: Any) -> list[str]:
        return _str_list(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> float:
        return _clamp_score(v, 0.0, 1.0)


class FixCandidate(WireModel):
    type: str
    item_id: str
    path: str
    operation: Literal["add", "replace", "remove"] = "add"
    entry: EntryPayload | None = None
    match: MatchPayload | None = None
    confidence: float = 0.0
    justification: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> str:
        return str(v or "").strip().lower().replace("_", "-")

    @field_validator("operation", mode="before")
    @classmethod
    def _op(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def _conf(cls, v: Any) -> float:
        return _clamp_score(v, 0.0, 1.0)

    def to_patch(self) -> Patch:
        return Patch(
            op=self.operation,
            path=self.path.strip(),
            entry=Entry(id=self.entry.id.strip(), text=self.entry.text) if self.entry else None,
            match=PatchMatch(id=self.match.id, text_equals=self.match.text_equals) if self.match else None,
            source=f"consistency:{self.type}",
            justification=self.justification,
        )


class ConsistencyReport(WireModel):
    # fixes stay raw, like PatchListPayload.patches
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    fixes: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("issues", mode="before")
    @classmethod
    def _issue_items(cls, v: Any) -> list:
        return [x for x in (v or []) if isinstance(x, (dict, ConsistencyIssue))]

    @field_validator("fixes", mode="before")
    @classmethod
    def _fix_dicts(cls, v: Any) -> list:
        return [x for x in (v or []) if isinstance(x, dict)]
