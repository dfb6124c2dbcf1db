# storyforge/entities.py
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeAlias

ItemId: TypeAlias = str
StableId: TypeAlias = str

# Marker for any context field that has no supporting evidence.
# Downstream passes never treat it as an authoritative value.
UNKNOWN = "UNKNOWN"


def is_unknown(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip() or value.strip().upper() == UNKNOWN
    return False


# -----------------------
# Section paths (wire contract, append-only)
# -----------------------

HEADER_PATHS = ("header.as_a", "header.i_want", "header.so_that")

IMPLEMENTATION_NOTE_PATHS = (
    "implementation_notes.state_ownership",
    "implementation_notes.data_flow",
    "implementation_notes.api_contracts",
    "implementation_notes.loading_states",
    "implementation_notes.performance",
    "implementation_notes.security",
    "implementation_notes.telemetry",
)

SECTION_ID_PREFIXES: dict[str, str] = {
    "header.as_a": "HDR-ASA",
    "header.i_want": "HDR-IWANT",
    "header.so_that": "HDR-SOTHAT",
    "user_visible_behavior": "UVB-",
    "outcome_acceptance_criteria": "AC-OUT-",
    "system_acceptance_criteria": "AC-SYS-",
    "implementation_notes.state_ownership": "IMPL-STATE-",
    "implementation_notes.data_flow": "IMPL-FLOW-",
    "implementation_notes.api_contracts": "IMPL-API-",
    "implementation_notes.loading_states": "IMPL-LOAD-",
    "implementation_notes.performance": "IMPL-PERF-",
    "implementation_notes.security": "IMPL-SEC-",
    "implementation_notes.telemetry": "IMPL-TEL-",
    "ui_mapping": "UI-MAP-",
    "open_questions": "QUESTION-",
    "edge_cases": "EDGE-",
    "non_goals": "NON-GOAL-",
    "related_items": "REL-",
}

SECTION_PATHS: tuple[str, ...] = tuple(SECTION_ID_PREFIXES.keys())

# Pass 2 owns related_items; generation and rewrite advisors never touch it.
CONTENT_PATHS: frozenset[str] = frozenset(p for p in SECTION_PATHS if p != "related_items")


class PatchOp(str, Enum):
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


class ItemStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    MANUAL_REVIEW = "manual_review"
    FAILED = "failed"


# -----------------------
# Item structure
# -----------------------

@dataclass
class Entry:
    id: str
    text: str


@dataclass
class ItemStructure:
    item_id: ItemId
    title: str = ""
    sections: dict[str, list[Entry]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for path in SECTION_PATHS:
            self.sections.setdefault(path, [])

    def entries(self, path: str) -> list[Entry]:
        return self.sections.setdefault(path, [])

    def all_ids(self) -> set[str]:
        return {e.id for entries in self.sections.values() for e in entries}

    def entry_count(self) -> int:
        return sum(len(v) for v in self.sections.values())

    def clone(self) -> "ItemStructure":
        return copy.deepcopy(self)


@dataclass
class PatchMatch:
    id: str | None = None
    text_equals: str | None = None


@dataclass
class Patch:
    """
    One scoped edit against a single section of an ItemStructure.

    - add: `entry` is required, `match` must be None
    - replace: `match` selects exactly one entry, `entry` is the replacement
    - remove: `match` selects exactly one entry, `entry` must be None
    """
    op: str
    path: str
    entry: Entry | None = None
    match: PatchMatch | None = None
    source: str = ""
    justification: str = ""


@dataclass
class Seed:
    item_id: ItemId
    text: str
    images: list[str] = field(default_factory=list)
    documents: list[str] = field(default_factory=list)


# -----------------------
# Shared context
# -----------------------

@dataclass
class Component:
    id: StableId
    product_name: str
    description: str = UNKNOWN
    evidence: str = ""


@dataclass
class StateModel:
    id: StableId
    name: str
    description: str = UNKNOWN
    owner: str = UNKNOWN
    consumers: list[str] = field(default_factory=list)


@dataclass
class EventDefinition:
    id: StableId
    name: str
    payload: str = UNKNOWN
    emitter: str = UNKNOWN
    listeners: list[str] = field(default_factory=list)


@dataclass
class DataFlow:
    id: StableId
    source: str
    target: str
    description: str = UNKNOWN


@dataclass(frozen=True)
class CompositionEdge:
    parent: StableId
    child: StableId


@dataclass(frozen=True)
class CoordinationEdge:
    source: StableId
    target: StableId
    via: str = ""


DEFAULT_STANDARD_STATES: dict[str, str] = {
    "loading": "Shown while data or an action is in flight.",
    "error": "Shown when an operation fails; offers a recovery action.",
    "empty": "Shown when there is no data to display.",
    "success": "Shown when an operation completes.",
}


@dataclass
class SharedContext:
    components: dict[StableId, Component] = field(default_factory=dict)
    composition_edges: list[CompositionEdge] = field(default_factory=list)
    coordination_edges: list[CoordinationEdge] = field(default_factory=list)
    state_models: dict[StableId, StateModel] = field(default_factory=dict)
    events: dict[StableId, EventDefinition] = field(default_factory=dict)
    data_flows: dict[StableId, DataFlow] = field(default_factory=dict)
    standard_states: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STANDARD_STATES))
    vocabulary: dict[str, str] = field(default_factory=dict)
    reference_documents: list[str] = field(default_factory=list)

    def has_node(self, node_id: str) -> bool:
        return (
            node_id in self.components
            or node_id in self.state_models
            or node_id in self.events
            or node_id in self.data_flows
        )

    def contract_ids(self) -> set[str]:
        return set(self.state_models) | set(self.events) | set(self.data_flows)

    def all_ids(self) -> set[str]:
        return set(self.components) | self.contract_ids()

    def clone(self) -> "SharedContext":
        return copy.deepcopy(self)


# -----------------------
# Relationship operations
# -----------------------

@dataclass
class RelationshipOperation:
    id: str
    type: str            # component | state_model | event | data_flow
    operation: str       # add_node | add_edge | edit_node | edit_edge
    name: str
    evidence: str = ""
    canonical_name: str = ""
    source: str = ""
    target: str = ""
    confidence: float = 0.0


# -----------------------
# Pass 2 / pipeline results
# -----------------------

@dataclass
class RelatedItemLink:
    item_id: ItemId
    relationship: str   # prerequisite | parallel | dependent | related
    description: str = ""


@dataclass
class Ownership:
    owns_state: list[str] = field(default_factory=list)
    consumes_state: list[str] = field(default_factory=list)
    emits_events: list[str] = field(default_factory=list)
    listens_to_events: list[str] = field(default_factory=list)


@dataclass
class Interconnections:
    item_id: ItemId
    term_mapping: dict[str, str] = field(default_factory=dict)
    contract_dependencies: list[str] = field(default_factory=list)
    ownership: Ownership = field(default_factory=Ownership)
    related_items: list[RelatedItemLink] = field(default_factory=list)


@dataclass
class ItemResult:
    item_id: ItemId
    status: ItemStatus = ItemStatus.PENDING
    structure: ItemStructure | None = None
    text: str = ""
    scores: list[float] = field(default_factory=list)
    rubrics: list[Any] = field(default_factory=list)
    relationships: list[RelationshipOperation] = field(default_factory=list)
    rejected_patches: list[str] = field(default_factory=list)
    # advisor id -> PatchMetrics of its pass
    advisor_metrics: dict[str, Any] = field(default_factory=dict)
    rewrite_count: int = 0
    error: str = ""


@dataclass
class RoundLog:
    round_number: int
    relationships_found: int = 0
    relationships_merged: int = 0
    restarted: bool = False
    termination_reason: str | None = None
    manual_review_relationships: list[str] = field(default_factory=list)
