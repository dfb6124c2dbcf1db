# storyforge/relationship_merger.py

import logging
from dataclasses import dataclass, field

from storyforge.entities import (
    UNKNOWN,
    Component,
    CompositionEdge,
    CoordinationEdge,
    DataFlow,
    EventDefinition,
    RelationshipOperation,
    SharedContext,
    StateModel,
    is_unknown,
)
from storyforge.id_registry import IdRegistry, normalize_name

logger = logging.getLogger("storyforge")

NODE_TYPES = ("component", "state_model", "event", "data_flow")
COMPOSITION_EDGES = ("composed-of", "contains")
COORDINATION_EDGES = ("coordinates-with", "communicates-with")


@dataclass
class MergeResult:
    updated_context: SharedContext
    merged_count: int = 0
    below_threshold: int = 0
    # human readable reasons, one line per operation
    skipped: list[str] = field(default_factory=list)
    manual_review: list[str] = field(default_factory=list)


def _edge_name(op: RelationshipOperation) -> str:
    return (op.name or "").strip().lower().replace("_", "-").replace(" ", "-")


def _describe(op: RelationshipOperation) -> str:
    if op.operation in ("add_edge", "edit_edge"):
        return f"{op.operation} {op.type} '{op.name}' {op.source or '?'} -> {op.target or '?'} ({op.confidence:.2f})"
    return f"{op.operation} {op.type} '{op.canonical_name or op.name}' ({op.confidence:.2f})"


class RelationshipMerger:
    """
    Folds judge-reported relationships into the shared context.

    Only additions are applied, and only at or above the confidence threshold:
      - add_node: minted through the registry; a node that already exists
        (same id or same normalized name) is skipped as a duplicate
      - add_edge: both endpoints must already exist in the context
    Edits of existing nodes or edges are never applied here; they are
    returned in `manual_review`, together with operations that name an
    unknown type or edge or reference missing endpoints.

    The input context is never mutated; callers get a copy back.
    """

    def __init__(self, registry: IdRegistry):
        self.registry = registry

    def merge(
        self,
        context: SharedContext,
        operations: list[RelationshipOperation],
        threshold: float = 0.75,
    ) -> MergeResult:
        result = MergeResult(updated_context=context.clone())
        ctx = result.updated_context

        for op in operations:
            if op.confidence < threshold:
                result.below_threshold += 1
                result.skipped.append(f"{_describe(op)}: below confidence threshold {threshold}")
                continue

            if op.operation in ("edit_node", "edit_edge"):
                result.manual_review.append(f"{_describe(op)}: edits are not applied automatically")
                continue

            if op.type not in NODE_TYPES:
                result.manual_review.append(f"{_describe(op)}: unknown relationship type")
                continue

            if op.operation == "add_node" and op.type != "data_flow":
                outcome = self._add_node(ctx, op)
            elif op.operation == "add_edge" or (op.operation == "add_node" and op.type == "data_flow"):
                outcome = self._add_edge(ctx, op)
            else:
                outcome = ("review", "unknown operation")

            status, reason = outcome
            if status == "merged":
                result.merged_count += 1
                logger.info(f"Merged relationship: {_describe(op)} -> {reason}")
            elif status == "skipped":
                result.skipped.append(f"{_describe(op)}: {reason}")
            else:
                result.manual_review.append(f"{_describe(op)}: {reason}")

        logger.info(
            f"Relationship merge: {result.merged_count} merged, {len(result.skipped)} skipped "
            f"({result.below_threshold} below threshold), {len(result.manual_review)} for manual review"
        )
        for line in result.manual_review:
            logger.info(f"Manual review: {line}")
        return result

    # -----------------------
    # Nodes
    # -----------------------

    def _find_node(self, ctx: SharedContext, ref: str) -> tuple[str, str] | None:
        """
        Resolves an id or a display name to (kind, id) within the context.
        """
        ref = (ref or "").strip()
        if not ref:
            return None
        tables = (
            ("component", ctx.components, lambda n: n.product_name),
            ("state_model", ctx.state_models, lambda n: n.name),
            ("event", ctx.events, lambda n: n.name),
        )
        for kind, table, _ in tables:
            if ref in table:
                return kind, ref
        if ref in ctx.data_flows:
            return "data_flow", ref

        wanted = normalize_name(ref)
        for kind, table, name_of in tables:
            for node_id, node in table.items():
                if normalize_name(name_of(node)) == wanted:
                    return kind, node_id
        for kind in ("component", "state_model", "event"):
            found = self.registry.lookup(ref, kind)
            if found and ctx.has_node(found):
                return kind, found
        return None

    def _add_node(self, ctx: SharedContext, op: RelationshipOperation) -> tuple[str, str]:
        name = (op.canonical_name or op.name).strip()
        if not name:
            return "review", "node has no name"

        existing = self._find_node(ctx, op.id) if op.id else None
        existing = existing or self._find_node(ctx, name)
        if existing is not None:
            return "skipped", f"duplicate of {existing[1]}"

        new_id = self.registry.mint(name, op.type)
        if ctx.has_node(new_id):
            return "skipped", f"duplicate of {new_id}"

        if op.type == "component":
            ctx.components[new_id] = Component(id=new_id, product_name=name, evidence=op.evidence)
        elif op.type == "state_model":
            ctx.state_models[new_id] = StateModel(id=new_id, name=name)
        else:
            ctx.events[new_id] = EventDefinition(id=new_id, name=name)
        return "merged", new_id

    # -----------------------
    # Edges
    # -----------------------

    def _add_edge(self, ctx: SharedContext, op: RelationshipOperation) -> tuple[str, str]:
        src = self._find_node(ctx, op.source)
        tgt = self._find_node(ctx, op.target)
        missing = [ref or "<empty>" for ref, found in ((op.source, src), (op.target, tgt)) if found is None]
        if missing:
            return "review", f"endpoint(s) not in shared context: {', '.join(missing)}"
        (src_kind, src_id), (tgt_kind, tgt_id) = src, tgt

        if op.type == "data_flow":
            for flow in ctx.data_flows.values():
                if flow.source == src_id and flow.target == tgt_id:
                    return "skipped", f"duplicate of {flow.id}"
            name = (op.canonical_name or op.name).strip() or f"{src_id} to {tgt_id}"
            flow_id = self.registry.mint(name, "data_flow")
            if flow_id in ctx.data_flows:
                return "skipped", f"duplicate of {flow_id}"
            description = op.evidence.strip() if not is_unknown(op.evidence) else UNKNOWN
            ctx.data_flows[flow_id] = DataFlow(id=flow_id, source=src_id, target=tgt_id, description=description)
            return "merged", flow_id

        edge_name = _edge_name(op)
        if src_kind != "component" or tgt_kind != "component":
            return "review", f"edge '{edge_name}' needs two components, got {src_kind} and {tgt_kind}"

        if edge_name in COMPOSITION_EDGES:
            edge = CompositionEdge(parent=src_id, child=tgt_id)
            if edge in ctx.composition_edges:
                return "skipped", "composition edge already present"
            ctx.composition_edges.append(edge)
            return "merged", f"{src_id} contains {tgt_id}"

        if edge_name in COORDINATION_EDGES:
            edge = CoordinationEdge(source=src_id, target=tgt_id, via=edge_name)
            if edge in ctx.coordination_edges:
                return "skipped", "coordination edge already present"
            ctx.coordination_edges.append(edge)
            return "merged", f"{src_id} {edge_name} {tgt_id}"

        return "review", f"unknown edge name '{edge_name}'"
