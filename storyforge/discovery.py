# storyforge/discovery.py

import logging
from dataclasses import dataclass, field
from typing import Callable

from langchain_core.messages import SystemMessage

from forge_prompts.pipeline_prompts import CONTEXT_DISCOVERY_INPUT, CONTEXT_DISCOVERY_PROMPT
from storyforge.asset_cache import AssetFetchError
from storyforge.base_utils import BaseUtils, ParseResult
from storyforge.entities import (
    UNKNOWN,
    Component,
    CompositionEdge,
    CoordinationEdge,
    EventDefinition,
    Seed,
    SharedContext,
    StateModel,
    is_unknown,
)
from storyforge.id_registry import IdRegistry
from storyforge.llm_client import FatalLlmError, MaxRetryErrorsException
from storyforge.wire_schemas import DiscoveryPayload

logger = logging.getLogger("storyforge")


class DiscoveryError(Exception):
    pass


@dataclass
class DiscoveryResult:
    context: SharedContext
    # item_id -> reason; these items are not expanded in Pass 1
    failed_items: dict[str, str] = field(default_factory=dict)
    batches: int = 0


class DiscoveryEngine(BaseUtils):
    """
    Pass 0: builds the run's SharedContext from the seeds.

    Seeds go to the model in batches; every entity the model names is minted
    through the IdRegistry so the same canonical name gets the same id across
    batches. A description is only kept when the batch had supporting material
    (reference documents, seed documents or screenshots) and the model quoted
    evidence for it; otherwise the field stays UNKNOWN. Owners, emitters and
    listeners are only set from explicitly evidenced relations.
    """

    def __init__(
        self,
        llm,
        registry: IdRegistry,
        *,
        batch_size: int = 8,
        load_asset: Callable[[str], bytes] | None = None,
    ):
        self.llm = llm
        self.registry = registry
        self.batch_size = max(1, int(batch_size))
        self.load_asset = load_asset

    def discover(
        self,
        seeds: list[Seed],
        reference_documents: list[str] | None = None,
        product_context: str = "",
    ) -> DiscoveryResult:
        reference_documents = [d for d in (reference_documents or []) if d and d.strip()]
        result = DiscoveryResult(context=SharedContext(reference_documents=list(reference_documents)))

        valid: list[Seed] = []
        for seed in seeds:
            if not (seed.text or "").strip():
                result.failed_items[seed.item_id] = "missing seed text"
                self.color_print(f"Discovery: {seed.item_id} has no seed text, skipping", color="red")
                continue
            valid.append(seed)

        for start in range(0, len(valid), self.batch_size):
            batch = valid[start:start + self.batch_size]
            result.batches += 1
            try:
                payload, supported = self._discover_batch(batch, reference_documents, product_context)
            except (DiscoveryError, AssetFetchError, MaxRetryErrorsException, FatalLlmError) as e:
                for seed in batch:
                    result.failed_items[seed.item_id] = f"context construction failed: {e}"
                self.color_print(
                    f"Discovery: batch {result.batches} failed ({e}); items {[s.item_id for s in batch]} aborted",
                    color="red",
                )
                continue
            self._merge_payload(result.context, payload, supported)

        ctx = result.context
        self.color_print(
            f"Discovery done: {len(ctx.components)} component(s), {len(ctx.state_models)} state model(s), "
            f"{len(ctx.events)} event(s), {len(ctx.vocabulary)} vocabulary term(s); "
            f"{len(result.failed_items)} item(s) failed",
            color="cyan",
        )
        return result

    # -----------------------
    # Model call
    # -----------------------

    def _discover_batch(
        self,
        batch: list[Seed],
        reference_documents: list[str],
        product_context: str,
    ) -> tuple[DiscoveryPayload, bool]:
        images: list[bytes] = []
        seed_docs: list[str] = []
        for seed in batch:
            for locator in seed.images:
                images.append(self._fetch(locator))
            for locator in seed.documents:
                seed_docs.append(self._fetch(locator).decode("utf-8", errors="replace"))

        documents = reference_documents + seed_docs
        supported = bool(documents or images)

        seeds_block = "\n".join(f"- [{s.item_id}] {s.text.strip()}" for s in batch)
        prompt = self.unsafe_string_format(
            CONTEXT_DISCOVERY_INPUT,
            product_context=product_context or "None",
            seeds=seeds_block,
            reference_documents="\n\n---\n\n".join(documents) if documents else "None",
            image_count=str(len(images)),
        )
        messages = [SystemMessage(content=CONTEXT_DISCOVERY_PROMPT), self._human_message(prompt, images)]
        parsed: ParseResult[DiscoveryPayload] = self._invoke_structured(
            self.llm,
            messages,
            lambda raw: self._parse_model(raw, DiscoveryPayload),
            label="Discovery",
        )
        if not parsed.ok:
            raise DiscoveryError(parsed.error)
        return parsed.value, supported

    def _fetch(self, locator: str) -> bytes:
        if self.load_asset is None:
            raise AssetFetchError(f"no asset loader configured for '{locator}'")
        return self.load_asset(locator)

    # -----------------------
    # Merge into context
    # -----------------------

    def _kind_for(self, canonical: str, mentions: list[str], payload: DiscoveryPayload) -> str:
        names = {canonical.lower(), *(m.lower() for m in mentions)}
        if names & {m.lower() for m in payload.mentions.state_models}:
            return "state_model"
        if names & {m.lower() for m in payload.mentions.events}:
            return "event"
        return "component"

    def _resolve(self, name: str, local: dict[str, tuple[str, str]]) -> tuple[str, str] | None:
        if name in local:
            return local[name]
        for kind in ("component", "state_model", "event"):
            found = self.registry.lookup(name, kind)
            if found:
                return kind, found
        return None

    def _merge_payload(self, ctx: SharedContext, payload: DiscoveryPayload, supported: bool) -> None:
        local: dict[str, tuple[str, str]] = {}

        for canonical, mentions in payload.canonical_names.items():
            canonical = canonical.strip()
            if not canonical:
                continue
            kind = self._kind_for(canonical, mentions, payload)
            stable_id = self.registry.mint(canonical, kind)
            local[canonical] = (kind, stable_id)
            for m in mentions:
                local.setdefault(m, (kind, stable_id))

            evidence = (payload.evidence.get(canonical) or "").strip()
            description = evidence if supported and not is_unknown(evidence) else UNKNOWN

            if kind == "component":
                existing = ctx.components.get(stable_id)
                if existing is None:
                    ctx.components[stable_id] = Component(
                        id=stable_id, product_name=canonical, description=description, evidence=evidence
                    )
                elif is_unknown(existing.description) and not is_unknown(description):
                    existing.description = description
                    existing.evidence = evidence
            elif kind == "state_model":
                existing = ctx.state_models.get(stable_id)
                if existing is None:
                    ctx.state_models[stable_id] = StateModel(id=stable_id, name=canonical, description=description)
                elif is_unknown(existing.description) and not is_unknown(description):
                    existing.description = description
            else:
                if stable_id not in ctx.events:
                    ctx.events[stable_id] = EventDefinition(id=stable_id, name=canonical)

        for rel in payload.relations:
            # relations without explicit evidence are dropped, not guessed
            if is_unknown(rel.evidence):
                continue
            src = self._resolve(rel.source.strip(), local)
            tgt = self._resolve(rel.target.strip(), local)
            if not src or not tgt:
                logger.debug(f"Discovery: relation {rel.source} -{rel.kind}-> {rel.target} has unresolved endpoints")
                continue
            (src_kind, src_id), (tgt_kind, tgt_id) = src, tgt

            if rel.kind == "contains" and src_kind == tgt_kind == "component":
                edge = CompositionEdge(parent=src_id, child=tgt_id)
                if edge not in ctx.composition_edges:
                    ctx.composition_edges.append(edge)
            elif rel.kind == "coordinates" and src_kind == tgt_kind == "component":
                edge = CoordinationEdge(source=src_id, target=tgt_id, via="coordinates-with")
                if edge not in ctx.coordination_edges:
                    ctx.coordination_edges.append(edge)
            elif rel.kind == "owns" and src_kind == "component" and tgt_kind == "state_model":
                sm = ctx.state_models.get(tgt_id)
                if sm is not None and is_unknown(sm.owner):
                    sm.owner = src_id
            elif rel.kind == "emits" and src_kind == "component" and tgt_kind == "event":
                ev = ctx.events.get(tgt_id)
                if ev is not None and is_unknown(ev.emitter):
                    ev.emitter = src_id
            elif rel.kind == "listens" and src_kind == "component" and tgt_kind == "event":
                ev = ctx.events.get(tgt_id)
                if ev is not None and src_id not in ev.listeners:
                    ev.listeners.append(src_id)
            else:
                logger.debug(f"Discovery: ignoring relation kind '{rel.kind}' between {src_kind} and {tgt_kind}")

        for term, phrase in payload.vocabulary.items():
            term, phrase = term.strip(), phrase.strip()
            if term and phrase and term not in ctx.vocabulary:
                ctx.vocabulary[term] = phrase
