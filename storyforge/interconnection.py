# storyforge/interconnection.py

import asyncio
import copy
import logging
import re

from langchain_core.messages import SystemMessage

from forge_prompts.pipeline_prompts import INTERCONNECTION_INPUT, INTERCONNECTION_PROMPT
from storyforge.base_utils import BaseUtils
from storyforge.entities import (
    Entry,
    Interconnections,
    ItemResult,
    Ownership,
    Patch,
    PatchMatch,
    PatchOp,
    RelatedItemLink,
    SharedContext,
)
from storyforge.llm_client import FatalLlmError, MaxRetryErrorsException
from storyforge.patch_applier import apply_patches
from storyforge.story_renderer import render_interconnections, render_structure
from storyforge.wire_schemas import RELATIONSHIP_KINDS, InterconnectionPayload

logger = logging.getLogger("storyforge")

RELATED_PATH = "related_items"
RELATED_ALLOWED_PATHS = frozenset({RELATED_PATH})

_RELATED_TEXT = re.compile(
    r"^\s*(?P<kind>" + "|".join(RELATIONSHIP_KINDS) + r")\s+(?P<item>[^\s:]+)\s*(?::\s*(?P<desc>.*))?$",
    re.IGNORECASE | re.DOTALL,
)


def related_entry_id(item_id: str) -> str:
    return f"REL-{item_id}"


def related_entry_text(link: RelatedItemLink) -> str:
    if link.description:
        return f"{link.relationship} {link.item_id}: {' '.join(link.description.split())[:400]}"
    return f"{link.relationship} {link.item_id}"


def parse_related_entry(text: str) -> RelatedItemLink | None:
    """
    'prerequisite ITEM-002: needs an account' -> RelatedItemLink(ITEM-002, prerequisite, ...)
    """
    m = _RELATED_TEXT.match(text or "")
    if not m:
        return None
    return RelatedItemLink(
        item_id=m.group("item"),
        relationship=m.group("kind").lower(),
        description=(m.group("desc") or "").strip(),
    )


def linkable(result: ItemResult) -> bool:
    return result.structure is not None and bool(result.text)


class InterconnectionBuilder(BaseUtils):
    """
    Pass 2: once every item is final, asks the model, one call per item, how
    the item maps onto the shared context and onto its siblings.

    Calls fan out on threads over a frozen snapshot of the items; results are
    applied afterwards in item order. Ids the model invents are dropped (term
    targets and contracts not in the context, related items outside the batch,
    self links). Related items are written into the item's related_items
    section as patches; the rest is appended to the rendered text.
    """

    def __init__(self, llm, *, concurrency: int = 4):
        self.llm = llm
        self.concurrency = max(1, int(concurrency))

    def build_all(self, items: dict[str, ItemResult], context: SharedContext) -> dict[str, Interconnections]:
        return asyncio.run(self.build_all_async(items, context))

    async def build_all_async(self, items: dict[str, ItemResult], context: SharedContext) -> dict[str, Interconnections]:
        targets = [item_id for item_id, r in items.items() if linkable(r)]
        if not targets:
            return {}

        snapshot = {item_id: copy.deepcopy(items[item_id]) for item_id in targets}
        sem = asyncio.Semaphore(self.concurrency)

        async def one(item_id: str) -> Interconnections:
            async with sem:
                return await asyncio.to_thread(self._link_item, item_id, snapshot, context)

        results = await asyncio.gather(*(one(item_id) for item_id in targets))

        out: dict[str, Interconnections] = {}
        for item_id, inter in zip(targets, results):
            self._write_back(items[item_id], inter)
            out[item_id] = inter
        self.color_print(
            f"Interconnections built for {len(out)} item(s); "
            f"{sum(len(i.related_items) for i in out.values())} related-item link(s)",
            color="cyan",
        )
        return out

    # -----------------------
    # Per item (worker thread)
    # -----------------------

    def _link_item(self, item_id: str, snapshot: dict[str, ItemResult], context: SharedContext) -> Interconnections:
        current = snapshot[item_id]
        others = "\n".join(
            f"- [{oid}] {(r.structure.title if r.structure else '') or oid}"
            for oid, r in snapshot.items()
            if oid != item_id
        ) or "None"
        prompt = self.unsafe_string_format(
            INTERCONNECTION_INPUT,
            context_digest=self._shared_context_for_prompt(context),
            item_id=item_id,
            item_text=current.text,
            other_items=others,
        )
        try:
            parsed = self._invoke_structured(
                self.llm,
                [SystemMessage(content=INTERCONNECTION_PROMPT), self._human_message(prompt)],
                lambda raw: self._parse_model(raw, InterconnectionPayload),
                label=f"Interconnect {item_id}",
            )
        except (MaxRetryErrorsException, FatalLlmError) as e:
            logger.warning(f"[{item_id}] interconnection call failed: {e}")
            return Interconnections(item_id=item_id)

        if not parsed.ok:
            logger.warning(f"[{item_id}] interconnection response unusable, leaving it unlinked: {parsed.error[:300]}")
            return Interconnections(item_id=item_id)
        return self._filter(parsed.value.to_interconnections(item_id), set(snapshot), context)

    def _filter(self, inter: Interconnections, batch_ids: set[str], context: SharedContext) -> Interconnections:
        item_id = inter.item_id
        known = context.all_ids()
        contracts = context.contract_ids()

        dropped: list[str] = []

        def keep(value: str, allowed: set[str]) -> bool:
            if value in allowed:
                return True
            dropped.append(value)
            return False

        terms = {t: cid for t, cid in inter.term_mapping.items() if t and keep(cid, known)}
        deps = [c for c in dict.fromkeys(inter.contract_dependencies) if keep(c, contracts)]
        states, events = set(context.state_models), set(context.events)
        o = inter.ownership
        ownership = Ownership(
            owns_state=[s for s in dict.fromkeys(o.owns_state) if keep(s, states)],
            consumes_state=[s for s in dict.fromkeys(o.consumes_state) if keep(s, states)],
            emits_events=[e for e in dict.fromkeys(o.emits_events) if keep(e, events)],
            listens_to_events=[e for e in dict.fromkeys(o.listens_to_events) if keep(e, events)],
        )

        related: list[RelatedItemLink] = []
        seen: set[str] = set()
        for link in inter.related_items:
            if link.item_id == item_id or link.item_id in seen or not keep(link.item_id, batch_ids):
                continue
            seen.add(link.item_id)
            related.append(link)

        if dropped:
            logger.info(f"[{item_id}] dropped unknown id(s) from interconnections: {sorted(set(dropped))}")
        return Interconnections(
            item_id=item_id,
            term_mapping=terms,
            contract_dependencies=deps,
            ownership=ownership,
            related_items=related,
        )

    # -----------------------
    # Write back (event loop thread)
    # -----------------------

    def _write_back(self, result: ItemResult, inter: Interconnections) -> None:
        structure = result.structure
        existing = {e.id for e in structure.sections.get(RELATED_PATH, [])}
        patches = []
        for link in inter.related_items:
            entry_id = related_entry_id(link.item_id)
            entry = Entry(id=entry_id, text=related_entry_text(link))
            if entry_id in existing:
                patches.append(Patch(
                    op=PatchOp.REPLACE.value, path=RELATED_PATH, entry=entry,
                    match=PatchMatch(id=entry_id), source="interconnection",
                ))
            else:
                patches.append(Patch(op=PatchOp.ADD.value, path=RELATED_PATH, entry=entry, source="interconnection"))

        if patches:
            structure, metrics = apply_patches(structure, patches, RELATED_ALLOWED_PATHS)
            result.structure = structure
            result.rejected_patches.extend(metrics.rejected_reasons)
        result.text = render_interconnections(render_structure(result.structure), inter)
