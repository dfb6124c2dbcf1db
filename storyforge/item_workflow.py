# storyforge/item_workflow.py

import logging
from typing import Callable

from langchain_community.chat_message_histories import ChatMessageHistory
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from forge_prompts.pipeline_prompts import (
    ITEM_GENERATION_INPUT,
    ITEM_GENERATION_PROMPT,
    ITEM_REWRITE_REQUEST,
    STORY_ADVISOR_INPUT,
    STORY_ADVISOR_PROMPT,
)
from storyforge.advisors import Advisor
from storyforge.asset_cache import AssetFetchError
from storyforge.base_utils import BaseUtils, ParseResult
from storyforge.entities import (
    CONTENT_PATHS,
    SECTION_ID_PREFIXES,
    SECTION_PATHS,
    ItemResult,
    ItemStatus,
    ItemStructure,
    RelationshipOperation,
    Seed,
    SharedContext,
)
from storyforge.llm_client import FatalLlmError, MaxRetryErrorsException
from storyforge.patch_applier import PatchMetrics, apply_patches
from storyforge.story_judge import StoryJudge
from storyforge.story_renderer import render_structure
from storyforge.wire_schemas import JudgeRubric, PatchListPayload, PatchPayload

logger = logging.getLogger("storyforge")

GENERATION_ALLOWED_PATHS = frozenset(CONTENT_PATHS)
REWRITE_ALLOWED_PATHS = frozenset(CONTENT_PATHS)
MAX_TITLE_WORDS = 10


class ItemAbortedError(Exception):
    pass


def title_from_text(text: str) -> str:
    words = (text or "").replace("#", " ").split()[:MAX_TITLE_WORDS]
    title = " ".join(words).strip(" .:;,")
    return title[:1].upper() + title[1:]


def path_prefix_table(paths=SECTION_PATHS) -> str:
    return "\n".join(f"- {p} -> {SECTION_ID_PREFIXES[p]}" for p in paths)


class ItemWorkflow(BaseUtils):
    """
    Pass 1 for a single item:

        Generate -> Advisors -> Judge -> (score >= threshold: ACCEPTED)
                                      -> (score <  threshold: Rewrite -> Judge -> ACCEPTED | MANUAL_REVIEW)

    There is exactly one rewrite; an item still under the threshold after it
    ends in MANUAL_REVIEW. Generation, advisors and rewrite only touch the
    structure through validated patches, each advisor within its own
    allowed paths. An advisor whose response is unusable is skipped.
    Relationships the judge reports at or above
    `confidence_threshold` are collected on the result for the orchestrator.

    run_item never raises for item-level problems: missing seed, unusable
    responses and exhausted retries end the item in FAILED with the reason.
    """

    def __init__(
        self,
        generator_llm,
        rewriter_llm,
        judge: StoryJudge,
        *,
        confidence_threshold: float = 0.75,
        product_context: str = "",
        load_asset: Callable[[str], bytes] | None = None,
        advisor_llm=None,
        advisors: list[Advisor] | tuple = (),
        product_type: str = "web",
    ):
        self.generator_llm = generator_llm
        self.rewriter_llm = rewriter_llm
        self.judge = judge
        self.confidence_threshold = confidence_threshold
        self.product_context = product_context
        self.load_asset = load_asset
        self.advisor_llm = advisor_llm or generator_llm
        self.advisors = list(advisors)
        self.product_type = product_type

    def run_item(self, seed: Seed, context: SharedContext) -> ItemResult:
        result = ItemResult(item_id=seed.item_id)
        try:
            self._run(seed, context, result)
        except ItemAbortedError as e:
            self._fail(result, str(e))
        except (MaxRetryErrorsException, FatalLlmError) as e:
            self._fail(result, f"model call failed: {e}")
        except AssetFetchError as e:
            self._fail(result, f"asset retrieval failed: {e}")
        return result

    def _fail(self, result: ItemResult, reason: str) -> None:
        # partial structures of a failed item are discarded
        result.status = ItemStatus.FAILED
        result.error = reason
        result.structure = None
        result.text = ""
        result.relationships = []
        self.color_print(f"[{result.item_id}] FAILED: {reason}", color="red")

    # -----------------------
    # State machine
    # -----------------------

    def _run(self, seed: Seed, context: SharedContext, result: ItemResult) -> None:
        if not (seed.text or "").strip():
            raise ItemAbortedError("missing seed text")

        images = [self._fetch(loc) for loc in seed.images]
        structure = ItemStructure(item_id=seed.item_id, title=title_from_text(seed.text))
        history = ChatMessageHistory()

        system = SystemMessage(content=self.unsafe_string_format(
            ITEM_GENERATION_PROMPT,
            path_prefixes=path_prefix_table(),
            allowed_paths=", ".join(sorted(GENERATION_ALLOWED_PATHS)),
        ))

        # Generate
        history.add_message(self._human_message(
            self.unsafe_string_format(
                ITEM_GENERATION_INPUT,
                product_context=self.product_context or "None",
                context_digest=self._shared_context_for_prompt(context),
                item_id=seed.item_id,
                seed=seed.text.strip(),
                current_structure=self._structure_for_prompt(structure),
            ),
            images,
        ))
        parsed = self._call_advisor(self.generator_llm, system, history, f"Generate {seed.item_id}")
        if not parsed.ok:
            raise ItemAbortedError(f"generation response unusable: {parsed.error[:300]}")
        history.add_message(AIMessage(content=parsed.raw))

        structure, metrics = self._apply_advisor_output(
            structure, parsed.value, GENERATION_ALLOWED_PATHS, "generation", result
        )
        if metrics.applied == 0:
            raise ItemAbortedError("generation produced no applicable edits")

        # Advisors
        for advisor in self.advisors:
            structure = self._advise(advisor, seed, structure, context, images, result)

        text = render_structure(structure)
        result.structure, result.text = structure, text

        # Judge
        rubric = self._judge(seed, text, context, result)
        if rubric is None:
            raise ItemAbortedError("judge response unusable")
        if self.judge.passes(rubric):
            result.status = ItemStatus.ACCEPTED
            self.color_print(f"[{seed.item_id}] accepted at {rubric.overall_score:.2f}", color="green")
            return

        # Rewrite (once)
        result.rewrite_count += 1
        self.color_print(
            f"[{seed.item_id}] score {rubric.overall_score:.2f} < {self.judge.threshold}, rewriting",
            color="yellow",
        )
        history.add_message(HumanMessage(content=self.unsafe_string_format(
            ITEM_REWRITE_REQUEST,
            overall_score=f"{rubric.overall_score:.1f}",
            threshold=str(self.judge.threshold),
            allowed_paths=", ".join(sorted(REWRITE_ALLOWED_PATHS)),
            feedback=self.judge.feedback_for_rewrite(rubric),
            current_structure=self._structure_for_prompt(structure),
            current_text=text,
        )))
        parsed = self._call_advisor(self.rewriter_llm, system, history, f"Rewrite {seed.item_id}")
        if not parsed.ok:
            result.status = ItemStatus.MANUAL_REVIEW
            result.error = f"rewrite response unusable: {parsed.error[:300]}"
            self.color_print(f"[{seed.item_id}] MANUAL REVIEW: {result.error}", color="magenta")
            return
        structure, _ = self._apply_advisor_output(structure, parsed.value, REWRITE_ALLOWED_PATHS, "rewrite", result)
        text = render_structure(structure)
        result.structure, result.text = structure, text

        # Judge again
        rubric = self._judge(seed, text, context, result)
        if rubric is not None and self.judge.passes(rubric):
            result.status = ItemStatus.ACCEPTED
            self.color_print(f"[{seed.item_id}] accepted after rewrite at {rubric.overall_score:.2f}", color="green")
            return

        result.status = ItemStatus.MANUAL_REVIEW
        if rubric is None:
            result.error = "judge response unusable after rewrite"
        self.color_print(
            f"[{seed.item_id}] MANUAL REVIEW: still below {self.judge.threshold} after one rewrite",
            color="magenta",
        )

    # -----------------------
    # Steps
    # -----------------------

    def _call_advisor(self, llm, system: SystemMessage, history: ChatMessageHistory, label: str) -> ParseResult[PatchListPayload]:
        return self._invoke_structured(
            llm,
            [system, *history.messages],
            lambda raw: self._parse_model(raw, PatchListPayload, top_level_key="patches"),
            label=label,
        )

    def _advise(
        self,
        advisor: Advisor,
        seed: Seed,
        structure: ItemStructure,
        context: SharedContext,
        images: list[bytes],
        result: ItemResult,
    ) -> ItemStructure:
        system = SystemMessage(content=self.unsafe_string_format(
            STORY_ADVISOR_PROMPT,
            advisor_name=advisor.name,
            focus=advisor.focus,
            allowed_paths=", ".join(sorted(advisor.allowed_paths)),
            path_prefixes=path_prefix_table(sorted(advisor.allowed_paths)),
        ))
        history = ChatMessageHistory()
        history.add_message(self._human_message(
            self.unsafe_string_format(
                STORY_ADVISOR_INPUT,
                product_type=self.product_type,
                product_context=self.product_context or "None",
                context_digest=self._shared_context_for_prompt(context),
                item_id=seed.item_id,
                seed=seed.text.strip(),
                current_structure=self._structure_for_prompt(structure),
            ),
            images,
        ))
        parsed = self._call_advisor(self.advisor_llm, system, history, f"Advisor {advisor.id} {seed.item_id}")
        if not parsed.ok:
            logger.info(f"[{seed.item_id}] advisor {advisor.id} skipped, response unusable: {parsed.error[:300]}")
            return structure

        structure, metrics = self._apply_advisor_output(
            structure, parsed.value, advisor.allowed_paths, advisor.id, result, retitle=False
        )
        result.advisor_metrics[advisor.id] = metrics
        return structure

    def _apply_advisor_output(
        self,
        structure: ItemStructure,
        payload: PatchListPayload,
        allowed_paths: frozenset,
        source: str,
        result: ItemResult,
        retitle: bool = True,
    ) -> tuple[ItemStructure, PatchMetrics]:
        patches = []
        schema_rejects: list[str] = []
        for i, raw_patch in enumerate(payload.patches):
            try:
                patches.append(PatchPayload.model_validate(raw_patch).to_patch(source))
            except ValidationError as e:
                schema_rejects.append(f"[{source}] patch #{i} schema mismatch: {e.errors()[0].get('msg', e)}")

        new_structure, metrics = apply_patches(structure, patches, allowed_paths)
        if retitle and payload.title and payload.title.strip():
            new_structure.title = title_from_text(payload.title)

        metrics.total_patches += len(schema_rejects)
        metrics.rejected_validation += len(schema_rejects)
        metrics.rejected_reasons = schema_rejects + metrics.rejected_reasons
        for reason in schema_rejects:
            logger.info(f"Patch rejected (schema): {reason}")

        result.rejected_patches.extend(metrics.rejected_reasons)
        logger.info(
            f"[{structure.item_id}] {source}: {metrics.applied}/{metrics.total_patches} patch(es) applied, "
            f"{metrics.rejected_path} out of scope, {metrics.rejected_validation} rejected"
        )
        return new_structure, metrics

    def _judge(self, seed: Seed, text: str, context: SharedContext, result: ItemResult) -> JudgeRubric | None:
        parsed = self.judge.judge(text, context, seed_text=seed.text, product_context=self.product_context)
        if not parsed.ok:
            logger.info(f"[{seed.item_id}] judge response unusable: {parsed.error[:300]}")
            return None
        rubric = parsed.value
        result.rubrics.append(rubric)
        result.scores.append(rubric.overall_score)
        self._collect_relationships(rubric, result)
        return rubric

    def _collect_relationships(self, rubric: JudgeRubric, result: ItemResult) -> None:
        seen = {self._relationship_key(r) for r in result.relationships}
        for op in rubric.relationship_operations():
            if op.confidence < self.confidence_threshold:
                logger.debug(f"[{result.item_id}] relationship '{op.name}' below threshold ({op.confidence:.2f})")
                continue
            key = self._relationship_key(op)
            if key in seen:
                continue
            seen.add(key)
            result.relationships.append(op)

    def _relationship_key(self, op: RelationshipOperation) -> tuple:
        return (op.operation, op.type, op.canonical_name.lower(), op.source, op.target)

    def _fetch(self, locator: str) -> bytes:
        if self.load_asset is None:
            raise AssetFetchError(f"no asset loader configured for '{locator}'")
        return self.load_asset(locator)

    def _structure_for_prompt(self, structure: ItemStructure) -> str:
        lines = [f"title: {structure.title}"]
        for path in SECTION_PATHS:
            entries = structure.sections.get(path, [])
            if not entries:
                lines.append(f"{path}: (empty)")
                continue
            lines.append(f"{path}:")
            lines += [f"  - [{e.id}] {e.text}" for e in entries]
        return "\n".join(lines)
