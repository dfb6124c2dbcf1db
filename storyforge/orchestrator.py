# storyforge/orchestrator.py

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from storyforge.advisors import applicable_advisors
from storyforge.asset_cache import AssetCache
from storyforge.base_utils import BaseUtils
from storyforge.consistency_checker import ConsistencyChecker, ConsistencyOutcome
from storyforge.discovery import DiscoveryEngine
from storyforge.entities import (
    Interconnections,
    ItemResult,
    ItemStatus,
    RelationshipOperation,
    RoundLog,
    Seed,
    SharedContext,
)
from storyforge.google_helpers import AssetFetcher
from storyforge.id_registry import IdRegistry
from storyforge.interconnection import InterconnectionBuilder
from storyforge.item_workflow import ItemWorkflow
from storyforge.llm_client import BackoffGate, ChatLlmClient
from storyforge.model_props import PricingTable
from storyforge.relationship_merger import RelationshipMerger
from storyforge.settings import OPERATIONS, Settings
from storyforge.story_judge import StoryJudge

logger = logging.getLogger("storyforge")

TERMINATION_NO_RELATIONSHIPS = "no-qualifying-relationships"
TERMINATION_MAX_ROUNDS = "max-rounds-reached"
TERMINATION_NOTHING_MERGED = "no-relationships-merged"


@dataclass
class PipelineResult:
    context: SharedContext
    items: dict[str, ItemResult] = field(default_factory=dict)
    round_logs: list[RoundLog] = field(default_factory=list)
    interconnections: dict[str, Interconnections] = field(default_factory=dict)
    consistency: ConsistencyOutcome | None = None
    manual_review: list[str] = field(default_factory=list)
    usage: dict[str, dict] = field(default_factory=dict)
    accrued_cost: float = 0.0
    asset_cache_stats: dict | None = None

    def items_with_status(self, status: ItemStatus) -> list[str]:
        return [item_id for item_id, r in self.items.items() if r.status == status]


def _describe_relationship(op: RelationshipOperation) -> str:
    target = f" {op.source} -> {op.target}" if op.operation in ("add_edge", "edit_edge") else ""
    return f"{op.operation} {op.type} '{op.canonical_name or op.name}'{target} ({op.confidence:.2f})"


class StoryPipeline(BaseUtils):
    """
    Runs the whole batch:

        Pass 0   discovery            -> SharedContext
        Pass 1   refinement rounds    -> one ItemResult per seed
        Pass 2   interconnections     -> related items, term mapping, ownership
        Pass 2b  global consistency   -> auto-fixes + manual review list

    Every Pass 1 round fans all items out on worker threads and joins them
    before looking at the relationships the judge reported. When any of them
    get merged into the context, the whole batch is regenerated against the
    new context, never only the items that reported them. Rounds stop when no
    qualifying relationships are found, when nothing could be merged, or at
    `max_refinement_rounds`.

    Model clients are built per operation from Settings (same model name,
    same client). Tests pass `llm=` (one model for every operation) or
    `llms={"judge": ...}` instead.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        llm: Any = None,
        llms: dict[str, Any] | None = None,
        registry: IdRegistry | None = None,
        load_asset: Callable[[str], bytes] | None = None,
    ):
        self.settings = settings or Settings()
        self.registry = registry or IdRegistry()
        self.pricing = PricingTable.from_file(self.settings.pricing_path)
        self.backoff_gate = BackoffGate()

        self._clients: dict[str, Any] = {}
        self._llms: dict[str, Any] = {}
        for op in OPERATIONS:
            if llms and op in llms:
                self._llms[op] = llms[op]
            elif llm is not None:
                self._llms[op] = llm
            else:
                self._llms[op] = self._build_chat_llm(self.settings.model_for(op))

        self._asset_lock = threading.Lock()
        self._asset_cache: AssetCache | None = None
        self._load_asset_override = load_asset

    # -----------------------
    # Wiring
    # -----------------------

    def _build_chat_llm(self, model_name: str) -> ChatLlmClient:
        client = self._clients.get(model_name)
        if client is None:
            s = self.settings
            client = ChatLlmClient(
                model_name,
                vertex_project=s.vertex_project,
                vertex_region=s.vertex_region,
                timeout=s.llm_timeout,
                retry_policy=s.retry_policy(),
                backoff_gate=self.backoff_gate,
                pricing=self.pricing,
                log=logger.warning,
            )
            self._clients[model_name] = client
        return client

    def _load_asset(self, locator: str) -> bytes:
        if self._load_asset_override is not None:
            return self._load_asset_override(locator)
        with self._asset_lock:
            if self._asset_cache is None:
                self._asset_cache = AssetCache(self.settings.asset_cache_dir, AssetFetcher())
            cache = self._asset_cache
        return cache.get(locator)

    # -----------------------
    # Entry point
    # -----------------------

    def run(
        self,
        seeds: list[Seed],
        reference_documents: list[str] | None = None,
        product_context: str = "",
    ) -> PipelineResult:
        return asyncio.run(self._run_async(seeds, reference_documents or [], product_context))

    async def _run_async(
        self,
        seeds: list[Seed],
        reference_documents: list[str],
        product_context: str,
    ) -> PipelineResult:
        s = self.settings
        seeds = self._unique_seeds(seeds)

        # Pass 0
        discovery_model = s.model_for("discovery")
        engine = DiscoveryEngine(
            self._llms["discovery"],
            self.registry,
            batch_size=self.pricing.get_model_max_threshold(discovery_model, default=s.discovery_batch_size),
            load_asset=self._load_asset,
        )
        discovery = await asyncio.to_thread(engine.discover, seeds, reference_documents, product_context)
        result = PipelineResult(context=discovery.context)

        for seed in seeds:
            if seed.item_id in discovery.failed_items:
                result.items[seed.item_id] = ItemResult(
                    item_id=seed.item_id, status=ItemStatus.FAILED, error=discovery.failed_items[seed.item_id]
                )
        active = [seed for seed in seeds if seed.item_id not in discovery.failed_items]

        # Pass 1
        judge = StoryJudge(self._llms["judge"], threshold=s.quality_threshold)
        workflow = ItemWorkflow(
            self._llms["generation"],
            self._llms["rewrite"],
            judge,
            confidence_threshold=s.relationship_confidence_threshold,
            product_context=product_context,
            load_asset=self._load_asset,
            advisor_llm=self._llms["advisor"],
            advisors=applicable_advisors(s.product_type, s.advisors),
            product_type=s.product_type,
        )
        merger = RelationshipMerger(self.registry)
        result.context = await self._refine(active, result, workflow, merger)

        # Pass 2
        builder = InterconnectionBuilder(self._llms["interconnection"], concurrency=s.concurrent_items)
        result.interconnections = await builder.build_all_async(result.items, result.context)

        # Pass 2b
        checker = ConsistencyChecker(self._llms["consistency"], auto_fix_confidence=s.auto_fix_confidence)
        result.consistency = await asyncio.to_thread(
            checker.check_and_fix, result.items, result.context, result.interconnections
        )
        result.manual_review += [f"consistency: {line}" for line in result.consistency.manual_review]

        for item_id, item in result.items.items():
            if item.status == ItemStatus.MANUAL_REVIEW:
                scores = ", ".join(f"{x:.2f}" for x in item.scores) or "none"
                result.manual_review.append(f"item {item_id}: below quality threshold after rewrite (scores {scores})")

        self._collect_usage(result)
        self._log_summary(result)
        return result

    def _unique_seeds(self, seeds: list[Seed]) -> list[Seed]:
        seen: set[str] = set()
        out: list[Seed] = []
        for seed in seeds:
            if seed.item_id in seen:
                logger.warning(f"Duplicate item id '{seed.item_id}' in seeds; keeping the first one")
                continue
            seen.add(seed.item_id)
            out.append(seed)
        return out

    # -----------------------
    # Pass 1
    # -----------------------

    async def _refine(
        self,
        active: list[Seed],
        result: PipelineResult,
        workflow: ItemWorkflow,
        merger: RelationshipMerger,
    ) -> SharedContext:
        s = self.settings
        max_rounds = max(1, int(s.max_refinement_rounds))
        context = result.context

        for round_number in range(1, max_rounds + 1):
            self.color_print(f"Round {round_number}/{max_rounds}: generating {len(active)} item(s)", color="blue")
            round_results = await self._run_round(active, context, workflow)
            result.items.update(round_results)

            found = [op for r in round_results.values() for op in r.relationships]
            log = RoundLog(round_number=round_number, relationships_found=len(found))
            result.round_logs.append(log)

            if not found:
                log.termination_reason = TERMINATION_NO_RELATIONSHIPS
            elif round_number >= max_rounds:
                # nothing is merged on the last round: a merge would require another round to take effect
                log.termination_reason = TERMINATION_MAX_ROUNDS
                log.manual_review_relationships = [_describe_relationship(op) for op in found]
            else:
                merge = merger.merge(context, found, s.relationship_confidence_threshold)
                log.relationships_merged = merge.merged_count
                log.manual_review_relationships = list(merge.manual_review)
                if merge.merged_count == 0:
                    log.termination_reason = TERMINATION_NOTHING_MERGED
                else:
                    context = merge.updated_context
                    log.restarted = True

            result.manual_review += [f"relationship (round {round_number}): {line}" for line in log.manual_review_relationships]
            self._log_round(log)
            if log.termination_reason:
                break
        return context

    async def _run_round(
        self,
        active: list[Seed],
        context: SharedContext,
        workflow: ItemWorkflow,
    ) -> dict[str, ItemResult]:
        s = self.settings
        sem = asyncio.Semaphore(max(1, int(s.concurrent_items)))
        # the context is frozen for the whole round
        snapshot = context.clone()

        async def one(seed: Seed) -> ItemResult:
            async with sem:
                return await asyncio.wait_for(
                    asyncio.to_thread(workflow.run_item, seed, snapshot),
                    timeout=s.item_timeout,
                )

        outcomes = await asyncio.gather(*(one(seed) for seed in active), return_exceptions=True)

        results: dict[str, ItemResult] = {}
        for seed, outcome in zip(active, outcomes):
            if isinstance(outcome, ItemResult):
                results[seed.item_id] = outcome
                continue
            if isinstance(outcome, asyncio.TimeoutError):
                error = f"timed out after {s.item_timeout:.0f}s"
            elif isinstance(outcome, Exception):
                logger.error(f"[{seed.item_id}] unexpected error", exc_info=outcome)
                error = f"unexpected error: {outcome!r}"
            else:
                raise outcome
            self.color_print(f"[{seed.item_id}] FAILED: {error}", color="red")
            results[seed.item_id] = ItemResult(item_id=seed.item_id, status=ItemStatus.FAILED, error=error)
        return results

    # -----------------------
    # Reporting
    # -----------------------

    def _log_round(self, log: RoundLog) -> None:
        self.color_print(
            f"Round {log.round_number}: relationships found={log.relationships_found}, "
            f"merged={log.relationships_merged}, restarted={log.restarted}, "
            f"termination={log.termination_reason or '-'}",
            color="magenta" if log.termination_reason else "cyan",
        )

    def _collect_usage(self, result: PipelineResult) -> None:
        for model_name, client in self._clients.items():
            result.usage[model_name] = client.get_accrued_usage()
            result.accrued_cost += client.get_accrued_cost()
        if self._asset_cache is not None:
            result.asset_cache_stats = self._asset_cache.stats_snapshot()

    def _log_summary(self, result: PipelineResult) -> None:
        counts = {status.value: len(result.items_with_status(status)) for status in ItemStatus}
        self.color_print(
            f"Pipeline done: {counts}; rounds={len(result.round_logs)}; "
            f"manual review={len(result.manual_review)}; cost=${result.accrued_cost:.4f}",
            color="green",
        )
