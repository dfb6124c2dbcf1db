from __future__ import annotations

import re
import time

from llm_fakes import (
    FakeChatLlm,
    discovery_response,
    empty_consistency_response,
    generation_response,
    interconnection_response,
    judge_response,
    last_human_text,
    new_component,
)
from storyforge.advisors import applicable_advisors
from storyforge.entities import ItemStatus, Seed
from storyforge.orchestrator import (
    TERMINATION_MAX_ROUNDS,
    TERMINATION_NO_RELATIONSHIPS,
    TERMINATION_NOTHING_MERGED,
    StoryPipeline,
)
from storyforge.settings import Settings


def _item_id(messages) -> str:
    return re.search(r"ITEM ID: (\S+)", last_human_text(messages)).group(1)


def _generate(messages) -> str:
    return generation_response(item_id=_item_id(messages))


def _fake(judge=judge_response(4.0), link=None) -> FakeChatLlm:
    llm = FakeChatLlm()
    llm.always("discovery", discovery_response(canonical_names={"Cart": []}))
    llm.always("generation", _generate)
    llm.always("advisor", '{"patches": []}')
    llm.always("judge", judge)
    llm.always("interconnection", link or (lambda messages: interconnection_response(_item_id(messages))))
    llm.always("consistency", empty_consistency_response())
    return llm


SEEDS = [Seed("ITEM-001", "Add a product to the cart"), Seed("ITEM-002", "Check out the cart")]


def test_no_relationships_finishes_in_one_round() -> None:
    def link(messages) -> str:
        if _item_id(messages) == "ITEM-001":
            return interconnection_response("ITEM-001", [{"item_id": "ITEM-002", "relationship": "prerequisite"}])
        return interconnection_response("ITEM-002")

    llm = _fake(link=link)
    result = StoryPipeline(Settings(max_refinement_rounds=3), llm=llm).run(SEEDS)

    assert [log.termination_reason for log in result.round_logs] == [TERMINATION_NO_RELATIONSHIPS]
    assert result.items_with_status(ItemStatus.ACCEPTED) == ["ITEM-001", "ITEM-002"]
    assert llm.count("generation") == 2
    assert llm.count("advisor") == 2 * len(applicable_advisors("web"))
    assert llm.count("interconnection") == 2
    assert llm.count("consistency") == 1
    assert "COMP-CART" in result.context.components

    # the reciprocal link is added by the consistency pass
    assert [e.id for e in result.items["ITEM-002"].structure.sections["related_items"]] == ["REL-ITEM-001"]
    assert len(result.consistency.applied) == 1


def test_rounds_are_bounded_and_restart_the_whole_batch() -> None:
    llm = _fake(judge=judge_response(4.0, [new_component("Toast", 0.9)]))
    result = StoryPipeline(Settings(max_refinement_rounds=2), llm=llm).run(SEEDS)

    first, second = result.round_logs
    assert first.relationships_found == 2
    assert first.relationships_merged == 1
    assert first.restarted
    assert second.termination_reason == TERMINATION_MAX_ROUNDS
    assert second.manual_review_relationships == ["add_node component 'Toast' (0.90)", "add_node component 'Toast' (0.90)"]

    assert llm.count("generation") == 4
    assert "COMP-TOAST" in result.context.components
    round_two_prompts = [last_human_text(m) for role, m in llm.calls if role == "generation"][2:]
    assert all("COMP-TOAST" in p for p in round_two_prompts)
    assert any(line.startswith("relationship (round 2)") for line in result.manual_review)


def test_advisors_follow_the_settings() -> None:
    llm = _fake()
    settings = Settings(product_type="mobile-native", advisors=("responsive-web", "responsive-native", "security"))
    StoryPipeline(settings, llm=llm).run(SEEDS[:1])

    focus = [m[0].content for role, m in llm.calls if role == "advisor"]
    assert len(focus) == 2
    assert '"Security"' in focus[0]
    assert '"Responsive Layout (native)"' in focus[1]


def test_single_round_never_merges() -> None:
    llm = _fake(judge=judge_response(4.0, [new_component("Toast", 0.9)]))
    result = StoryPipeline(Settings(max_refinement_rounds=1), llm=llm).run(SEEDS)

    assert len(result.round_logs) == 1
    assert result.round_logs[0].termination_reason == TERMINATION_MAX_ROUNDS
    assert "COMP-TOAST" not in result.context.components


def test_nothing_mergeable_stops_the_rounds() -> None:
    edit = {"id": "r1", "type": "component", "operation": "edit_node", "name": "Cart", "confidence": 0.9}
    llm = _fake(judge=judge_response(4.0, [edit]))
    result = StoryPipeline(Settings(max_refinement_rounds=3), llm=llm).run(SEEDS)

    assert len(result.round_logs) == 1
    assert result.round_logs[0].termination_reason == TERMINATION_NOTHING_MERGED
    assert llm.count("generation") == 2
    assert any("edits are not applied automatically" in line for line in result.manual_review)


def test_failures_stay_with_their_item() -> None:
    def generate(messages) -> str:
        item_id = _item_id(messages)
        if item_id == "ITEM-002":
            raise RuntimeError("boom")
        if item_id == "ITEM-003":
            time.sleep(1.0)
        return generation_response(item_id=item_id)

    llm = _fake()
    llm.always("generation", generate)
    seeds = SEEDS + [Seed("ITEM-003", "Apply a coupon"), Seed("ITEM-004", "   "), Seed("ITEM-001", "duplicate")]
    result = StoryPipeline(Settings(item_timeout=0.3), llm=llm).run(seeds)

    items = result.items
    assert list(sorted(items)) == ["ITEM-001", "ITEM-002", "ITEM-003", "ITEM-004"]
    assert items["ITEM-001"].status == ItemStatus.ACCEPTED
    assert items["ITEM-002"].status == ItemStatus.FAILED
    assert "boom" in items["ITEM-002"].error
    assert items["ITEM-003"].status == ItemStatus.FAILED
    assert items["ITEM-003"].error.startswith("timed out")
    assert items["ITEM-004"].status == ItemStatus.FAILED
    assert items["ITEM-004"].error == "missing seed text"
    assert llm.count("interconnection") == 1


def test_low_scores_are_listed_for_manual_review() -> None:
    llm = _fake(judge=judge_response(2.0))
    llm.always("rewrite", '{"patches": []}')
    result = StoryPipeline(Settings(), llm=llm).run(SEEDS[:1])

    assert result.items["ITEM-001"].status == ItemStatus.MANUAL_REVIEW
    assert llm.count("rewrite") == 1
    assert result.manual_review == ["item ITEM-001: below quality threshold after rewrite (scores 2.00, 2.00)"]
