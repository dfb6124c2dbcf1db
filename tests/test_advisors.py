from __future__ import annotations

import json

import pytest

from llm_fakes import FakeChatLlm, generation_response, judge_response
from storyforge.advisors import ADVISORS, applicable_advisors, parse_advisor_ids
from storyforge.entities import CONTENT_PATHS, ItemStatus, Seed, SharedContext
from storyforge.item_workflow import ItemWorkflow
from storyforge.story_judge import StoryJudge

SEED = Seed(item_id="ITEM-001", text="User resets password")


def _workflow(llm: FakeChatLlm, advisors) -> ItemWorkflow:
    return ItemWorkflow(llm, llm, StoryJudge(llm, threshold=3.5), advisors=advisors)


def _patches(*patches: dict) -> str:
    return json.dumps({"title": "Something else entirely", "patches": list(patches)})


def test_registry_paths_are_known_sections() -> None:
    assert len({a.id for a in ADVISORS}) == len(ADVISORS)
    for advisor in ADVISORS:
        assert advisor.allowed_paths
        assert advisor.allowed_paths <= set(CONTENT_PATHS), advisor.id


def test_product_type_picks_the_responsive_advisor() -> None:
    web = [a.id for a in applicable_advisors("web")]
    native = [a.id for a in applicable_advisors("mobile-native")]
    assert "responsive-web" in web and "responsive-native" not in web
    assert "responsive-native" in native and "responsive-web" not in native
    assert web[0] == "user-roles"
    assert web[-1] == "analytics"

    # narrowing keeps run order, not the order asked for
    assert [a.id for a in applicable_advisors("api", ("analytics", "security"))] == ["security", "analytics"]
    assert applicable_advisors("web", ()) == []
    with pytest.raises(ValueError):
        applicable_advisors("watch")


def test_advisor_ids_are_checked() -> None:
    assert parse_advisor_ids(None) is None
    assert parse_advisor_ids(" all ") is None
    assert parse_advisor_ids("none") == ()
    assert parse_advisor_ids("security, analytics,security") == ("security", "analytics")
    with pytest.raises(ValueError):
        parse_advisor_ids("security,spelling")


def test_advisor_cannot_write_outside_its_paths() -> None:
    security = applicable_advisors("web", ("security",))
    llm = (
        FakeChatLlm()
        .script("generation", generation_response())
        .script("advisor", _patches(
            {"op": "add", "path": "implementation_notes.security",
             "entry": {"id": "IMPL-SEC-1", "text": "Reset tokens are single use"}},
            {"op": "add", "path": "edge_cases", "entry": {"id": "EDGE-1", "text": "Link opened after expiry"}},
            {"op": "replace", "path": "outcome_acceptance_criteria", "match": {"id": "AC-OUT-1"},
             "entry": {"id": "AC-OUT-1", "text": "Nothing is sent"}},
            {"op": "remove", "path": "user_visible_behavior", "match": {"id": "UVB-1"}},
        ))
        .script("judge", judge_response(4.0))
    )

    result = _workflow(llm, security).run_item(SEED, SharedContext())

    assert result.status == ItemStatus.ACCEPTED
    assert llm.roles() == ["generation", "advisor", "judge"]
    sections = result.structure.sections
    assert [e.id for e in sections["implementation_notes.security"]] == ["IMPL-SEC-1"]
    assert [e.id for e in sections["edge_cases"]] == ["EDGE-1"]
    assert sections["outcome_acceptance_criteria"][0].text == "A reset link is sent to the registered address"
    assert [e.id for e in sections["user_visible_behavior"]] == ["UVB-1"]
    # advisors never retitle
    assert result.structure.title == "Reset password"

    metrics = result.advisor_metrics["security"]
    assert (metrics.applied, metrics.rejected_path) == (2, 2)
    assert "[security] path 'outcome_acceptance_criteria' is out of scope" in result.rejected_patches
    assert "[security] path 'user_visible_behavior' is out of scope" in result.rejected_patches
    assert "Reset tokens are single use" in result.text


def test_advisors_run_in_order_on_the_latest_structure() -> None:
    advisors = applicable_advisors("web", ("validation", "locale-formatting"))
    llm = (
        FakeChatLlm()
        .script("generation", generation_response())
        .script(
            "advisor",
            _patches({"op": "add", "path": "edge_cases", "entry": {"id": "EDGE-1", "text": "Unknown address"}}),
            _patches({"op": "replace", "path": "edge_cases", "match": {"id": "EDGE-1"},
                      "entry": {"id": "EDGE-1", "text": "Unknown address, shown in the user's language"}}),
        )
        .script("judge", judge_response(4.0))
    )

    result = _workflow(llm, advisors).run_item(SEED, SharedContext())

    assert llm.roles() == ["generation", "advisor", "advisor", "judge"]
    systems = [m[0].content for role, m in llm.calls if role == "advisor"]
    assert '"Input Validation"' in systems[0]
    assert '"Locale Formatting"' in systems[1]
    second_input = llm.calls[2][1][-1].content
    assert "[EDGE-1] Unknown address" in second_input
    assert result.structure.sections["edge_cases"][0].text == "Unknown address, shown in the user's language"


def test_unusable_advisor_is_skipped() -> None:
    advisors = applicable_advisors("web", ("security", "analytics"))
    llm = (
        FakeChatLlm()
        .script("generation", generation_response())
        .script("advisor", "I would add a rate limit", _patches(
            {"op": "add", "path": "implementation_notes.telemetry", "entry": {"id": "IMPL-TEL-1", "text": "Reset requested event"}},
        ))
        .script("repair", "still prose")
        .script("judge", judge_response(4.0))
    )

    result = _workflow(llm, advisors).run_item(SEED, SharedContext())

    assert result.status == ItemStatus.ACCEPTED
    assert "security" not in result.advisor_metrics
    assert result.advisor_metrics["analytics"].applied == 1
    assert "[IMPL-TEL-1] Reset requested event" in result.text
