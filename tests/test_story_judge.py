from __future__ import annotations

import json

from llm_fakes import FakeChatLlm, judge_response, new_component
from storyforge.entities import SharedContext
from storyforge.story_judge import StoryJudge


def test_judge_parses_rubric_and_threshold() -> None:
    llm = FakeChatLlm().script("judge", judge_response(3.5), judge_response(3.4))
    judge = StoryJudge(llm, threshold=3.5)

    first = judge.judge("# Reset password", SharedContext(), seed_text="User resets password")
    second = judge.judge("# Reset password", SharedContext())

    assert first.ok and second.ok
    assert judge.passes(first.value)
    assert not judge.passes(second.value)


def test_scores_are_coerced_and_relationship_confidence_resolved() -> None:
    raw = json.dumps({
        "sectionSeparation": {"score": "4.6", "reasoning": "fine", "violations": ["UI detail in outcome AC"]},
        "correctness_vs_context": {"score": 9, "reasoning": "", "hallucinations": "COMP-GHOST"},
        "testability": {"score": -2},
        "completeness": {"score": 3, "missing_elements": []},
        "overall_score": 7,
        "recommendation": "Manual Review",
        "new_relationships": [
            {"id": "r1", "type": "component", "operation": "addNode", "name": "Toast"},
            {"id": "r2", "type": "event", "operation": "add-node", "name": "Link Sent", "confidence": 0.9},
            {"name": "no type, dropped"},
        ],
        "confidence_by_relationship": {"r1": 0.8},
    })
    result = StoryJudge(FakeChatLlm().script("judge", raw)).judge("text", SharedContext())

    rubric = result.value
    assert rubric.section_separation.score == 5
    assert rubric.section_separation.violations[0].quote == "UI detail in outcome AC"
    assert rubric.correctness_vs_context.score == 5
    assert rubric.correctness_vs_context.hallucinations == ["COMP-GHOST"]
    assert rubric.testability.score == 0
    assert rubric.overall_score == 5.0
    assert rubric.recommendation == "manual-review"

    ops = rubric.relationship_operations()
    assert [(o.operation, o.type, o.name, o.confidence) for o in ops] == [
        ("add_node", "component", "Toast", 0.8),
        ("add_node", "event", "Link Sent", 0.9),
    ]


def test_feedback_lists_every_dimension() -> None:
    llm = FakeChatLlm().script("judge", judge_response(2.0, [new_component("Toast", 0.5)]))
    judge = StoryJudge(llm)
    rubric = judge.judge("text", SharedContext()).value

    feedback = judge.feedback_for_rewrite(rubric)
    for label in ("Section separation 2/5", "Correctness vs shared context 2/5", "Testability 2/5", "Completeness 2/5"):
        assert label in feedback


def test_unparseable_judge_output_is_a_tagged_failure() -> None:
    llm = FakeChatLlm().script("judge", "great story!").script("repair", "really great")
    result = StoryJudge(llm).judge("text", SharedContext())
    assert not result.ok
    assert llm.roles() == ["judge", "repair"]
