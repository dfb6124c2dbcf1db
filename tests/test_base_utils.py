from __future__ import annotations

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from llm_fakes import FakeChatLlm, last_human_text
from storyforge.base_utils import BaseUtils
from storyforge.entities import Component, SharedContext, StateModel
from storyforge.wire_schemas import PatchListPayload


def test_load_fault_tolerant_json_variants() -> None:
    u = BaseUtils()
    assert u.load_fault_tolerant_json('{"a": 1}') == {"a": 1}
    assert u.load_fault_tolerant_json('```json\n{"a": 1, // note\n "b": [1, 2]}\n```') == {"a": 1, "b": [1, 2]}
    assert u.load_fault_tolerant_json('Here you go:\n{"a": {"b": 2}}\nThanks!') == {"a": {"b": 2}}
    assert u.load_fault_tolerant_json('{"a": 1, "b": [1, 2,]') == {"a": 1, "b": [1, 2]}
    with pytest.raises(ValueError):
        u.load_fault_tolerant_json("")


def test_unsafe_string_format_leaves_other_braces() -> None:
    out = BaseUtils().unsafe_string_format('{"x": {name}} {missing}', name="1")
    assert out == '{"x": 1} {missing}'


def test_parse_model_accepts_bare_list_and_rejects_prose() -> None:
    u = BaseUtils()
    ok = u._parse_model('[{"op": "add"}]', PatchListPayload, top_level_key="patches")
    assert ok.ok and ok.value.patches == [{"op": "add"}]

    prose = u._parse_model("Note: I could not do this", PatchListPayload)
    assert not prose.ok
    assert prose.raw == "Note: I could not do this"


def test_invoke_structured_sends_exactly_one_repair() -> None:
    llm = FakeChatLlm().script("generation", "not json at all").script("repair", '{"patches": []}')
    u = BaseUtils()
    messages = [SystemMessage(content="You are ITEM_GENERATOR"), HumanMessage(content="seed")]

    result = u._invoke_structured(llm, messages, lambda raw: u._parse_model(raw, PatchListPayload), label="t")
    assert result.ok
    assert llm.roles() == ["generation", "repair"]
    repair_messages = llm.calls[1][1]
    assert isinstance(repair_messages[0], SystemMessage)
    assert "not json at all" in last_human_text(repair_messages)


def test_invoke_structured_fails_after_one_repair() -> None:
    llm = FakeChatLlm().script("generation", "nope").script("repair", "still nope")
    u = BaseUtils()
    messages = [SystemMessage(content="You are ITEM_GENERATOR"), HumanMessage(content="seed")]

    result = u._invoke_structured(llm, messages, lambda raw: u._parse_model(raw, PatchListPayload), label="t")
    assert not result.ok
    assert result.raw == "still nope"
    assert llm.roles() == ["generation", "repair"]


def test_human_message_carries_images() -> None:
    png = b"\x89PNG\r\n\x1a\n" + b"0" * 16
    msg = BaseUtils()._human_message("look", [png])
    assert msg.content[0] == {"type": "text", "text": "look"}
    assert msg.content[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_context_digest_marks_unknowns() -> None:
    ctx = SharedContext()
    ctx.components["COMP-RESET-FORM"] = Component(id="COMP-RESET-FORM", product_name="Reset Form")
    ctx.state_models["C-STATE-SESSION"] = StateModel(id="C-STATE-SESSION", name="Session", owner="COMP-RESET-FORM")
    digest = BaseUtils()._shared_context_for_prompt(ctx)
    assert "- COMP-RESET-FORM: Reset Form | UNKNOWN (non-authoritative)" in digest
    assert "owner: COMP-RESET-FORM" in digest
    assert "## Standard states" in digest
