from __future__ import annotations

from llm_fakes import FakeChatLlm, discovery_response, message_text
from storyforge.discovery import DiscoveryEngine
from storyforge.entities import UNKNOWN, CompositionEdge, Seed
from storyforge.id_registry import IdRegistry


def test_seed_without_material_leaves_fields_unknown() -> None:
    llm = FakeChatLlm().script("discovery", discovery_response(
        canonical_names={"Password Reset Form": ["reset form"], "Session": []},
        evidence={"Password Reset Form": "a form with an email field and a send button"},
        state_models=["Session"],
        relations=[{"kind": "owns", "source": "Password Reset Form", "target": "Session", "evidence": ""}],
    ))
    engine = DiscoveryEngine(llm, IdRegistry())

    result = engine.discover([Seed(item_id="ITEM-001", text="User resets password")])
    ctx = result.context

    form = ctx.components["COMP-PASSWORD-RESET-FORM"]
    assert form.product_name == "Password Reset Form"
    assert form.description == UNKNOWN
    session = ctx.state_models["C-STATE-SESSION"]
    assert session.description == UNKNOWN
    # the ownership relation had no evidence, so it is not recorded
    assert session.owner == UNKNOWN
    assert result.failed_items == {}


def test_supporting_documents_allow_evidenced_descriptions() -> None:
    llm = FakeChatLlm().script("discovery", discovery_response(
        canonical_names={"Account Page": [], "Reset Dialog": ["dialog"], "Password Changed": []},
        evidence={"Reset Dialog": "Dialog with one email input (design doc p.2)"},
        events=["Password Changed"],
        relations=[
            {"kind": "contains", "source": "Account Page", "target": "Reset Dialog", "evidence": "p.2 layout"},
            {"kind": "emits", "source": "dialog", "target": "Password Changed", "evidence": "p.3"},
            {"kind": "listens", "source": "Account Page", "target": "Password Changed", "evidence": "p.3"},
        ],
        vocabulary={"reset_dialog": "Forgot password window"},
    ))
    engine = DiscoveryEngine(llm, IdRegistry())

    result = engine.discover(
        [Seed(item_id="ITEM-001", text="User resets password from the account page")],
        reference_documents=["Design doc: the reset dialog ..."],
        product_context="Banking app",
    )
    ctx = result.context

    assert ctx.components["COMP-RESET-DIALOG"].description == "Dialog with one email input (design doc p.2)"
    assert ctx.components["COMP-ACCOUNT-PAGE"].description == UNKNOWN
    assert CompositionEdge(parent="COMP-ACCOUNT-PAGE", child="COMP-RESET-DIALOG") in ctx.composition_edges
    event = ctx.events["E-PASSWORD-CHANGED"]
    assert event.emitter == "COMP-RESET-DIALOG"
    assert event.listeners == ["COMP-ACCOUNT-PAGE"]
    assert ctx.vocabulary == {"reset_dialog": "Forgot password window"}
    assert ctx.reference_documents == ["Design doc: the reset dialog ..."]

    prompt = message_text(llm.calls[0][1][-1])
    assert "Banking app" in prompt
    assert "Design doc: the reset dialog" in prompt


def test_same_name_in_two_batches_keeps_one_id() -> None:
    llm = FakeChatLlm().script(
        "discovery",
        discovery_response(canonical_names={"Cart": []}),
        discovery_response(canonical_names={"Cart": [], "Checkout Button": []}),
    )
    engine = DiscoveryEngine(llm, IdRegistry(), batch_size=1)

    result = engine.discover([Seed("ITEM-001", "Add to cart"), Seed("ITEM-002", "Pay for the cart")])
    assert result.batches == 2
    assert sorted(result.context.components) == ["COMP-CART", "COMP-CHECKOUT-BUTTON"]


def test_failures_are_scoped_to_their_items() -> None:
    llm = FakeChatLlm().script(
        "discovery",
        "this is not json",
        discovery_response(canonical_names={"Profile": []}),
    )
    llm.always("repair", "still not json")
    engine = DiscoveryEngine(llm, IdRegistry(), batch_size=1)

    result = engine.discover([
        Seed("ITEM-001", "Broken batch"),
        Seed("ITEM-002", "   "),
        Seed("ITEM-003", "Edit profile"),
    ])

    assert result.failed_items["ITEM-001"].startswith("context construction failed")
    assert result.failed_items["ITEM-002"] == "missing seed text"
    assert "ITEM-003" not in result.failed_items
    assert "COMP-PROFILE" in result.context.components


def test_missing_asset_loader_fails_the_batch() -> None:
    llm = FakeChatLlm().always("discovery", discovery_response())
    engine = DiscoveryEngine(llm, IdRegistry())

    result = engine.discover([Seed("ITEM-001", "Upload avatar", images=["gs://bucket/avatar.png"])])
    assert "asset" in result.failed_items["ITEM-001"]
    assert llm.calls == []


def test_images_make_descriptions_supported() -> None:
    png = b"\x89PNG\r\n\x1a\n" + b"1" * 8
    llm = FakeChatLlm().script("discovery", discovery_response(
        canonical_names={"Avatar Picker": []},
        evidence={"Avatar Picker": "circular crop preview in the screenshot"},
    ))
    engine = DiscoveryEngine(llm, IdRegistry(), load_asset=lambda locator: png)

    result = engine.discover([Seed("ITEM-001", "Upload avatar", images=["shots/avatar.png"])])
    assert result.context.components["COMP-AVATAR-PICKER"].description == "circular crop preview in the screenshot"
    human = llm.calls[0][1][-1]
    assert any(isinstance(b, dict) and b.get("type") == "image_url" for b in human.content)
