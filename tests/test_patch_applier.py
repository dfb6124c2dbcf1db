from __future__ import annotations

from storyforge.entities import CONTENT_PATHS, Entry, ItemStructure, Patch, PatchMatch
from storyforge.patch_applier import apply_patches
from storyforge.story_renderer import render_structure


def test_patches_apply_in_order_on_a_copy() -> None:
    original = ItemStructure(item_id="ITEM-001")
    patches = [
        Patch(op="add", path="edge_cases", entry=Entry(id="EDGE-1", text="  offline  "), source="generation"),
        Patch(
            op="replace", path="edge_cases", entry=Entry(id="EDGE-1", text="device is offline"),
            match=PatchMatch(id="EDGE-1"), source="generation",
        ),
        Patch(op="add", path="edge_cases", entry=Entry(id="EDGE-2", text="expired link"), source="generation"),
        Patch(op="remove", path="edge_cases", match=PatchMatch(text_equals="expired link"), source="generation"),
    ]
    updated, metrics = apply_patches(original, patches, CONTENT_PATHS)

    assert original.sections["edge_cases"] == []
    assert updated.sections["edge_cases"] == [Entry(id="EDGE-1", text="device is offline")]
    assert metrics.total_patches == 4
    assert metrics.applied == 4
    assert metrics.rejected_reasons == []


def test_rejections_are_counted_and_skipped() -> None:
    patches = [
        Patch(op="add", path="related_items", entry=Entry(id="REL-ITEM-2", text="related ITEM-2"), source="rewrite"),
        Patch(op="add", path="edge_cases", entry=Entry(id="UVB-1", text="wrong prefix"), source="rewrite"),
        Patch(op="add", path="non_goals", entry=Entry(id="NON-GOAL-1", text="no SMS reset"), source="rewrite"),
    ]
    updated, metrics = apply_patches(ItemStructure(item_id="ITEM-001"), patches, CONTENT_PATHS)

    assert metrics.applied == 1
    assert metrics.rejected_path == 1
    assert metrics.rejected_validation == 1
    assert len(metrics.rejected_reasons) == 2
    assert metrics.rejected_reasons[0].startswith("[rewrite]")
    assert [e.id for e in updated.sections["non_goals"]] == ["NON-GOAL-1"]
    assert updated.sections["related_items"] == []


def test_padded_duplicate_id_is_not_applied() -> None:
    s = ItemStructure(item_id="ITEM-001")
    s.sections["edge_cases"] = [Entry(id="EDGE-1", text="device is offline")]
    patch = Patch(op="add", path="edge_cases", entry=Entry(id=" EDGE-1", text="link expired"), source="generation")

    updated, metrics = apply_patches(s, [patch], CONTENT_PATHS)

    assert metrics.applied == 0
    assert metrics.rejected_validation == 1
    assert [e.id for e in updated.sections["edge_cases"]] == ["EDGE-1"]


def test_add_then_remove_shows_in_render_exactly_once() -> None:
    base = ItemStructure(item_id="ITEM-001", title="Reset password")
    base.sections["user_visible_behavior"] = [Entry(id="UVB-1", text="User opens the reset form")]
    line = "- [EDGE-7] Reset link opened twice"

    added, metrics = apply_patches(
        base,
        [Patch(op="add", path="edge_cases", entry=Entry(id="EDGE-7", text="Reset link opened twice"), source="generation")],
        CONTENT_PATHS,
    )
    assert metrics.applied == 1
    assert render_structure(added).splitlines().count(line) == 1
    assert line not in render_structure(base).splitlines()

    removed, metrics = apply_patches(
        added,
        [Patch(op="remove", path="edge_cases", match=PatchMatch(id="EDGE-7"), source="rewrite")],
        CONTENT_PATHS,
    )
    assert metrics.applied == 1
    text = render_structure(removed)
    assert "EDGE-7" not in text
    assert text == render_structure(base)
