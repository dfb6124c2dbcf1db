from __future__ import annotations

from storyforge.entities import CONTENT_PATHS, Entry, ItemStructure, Patch, PatchMatch
from storyforge.patch_validator import MAX_TEXT_LENGTH, validate_patch


def _structure() -> ItemStructure:
    s = ItemStructure(item_id="ITEM-001")
    s.sections["user_visible_behavior"] = [
        Entry(id="UVB-1", text="User sees the reset form"),
        Entry(id="UVB-2", text="User sees a confirmation"),
    ]
    s.sections["header.as_a"] = [Entry(id="HDR-ASA", text="registered user")]
    return s


def _add(path: str, entry_id: str, text: str = "something observable") -> Patch:
    return Patch(op="add", path=path, entry=Entry(id=entry_id, text=text), source="generation")


def test_valid_add_has_no_violations() -> None:
    assert validate_patch(_add("outcome_acceptance_criteria", "AC-OUT-1"), CONTENT_PATHS, _structure()) == []


def test_out_of_scope_path_is_rejected_alone() -> None:
    violations = validate_patch(_add("related_items", "REL-ITEM-002"), CONTENT_PATHS, _structure())
    assert len(violations) == 1
    assert "not allowed" in violations[0]


def test_unknown_path_and_op() -> None:
    assert "not a known section" in validate_patch(_add("footer", "F-1"), {"footer"}, _structure())[0]
    bad_op = Patch(op="upsert", path="edge_cases", entry=Entry(id="EDGE-1", text="x"), source="generation")
    assert "unknown op" in validate_patch(bad_op, CONTENT_PATHS, _structure())[0]


def test_wrong_prefix_is_rejected() -> None:
    violations = validate_patch(_add("edge_cases", "UVB-9"), CONTENT_PATHS, _structure())
    assert any("must start with 'EDGE-'" in v for v in violations)


def test_duplicate_id_across_sections_is_rejected() -> None:
    s = _structure()
    s.sections["edge_cases"] = [Entry(id="EDGE-1", text="offline")]
    patch = Patch(
        op="replace",
        path="user_visible_behavior",
        entry=Entry(id="UVB-2", text="changed"),
        match=PatchMatch(id="UVB-1"),
        source="rewrite",
    )
    assert any("duplicate id 'UVB-2'" in v for v in validate_patch(patch, CONTENT_PATHS, s))
    assert any("duplicate id" in v for v in validate_patch(_add("user_visible_behavior", "UVB-1"), CONTENT_PATHS, s))


def test_replace_keeping_its_own_id_is_fine() -> None:
    patch = Patch(
        op="replace",
        path="user_visible_behavior",
        entry=Entry(id="UVB-1", text="User sees the new reset form"),
        match=PatchMatch(id="UVB-1"),
        source="rewrite",
    )
    assert validate_patch(patch, CONTENT_PATHS, _structure()) == []


def test_match_must_hit_exactly_one_entry() -> None:
    s = _structure()
    missing = Patch(op="remove", path="user_visible_behavior", match=PatchMatch(id="UVB-7"), source="rewrite")
    assert any("matched 0" in v for v in validate_patch(missing, CONTENT_PATHS, s))

    s.sections["user_visible_behavior"].append(Entry(id="UVB-3", text="User sees the reset form"))
    ambiguous = Patch(
        op="remove",
        path="user_visible_behavior",
        match=PatchMatch(text_equals="User sees the reset form"),
        source="rewrite",
    )
    assert any("matched 2" in v for v in validate_patch(ambiguous, CONTENT_PATHS, s))


def test_shape_rules_per_op() -> None:
    s = _structure()
    add_with_match = Patch(
        op="add", path="edge_cases", entry=Entry(id="EDGE-1", text="x"), match=PatchMatch(id="EDGE-0"), source="g"
    )
    assert any("must not carry a match" in v for v in validate_patch(add_with_match, CONTENT_PATHS, s))

    remove_with_entry = Patch(
        op="remove", path="user_visible_behavior", entry=Entry(id="UVB-1", text="x"),
        match=PatchMatch(id="UVB-1"), source="g",
    )
    assert any("must not carry an entry" in v for v in validate_patch(remove_with_entry, CONTENT_PATHS, s))

    replace_without_match = Patch(op="replace", path="user_visible_behavior", entry=Entry(id="UVB-1", text="x"), source="g")
    assert any("requires a match" in v for v in validate_patch(replace_without_match, CONTENT_PATHS, s))


def test_text_and_source_rules() -> None:
    s = _structure()
    assert any("text is required" in v for v in validate_patch(_add("edge_cases", "EDGE-1", "   "), CONTENT_PATHS, s))
    too_long = _add("edge_cases", "EDGE-1", "x" * (MAX_TEXT_LENGTH + 1))
    assert any("max is" in v for v in validate_patch(too_long, CONTENT_PATHS, s))
    bad_chars = _add("edge_cases", "EDGE 1")
    assert any("may only contain" in v for v in validate_patch(bad_chars, CONTENT_PATHS, s))
    anonymous = Patch(op="add", path="edge_cases", entry=Entry(id="EDGE-1", text="x"))
    assert any("source" in v for v in validate_patch(anonymous, CONTENT_PATHS, s))


def test_header_line_is_single_entry() -> None:
    violations = validate_patch(_add("header.as_a", "HDR-ASA2", "admin"), CONTENT_PATHS, _structure())
    assert any("header line already set" in v for v in violations)


def test_validation_does_not_touch_structure() -> None:
    s = ItemStructure(item_id="ITEM-001")
    del s.sections["edge_cases"]
    validate_patch(_add("edge_cases", "EDGE-1"), CONTENT_PATHS, s)
    assert "edge_cases" not in s.sections


def test_id_with_surrounding_whitespace_is_rejected() -> None:
    s = ItemStructure(item_id="ITEM-001")
    s.sections["edge_cases"] = [Entry(id="EDGE-1", text="device is offline")]

    violations = validate_patch(_add("edge_cases", " EDGE-1"), CONTENT_PATHS, s)
    assert any("may only contain" in v for v in violations)
    assert any("duplicate id 'EDGE-1'" in v for v in violations)

    replace = Patch(
        op="replace", path="user_visible_behavior", entry=Entry(id="UVB-2 ", text="renamed"),
        match=PatchMatch(id="UVB-1"), source="rewrite",
    )
    assert any("duplicate id 'UVB-2'" in v for v in validate_patch(replace, CONTENT_PATHS, _structure()))
