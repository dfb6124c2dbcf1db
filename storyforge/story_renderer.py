# storyforge/story_renderer.py

import re

from storyforge.entities import Entry, Interconnections, ItemStructure

# (path, heading) in the order they are rendered
_CONTENT_SECTIONS = [
    ("user_visible_behavior", "## User-Visible Behavior"),
    ("outcome_acceptance_criteria", "## Acceptance Criteria (Outcome)"),
]

_IMPLEMENTATION_SUBSECTIONS = [
    ("implementation_notes.state_ownership", "State ownership"),
    ("implementation_notes.data_flow", "Data flow"),
    ("implementation_notes.api_contracts", "API contracts"),
    ("implementation_notes.loading_states", "Loading states"),
    ("implementation_notes.performance", "Performance"),
    ("implementation_notes.security", "Security"),
    ("implementation_notes.telemetry", "Telemetry"),
]

_TRAILING_SECTIONS = [
    ("open_questions", "## Open Questions"),
    ("edge_cases", "## Edge Cases"),
    ("non_goals", "## Non-Goals"),
    ("related_items", "## Related Items"),
]

_HEADER_LINES = [
    ("header.as_a", "As a"),
    ("header.i_want", "I want"),
    ("header.so_that", "So that"),
]


def escape_inline(text: str) -> str:
    text = (text or "").replace("\\", "\\\\")
    for ch in ("*", "_", "[", "`"):
        text = text.replace(ch, "\\" + ch)
    return " ".join(text.split())


def escape_heading(text: str) -> str:
    return " ".join((text or "").replace("#", "").split())


def _render_entries(entries: list[Entry]) -> list[str]:
    return [f"- [{e.id}] {escape_inline(e.text)}" for e in entries]


def _render_ui_mapping(entries: list[Entry]) -> list[str]:
    lines = []
    for e in entries:
        term, sep, component = e.text.partition("|")
        if sep:
            lines.append(f"- [{e.id}] **{escape_inline(term)}**: {escape_inline(component)}")
        else:
            lines.append(f"- [{e.id}] {escape_inline(e.text)}")
    return lines


def _join(lines: list[str]) -> str:
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).rstrip()


def render_structure(structure: ItemStructure) -> str:
    """
    Canonical text for an item. Pure: the same structure always renders to the
    same bytes (no timestamps, no randomness, dict order never leaks in because
    every section is walked in the fixed order above). Empty sections are omitted.
    """
    s = structure.sections
    lines: list[str] = [f"# {escape_heading(structure.title or structure.item_id)}", ""]

    for path, lead in _HEADER_LINES:
        for e in s.get(path, []):
            lines.append(f"{lead} {escape_inline(e.text)}")
    lines.append("")

    for path, heading in _CONTENT_SECTIONS:
        if s.get(path):
            lines += [heading, "", *_render_entries(s[path]), ""]

    # system-facing block is visually separated from the outcome criteria
    system_ac = s.get("system_acceptance_criteria", [])
    notes = [(label, s.get(path, [])) for path, label in _IMPLEMENTATION_SUBSECTIONS]
    if system_ac or any(entries for _, entries in notes):
        lines += ["---", ""]
    if system_ac:
        lines += ["## Acceptance Criteria (System)", "", *_render_entries(system_ac), ""]
    if any(entries for _, entries in notes):
        lines += ["## Implementation Notes", ""]
        for label, entries in notes:
            if entries:
                lines += [f"### {label}", "", *_render_entries(entries), ""]

    if s.get("ui_mapping"):
        lines += ["## UI Mapping", "", *_render_ui_mapping(s["ui_mapping"]), ""]

    for path, heading in _TRAILING_SECTIONS:
        if s.get(path):
            lines += [heading, "", *_render_entries(s[path]), ""]

    return _join(lines)


def render_interconnections(text: str, inter: Interconnections) -> str:
    """
    Appends the Pass 2 metadata (term mapping, contract dependencies, ownership)
    to an already rendered item. Related items live in the structure itself
    (related_items section) so they are not repeated here.
    """
    lines = [text.rstrip()]

    if inter.term_mapping:
        lines += ["", "## Term Mapping", ""]
        for term in sorted(inter.term_mapping):
            lines.append(f"- \"{escape_inline(term)}\" -> {inter.term_mapping[term]}")

    if inter.contract_dependencies:
        lines += ["", "## Contract Dependencies", ""]
        lines += [f"- {cid}" for cid in sorted(set(inter.contract_dependencies))]

    o = inter.ownership
    rows = [
        ("Owns State", o.owns_state),
        ("Consumes State", o.consumes_state),
        ("Emits Events", o.emits_events),
        ("Listens To", o.listens_to_events),
    ]
    if any(values for _, values in rows):
        lines += ["", "## Ownership", ""]
        for label, values in rows:
            if values:
                lines.append(f"**{label}**: {', '.join(sorted(set(values)))}")

    return _join(lines)
