# storyforge/patch_validator.py

import re
from typing import Iterable

from storyforge.entities import HEADER_PATHS, SECTION_ID_PREFIXES, Entry, ItemStructure, Patch, PatchOp

MAX_TEXT_LENGTH = 500
ENTRY_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

_OPS = {op.value for op in PatchOp}


def find_matching_entries(entries: list[Entry], patch: Patch) -> list[int]:
    """
    Indexes of the entries selected by patch.match (by id first, exact text otherwise).
    """
    m = patch.match
    if m is None:
        return []
    if m.id:
        return [i for i, e in enumerate(entries) if e.id == m.id]
    if m.text_equals is not None:
        return [i for i, e in enumerate(entries) if e.text == m.text_equals]
    return []


def _entry_id(entry: Entry) -> str:
    return (entry.id if isinstance(entry.id, str) else "").strip()


def _entry_violations(path: str, entry: Entry) -> list[str]:
    violations: list[str] = []
    prefix = SECTION_ID_PREFIXES[path]

    # the raw id is checked: surrounding whitespace is rejected, not stripped
    entry_id = entry.id if isinstance(entry.id, str) else ""
    if not entry_id.strip():
        violations.append(f"{path}: entry id is required")
    else:
        if not ENTRY_ID_PATTERN.fullmatch(entry_id):
            violations.append(
                f"{path}: entry id '{entry_id}' may only contain letters, digits, '_' or '-'"
            )
        if not entry_id.startswith(prefix):
            violations.append(f"{path}: entry id '{entry_id}' must start with '{prefix}'")

    text = entry.text if isinstance(entry.text, str) else ""
    if not text.strip():
        violations.append(f"{path}: entry text is required")
    elif len(text) > MAX_TEXT_LENGTH:
        violations.append(
            f"{path}: entry text is {len(text)} characters, max is {MAX_TEXT_LENGTH}"
        )
    return violations


def validate_patch(patch: Patch, allowed_paths: Iterable[str], structure: ItemStructure) -> list[str]:
    """
    Checks a single patch against scope and format rules.

    Returns the list of violations; an empty list means the patch can be applied.
    Never raises and never touches `structure`.
    """
    allowed = set(allowed_paths or ())
    path = patch.path

    # out-of-scope paths are rejected before anything else is looked at
    if path not in allowed:
        return [f"path '{path}' is not allowed for this call (allowed: {', '.join(sorted(allowed)) or 'none'})"]
    if path not in SECTION_ID_PREFIXES:
        return [f"path '{path}' is not a known section"]

    op = patch.op.value if isinstance(patch.op, PatchOp) else str(patch.op or "")
    if op not in _OPS:
        return [f"{path}: unknown op '{op}'"]

    violations: list[str] = []
    if not (patch.source or "").strip():
        violations.append(f"{path}: patch metadata must identify its source")

    entries = structure.sections.get(path, [])
    existing_ids = structure.all_ids()

    if op == PatchOp.ADD.value:
        if patch.entry is None:
            violations.append(f"{path}: add requires an entry")
        if patch.match is not None:
            violations.append(f"{path}: add must not carry a match criterion")
        if patch.entry is not None:
            violations.extend(_entry_violations(path, patch.entry))
            if _entry_id(patch.entry) in existing_ids:
                violations.append(f"{path}: duplicate id '{_entry_id(patch.entry)}'")
        if path in HEADER_PATHS and entries:
            violations.append(f"{path}: header line already set, use replace")
        return violations

    # replace / remove
    if patch.match is None or (not patch.match.id and patch.match.text_equals is None):
        violations.append(f"{path}: {op} requires a match criterion (id or exact text)")
    if op == PatchOp.REMOVE.value and patch.entry is not None:
        violations.append(f"{path}: remove must not carry an entry")
    if op == PatchOp.REPLACE.value:
        if patch.entry is None:
            violations.append(f"{path}: replace requires the replacement entry")
        else:
            violations.extend(_entry_violations(path, patch.entry))

    if patch.match is not None:
        hits = find_matching_entries(entries, patch)
        if len(hits) != 1:
            criterion = f"id '{patch.match.id}'" if patch.match.id else f"text '{patch.match.text_equals}'"
            violations.append(f"{path}: {op} must match exactly one entry, {criterion} matched {len(hits)}")
        elif op == PatchOp.REPLACE.value and patch.entry is not None:
            current_id = entries[hits[0]].id
            new_id = _entry_id(patch.entry)
            if new_id != current_id and new_id in existing_ids:
                violations.append(f"{path}: duplicate id '{new_id}'")

    return violations
