# storyforge/patch_applier.py

import logging
from dataclasses import dataclass, field
from typing import Iterable

from storyforge.entities import Entry, ItemStructure, Patch, PatchOp
from storyforge.patch_validator import find_matching_entries, validate_patch

logger = logging.getLogger("storyforge")


@dataclass
class PatchMetrics:
    total_patches: int = 0
    applied: int = 0
    rejected_path: int = 0
    rejected_validation: int = 0
    rejected_reasons: list[str] = field(default_factory=list)


def apply_patch(structure: ItemStructure, patch: Patch) -> None:
    """
    Applies an already validated patch in place.
    """
    op = patch.op.value if isinstance(patch.op, PatchOp) else patch.op
    entries = structure.entries(patch.path)

    if op == PatchOp.ADD.value:
        entries.append(Entry(id=patch.entry.id.strip(), text=patch.entry.text.strip()))
        return

    idx = find_matching_entries(entries, patch)[0]
    if op == PatchOp.REPLACE.value:
        entries[idx] = Entry(id=patch.entry.id.strip(), text=patch.entry.text.strip())
    else:
        del entries[idx]


def apply_patches(
    structure: ItemStructure,
    patches: Iterable[Patch],
    allowed_paths: Iterable[str],
) -> tuple[ItemStructure, PatchMetrics]:
    """
    Validates and applies patches one by one on a copy of `structure`.

    Each patch is validated against the state left by the previous ones, so an
    add followed by a replace of the same id in the same batch works.
    Rejected patches are logged and skipped; the caller's structure is never
    modified.
    """
    allowed = set(allowed_paths or ())
    result = structure.clone()
    metrics = PatchMetrics()

    for patch in patches:
        metrics.total_patches += 1

        if patch.path not in allowed:
            metrics.rejected_path += 1
            reason = f"[{patch.source or 'unknown'}] path '{patch.path}' is out of scope"
            metrics.rejected_reasons.append(reason)
            logger.info(f"Patch rejected (scope): {reason}")
            continue

        violations = validate_patch(patch, allowed, result)
        if violations:
            metrics.rejected_validation += 1
            reason = f"[{patch.source or 'unknown'}] {'; '.join(violations)}"
            metrics.rejected_reasons.append(reason)
            logger.info(f"Patch rejected (validation): {reason}")
            continue

        apply_patch(result, patch)
        metrics.applied += 1

    logger.debug(
        f"apply_patches: {metrics.applied}/{metrics.total_patches} applied, "
        f"{metrics.rejected_path} out of scope, {metrics.rejected_validation} invalid"
    )
    return result, metrics
