# storyforge/consistency_checker.py

import logging
import re
from dataclasses import dataclass, field

from langchain_core.messages import SystemMessage
from pydantic import ValidationError

from forge_prompts.pipeline_prompts import GLOBAL_CONSISTENCY_INPUT, GLOBAL_CONSISTENCY_PROMPT
from storyforge.base_utils import BaseUtils
from storyforge.entities import (
    CONTENT_PATHS,
    IMPLEMENTATION_NOTE_PATHS,
    Interconnections,
    ItemResult,
    RelatedItemLink,
    SharedContext,
)
from storyforge.interconnection import (
    RELATED_PATH,
    linkable,
    parse_related_entry,
    related_entry_id,
    related_entry_text,
)
from storyforge.item_workflow import path_prefix_table
from storyforge.llm_client import FatalLlmError, MaxRetryErrorsException
from storyforge.patch_applier import apply_patches
from storyforge.patch_validator import find_matching_entries
from storyforge.story_renderer import render_interconnections, render_structure
from storyforge.wire_schemas import (
    FIX_ADD_BIDIRECTIONAL_LINK,
    FIX_NORMALIZE_CONTRACT_ID,
    FIX_NORMALIZE_TERM,
    FIX_TYPES,
    ConsistencyIssue,
    ConsistencyReport,
    EntryPayload,
    FixCandidate,
    MatchPayload,
)

logger = logging.getLogger("storyforge")

PARSE_FAILURE_ISSUE = "Failed to parse consistency response"

RECIPROCAL_KIND = {
    "prerequisite": "dependent",
    "dependent": "prerequisite",
    "parallel": "parallel",
    "related": "related",
}

# where each auto-fix type may write
FIX_ALLOWED_PATHS: dict[str, frozenset[str]] = {
    FIX_ADD_BIDIRECTIONAL_LINK: frozenset({RELATED_PATH}),
    FIX_NORMALIZE_CONTRACT_ID: frozenset(IMPLEMENTATION_NOTE_PATHS)
    | {"system_acceptance_criteria", "ui_mapping"},
    FIX_NORMALIZE_TERM: frozenset(CONTENT_PATHS),
}

# the only edit each fix type may make on its own
FIX_OPERATIONS: dict[str, str] = {
    FIX_ADD_BIDIRECTIONAL_LINK: "add",
    FIX_NORMALIZE_CONTRACT_ID: "replace",
    FIX_NORMALIZE_TERM: "replace",
}

MECHANICAL_LINK_CONFIDENCE = 0.95
MECHANICAL_CONTRACT_CONFIDENCE = 0.9

# only tokens already in id form (upper case) count; prose like "e-mail" never does
_CONTRACT_TOKEN = re.compile(r"(?<![A-Za-z0-9_-])(?:C[-_]STATE|COMP|DF|E)[-_][A-Z0-9_-]*[A-Z0-9](?![A-Za-z0-9_-])")


def _contract_key(value: str) -> str:
    return value.upper().replace("_", "-")


@dataclass
class ConsistencyOutcome:
    issues: list[ConsistencyIssue] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    manual_review: list[str] = field(default_factory=list)
    fixes_considered: int = 0


class ConsistencyChecker(BaseUtils):
    """
    Pass 2b: one model call over every finished item plus two mechanical
    checks (missing reciprocal links, contract ids off their canonical
    spelling).

    A fix is applied only when its type is in FIX_TYPES, its confidence is
    strictly above `auto_fix_confidence` and it makes the one edit its type
    allows (a link is only added, a normalization only replaces an entry and
    keeps its id). Applied fixes go through the patch validator, restricted
    to the paths of their fix type, and the item is re-rendered afterwards.
    Everything else ends in `manual_review`.
    """

    def __init__(self, llm, *, auto_fix_confidence: float = 0.8):
        self.llm = llm
        self.auto_fix_confidence = auto_fix_confidence

    def check_and_fix(
        self,
        items: dict[str, ItemResult],
        context: SharedContext,
        interconnections: dict[str, Interconnections] | None = None,
    ) -> ConsistencyOutcome:
        outcome = ConsistencyOutcome()
        interconnections = interconnections if interconnections is not None else {}
        targets = {item_id: r for item_id, r in items.items() if linkable(r)}
        if not targets:
            return outcome

        report = self._ask_model(targets, context)
        outcome.issues.extend(report.issues)

        candidates: list[FixCandidate] = []
        for i, raw_fix in enumerate(report.fixes):
            try:
                candidates.append(FixCandidate.model_validate(raw_fix))
            except ValidationError as e:
                outcome.manual_review.append(f"fix #{i} from consistency report is malformed: {e.errors()[0].get('msg', e)}")

        link_issues, link_fixes = self._reciprocal_links(targets)
        contract_issues, contract_fixes = self._contract_ids(targets, context)
        outcome.issues.extend(link_issues + contract_issues)

        touched: set[str] = set()
        for fix in self._dedupe(link_fixes + contract_fixes + candidates):
            outcome.fixes_considered += 1
            label = f"{fix.type} on {fix.item_id}:{fix.path} ({fix.confidence:.2f})"
            reason = self._refusal(fix, targets)
            if reason:
                outcome.manual_review.append(f"{label}: {reason}")
                continue

            result = targets[fix.item_id]
            new_structure, metrics = apply_patches(result.structure, [fix.to_patch()], FIX_ALLOWED_PATHS[fix.type])
            if metrics.applied != 1:
                outcome.manual_review.append(f"{label}: rejected by validator: {'; '.join(metrics.rejected_reasons)}")
                continue

            result.structure = new_structure
            touched.add(fix.item_id)
            outcome.applied.append(f"{label}: {fix.justification or 'applied'}")
            if fix.type == FIX_ADD_BIDIRECTIONAL_LINK and fix.entry is not None:
                self._record_link(interconnections, fix.item_id, fix.entry.text)

        for item_id in sorted(touched):
            result = targets[item_id]
            text = render_structure(result.structure)
            inter = interconnections.get(item_id)
            result.text = render_interconnections(text, inter) if inter else text

        for line in outcome.applied:
            logger.info(f"Consistency fix applied: {line}")
        for line in outcome.manual_review:
            logger.info(f"Consistency manual review: {line}")
        self.color_print(
            f"Consistency: {len(outcome.issues)} issue(s), {len(outcome.applied)} fix(es) applied, "
            f"{len(outcome.manual_review)} flagged for manual review",
            color="cyan",
        )
        return outcome

    # -----------------------
    # Model report
    # -----------------------

    def _ask_model(self, targets: dict[str, ItemResult], context: SharedContext) -> ConsistencyReport:
        items_block = "\n\n".join(f"=== {item_id} ===\n{r.text}" for item_id, r in targets.items())
        system = self.unsafe_string_format(
            GLOBAL_CONSISTENCY_PROMPT,
            fix_types=", ".join(FIX_TYPES),
            path_prefixes=path_prefix_table(),
        )
        prompt = self.unsafe_string_format(
            GLOBAL_CONSISTENCY_INPUT,
            context_digest=self._shared_context_for_prompt(context),
            items=items_block,
        )
        try:
            parsed = self._invoke_structured(
                self.llm,
                [SystemMessage(content=system), self._human_message(prompt)],
                lambda raw: self._parse_model(raw, ConsistencyReport),
                label="Consistency",
            )
        except (MaxRetryErrorsException, FatalLlmError) as e:
            logger.warning(f"Consistency call failed: {e}")
            return ConsistencyReport(issues=[ConsistencyIssue(
                description=f"Consistency call failed: {e}", confidence=0.0, affected_items=list(targets),
            )])

        if not parsed.ok:
            logger.warning(f"{PARSE_FAILURE_ISSUE}: {parsed.error[:300]}")
            return ConsistencyReport(issues=[ConsistencyIssue(
                description=PARSE_FAILURE_ISSUE, confidence=0.0, affected_items=list(targets),
            )])
        return parsed.value

    # -----------------------
    # Mechanical checks
    # -----------------------

    def _links_of(self, result: ItemResult) -> dict[str, RelatedItemLink]:
        links: dict[str, RelatedItemLink] = {}
        for entry in result.structure.sections.get(RELATED_PATH, []):
            link = parse_related_entry(entry.text)
            if link is not None:
                links.setdefault(link.item_id, link)
        return links

    def _reciprocal_links(self, targets: dict[str, ItemResult]) -> tuple[list[ConsistencyIssue], list[FixCandidate]]:
        issues: list[ConsistencyIssue] = []
        fixes: list[FixCandidate] = []
        links = {item_id: self._links_of(r) for item_id, r in targets.items()}

        for item_id, outgoing in links.items():
            for other_id, link in outgoing.items():
                if other_id not in links or other_id == item_id:
                    continue
                back = links[other_id].get(item_id)
                expected = RECIPROCAL_KIND.get(link.relationship, "related")
                if back is None:
                    issues.append(ConsistencyIssue(
                        description=f"{item_id} lists {other_id} as {link.relationship} but {other_id} has no link back",
                        suggested_fix_type=FIX_ADD_BIDIRECTIONAL_LINK,
                        confidence=MECHANICAL_LINK_CONFIDENCE,
                        affected_items=[item_id, other_id],
                    ))
                    reciprocal = RelatedItemLink(
                        item_id=item_id,
                        relationship=expected,
                        description=f"reciprocal of the {link.relationship} link from {item_id}",
                    )
                    fixes.append(FixCandidate(
                        type=FIX_ADD_BIDIRECTIONAL_LINK,
                        item_id=other_id,
                        path=RELATED_PATH,
                        operation="add",
                        entry=EntryPayload(id=related_entry_id(item_id), text=related_entry_text(reciprocal)),
                        confidence=MECHANICAL_LINK_CONFIDENCE,
                        justification=f"{item_id} links to {other_id} as {link.relationship}",
                    ))
                elif back.relationship != expected and item_id < other_id:
                    # conflicting kinds are a judgement call, never auto-fixed
                    issues.append(ConsistencyIssue(
                        description=(
                            f"{item_id} lists {other_id} as {link.relationship} but {other_id} lists "
                            f"{item_id} as {back.relationship} (expected {expected})"
                        ),
                        confidence=0.5,
                        affected_items=[item_id, other_id],
                    ))
        return issues, fixes

    def _contract_ids(
        self, targets: dict[str, ItemResult], context: SharedContext
    ) -> tuple[list[ConsistencyIssue], list[FixCandidate]]:
        issues: list[ConsistencyIssue] = []
        fixes: list[FixCandidate] = []

        by_key: dict[str, set[str]] = {}
        for cid in context.all_ids():
            by_key.setdefault(_contract_key(cid), set()).add(cid)
        canonical = {k: next(iter(v)) for k, v in by_key.items() if len(v) == 1}
        known = context.all_ids()

        for item_id, result in targets.items():
            for path in sorted(FIX_ALLOWED_PATHS[FIX_NORMALIZE_CONTRACT_ID]):
                for entry in result.structure.sections.get(path, []):
                    replacements = {}
                    for token in _CONTRACT_TOKEN.findall(entry.text):
                        if token in known:
                            continue
                        target = canonical.get(_contract_key(token))
                        if target and target != token:
                            replacements[token] = target
                    if not replacements:
                        continue

                    new_text = entry.text
                    for token, target in replacements.items():
                        new_text = re.sub(rf"(?<![A-Za-z0-9_-]){re.escape(token)}(?![A-Za-z0-9_-])", target, new_text)
                    summary = ", ".join(f"{t} -> {c}" for t, c in sorted(replacements.items()))
                    issues.append(ConsistencyIssue(
                        description=f"{item_id} [{entry.id}] uses non-canonical contract id(s): {summary}",
                        suggested_fix_type=FIX_NORMALIZE_CONTRACT_ID,
                        confidence=MECHANICAL_CONTRACT_CONFIDENCE,
                        affected_items=[item_id],
                    ))
                    fixes.append(FixCandidate(
                        type=FIX_NORMALIZE_CONTRACT_ID,
                        item_id=item_id,
                        path=path,
                        operation="replace",
                        entry=EntryPayload(id=entry.id, text=new_text),
                        match=MatchPayload(id=entry.id),
                        confidence=MECHANICAL_CONTRACT_CONFIDENCE,
                        justification=summary,
                    ))
        return issues, fixes

    # -----------------------
    # Fix policy
    # -----------------------

    def _dedupe(self, fixes: list[FixCandidate]) -> list[FixCandidate]:
        seen: set[tuple] = set()
        out: list[FixCandidate] = []
        for fix in fixes:
            target_id = (fix.match.id if fix.match else None) or (fix.entry.id if fix.entry else "")
            key = (fix.type, fix.item_id, fix.path, fix.operation, target_id)
            if key in seen:
                continue
            seen.add(key)
            out.append(fix)
        return out

    def _refusal(self, fix: FixCandidate, targets: dict[str, ItemResult]) -> str | None:
        if fix.type not in FIX_TYPES:
            return "fix type is not auto-applied"
        if fix.confidence <= self.auto_fix_confidence:
            return f"confidence not above {self.auto_fix_confidence}"
        if fix.item_id not in targets:
            return "unknown item"
        if fix.operation != FIX_OPERATIONS[fix.type]:
            return f"{fix.type} may only {FIX_OPERATIONS[fix.type]}, not {fix.operation}"
        if fix.entry is None:
            return "fix carries no entry"
        if fix.operation == "replace":
            if fix.match is None:
                return "replace fix carries no match"
            entries = targets[fix.item_id].structure.sections.get(fix.path.strip(), [])
            hits = find_matching_entries(entries, fix.to_patch())
            if len(hits) == 1 and entries[hits[0]].id != fix.entry.id.strip():
                return f"replacement changes the entry id {entries[hits[0]].id} to {fix.entry.id.strip()}"
        return None

    def _record_link(self, interconnections: dict[str, Interconnections], item_id: str, text: str) -> None:
        link = parse_related_entry(text)
        if link is None:
            return
        inter = interconnections.setdefault(item_id, Interconnections(item_id=item_id))
        if all(existing.item_id != link.item_id for existing in inter.related_items):
            inter.related_items.append(link)
