# storyforge/advisors.py
from __future__ import annotations

from dataclasses import dataclass

from storyforge.entities import HEADER_PATHS

PRODUCT_TYPES = ("web", "mobile-native", "mobile-web", "desktop", "api")


@dataclass(frozen=True)
class Advisor:
    """
    One focused enrichment pass over a generated story.

    An advisor sees the whole story but may only patch `allowed_paths`;
    anything else it emits is rejected by apply_patches and counted.
    """
    id: str
    name: str
    focus: str
    allowed_paths: frozenset
    product_types: tuple = PRODUCT_TYPES

    def applies_to(self, product_type: str) -> bool:
        return product_type in self.product_types


def _paths(*paths: str) -> frozenset:
    return frozenset(paths)


_RESPONSIVE_PATHS = _paths("user_visible_behavior", "outcome_acceptance_criteria", "ui_mapping")

# run order
ADVISORS: tuple[Advisor, ...] = (
    Advisor(
        id="user-roles",
        name="User Roles",
        focus="Who acts in this story. Make the role precise and note where other roles see or do something different.",
        allowed_paths=_paths(*HEADER_PATHS, "user_visible_behavior"),
    ),
    Advisor(
        id="interactive-elements",
        name="Interactive Elements",
        focus="Controls the user touches: what each one does, its enabled and disabled states, and what the user sees afterwards.",
        allowed_paths=_paths("user_visible_behavior", "ui_mapping", "outcome_acceptance_criteria"),
    ),
    Advisor(
        id="validation",
        name="Input Validation",
        focus="Inputs and their rules: required fields, formats, limits, and the message shown when a rule is broken.",
        allowed_paths=_paths("user_visible_behavior", "outcome_acceptance_criteria", "edge_cases"),
    ),
    Advisor(
        id="accessibility",
        name="Accessibility",
        focus="Keyboard and screen reader use, focus order, contrast, and text alternatives, as testable criteria.",
        allowed_paths=_paths("user_visible_behavior", "outcome_acceptance_criteria", "system_acceptance_criteria"),
    ),
    Advisor(
        id="performance",
        name="Performance",
        focus="Response time expectations, what the user sees while waiting, and limits on data volume.",
        allowed_paths=_paths(
            "implementation_notes.performance", "implementation_notes.loading_states", "system_acceptance_criteria"
        ),
    ),
    Advisor(
        id="security",
        name="Security",
        focus="Who may see and change what, sensitive data handling, and abuse cases.",
        allowed_paths=_paths("implementation_notes.security", "system_acceptance_criteria", "edge_cases"),
    ),
    Advisor(
        id="responsive-web",
        name="Responsive Layout (web)",
        focus="How the story behaves on narrow and wide viewports and on touch screens.",
        allowed_paths=_RESPONSIVE_PATHS,
        product_types=("web", "mobile-web", "desktop"),
    ),
    Advisor(
        id="responsive-native",
        name="Responsive Layout (native)",
        focus="Orientation changes, screen sizes, system gestures, and platform conventions on phones and tablets.",
        allowed_paths=_RESPONSIVE_PATHS,
        product_types=("mobile-native",),
    ),
    Advisor(
        id="language-support",
        name="Language Support",
        focus="Translated text, text expansion, and right-to-left layouts.",
        allowed_paths=_paths("user_visible_behavior", "open_questions"),
    ),
    Advisor(
        id="locale-formatting",
        name="Locale Formatting",
        focus="Dates, times, numbers, currencies, and addresses shown or entered in this story.",
        allowed_paths=_paths("outcome_acceptance_criteria", "edge_cases"),
    ),
    Advisor(
        id="cultural-appropriateness",
        name="Cultural Appropriateness",
        focus="Imagery, colours, names, and wording that may not travel across markets.",
        allowed_paths=_paths("open_questions", "non_goals"),
    ),
    Advisor(
        id="analytics",
        name="Analytics",
        focus="Which user actions and outcomes are tracked, and with which properties.",
        allowed_paths=_paths("implementation_notes.telemetry", "system_acceptance_criteria"),
    ),
)

ADVISORS_BY_ID = {a.id: a for a in ADVISORS}


def parse_advisor_ids(raw: str | None) -> tuple[str, ...] | None:
    """
    "" or "all" -> None (every applicable advisor), "none" -> (), otherwise the listed ids.
    """
    text = (raw or "").strip().lower()
    if not text or text == "all":
        return None
    if text == "none":
        return ()
    ids = tuple(dict.fromkeys(chunk.strip() for chunk in text.split(",") if chunk.strip()))
    unknown = [i for i in ids if i not in ADVISORS_BY_ID]
    if unknown:
        raise ValueError(f"STORYFORGE_ADVISORS: unknown advisor(s) {', '.join(unknown)} (known: {', '.join(ADVISORS_BY_ID)})")
    return ids


def applicable_advisors(product_type: str, selected: tuple[str, ...] | None = None) -> list[Advisor]:
    """
    Advisors for `product_type` in run order, optionally narrowed to `selected` ids.
    """
    if product_type not in PRODUCT_TYPES:
        raise ValueError(f"unknown product type '{product_type}' (known: {', '.join(PRODUCT_TYPES)})")
    wanted = None if selected is None else set(selected)
    return [a for a in ADVISORS if a.applies_to(product_type) and (wanted is None or a.id in wanted)]
