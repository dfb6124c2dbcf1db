from __future__ import annotations

import json
import threading
from typing import Any, Callable

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

SYSTEM_MARKERS = {
    "CONTEXT_DISCOVERER": "discovery",
    "ITEM_GENERATOR": "generation",
    "STORY_ADVISOR": "advisor",
    "ITEM_JUDGE": "judge",
    "ITEM_LINKER": "interconnection",
    "CONSISTENCY_AUDITOR": "consistency",
}


def message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, list):
        return "\n".join(b.get("text", "") if isinstance(b, dict) else str(b) for b in content)
    return str(content)


def last_human_text(messages: list[BaseMessage]) -> str:
    for m in reversed(messages):
        if isinstance(m, HumanMessage):
            return message_text(m)
    return ""


def role_of(messages: list[BaseMessage]) -> str:
    last = last_human_text(messages).lstrip()
    if last.startswith("PARSE REPAIR"):
        return "repair"
    if last.startswith("REWRITE REQUEST"):
        return "rewrite"
    system = "\n".join(message_text(m) for m in messages if isinstance(m, SystemMessage))
    for marker, role in SYSTEM_MARKERS.items():
        if marker in system:
            return role
    return "unknown"


class FakeChatLlm:
    """
    Scripted stand-in for ChatLlmClient.

    Each call is routed to a role from the system prompt marker ("repair" and
    "rewrite" from the last human message). A role answers from its queue
    first (strings are returned, exceptions raised, callables called with the
    messages), then from its fallback responder.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, list[Any]] = {}
        self._fallbacks: dict[str, Callable[[list[BaseMessage]], str]] = {}
        self.calls: list[tuple[str, list[BaseMessage]]] = []

    def script(self, role: str, *responses: Any) -> "FakeChatLlm":
        with self._lock:
            self._queues.setdefault(role, []).extend(responses)
        return self

    def always(self, role: str, responder: str | Callable[[list[BaseMessage]], str]) -> "FakeChatLlm":
        if isinstance(responder, str):
            text = responder
            responder = lambda messages: text
        with self._lock:
            self._fallbacks[role] = responder
        return self

    def invoke(self, messages: list[BaseMessage]) -> str:
        role = role_of(messages)
        with self._lock:
            self.calls.append((role, list(messages)))
            queue = self._queues.get(role)
            response = queue.pop(0) if queue else self._fallbacks.get(role)
        if response is None:
            raise AssertionError(f"FakeChatLlm: no scripted response for role '{role}'")
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(messages)
        return response

    def count(self, role: str) -> int:
        with self._lock:
            return sum(1 for r, _ in self.calls if r == role)

    def roles(self) -> list[str]:
        with self._lock:
            return [r for r, _ in self.calls]


# -----------------------
# Response builders
# -----------------------

def generation_response(item_id: str = "ITEM-001", title: str = "Reset password", extra: list[dict] | None = None) -> str:
    patches = [
        {"op": "add", "path": "header.as_a", "entry": {"id": "HDR-ASA", "text": "registered user"}},
        {"op": "add", "path": "header.i_want", "entry": {"id": "HDR-IWANT", "text": "to reset my password"}},
        {"op": "add", "path": "header.so_that", "entry": {"id": "HDR-SOTHAT", "text": "I can sign in again"}},
        {"op": "add", "path": "user_visible_behavior",
         "entry": {"id": "UVB-1", "text": f"{item_id}: the user requests a reset link from the sign-in screen"}},
        {"op": "add", "path": "outcome_acceptance_criteria",
         "entry": {"id": "AC-OUT-1", "text": "A reset link is sent to the registered address"}},
    ]
    return json.dumps({"title": title, "patches": patches + list(extra or [])})


def rewrite_response(extra_text: str = "The link expires after 30 minutes") -> str:
    return json.dumps({"patches": [
        {"op": "add", "path": "outcome_acceptance_criteria", "entry": {"id": "AC-OUT-2", "text": extra_text}},
    ]})


def judge_response(score: float, relationships: list[dict] | None = None) -> str:
    dim = int(round(score))
    return json.dumps({
        "section_separation": {"score": dim, "reasoning": "sections are clean", "violations": []},
        "correctness_vs_context": {"score": dim, "reasoning": "matches context", "hallucinations": []},
        "testability": {"score": dim, "reasoning": "criteria observable", "outcome_ac_issues": [], "system_ac_issues": []},
        "completeness": {"score": dim, "reasoning": "covers the seed", "missing_elements": []},
        "overall_score": score,
        "recommendation": "approve" if score >= 3.5 else "rewrite",
        "new_relationships": list(relationships or []),
        "needs_context_update": bool(relationships),
    })


def new_component(name: str, confidence: float) -> dict:
    return {
        "id": f"rel-{name}",
        "type": "component",
        "operation": "add_node",
        "name": name,
        "canonical_name": name,
        "evidence": f"the story mentions the {name}",
        "confidence": confidence,
    }


def discovery_response(
    canonical_names: dict[str, list[str]] | None = None,
    evidence: dict[str, str] | None = None,
    state_models: list[str] | None = None,
    events: list[str] | None = None,
    relations: list[dict] | None = None,
    vocabulary: dict[str, str] | None = None,
) -> str:
    canonical_names = canonical_names if canonical_names is not None else {"Password Reset Form": ["reset form"]}
    return json.dumps({
        "mentions": {
            "components": [n for n in canonical_names if n not in (state_models or []) + (events or [])],
            "state_models": list(state_models or []),
            "events": list(events or []),
        },
        "canonical_names": canonical_names,
        "evidence": dict(evidence or {}),
        "vocabulary": dict(vocabulary or {}),
        "relations": list(relations or []),
    })


def interconnection_response(item_id: str, related: list[dict] | None = None, **extra: Any) -> str:
    payload = {
        "item_id": item_id,
        "term_mapping": extra.get("term_mapping", {}),
        "contract_dependencies": extra.get("contract_dependencies", []),
        "ownership": extra.get("ownership", {}),
        "related_items": list(related or []),
    }
    return json.dumps(payload)


def empty_consistency_response() -> str:
    return json.dumps({"issues": [], "fixes": []})
