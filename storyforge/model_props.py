# storyforge/model_props.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import commentjson


class PricingTable:
    """
    Pricing + per-model batch thresholds loaded from a JSON-with-comments file:

        {
            // max seeds per discovery call
            "MAX_RECORD_THRESHOLD": {"gemini-2.5-flash-lite": 8},
            "MODEL_BASE_PRICE_TABLE": {
                "gemini-2.5-flash-lite": {"input_short": 0.1, "output_short": 0.4},
                "gpt-5.1": {"default": {"input_short": 1.25, "output_short": 10.0},
                            "flex": {"input_short": 0.625, "output_short": 5.0}}
            }
        }

    Rates are USD per 1M tokens. An empty table prices everything at 0.
    """

    def __init__(self, data: Dict[str, Any] | None = None):
        data = data or {}
        self.max_record_threshold: Dict[str, int] = data.get("MAX_RECORD_THRESHOLD", {}) or {}
        self.model_base_price_table: Dict[str, Any] = data.get("MODEL_BASE_PRICE_TABLE", {}) or {}

    @classmethod
    def from_file(cls, path: str | None) -> "PricingTable":
        """
        Fails fast if a path is given but the file or its required keys are missing.
        """
        if not path:
            return cls()
        cfg_path = Path(path)
        if not cfg_path.exists():
            raise FileNotFoundError(f"LLM pricing config file not found at '{cfg_path}'. ")

        with cfg_path.open("r", encoding="utf-8") as f:
            data = commentjson.load(f)

        for key in ("MAX_RECORD_THRESHOLD", "MODEL_BASE_PRICE_TABLE"):
            if key not in data or not isinstance(data[key], dict):
                raise ValueError(f"Pricing config missing or invalid key: {key}")
        return cls(data)

    #! MODEL BOUNDARIES

    def get_model_max_threshold(self, model_name_str: str, default: int = 8) -> int:
        model_name, _ = parse_model_name(model_name_str)
        return int(self.max_record_threshold.get(model_name, default))

    #! PRICING API

    def estimate_cost_usd(
        self,
        llm_model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        service_tier: str | None = None,
    ) -> float:
        """
        Estimate USD cost for a single request.

        - OpenAI models are priced per service tier (falls back to "default")
        - Vertex models with a long_threshold_tokens band switch to the long rates
          when the prompt is longer than the threshold
        - Models missing from the table cost 0
        """
        pricing = self.model_base_price_table.get(llm_model_name)
        if not pricing:
            return 0.0

        # !OpenAI Models
        if is_openai_model(llm_model_name):
            pricing = pricing.get(service_tier or "default", pricing.get("default", None))
            if not pricing:
                raise ValueError(f"Missing Price Tiers for GPT Model {llm_model_name}")
            in_rate = pricing["input_short"]
            out_rate = pricing["output_short"]
        # !VertexAI Models
        elif pricing.get("long_threshold_tokens") is not None and pricing.get("input_long") is not None:
            if prompt_tokens > pricing["long_threshold_tokens"]:
                in_rate = pricing["input_long"]
                out_rate = pricing.get("output_long") or pricing["output_short"]
            else:
                in_rate = pricing["input_short"]
                out_rate = pricing["output_short"]
        else:
            in_rate = pricing["input_short"]
            out_rate = pricing["output_short"]

        return float(_per_million(in_rate, prompt_tokens) + _per_million(out_rate, completion_tokens))


def _per_million(rate_usd: float, tokens: int) -> float:
    if rate_usd <= 0.0 or tokens <= 0:
        return 0.0
    return rate_usd * (tokens / 1_000_000.0)


# !######################################################################################################
#! UTILS
# !######################################################################################################

def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-5.1_low_low'
        - 'gpt-5.1_standard'
        - 'gpt-5.1_fast'
        - 'gpt-5.1_deep_flex'
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high", "xhigh"}
    service_tier_tokens = {"auto", "default", "flex", "priority"}

    # (verbosity, reasoning, tier)
    wildcards: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
        "standard": ("low", "low", None),
        "std": ("low", "low", None),
        "fast": ("low", "none", None),
        "deep": ("medium", "high", None),
        # judge calls want stable, terse output with real reasoning
        "judge": ("low", "medium", None),
    }

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue

        if t in wildcards:
            w_verb, w_reason, w_tier = wildcards[t]
            if verbosity is None and w_verb is not None:
                verbosity = w_verb
            if reasoning_effort is None and w_reason is not None:
                reasoning_effort = w_reason
            if service_tier is None and w_tier is not None:
                service_tier = w_tier
            continue

        if verbosity is None and t in verbosity_tokens:
            verbosity = t
            continue

        if reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
            continue

        if service_tier is None and t in service_tier_tokens:
            service_tier = t
            continue

        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    params["service_tier"] = service_tier or "default"

    return base, params
