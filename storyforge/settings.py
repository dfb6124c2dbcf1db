# storyforge/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from storyforge.advisors import PRODUCT_TYPES, parse_advisor_ids
from storyforge.llm_client import RetryPolicy

OPERATIONS = ("discovery", "generation", "advisor", "judge", "rewrite", "interconnection", "consistency")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _product_type(raw: str | None, default: str) -> str:
    value = (raw or "").strip().lower() or default
    if value not in PRODUCT_TYPES:
        raise ValueError(f"PRODUCT_TYPE: unknown product type '{value}' (known: {', '.join(PRODUCT_TYPES)})")
    return value


def parse_model_overrides(raw: str | None) -> dict[str, str]:
    """
    "judge=gpt-5.1_judge, discovery=gemini-2.5-pro" -> {"judge": "gpt-5.1_judge", "discovery": "gemini-2.5-pro"}
    """
    out: dict[str, str] = {}
    for chunk in (raw or "").split(","):
        if not chunk.strip():
            continue
        op, sep, model = chunk.partition("=")
        op, model = op.strip().lower(), model.strip()
        if not sep or not model:
            raise ValueError(f"STORYFORGE_MODEL_OVERRIDES: malformed entry '{chunk.strip()}'")
        if op not in OPERATIONS:
            raise ValueError(f"STORYFORGE_MODEL_OVERRIDES: unknown operation '{op}' (known: {', '.join(OPERATIONS)})")
        out[op] = model
    return out


@dataclass
class Settings:
    model_name: str = "gemini-2.5-flash-lite"
    model_overrides: dict[str, str] = field(default_factory=dict)
    vertex_project: str = "your-project-id"
    vertex_region: str = "us-central1"

    llm_timeout: float = 300.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.3

    quality_threshold: float = 3.5
    relationship_confidence_threshold: float = 0.75
    max_refinement_rounds: int = 3
    auto_fix_confidence: float = 0.8

    item_timeout: float = 900.0
    concurrent_items: int = 4
    discovery_batch_size: int = 8

    product_type: str = "web"
    # None runs every advisor that applies to product_type
    advisors: tuple[str, ...] | None = None

    asset_cache_dir: str = ".storyforge-cache"
    pricing_path: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        d = cls()
        return cls(
            model_name=os.getenv("STORYFORGE_MODEL", d.model_name),
            model_overrides=parse_model_overrides(os.getenv("STORYFORGE_MODEL_OVERRIDES")),
            vertex_project=os.getenv("GOOGLE_CLOUD_PROJECT", d.vertex_project),
            vertex_region=os.getenv("GOOGLE_CLOUD_REGION", d.vertex_region),
            llm_timeout=_env_float("LLM_TIMEOUT_SECONDS", d.llm_timeout),
            retry_max_attempts=_env_int("LLM_MAX_ATTEMPTS", d.retry_max_attempts),
            retry_base_delay=_env_float("LLM_BASE_DELAY_SECONDS", d.retry_base_delay),
            retry_max_delay=_env_float("LLM_MAX_DELAY_SECONDS", d.retry_max_delay),
            retry_jitter=_env_float("LLM_JITTER", d.retry_jitter),
            quality_threshold=_env_float("QUALITY_THRESHOLD", d.quality_threshold),
            relationship_confidence_threshold=_env_float(
                "RELATIONSHIP_CONFIDENCE_THRESHOLD", d.relationship_confidence_threshold
            ),
            max_refinement_rounds=_env_int("MAX_REFINEMENT_ROUNDS", d.max_refinement_rounds),
            auto_fix_confidence=_env_float("AUTO_FIX_CONFIDENCE", d.auto_fix_confidence),
            item_timeout=_env_float("ITEM_TIMEOUT_SECONDS", d.item_timeout),
            concurrent_items=_env_int("CONCURRENT_ITEMS", d.concurrent_items),
            discovery_batch_size=_env_int("DISCOVERY_BATCH_SIZE", d.discovery_batch_size),
            product_type=_product_type(os.getenv("PRODUCT_TYPE"), d.product_type),
            advisors=parse_advisor_ids(os.getenv("STORYFORGE_ADVISORS")),
            asset_cache_dir=os.getenv("ASSET_CACHE_DIR", d.asset_cache_dir),
            pricing_path=os.getenv("LLM_PRICING_ENV_PATH") or None,
            log_level=os.getenv("LOG_LEVEL", d.log_level).upper(),
        )

    def model_for(self, operation: str) -> str:
        return self.model_overrides.get(operation, self.model_name)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.retry_max_attempts),
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )
