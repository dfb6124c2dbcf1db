# pipeline_main.py
"""
Batch runner.

Reads a seed file (JSON, comments allowed) from STORYFORGE_SEEDS_PATH:

    {
      "product_context": "Consumer banking app, iOS and Android",
      "reference_documents": ["...free text..."],
      "seeds": [
        {"item_id": "ITEM-001", "text": "User resets password",
         "images": ["gs://bucket/screens/reset.png"], "documents": []}
      ]
    }

and runs every pass over it. Everything else comes from the environment
(see storyforge/settings.py); a .env file next to the process is honored.
"""

import os
import logging
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from storyforge.base_utils import BaseUtils
from storyforge.entities import Seed
from storyforge.orchestrator import StoryPipeline
from storyforge.settings import Settings

settings = Settings.from_env(dotenv=False)

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("storyforge")


def load_seed_file(path: str) -> tuple[list[Seed], list[str], str]:
    raw = Path(path).read_text(encoding="utf-8")
    data = BaseUtils().load_fault_tolerant_json(raw)
    if isinstance(data, list):
        data = {"seeds": data}

    seeds = []
    for i, s in enumerate(data.get("seeds") or []):
        item_id = str(s.get("item_id") or f"ITEM-{i + 1:03d}").strip()
        seeds.append(Seed(
            item_id=item_id,
            text=str(s.get("text") or ""),
            images=[str(x) for x in s.get("images") or []],
            documents=[str(x) for x in s.get("documents") or []],
        ))
    return seeds, [str(d) for d in data.get("reference_documents") or []], str(data.get("product_context") or "")


def main() -> None:
    seeds_path = os.getenv("STORYFORGE_SEEDS_PATH")
    if not seeds_path:
        raise SystemExit("STORYFORGE_SEEDS_PATH is not set")

    seeds, reference_documents, product_context = load_seed_file(seeds_path)
    logger.info(f"Loaded {len(seeds)} seed(s) from {seeds_path}")

    result = StoryPipeline(settings).run(seeds, reference_documents, product_context)

    for item_id, item in result.items.items():
        if item.text:
            logger.info(f"===============Item {item_id} [{item.status.value}]\n{item.text}")
        else:
            logger.info(f"===============Item {item_id} [{item.status.value}] {item.error}")

    for log in result.round_logs:
        logger.info(
            f"Round {log.round_number}: merged={log.relationships_merged} "
            f"restarted={log.restarted} termination={log.termination_reason or '-'}"
        )
    for line in result.manual_review:
        logger.info(f"MANUAL REVIEW: {line}")
    logger.info(f"Usage: {result.usage}; estimated cost ${result.accrued_cost:.4f}")
    if result.asset_cache_stats:
        logger.info(f"Asset cache: {result.asset_cache_stats}")


if __name__ == "__main__":
    main()
