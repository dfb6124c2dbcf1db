from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
TESTS = Path(__file__).resolve().parent
for p in (ROOT, TESTS):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))


import pytest

from llm_fakes import FakeChatLlm
from storyforge.id_registry import IdRegistry


@pytest.fixture
def fake_llm() -> FakeChatLlm:
    return FakeChatLlm()


@pytest.fixture
def registry() -> IdRegistry:
    return IdRegistry()
