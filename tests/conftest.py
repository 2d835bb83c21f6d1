"""
Shared pytest setup: puts ``src`` on sys.path so tests import the package
directly, plus a few message/config fixtures used across test modules.
"""

import sys
from pathlib import Path

import pytest

# Add src to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_core.messages import SystemMessage  # noqa: E402


@pytest.fixture
def system_prompt():
    # 40 chars -> 10 tokens with the default estimator
    return SystemMessage(content="s" * 40)


@pytest.fixture(autouse=True)
def _no_database(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
