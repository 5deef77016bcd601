"""
Shared pytest setup: puts src/ on the import path and provides the
deterministic summarizer and world book fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from stubs import ConcatSummarizer  # noqa: E402
from worldbook_context.compaction import InMemoryWorldbook  # noqa: E402


@pytest.fixture
def summarizer():
    return ConcatSummarizer()


@pytest.fixture
def worldbook():
    return InMemoryWorldbook()
