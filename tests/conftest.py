"""
pytest configuration for blobfeed tests.

Adds src directory to Python path for imports and resets the log context.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep BLOBFEED_CONFIG and the log context from leaking between tests."""
    from core.logging.context import clear_log_context

    monkeypatch.delenv("BLOBFEED_CONFIG", raising=False)
    clear_log_context()
    yield
    clear_log_context()
