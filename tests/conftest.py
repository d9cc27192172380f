"""Root conftest.py for pytest configuration.

Adds project root to sys.path so shared test doubles are importable as
``tests.fakes``.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from tests.fakes import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    """A fake monotonic clock starting at 1000s."""
    return FakeClock()
