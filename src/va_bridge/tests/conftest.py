"""Fixtures for the bridge tests."""

from __future__ import annotations

import pytest
from bridge_fakes import Harness


@pytest.fixture
def harness() -> Harness:
    return Harness()
