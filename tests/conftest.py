"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import Workspace


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    """Provide a project root wired to fake toolchain collaborators."""
    return Workspace(tmp_path / "project")
