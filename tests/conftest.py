"""Shared fixtures: sample estimate files."""

from __future__ import annotations

from pathlib import Path

import pytest

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture
def mitchell_xml() -> bytes:
    return (FIXTURES / "mitchell_estimate.xml").read_bytes()


@pytest.fixture
def simple_xml() -> bytes:
    return (FIXTURES / "simple_estimate.xml").read_bytes()


@pytest.fixture
def sample_ems() -> bytes:
    return (FIXTURES / "sample_estimate.ems").read_bytes()
