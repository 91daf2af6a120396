"""Shared fixtures for body-impact tests."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from knowledge_loader import load_knowledge_db, load_taxonomy
from pattern_cache import PatternCache


@pytest.fixture(scope="session")
def taxonomy():
    return load_taxonomy()


@pytest.fixture(scope="session")
def knowledge():
    return load_knowledge_db()


@pytest.fixture
def cache(tmp_path):
    """Pattern cache on a temporary SQLite file."""
    return PatternCache(str(tmp_path / "patterns.db"))
