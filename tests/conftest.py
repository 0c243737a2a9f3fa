"""Shared pytest configuration for the Coinmeter test suite.

Ensures the project root is on sys.path so test files can import
source modules (api, billing, ledger, etc.) directly, and provides
per-test SQLite stores.
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to sys.path so `import billing`, `from api import create_app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("COINMETER_ENV", "test")
os.environ.setdefault("COINMETER_API_TOKEN", "")


@pytest.fixture
def db_path(tmp_path):
    """Isolated SQLite file per test."""
    return str(tmp_path / "coinmeter_test.db")


@pytest.fixture
def resource_store(db_path):
    from resources import ResourceStore
    return ResourceStore(db_path)


@pytest.fixture
def ledger_store(db_path):
    from ledger import LedgerStore
    return LedgerStore(db_path)


@pytest.fixture
def settings_store(db_path):
    from billing import SettingsStore
    return SettingsStore(db_path)
