"""
Shared pytest fixtures for the FinShadow test suite.

Every test gets its own SQLite store under ``tmp_path`` and an
environment with no FINSHADOW_* variables leaking in from the host.
"""

import os

import pytest

from finshadow.intel.store import IntelStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Strip FINSHADOW_* and feed key variables; restore them afterwards."""
    for name in list(os.environ):
        if name.startswith("FINSHADOW_") or name in ("OTX_API_KEY", "ABUSECH_AUTH_KEY"):
            monkeypatch.delenv(name)


@pytest.fixture
def store(tmp_path):
    s = IntelStore(str(tmp_path / "test_intel.db"))
    yield s
    s.close()
