"""Shared fixtures for flowengine tests."""

import pytest

from flowengine.config import EngineConfig
from flowengine.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from ~/.flowengine and the caller's environment."""
    monkeypatch.setenv("FLOWENGINE_CONFIG", str(tmp_path / "configuration.json"))
    for name in ("FLOWENGINE_BASE_URL", "SERVER_PORT", "HOST", "PROTOCOL"):
        monkeypatch.delenv(name, raising=False)
    yield
    clear_trace_context()


@pytest.fixture
def engine_config():
    return EngineConfig(base_url="http://flows.test", api_key=None)
