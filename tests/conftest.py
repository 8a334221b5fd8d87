from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fleet_agent.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("FLEET_"):
            monkeypatch.delenv(key, raising=False)
    # Keep a stray .env in the working directory from leaking into tests.
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def fixed_host_metrics(monkeypatch):
    monkeypatch.setattr("fleet_agent.system_metrics.preferred_ipv4", lambda: "10.0.0.5")
    monkeypatch.setattr("fleet_agent.system_metrics.cpu_temperature", lambda: 48.5)
