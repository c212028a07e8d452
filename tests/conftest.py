"""Shared fixtures: isolated telemetry and strict invariants for every test."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from green_loom.config import get_settings
from green_loom.models import Agent
from green_loom.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("GREEN_LOOM_STRICT_INVARIANTS", "1")
    monkeypatch.setenv("GREEN_LOOM_TELEMETRY_DB", str(tmp_path / "telemetry.db"))
    monkeypatch.delenv("GREEN_LOOM_SETTINGS", raising=False)
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def agent():
    return Agent(id="proxim8-0042", name="Proxim8 #42", personality="analytical")


class ScriptedRandom:
    """Random source with scripted ``random()`` draws.

    ``uniform`` returns the midpoint of the range and ``choice`` always picks
    the first element.
    """

    def __init__(self, draws):
        self._draws = list(draws)
        self.uniform_calls = []

    def random(self):
        return self._draws.pop(0)

    def uniform(self, a, b):
        self.uniform_calls.append((a, b))
        return (a + b) / 2

    def choice(self, seq):
        return seq[0]


@pytest.fixture
def scripted_random():
    return ScriptedRandom
