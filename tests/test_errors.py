"""Strict-mode toggling for invariant enforcement."""
from __future__ import annotations

import dataclasses
import logging

import pytest

from green_loom.errors import InvariantViolation, enforce, strict_mode


def test_environment_overrides_settings(settings, monkeypatch):
    lenient = dataclasses.replace(settings, strict_invariants=False)
    assert strict_mode(lenient) is True

    monkeypatch.setenv("GREEN_LOOM_STRICT_INVARIANTS", "off")
    assert strict_mode(dataclasses.replace(settings, strict_invariants=True)) is False


def test_settings_decide_without_environment(settings, monkeypatch):
    monkeypatch.delenv("GREEN_LOOM_STRICT_INVARIANTS")

    assert strict_mode(dataclasses.replace(settings, strict_invariants=True)) is True
    assert strict_mode(dataclasses.replace(settings, strict_invariants=False)) is False
    assert strict_mode() is False


def test_enforce_passes_through_true():
    assert enforce(True, "never raised") is True


def test_enforce_raises_in_strict_mode():
    with pytest.raises(InvariantViolation, match="momentum"):
        enforce(False, "momentum out of range")


def test_enforce_logs_when_lenient(monkeypatch, caplog):
    monkeypatch.setenv("GREEN_LOOM_STRICT_INVARIANTS", "0")

    with caplog.at_level(logging.WARNING, logger="green_loom.errors"):
        assert enforce(False, "momentum out of range") is False

    assert "momentum out of range" in caplog.text
