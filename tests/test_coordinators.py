"""Tests for the coordinator registry."""
from __future__ import annotations

import pytest

from green_loom.coordinators import CoordinatorRegistry, default_registry, parse_coordinator
from green_loom.errors import ConfigurationError

EXPECTED_ORDER = [
    "chronos",
    "mnemosyne",
    "hermes",
    "athena",
    "prometheus",
    "thoth",
    "janus",
    "iris",
]


def _entry(**overrides):
    entry = {
        "id": "vesta",
        "name": "Vesta",
        "description": "Hearth Systems",
        "specialty": "Community shelter",
        "strong_suit": ["organize"],
        "weakness": ["sabotage"],
        "neutral": [],
        "optimal_periods": ["2030-2040"],
        "challenging_periods": [],
    }
    entry.update(overrides)
    return entry


def test_default_registry_has_eight_coordinators_in_order():
    registry = default_registry()

    assert registry.ids() == EXPECTED_ORDER
    assert "prometheus" in registry
    assert registry.get("prometheus").optimal_periods[0].contains(2089)


def test_no_coordinator_is_both_strong_and_weak():
    for coordinator in default_registry():
        assert not coordinator.strong_suit & coordinator.weakness


def test_overlapping_strong_and_weak_is_rejected():
    with pytest.raises(ConfigurationError):
        parse_coordinator(_entry(weakness=["organize"]))


def test_missing_required_field_is_rejected():
    entry = _entry()
    del entry["specialty"]
    with pytest.raises(ConfigurationError):
        parse_coordinator(entry)


def test_duplicate_and_empty_registries_are_rejected():
    vesta = parse_coordinator(_entry())
    with pytest.raises(ConfigurationError):
        CoordinatorRegistry([vesta, vesta])
    with pytest.raises(ConfigurationError):
        CoordinatorRegistry([])


def test_lookup_helpers():
    registry = default_registry()

    assert registry.find(None) is None
    assert registry.find("nobody") is None
    with pytest.raises(KeyError):
        registry.get("nobody")


def test_tech_phrase_falls_back():
    athena = default_registry().get("athena")
    assert athena.tech_for("unknown_phase") == "adaptive quantum systems"
