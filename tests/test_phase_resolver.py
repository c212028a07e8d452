"""Tests for the five-phase roll, cascading failure and staged reveal."""
from __future__ import annotations

from datetime import timedelta

import pytest

from green_loom.models import CoordinatorInfluence, RiskLevel
from green_loom.phases import PhaseResolver
from green_loom.rng import DeterministicRNG
from green_loom.templates import TemplateLibrary

FAIL = 0.99
PASS = 0.0


@pytest.fixture
def template():
    return TemplateLibrary.from_yaml().get("first_contact")


@pytest.fixture
def influence():
    return CoordinatorInfluence(
        primary="hermes",
        opposing="chronos",
        synergy=0.75 / 0.7,
        resistance=0.75,
        alignment=0.9,
        risk=RiskLevel.LOW,
    )


def _resolve(template, influence, agent, now, rng, rate=0.8, duration_ms=1_000_000):
    return PhaseResolver().resolve(
        template, "balanced", rate, now, duration_ms, agent, influence, rng
    )


def test_critical_failure_cascades_from_third_phase(template, influence, agent, now, scripted_random):
    run = _resolve(template, influence, agent, now, scripted_random([FAIL, PASS, PASS, PASS, PASS]))

    probabilities = [phase.success_probability for phase in run.phases]
    assert probabilities[:2] == [pytest.approx(0.8), pytest.approx(0.8)]
    assert probabilities[2:] == [pytest.approx(0.8 * 0.7)] * 3
    assert [phase.cascading for phase in run.phases] == [False, False, True, True, True]
    assert run.successful_phases == 4
    assert run.overall_success is True


def test_non_critical_failure_does_not_cascade(template, influence, agent, now, scripted_random):
    run = _resolve(template, influence, agent, now, scripted_random([PASS, FAIL, PASS, PASS, PASS]))

    assert all(phase.success_probability == pytest.approx(0.8) for phase in run.phases)
    assert not any(phase.cascading for phase in run.phases)


def test_probability_is_clamped(template, influence, agent, now, scripted_random):
    run = _resolve(
        template, influence, agent, now, scripted_random([PASS] * 5), rate=0.99
    )
    assert all(phase.success_probability == pytest.approx(0.9) for phase in run.phases)


def test_phase_identity_and_critical_flags(template, influence, agent, now, scripted_random):
    run = _resolve(template, influence, agent, now, scripted_random([PASS] * 5))

    assert [phase.id for phase in run.phases] == [1, 2, 3, 4, 5]
    assert [phase.critical for phase in run.phases] == [True, False, True, False, True]
    assert run.phases[0].name == "Network Infiltration"


def test_narratives_are_rendered_with_connectives(template, influence, agent, now, scripted_random):
    run = _resolve(template, influence, agent, now, scripted_random([FAIL, PASS, PASS, FAIL, FAIL]))

    assert "Proxim8 #42 is rerouting through backup channels" in run.phases[0].narrative
    assert run.phases[1].narrative.startswith("Despite earlier complications, ")
    assert run.phases[3].narrative.startswith("Building on previous success, however ")
    assert not run.phases[4].narrative.startswith("Building on previous success")
    assert "{" not in "".join(phase.narrative for phase in run.phases)


def test_overall_success_needs_three_of_five(template, influence, agent, now):
    for seed in range(200):
        run = _resolve(template, influence, agent, now, DeterministicRNG(seed), rate=0.55)
        assert len(run.phases) == 5
        assert run.overall_success == (run.successful_phases >= 3)
        assert run.successful_phases == sum(phase.success for phase in run.phases)


def test_same_seed_same_outcome(template, influence, agent, now):
    first = _resolve(template, influence, agent, now, DeterministicRNG(7))
    second = _resolve(template, influence, agent, now, DeterministicRNG(7))

    assert [p.to_dict() for p in first.phases] == [p.to_dict() for p in second.phases]


def test_reveal_times_follow_fractions(now):
    times = PhaseResolver().reveal_times(now, 1_000_000)

    assert [int((t - now).total_seconds() * 1000) for t in times] == [
        200_000,
        450_000,
        700_000,
        900_000,
        1_000_000,
    ]
    assert all(a < b for a, b in zip(times, times[1:]))


def test_non_positive_duration_uses_minimum(now, caplog):
    resolver = PhaseResolver()
    with caplog.at_level("WARNING"):
        times = resolver.reveal_times(now, 0)

    assert times[-1] == now + timedelta(milliseconds=60_000)
    assert all(now <= t <= times[-1] for t in times)
    assert "Non-positive mission duration" in caplog.text


def test_reveal_times_monotonic_for_any_duration(now):
    resolver = PhaseResolver()
    for duration in (1, 7, 60_000, 86_400_000):
        times = resolver.reveal_times(now, duration)
        end = now + timedelta(milliseconds=resolver.effective_duration(duration))
        assert all(a < b for a, b in zip(times, times[1:]))
        assert all(now <= t <= end for t in times)
