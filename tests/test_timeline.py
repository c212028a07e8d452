"""Tests for the pure timeline probability rules."""
from __future__ import annotations

from datetime import timedelta

import pytest

from green_loom import timeline
from green_loom.errors import InvariantViolation
from green_loom.models import (
    ActiveCascade,
    CanonicalStatus,
    CascadeEffect,
    CascadeKind,
    ConvergenceStatus,
    CoordinatorInfluence,
    Faction,
    MomentumTrend,
    Resolution,
    Rewards,
    RiskLevel,
    ThreatLevel,
    TimelineEvent,
)
from green_loom.rng import DeterministicRNG
from green_loom.store import load_timeline_events


def _resolution(success: bool, shift: float = 2.0) -> Resolution:
    return Resolution(
        phases=[],
        overall_success=success,
        successful_phases=4 if success else 1,
        timeline_shift=shift,
        influence_type=Faction.GREEN_LOOM if success else Faction.ONEIROCOM,
        rewards=Rewards(timeline_points=0, experience=0),
        final_narrative="",
        coordinator_influence=CoordinatorInfluence(
            primary="hermes",
            opposing="chronos",
            synergy=1.0,
            resistance=1.0,
            alignment=0.9,
            risk=RiskLevel.LOW,
        ),
        coordinator_lore="",
        base_success_rate=0.7,
        modified_success_rate=0.7,
    )


@pytest.fixture
def events():
    return {event.id: event for event in load_timeline_events()}


def test_seed_events_are_complementary(events):
    for event in events.values():
        assert event.green_loom_probability + event.oneirocom_probability == 100


def test_nine_interventions_two_successes_never_oneirocom(now):
    event = TimelineEvent(
        id="e", title="E", year=2030, total_interventions=8, successful_interventions=2
    )

    ninth = timeline.apply_outcome(event, False, 0.0, now)
    assert ninth.total_interventions == 9
    assert ninth.success_rate == 22
    assert ninth.canonical_status is CanonicalStatus.PENDING

    tenth = timeline.apply_outcome(ninth, False, 0.0, now)
    assert tenth.canonical_status is CanonicalStatus.ONEIROCOM


def test_status_thresholds():
    event = TimelineEvent(id="e", title="E", year=2030, total_interventions=5)

    event.successful_interventions = 3
    assert timeline.derive_canonical_status(event) is CanonicalStatus.GREEN_LOOM
    event.successful_interventions = 2
    assert timeline.derive_canonical_status(event) is CanonicalStatus.CONTESTED
    event.successful_interventions = 1
    assert timeline.derive_canonical_status(event) is CanonicalStatus.PENDING


def test_apply_outcome_shifts_and_clamps(now):
    event = TimelineEvent(id="e", title="E", year=2030, green_loom_probability=99, oneirocom_probability=1)

    updated = timeline.apply_outcome(event, True, 5.0, now)

    assert updated.green_loom_probability == 100
    assert updated.oneirocom_probability == 0
    assert updated.version == event.version + 1
    assert updated.last_intervention_at == now
    assert event.green_loom_probability == 99


def test_failure_does_not_move_probability(now):
    event = TimelineEvent(id="e", title="E", year=2030, green_loom_probability=30, oneirocom_probability=70)
    updated = timeline.apply_outcome(event, False, 5.0, now)
    assert updated.green_loom_probability == 30
    assert updated.total_interventions == 1
    assert updated.successful_interventions == 0


def test_cascades_apply_to_every_target(events, now):
    source = events["social_algorithm_mapping"]
    events["memory_wars_opening"].locked_until = now + timedelta(days=3)

    targets, cascades = timeline.apply_cascades(source, events, now)
    by_id = {target.id: target for target in targets}

    assert by_id["neural_seed_trials"].green_loom_probability == 15
    assert by_id["neural_seed_trials"].oneirocom_probability == 85
    assert by_id["memory_wars_opening"].locked_until is None
    assert [c.source_event_id for c in cascades] == [source.id, source.id]
    assert all(c.expires_at == now + timedelta(days=7) for c in cascades)
    assert events["neural_seed_trials"].green_loom_probability == 12


def test_lock_and_difficulty_cascades(events, now):
    targets, _ = timeline.apply_cascades(events["convergence_assembly"], events, now)
    by_id = {target.id: target for target in targets}

    assert by_id["lunar_countermeasures"].locked_until == now + timedelta(days=2)
    assert by_id["final_dominion"].base_difficulty == 8


def test_difficulty_is_clamped_and_targets_merge(now):
    source = TimelineEvent(
        id="src",
        title="Source",
        year=2030,
        cascade_effects=[
            CascadeEffect("dst", CascadeKind.DIFFICULTY, -20),
            CascadeEffect("dst", CascadeKind.PROBABILITY, 150),
            CascadeEffect("ghost", CascadeKind.PROBABILITY, 5),
            CascadeEffect("src", CascadeKind.PROBABILITY, 5),
        ],
    )
    target = TimelineEvent(id="dst", title="Dest", year=2031, version=4)

    targets, cascades = timeline.apply_cascades(source, {"src": source, "dst": target}, now)

    assert len(targets) == 1
    assert targets[0].base_difficulty == 1
    assert targets[0].green_loom_probability == 100
    assert targets[0].version == 5
    assert len(cascades) == 2


def test_failed_resolution_skips_cascades(events, now):
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    update = timeline.apply_resolution(
        events["social_algorithm_mapping"], _resolution(False), events, state, 0, now
    )

    assert update.cascade_targets == []
    assert update.applied_cascades == []
    assert update.global_state.total_missions_deployed == 1
    assert update.global_state.total_missions_succeeded == 0
    assert update.global_state.version == state.version + 1


def test_successful_resolution_batch(events, now):
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    update = timeline.apply_resolution(
        events["social_algorithm_mapping"], _resolution(True, 2.0), events, state, 1, now
    )

    assert update.event.green_loom_probability == 7
    assert {t.id for t in update.cascade_targets} == {"neural_seed_trials", "memory_wars_opening"}
    assert len(update.global_state.active_cascades) == 2
    assert update.global_state.total_timeline_shift == 2.0
    assert update.global_state.global_green_loom_probability > state.global_green_loom_probability


def test_recalculate_weights_by_threat(now):
    low = TimelineEvent(id="a", title="A", year=2030, threat_level=ThreatLevel.LOW,
                        green_loom_probability=10, oneirocom_probability=90)
    critical = TimelineEvent(id="b", title="B", year=2080, threat_level=ThreatLevel.CRITICAL,
                             green_loom_probability=50, oneirocom_probability=50)
    previous = timeline.initial_state()

    state = timeline.recalculate([low, critical], previous, 30, now)

    assert state.global_green_loom_probability == pytest.approx(40.0)
    assert state.global_oneirocom_probability == pytest.approx(60.0)
    periods = {period.name: period for period in state.periods}
    assert periods["Early Period"].green_loom_probability == 10
    assert periods["Dominance Period"].green_loom_probability == 50
    assert periods["Escalation Period"].green_loom_probability == 15
    assert state.version == previous.version + 1


@pytest.mark.parametrize(
    "recent,current,trend",
    [(51, 5, MomentumTrend.RISING), (50, 0, MomentumTrend.STABLE),
     (20, 0, MomentumTrend.STABLE), (19, -5, MomentumTrend.DECLINING)],
)
def test_momentum(recent, current, trend, now):
    state = timeline.recalculate([], timeline.initial_state(), recent, now)
    assert state.momentum.current == current
    assert state.momentum.trend is trend


def test_momentum_can_be_left_alone(now):
    state = timeline.recalculate([], timeline.initial_state(), 0, now, update_momentum=False)
    assert state.momentum.trend is MomentumTrend.STABLE
    assert state.momentum.current == 0


def test_expired_cascades_are_pruned(now):
    previous = timeline.initial_state()
    previous.active_cascades = [
        ActiveCascade("a", "b", CascadeKind.UNLOCK, 0, now - timedelta(seconds=1)),
        ActiveCascade("a", "c", CascadeKind.UNLOCK, 0, now + timedelta(days=1)),
    ]
    state = timeline.recalculate([], previous, 30, now)
    assert [c.target_event_id for c in state.active_cascades] == ["c"]


def test_probabilities_stay_complementary_through_many_updates(events, now):
    rng = DeterministicRNG(11)
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    ids = sorted(events)
    for step in range(300):
        event = events[rng.choice(ids)]
        update = timeline.apply_resolution(
            event, _resolution(rng.random() < 0.6, rng.uniform(0, 30)), events, state, 0, now
        )
        for changed in [update.event, *update.cascade_targets]:
            events[changed.id] = changed
        state = update.global_state
        for current in events.values():
            assert 0 <= current.green_loom_probability <= 100
            assert current.green_loom_probability + current.oneirocom_probability == pytest.approx(100)
        assert state.global_green_loom_probability + state.global_oneirocom_probability == pytest.approx(100)


def test_broken_pair_raises_in_strict_mode():
    event = TimelineEvent(id="e", title="E", year=2030, green_loom_probability=40, oneirocom_probability=40)
    with pytest.raises(InvariantViolation):
        timeline.check_probabilities(event)


def test_broken_pair_is_repaired_when_lenient(monkeypatch):
    monkeypatch.setenv("GREEN_LOOM_STRICT_INVARIANTS", "0")
    event = TimelineEvent(id="e", title="E", year=2030, green_loom_probability=140, oneirocom_probability=40)

    timeline.check_probabilities(event)

    assert event.green_loom_probability == 100
    assert event.oneirocom_probability == 0


def test_snapshots_replace_same_day_and_trim(now):
    state = timeline.initial_state()
    state = timeline.record_snapshot(state, 3, now)
    state = timeline.record_snapshot(state, 5, now + timedelta(hours=2))
    assert len(state.daily_snapshots) == 1
    assert state.daily_snapshots[0].missions_completed == 5

    for day in range(1, 40):
        state = timeline.record_snapshot(state, day, now + timedelta(days=day))
    assert len(state.daily_snapshots) == 30
    assert state.daily_snapshots[-1].date == (now + timedelta(days=39)).replace(hour=0, minute=0)


def test_availability(now):
    state = timeline.initial_state()
    locked = TimelineEvent(id="l", title="L", year=2030, locked_until=now + timedelta(hours=1))
    gated = TimelineEvent(id="g", title="G", year=2030, required_green_loom_probability=20)
    open_event = TimelineEvent(id="o", title="O", year=2030, required_green_loom_probability=15)

    assert not timeline.is_available(locked, state, now)
    assert timeline.is_available(locked, state, now + timedelta(hours=2))
    assert not timeline.is_available(gated, state, now)
    assert timeline.is_available(open_event, state, now)


def test_recalculate_opens_a_tally_per_convergence_event(events, now):
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)

    assert [entry.event_id for entry in state.convergence_events] == ["convergence_assembly"]
    tally = state.convergence_events[0]
    assert tally.required_agents == 3
    assert tally.status is ConvergenceStatus.UPCOMING

    again = timeline.recalculate(events.values(), state, 0, now)
    assert len(again.convergence_events) == 1


def test_convergence_activates_at_threshold(events, now):
    event = events["convergence_assembly"]
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)

    state, tally = timeline.register_convergence_participation(event, state, "agent_1", now)
    state, tally = timeline.register_convergence_participation(event, state, "agent_1", now)
    assert tally.current_participants == 1
    assert tally.status is ConvergenceStatus.UPCOMING

    state, tally = timeline.register_convergence_participation(event, state, "agent_2", now)
    assert tally.status is ConvergenceStatus.UPCOMING
    before = state
    state, tally = timeline.register_convergence_participation(
        event, state, "agent_3", now + timedelta(minutes=1)
    )

    assert tally.current_participants == 3
    assert tally.status is ConvergenceStatus.ACTIVE
    assert tally.activated_at == now + timedelta(minutes=1)
    assert state.version == before.version + 1
    # inputs are left untouched
    assert before.convergence_events[0].status is ConvergenceStatus.UPCOMING


def test_only_convergence_events_take_participants(events, now):
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    with pytest.raises(ValueError):
        timeline.register_convergence_participation(
            events["social_algorithm_mapping"], state, "agent_1", now
        )


def test_resolution_settles_active_convergence(events, now):
    event = events["convergence_assembly"]
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    for agent_id in ("a", "b", "c"):
        state, _ = timeline.register_convergence_participation(event, state, agent_id, now)

    update = timeline.apply_resolution(event, _resolution(True), events, state, 1, now)

    tally = update.global_state.convergence_events[0]
    assert tally.status is ConvergenceStatus.COMPLETED
    assert tally.outcome is Faction.GREEN_LOOM
    assert not timeline.is_available(update.event, update.global_state, now)
    with pytest.raises(ValueError):
        timeline.register_convergence_participation(event, update.global_state, "d", now)


def test_resolution_leaves_unmet_convergence_open(events, now):
    event = events["convergence_assembly"]
    state = timeline.recalculate(events.values(), timeline.initial_state(), 0, now)
    state, _ = timeline.register_convergence_participation(event, state, "a", now)

    update = timeline.apply_resolution(event, _resolution(False), events, state, 0, now)

    tally = update.global_state.convergence_events[0]
    assert tally.status is ConvergenceStatus.UPCOMING
    assert tally.outcome is None
    assert timeline.is_available(update.event, update.global_state, now)
