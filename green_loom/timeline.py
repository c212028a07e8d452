"""Timeline probability rules.

Everything here is a pure function: inputs are never mutated, updated
copies are returned. Persistence and locking live in :mod:`green_loom.store`.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Settings, get_settings
from .errors import enforce
from .models import (
    ActiveCascade,
    CanonicalStatus,
    CascadeKind,
    ConvergenceEvent,
    ConvergenceStatus,
    DailySnapshot,
    Faction,
    GlobalTimelineState,
    Momentum,
    MomentumTrend,
    PeriodProbability,
    Resolution,
    TimelineEvent,
    TimelineUpdate,
)

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def check_probabilities(event: TimelineEvent, settings: Settings | None = None) -> TimelineEvent:
    """Verify the two faction probabilities are complementary and in range.

    In lenient mode a broken pair is repaired in place from the green-loom side.
    """

    green, oneiro = event.green_loom_probability, event.oneirocom_probability
    ok = enforce(
        0 <= green <= 100 and 0 <= oneiro <= 100,
        f"event {event.id}: probabilities out of range ({green}, {oneiro})",
        settings,
    )
    ok = (
        enforce(
            abs(green + oneiro - 100) < _EPSILON,
            f"event {event.id}: probabilities sum to {green + oneiro}",
            settings,
        )
        and ok
    )
    if not ok:
        event.green_loom_probability = _clamp(green, 0.0, 100.0)
        event.oneirocom_probability = 100.0 - event.green_loom_probability
    return event


def _set_green_loom(event: TimelineEvent, value: float) -> None:
    event.green_loom_probability = _clamp(value, 0.0, 100.0)
    event.oneirocom_probability = 100.0 - event.green_loom_probability


def derive_canonical_status(
    event: TimelineEvent, settings: Settings | None = None
) -> CanonicalStatus:
    s = settings or get_settings()
    rate = event.success_rate
    if rate >= s.green_loom_threshold:
        return CanonicalStatus.GREEN_LOOM
    if rate >= s.contested_threshold:
        return CanonicalStatus.CONTESTED
    if event.total_interventions >= s.oneirocom_min_interventions:
        return CanonicalStatus.ONEIROCOM
    return event.canonical_status


def apply_outcome(
    event: TimelineEvent,
    success: bool,
    shift: float,
    now: datetime,
    settings: Settings | None = None,
) -> TimelineEvent:
    """Record one intervention against ``event``."""

    s = settings or get_settings()
    updated = copy.deepcopy(event)
    updated.total_interventions += 1
    if success:
        updated.successful_interventions += 1
        _set_green_loom(updated, updated.green_loom_probability + shift)
    updated.last_intervention_at = now
    updated.canonical_status = derive_canonical_status(updated, s)
    updated.version += 1
    enforce(
        updated.successful_interventions <= updated.total_interventions,
        f"event {updated.id}: more successes than interventions",
        s,
    )
    return check_probabilities(updated, s)


def apply_cascades(
    source: TimelineEvent,
    events: Mapping[str, TimelineEvent],
    now: datetime,
    settings: Settings | None = None,
) -> Tuple[List[TimelineEvent], List[ActiveCascade]]:
    """Apply every cascade rule on ``source`` to its targets.

    Targets are looked up in ``events``; unknown ids are skipped. A target hit
    by several rules is updated cumulatively and returned once.
    """

    s = settings or get_settings()
    touched: Dict[str, TimelineEvent] = {}
    applied: List[ActiveCascade] = []
    for effect in source.cascade_effects:
        if effect.target_event_id == source.id:
            logger.warning("Event %s cascades onto itself, skipping", source.id)
            continue
        target = touched.get(effect.target_event_id)
        if target is None:
            original = events.get(effect.target_event_id)
            if original is None:
                logger.warning(
                    "Cascade target %s from %s not found, skipping",
                    effect.target_event_id,
                    source.id,
                )
                continue
            target = copy.deepcopy(original)
            target.version += 1
            touched[target.id] = target

        if effect.kind is CascadeKind.DIFFICULTY:
            target.base_difficulty = _clamp(
                target.base_difficulty + effect.magnitude, s.difficulty_min, s.difficulty_max
            )
        elif effect.kind is CascadeKind.PROBABILITY:
            _set_green_loom(target, target.green_loom_probability + effect.magnitude)
        elif effect.kind is CascadeKind.UNLOCK:
            target.locked_until = None
        elif effect.kind is CascadeKind.LOCK:
            target.locked_until = now + timedelta(days=effect.magnitude)
        check_probabilities(target, s)
        applied.append(
            ActiveCascade(
                source_event_id=source.id,
                target_event_id=target.id,
                kind=effect.kind,
                magnitude=effect.magnitude,
                expires_at=now + timedelta(days=s.cascade_expiry_days),
            )
        )
        logger.debug(
            "Cascade %s -> %s (%s %+g)", source.id, target.id, effect.kind.value, effect.magnitude
        )
    return list(touched.values()), applied


def _threat_weight(event: TimelineEvent, settings: Settings) -> float:
    return settings.threat_weights.get(event.threat_level.value, 1.0)


def recalculate(
    events: Iterable[TimelineEvent],
    previous: GlobalTimelineState,
    recent_successes: int,
    now: datetime,
    settings: Settings | None = None,
    update_momentum: bool = True,
) -> GlobalTimelineState:
    """Recompute the global aggregate from every event.

    ``recent_successes`` is the number of successful completions inside the
    momentum window. The result carries ``previous.version + 1``. Seeding
    passes ``update_momentum=False`` so that loading content is not read as
    a quiet day.
    """

    s = settings or get_settings()
    events = list(events)
    state = copy.deepcopy(previous)

    total_weight = sum(_threat_weight(event, s) for event in events)
    if total_weight > 0:
        weighted = sum(event.green_loom_probability * _threat_weight(event, s) for event in events)
        state.global_green_loom_probability = _clamp(weighted / total_weight, 0.0, 100.0)
        state.global_oneirocom_probability = 100.0 - state.global_green_loom_probability

    previous_periods = {period.name: period for period in previous.periods}
    periods = []
    for bounds in s.periods:
        start, end = int(bounds["start_year"]), int(bounds["end_year"])
        scoped = [event for event in events if start <= event.year <= end]
        prior = previous_periods.get(bounds["name"])
        if scoped:
            green = sum(event.green_loom_probability for event in scoped) / len(scoped)
            period = PeriodProbability(
                name=bounds["name"],
                start_year=start,
                end_year=end,
                green_loom_probability=green,
                oneirocom_probability=100.0 - green,
                total_events=len(scoped),
                disrupted_events=sum(
                    1 for event in scoped if event.canonical_status is CanonicalStatus.GREEN_LOOM
                ),
                contested_events=sum(
                    1 for event in scoped if event.canonical_status is CanonicalStatus.CONTESTED
                ),
            )
        elif prior is not None:
            period = prior
        else:
            period = PeriodProbability(
                name=bounds["name"],
                start_year=start,
                end_year=end,
                green_loom_probability=s.initial_green_loom,
                oneirocom_probability=100.0 - s.initial_green_loom,
            )
        periods.append(period)
    state.periods = periods
    state.convergence_events = _sync_convergence(events, state.convergence_events)

    if update_momentum:
        state.momentum = _nudge_momentum(state.momentum, recent_successes, now, s)
    state.active_cascades = [
        cascade for cascade in state.active_cascades if cascade.expires_at > now
    ]
    state.last_calculated_at = now
    state.version = previous.version + 1
    enforce(
        abs(state.global_green_loom_probability + state.global_oneirocom_probability - 100)
        < _EPSILON,
        "global probabilities do not sum to 100",
        s,
    )
    return state


def _sync_convergence(
    events: List[TimelineEvent], tracked: List[ConvergenceEvent]
) -> List[ConvergenceEvent]:
    """Keep existing tallies and open one for every new convergence event."""

    known = {entry.event_id for entry in tracked}
    synced = list(tracked)
    for event in events:
        if event.is_convergence_event and event.id not in known:
            synced.append(
                ConvergenceEvent(
                    event_id=event.id,
                    event_name=event.title,
                    required_agents=max(1, event.convergence_threshold or 1),
                )
            )
    return synced


def _convergence_entry(state: GlobalTimelineState, event_id: str) -> Optional[ConvergenceEvent]:
    return next((entry for entry in state.convergence_events if entry.event_id == event_id), None)


def register_convergence_participation(
    event: TimelineEvent,
    state: GlobalTimelineState,
    agent_id: str,
    now: datetime,
) -> Tuple[GlobalTimelineState, ConvergenceEvent]:
    """Count ``agent_id`` towards a convergence event.

    An agent is counted once per event. The tally turns ``active`` when the
    participant count reaches the required number of agents.
    """

    if not event.is_convergence_event:
        raise ValueError(f"{event.id} is not a convergence event")
    updated = copy.deepcopy(state)
    entry = _convergence_entry(updated, event.id)
    if entry is None:
        updated.convergence_events = _sync_convergence([event], updated.convergence_events)
        entry = _convergence_entry(updated, event.id)
    if entry.status in (ConvergenceStatus.COMPLETED, ConvergenceStatus.FAILED):
        raise ValueError(f"Convergence at {event.id} has already resolved")

    if agent_id not in entry.participants:
        entry.participants.append(agent_id)
    if (
        entry.status is ConvergenceStatus.UPCOMING
        and entry.current_participants >= entry.required_agents
    ):
        entry.status = ConvergenceStatus.ACTIVE
        entry.activated_at = now
        logger.info(
            "Convergence at %s is active with %d agents", event.id, entry.current_participants
        )
    updated.version = state.version + 1
    return updated, entry


def _settle_convergence(state: GlobalTimelineState, event_id: str, success: bool) -> None:
    entry = _convergence_entry(state, event_id)
    if entry is None or entry.status is not ConvergenceStatus.ACTIVE:
        return
    entry.status = ConvergenceStatus.COMPLETED
    entry.outcome = Faction.GREEN_LOOM if success else Faction.ONEIROCOM


def _nudge_momentum(
    momentum: Momentum, recent_successes: int, now: datetime, settings: Settings
) -> Momentum:
    bound = settings.momentum_bound
    current = momentum.current
    if recent_successes > settings.momentum_rising_threshold:
        current, trend = min(bound, current + settings.momentum_step), MomentumTrend.RISING
    elif recent_successes < settings.momentum_declining_threshold:
        current, trend = max(-bound, current - settings.momentum_step), MomentumTrend.DECLINING
    else:
        trend = MomentumTrend.STABLE
    return Momentum(current=current, trend=trend, last_updated=now)


def apply_resolution(
    event: TimelineEvent,
    resolution: Resolution,
    events: Mapping[str, TimelineEvent],
    state: GlobalTimelineState,
    recent_successes: int,
    now: datetime,
    settings: Settings | None = None,
) -> TimelineUpdate:
    """Compute the full batch for one resolution without committing anything.

    ``events`` holds every known event (cascade targets are looked up there
    and the global recompute reads all of them).
    """

    s = settings or get_settings()
    success = resolution.overall_success
    updated = apply_outcome(event, success, resolution.timeline_shift, now, s)

    targets: List[TimelineEvent] = []
    cascades: List[ActiveCascade] = []
    if success and updated.cascade_effects:
        targets, cascades = apply_cascades(updated, events, now, s)

    merged = dict(events)
    merged[updated.id] = updated
    for target in targets:
        merged[target.id] = target

    working = copy.deepcopy(state)
    working.active_cascades.extend(cascades)
    working.total_missions_deployed += 1
    if success:
        working.total_missions_succeeded += 1
        working.total_timeline_shift += resolution.timeline_shift
    if updated.is_convergence_event:
        _settle_convergence(working, updated.id, success)
    new_state = recalculate(merged.values(), working, recent_successes, now, s)
    new_state.version = state.version + 1
    return TimelineUpdate(
        event=updated,
        cascade_targets=targets,
        global_state=new_state,
        applied_cascades=cascades,
    )


def record_snapshot(
    state: GlobalTimelineState,
    missions_completed: int,
    now: datetime,
    settings: Settings | None = None,
) -> GlobalTimelineState:
    """Append (or replace) today's snapshot and trim to the retention window."""

    s = settings or get_settings()
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    updated = copy.deepcopy(state)
    updated.daily_snapshots = [
        snapshot for snapshot in updated.daily_snapshots if snapshot.date != day
    ]
    updated.daily_snapshots.append(
        DailySnapshot(
            date=day,
            green_loom_probability=updated.global_green_loom_probability,
            missions_completed=missions_completed,
        )
    )
    updated.daily_snapshots = updated.daily_snapshots[-s.snapshot_retention :]
    updated.version = state.version + 1
    return updated


def is_available(event: TimelineEvent, state: GlobalTimelineState, now: datetime) -> bool:
    if event.locked_until is not None and event.locked_until > now:
        return False
    if event.is_convergence_event:
        entry = _convergence_entry(state, event.id)
        if entry is not None and entry.status in (
            ConvergenceStatus.COMPLETED,
            ConvergenceStatus.FAILED,
        ):
            return False
    required: Optional[float] = event.required_green_loom_probability
    return required is None or required <= state.global_green_loom_probability


def initial_state(settings: Settings | None = None) -> GlobalTimelineState:
    s = settings or get_settings()
    return GlobalTimelineState(
        global_green_loom_probability=s.initial_green_loom,
        global_oneirocom_probability=100.0 - s.initial_green_loom,
        periods=[
            PeriodProbability(
                name=bounds["name"],
                start_year=int(bounds["start_year"]),
                end_year=int(bounds["end_year"]),
                green_loom_probability=s.initial_green_loom,
                oneirocom_probability=100.0 - s.initial_green_loom,
            )
            for bounds in s.periods
        ],
    )


__all__ = [
    "apply_cascades",
    "apply_outcome",
    "apply_resolution",
    "check_probabilities",
    "derive_canonical_status",
    "initial_state",
    "is_available",
    "recalculate",
    "record_snapshot",
]
