"""Persistent timeline state: events, the global aggregate and deployments."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import ExitStack, closing, contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml

from . import timeline
from .config import Settings, get_settings
from .errors import ConfigurationError, StoreConflictError
from .models import (
    ConvergenceEvent,
    Deployment,
    DeploymentStatus,
    GlobalTimelineState,
    Resolution,
    TimelineEvent,
    TimelineUpdate,
)
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS timeline_events (
    id TEXT PRIMARY KEY,
    year INTEGER NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS global_state (
    singleton INTEGER PRIMARY KEY CHECK (singleton = 1),
    data TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS deployments (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    template_id TEXT NOT NULL,
    status TEXT NOT NULL,
    completes_at TEXT NOT NULL,
    applied INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_deployments_due
    ON deployments (applied, completes_at);
CREATE INDEX IF NOT EXISTS idx_deployments_agent
    ON deployments (agent_id);
CREATE TABLE IF NOT EXISTS resolutions (
    deployment_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    approach TEXT,
    success INTEGER NOT NULL,
    timeline_shift REAL NOT NULL,
    applied_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_resolutions_applied
    ON resolutions (applied_at);
CREATE INDEX IF NOT EXISTS idx_resolutions_event
    ON resolutions (event_id);
"""


def load_timeline_events(path: Path | None = None) -> List[TimelineEvent]:
    """Read seed events from YAML, rejecting malformed entries."""

    path = path or (_DATA_PATH / "timeline_events.yaml")
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    entries = data.get("events")
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path}: expected an 'events' list")
    events: List[TimelineEvent] = []
    seen = set()
    for entry in entries:
        try:
            event = TimelineEvent.from_dict(entry)
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"{path}: bad timeline event {entry!r}: {exc}") from exc
        if event.id in seen:
            raise ConfigurationError(f"{path}: duplicate timeline event {event.id!r}")
        if not 0 <= event.green_loom_probability <= 100:
            raise ConfigurationError(f"{path}: {event.id} probability out of range")
        if event.is_convergence_event and (event.convergence_threshold or 0) < 1:
            raise ConfigurationError(
                f"{path}: convergence event {event.id} needs a convergence_threshold of at least 1"
            )
        seen.add(event.id)
        events.append(event)
    return events


class TimelineStore:
    """Serialises writes to timeline records and commits them atomically.

    In-process writers are serialised with per-event locks (taken in sorted
    order) plus one lock for the global aggregate. Writers in other processes
    are caught by compare-and-swap on each row's ``version``; a lost race rolls
    the whole batch back and retries.
    """

    def __init__(self, db_path: Path, settings: Settings | None = None) -> None:
        self._db_path = db_path
        self._settings = settings or get_settings()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._global_lock = threading.Lock()
        self._ensure_schema()
        self._ensure_global_state()

    # Setup -------------------------------------------------------------
    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def _ensure_global_state(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute("SELECT version FROM global_state WHERE singleton = 1").fetchone()
            if row is None:
                state = timeline.initial_state(self._settings)
                conn.execute(
                    "INSERT INTO global_state (singleton, data, version) VALUES (1, ?, ?)",
                    (json.dumps(state.to_dict()), state.version),
                )
                conn.commit()

    def seed_events(self, events: Iterable[TimelineEvent], replace: bool = False) -> int:
        """Insert events (keeping existing rows unless ``replace``) and refresh the aggregate."""

        events = list(events)
        verb = "REPLACE" if replace else "INSERT OR IGNORE"
        with self._locked([event.id for event in events]):
            with closing(sqlite3.connect(self._db_path)) as conn:
                inserted = 0
                for event in events:
                    timeline.check_probabilities(event, self._settings)
                    cursor = conn.execute(
                        f"{verb} INTO timeline_events (id, year, data, version) VALUES (?, ?, ?, ?)",
                        (event.id, event.year, json.dumps(event.to_dict()), event.version),
                    )
                    inserted += cursor.rowcount
                state = self._read_state(conn)
                refreshed = timeline.recalculate(
                    self._read_events(conn).values(),
                    state,
                    0,
                    datetime.now(timezone.utc),
                    self._settings,
                    update_momentum=False,
                )
                conn.execute(
                    "UPDATE global_state SET data = ?, version = ? WHERE singleton = 1",
                    (json.dumps(refreshed.to_dict()), refreshed.version),
                )
                conn.commit()
        logger.info("Seeded %d timeline events", inserted)
        return inserted

    # Locking -----------------------------------------------------------
    def _event_lock(self, event_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(event_id, threading.Lock())

    @contextmanager
    def _locked(self, event_ids: Iterable[str]) -> Iterator[None]:
        with ExitStack() as stack:
            for event_id in sorted(set(event_ids)):
                stack.enter_context(self._event_lock(event_id))
            stack.enter_context(self._global_lock)
            yield

    # Reads -------------------------------------------------------------
    def _read_events(self, conn: sqlite3.Connection) -> Dict[str, TimelineEvent]:
        rows = conn.execute(
            "SELECT data, version FROM timeline_events ORDER BY year, id"
        ).fetchall()
        events: Dict[str, TimelineEvent] = {}
        for data_json, version in rows:
            event = TimelineEvent.from_dict(json.loads(data_json))
            event.version = int(version)
            events[event.id] = event
        return events

    def _read_state(self, conn: sqlite3.Connection) -> GlobalTimelineState:
        row = conn.execute(
            "SELECT data, version FROM global_state WHERE singleton = 1"
        ).fetchone()
        state = GlobalTimelineState.from_dict(json.loads(row[0]))
        state.version = int(row[1])
        return state

    def _recent_successes(self, conn: sqlite3.Connection, now: datetime) -> int:
        since = now - timedelta(hours=self._settings.momentum_window_hours)
        row = conn.execute(
            "SELECT COUNT(*) FROM resolutions WHERE success = 1 AND applied_at >= ?",
            (since.isoformat(),),
        ).fetchone()
        return int(row[0])

    def get_event(self, event_id: str) -> Optional[TimelineEvent]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT data, version FROM timeline_events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        event = TimelineEvent.from_dict(json.loads(row[0]))
        event.version = int(row[1])
        return event

    def all_events(self) -> List[TimelineEvent]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            return list(self._read_events(conn).values())

    def global_state(self) -> GlobalTimelineState:
        with closing(sqlite3.connect(self._db_path)) as conn:
            return self._read_state(conn)

    def available_events(self, now: Optional[datetime] = None) -> List[TimelineEvent]:
        now = now or datetime.now(timezone.utc)
        with closing(sqlite3.connect(self._db_path)) as conn:
            state = self._read_state(conn)
            events = self._read_events(conn)
        return [event for event in events.values() if timeline.is_available(event, state, now)]

    def event_statistics(self, event_id: str) -> Dict[str, Any]:
        event = self.get_event(event_id)
        if event is None:
            raise ValueError(f"unknown timeline event {event_id!r}")
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                """
                SELECT approach, COUNT(*), SUM(success)
                FROM resolutions WHERE event_id = ?
                GROUP BY approach
                """,
                (event_id,),
            ).fetchall()
        return {
            "event_id": event.id,
            "total_interventions": event.total_interventions,
            "successful_interventions": event.successful_interventions,
            "success_rate": event.success_rate,
            "canonical_status": event.canonical_status.value,
            "green_loom_probability": event.green_loom_probability,
            "approach_stats": {
                approach or "unknown": {"attempts": int(attempts), "successes": int(successes or 0)}
                for approach, attempts, successes in rows
            },
        }

    # Resolution batches ------------------------------------------------
    def resolution_recorded(self, deployment_id: str) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT 1 FROM resolutions WHERE deployment_id = ?", (deployment_id,)
            ).fetchone()
        return row is not None

    def apply_resolution(
        self,
        event_id: str,
        resolution: Resolution,
        deployment_id: Optional[str] = None,
        approach: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TimelineUpdate:
        """Apply one resolution to its event, cascade targets and the global state.

        Either every row in the batch is written or none is.
        """

        now = now or datetime.now(timezone.utc)
        source = self.get_event(event_id)
        if source is None:
            raise ValueError(f"unknown timeline event {event_id!r}")
        lock_ids = [event_id] + [effect.target_event_id for effect in source.cascade_effects]
        retries = max(1, self._settings.store_max_retries)

        for attempt in range(1, retries + 1):
            with self._locked(lock_ids):
                with closing(sqlite3.connect(self._db_path, isolation_level=None)) as conn:
                    events = self._read_events(conn)
                    state = self._read_state(conn)
                    recent = self._recent_successes(conn, now)
                    if resolution.overall_success:
                        recent += 1
                    update = timeline.apply_resolution(
                        events[event_id], resolution, events, state, recent, now, self._settings
                    )
                    if self._commit(conn, update, events, state, deployment_id, approach, resolution, now):
                        self._report(update)
                        return update
            logger.warning(
                "Version conflict applying resolution to %s (attempt %d/%d)",
                event_id,
                attempt,
                retries,
            )
        get_telemetry().track_error("store_conflict", operation="apply_resolution")
        raise StoreConflictError(
            f"could not commit resolution for {event_id!r} after {retries} attempts"
        )

    def _commit(
        self,
        conn: sqlite3.Connection,
        update: TimelineUpdate,
        originals: Mapping[str, TimelineEvent],
        state: GlobalTimelineState,
        deployment_id: Optional[str],
        approach: Optional[str],
        resolution: Resolution,
        now: datetime,
    ) -> bool:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for record in [update.event, *update.cascade_targets]:
                cursor = conn.execute(
                    "UPDATE timeline_events SET data = ?, version = ? WHERE id = ? AND version = ?",
                    (
                        json.dumps(record.to_dict()),
                        record.version,
                        record.id,
                        originals[record.id].version,
                    ),
                )
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return False
            cursor = conn.execute(
                "UPDATE global_state SET data = ?, version = ? WHERE singleton = 1 AND version = ?",
                (json.dumps(update.global_state.to_dict()), update.global_state.version, state.version),
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                return False
            if deployment_id is not None:
                conn.execute(
                    """
                    INSERT INTO resolutions
                        (deployment_id, event_id, approach, success, timeline_shift, applied_at, payload)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        deployment_id,
                        update.event.id,
                        approach,
                        int(resolution.overall_success),
                        resolution.timeline_shift,
                        now.isoformat(),
                        json.dumps(resolution.to_dict()),
                    ),
                )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        return True

    def _report(self, update: TimelineUpdate) -> None:
        telemetry = get_telemetry()
        telemetry.track_timeline_update(
            update.event.id,
            update.event.green_loom_probability,
            update.global_state.global_green_loom_probability,
            cascades=len(update.applied_cascades),
        )
        for cascade in update.applied_cascades:
            telemetry.track_cascade(
                cascade.source_event_id,
                cascade.target_event_id,
                cascade.kind.value,
                cascade.magnitude,
            )
        logger.info(
            "Applied resolution to %s: green loom %.3f%%, global %.3f%%, %d cascades",
            update.event.id,
            update.event.green_loom_probability,
            update.global_state.global_green_loom_probability,
            len(update.applied_cascades),
        )

    def record_daily_snapshot(self, now: Optional[datetime] = None) -> GlobalTimelineState:
        now = now or datetime.now(timezone.utc)
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        retries = max(1, self._settings.store_max_retries)
        for _ in range(retries):
            with self._global_lock:
                with closing(sqlite3.connect(self._db_path)) as conn:
                    state = self._read_state(conn)
                    completed = conn.execute(
                        "SELECT COUNT(*) FROM resolutions WHERE applied_at >= ? AND applied_at < ?",
                        (day.isoformat(), (day + timedelta(days=1)).isoformat()),
                    ).fetchone()[0]
                    updated = timeline.record_snapshot(state, int(completed), now, self._settings)
                    cursor = conn.execute(
                        "UPDATE global_state SET data = ?, version = ? WHERE singleton = 1 AND version = ?",
                        (json.dumps(updated.to_dict()), updated.version, state.version),
                    )
                    conn.commit()
                    if cursor.rowcount == 1:
                        logger.info(
                            "Recorded daily snapshot for %s (%d missions)", day.date(), completed
                        )
                        return updated
        raise StoreConflictError("could not record daily snapshot")

    def register_convergence_participation(
        self, event_id: str, agent_id: str, now: Optional[datetime] = None
    ) -> ConvergenceEvent:
        now = now or datetime.now(timezone.utc)
        retries = max(1, self._settings.store_max_retries)
        for attempt in range(1, retries + 1):
            with self._global_lock:
                with closing(sqlite3.connect(self._db_path)) as conn:
                    event = self._read_events(conn).get(event_id)
                    if event is None:
                        raise ValueError(f"unknown timeline event {event_id!r}")
                    state = self._read_state(conn)
                    updated, entry = timeline.register_convergence_participation(
                        event, state, agent_id, now
                    )
                    cursor = conn.execute(
                        "UPDATE global_state SET data = ?, version = ? WHERE singleton = 1 AND version = ?",
                        (json.dumps(updated.to_dict()), updated.version, state.version),
                    )
                    conn.commit()
                    if cursor.rowcount == 1:
                        logger.info(
                            "Agent %s joined convergence %s (%d/%d, %s)",
                            agent_id,
                            event_id,
                            entry.current_participants,
                            entry.required_agents,
                            entry.status.value,
                        )
                        return entry
            logger.warning(
                "Version conflict registering %s for %s (attempt %d/%d)",
                agent_id,
                event_id,
                attempt,
                retries,
            )
        get_telemetry().track_error("store_conflict", operation="convergence")
        raise StoreConflictError(f"could not register {agent_id} for {event_id}")

    def convergence_events(self) -> List[ConvergenceEvent]:
        return list(self.global_state().convergence_events)

    # Deployments -------------------------------------------------------
    def save_deployment(self, deployment: Deployment) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                """
                INSERT INTO deployments
                    (id, agent_id, template_id, status, completes_at, applied, data, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    completes_at = excluded.completes_at,
                    applied = excluded.applied,
                    data = excluded.data,
                    version = deployments.version + 1
                """,
                (
                    deployment.id,
                    deployment.agent_id,
                    deployment.template_id,
                    deployment.status.value,
                    deployment.completes_at.isoformat(),
                    int(deployment.applied),
                    json.dumps(deployment.to_dict()),
                ),
            )
            conn.commit()

    def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT data FROM deployments WHERE id = ?", (deployment_id,)
            ).fetchone()
        if row is None:
            return None
        return Deployment.from_dict(json.loads(row[0]))

    def due_deployments(self, now: datetime) -> List[Deployment]:
        """Deployments whose clock has run out but whose outcome is not yet applied."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                """
                SELECT data FROM deployments
                WHERE applied = 0 AND status != ? AND completes_at <= ?
                ORDER BY completes_at
                """,
                (DeploymentStatus.ABANDONED.value, now.isoformat()),
            ).fetchall()
        return [Deployment.from_dict(json.loads(row[0])) for row in rows]

    def deployments_for_agent(self, agent_id: str) -> List[Deployment]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT data FROM deployments WHERE agent_id = ? ORDER BY completes_at",
                (agent_id,),
            ).fetchall()
        return [Deployment.from_dict(json.loads(row[0])) for row in rows]


__all__ = ["TimelineStore", "load_timeline_events"]
