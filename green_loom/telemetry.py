"""Telemetry for mission resolution and timeline bookkeeping."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TELEMETRY_DB_ENV = "GREEN_LOOM_TELEMETRY_DB"


class MetricType(Enum):
    """Types of metrics tracked."""
    RESOLUTION = "resolution"
    TIMELINE_UPDATE = "timeline_update"
    CASCADE = "cascade"
    INVARIANT = "invariant"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Buffers metric events and writes them to sqlite."""

    def __init__(self, db_path: Optional[Path] = None):
        env_path = os.getenv(TELEMETRY_DB_ENV)
        self.db_path = db_path or Path(env_path or "telemetry.db")
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60
        self._last_flush = time.time()

    def _init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name, timestamp)
            """)
            conn.commit()

    def track_resolution(
        self,
        template_id: str,
        approach: str,
        coordinator: str,
        successful_phases: int,
        overall_success: bool,
        timeline_shift: float,
    ):
        """Track a resolved deployment."""
        self.record(
            MetricType.RESOLUTION,
            template_id,
            float(successful_phases),
            tags={
                "approach": approach,
                "coordinator": coordinator,
                "success": str(overall_success),
            },
            metadata={"timeline_shift": timeline_shift},
        )

    def track_timeline_update(
        self,
        event_id: str,
        green_loom_probability: float,
        global_green_loom_probability: float,
        cascades: int = 0,
    ):
        self.record(
            MetricType.TIMELINE_UPDATE,
            event_id,
            green_loom_probability,
            metadata={
                "global_green_loom_probability": global_green_loom_probability,
                "cascades": cascades,
            },
        )

    def track_cascade(self, source_event_id: str, target_event_id: str, kind: str, magnitude: float):
        self.record(
            MetricType.CASCADE,
            kind,
            magnitude,
            tags={"source": source_event_id, "target": target_event_id},
        )

    def track_invariant(self, message: str, strict: bool):
        """Track an invariant violation, whether raised or clamped."""
        self.record(
            MetricType.INVARIANT,
            "violation",
            1.0,
            tags={"strict": str(strict)},
            metadata={"message": message},
        )

    def track_error(
        self,
        error_type: str,
        operation: Optional[str] = None,
        error_details: Optional[str] = None,
    ):
        """Track errors and failures."""
        tags = {"operation": operation} if operation else {}
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_system_event(self, event: str, source: Optional[str] = None, reason: Optional[str] = None):
        tags = {"source": source} if source else {}
        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata={"reason": reason} if reason else {},
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )
        self._metrics_buffer.append(event)

        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.executemany(
                    """
                    INSERT INTO metrics (timestamp, metric_type, name, value, tags, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            event.timestamp,
                            event.metric_type.value,
                            event.name,
                            event.value,
                            json.dumps(event.tags),
                            json.dumps(event.metadata),
                        )
                        for event in self._metrics_buffer
                    ],
                )
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to flush %d metrics: %s", len(self._metrics_buffer), exc)
            return

        logger.debug("Flushed %d metrics to database", len(self._metrics_buffer))
        self._metrics_buffer.clear()
        self._last_flush = time.time()

    def get_resolution_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Resolution counts, success rate and mean phases per approach."""
        self.flush()
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT tags, value FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                """,
                (MetricType.RESOLUTION.value, start_time),
            ).fetchall()

        by_approach: Dict[str, Dict[str, float]] = {}
        successes = 0
        for tags_json, value in rows:
            tags = json.loads(tags_json or "{}")
            approach = tags.get("approach", "unknown")
            bucket = by_approach.setdefault(approach, {"count": 0, "successes": 0, "phases": 0.0})
            bucket["count"] += 1
            bucket["phases"] += value
            if tags.get("success") == "True":
                bucket["successes"] += 1
                successes += 1

        for bucket in by_approach.values():
            bucket["mean_phases"] = bucket.pop("phases") / bucket["count"]
        total = len(rows)
        return {
            "total": total,
            "success_rate": successes / total if total else 0.0,
            "by_approach": by_approach,
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info("Cleaned up %d old metric events", deleted)
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


def reset_telemetry() -> None:
    """Drop the singleton so the next call re-reads the environment."""
    global _telemetry
    if _telemetry is not None:
        _telemetry.flush()
    _telemetry = None


class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)

        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                operation=self.operation,
                error_details=str(exc_val)
            )


__all__ = [
    "MetricEvent",
    "MetricType",
    "TelemetryCollector",
    "get_telemetry",
    "reset_telemetry",
    "track_duration",
]
