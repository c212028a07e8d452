"""Staged reveal of pre-computed phases.

Outcomes are fixed when a deployment starts; these helpers decide how much
of them a caller may see at a given moment.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from .models import Deployment, DeploymentStatus, Phase, Resolution


@dataclass
class MissionProgress:
    deployment_id: str
    status: DeploymentStatus
    total_phases: int
    revealed_phases: List[Phase] = field(default_factory=list)
    next_reveal_at: Optional[datetime] = None
    percent: float = 0.0
    time_remaining_ms: int = 0
    resolution: Optional[Resolution] = None

    @property
    def revealed_count(self) -> int:
        return len(self.revealed_phases)

    def to_dict(self) -> dict:
        return {
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "total_phases": self.total_phases,
            "revealed_phases": [phase.to_dict() for phase in self.revealed_phases],
            "next_reveal_at": self.next_reveal_at.isoformat() if self.next_reveal_at else None,
            "percent": self.percent,
            "time_remaining_ms": self.time_remaining_ms,
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }


def revealed_phases(phases: Sequence[Phase], now: datetime) -> List[Phase]:
    return [phase for phase in phases if phase.reveal_at <= now]


def next_reveal_time(phases: Sequence[Phase], now: datetime) -> Optional[datetime]:
    pending = [phase.reveal_at for phase in phases if phase.reveal_at > now]
    return min(pending) if pending else None


def progress_percent(deployment: Deployment, now: datetime) -> float:
    if deployment.duration_ms <= 0:
        return 100.0
    elapsed = (now - deployment.deployed_at).total_seconds() * 1000
    return max(0.0, min(100.0, 100.0 * elapsed / deployment.duration_ms))


def mission_progress(deployment: Deployment, now: datetime) -> MissionProgress:
    """Snapshot of what the player may see of ``deployment`` at ``now``.

    An abandoned deployment reveals nothing further. The final resolution is
    only attached once the deployment reached a completed or failed status.
    """

    if deployment.status is DeploymentStatus.ABANDONED:
        cutoff = deployment.completed_at or now
        shown = revealed_phases(deployment.phases, min(cutoff, now))
        return MissionProgress(
            deployment_id=deployment.id,
            status=deployment.status,
            total_phases=len(deployment.phases),
            revealed_phases=shown,
            percent=progress_percent(deployment, min(cutoff, now)),
        )

    finished = deployment.status in (DeploymentStatus.COMPLETED, DeploymentStatus.FAILED)
    remaining = (deployment.completes_at - now).total_seconds() * 1000
    return MissionProgress(
        deployment_id=deployment.id,
        status=deployment.status,
        total_phases=len(deployment.phases),
        revealed_phases=list(deployment.phases) if finished else revealed_phases(deployment.phases, now),
        next_reveal_at=None if finished else next_reveal_time(deployment.phases, now),
        percent=100.0 if finished else progress_percent(deployment, now),
        time_remaining_ms=0 if finished else max(0, int(remaining)),
        resolution=deployment.resolution if finished else None,
    )


__all__ = [
    "MissionProgress",
    "mission_progress",
    "next_reveal_time",
    "progress_percent",
    "revealed_phases",
]
