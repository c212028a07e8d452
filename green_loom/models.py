"""Core data models for the Green Loom engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DeploymentStatus(str, Enum):
    PREPARING = "preparing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED, DeploymentStatus.ABANDONED}
)
FINISHED_STATUSES = frozenset({DeploymentStatus.COMPLETED, DeploymentStatus.FAILED})


class CanonicalStatus(str, Enum):
    PENDING = "pending"
    CONTESTED = "contested"
    GREEN_LOOM = "green_loom"
    ONEIROCOM = "oneirocom"


class ThreatLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class CascadeKind(str, Enum):
    DIFFICULTY = "difficulty"
    PROBABILITY = "probability"
    UNLOCK = "unlock"
    LOCK = "lock"


class Faction(str, Enum):
    GREEN_LOOM = "green_loom"
    ONEIROCOM = "oneirocom"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_ORDER = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


class MomentumTrend(str, Enum):
    DECLINING = "declining"
    STABLE = "stable"
    RISING = "rising"


class ConvergenceStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Reference data -----------------------------------------------------------


@dataclass(frozen=True)
class YearRange:
    start: int
    end: int

    @staticmethod
    def parse(text: Any) -> "YearRange":
        """Parse ``"2041"`` or ``"2025-2030"`` into an inclusive range."""

        raw = str(text).strip()
        if "-" in raw:
            start, end = (int(part) for part in raw.split("-", 1))
        else:
            start = end = int(raw)
        if start > end:
            start, end = end, start
        return YearRange(start, end)

    def contains(self, year: int) -> bool:
        return self.start <= year <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class Coordinator:
    id: str
    name: str
    description: str
    specialty: str
    strong_suit: FrozenSet[str]
    weakness: FrozenSet[str]
    neutral: FrozenSet[str]
    optimal_periods: Tuple[YearRange, ...]
    challenging_periods: Tuple[YearRange, ...]
    tech: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    def tech_for(self, key: str, fallback: str = "adaptive quantum systems") -> str:
        return self.tech.get(key, fallback)


@dataclass(frozen=True)
class RateRange:
    min: float
    max: float

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2


@dataclass(frozen=True)
class RewardSchedule:
    timeline_points: Optional[int] = None
    experience: Optional[int] = None


@dataclass(frozen=True)
class ApproachVariant:
    name: str
    success_rate: RateRange
    timeline_shift: RateRange
    duration_ms: int
    rewards: Optional[RewardSchedule] = None
    description: str = ""


@dataclass(frozen=True)
class PhaseTemplate:
    index: int
    name: str
    tech_key: str
    success: Tuple[str, ...]
    failure: Tuple[str, ...]

    def variants(self, success: bool) -> Tuple[str, ...]:
        return self.success if success else self.failure


@dataclass(frozen=True)
class MissionTemplate:
    id: str
    name: str
    category: str
    approaches: Mapping[str, ApproachVariant] = field(compare=False, hash=False)
    phases: Tuple[PhaseTemplate, ...]
    primary_approach: Optional[str] = None
    year: Optional[int] = None
    location: Optional[str] = None
    event_id: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @property
    def mission_type(self) -> str:
        return self.primary_approach or self.category or "general"


@dataclass
class Agent:
    """A deployable Proxim8 as seen by the engine."""

    id: str
    name: str
    personality: str = "adaptive"
    experience: int = 0
    level: int = 1


@dataclass(frozen=True)
class TimelineNode:
    year: int
    month: Optional[int] = None
    day: Optional[int] = None
    event_id: Optional[str] = None


# Coordinator outputs ------------------------------------------------------


@dataclass(frozen=True)
class RiskProfile:
    risk: RiskLevel
    success_rate: float
    reward_multiplier: float


@dataclass
class CoordinatorInfluence:
    primary: str
    opposing: str
    synergy: float
    resistance: float
    alignment: float
    risk: RiskLevel
    secondary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "secondary": self.secondary,
            "opposing": self.opposing,
            "synergy": self.synergy,
            "resistance": self.resistance,
            "alignment": self.alignment,
            "risk": self.risk.value,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CoordinatorInfluence":
        return CoordinatorInfluence(
            primary=data["primary"],
            secondary=data.get("secondary"),
            opposing=data["opposing"],
            synergy=float(data["synergy"]),
            resistance=float(data["resistance"]),
            alignment=float(data["alignment"]),
            risk=RiskLevel(data["risk"]),
        )


@dataclass
class CoordinatorProfile:
    coordinator: str
    risk: RiskLevel
    base_success_rate: float
    reward_multiplier: float
    description: str
    opposing_forces: List[str] = field(default_factory=list)


# Resolution outputs -------------------------------------------------------


@dataclass
class Phase:
    id: int
    name: str
    success: bool
    narrative: str
    reveal_at: datetime
    critical: bool = False
    success_probability: float = 0.0
    cascading: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "success": self.success,
            "narrative": self.narrative,
            "reveal_at": _iso(self.reveal_at),
            "critical": self.critical,
            "success_probability": self.success_probability,
            "cascading": self.cascading,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Phase":
        return Phase(
            id=int(data["id"]),
            name=data["name"],
            success=bool(data["success"]),
            narrative=data["narrative"],
            reveal_at=_parse(data["reveal_at"]),
            critical=bool(data.get("critical", False)),
            success_probability=float(data.get("success_probability", 0.0)),
            cascading=bool(data.get("cascading", False)),
        )


@dataclass
class Rewards:
    timeline_points: int
    experience: int
    lore_fragments: List[str] = field(default_factory=list)
    memory_caches: List[str] = field(default_factory=list)
    achievements: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeline_points": self.timeline_points,
            "experience": self.experience,
            "lore_fragments": list(self.lore_fragments),
            "memory_caches": list(self.memory_caches),
            "achievements": list(self.achievements),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Rewards":
        return Rewards(
            timeline_points=int(data["timeline_points"]),
            experience=int(data["experience"]),
            lore_fragments=list(data.get("lore_fragments", [])),
            memory_caches=list(data.get("memory_caches", [])),
            achievements=list(data.get("achievements", [])),
        )


@dataclass
class Resolution:
    phases: List[Phase]
    overall_success: bool
    successful_phases: int
    timeline_shift: float
    influence_type: Faction
    rewards: Rewards
    final_narrative: str
    coordinator_influence: CoordinatorInfluence
    coordinator_lore: str
    base_success_rate: float
    modified_success_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [phase.to_dict() for phase in self.phases],
            "overall_success": self.overall_success,
            "successful_phases": self.successful_phases,
            "timeline_shift": self.timeline_shift,
            "influence_type": self.influence_type.value,
            "rewards": self.rewards.to_dict(),
            "final_narrative": self.final_narrative,
            "coordinator_influence": self.coordinator_influence.to_dict(),
            "coordinator_lore": self.coordinator_lore,
            "base_success_rate": self.base_success_rate,
            "modified_success_rate": self.modified_success_rate,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Resolution":
        return Resolution(
            phases=[Phase.from_dict(entry) for entry in data["phases"]],
            overall_success=bool(data["overall_success"]),
            successful_phases=int(data["successful_phases"]),
            timeline_shift=float(data["timeline_shift"]),
            influence_type=Faction(data["influence_type"]),
            rewards=Rewards.from_dict(data["rewards"]),
            final_narrative=data["final_narrative"],
            coordinator_influence=CoordinatorInfluence.from_dict(data["coordinator_influence"]),
            coordinator_lore=data["coordinator_lore"],
            base_success_rate=float(data["base_success_rate"]),
            modified_success_rate=float(data["modified_success_rate"]),
        )


@dataclass
class Deployment:
    """A mission run: one agent, one template, one approach."""

    id: str
    template_id: str
    approach: str
    agent_id: str
    agent_name: str
    deployed_at: datetime
    duration_ms: int
    status: DeploymentStatus = DeploymentStatus.PREPARING
    coordinator_id: Optional[str] = None
    timeline_event_id: Optional[str] = None
    rng_seed: Optional[int] = None
    phases: List[Phase] = field(default_factory=list)
    resolution: Optional[Resolution] = None
    completed_at: Optional[datetime] = None
    applied: bool = False

    @property
    def completes_at(self) -> datetime:
        return self.deployed_at + timedelta(milliseconds=self.duration_ms)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "approach": self.approach,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "deployed_at": _iso(self.deployed_at),
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "coordinator_id": self.coordinator_id,
            "timeline_event_id": self.timeline_event_id,
            "rng_seed": self.rng_seed,
            "phases": [phase.to_dict() for phase in self.phases],
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "completed_at": _iso(self.completed_at),
            "applied": self.applied,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Deployment":
        resolution = data.get("resolution")
        return Deployment(
            id=data["id"],
            template_id=data["template_id"],
            approach=data["approach"],
            agent_id=data["agent_id"],
            agent_name=data["agent_name"],
            deployed_at=_parse(data["deployed_at"]),
            duration_ms=int(data["duration_ms"]),
            status=DeploymentStatus(data["status"]),
            coordinator_id=data.get("coordinator_id"),
            timeline_event_id=data.get("timeline_event_id"),
            rng_seed=data.get("rng_seed"),
            phases=[Phase.from_dict(entry) for entry in data.get("phases", [])],
            resolution=Resolution.from_dict(resolution) if resolution else None,
            completed_at=_parse(data.get("completed_at")),
            applied=bool(data.get("applied", False)),
        )


# Timeline state -----------------------------------------------------------


@dataclass
class CascadeEffect:
    target_event_id: str
    kind: CascadeKind
    magnitude: float
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_event_id": self.target_event_id,
            "kind": self.kind.value,
            "magnitude": self.magnitude,
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CascadeEffect":
        return CascadeEffect(
            target_event_id=data["target_event_id"],
            kind=CascadeKind(data["kind"]),
            magnitude=float(data.get("magnitude", 0)),
            description=data.get("description", ""),
        )


@dataclass
class TimelineEvent:
    id: str
    title: str
    year: int
    threat_level: ThreatLevel = ThreatLevel.MODERATE
    green_loom_probability: float = 15.0
    oneirocom_probability: float = 85.0
    base_difficulty: float = 5
    total_interventions: int = 0
    successful_interventions: int = 0
    canonical_status: CanonicalStatus = CanonicalStatus.PENDING
    cascade_effects: List[CascadeEffect] = field(default_factory=list)
    locked_until: Optional[datetime] = None
    required_green_loom_probability: Optional[float] = None
    last_intervention_at: Optional[datetime] = None
    is_convergence_event: bool = False
    convergence_threshold: Optional[int] = None
    version: int = 0

    @property
    def success_rate(self) -> int:
        """Whole-percent share of successful interventions."""

        if self.total_interventions <= 0:
            return 0
        return int(round(self.successful_interventions / self.total_interventions * 100))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "threat_level": self.threat_level.value,
            "green_loom_probability": self.green_loom_probability,
            "oneirocom_probability": self.oneirocom_probability,
            "base_difficulty": self.base_difficulty,
            "total_interventions": self.total_interventions,
            "successful_interventions": self.successful_interventions,
            "canonical_status": self.canonical_status.value,
            "cascade_effects": [effect.to_dict() for effect in self.cascade_effects],
            "locked_until": _iso(self.locked_until),
            "required_green_loom_probability": self.required_green_loom_probability,
            "last_intervention_at": _iso(self.last_intervention_at),
            "is_convergence_event": self.is_convergence_event,
            "convergence_threshold": self.convergence_threshold,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "TimelineEvent":
        green = float(data.get("green_loom_probability", 15.0))
        required = data.get("required_green_loom_probability")
        threshold = data.get("convergence_threshold")
        return TimelineEvent(
            id=data["id"],
            title=data.get("title", data["id"]),
            year=int(data["year"]),
            threat_level=ThreatLevel(data.get("threat_level", "moderate")),
            green_loom_probability=green,
            oneirocom_probability=float(data.get("oneirocom_probability", 100.0 - green)),
            base_difficulty=float(data.get("base_difficulty", 5)),
            total_interventions=int(data.get("total_interventions", 0)),
            successful_interventions=int(data.get("successful_interventions", 0)),
            canonical_status=CanonicalStatus(data.get("canonical_status", "pending")),
            cascade_effects=[
                CascadeEffect.from_dict(entry) for entry in data.get("cascade_effects", [])
            ],
            locked_until=_parse(data.get("locked_until")),
            required_green_loom_probability=float(required) if required is not None else None,
            last_intervention_at=_parse(data.get("last_intervention_at")),
            is_convergence_event=bool(data.get("is_convergence_event", False)),
            convergence_threshold=int(threshold) if threshold is not None else None,
            version=int(data.get("version", 0)),
        )


@dataclass
class PeriodProbability:
    name: str
    start_year: int
    end_year: int
    green_loom_probability: float
    oneirocom_probability: float
    total_events: int = 0
    disrupted_events: int = 0
    contested_events: int = 0


@dataclass
class Momentum:
    current: int = 0
    trend: MomentumTrend = MomentumTrend.STABLE
    last_updated: Optional[datetime] = None


@dataclass
class ActiveCascade:
    source_event_id: str
    target_event_id: str
    kind: CascadeKind
    magnitude: float
    expires_at: datetime


@dataclass
class DailySnapshot:
    date: datetime
    green_loom_probability: float
    missions_completed: int


@dataclass
class ConvergenceEvent:
    """Participation tally for an event that needs several agents at once."""

    event_id: str
    event_name: str
    required_agents: int
    participants: List[str] = field(default_factory=list)
    status: ConvergenceStatus = ConvergenceStatus.UPCOMING
    outcome: Optional[Faction] = None
    activated_at: Optional[datetime] = None

    @property
    def current_participants(self) -> int:
        return len(self.participants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_name": self.event_name,
            "required_agents": self.required_agents,
            "participants": list(self.participants),
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "activated_at": _iso(self.activated_at),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ConvergenceEvent":
        outcome = data.get("outcome")
        return ConvergenceEvent(
            event_id=data["event_id"],
            event_name=data.get("event_name", data["event_id"]),
            required_agents=int(data["required_agents"]),
            participants=list(data.get("participants", [])),
            status=ConvergenceStatus(data.get("status", "upcoming")),
            outcome=Faction(outcome) if outcome else None,
            activated_at=_parse(data.get("activated_at")),
        )


@dataclass
class GlobalTimelineState:
    global_green_loom_probability: float = 15.0
    global_oneirocom_probability: float = 85.0
    periods: List[PeriodProbability] = field(default_factory=list)
    momentum: Momentum = field(default_factory=Momentum)
    active_cascades: List[ActiveCascade] = field(default_factory=list)
    total_missions_deployed: int = 0
    total_missions_succeeded: int = 0
    total_timeline_shift: float = 0.0
    daily_snapshots: List[DailySnapshot] = field(default_factory=list)
    convergence_events: List[ConvergenceEvent] = field(default_factory=list)
    last_calculated_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global_green_loom_probability": self.global_green_loom_probability,
            "global_oneirocom_probability": self.global_oneirocom_probability,
            "periods": [
                {
                    "name": period.name,
                    "start_year": period.start_year,
                    "end_year": period.end_year,
                    "green_loom_probability": period.green_loom_probability,
                    "oneirocom_probability": period.oneirocom_probability,
                    "total_events": period.total_events,
                    "disrupted_events": period.disrupted_events,
                    "contested_events": period.contested_events,
                }
                for period in self.periods
            ],
            "momentum": {
                "current": self.momentum.current,
                "trend": self.momentum.trend.value,
                "last_updated": _iso(self.momentum.last_updated),
            },
            "active_cascades": [
                {
                    "source_event_id": cascade.source_event_id,
                    "target_event_id": cascade.target_event_id,
                    "kind": cascade.kind.value,
                    "magnitude": cascade.magnitude,
                    "expires_at": _iso(cascade.expires_at),
                }
                for cascade in self.active_cascades
            ],
            "total_missions_deployed": self.total_missions_deployed,
            "total_missions_succeeded": self.total_missions_succeeded,
            "total_timeline_shift": self.total_timeline_shift,
            "daily_snapshots": [
                {
                    "date": _iso(snapshot.date),
                    "green_loom_probability": snapshot.green_loom_probability,
                    "missions_completed": snapshot.missions_completed,
                }
                for snapshot in self.daily_snapshots
            ],
            "convergence_events": [entry.to_dict() for entry in self.convergence_events],
            "last_calculated_at": _iso(self.last_calculated_at),
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "GlobalTimelineState":
        momentum = data.get("momentum", {})
        return GlobalTimelineState(
            global_green_loom_probability=float(data.get("global_green_loom_probability", 15.0)),
            global_oneirocom_probability=float(data.get("global_oneirocom_probability", 85.0)),
            periods=[PeriodProbability(**entry) for entry in data.get("periods", [])],
            momentum=Momentum(
                current=int(momentum.get("current", 0)),
                trend=MomentumTrend(momentum.get("trend", "stable")),
                last_updated=_parse(momentum.get("last_updated")),
            ),
            active_cascades=[
                ActiveCascade(
                    source_event_id=entry["source_event_id"],
                    target_event_id=entry["target_event_id"],
                    kind=CascadeKind(entry["kind"]),
                    magnitude=float(entry["magnitude"]),
                    expires_at=_parse(entry["expires_at"]),
                )
                for entry in data.get("active_cascades", [])
            ],
            total_missions_deployed=int(data.get("total_missions_deployed", 0)),
            total_missions_succeeded=int(data.get("total_missions_succeeded", 0)),
            total_timeline_shift=float(data.get("total_timeline_shift", 0.0)),
            daily_snapshots=[
                DailySnapshot(
                    date=_parse(entry["date"]),
                    green_loom_probability=float(entry["green_loom_probability"]),
                    missions_completed=int(entry.get("missions_completed", 0)),
                )
                for entry in data.get("daily_snapshots", [])
            ],
            convergence_events=[
                ConvergenceEvent.from_dict(entry) for entry in data.get("convergence_events", [])
            ],
            last_calculated_at=_parse(data.get("last_calculated_at")),
            version=int(data.get("version", 0)),
        )


@dataclass
class TimelineUpdate:
    """Batch produced by applying one resolution to the timeline."""

    event: TimelineEvent
    cascade_targets: List[TimelineEvent]
    global_state: GlobalTimelineState
    applied_cascades: List[ActiveCascade] = field(default_factory=list)


__all__ = [
    "ActiveCascade",
    "Agent",
    "ApproachVariant",
    "CanonicalStatus",
    "CascadeEffect",
    "CascadeKind",
    "ConvergenceEvent",
    "ConvergenceStatus",
    "Coordinator",
    "CoordinatorInfluence",
    "CoordinatorProfile",
    "DailySnapshot",
    "Deployment",
    "DeploymentStatus",
    "FINISHED_STATUSES",
    "Faction",
    "GlobalTimelineState",
    "MissionTemplate",
    "Momentum",
    "MomentumTrend",
    "PeriodProbability",
    "Phase",
    "PhaseTemplate",
    "RateRange",
    "Resolution",
    "RewardSchedule",
    "Rewards",
    "RISK_ORDER",
    "RiskLevel",
    "RiskProfile",
    "TERMINAL_STATUSES",
    "ThreatLevel",
    "TimelineEvent",
    "TimelineNode",
    "TimelineUpdate",
    "YearRange",
]
