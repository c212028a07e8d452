"""Coordinator alignment scoring, risk tiers and mission influence."""
from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from .config import Settings, get_settings
from .coordinators import CoordinatorRegistry, default_registry
from .models import (
    FINISHED_STATUSES,
    RISK_ORDER,
    Coordinator,
    CoordinatorInfluence,
    CoordinatorProfile,
    MissionTemplate,
    RiskLevel,
    RiskProfile,
    TimelineNode,
)
from .rng import RandomSource

logger = logging.getLogger(__name__)

_RISK_DESCRIPTIONS = {
    RiskLevel.LOW: "Optimal alignment - High success probability with standard rewards",
    RiskLevel.MEDIUM: "Challenging approach - Moderate success rate with enhanced rewards",
    RiskLevel.HIGH: "High-risk gambit - Low success probability but maximum reward potential",
}


def _influence_of(entry: Any) -> Optional[CoordinatorInfluence]:
    """Pull a coordinator influence out of a history entry.

    Accepts influences directly, resolutions, or deployments carrying a
    resolution. Deployments count only once finished; one still running or
    abandoned contributes nothing, as does anything else.
    """

    if isinstance(entry, CoordinatorInfluence):
        return entry
    status = getattr(entry, "status", None)
    if status is not None and status not in FINISHED_STATUSES:
        return None
    influence = getattr(entry, "coordinator_influence", None)
    if isinstance(influence, CoordinatorInfluence):
        return influence
    resolution = getattr(entry, "resolution", None)
    if resolution is not None:
        return _influence_of(resolution)
    return None


class AlignmentScorer:
    """Scores coordinators against missions and derives their influence."""

    def __init__(
        self,
        registry: CoordinatorRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry or default_registry()
        self._settings = settings or get_settings()

    @property
    def registry(self) -> CoordinatorRegistry:
        return self._registry

    def mission_year(self, template: MissionTemplate, node: TimelineNode | None) -> int:
        if node is not None and node.year:
            return node.year
        if template.year:
            return template.year
        return self._settings.default_year

    def alignment_score(self, coordinator: Coordinator, mission_type: str, year: int) -> float:
        s = self._settings
        score = s.alignment_base
        if mission_type in coordinator.strong_suit:
            score += s.alignment_strong_bonus
        elif mission_type in coordinator.weakness:
            score -= s.alignment_weak_penalty
        for period in coordinator.optimal_periods:
            if period.contains(year):
                score += s.alignment_optimal_bonus
        for period in coordinator.challenging_periods:
            if period.contains(year):
                score -= s.alignment_challenging_penalty
        # Rounded so that tier boundaries are not decided by float noise.
        score = round(score, 6)
        return max(s.alignment_floor, min(s.alignment_ceiling, score))

    def risk_profile(self, alignment: float) -> RiskProfile:
        for tier in self._settings.risk_tiers:
            if alignment >= float(tier["min_alignment"]):
                return RiskProfile(
                    risk=RiskLevel(tier["risk"]),
                    success_rate=float(tier["success_rate"]),
                    reward_multiplier=float(tier["reward_multiplier"]),
                )
        lowest = self._settings.risk_tiers[-1]
        return RiskProfile(
            risk=RiskLevel(lowest["risk"]),
            success_rate=float(lowest["success_rate"]),
            reward_multiplier=float(lowest["reward_multiplier"]),
        )

    def opposing_coordinators(self, coordinator_id: str) -> List[str]:
        chosen = self._registry.get(coordinator_id)
        opposing = []
        for other in self._registry:
            if other.id == chosen.id:
                continue
            if other.weakness & chosen.strong_suit or chosen.weakness & other.strong_suit:
                opposing.append(other.id)
        return opposing

    def describe(self, coordinator: Coordinator, profile: RiskProfile) -> str:
        return (
            f"{coordinator.description}. {_RISK_DESCRIPTIONS[profile.risk]}. "
            f"This coordinator specializes in {coordinator.specialty.lower()}."
        )

    def available_coordinators(
        self, template: MissionTemplate, node: TimelineNode | None = None
    ) -> List[CoordinatorProfile]:
        """Every coordinator's profile for this mission, lowest risk first.

        The sort is stable, so coordinators sharing a tier keep registry order.
        """

        mission_type = template.mission_type
        year = self.mission_year(template, node)
        profiles = []
        for coordinator in self._registry:
            alignment = self.alignment_score(coordinator, mission_type, year)
            risk = self.risk_profile(alignment)
            profiles.append(
                CoordinatorProfile(
                    coordinator=coordinator.id,
                    risk=risk.risk,
                    base_success_rate=risk.success_rate,
                    reward_multiplier=risk.reward_multiplier,
                    description=self.describe(coordinator, risk),
                    opposing_forces=self.opposing_coordinators(coordinator.id),
                )
            )
        return sorted(profiles, key=lambda profile: RISK_ORDER[profile.risk])

    def best_coordinator(self, template: MissionTemplate, node: TimelineNode | None = None) -> str:
        return self.available_coordinators(template, node)[0].coordinator

    def influence(
        self,
        coordinator_id: str,
        template: MissionTemplate,
        node: TimelineNode | None,
        rng: RandomSource,
    ) -> CoordinatorInfluence:
        coordinator = self._registry.get(coordinator_id)
        opposing = self.opposing_coordinators(coordinator_id)
        if opposing:
            opposing_id = opposing[0]
        else:
            others = [other for other in self._registry.ids() if other != coordinator_id]
            opposing_id = rng.choice(others) if others else coordinator_id
            logger.debug(
                "No natural opposition for %s, drew %s at random", coordinator_id, opposing_id
            )
        alignment = self.alignment_score(
            coordinator, template.mission_type, self.mission_year(template, node)
        )
        risk = self.risk_profile(alignment)
        return CoordinatorInfluence(
            primary=coordinator_id,
            secondary=None,
            opposing=opposing_id,
            synergy=risk.success_rate / self._settings.synergy_divisor,
            resistance=1.0 - (risk.success_rate - 0.5),
            alignment=alignment,
            risk=risk.risk,
        )

    def coordinator_experience(self, history: Iterable[Any] | None, coordinator_id: str) -> int:
        if not history:
            return 0
        count = 0
        for entry in history:
            influence = _influence_of(entry)
            if influence is None:
                continue
            if coordinator_id in (influence.primary, influence.secondary):
                count += 1
        return count

    def apply_influence(
        self,
        base_rate: float,
        influence: CoordinatorInfluence,
        history: Iterable[Any] | None = None,
    ) -> float:
        s = self._settings
        rate = base_rate * influence.synergy * influence.resistance
        prior = self.coordinator_experience(history, influence.primary)
        if prior:
            rate += min(s.experience_cap, prior * s.experience_per_mission)
        return max(s.influence_rate_floor, min(s.influence_rate_ceiling, rate))

    def coordinator_lore(self, influence: CoordinatorInfluence) -> str:
        primary = self._registry.get(influence.primary)
        opposing = self._registry.get(influence.opposing)
        return (
            f"Mission analysis indicates {primary.name} coordination protocols are optimal "
            f"for this operation. {primary.description}. However, {opposing.name} resistance "
            f"patterns may interfere with mission execution. Proxim8 deployment should "
            f"leverage {primary.specialty} while mitigating {opposing.specialty} complications."
        )


__all__ = ["AlignmentScorer"]
