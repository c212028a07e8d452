"""Mission resolution: coordinator influence, phase roll, shift, rewards."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .alignment import AlignmentScorer
from .config import Settings, get_settings
from .models import (
    Agent,
    Faction,
    MissionTemplate,
    Resolution,
    Rewards,
    TimelineNode,
)
from .narrative import NarrativeTable, default_narratives, render
from .phases import PhaseResolver
from .rng import RandomSource
from .templates import normalise_approach

logger = logging.getLogger(__name__)


class MissionResolutionService:
    """Turns a deployment request into a complete :class:`Resolution`.

    Resolution is a pure function of its inputs and the supplied random
    source; nothing here touches shared state.
    """

    def __init__(
        self,
        scorer: AlignmentScorer | None = None,
        phase_resolver: PhaseResolver | None = None,
        narratives: NarrativeTable | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._narratives = narratives or default_narratives()
        self._scorer = scorer or AlignmentScorer(settings=self._settings)
        self._phases = phase_resolver or PhaseResolver(
            narratives=self._narratives,
            registry=self._scorer.registry,
            settings=self._settings,
        )

    @property
    def scorer(self) -> AlignmentScorer:
        return self._scorer

    def resolve(
        self,
        template: MissionTemplate,
        approach: str,
        agent: Agent,
        node: TimelineNode | None,
        base_success_rate: float,
        rng: RandomSource,
        coordinator_id: Optional[str] = None,
        history: Iterable[Any] | None = None,
        deployed_at: Optional[datetime] = None,
        duration_ms: Optional[int] = None,
    ) -> Resolution:
        approach = normalise_approach(approach)
        if coordinator_id is None or coordinator_id not in self._scorer.registry:
            if coordinator_id is not None:
                logger.warning("Unknown coordinator %r, selecting best fit", coordinator_id)
            coordinator_id = self._scorer.best_coordinator(template, node)

        influence = self._scorer.influence(coordinator_id, template, node, rng)
        modified_rate = self._scorer.apply_influence(base_success_rate, influence, history)
        lore = self._scorer.coordinator_lore(influence)

        variant = template.approaches.get(approach)
        if duration_ms is None:
            duration_ms = variant.duration_ms if variant else 0
        deployed_at = deployed_at or datetime.now(timezone.utc)

        run = self._phases.resolve(
            template,
            approach,
            modified_rate,
            deployed_at,
            duration_ms,
            agent,
            influence,
            rng,
        )
        shift = self.timeline_shift(run.overall_success, run.successful_phases, approach, rng)
        rewards = self.calculate_rewards(
            template, approach, run.overall_success, run.successful_phases
        )
        narrative = self.final_narrative(
            template, agent, run.overall_success, run.successful_phases
        )
        logger.debug(
            "Resolved %s/%s with %s: %d/5 phases, shift %.4f",
            template.id,
            approach,
            coordinator_id,
            run.successful_phases,
            shift,
        )
        return Resolution(
            phases=run.phases,
            overall_success=run.overall_success,
            successful_phases=run.successful_phases,
            timeline_shift=shift,
            influence_type=Faction.GREEN_LOOM if run.overall_success else Faction.ONEIROCOM,
            rewards=rewards,
            final_narrative=narrative,
            coordinator_influence=influence,
            coordinator_lore=lore,
            base_success_rate=base_success_rate,
            modified_success_rate=modified_rate,
        )

    def timeline_shift(
        self, overall_success: bool, successful_phases: int, approach: str, rng: RandomSource
    ) -> float:
        s = self._settings
        if overall_success:
            shift = s.shift_success_base + successful_phases * s.shift_success_per_phase
        else:
            shift = successful_phases * s.shift_failure_per_phase
        shift *= s.shift_approach_factors.get(approach, 1.0)
        return shift * rng.uniform(s.shift_random_min, s.shift_random_max)

    def calculate_rewards(
        self,
        template: MissionTemplate,
        approach: str,
        overall_success: bool,
        successful_phases: int,
    ) -> Rewards:
        s = self._settings
        variant = template.approaches.get(approach)
        schedule = variant.rewards if variant else None
        if schedule is None:
            logger.warning(
                "Template %s has no reward schedule for %s, using defaults", template.id, approach
            )
        # a schedule may name only some fields; zero counts as unset
        base_points = (schedule and schedule.timeline_points) or s.reward_default_points
        base_experience = (schedule and schedule.experience) or s.reward_default_experience

        multiplier = (
            (s.reward_success_multiplier if overall_success else s.reward_failure_multiplier)
            * (1 + (successful_phases - 3) * s.reward_phase_bonus_step)
            * s.reward_approach_multipliers.get(approach, 1.0)
        )
        rewards = Rewards(
            timeline_points=max(0, math.floor(base_points * multiplier)),
            experience=max(0, math.floor(base_experience * multiplier)),
        )
        if overall_success:
            if successful_phases >= 4:
                rewards.lore_fragments.append(f"{template.name} Intelligence Archive")
            if successful_phases == 5:
                location = template.location or s.default_location
                rewards.memory_caches.append(f"{location} Tactical Data Cache")
                rewards.achievements.append("Perfect Execution")
            if approach == "aggressive":
                rewards.achievements.append("High Risk Success")
        if approach == "cautious" and successful_phases == 5:
            rewards.achievements.append("Flawless Stealth")
        return rewards

    def final_narrative(
        self,
        template: MissionTemplate,
        agent: Agent,
        overall_success: bool,
        successful_phases: int,
    ) -> str:
        text = self._narratives.final(overall_success, successful_phases)
        return render(
            text,
            {
                "agent": agent.name or self._settings.default_agent_name,
                "mission": template.name,
                "location": template.location or self._settings.default_location,
                "successful_phases": successful_phases,
            },
        )

    def calculate_compatibility(self, agent: Agent, template: MissionTemplate) -> float:
        """Agent fit for the mission, before any approach is chosen."""

        s = self._settings
        personality = s.personality_matrix.get(agent.personality, {}).get(
            template.mission_type, s.default_compatibility
        )
        experience = min(
            s.compatibility_experience_cap, max(0, agent.experience) * s.compatibility_experience_scale
        )
        level = min(s.compatibility_level_cap, max(0, agent.level - 1) * s.compatibility_level_step)
        return min(s.compatibility_ceiling, personality + experience + level)

    def base_success_rate(
        self, agent: Agent, template: MissionTemplate, approach: str, rng: RandomSource
    ) -> float:
        variant = template.approaches.get(normalise_approach(approach))
        if variant is None:
            raise ValueError(f"template {template.id!r} has no approach {approach!r}")
        rolled = rng.uniform(variant.success_rate.min, variant.success_rate.max)
        return min(
            self._settings.compatibility_ceiling,
            rolled * self.calculate_compatibility(agent, template),
        )


__all__ = ["MissionResolutionService"]
