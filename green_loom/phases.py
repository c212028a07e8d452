"""Five-phase mission roll with cascading failure and staged reveal."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import Settings, get_settings
from .coordinators import CoordinatorRegistry, default_registry
from .errors import enforce
from .models import Agent, CoordinatorInfluence, MissionTemplate, Phase
from .narrative import NarrativeTable, default_narratives, render
from .rng import RandomSource

logger = logging.getLogger(__name__)


@dataclass
class PhaseRun:
    phases: List[Phase]
    successful_phases: int
    overall_success: bool


class PhaseResolver:
    """Rolls the ordered phase outcomes for one deployment."""

    def __init__(
        self,
        narratives: NarrativeTable | None = None,
        registry: CoordinatorRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._narratives = narratives or default_narratives()
        self._registry = registry or default_registry()
        self._settings = settings or get_settings()

    def effective_duration(self, duration_ms: Optional[int]) -> int:
        if duration_ms is None or duration_ms <= 0:
            logger.warning(
                "Non-positive mission duration %r, using %dms",
                duration_ms,
                self._settings.min_duration_ms,
            )
            return self._settings.min_duration_ms
        return int(duration_ms)

    def reveal_times(self, deployed_at: datetime, duration_ms: int) -> List[datetime]:
        """Timestamps at which each phase becomes visible."""

        duration_ms = self.effective_duration(duration_ms)
        end = deployed_at + timedelta(milliseconds=duration_ms)
        times = []
        for fraction in self._settings.reveal_fractions:
            reveal_at = deployed_at + timedelta(milliseconds=duration_ms * fraction)
            if not enforce(
                deployed_at <= reveal_at <= end,
                f"reveal time {reveal_at.isoformat()} outside deployment window",
                self._settings,
            ):
                reveal_at = min(max(reveal_at, deployed_at), end)
            if times and not enforce(
                reveal_at > times[-1],
                f"reveal times not strictly increasing at {reveal_at.isoformat()}",
                self._settings,
            ):
                reveal_at = min(times[-1] + timedelta(microseconds=1), end)
            times.append(reveal_at)
        return times

    def _context(
        self,
        template: MissionTemplate,
        approach: str,
        agent: Agent,
        influence: CoordinatorInfluence,
    ) -> Dict[str, object]:
        primary = self._registry.find(influence.primary)
        opposing = self._registry.find(influence.opposing)
        return {
            "agent": agent.name or self._settings.default_agent_name,
            "location": template.location or self._settings.default_location,
            "mission": template.name,
            "year": template.year or self._settings.default_year,
            "approach": approach,
            "primary": primary.name if primary else influence.primary,
            "opposing": opposing.name if opposing else influence.opposing,
            "objective_outcome": self._narratives.objective_outcome(approach),
        }

    def resolve(
        self,
        template: MissionTemplate,
        approach: str,
        success_rate: float,
        deployed_at: datetime,
        duration_ms: int,
        agent: Agent,
        influence: CoordinatorInfluence,
        rng: RandomSource,
    ) -> PhaseRun:
        s = self._settings
        reveal_times = self.reveal_times(deployed_at, duration_ms)
        critical = set(s.critical_indices)
        primary = self._registry.find(influence.primary)
        context = self._context(template, approach, agent, influence)

        phases: List[Phase] = []
        cascading = False
        previous: Optional[bool] = None
        for i, (phase_template, reveal_at) in enumerate(zip(template.phases, reveal_times)):
            probability = success_rate
            penalised = cascading and i >= s.cascade_min_index
            if penalised:
                probability *= s.cascade_penalty
            probability += rng.uniform(-s.phase_jitter, s.phase_jitter)
            probability = max(s.phase_floor, min(s.phase_ceiling, probability))
            success = rng.random() < probability
            if not success and i in critical:
                cascading = True

            text = rng.choice(list(phase_template.variants(success)))
            tech = (
                primary.tech_for(phase_template.tech_key)
                if primary
                else "adaptive quantum systems"
            )
            narrative = render(text, dict(context, tech=tech))
            narrative = self._narratives.connect(narrative, previous, success)
            previous = success

            logger.debug(
                "Phase %d (%s): p=%.3f cascading=%s success=%s",
                i + 1,
                phase_template.name,
                probability,
                penalised,
                success,
            )
            phases.append(
                Phase(
                    id=i + 1,
                    name=phase_template.name,
                    success=success,
                    narrative=narrative,
                    reveal_at=reveal_at,
                    critical=i in critical,
                    success_probability=probability,
                    cascading=penalised,
                )
            )

        successful = sum(1 for phase in phases if phase.success)
        return PhaseRun(
            phases=phases,
            successful_phases=successful,
            overall_success=successful >= s.success_threshold,
        )


__all__ = ["PhaseResolver", "PhaseRun"]
