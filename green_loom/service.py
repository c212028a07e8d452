"""High-level deployment service orchestrating the engine and the store."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import deployments as lifecycle
from . import timeline
from .alignment import AlignmentScorer
from .config import Settings, get_settings
from .coordinators import CoordinatorRegistry, default_registry
from .errors import StoreConflictError
from .models import FINISHED_STATUSES, Agent, CoordinatorProfile, Deployment, TimelineNode
from .narrative import NarrativeTable, default_narratives
from .phases import PhaseResolver
from .resolution import MissionResolutionService
from .reveal import MissionProgress, mission_progress
from .rng import DeterministicRNG, entropy_seed
from .store import TimelineStore, load_timeline_events
from .telemetry import get_telemetry, track_duration
from .templates import TemplateLibrary, normalise_approach

logger = logging.getLogger(__name__)


class DeploymentService:
    """Coordinates templates, resolution, staged reveal and the timeline store."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        templates: TemplateLibrary | None = None,
        registry: CoordinatorRegistry | None = None,
        narratives: NarrativeTable | None = None,
        seed_timeline: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.narratives = narratives or default_narratives()
        self.registry = registry or default_registry()
        self.templates = templates or TemplateLibrary.from_yaml(narratives=self.narratives)
        self.store = TimelineStore(db_path, settings=self.settings)
        if seed_timeline:
            self.store.seed_events(load_timeline_events())
        self.scorer = AlignmentScorer(registry=self.registry, settings=self.settings)
        self.phases = PhaseResolver(
            narratives=self.narratives, registry=self.registry, settings=self.settings
        )
        self.resolver = MissionResolutionService(
            scorer=self.scorer,
            phase_resolver=self.phases,
            narratives=self.narratives,
            settings=self.settings,
        )
        self._agent_locks: Dict[str, threading.Lock] = {}
        self._agent_locks_guard = threading.Lock()

    def _agent_lock(self, agent_id: str) -> threading.Lock:
        with self._agent_locks_guard:
            return self._agent_locks.setdefault(agent_id, threading.Lock())

    # Queries -----------------------------------------------------------
    def _template(self, template_id: str):
        if template_id not in self.templates:
            raise ValueError(f"Unknown mission template {template_id!r}")
        return self.templates.get(template_id)

    def _deployment(self, deployment_id: str) -> Deployment:
        deployment = self.store.get_deployment(deployment_id)
        if deployment is None:
            raise ValueError(f"Unknown deployment {deployment_id!r}")
        return deployment

    def _node(self, template, node: TimelineNode | None) -> TimelineNode | None:
        if node is not None or not template.event_id:
            return node
        event = self.store.get_event(template.event_id)
        if event is None:
            return None
        return TimelineNode(year=event.year, event_id=event.id)

    def available_coordinators(
        self, template_id: str, node: TimelineNode | None = None
    ) -> List[CoordinatorProfile]:
        template = self._template(template_id)
        return self.scorer.available_coordinators(template, self._node(template, node))

    def progress(self, deployment_id: str, now: Optional[datetime] = None) -> MissionProgress:
        now = now or datetime.now(timezone.utc)
        return mission_progress(self._deployment(deployment_id), now)

    def timeline_overview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        state = self.store.global_state()
        events = self.store.all_events()
        return {
            "global": state.to_dict(),
            "events": [
                {
                    "id": event.id,
                    "title": event.title,
                    "year": event.year,
                    "threat_level": event.threat_level.value,
                    "green_loom_probability": event.green_loom_probability,
                    "oneirocom_probability": event.oneirocom_probability,
                    "canonical_status": event.canonical_status.value,
                    "available": timeline.is_available(event, state, now),
                }
                for event in events
            ],
        }

    # Commands ----------------------------------------------------------
    def deploy(
        self,
        template_id: str,
        approach: str,
        agent: Agent,
        coordinator_id: Optional[str] = None,
        node: TimelineNode | None = None,
        now: Optional[datetime] = None,
        seed: Optional[int] = None,
    ) -> Deployment:
        """Start a deployment and pre-compute its full outcome.

        The returned deployment is active; its phases reveal over the mission
        duration and the timeline is only touched once it completes.
        """

        now = now or datetime.now(timezone.utc)
        template = self._template(template_id)
        approach = normalise_approach(approach)
        variant = template.approaches.get(approach)
        if variant is None:
            raise ValueError(f"Template {template_id!r} has no approach {approach!r}")
        event = self.store.get_event(template.event_id) if template.event_id else None
        if event is not None and not timeline.is_available(event, self.store.global_state(), now):
            raise ValueError(f"Timeline event {event.id} is not available")

        seed = entropy_seed() if seed is None else seed
        rng = DeterministicRNG(seed)
        duration_ms = self.phases.effective_duration(variant.duration_ms)
        # the busy check and the save must not interleave for one agent
        with self._agent_lock(agent.id):
            previous = self.store.deployments_for_agent(agent.id)
            busy = [existing.id for existing in previous if not existing.is_terminal]
            if busy:
                raise ValueError(f"Agent {agent.id} is already deployed ({busy[0]})")
            history = [existing for existing in previous if existing.status in FINISHED_STATUSES]
            with track_duration("resolve_deployment", tags={"template": template.id}):
                base_rate = self.resolver.base_success_rate(agent, template, approach, rng)
                resolution = self.resolver.resolve(
                    template,
                    approach,
                    agent,
                    self._node(template, node),
                    base_rate,
                    rng,
                    coordinator_id=coordinator_id,
                    history=history,
                    deployed_at=now,
                    duration_ms=duration_ms,
                )

            deployment = lifecycle.new_deployment(
                template,
                approach,
                agent,
                deployed_at=now,
                duration_ms=duration_ms,
                coordinator_id=resolution.coordinator_influence.primary,
                rng_seed=seed,
            )
            lifecycle.attach_resolution(deployment, resolution)
            lifecycle.activate(deployment)
            if event is not None and event.is_convergence_event:
                self.store.register_convergence_participation(event.id, agent.id, now)
            self.store.save_deployment(deployment)

        get_telemetry().track_resolution(
            template.id,
            approach,
            resolution.coordinator_influence.primary,
            resolution.successful_phases,
            resolution.overall_success,
            resolution.timeline_shift,
        )
        logger.info(
            "Deployment %s: agent %s on %s (%s, coordinator %s), completes at %s",
            deployment.id,
            agent.id,
            template.id,
            approach,
            deployment.coordinator_id,
            deployment.completes_at.isoformat(),
        )
        return deployment

    def abandon(self, deployment_id: str, now: Optional[datetime] = None) -> Deployment:
        now = now or datetime.now(timezone.utc)
        deployment = self._deployment(deployment_id)
        if not deployment.is_terminal and deployment.completes_at <= now:
            raise ValueError(f"Deployment {deployment_id} has already resolved")
        lifecycle.abandon(deployment, now)
        self.store.save_deployment(deployment)
        get_telemetry().track_system_event(
            "deployment_abandoned", source=deployment.template_id, reason=deployment.id
        )
        return deployment

    def complete_due(self, now: Optional[datetime] = None) -> List[Deployment]:
        """Apply every deployment whose clock has run out to the timeline.

        A deployment whose resolution row is already committed (for example
        after a crash between commit and bookkeeping) is only finalized.
        """

        now = now or datetime.now(timezone.utc)
        completed: List[Deployment] = []
        for deployment in self.store.due_deployments(now):
            if deployment.resolution is None:
                logger.error("Deployment %s is due without a resolution", deployment.id)
                continue
            event_id = deployment.timeline_event_id
            if event_id and self.store.get_event(event_id) is None:
                logger.warning(
                    "Deployment %s targets unknown event %s, skipping timeline update",
                    deployment.id,
                    event_id,
                )
                event_id = None
            if event_id and not self.store.resolution_recorded(deployment.id):
                try:
                    self.store.apply_resolution(
                        event_id,
                        deployment.resolution,
                        deployment_id=deployment.id,
                        approach=deployment.approach,
                        now=now,
                    )
                except StoreConflictError:
                    logger.exception("Deferring deployment %s to the next tick", deployment.id)
                    continue
            lifecycle.finalize(deployment, now)
            self.store.save_deployment(deployment)
            completed.append(deployment)
            logger.info(
                "Deployment %s %s (%d/5 phases)",
                deployment.id,
                deployment.status.value,
                deployment.resolution.successful_phases,
            )
        return completed

    def record_daily_snapshot(self, now: Optional[datetime] = None):
        return self.store.record_daily_snapshot(now)


__all__ = ["DeploymentService"]
