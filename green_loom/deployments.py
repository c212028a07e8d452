"""Deployment lifecycle transitions."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from .models import Agent, Deployment, DeploymentStatus, MissionTemplate, Resolution

logger = logging.getLogger(__name__)


def new_deployment(
    template: MissionTemplate,
    approach: str,
    agent: Agent,
    deployed_at: datetime,
    duration_ms: int,
    coordinator_id: Optional[str] = None,
    timeline_event_id: Optional[str] = None,
    rng_seed: Optional[int] = None,
    deployment_id: Optional[str] = None,
) -> Deployment:
    return Deployment(
        id=deployment_id or uuid.uuid4().hex,
        template_id=template.id,
        approach=approach,
        agent_id=agent.id,
        agent_name=agent.name,
        deployed_at=deployed_at,
        duration_ms=duration_ms,
        coordinator_id=coordinator_id,
        timeline_event_id=timeline_event_id or template.event_id,
        rng_seed=rng_seed,
    )


def _require_open(deployment: Deployment, action: str) -> None:
    if deployment.is_terminal:
        raise ValueError(
            f"cannot {action} deployment {deployment.id}: already {deployment.status.value}"
        )


def activate(deployment: Deployment) -> Deployment:
    _require_open(deployment, "activate")
    if deployment.status is not DeploymentStatus.PREPARING:
        raise ValueError(f"deployment {deployment.id} is already {deployment.status.value}")
    deployment.status = DeploymentStatus.ACTIVE
    return deployment


def attach_resolution(deployment: Deployment, resolution: Resolution) -> Deployment:
    """Store the pre-computed outcome; phases become visible as they reveal."""

    _require_open(deployment, "resolve")
    if deployment.resolution is not None:
        raise ValueError(f"deployment {deployment.id} already has a resolution")
    deployment.resolution = resolution
    deployment.phases = list(resolution.phases)
    return deployment


def abandon(deployment: Deployment, now: datetime) -> Deployment:
    _require_open(deployment, "abandon")
    deployment.status = DeploymentStatus.ABANDONED
    deployment.completed_at = now
    logger.info("Deployment %s abandoned", deployment.id)
    return deployment


def finalize(deployment: Deployment, now: datetime) -> Deployment:
    """Close a deployment whose resolution has been applied to the timeline."""

    _require_open(deployment, "finalize")
    if deployment.resolution is None:
        raise ValueError(f"deployment {deployment.id} has no resolution to finalize")
    deployment.status = (
        DeploymentStatus.COMPLETED
        if deployment.resolution.overall_success
        else DeploymentStatus.FAILED
    )
    deployment.completed_at = now
    deployment.applied = True
    return deployment


__all__ = ["abandon", "activate", "attach_resolution", "finalize", "new_deployment"]
