"""Tests for deployment lifecycle transitions."""
from __future__ import annotations

import pytest

from green_loom import deployments as lifecycle
from green_loom.models import DeploymentStatus
from green_loom.resolution import MissionResolutionService
from green_loom.templates import TemplateLibrary


@pytest.fixture
def template():
    return TemplateLibrary.from_yaml().get("neural_seeds")


@pytest.fixture
def deployment(template, agent, now):
    return lifecycle.new_deployment(template, "balanced", agent, now, 3_600_000, rng_seed=9)


def _resolution(template, agent, now, scripted_random, success):
    return MissionResolutionService().resolve(
        template, "balanced", agent, None, 0.8,
        scripted_random([0.0] * 5 if success else [0.99] * 5),
        coordinator_id="thoth", deployed_at=now,
    )


def test_new_deployment_defaults(deployment, agent):
    assert deployment.status is DeploymentStatus.PREPARING
    assert deployment.agent_id == agent.id
    assert deployment.timeline_event_id == "neural_seed_trials"
    assert deployment.rng_seed == 9
    assert len(deployment.id) == 32


def test_full_successful_lifecycle(deployment, template, agent, now, scripted_random):
    resolution = _resolution(template, agent, now, scripted_random, True)

    lifecycle.attach_resolution(deployment, resolution)
    lifecycle.activate(deployment)
    assert deployment.status is DeploymentStatus.ACTIVE
    assert deployment.phases == resolution.phases

    lifecycle.finalize(deployment, now)
    assert deployment.status is DeploymentStatus.COMPLETED
    assert deployment.applied is True
    assert deployment.completed_at == now


def test_failed_resolution_finalizes_as_failed(deployment, template, agent, now, scripted_random):
    lifecycle.attach_resolution(deployment, _resolution(template, agent, now, scripted_random, False))
    lifecycle.activate(deployment)

    lifecycle.finalize(deployment, now)

    assert deployment.status is DeploymentStatus.FAILED


def test_abandon_only_before_terminal(deployment, now):
    lifecycle.activate(deployment)
    lifecycle.abandon(deployment, now)

    assert deployment.status is DeploymentStatus.ABANDONED
    with pytest.raises(ValueError):
        lifecycle.abandon(deployment, now)
    with pytest.raises(ValueError):
        lifecycle.activate(deployment)


def test_invalid_transitions(deployment, template, agent, now, scripted_random):
    with pytest.raises(ValueError):
        lifecycle.finalize(deployment, now)

    resolution = _resolution(template, agent, now, scripted_random, True)
    lifecycle.attach_resolution(deployment, resolution)
    with pytest.raises(ValueError):
        lifecycle.attach_resolution(deployment, resolution)

    lifecycle.activate(deployment)
    with pytest.raises(ValueError):
        lifecycle.activate(deployment)

    lifecycle.finalize(deployment, now)
    with pytest.raises(ValueError):
        lifecycle.finalize(deployment, now)
