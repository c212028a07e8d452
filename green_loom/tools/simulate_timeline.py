"""Run seeded deployments against a throwaway store and summarise the timeline."""

from __future__ import annotations

import argparse
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..models import Agent
from ..rng import DeterministicRNG
from ..service import DeploymentService
from ..telemetry import TELEMETRY_DB_ENV, reset_telemetry
from ..templates import REQUIRED_APPROACHES

_PERSONALITIES = ("analytical", "aggressive", "diplomatic", "adaptive")


def run_simulation(
    *,
    db_path: Path,
    deployments: int,
    seed: int,
    agents: int = 4,
    start: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Deploy and complete ``deployments`` missions in sequence, returning a summary."""

    rng = DeterministicRNG(seed)
    service = DeploymentService(db_path)
    clock = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
    roster = [
        Agent(
            id=f"agent_{idx + 1}",
            name=f"Proxim8 #{idx + 1}",
            personality=_PERSONALITIES[idx % len(_PERSONALITIES)],
        )
        for idx in range(max(1, agents))
    ]

    by_approach: Dict[str, Dict[str, int]] = {}
    history: List[Dict[str, Any]] = []
    skipped = 0
    for index in range(deployments):
        open_events = {event.id for event in service.store.available_events(clock)}
        candidates = [
            template
            for template in service.templates
            if not template.event_id or template.event_id in open_events
        ]
        if not candidates:
            skipped += 1
            clock += timedelta(hours=1)
            continue
        template = rng.choice(candidates)
        approach = rng.choice(list(REQUIRED_APPROACHES))
        agent = roster[index % len(roster)]
        deployment = service.deploy(
            template.id, approach, agent, now=clock, seed=rng.randint(0, 2**32 - 1)
        )
        clock = deployment.completes_at + timedelta(milliseconds=1)
        service.complete_due(clock)

        resolution = deployment.resolution
        bucket = by_approach.setdefault(approach, {"deployments": 0, "successes": 0})
        bucket["deployments"] += 1
        bucket["successes"] += int(resolution.overall_success)
        history.append(
            {
                "template": template.id,
                "approach": approach,
                "coordinator": deployment.coordinator_id,
                "successful_phases": resolution.successful_phases,
                "overall_success": resolution.overall_success,
                "timeline_shift": round(resolution.timeline_shift, 4),
            }
        )

    service.record_daily_snapshot(clock)
    state = service.store.global_state()
    return {
        "seed": seed,
        "deployments": len(history),
        "skipped": skipped,
        "successes": sum(1 for entry in history if entry["overall_success"]),
        "by_approach": by_approach,
        "global_green_loom_probability": round(state.global_green_loom_probability, 4),
        "momentum": {"current": state.momentum.current, "trend": state.momentum.trend.value},
        "events": {
            event.id: {
                "green_loom_probability": round(event.green_loom_probability, 4),
                "canonical_status": event.canonical_status.value,
                "interventions": event.total_interventions,
            }
            for event in service.store.all_events()
        },
        "history": history,
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--deployments", type=int, default=20, help="Number of missions to run")
    parser.add_argument("--seed", type=int, default=42, help="Seed for the simulation RNG")
    parser.add_argument("--agents", type=int, default=4, help="Size of the agent roster")
    parser.add_argument(
        "--no-history", action="store_true", help="Omit the per-deployment history"
    )
    args = parser.parse_args(argv)

    with tempfile.TemporaryDirectory(prefix="green_loom_sim_") as workdir:
        owns_telemetry = TELEMETRY_DB_ENV not in os.environ
        if owns_telemetry:
            os.environ[TELEMETRY_DB_ENV] = str(Path(workdir) / "telemetry.db")
            reset_telemetry()
        try:
            summary = run_simulation(
                db_path=Path(workdir) / "timeline.db",
                deployments=args.deployments,
                seed=args.seed,
                agents=args.agents,
            )
        finally:
            reset_telemetry()
            if owns_telemetry:
                os.environ.pop(TELEMETRY_DB_ENV, None)
    if args.no_history:
        summary.pop("history")
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
