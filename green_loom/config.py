"""Configuration loading utilities for the Green Loom engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"
SETTINGS_PATH_ENV = "GREEN_LOOM_SETTINGS"

_DEFAULT_RISK_TIERS = [
    {"risk": "low", "min_alignment": 0.7, "success_rate": 0.75, "reward_multiplier": 1.0},
    {"risk": "medium", "min_alignment": 0.4, "success_rate": 0.6, "reward_multiplier": 1.2},
    {"risk": "high", "min_alignment": 0.0, "success_rate": 0.4, "reward_multiplier": 1.5},
]

_DEFAULT_PERIODS = [
    {"name": "Early Period", "start_year": 2025, "end_year": 2035},
    {"name": "Escalation Period", "start_year": 2036, "end_year": 2055},
    {"name": "Consolidation Period", "start_year": 2056, "end_year": 2075},
    {"name": "Dominance Period", "start_year": 2076, "end_year": 2089},
]


_DEFAULT_PERSONALITY_MATRIX = {
    "analytical": {"sabotage": 0.6, "expose": 0.9, "organize": 0.7, "investigate": 0.95, "infiltrate": 0.8},
    "aggressive": {"sabotage": 0.95, "expose": 0.7, "organize": 0.6, "investigate": 0.6, "infiltrate": 0.8},
    "diplomatic": {"sabotage": 0.5, "expose": 0.8, "organize": 0.95, "investigate": 0.7, "infiltrate": 0.9},
    "adaptive": {"sabotage": 0.8, "expose": 0.8, "organize": 0.8, "investigate": 0.8, "infiltrate": 0.8},
}


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    alignment_base: float
    alignment_strong_bonus: float
    alignment_weak_penalty: float
    alignment_optimal_bonus: float
    alignment_challenging_penalty: float
    alignment_floor: float
    alignment_ceiling: float
    risk_tiers: List[Dict[str, Any]]
    synergy_divisor: float
    influence_rate_floor: float
    influence_rate_ceiling: float
    experience_per_mission: float
    experience_cap: float
    reveal_fractions: List[float]
    critical_indices: List[int]
    cascade_penalty: float
    cascade_min_index: int
    phase_jitter: float
    phase_floor: float
    phase_ceiling: float
    success_threshold: int
    min_duration_ms: int
    shift_success_base: float
    shift_success_per_phase: float
    shift_failure_per_phase: float
    shift_approach_factors: Dict[str, float]
    shift_random_min: float
    shift_random_max: float
    reward_default_points: int
    reward_default_experience: int
    reward_success_multiplier: float
    reward_failure_multiplier: float
    reward_phase_bonus_step: float
    reward_approach_multipliers: Dict[str, float]
    initial_green_loom: float
    green_loom_threshold: int
    contested_threshold: int
    oneirocom_min_interventions: int
    difficulty_min: int
    difficulty_max: int
    cascade_expiry_days: int
    threat_weights: Dict[str, float]
    momentum_step: int
    momentum_rising_threshold: int
    momentum_declining_threshold: int
    momentum_window_hours: int
    momentum_bound: int
    snapshot_retention: int
    periods: List[Dict[str, Any]]
    default_year: int
    default_location: str
    default_agent_name: str
    default_compatibility: float
    personality_matrix: Dict[str, Dict[str, float]]
    compatibility_experience_cap: float
    compatibility_experience_scale: float
    compatibility_level_cap: float
    compatibility_level_step: float
    compatibility_ceiling: float
    scheduler_interval_seconds: int
    snapshot_hour: int
    store_max_retries: int
    strict_invariants: bool

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        alignment = data.get("alignment", {})
        influence = data.get("influence", {})
        phases = data.get("phases", {})
        shift = data.get("timeline_shift", {})
        rewards = data.get("rewards", {})
        timeline = data.get("timeline", {})
        momentum = timeline.get("momentum", {})
        defaults = data.get("defaults", {})
        scheduler = data.get("scheduler", {})
        store = data.get("store", {})
        invariants = data.get("invariants", {})
        compatibility = data.get("compatibility", {})
        risk_tiers = sorted(
            (dict(tier) for tier in data.get("risk_tiers", _DEFAULT_RISK_TIERS)),
            key=lambda tier: float(tier["min_alignment"]),
            reverse=True,
        )
        return Settings(
            alignment_base=float(alignment.get("base", 0.5)),
            alignment_strong_bonus=float(alignment.get("strong_suit_bonus", 0.3)),
            alignment_weak_penalty=float(alignment.get("weakness_penalty", 0.3)),
            alignment_optimal_bonus=float(alignment.get("optimal_period_bonus", 0.15)),
            alignment_challenging_penalty=float(
                alignment.get("challenging_period_penalty", 0.10)
            ),
            alignment_floor=float(alignment.get("floor", 0.1)),
            alignment_ceiling=float(alignment.get("ceiling", 0.9)),
            risk_tiers=risk_tiers,
            synergy_divisor=float(influence.get("synergy_divisor", 0.7)),
            influence_rate_floor=float(influence.get("rate_floor", 0.1)),
            influence_rate_ceiling=float(influence.get("rate_ceiling", 0.95)),
            experience_per_mission=float(influence.get("experience_per_mission", 0.02)),
            experience_cap=float(influence.get("experience_cap", 0.10)),
            reveal_fractions=[
                float(value)
                for value in phases.get("reveal_fractions", [0.20, 0.45, 0.70, 0.90, 1.00])
            ],
            critical_indices=[int(value) for value in phases.get("critical_indices", [0, 2, 4])],
            cascade_penalty=float(phases.get("cascade_penalty", 0.7)),
            cascade_min_index=int(phases.get("cascade_min_index", 2)),
            phase_jitter=float(phases.get("jitter", 0.15)),
            phase_floor=float(phases.get("floor", 0.1)),
            phase_ceiling=float(phases.get("ceiling", 0.9)),
            success_threshold=int(phases.get("success_threshold", 3)),
            min_duration_ms=int(phases.get("min_duration_ms", 60000)),
            shift_success_base=float(shift.get("success_base", 0.01)),
            shift_success_per_phase=float(shift.get("success_per_phase", 0.008)),
            shift_failure_per_phase=float(shift.get("failure_per_phase", 0.002)),
            shift_approach_factors={
                str(k): float(v)
                for k, v in shift.get(
                    "approach_factors", {"aggressive": 1.5, "balanced": 1.0, "cautious": 0.7}
                ).items()
            },
            shift_random_min=float(shift.get("random_min", 0.8)),
            shift_random_max=float(shift.get("random_max", 1.2)),
            reward_default_points=int(rewards.get("default_timeline_points", 100)),
            reward_default_experience=int(rewards.get("default_experience", 50)),
            reward_success_multiplier=float(rewards.get("success_multiplier", 1.0)),
            reward_failure_multiplier=float(rewards.get("failure_multiplier", 0.3)),
            reward_phase_bonus_step=float(rewards.get("phase_bonus_step", 0.15)),
            reward_approach_multipliers={
                str(k): float(v)
                for k, v in rewards.get(
                    "approach_multipliers",
                    {
                        "aggressive": 1.2,
                        "balanced": 1.0,
                        "cautious": 0.8,
                        "high": 1.2,
                        "medium": 1.0,
                        "low": 0.8,
                    },
                ).items()
            },
            initial_green_loom=float(timeline.get("initial_green_loom", 15)),
            green_loom_threshold=int(timeline.get("green_loom_threshold", 60)),
            contested_threshold=int(timeline.get("contested_threshold", 40)),
            oneirocom_min_interventions=int(timeline.get("oneirocom_min_interventions", 10)),
            difficulty_min=int(timeline.get("difficulty_min", 1)),
            difficulty_max=int(timeline.get("difficulty_max", 10)),
            cascade_expiry_days=int(timeline.get("cascade_expiry_days", 7)),
            threat_weights={
                str(k): float(v)
                for k, v in timeline.get(
                    "threat_weights", {"critical": 3, "high": 2, "moderate": 1.5, "low": 1}
                ).items()
            },
            momentum_step=int(momentum.get("step", 5)),
            momentum_rising_threshold=int(momentum.get("rising_threshold", 50)),
            momentum_declining_threshold=int(momentum.get("declining_threshold", 20)),
            momentum_window_hours=int(momentum.get("window_hours", 24)),
            momentum_bound=int(momentum.get("bound", 100)),
            snapshot_retention=int(timeline.get("snapshot_retention", 30)),
            periods=[dict(period) for period in timeline.get("periods", _DEFAULT_PERIODS)],
            default_year=int(defaults.get("year", 2027)),
            default_location=str(defaults.get("location", "Neo-Tokyo")),
            default_agent_name=str(defaults.get("agent_name", "Agent")),
            default_compatibility=float(defaults.get("compatibility", 0.7)),
            personality_matrix={
                str(personality): {str(k): float(v) for k, v in (scores or {}).items()}
                for personality, scores in compatibility.get(
                    "personality_matrix", _DEFAULT_PERSONALITY_MATRIX
                ).items()
            },
            compatibility_experience_cap=float(compatibility.get("experience_cap", 0.15)),
            compatibility_experience_scale=float(compatibility.get("experience_scale", 0.0001)),
            compatibility_level_cap=float(compatibility.get("level_cap", 0.1)),
            compatibility_level_step=float(compatibility.get("level_step", 0.02)),
            compatibility_ceiling=float(compatibility.get("ceiling", 0.95)),
            scheduler_interval_seconds=int(scheduler.get("interval_seconds", 30)),
            snapshot_hour=int(scheduler.get("snapshot_hour", 0)),
            store_max_retries=int(store.get("max_retries", 3)),
            strict_invariants=bool(invariants.get("strict", False)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.getenv(SETTINGS_PATH_ENV)
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings", "DEFAULT_SETTINGS_PATH"]
