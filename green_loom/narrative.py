"""Narrative tables for phase and final mission text."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .models import PhaseTemplate

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"

PHASE_COUNT = 5
SUCCESS_BUCKETS = (5, 4, 3)
FAILURE_BUCKETS = (2, 1, 0)


class _SafeDict(dict):
    """Leaves unknown placeholders in place instead of raising."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(text: str, context: Mapping[str, Any]) -> str:
    return text.format_map(_SafeDict(context))


def _variants(value: Any, context: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigurationError(f"{context} must be a non-empty list")
    variants = tuple(str(item) for item in value if isinstance(item, str) and item.strip())
    if len(variants) != len(value):
        raise ConfigurationError(f"{context} contains blank or non-string entries")
    return variants


def parse_phase_templates(entries: Any, source: str) -> Tuple[PhaseTemplate, ...]:
    """Parse and exhaustively validate a five-phase narrative list."""

    if not isinstance(entries, list) or len(entries) != PHASE_COUNT:
        raise ConfigurationError(f"{source}: exactly {PHASE_COUNT} phases are required")
    phases = []
    for position, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{source}: phase {position} must be a mapping")
        index = int(entry.get("index", position))
        if index != position:
            raise ConfigurationError(f"{source}: phase {position} declares index {index}")
        if not entry.get("name"):
            raise ConfigurationError(f"{source}: phase {position} is missing a name")
        phases.append(
            PhaseTemplate(
                index=index,
                name=str(entry["name"]),
                tech_key=str(entry.get("tech_key", "")),
                success=_variants(entry.get("success"), f"{source}: phase {index} success"),
                failure=_variants(entry.get("failure"), f"{source}: phase {index} failure"),
            )
        )
    return tuple(phases)


class NarrativeTable:
    """Validated ``phase x outcome -> variants`` table plus final debriefs."""

    def __init__(
        self,
        phases: Tuple[PhaseTemplate, ...],
        finals: Dict[Tuple[bool, int], str],
        objective_outcomes: Dict[str, str] | None = None,
        connectives: Dict[str, str] | None = None,
    ) -> None:
        if len(phases) != PHASE_COUNT:
            raise ConfigurationError(f"expected {PHASE_COUNT} phase templates, got {len(phases)}")
        missing = [
            key
            for key in [(True, n) for n in SUCCESS_BUCKETS] + [(False, n) for n in FAILURE_BUCKETS]
            if not finals.get(key)
        ]
        if missing:
            raise ConfigurationError(f"final narratives missing buckets: {missing}")
        self._phases = phases
        self._finals = finals
        self._objective_outcomes = objective_outcomes or {}
        connectives = connectives or {}
        self._recovered = connectives.get("recovered", "Despite earlier complications, ")
        self._faltered = connectives.get("faltered", "Building on previous success, however ")

    @classmethod
    def from_yaml(cls, data_path: Path | None = None) -> "NarrativeTable":
        path = data_path or _DATA_PATH
        with (path / "phase_narratives.yaml").open("r", encoding="utf-8") as fh:
            phase_data = yaml.safe_load(fh) or {}
        with (path / "final_narratives.yaml").open("r", encoding="utf-8") as fh:
            final_data = yaml.safe_load(fh) or {}
        phases = parse_phase_templates(phase_data.get("phases"), "phase_narratives.yaml")
        raw_finals = final_data.get("final_narratives") or {}
        finals: Dict[Tuple[bool, int], str] = {}
        for outcome, success in (("success", True), ("failure", False)):
            for bucket, text in (raw_finals.get(outcome) or {}).items():
                finals[(success, int(bucket))] = str(text)
        return cls(
            phases,
            finals,
            objective_outcomes={
                str(k): str(v) for k, v in (phase_data.get("objective_outcomes") or {}).items()
            },
            connectives={str(k): str(v) for k, v in (phase_data.get("connectives") or {}).items()},
        )

    @property
    def phases(self) -> Tuple[PhaseTemplate, ...]:
        return self._phases

    def objective_outcome(self, approach: str) -> str:
        return self._objective_outcomes.get(
            approach, self._objective_outcomes.get("default", "completed the objective")
        )

    def connect(self, text: str, previous_success: Optional[bool], success: bool) -> str:
        """Prefix a connective clause when the outcome flipped since the last phase."""

        if previous_success is None or previous_success == success:
            return text
        if success:
            return f"{self._recovered}{text}"
        return f"{self._faltered}{text[:1].lower()}{text[1:]}"

    def final(self, overall_success: bool, successful_phases: int) -> str:
        if overall_success:
            bucket = max(min(SUCCESS_BUCKETS), min(max(SUCCESS_BUCKETS), successful_phases))
        else:
            bucket = max(min(FAILURE_BUCKETS), min(max(FAILURE_BUCKETS), successful_phases))
        return self._finals[(overall_success, bucket)]


_DEFAULT_TABLE: NarrativeTable | None = None


def default_narratives() -> NarrativeTable:
    global _DEFAULT_TABLE
    if _DEFAULT_TABLE is None:
        _DEFAULT_TABLE = NarrativeTable.from_yaml()
        logger.debug("Loaded default narrative table")
    return _DEFAULT_TABLE


__all__ = [
    "FAILURE_BUCKETS",
    "NarrativeTable",
    "PHASE_COUNT",
    "SUCCESS_BUCKETS",
    "default_narratives",
    "parse_phase_templates",
    "render",
]
