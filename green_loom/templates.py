"""Mission template loading and validation."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .models import ApproachVariant, MissionTemplate, PhaseTemplate, RateRange, RewardSchedule
from .narrative import PHASE_COUNT, NarrativeTable, default_narratives

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"

REQUIRED_APPROACHES = ("aggressive", "balanced", "cautious")
APPROACH_ALIASES = {"high": "aggressive", "medium": "balanced", "low": "cautious"}


def _rate_range(value: Any, context: str) -> RateRange:
    if not isinstance(value, dict) or "min" not in value or "max" not in value:
        raise ConfigurationError(f"{context} must be a mapping with min and max")
    low, high = float(value["min"]), float(value["max"])
    if low > high:
        raise ConfigurationError(f"{context} has min {low} above max {high}")
    return RateRange(low, high)


def _optional_int(value: Any, context: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{context} must be a whole number, got {value!r}") from exc


def _approach(name: str, entry: Any, template_id: str) -> ApproachVariant:
    context = f"template {template_id!r} approach {name!r}"
    if not isinstance(entry, dict):
        raise ConfigurationError(f"{context} must be a mapping")
    rewards = entry.get("rewards")
    schedule = None
    if isinstance(rewards, dict) and rewards:
        schedule = RewardSchedule(
            timeline_points=_optional_int(rewards.get("timeline_points"), f"{context} timeline_points"),
            experience=_optional_int(rewards.get("experience"), f"{context} experience"),
        )
    return ApproachVariant(
        name=str(entry.get("name", name.title())),
        success_rate=_rate_range(entry.get("success_rate"), f"{context} success_rate"),
        timeline_shift=_rate_range(
            entry.get("timeline_shift", {"min": 0, "max": 0}), f"{context} timeline_shift"
        ),
        duration_ms=int(entry.get("duration_ms", 0)),
        rewards=schedule,
        description=str(entry.get("description", "")),
    )


def _as_variants(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str) and value.strip():
        return (value,)
    if isinstance(value, list):
        return tuple(str(item) for item in value if isinstance(item, str) and item.strip())
    return ()


def _phases(entries: Any, template_id: str, narratives: NarrativeTable) -> Tuple[PhaseTemplate, ...]:
    defaults = narratives.phases
    if entries is None:
        return defaults
    if not isinstance(entries, list) or len(entries) != PHASE_COUNT:
        raise ConfigurationError(
            f"template {template_id!r} must define exactly {PHASE_COUNT} phases"
        )
    phases = []
    for default, entry in zip(defaults, entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(
                f"template {template_id!r} phase {default.index} must be a mapping"
            )
        phases.append(
            PhaseTemplate(
                index=default.index,
                name=str(entry.get("name") or default.name),
                tech_key=str(entry.get("tech_key") or default.tech_key),
                success=_as_variants(entry.get("success")) or default.success,
                failure=_as_variants(entry.get("failure")) or default.failure,
            )
        )
    return tuple(phases)


def parse_template(entry: Mapping[str, Any], narratives: NarrativeTable | None = None) -> MissionTemplate:
    """Build a validated :class:`MissionTemplate` from a YAML entry."""

    narratives = narratives or default_narratives()
    template_id = entry.get("id")
    if not template_id:
        raise ConfigurationError(f"template entry missing 'id': {dict(entry)}")
    raw_approaches = entry.get("approaches")
    if not isinstance(raw_approaches, dict):
        raise ConfigurationError(f"template {template_id!r} must define approaches")
    approaches: Dict[str, ApproachVariant] = {}
    for key, value in raw_approaches.items():
        name = APPROACH_ALIASES.get(str(key), str(key))
        approaches[name] = _approach(name, value, template_id)
    missing = [name for name in REQUIRED_APPROACHES if name not in approaches]
    if missing:
        raise ConfigurationError(f"template {template_id!r} is missing approaches {missing}")
    year = entry.get("year")
    return MissionTemplate(
        id=str(template_id),
        name=str(entry.get("name") or template_id),
        category=str(entry.get("category") or ""),
        approaches=approaches,
        phases=_phases(entry.get("phases"), template_id, narratives),
        primary_approach=entry.get("primary_approach"),
        year=int(year) if year is not None else None,
        location=entry.get("location"),
        event_id=entry.get("event_id"),
        tags=tuple(str(tag) for tag in entry.get("tags") or []),
    )


class TemplateLibrary:
    """Loaded mission templates.

    A malformed template is rejected on its own; the error is logged and kept
    in :attr:`errors` while the remaining templates load normally.
    """

    def __init__(self, templates: List[MissionTemplate], errors: List[str] | None = None) -> None:
        self._templates = {template.id: template for template in templates}
        self.errors: List[str] = list(errors or [])

    @classmethod
    def from_entries(
        cls, entries: List[Mapping[str, Any]], narratives: NarrativeTable | None = None
    ) -> "TemplateLibrary":
        templates: List[MissionTemplate] = []
        errors: List[str] = []
        for entry in entries:
            try:
                templates.append(parse_template(entry, narratives))
            except ConfigurationError as exc:
                logger.error("Rejected mission template: %s", exc)
                errors.append(str(exc))
        return cls(templates, errors)

    @classmethod
    def from_yaml(
        cls, path: Path | None = None, narratives: NarrativeTable | None = None
    ) -> "TemplateLibrary":
        path = path or (_DATA_PATH / "mission_templates.yaml")
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        library = cls.from_entries(list(data.get("templates") or []), narratives)
        logger.info(
            "Loaded %d mission templates (%d rejected)", len(library), len(library.errors)
        )
        return library

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[MissionTemplate]:
        return iter(self._templates.values())

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def ids(self) -> List[str]:
        return list(self._templates)

    def get(self, template_id: str) -> MissionTemplate:
        try:
            return self._templates[template_id]
        except KeyError as exc:
            raise KeyError(f"unknown mission template {template_id!r}") from exc


def normalise_approach(approach: str) -> str:
    return APPROACH_ALIASES.get(approach, approach)


__all__ = [
    "APPROACH_ALIASES",
    "REQUIRED_APPROACHES",
    "TemplateLibrary",
    "normalise_approach",
    "parse_template",
]
