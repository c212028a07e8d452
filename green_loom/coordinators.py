"""Coordinator reference data."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .models import Coordinator, YearRange

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"


def _tags(entry: Mapping[str, Any], key: str) -> frozenset:
    values = entry.get(key) or []
    if not isinstance(values, list):
        raise ConfigurationError(f"coordinator {entry.get('id')!r}: {key} must be a list")
    return frozenset(str(value) for value in values)


def _periods(entry: Mapping[str, Any], key: str) -> tuple:
    try:
        return tuple(YearRange.parse(value) for value in entry.get(key) or [])
    except ValueError as exc:
        raise ConfigurationError(
            f"coordinator {entry.get('id')!r}: bad year range in {key}: {exc}"
        ) from exc


def parse_coordinator(entry: Mapping[str, Any]) -> Coordinator:
    """Build a :class:`Coordinator` from one YAML entry, validating its affinities."""

    for field_name in ("id", "name", "description", "specialty"):
        if not entry.get(field_name):
            raise ConfigurationError(f"coordinator entry missing {field_name!r}: {dict(entry)}")
    strong = _tags(entry, "strong_suit")
    weak = _tags(entry, "weakness")
    overlap = strong & weak
    if overlap:
        raise ConfigurationError(
            f"coordinator {entry['id']!r} lists {sorted(overlap)} as both strong suit and weakness"
        )
    return Coordinator(
        id=str(entry["id"]),
        name=str(entry["name"]),
        description=str(entry["description"]),
        specialty=str(entry["specialty"]),
        strong_suit=strong,
        weakness=weak,
        neutral=_tags(entry, "neutral"),
        optimal_periods=_periods(entry, "optimal_periods"),
        challenging_periods=_periods(entry, "challenging_periods"),
        tech={str(k): str(v) for k, v in (entry.get("tech") or {}).items()},
    )


class CoordinatorRegistry:
    """Immutable, ordered table of coordinators shared by every resolution."""

    def __init__(self, coordinators: List[Coordinator]) -> None:
        if not coordinators:
            raise ConfigurationError("coordinator registry is empty")
        by_id: Dict[str, Coordinator] = {}
        for coordinator in coordinators:
            if coordinator.id in by_id:
                raise ConfigurationError(f"duplicate coordinator id {coordinator.id!r}")
            by_id[coordinator.id] = coordinator
        self._ordered = tuple(coordinators)
        self._by_id = by_id

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "CoordinatorRegistry":
        path = path or (_DATA_PATH / "coordinators.yaml")
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        entries = data.get("coordinators")
        if not isinstance(entries, list):
            raise ConfigurationError(f"{path}: expected a 'coordinators' list")
        registry = cls([parse_coordinator(entry) for entry in entries])
        logger.debug("Loaded %d coordinators from %s", len(registry), path)
        return registry

    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self) -> Iterator[Coordinator]:
        return iter(self._ordered)

    def __contains__(self, coordinator_id: object) -> bool:
        return coordinator_id in self._by_id

    def ids(self) -> List[str]:
        return [coordinator.id for coordinator in self._ordered]

    def get(self, coordinator_id: str) -> Coordinator:
        try:
            return self._by_id[coordinator_id]
        except KeyError as exc:
            raise KeyError(f"unknown coordinator {coordinator_id!r}") from exc

    def find(self, coordinator_id: Optional[str]) -> Optional[Coordinator]:
        if coordinator_id is None:
            return None
        return self._by_id.get(coordinator_id)


_DEFAULT_REGISTRY: CoordinatorRegistry | None = None


def default_registry() -> CoordinatorRegistry:
    """Return the packaged registry, loading it on first use."""

    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        _DEFAULT_REGISTRY = CoordinatorRegistry.from_yaml()
    return _DEFAULT_REGISTRY


__all__ = ["CoordinatorRegistry", "default_registry", "parse_coordinator"]
