"""Validate the YAML content assets the engine loads at runtime."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Sequence

import yaml

from ..config import Settings
from ..coordinators import CoordinatorRegistry
from ..errors import ConfigurationError
from ..narrative import NarrativeTable
from ..store import load_timeline_events
from ..templates import TemplateLibrary

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


def validate_settings(data_dir: Path) -> List[str]:
    path = data_dir / "settings.yaml"
    try:
        with path.open("r", encoding="utf-8") as fh:
            Settings.from_dict(yaml.safe_load(fh) or {})
    except (ConfigurationError, TypeError, ValueError, yaml.YAMLError) as exc:
        return [f"{path}: {exc}"]
    return []


def validate_coordinators(data_dir: Path) -> List[str]:
    try:
        CoordinatorRegistry.from_yaml(data_dir / "coordinators.yaml")
    except (ConfigurationError, yaml.YAMLError) as exc:
        return [f"coordinators: {exc}"]
    return []


def validate_content(data_dir: Path) -> List[str]:
    """Return every problem found under ``data_dir`` (empty when valid)."""

    errors: List[str] = []
    for name in (
        "settings.yaml",
        "coordinators.yaml",
        "phase_narratives.yaml",
        "final_narratives.yaml",
        "mission_templates.yaml",
        "timeline_events.yaml",
    ):
        if not (data_dir / name).exists():
            errors.append(f"{data_dir / name}: file not found")
    if errors:
        return errors

    errors.extend(validate_settings(data_dir))
    errors.extend(validate_coordinators(data_dir))

    try:
        narratives = NarrativeTable.from_yaml(data_dir)
    except (ConfigurationError, yaml.YAMLError) as exc:
        errors.append(f"narratives: {exc}")
        return errors

    library = TemplateLibrary.from_entries(
        list(
            (yaml.safe_load((data_dir / "mission_templates.yaml").read_text(encoding="utf-8")) or {})
            .get("templates")
            or []
        ),
        narratives,
    )
    errors.extend(f"mission_templates: {message}" for message in library.errors)

    try:
        events = load_timeline_events(data_dir / "timeline_events.yaml")
    except ConfigurationError as exc:
        errors.append(f"timeline_events: {exc}")
        return errors

    event_ids = {event.id for event in events}
    for event in events:
        for effect in event.cascade_effects:
            if effect.target_event_id not in event_ids:
                errors.append(
                    f"timeline_events: {event.id} cascades onto unknown event {effect.target_event_id}"
                )
            elif effect.target_event_id == event.id:
                errors.append(f"timeline_events: {event.id} cascades onto itself")
    for template in library:
        if template.event_id and template.event_id not in event_ids:
            errors.append(
                f"mission_templates: {template.id} references unknown event {template.event_id}"
            )
    return errors


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DEFAULT_DATA_DIR,
        help="Directory holding the YAML assets (defaults to the packaged data)",
    )
    args = parser.parse_args(argv)

    errors = validate_content(args.data_dir)
    if errors:
        for message in errors:
            print(message, file=sys.stderr)
        return 1

    print("Content validation passed for", args.data_dir)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
