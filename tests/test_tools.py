"""Tests for the content validation and simulation CLIs."""
from __future__ import annotations

import json
import shutil

from green_loom.tools import simulate_timeline, validate_content


def test_packaged_content_passes_validation(capsys) -> None:
    assert validate_content.validate_content(validate_content.DEFAULT_DATA_DIR) == []
    assert validate_content.main([]) == 0
    assert "Content validation passed" in capsys.readouterr().out


def _copy_data(tmp_path):
    target = tmp_path / "data"
    shutil.copytree(validate_content.DEFAULT_DATA_DIR, target)
    return target


def test_overlapping_coordinator_tags_are_reported(tmp_path, capsys) -> None:
    data_dir = _copy_data(tmp_path)
    path = data_dir / "coordinators.yaml"
    path.write_text(
        path.read_text(encoding="utf-8").replace(
            "weakness: [stealth, infiltration, social_engineering]",
            "weakness: [timeline, stealth]",
        ),
        encoding="utf-8",
    )

    assert validate_content.main(["--data-dir", str(data_dir)]) == 1
    assert "chronos" in capsys.readouterr().err


def test_unknown_cascade_target_is_reported(tmp_path) -> None:
    data_dir = _copy_data(tmp_path)
    path = data_dir / "timeline_events.yaml"
    path.write_text(
        path.read_text(encoding="utf-8").replace(
            "target_event_id: neural_seed_trials",
            "target_event_id: vanished_event",
            1,
        ),
        encoding="utf-8",
    )

    errors = validate_content.validate_content(data_dir)

    assert any("vanished_event" in message for message in errors)


def test_missing_file_is_reported(tmp_path) -> None:
    data_dir = _copy_data(tmp_path)
    (data_dir / "final_narratives.yaml").unlink()

    errors = validate_content.validate_content(data_dir)

    assert len(errors) == 1
    assert "file not found" in errors[0]


def test_simulation_is_deterministic(tmp_path) -> None:
    first = simulate_timeline.run_simulation(db_path=tmp_path / "a.db", deployments=6, seed=9)
    second = simulate_timeline.run_simulation(db_path=tmp_path / "b.db", deployments=6, seed=9)

    assert first == second
    assert first["deployments"] + first["skipped"] == 6
    assert sum(entry["interventions"] for entry in first["events"].values()) == first["deployments"]


def test_simulation_cli_prints_summary(capsys) -> None:
    assert simulate_timeline.main(["--deployments", "3", "--seed", "4", "--no-history"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["seed"] == 4
    assert "history" not in summary
    assert 0.0 <= summary["global_green_loom_probability"] <= 100.0
