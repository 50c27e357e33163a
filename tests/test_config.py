from __future__ import annotations

from pathlib import Path

import allure
import pytest

from bead_orchestrator.config import (
    ControlPlaneSettings,
    PlannerSettings,
    ProcessSettings,
    Settings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()

    assert settings.planner.token_budget == 120_000
    assert settings.control_plane.max_attempts == 5
    assert settings.control_plane.watch_database is True


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEAD_ORCH_TOKEN_BUDGET", "5000")
    monkeypatch.setenv("BEAD_ORCH_SCHEDULER_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("BEAD_ORCH_CONTROL_PLANE_WATCH_DB", "off")
    monkeypatch.setenv("BEAD_ORCH_LOG_LEVEL", " debug ")
    monkeypatch.setenv("BEAD_ORCH_BEADS_FILE", "/tmp/beads.json")

    settings = Settings.from_env(db_path=Path("/tmp/orch.db"))

    assert settings.db_path == Path("/tmp/orch.db")
    assert settings.planner.token_budget == 5_000
    assert settings.control_plane.max_attempts == 2
    assert settings.control_plane.watch_database is False
    assert settings.log_level == "DEBUG"
    assert settings.tracker.beads_file == Path("/tmp/beads.json")


def test_from_env_rejects_unknown_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEAD_ORCH_CONTROL_PLANE_WATCH_DB", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value for BEAD_ORCH_CONTROL_PLANE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(planner=PlannerSettings(token_budget=0)), "BEAD_ORCH_TOKEN_BUDGET"),
        (
            Settings(control_plane=ControlPlaneSettings(max_attempts=0)),
            "BEAD_ORCH_SCHEDULER_MAX_ATTEMPTS",
        ),
        (
            Settings(control_plane=ControlPlaneSettings(retry_base_seconds=60, retry_max_seconds=30)),
            "BEAD_ORCH_SCHEDULER_RETRY_MAX_SECONDS",
        ),
        (
            Settings(processes=ProcessSettings(heartbeat_interval_seconds=10, staleness_seconds=10)),
            "BEAD_ORCH_HEARTBEAT_STALENESS_SECONDS",
        ),
        (Settings(log_level="CHATTY"), "Invalid BEAD_ORCH_LOG_LEVEL"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
