from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from gps_relay.cli import app
from gps_relay.models import EndpointHealth, SyncOutcome, SyncState

pytestmark = pytest.mark.unit

runner = CliRunner()

ENTITY_ID = "11111111-1111-1111-1111-111111111111"

REGISTRY_YAML = f"""
entities:
  - id: {ENTITY_ID}
    name: Municipalidad de Lima
    token: aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa
    area_code: "150101"
    variant: SERENAZGO
"""


@pytest.fixture(autouse=True)
def no_logging_setup(mocker):
    """Keep the CLI from replacing pytest's log handlers."""
    return mocker.patch("gps_relay.cli.setup_logging")


@pytest.fixture
def registry_file(tmp_path: Path) -> str:
    path = tmp_path / "entities.yaml"
    path.write_text(REGISTRY_YAML)
    return str(path)


def _invoke(registry_file: str, *args: str):
    return runner.invoke(app, ["--registry", registry_file, "--store", "memory", *args])


def test_sync_success_exits_zero(registry_file, mocker):
    run = mocker.patch(
        "gps_relay.cli.SyncOrchestrator.run",
        new_callable=AsyncMock,
        return_value=SyncOutcome(entity_id=ENTITY_ID, job_id="j", state=SyncState.SENT),
    )

    result = _invoke(registry_file, "sync", ENTITY_ID)

    assert result.exit_code == 0, result.output
    assert f"{ENTITY_ID}: SENT" in result.output
    assert run.await_args.args[0].id == ENTITY_ID


def test_sync_skipped_exits_zero(registry_file, mocker):
    mocker.patch(
        "gps_relay.cli.SyncOrchestrator.run",
        new_callable=AsyncMock,
        return_value=SyncOutcome(
            entity_id=ENTITY_ID, job_id="j", state=SyncState.SKIPPED, reason="no_data",
        ),
    )

    result = _invoke(registry_file, "sync", ENTITY_ID)

    assert result.exit_code == 0
    assert "SKIPPED no_data" in result.output


def test_sync_unknown_entity_exits_one(registry_file):
    result = _invoke(registry_file, "sync", "missing")
    assert result.exit_code == 1
    assert "Unknown entity" in result.output


def test_sync_all_dry_run(registry_file, mocker):
    run = mocker.patch("gps_relay.cli.SyncOrchestrator.run", new_callable=AsyncMock)

    result = _invoke(registry_file, "sync-all", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Dispatched 1 of 1 entities" in result.output
    run.assert_not_called()


def test_health_check_reports_each_service(registry_file, mocker):
    mocker.patch(
        "gps_relay.cli.GpsSourceClient.health_check", new_callable=AsyncMock, return_value=True,
    )
    mocker.patch(
        "gps_relay.cli.MininterClient.health_check",
        new_callable=AsyncMock,
        return_value={
            "SERENAZGO": EndpointHealth(accessible=True, status_code=405),
            "POLICIAL": EndpointHealth(accessible=False, error="refused"),
        },
    )

    result = _invoke(registry_file, "health-check")

    assert result.exit_code == 1
    assert "GPServer: ok" in result.output
    assert "MININTER SERENAZGO: ok" in result.output
    assert "MININTER POLICIAL: refused" in result.output


def test_init_db_prepares_schema(registry_file, mocker):
    prepare = mocker.patch("gps_relay.cli.PostgresTransmissionStore.prepare_schema")

    result = _invoke(registry_file, "init-db")

    assert result.exit_code == 0
    prepare.assert_called_once_with()
    assert "is ready" in result.output
