# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Command-line triggers for the relay."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import typer

from .config import Settings, load_settings
from .destination import MininterClient
from .errors import GpsRelayError
from .leases import LeaseManager
from .logging_service import SYSTEM, RelayLogger, setup_logging
from .models import SyncState
from .orchestrator import SyncOrchestrator
from .registry import BaseEntityRegistry, PostgresEntityRegistry, YamlEntityRegistry
from .scheduler import SyncJob, SyncWorkerPool, sync_all
from .source import GpsSourceClient
from .stores.base import BaseTransmissionStore
from .stores.memory import InMemoryTransmissionStore
from .stores.postgres import PostgresTransmissionStore
from .transformer import PayloadTransformer
from .validation import RecordValidator

logger = logging.getLogger(__name__)

app = typer.Typer(help="Relay GPS telemetry from GPServer to the MININTER ingestion service.")


class StoreKind(str, Enum):
    POSTGRES = "postgres"
    MEMORY = "memory"


@dataclass
class CliState:
    settings: Settings
    registry_file: str | None
    store_kind: StoreKind


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[str] = typer.Option(
        None, "--config", help="Path to YAML config file.",
    ),
    registry_file: Optional[str] = typer.Option(
        None, "--registry", help="YAML entity registry. Defaults to the database.",
    ),
    store: StoreKind = typer.Option(
        StoreKind.POSTGRES, "--store", help="Where transmission records are kept.",
        case_sensitive=False,
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Log level."),
    log_format: str = typer.Option("json", "--log-format", help="json or text."),
):
    """Configure logging and settings shared by every command."""
    setup_logging(level=log_level, format_type=log_format)
    ctx.obj = CliState(
        settings=load_settings(config_file),
        registry_file=registry_file,
        store_kind=store,
    )


def build_registry(state: CliState) -> BaseEntityRegistry:
    if state.registry_file:
        return YamlEntityRegistry(state.registry_file)
    settings = state.settings
    return PostgresEntityRegistry(settings.db_connection_string, settings.db_schema)


def build_store(state: CliState) -> BaseTransmissionStore:
    if state.store_kind is StoreKind.MEMORY:
        return InMemoryTransmissionStore()
    settings = state.settings
    return PostgresTransmissionStore(settings.db_connection_string, settings.db_schema)


@asynccontextmanager
async def open_orchestrator(state: CliState) -> AsyncIterator[SyncOrchestrator]:
    """Wire the pipeline components and close their HTTP clients afterwards."""
    settings = state.settings
    relay_logger = RelayLogger()
    async with GpsSourceClient(settings) as source, MininterClient(settings) as destination:
        yield SyncOrchestrator(
            source=source,
            validator=RecordValidator(settings, relay_logger=relay_logger),
            transformer=PayloadTransformer(settings, relay_logger=relay_logger),
            destination=destination,
            store=build_store(state),
            relay_logger=relay_logger,
            settings=settings,
            leases=LeaseManager(ttl=settings.lease_ttl),
        )


async def _sync_one(state: CliState, entity_id: str) -> bool:
    entity = build_registry(state).get(entity_id)
    async with open_orchestrator(state) as orchestrator:
        async with SyncWorkerPool(orchestrator, orchestrator.relay_logger, concurrency=1) as pool:
            pool.enqueue(SyncJob.for_entity(entity, state.settings))
    for outcome in pool.outcomes:
        typer.echo(f"{outcome.entity_id}: {outcome.state.value} {outcome.reason or ''}".rstrip())
    return not pool.failures and all(
        o.state in (SyncState.SENT, SyncState.SKIPPED) for o in pool.outcomes
    )


async def _sync_all(state: CliState, entity_ids: list[str], dry_run: bool) -> bool:
    registry = build_registry(state)
    settings = state.settings
    async with open_orchestrator(state) as orchestrator:
        async with SyncWorkerPool(
            orchestrator, orchestrator.relay_logger, concurrency=settings.worker_concurrency,
        ) as pool:
            summary = await sync_all(
                registry, pool, settings, entity_ids=entity_ids or None, dry_run=dry_run,
            )
    typer.echo(
        f"Dispatched {summary.dispatched} of {summary.total} entities "
        f"({summary.skipped} inactive, {len(summary.errors)} errors)",
    )
    for error in summary.errors:
        typer.echo(f"  {error}", err=True)
    if not dry_run:
        typer.echo(f"Succeeded: {len(pool.outcomes)}, failed: {len(pool.failures)}")
    return not summary.errors and not pool.failures


async def _health_check(state: CliState) -> bool:
    settings = state.settings
    relay_logger = RelayLogger()
    async with GpsSourceClient(settings) as source, MininterClient(settings) as destination:
        source_ok = await source.health_check()
        endpoints = await destination.health_check()

    relay_logger.health_check(
        "GPServer", url=settings.source_base_url, healthy=source_ok,
    )
    typer.echo(f"GPServer: {'ok' if source_ok else 'unreachable'}")
    for variant, health in endpoints.items():
        relay_logger.health_check(f"MININTER {variant}", **health.model_dump())
        status = "ok" if health.healthy else (health.error or f"status {health.status_code}")
        typer.echo(f"MININTER {variant}: {status}")
    return source_ok and all(h.healthy for h in endpoints.values())


@app.command()
def sync(
    ctx: typer.Context,
    entity_id: str = typer.Argument(..., help="Id of the entity to synchronize."),
):
    """Synchronize one entity now."""
    state: CliState = ctx.obj
    try:
        ok = asyncio.run(_sync_one(state, entity_id))
    except GpsRelayError as e:
        logger.error("Sync failed: %s", e)
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from e
    raise typer.Exit(code=0 if ok else 1)


@app.command("sync-all")
def sync_all_command(
    ctx: typer.Context,
    entity: Optional[List[str]] = typer.Option(
        None, "--entity", help="Limit to these entity ids. Repeatable.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="List jobs without running them."),
):
    """Dispatch a sync job for every active entity."""
    state: CliState = ctx.obj
    ok = asyncio.run(_sync_all(state, entity or [], dry_run))
    raise typer.Exit(code=0 if ok else 1)


@app.command("health-check")
def health_check(ctx: typer.Context):
    """Probe GPServer and both MININTER endpoints."""
    ok = asyncio.run(_health_check(ctx.obj))
    raise typer.Exit(code=0 if ok else 1)


@app.command("init-db")
def init_db(ctx: typer.Context):
    """Create the relay schema and tables."""
    settings = ctx.obj.settings
    PostgresTransmissionStore(settings.db_connection_string, settings.db_schema).prepare_schema()
    RelayLogger().info(SYSTEM, "Database schema ready", schema=settings.db_schema)
    typer.echo(f"Schema {settings.db_schema} is ready.")


if __name__ == "__main__":
    app()
