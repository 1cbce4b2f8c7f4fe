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
"""Asynchronous job queue that runs sync jobs with job-level retry.

Each job synchronizes one entity. A failed attempt, including one that runs
past its timeout, is put back on the queue after the next backoff delay.
When the attempts are exhausted the failure is logged once and handed to the
``on_final_failure`` hook.
"""

import asyncio
import logging
import random
import types
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .config import Settings
from .errors import RegistryError
from .logging_service import SYSTEM, RelayLogger
from .models import SourceEntity, SyncOutcome
from .orchestrator import SyncOrchestrator
from .registry import BaseEntityRegistry

logger = logging.getLogger(__name__)

FinalFailureHook = Callable[["SyncJob", BaseException], None]


@dataclass
class SyncJob:
    """A queued synchronization of one entity."""

    entity: SourceEntity
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    max_attempts: int = 5
    backoff: list[float] = field(default_factory=lambda: [1, 2, 4, 8, 16])
    timeout: float = 300

    @classmethod
    def for_entity(cls, entity: SourceEntity, settings: Settings) -> "SyncJob":
        return cls(
            entity=entity,
            max_attempts=settings.job_max_attempts,
            backoff=list(settings.job_backoff),
            timeout=settings.job_timeout,
        )

    def tags(self) -> list[str]:
        return [
            "gps-sync",
            f"entity:{self.entity.id}",
            f"type:{self.entity.variant.value}",
        ]

    def next_delay(self) -> float:
        """Backoff before the next attempt, reusing the last step when exhausted."""
        if not self.backoff:
            return 0
        return self.backoff[min(self.attempts, len(self.backoff)) - 1]


@dataclass
class DispatchSummary:
    total: int = 0
    dispatched: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class SyncWorkerPool:
    """A fixed number of asyncio workers pulling jobs off one queue."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        relay_logger: RelayLogger | None = None,
        concurrency: int = 4,
        on_final_failure: FinalFailureHook | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.relay_logger = relay_logger or RelayLogger()
        self.concurrency = concurrency
        self.on_final_failure = on_final_failure
        self.outcomes: list[SyncOutcome] = []
        self.failures: list[tuple[SyncJob, BaseException]] = []
        self._queue: asyncio.Queue[SyncJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()

    async def __aenter__(self) -> "SyncWorkerPool":
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        if exc_type is None:
            await self.drain()
        await self.stop()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"gps-sync-worker-{n}")
            for n in range(self.concurrency)
        ]

    def enqueue(self, job: SyncJob, delay: float = 0) -> None:
        """Queue `job`, immediately or after `delay` seconds."""
        if delay <= 0:
            self._queue.put_nowait(job)
            return
        task = asyncio.create_task(self._enqueue_later(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _enqueue_later(self, job: SyncJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    async def drain(self) -> None:
        """Wait until every queued, delayed and retried job has settled."""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed))

    async def stop(self) -> None:
        for task in [*self._workers, *self._delayed]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        self._delayed.clear()

    async def _worker(self, number: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            except Exception:
                logger.exception("Worker %d could not process job %s", number, job.job_id)
            finally:
                self._queue.task_done()

    async def _process(self, job: SyncJob) -> None:
        job.attempts += 1
        try:
            outcome = await asyncio.wait_for(
                self.orchestrator.run(job.entity, job_id=job.job_id, attempt=job.attempts),
                timeout=job.timeout,
            )
        except asyncio.TimeoutError:
            self._handle_failure(
                job, TimeoutError(f"Sync job timed out after {job.timeout}s"),
            )
            return
        except Exception as e:
            self._handle_failure(job, e)
            return
        self.outcomes.append(outcome)

    def _handle_failure(self, job: SyncJob, error: Exception) -> None:
        if job.attempts < job.max_attempts:
            delay = job.next_delay()
            self.relay_logger.job_retry(job.entity, job.job_id, job.attempts, delay, str(error))
            self.enqueue(job, delay)
            return

        self.relay_logger.job_failed(job.entity, job.job_id, job.attempts, str(error))
        self.failures.append((job, error))
        if self.on_final_failure is None:
            return
        try:
            self.on_final_failure(job, error)
        except Exception:
            logger.exception("Final-failure hook raised for job %s", job.job_id)


async def sync_all(
    registry: BaseEntityRegistry,
    pool: SyncWorkerPool,
    settings: Settings,
    entity_ids: Iterable[str] | None = None,
    stagger: tuple[float, float] | None = None,
    dry_run: bool = False,
    rng: random.Random | None = None,
) -> DispatchSummary:
    """Queue one sync job per active entity, spread over the stagger window."""
    rng = rng or random.Random()
    low, high = stagger or (settings.stagger_min, settings.stagger_max)
    summary = DispatchSummary()

    if entity_ids:
        entities = []
        for entity_id in entity_ids:
            try:
                entities.append(await asyncio.to_thread(registry.get, entity_id))
            except RegistryError as e:
                summary.errors.append(str(e))
    else:
        entities = await asyncio.to_thread(registry.list, active_only=False)

    summary.total = len(entities)
    for entity in entities:
        if not entity.active:
            summary.skipped += 1
            continue
        job = SyncJob.for_entity(entity, settings)
        delay = rng.uniform(low, high)
        if dry_run:
            logger.info("Dry run: would dispatch %s for %s", job.job_id, entity.name)
        else:
            pool.enqueue(job, delay)
        summary.dispatched += 1

    pool.relay_logger.info(
        SYSTEM,
        "Sync jobs dispatched",
        total=summary.total,
        dispatched=summary.dispatched,
        skipped=summary.skipped,
        errors=summary.errors,
        dry_run=dry_run,
    )
    return summary
