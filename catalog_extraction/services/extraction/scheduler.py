from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from .client import ExtractionClient
from .errors import (
    ExtractionAlreadyRunningError,
    ExtractionError,
    InvalidTransitionError,
    PreconditionMissingError,
    UnknownResourceError,
)
from .models import DONE, PENDING, Job
from .schemas import SchemaItem
from .store import RowStore

if TYPE_CHECKING:
    from ...resources import PreviewResource, ResourceRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


@dataclass
class JobCompletion:
    job_id: str
    source_name: str
    status: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    tokens_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DONE


@dataclass
class RunSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    completions: List[JobCompletion] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "completions": [c.__dict__ for c in self.completions],
        }


Listener = Callable[[Any], Union[None, Awaitable[None]]]


async def _notify(listeners: Sequence[Listener], payload: Any) -> None:
    for listener in listeners:
        try:
            result = listener(payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Extraction listener failed")


class ExtractionScheduler:
    """Drives pending jobs through the client with bounded concurrency.

    Jobs are admitted in queue order. Once ``concurrency`` tasks are in flight,
    admission waits for any one of them to finish before taking the next job.
    Every completion writes its transition through the store, bumps the shared
    counter and publishes progress under one lock, so progress never goes
    backwards and reaches exactly 100 before it is reset to 0.
    """

    def __init__(
        self,
        store: RowStore,
        client: ExtractionClient,
        resources: ResourceRegistry,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.store = store
        self.client = client
        self.resources = resources
        self.concurrency = max(1, int(concurrency))
        self.progress = 0
        self.completed = 0
        self.total = 0
        self.last_summary: Optional[RunSummary] = None
        self._progress_listeners: List[Listener] = []
        self._completion_listeners: List[Listener] = []
        self._progress_lock = asyncio.Lock()
        self._running = False
        self._background: Optional["asyncio.Task[RunSummary]"] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def on_progress(self, listener: Listener) -> None:
        self._progress_listeners.append(listener)

    def on_completion(self, listener: Listener) -> None:
        self._completion_listeners.append(listener)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "progress": self.progress,
            "completed": self.completed,
            "total": self.total,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }

    async def run_pending(self, *, concurrency: Optional[int] = None) -> RunSummary:
        return await self.run(self.store.pending(), concurrency=concurrency, schema=self.store.registry.get())

    def start_background(self, *, concurrency: Optional[int] = None) -> "asyncio.Task[RunSummary]":
        if self._running or (self._background is not None and not self._background.done()):
            raise ExtractionAlreadyRunningError("An extraction run is already in progress")
        self._background = asyncio.create_task(self.run_pending(concurrency=concurrency))
        self._background.add_done_callback(self._log_background_result)
        return self._background

    @staticmethod
    def _log_background_result(task: "asyncio.Task[RunSummary]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background extraction run failed: %s", exc)

    async def run(
        self,
        jobs: Sequence[Job],
        *,
        concurrency: Optional[int] = None,
        schema: Optional[Sequence[SchemaItem]] = None,
    ) -> RunSummary:
        if self._running:
            raise ExtractionAlreadyRunningError("An extraction run is already in progress")
        self._running = True
        try:
            return await self._run(list(jobs), concurrency, schema)
        finally:
            self._running = False

    async def _run(
        self,
        jobs: List[Job],
        concurrency: Optional[int],
        schema: Optional[Sequence[SchemaItem]],
    ) -> RunSummary:
        limit = max(1, int(concurrency or self.concurrency))
        snapshot = tuple(schema) if schema is not None else self.store.registry.get()
        summary = RunSummary(total=len(jobs))
        started = time.perf_counter()

        self.total = len(jobs)
        self.completed = 0
        self.progress = 0
        logger.info("Starting extraction run: %d job(s), concurrency=%d", len(jobs), limit)

        in_flight: Set["asyncio.Task[None]"] = set()
        for job in jobs:
            while len(in_flight) >= limit:
                _, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)

            if job.status != PENDING:
                logger.warning("Skipping job %s: status is %s, not %s", job.id, job.status, PENDING)
                await self._finish(summary, job, None)
                continue

            # the run holds its own reference so a delete mid-flight cannot free the buffer
            try:
                self.resources.retain(job.preview_ref)
            except UnknownResourceError:
                error = PreconditionMissingError(f"Source image for '{job.source_name}' is missing; upload it again.")
                await self._finish(summary, job, error, pending=True)
                continue
            resource = self.resources.get(job.preview_ref)

            try:
                await self.store.begin_extraction(job.id)
            except (KeyError, InvalidTransitionError) as exc:
                logger.warning("Skipping job %s: %s", job.id, exc)
                self.resources.release(resource.ref)
                await self._finish(summary, job, None)
                continue
            in_flight.add(asyncio.create_task(self._process(summary, job, resource, snapshot)))

        if in_flight:
            await asyncio.wait(in_flight)

        summary.elapsed_seconds = time.perf_counter() - started
        self.last_summary = summary
        await self._publish(0)
        logger.info(
            "Extraction run finished: %d succeeded, %d failed of %d in %.1fs",
            summary.succeeded,
            summary.failed,
            summary.total,
            summary.elapsed_seconds,
        )
        return summary

    async def _process(
        self,
        summary: RunSummary,
        job: Job,
        resource: "PreviewResource",
        schema: Sequence[SchemaItem],
    ) -> None:
        try:
            outcome = await self.client.extract(
                resource.data, schema, media_type=resource.media_type, label=job.source_name
            )
        except ExtractionError as exc:
            await self._finish(summary, job, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected failure extracting %s", job.source_name)
            await self._finish(summary, job, ExtractionError(f"Unexpected extraction failure: {exc}"))
            return
        finally:
            self.resources.release(resource.ref)
        await self._finish(summary, job, None, outcome=outcome)

    async def _finish(
        self,
        summary: RunSummary,
        job: Job,
        error: Optional[ExtractionError],
        *,
        outcome: Any = None,
        pending: bool = False,
    ) -> None:
        async with self._progress_lock:
            completion = JobCompletion(job_id=job.id, source_name=job.source_name, status=job.status)
            try:
                if outcome is not None:
                    updated = await self.store.complete(job.id, outcome)
                elif error is not None:
                    logger.warning("Extraction failed for %s (%s): %s", job.source_name, error.kind, error.message)
                    if pending:
                        updated = await self.store.fail_pending(job.id, error.message, error.kind)
                    else:
                        updated = await self.store.fail(job.id, error.message, error.kind)
                else:
                    updated = None
                if updated is not None:
                    completion = JobCompletion(
                        job_id=updated.id,
                        source_name=updated.source_name,
                        status=updated.status,
                        error=updated.error,
                        error_kind=updated.error_kind,
                        tokens_used=updated.tokens_used,
                    )
            except KeyError:
                # deleted from the store while in flight
                logger.warning("Job %s disappeared before its result was recorded", job.id)
                updated = None
                completion.error = "Job was skipped: not pending or no longer in the store"
            except Exception as exc:
                logger.exception("Could not record the result of job %s", job.id)
                updated = None
                completion.error = f"Result could not be recorded: {exc}"
            else:
                if updated is None:
                    completion.error = "Job was skipped: not pending or no longer in the store"

            if updated is not None and completion.succeeded:
                summary.succeeded += 1
            else:
                summary.failed += 1
            summary.completions.append(completion)
            self.completed += 1
            await self._publish(round(self.completed / self.total * 100) if self.total else 100)
        await _notify(self._completion_listeners, completion)

    async def _publish(self, value: int) -> None:
        self.progress = value
        await _notify(self._progress_listeners, value)
