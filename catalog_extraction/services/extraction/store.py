from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ...persistence import PersistenceStore
from .errors import InvalidSchemaError, InvalidTransitionError, UnknownJobError, UnknownKeyError
from .models import DONE, ERROR, EXTRACTING, PENDING, AttributeValue, ExtractionOutcome, Job
from .schemas import SchemaItem, SchemaRegistry, SchemaSnapshot

if TYPE_CHECKING:
    from ...resources import ResourceRegistry

logger = logging.getLogger(__name__)

JobPredicate = Callable[[Job], bool]


@dataclass(frozen=True)
class ExportSnapshot:
    """Read-only view handed to tabular exporters: Done jobs plus the schema."""
    schema: SchemaSnapshot
    rows: Tuple[Job, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": [item.to_dict() for item in self.schema],
            "rows": [job.to_dict() for job in self.rows],
        }


@dataclass
class Discovery:
    """An observed select value outside the allowed list, aggregated across Done jobs."""
    key: str
    value: str
    frequency: int = 0
    confidence: int = 0
    job_ids: List[str] = field(default_factory=list)
    is_promotable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "frequency": self.frequency,
            "confidence": self.confidence,
            "job_ids": list(self.job_ids),
            "is_promotable": self.is_promotable,
        }


class RowStore:
    """Authoritative owner of every Job.

    Callers get copies; all mutations go through the methods below. Only jobs in
    a terminal state are written to the persistence store, and the whole history
    record is rewritten after each mutation that touches a terminal job.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        resources: ResourceRegistry,
        persistence: PersistenceStore,
    ) -> None:
        self.registry = registry
        self.resources = resources
        self._persistence = persistence
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    # Lifecycle
    async def load(self) -> None:
        """Load the schema record, then rebuild terminal jobs against it."""
        saved_schema = await self._persistence.load_schema()
        if saved_schema:
            try:
                self.registry.replace([SchemaItem.from_dict(entry) for entry in saved_schema])
            except InvalidSchemaError as exc:
                logger.warning("Ignoring persisted schema: %s", exc)
        else:
            await self.save_schema()

        keys = self.registry.keys()
        loaded = 0
        async with self._lock:
            for entry in await self._persistence.load_jobs():
                try:
                    job = Job.from_dict(entry)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping unreadable persisted job: %s", exc)
                    continue
                if not job.is_terminal:
                    continue
                if list(job.attributes) != keys:
                    logger.warning("Re-keying job %s to the current schema", job.id)
                    job.attributes = {key: job.attributes.get(key) for key in keys}
                self._jobs[job.id] = job
                loaded += 1
        logger.info("Loaded %d persisted job(s), schema has %d attribute(s)", loaded, len(keys))

    async def flush(self) -> None:
        terminal = [job.to_dict() for job in self._jobs.values() if job.is_terminal]
        await self._persistence.save_jobs(terminal)

    async def save_schema(self) -> None:
        await self._persistence.save_schema(self.registry.to_dicts())

    # Queries
    def get(self, job_id: str) -> Job:
        return self._require(job_id).copy()

    def list(self, predicate: Optional[JobPredicate] = None) -> List[Job]:
        return [job.copy() for job in self._jobs.values() if predicate is None or predicate(job)]

    def pending(self) -> List[Job]:
        return self.list(lambda job: job.status == PENDING)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def find_by_source_name(self, source_name: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.source_name == source_name:
                return job.copy()
        return None

    def stats(self) -> Dict[str, Any]:
        counts = {PENDING: 0, EXTRACTING: 0, DONE: 0, ERROR: 0}
        tokens = 0
        processing_ms = 0
        timed = 0
        for job in self._jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
            tokens += job.tokens_used or 0
            if job.processing_time_ms is not None:
                processing_ms += job.processing_time_ms
                timed += 1
        total = len(self._jobs)
        return {
            "total": total,
            "pending": counts[PENDING],
            "extracting": counts[EXTRACTING],
            "done": counts[DONE],
            "error": counts[ERROR],
            "success_rate": round(counts[DONE] / total * 100) if total else 0,
            "total_tokens": tokens,
            "total_processing_ms": processing_ms,
            "average_processing_ms": round(processing_ms / timed) if timed else 0,
        }

    def discoveries(self, *, min_frequency: int = 2, min_confidence: int = 75) -> List[Discovery]:
        """Group new-discovery select values of Done jobs by (key, value).

        Values that have since been added to the schema are left out. A group
        is promotable once it was seen ``min_frequency`` times with an average
        visual confidence of at least ``min_confidence``.
        """
        allowed = {item.key: set(item.allowed_values) for item in self.registry.get() if item.type == "select"}
        groups: Dict[Tuple[str, str], Discovery] = {}
        confidence_sums: Dict[Tuple[str, str], int] = {}
        for job in self._jobs.values():
            if job.status != DONE:
                continue
            for key, detail in job.attributes.items():
                if detail is None or not detail.is_new_discovery or detail.schema_value is None:
                    continue
                if key not in allowed:
                    continue
                value = str(detail.schema_value)
                if value in allowed[key]:
                    continue
                group = groups.setdefault((key, value), Discovery(key=key, value=value))
                group.frequency += 1
                group.job_ids.append(job.id)
                confidence_sums[(key, value)] = confidence_sums.get((key, value), 0) + detail.visual_confidence

        for group_key, group in groups.items():
            group.confidence = round(confidence_sums[group_key] / group.frequency)
            group.is_promotable = group.frequency >= min_frequency and group.confidence >= min_confidence
        return sorted(groups.values(), key=lambda d: (-d.frequency * d.confidence, d.key, d.value))

    def export_snapshot(self) -> ExportSnapshot:
        return ExportSnapshot(
            schema=self.registry.get(),
            rows=tuple(job.copy() for job in self._jobs.values() if job.status == DONE),
        )

    # Mutations
    async def upsert(self, job: Job) -> Job:
        async with self._lock:
            previous = self._jobs.get(job.id)
            self._jobs[job.id] = job.copy()
            if previous is not None and previous.preview_ref != job.preview_ref:
                self._release(previous)
            if job.is_terminal:
                await self.flush()
        return job.copy()

    async def delete(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                raise UnknownJobError(job_id)
            self._release(job)
            if job.is_terminal:
                await self.flush()

    async def clear(self) -> int:
        async with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            for job in jobs:
                self._release(job)
            await self._persistence.clear_jobs()
        return len(jobs)

    async def begin_extraction(self, job_id: str) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.start()
            return job.copy()

    async def complete(self, job_id: str, outcome: ExtractionOutcome) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.succeed(outcome)
            await self.flush()
            return job.copy()

    async def fail(self, job_id: str, message: str, kind: Optional[str] = None) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.fail(message, kind)
            await self.flush()
            return job.copy()

    async def fail_pending(self, job_id: str, message: str, kind: Optional[str] = None) -> Job:
        """Pending -> Extracting -> Error for jobs rejected before any remote call."""
        async with self._lock:
            job = self._require(job_id)
            job.start()
            job.fail(message, kind)
            await self.flush()
            return job.copy()

    async def request_reextract(
        self,
        job_ids: Iterable[str],
        schema: Optional[Sequence[SchemaItem]] = None,
    ) -> List[Job]:
        snapshot = tuple(schema) if schema is not None else self.registry.get()
        async with self._lock:
            jobs = [self._require(job_id) for job_id in dict.fromkeys(job_ids)]
            for job in jobs:
                if not job.is_terminal:
                    raise InvalidTransitionError(job.id, job.status, PENDING)
            for job in jobs:
                job.requeue(snapshot)
            await self.flush()
            return [job.copy() for job in jobs]

    def _apply_edit(self, jobs: Sequence[Job], key: str, value: AttributeValue) -> None:
        for job in jobs:
            if key not in job.attributes:
                raise UnknownKeyError(f"Job {job.id} has no attribute '{key}'")
        for job in jobs:
            job.set_attribute(key, value)

    async def apply_bulk_edit(self, job_ids: Iterable[str], key: str, value: AttributeValue) -> int:
        async with self._lock:
            jobs = [self._require(job_id) for job_id in dict.fromkeys(job_ids)]
            self._apply_edit(jobs, key, value)
            if any(job.is_terminal for job in jobs):
                await self.flush()
            return len(jobs)

    async def update_attribute(self, job_id: str, key: str, value: AttributeValue) -> Job:
        async with self._lock:
            job = self._require(job_id)
            self._apply_edit([job], key, value)
            if job.is_terminal:
                await self.flush()
            return job.copy()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJobError(job_id)
        return job

    def _release(self, job: Job) -> None:
        # jobs reloaded from disk point at previews from a previous session
        if job.preview_ref and job.preview_ref in self.resources:
            self.resources.release(job.preview_ref)
