"""
Job record persistence and change notification.

Two stores share one contract:
  - InMemoryJobStore  — local runs and tests
  - SupabaseJobStore  — the `video_generation_jobs` table (service role)

Every successful write is pushed to the listeners subscribed to that job id.
With Supabase, observers outside this process subscribe to the same table via
Realtime; in-process listeners (e.g. the SSE endpoint) are notified here.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from supabase import Client

from .errors import JobConflictError, JobNotFoundError
from .models import MUTABLE_FIELDS, JobStatus, VideoJob, can_transition, utc_now

logger = logging.getLogger(__name__)

JobListener = Callable[[VideoJob], None]

_TERMINAL = [JobStatus.COMPLETED.value, JobStatus.FAILED.value]


class JobStore:
    """Base store: subscription bookkeeping and write validation."""

    def __init__(self):
        self._listeners: dict[str, list[JobListener]] = {}

    # ── Subscription ─────────────────────────────────────────────────────

    def subscribe(self, job_id: str, listener: JobListener) -> Callable[[], None]:
        """Register a listener for every persisted change of `job_id`. Returns an unsubscribe callable."""
        self._listeners.setdefault(job_id, []).append(listener)

        def _unsubscribe():
            listeners = self._listeners.get(job_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(job_id, None)

        return _unsubscribe

    def _notify(self, job: VideoJob):
        for listener in list(self._listeners.get(job.id, [])):
            try:
                listener(job)
            except Exception as e:
                logger.error(f"Job listener failed for {job.id}: {e}", exc_info=True)

    # ── Validation ───────────────────────────────────────────────────────

    @staticmethod
    def _validate_fields(fields: dict[str, Any]):
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write immutable or unknown job fields: {sorted(unknown)}")

    @staticmethod
    def _check_transition(job: VideoJob, fields: dict[str, Any]):
        if job.status.is_terminal:
            raise JobConflictError(f"Job {job.id} is {job.status.value} and can no longer change")
        new_status = JobStatus(fields.get("status", job.status))
        if not can_transition(job.status, new_status):
            raise JobConflictError(
                f"Illegal transition for job {job.id}: {job.status.value} → {new_status.value}"
            )

    # ── Contract ─────────────────────────────────────────────────────────

    async def create(self, job: VideoJob) -> VideoJob:
        raise NotImplementedError

    async def get(self, job_id: str) -> VideoJob:
        raise NotImplementedError

    async def claim(self, job_id: str) -> VideoJob:
        """Atomically move a job out of `pending`. Raises JobConflictError if someone else got there first."""
        raise NotImplementedError

    async def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> VideoJob:
        """Persist `fields`. If `expected_status` is given, the write only applies while the record is in it."""
        raise NotImplementedError


class InMemoryJobStore(JobStore):

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, VideoJob] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: VideoJob) -> VideoJob:
        async with self._lock:
            if job.id in self._jobs:
                raise JobConflictError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
        self._notify(job)
        return job

    async def get(self, job_id: str) -> VideoJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job.model_copy(deep=True)

    async def claim(self, job_id: str) -> VideoJob:
        return await self.update(
            job_id,
            {"status": JobStatus.ANALYZING_SUBJECT},
            expected_status=JobStatus.PENDING,
        )

    async def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> VideoJob:
        self._validate_fields(fields)
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if expected_status is not None and current.status != expected_status:
                raise JobConflictError(
                    f"Job {job_id} is {current.status.value}, expected {expected_status.value}"
                )
            self._check_transition(current, fields)
            updated = current.model_copy(update={**fields, "updated_at": utc_now()}, deep=True)
            # model_copy skips validation, so coerce status back to the enum
            updated.status = JobStatus(updated.status)
            self._jobs[job_id] = updated
        self._notify(updated)
        return updated.model_copy(deep=True)


class SupabaseJobStore(JobStore):
    """Job records in Supabase. The sync client is driven from a worker thread."""

    def __init__(self, client: Client, table: str = "video_generation_jobs"):
        super().__init__()
        self._client = client
        self._table = table

    def _query(self):
        return self._client.table(self._table)

    @staticmethod
    def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
        out = {}
        for key, value in fields.items():
            if isinstance(value, JobStatus):
                value = value.value
            elif hasattr(value, "isoformat"):
                value = value.isoformat()
            out[key] = value
        return out

    async def create(self, job: VideoJob) -> VideoJob:
        row = job.model_dump(mode="json")
        result = await asyncio.to_thread(lambda: self._query().insert(row).execute())
        created = VideoJob.model_validate(result.data[0]) if result.data else job
        self._notify(created)
        return created

    async def get(self, job_id: str) -> VideoJob:
        result = await asyncio.to_thread(
            lambda: self._query().select("*").eq("id", job_id).limit(1).execute()
        )
        if not result.data:
            raise JobNotFoundError(f"Job {job_id} not found")
        return VideoJob.model_validate(result.data[0])

    async def claim(self, job_id: str) -> VideoJob:
        return await self.update(
            job_id,
            {"status": JobStatus.ANALYZING_SUBJECT},
            expected_status=JobStatus.PENDING,
        )

    async def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> VideoJob:
        self._validate_fields(fields)
        if expected_status is not None:
            new_status = JobStatus(fields.get("status", expected_status))
            if not can_transition(expected_status, new_status):
                raise JobConflictError(
                    f"Illegal transition for job {job_id}: {expected_status.value} → {new_status.value}"
                )

        payload = self._serialize({**fields, "updated_at": utc_now()})

        def _execute():
            query = self._query().update(payload).eq("id", job_id)
            if expected_status is not None:
                query = query.eq("status", expected_status.value)
            for status in _TERMINAL:
                query = query.neq("status", status)
            return query.execute()

        result = await asyncio.to_thread(_execute)
        if not result.data:
            # Distinguish a missing row from a lost race / terminal record
            current = await self.get(job_id)
            raise JobConflictError(
                f"Job {job_id} is {current.status.value}; write of {sorted(fields)} rejected"
            )

        updated = VideoJob.model_validate(result.data[0])
        self._notify(updated)
        return updated
