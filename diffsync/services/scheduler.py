"""Runs analyses and synchronization runs, now or in the background.

One ``SyncScheduler`` lives on ``app.state``. It owns the concurrency gate
shared by every analysis, the registry of active sync runs and the
APScheduler job that re-runs the synchronizer on an interval.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Sequence, Set, Tuple, Union

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from diffsync.cache import AnalysisStatusStore
from diffsync.config import Settings
from diffsync.exceptions import (
    AnalysisFailedError,
    InvalidSessionIdError,
    RunAlreadyActiveError,
    SessionNotFoundError,
    classify,
    error_for_code,
)
from diffsync.repositories.logs import LogRepository, is_valid_session_id
from diffsync.schemas import (
    AcceptedResponse,
    AnalysisStatus,
    DifferentialRequest,
    DifferentialResponse,
    EntityFailure,
    MetricsResponse,
    ProcessingMetrics,
    SyncRunSummary,
)
from diffsync.services.analysis import build_response, estimate_duration
from diffsync.services.detector import ChangeDetector
from diffsync.services.synchronizer import ChangeApplier, Synchronizer
from diffsync.timestamps import parse_timestamp

log = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
STATUS_PATH = "/api/migration/differential/status/{analysis_id}"


class AnalysisSlots:
    """Admission gate for analyses. Waiters are admitted in arrival order."""

    def __init__(self, limit: int):
        self.limit = limit
        self._sem = asyncio.Semaphore(limit)
        self.active = 0
        self.waiting = 0
        self._admitted = 0
        self._waited_ms = 0.0

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        t0 = time.monotonic()
        self.waiting += 1
        try:
            await self._sem.acquire()
        finally:
            self.waiting -= 1
        self._admitted += 1
        self._waited_ms += (time.monotonic() - t0) * 1000
        self.active += 1
        try:
            yield
        finally:
            self.active -= 1
            self._sem.release()

    @property
    def average_wait_ms(self) -> float:
        return round(self._waited_ms / self._admitted, 2) if self._admitted else 0.0

    def metrics(self) -> ProcessingMetrics:
        return ProcessingMetrics(
            active_analyses=self.active,
            queued_requests=self.waiting,
            average_wait_ms=self.average_wait_ms,
        )


class SyncScheduler:
    def __init__(
        self,
        detector: ChangeDetector,
        synchronizer: Synchronizer,
        status_store: AnalysisStatusStore,
        log_repository: LogRepository,
        settings: Settings,
        applier: Optional[ChangeApplier] = None,
    ):
        self.detector = detector
        self.synchronizer = synchronizer
        self.status_store = status_store
        self.log_repository = log_repository
        self.settings = settings
        self.applier = applier
        self.slots = AnalysisSlots(settings.MAX_ACTIVE_ANALYSES)
        self.completed_analyses = 0
        self._active_runs: Set[Tuple[str, str]] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._jobs: Optional[AsyncIOScheduler] = None

    def register_applier(self, applier: Optional[ChangeApplier]) -> None:
        self.applier = applier

    # ── Differential analysis ────────────────────────────────────────────────

    async def estimate_volume(self, entity_types: Sequence[str], since: datetime) -> int:
        counts = await asyncio.gather(
            *(self.detector.count_changed(e, since) for e in entity_types),
            return_exceptions=True,
        )
        # Entities that cannot be counted fail again, and are reported, during detection.
        return sum(c for c in counts if isinstance(c, int))

    def should_run_async(self, request: DifferentialRequest, volume: int) -> bool:
        return (
            request.async_mode
            or volume > self.settings.ASYNC_RECORD_THRESHOLD
            or len(request.entities) > self.settings.ASYNC_ENTITY_THRESHOLD
        )

    async def submit(self, request: DifferentialRequest) -> Union[DifferentialResponse, AcceptedResponse]:
        since = parse_timestamp(request.since_timestamp, allow_future=False)
        analysis_id = str(uuid.uuid4())
        volume = await self.estimate_volume(request.entities, since)
        estimate = estimate_duration(volume, self.settings.THROUGHPUT_RECORDS_PER_MINUTE)

        await self.log_repository.log(
            analysis_id, "info", f"Differential analysis submitted for {len(request.entities)} entities",
            details={
                "entities": request.entities,
                "sinceTimestamp": since.isoformat(),
                "estimatedRecords": volume,
            },
            service="SyncScheduler",
        )
        log.info("scheduler.analysis.submitted", analysis_id=analysis_id, entities=len(request.entities), volume=volume)

        status = AnalysisStatus(
            analysis_id=analysis_id,
            status="queued",
            entities=request.entities,
            submitted_at=datetime.now(timezone.utc),
            estimated_completion_time=estimate,
        )

        if not self.should_run_async(request, volume):
            async with self.slots.acquire():
                response = await self._analyze(analysis_id, since, request)
            await self.status_store.save(
                status.model_copy(update={"status": "completed", "completed_at": datetime.now(timezone.utc), "result": response})
            )
            return response

        try:
            await self.status_store.save(status, required=True)
        except RedisError as exc:
            log.error("scheduler.status.unavailable", analysis_id=analysis_id, error=str(exc))
            raise AnalysisFailedError("Analysis status could not be recorded; nothing was started") from exc
        task = asyncio.create_task(self._run_in_background(status, since, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return AcceptedResponse(
            analysis_id=analysis_id,
            estimated_completion_time=estimate,
            check_status_url=STATUS_PATH.format(analysis_id=analysis_id),
        )

    async def _analyze(self, analysis_id: str, since: datetime, request: DifferentialRequest) -> DifferentialResponse:
        outcomes = await self.detector.batch_detect_changes(
            request.entities,
            since,
            include_deletes=request.include_deletes,
            enable_content_hashing=request.enable_content_hashing,
            batch_size=request.batch_size,
            session_id=analysis_id,
            parallelism=self.settings.DETECTION_PARALLELISM,
        )
        failures = [o for o in outcomes if isinstance(o, EntityFailure)]
        if failures and len(failures) == len(outcomes):
            first = failures[0]
            await self.log_repository.log(
                analysis_id, "error", "Differential analysis failed for every requested entity",
                details=[f.model_dump(by_alias=True) for f in failures],
            )
            raise error_for_code(first.code, f"{first.entity_type}: {first.message}")

        response = build_response(
            analysis_id,
            since,
            outcomes,
            request.change_threshold,
            records_per_minute=self.settings.THROUGHPUT_RECORDS_PER_MINUTE,
            changes_limit=self.settings.RESPONSE_CHANGES_LIMIT,
            metrics=self.slots.metrics(),
        )
        self.completed_analyses += 1
        await self.log_repository.log(
            analysis_id, "info", "Differential analysis completed",
            details={
                "totalChanges": response.overall_summary.total_changes,
                "filteredEntities": len(response.overall_summary.filtered_entities),
                "failedEntities": len(failures),
            },
        )
        return response

    async def _run_in_background(self, status: AnalysisStatus, since: datetime, request: DifferentialRequest) -> None:
        try:
            async with self.slots.acquire():
                status = status.model_copy(update={"status": "processing", "started_at": datetime.now(timezone.utc)})
                await self.status_store.save(status)
                response = await self._analyze(status.analysis_id, since, request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify(exc)
            log.error("scheduler.analysis.failed", analysis_id=status.analysis_id, code=error.error_code, error=str(exc))
            await self.status_store.save(
                status.model_copy(update={
                    "status": "failed",
                    "completed_at": datetime.now(timezone.utc),
                    "error": error.to_body()["error"],
                })
            )
            return

        await self.status_store.save(
            status.model_copy(update={"status": "completed", "completed_at": datetime.now(timezone.utc), "result": response})
        )
        log.info("scheduler.analysis.completed", analysis_id=status.analysis_id)

    async def status(self, analysis_id: str) -> AnalysisStatus:
        if not is_valid_session_id(analysis_id):
            raise InvalidSessionIdError(f"Not a UUID: {analysis_id!r}")
        found = await self.status_store.load(analysis_id)
        if found is None:
            raise SessionNotFoundError(f"No analysis with id {analysis_id}")
        return found

    async def drain(self) -> None:
        """Cancel outstanding background analyses."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── Synchronization runs ─────────────────────────────────────────────────

    async def run_sync(
        self,
        session_id: str,
        entity_types: Sequence[str],
        since: Optional[datetime] = None,
        applier: Optional[ChangeApplier] = None,
        include_deletes: bool = False,
        enable_content_hashing: bool = True,
        batch_size: Optional[int] = None,
    ) -> List[SyncRunSummary]:
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(f"Not a UUID: {session_id!r}")
        for entity_type in entity_types:
            self.detector.mapping_for(entity_type)

        keys = [(session_id, e) for e in entity_types]
        busy = sorted(e for s, e in keys if (s, e) in self._active_runs)
        if busy:
            raise RunAlreadyActiveError(
                f"Active run for {', '.join(busy)}",
                context={"sessionId": session_id, "entities": busy},
            )
        self._active_runs.update(keys)
        try:
            summaries = []
            async with self.slots.acquire():
                for entity_type in entity_types:
                    summaries.append(
                        await self.synchronizer.run(
                            session_id,
                            entity_type,
                            since or EPOCH,
                            applier=applier or self.applier,
                            include_deletes=include_deletes,
                            enable_content_hashing=enable_content_hashing,
                            batch_size=batch_size,
                        )
                    )
            return summaries
        finally:
            self._active_runs.difference_update(keys)

    @property
    def active_sync_runs(self) -> List[str]:
        return sorted(f"{s}:{e}" for s, e in self._active_runs)

    def metrics(self) -> MetricsResponse:
        return MetricsResponse(
            active_analyses=self.slots.active,
            queued_requests=self.slots.waiting,
            average_wait_ms=self.slots.average_wait_ms,
            completed_analyses=self.completed_analyses,
            active_sync_runs=self.active_sync_runs,
        )

    # ── Recurring job ────────────────────────────────────────────────────────

    async def _scheduled_sync(self) -> None:
        try:
            summaries = await self.run_sync(
                self.settings.SYNC_SESSION_ID,
                self.settings.SYNC_ENTITIES,
                include_deletes=self.settings.SYNC_INCLUDE_DELETES,
            )
            log.info(
                "scheduler.sync.done",
                entities=len(summaries),
                applied=sum(s.records_applied for s in summaries),
                detected=sum(s.changes_detected for s in summaries),
            )
        except RunAlreadyActiveError:
            log.info("scheduler.sync.skipped", reason="run already active")
        except Exception as exc:
            log.error("scheduler.sync.failed", error=str(exc))

    @property
    def running(self) -> bool:
        return bool(self._jobs and self._jobs.running)

    def start(self) -> None:
        if not self.settings.SCHEDULER_ENABLED:
            log.info("scheduler.disabled")
            return
        if not self.settings.SYNC_ENTITIES:
            log.info("scheduler.idle", reason="no SYNC_ENTITIES configured")
            return

        self._jobs = AsyncIOScheduler()
        self._jobs.add_job(
            self._scheduled_sync,
            trigger=IntervalTrigger(minutes=self.settings.SYNC_INTERVAL_MINUTES),
            id="differential_sync",
            replace_existing=True,
            max_instances=1,
        )
        self._jobs.start()
        log.info("scheduler.started", interval_minutes=self.settings.SYNC_INTERVAL_MINUTES)

    def stop(self) -> None:
        if self._jobs and self._jobs.running:
            self._jobs.shutdown(wait=False)
            log.info("scheduler.stopped")
