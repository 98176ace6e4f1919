"""Differential change detection.

``ChangeDetector`` owns the classification algorithm; subclasses only supply
the reads. ``SqlChangeDetector`` reads two SQLAlchemy engines and
``InMemoryChangeDetector`` reads dict snapshots, which keeps tests free of
monkey-patching.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

import structlog
from sqlalchemy import DateTime, column, func, literal_column, select, table
from sqlalchemy.exc import DBAPIError, InterfaceError, NoSuchTableError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from diffsync.config import EntityMapping
from diffsync.exceptions import (
    AnalysisTimeoutError,
    AppError,
    DatabaseConnectionError,
    EntityNotFoundError,
    PermissionDeniedError,
    ValidationError,
    classify,
)
from diffsync.repositories.logs import LogRepository
from diffsync.schemas import (
    ChangeMetadata,
    ChangeRecord,
    ChangeSummary,
    DetectionResult,
    EntityFailure,
    PerformanceStats,
)
from diffsync.services.fingerprint import fingerprint
from diffsync.timestamps import as_utc

log = structlog.get_logger(__name__)

CONFIDENCE_NEW = 0.95
CONFIDENCE_MODIFIED_HASH = 0.98
CONFIDENCE_MODIFIED_TIMESTAMP = 0.85
CONFIDENCE_DELETED = 0.90

Row = Dict[str, Any]
EntityOutcome = Union[DetectionResult, EntityFailure]


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def change_percentage(total_changes: int, analyzed: int) -> float:
    if analyzed <= 0:
        return 0.0
    return min(100.0, round(total_changes / analyzed * 100, 2))


def build_recommendations(
    summary: ChangeSummary, duration_ms: int, hashing: bool, include_deletes: bool
) -> List[str]:
    out = []
    if summary.change_percentage > 25:
        out.append("High change percentage detected - verify timestamp accuracy and consider data validation")
    if summary.new_records > 1000:
        out.append("Large number of new records - consider batch processing with checkpoint intervals")
    if summary.modified_records > summary.new_records * 2:
        out.append("High modification rate - verify source data is not experiencing systematic updates")
    if duration_ms > 60_000:
        out.append("Analysis took longer than expected - consider adding database indexes or reducing batch size")
    if not hashing:
        out.append("Content hashing not enabled - enable it to filter out touch-only writes")
    if summary.total_changes > 50_000:
        out.append("Large migration detected - enable checkpoint saving and consider parallel processing")
    if not include_deletes:
        out.append("Deleted record detection was not enabled - run with includeDeletes for complete analysis")
    if not out:
        out.append("Change detection completed successfully - ready for migration execution")
    return out


class ChangeDetector(ABC):
    def __init__(
        self,
        mappings: Mapping[str, EntityMapping],
        log_repository: Optional[LogRepository] = None,
        default_batch_size: int = 1000,
        max_batch_size: int = 5000,
        hash_algorithm: str = "sha256",
    ):
        self.mappings = dict(mappings)
        self.log_repository = log_repository
        self.default_batch_size = default_batch_size
        self.max_batch_size = max_batch_size
        self.hash_algorithm = hash_algorithm

    # ── Reads supplied by subclasses ─────────────────────────────────────────

    @abstractmethod
    async def source_batch(
        self, mapping: EntityMapping, since: datetime, after_id: Any, limit: int
    ) -> List[Row]:
        """Source rows modified after ``since`` with id > ``after_id``, id-ordered."""

    @abstractmethod
    async def destination_rows(self, mapping: EntityMapping, legacy_ids: Sequence[Any]) -> List[Row]:
        """Destination rows whose legacy reference is in ``legacy_ids``."""

    @abstractmethod
    async def destination_legacy_batch(
        self, mapping: EntityMapping, after_legacy: Any, limit: int
    ) -> List[Row]:
        """Destination rows with a legacy reference > ``after_legacy``, ordered by it."""

    @abstractmethod
    async def source_existing_ids(self, mapping: EntityMapping, ids: Sequence[Any]) -> Set[str]:
        """Stringified ids from ``ids`` that still exist in the source."""

    @abstractmethod
    async def count_changed(self, entity_type: str, since: datetime) -> int:
        """Number of source rows modified after ``since``; used for sizing."""

    # ── Algorithm ────────────────────────────────────────────────────────────

    def mapping_for(self, entity_type: str) -> EntityMapping:
        mapping = self.mappings.get(entity_type)
        if mapping is None:
            raise EntityNotFoundError(f"Unknown entity type: {entity_type}")
        return mapping

    def resolve_batch_size(self, batch_size: Optional[int]) -> int:
        size = self.default_batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValidationError(["batchSize must be at least 1"])
        return min(size, self.max_batch_size)

    def _hash(self, mapping: EntityMapping, row: Row) -> str:
        exclude = {mapping.id_column, mapping.timestamp_column, "id", "created_at", "updated_at", "deleted_at"}
        return fingerprint(row, mapping.fields or None, exclude, self.hash_algorithm)

    async def _emit(
        self, session_id: Optional[str], level: str, event: str, message: str, entity_type: str, **extra: Any
    ) -> None:
        getattr(log, "warning" if level == "warn" else level)(event, entity=entity_type, session_id=session_id, **extra)
        if self.log_repository and session_id:
            await self.log_repository.log(
                session_id, level, message, entity_type=entity_type,
                details=extra or None, service="ChangeDetector",
            )

    async def detect_changes(
        self,
        entity_type: str,
        since: datetime,
        include_deletes: bool = True,
        enable_content_hashing: bool = True,
        batch_size: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> DetectionResult:
        mapping = self.mapping_for(entity_type)
        size = self.resolve_batch_size(batch_size)
        since = as_utc(since)
        analysis_id = str(uuid.uuid4())
        started = time.monotonic()
        queries = 0

        await self._emit(
            session_id, "info", "detector.entity.started",
            f"Starting differential detection for {entity_type}", entity_type,
            analysisId=analysis_id, includeDeletes=include_deletes,
            enableContentHashing=enable_content_hashing, batchSize=size,
        )

        try:
            new: List[ChangeRecord] = []
            modified: List[ChangeRecord] = []
            deleted: List[ChangeRecord] = []
            analyzed = 0
            newest: Optional[datetime] = None
            after_id: Any = None

            while True:
                batch = await self.source_batch(mapping, since, after_id, size)
                queries += 1
                if not batch:
                    break
                analyzed += len(batch)
                after_id = batch[-1][mapping.id_column]

                dest_rows = await self.destination_rows(mapping, [r[mapping.id_column] for r in batch])
                queries += 1
                dest_by_legacy = {str(d[mapping.legacy_column]): d for d in dest_rows}

                for row in batch:
                    source_ts = _to_datetime(row[mapping.timestamp_column])
                    if newest is None or source_ts > newest:
                        newest = source_ts
                    change = self._classify(mapping, entity_type, row, source_ts, dest_by_legacy, enable_content_hashing)
                    if change is None:
                        continue
                    (new if change.change_type == "new" else modified).append(change)

                if len(batch) < size:
                    break

            if include_deletes:
                after_legacy: Any = None
                while True:
                    dest_batch = await self.destination_legacy_batch(mapping, after_legacy, size)
                    queries += 1
                    if not dest_batch:
                        break
                    after_legacy = dest_batch[-1][mapping.legacy_column]
                    existing = await self.source_existing_ids(mapping, [d[mapping.legacy_column] for d in dest_batch])
                    queries += 1
                    for dest in dest_batch:
                        legacy = str(dest[mapping.legacy_column])
                        if legacy in existing:
                            continue
                        dest_ts = _to_datetime(dest.get(mapping.timestamp_column)) or since
                        deleted.append(
                            ChangeRecord(
                                record_id=legacy,
                                change_type="deleted",
                                source_timestamp=dest_ts,
                                destination_timestamp=dest_ts,
                                previous_content_hash=dest.get(mapping.hash_column),
                                metadata=ChangeMetadata(
                                    source_entity=mapping.source_table,
                                    destination_entity=mapping.destination_table,
                                    confidence=CONFIDENCE_DELETED,
                                ),
                            )
                        )
                    if len(dest_batch) < size:
                        break

        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify(exc)
            await self._emit(
                session_id, "error", "detector.entity.failed",
                f"Differential detection failed for {entity_type}", entity_type,
                analysisId=analysis_id, code=error.error_code,
                analysisDurationMs=int((time.monotonic() - started) * 1000),
            )
            if error is exc:
                raise
            raise error from exc

        total = len(new) + len(modified) + len(deleted)
        summary = ChangeSummary(
            new_records=len(new),
            modified_records=len(modified),
            deleted_records=len(deleted),
            total_changes=total,
            change_percentage=change_percentage(total, analyzed),
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        result = DetectionResult(
            analysis_id=analysis_id,
            entity_type=entity_type,
            analysis_timestamp=datetime.now(timezone.utc),
            baseline_timestamp=since,
            detection_method="timestamp_with_hash" if enable_content_hashing else "timestamp_only",
            total_records_analyzed=analyzed,
            changes_detected=new + modified + deleted,
            summary=summary,
            performance=PerformanceStats(
                analysis_duration_ms=duration_ms,
                records_per_second=int(analyzed / (duration_ms / 1000)) if duration_ms > 0 else analyzed,
                queries_executed=queries,
            ),
            recommendations=build_recommendations(summary, duration_ms, enable_content_hashing, include_deletes),
            max_source_timestamp=newest,
        )
        await self._emit(
            session_id, "info", "detector.entity.completed",
            f"Differential detection completed for {entity_type}", entity_type,
            analysisId=analysis_id, totalChanges=total,
            changePercentage=summary.change_percentage, analysisDurationMs=duration_ms,
        )
        return result

    def _classify(
        self,
        mapping: EntityMapping,
        entity_type: str,
        row: Row,
        source_ts: datetime,
        dest_by_legacy: Mapping[str, Row],
        hashing: bool,
    ) -> Optional[ChangeRecord]:
        record_id = str(row[mapping.id_column])
        dest = dest_by_legacy.get(record_id)
        meta = dict(source_entity=mapping.source_table, destination_entity=mapping.destination_table)
        content_hash = self._hash(mapping, row) if hashing else None

        if dest is None:
            return ChangeRecord(
                record_id=record_id,
                change_type="new",
                source_timestamp=source_ts,
                content_hash=content_hash,
                metadata=ChangeMetadata(confidence=CONFIDENCE_NEW, **meta),
            )

        dest_ts = _to_datetime(dest.get(mapping.timestamp_column))
        previous_hash = dest.get(mapping.hash_column)
        if hashing and previous_hash:
            if content_hash == previous_hash:
                return None
            confidence = CONFIDENCE_MODIFIED_HASH
        else:
            # No recorded hash to compare against: fall back to the markers.
            if dest_ts is not None and source_ts <= dest_ts:
                return None
            confidence = CONFIDENCE_MODIFIED_TIMESTAMP

        return ChangeRecord(
            record_id=record_id,
            change_type="modified",
            source_timestamp=source_ts,
            destination_timestamp=dest_ts,
            content_hash=content_hash,
            previous_content_hash=previous_hash,
            metadata=ChangeMetadata(confidence=confidence, **meta),
        )

    async def batch_detect_changes(
        self,
        entity_types: Sequence[str],
        since: datetime,
        include_deletes: bool = True,
        enable_content_hashing: bool = True,
        batch_size: Optional[int] = None,
        session_id: Optional[str] = None,
        parallelism: int = 3,
    ) -> List[EntityOutcome]:
        """Run ``detect_changes`` per entity concurrently.

        Results keep the input order. A failing entity becomes an
        ``EntityFailure`` and never cancels its siblings.
        """
        sem = asyncio.Semaphore(max(1, parallelism))

        async def _one(entity_type: str) -> EntityOutcome:
            async with sem:
                try:
                    return await self.detect_changes(
                        entity_type, since, include_deletes, enable_content_hashing, batch_size, session_id,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    error = classify(exc)
                    return EntityFailure(
                        entity_type=entity_type,
                        code=error.error_code,
                        message=error.message,
                        retryable=error.retryable,
                    )

        return list(await asyncio.gather(*(_one(e) for e in entity_types)))


# ── Production implementation ────────────────────────────────────────────────

def _is_missing_table(exc: BaseException) -> bool:
    text = str(getattr(exc, "orig", exc)).lower()
    sqlstate = getattr(getattr(exc, "orig", None), "sqlstate", None)
    return isinstance(exc, NoSuchTableError) or sqlstate == "42P01" or "no such table" in text or "does not exist" in text


def _is_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return not _is_missing_table(exc)
    return isinstance(exc, (ConnectionError, OSError)) and not isinstance(exc, TimeoutError)


class SqlChangeDetector(ChangeDetector):
    """Reads source and destination through async SQLAlchemy engines.

    Every query runs under ``query_timeout``; connection failures are retried
    with exponential backoff before surfacing as DatabaseConnectionError.
    """

    def __init__(
        self,
        source: AsyncEngine,
        destination: AsyncEngine,
        mappings: Mapping[str, EntityMapping],
        log_repository: Optional[LogRepository] = None,
        query_timeout: float = 30.0,
        max_retries: int = 3,
        **kwargs: Any,
    ):
        super().__init__(mappings, log_repository, **kwargs)
        self.source = source
        self.destination = destination
        self.query_timeout = query_timeout
        self.max_retries = max_retries

    async def _fetch(self, engine: AsyncEngine, stmt, table_name: str) -> List[Row]:
        async def _attempt() -> List[Row]:
            async with engine.connect() as conn:
                result = await conn.execute(stmt)
                return [dict(r._mapping) for r in result]

        async def _with_retries() -> List[Row]:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_connection_failure),
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
                reraise=True,
            ):
                with attempt:
                    return await _attempt()
            return []

        try:
            return await asyncio.wait_for(_with_retries(), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            raise AnalysisTimeoutError(f"Query on {table_name} exceeded {self.query_timeout}s") from None
        except (DBAPIError, NoSuchTableError, OSError) as exc:
            raise self._translate(exc, table_name) from exc

    @staticmethod
    def _translate(exc: BaseException, table_name: str) -> AppError:
        log.error("detector.query.failed", table=table_name, error=str(exc))
        if _is_missing_table(exc):
            return EntityNotFoundError(f"Table {table_name} not found")
        if getattr(getattr(exc, "orig", None), "sqlstate", None) == "42501":
            return PermissionDeniedError(f"Access to {table_name} denied")
        if _is_connection_failure(exc):
            return DatabaseConnectionError(f"Could not reach the datastore holding {table_name}")
        return classify(exc)

    @staticmethod
    def _ts(mapping: EntityMapping):
        return column(mapping.timestamp_column, DateTime(timezone=True))

    async def source_batch(self, mapping, since, after_id, limit):
        id_col = column(mapping.id_column)
        ts_col = self._ts(mapping)
        src = table(mapping.source_table, id_col, ts_col)
        if mapping.fields:
            cols = [id_col, ts_col] + [column(f) for f in mapping.fields if f not in (mapping.id_column, mapping.timestamp_column)]
            stmt = select(*cols).select_from(src)
        else:
            stmt = select(literal_column("*")).select_from(src)
        stmt = stmt.where(ts_col > since)
        if after_id is not None:
            stmt = stmt.where(id_col > after_id)
        return await self._fetch(self.source, stmt.order_by(id_col).limit(limit), mapping.source_table)

    async def destination_rows(self, mapping, legacy_ids):
        legacy = column(mapping.legacy_column)
        dest = table(mapping.destination_table, legacy)
        stmt = (
            select(legacy, self._ts(mapping), column(mapping.hash_column))
            .select_from(dest)
            .where(legacy.in_(list(legacy_ids)))
        )
        return await self._fetch(self.destination, stmt, mapping.destination_table)

    async def destination_legacy_batch(self, mapping, after_legacy, limit):
        legacy = column(mapping.legacy_column)
        dest = table(mapping.destination_table, legacy)
        stmt = (
            select(legacy, self._ts(mapping), column(mapping.hash_column))
            .select_from(dest)
            .where(legacy.isnot(None))
        )
        if after_legacy is not None:
            stmt = stmt.where(legacy > after_legacy)
        return await self._fetch(self.destination, stmt.order_by(legacy).limit(limit), mapping.destination_table)

    async def source_existing_ids(self, mapping, ids):
        id_col = column(mapping.id_column)
        stmt = select(id_col).select_from(table(mapping.source_table, id_col)).where(id_col.in_(list(ids)))
        rows = await self._fetch(self.source, stmt, mapping.source_table)
        return {str(r[mapping.id_column]) for r in rows}

    async def count_changed(self, entity_type, since):
        mapping = self.mapping_for(entity_type)
        ts_col = self._ts(mapping)
        stmt = (
            select(func.count().label("n"))
            .select_from(table(mapping.source_table, ts_col))
            .where(ts_col > as_utc(since))
        )
        rows = await self._fetch(self.source, stmt, mapping.source_table)
        return int(rows[0]["n"]) if rows else 0


# ── Deterministic fake ───────────────────────────────────────────────────────

class InMemoryChangeDetector(ChangeDetector):
    """Detector over in-memory snapshots: ``{entity: [row, ...]}`` per side.

    ``failures`` maps an entity to the exception its reads should raise.
    """

    def __init__(
        self,
        source: Mapping[str, Iterable[Row]],
        destination: Mapping[str, Iterable[Row]],
        mappings: Mapping[str, EntityMapping],
        log_repository: Optional[LogRepository] = None,
        failures: Optional[Mapping[str, BaseException]] = None,
        **kwargs: Any,
    ):
        super().__init__(mappings, log_repository, **kwargs)
        self.source = {k: list(v) for k, v in source.items()}
        self.destination = {k: list(v) for k, v in destination.items()}
        self.failures = dict(failures or {})
        self._by_table = {m.source_table: e for e, m in self.mappings.items()}
        self._by_table.update({m.destination_table: e for e, m in self.mappings.items()})

    def _rows(self, side: Dict[str, List[Row]], table_name: str) -> List[Row]:
        entity = self._by_table[table_name]
        if entity in self.failures:
            raise self.failures[entity]
        return side.setdefault(entity, [])

    async def source_batch(self, mapping, since, after_id, limit):
        rows = [
            r for r in self._rows(self.source, mapping.source_table)
            if _to_datetime(r[mapping.timestamp_column]) > since
            and (after_id is None or r[mapping.id_column] > after_id)
        ]
        rows.sort(key=lambda r: r[mapping.id_column])
        return [dict(r) for r in rows[:limit]]

    async def destination_rows(self, mapping, legacy_ids):
        wanted = {str(i) for i in legacy_ids}
        return [
            dict(r) for r in self._rows(self.destination, mapping.destination_table)
            if str(r.get(mapping.legacy_column)) in wanted
        ]

    async def destination_legacy_batch(self, mapping, after_legacy, limit):
        rows = [
            r for r in self._rows(self.destination, mapping.destination_table)
            if r.get(mapping.legacy_column) is not None
            and (after_legacy is None or r[mapping.legacy_column] > after_legacy)
        ]
        rows.sort(key=lambda r: r[mapping.legacy_column])
        return [dict(r) for r in rows[:limit]]

    async def source_existing_ids(self, mapping, ids):
        wanted = {str(i) for i in ids}
        return {
            str(r[mapping.id_column]) for r in self._rows(self.source, mapping.source_table)
            if str(r[mapping.id_column]) in wanted
        }

    async def count_changed(self, entity_type, since):
        mapping = self.mapping_for(entity_type)
        since = as_utc(since)
        return sum(
            1 for r in self._rows(self.source, mapping.source_table)
            if _to_datetime(r[mapping.timestamp_column]) > since
        )
