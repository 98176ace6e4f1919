"""Migration log repository.

Log entries live in two places: the ``migration_execution_logs`` table (plus
the per-batch ``migration_control`` rows, rendered as entries) and
append-only JSON-lines files under ``LOG_DIR``. ``LogRepository`` unions
every backend, de-duplicates, sorts newest-first, then filters and paginates.
"""
from __future__ import annotations

import asyncio
import json
import math
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diffsync.exceptions import (
    InvalidQueryParametersError,
    InvalidSessionIdError,
    InvalidTimestampError,
    LogRetrievalTimeoutError,
    SessionNotFoundError,
)
from diffsync.models import MigrationControl, MigrationExecutionLog
from diffsync.schemas import (
    LogEntry,
    LogFilters,
    LogPage,
    LogPagination,
    LogSearchResponse,
    LogSearchResults,
    LogSearchSummary,
    LogStats,
    LogStatsSummary,
    LogTimeRange,
)
from diffsync.timestamps import as_utc, parse_timestamp

log = structlog.get_logger(__name__)

LEVELS = ("debug", "info", "warn", "error")
_SESSION_ID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I
)
_TEXT_LINE = re.compile(
    r"(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\s+\[?(\w+)\]?\s+(.*)"
)


def is_valid_session_id(session_id: str) -> bool:
    return bool(session_id and _SESSION_ID.match(session_id))


def _normalize_level(raw: Any) -> str:
    level = str(raw or "info").lower()
    if level == "warning":
        return "warn"
    return level if level in LEVELS else "info"


def normalize_entry(raw: Mapping[str, Any]) -> LogEntry:
    """Build a LogEntry from the loosely shaped dicts found in log files."""
    session_id = raw.get("sessionId") or raw.get("session_id")
    ts = raw.get("timestamp") or raw.get("created_at")
    timestamp = as_utc(datetime.fromisoformat(str(ts).replace("Z", "+00:00"))) if ts else datetime.now(timezone.utc)
    return LogEntry(
        log_id=str(raw.get("logId") or raw.get("id") or uuid.uuid4()),
        timestamp=timestamp,
        level=_normalize_level(raw.get("level")),
        session_id=session_id,
        entity_type=raw.get("entityType") or raw.get("entity_type"),
        batch_number=raw.get("batchNumber") if raw.get("batchNumber") is not None else raw.get("batch_number"),
        message=raw.get("message") or raw.get("msg") or raw.get("event") or "Log entry",
        details=raw.get("details") or raw.get("data"),
        performance=raw.get("performance") or raw.get("perf"),
        context=raw.get("context") or {"sessionId": session_id},
    )


# ── Backends ──────────────────────────────────────────────────────────────────

class LogBackend(ABC):
    name: str = "backend"
    writable: bool = True

    @abstractmethod
    async def append(self, entry: LogEntry) -> None: ...

    @abstractmethod
    async def read(self, session_id: str) -> List[LogEntry]: ...

    @abstractmethod
    async def has_session(self, session_id: str) -> bool: ...


class InMemoryLogBackend(LogBackend):
    name = "memory"

    def __init__(self, entries: Iterable[LogEntry] = ()):
        self.entries: List[LogEntry] = list(entries)

    async def append(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    async def read(self, session_id: str) -> List[LogEntry]:
        return [e for e in self.entries if e.session_id == session_id]

    async def has_session(self, session_id: str) -> bool:
        return any(e.session_id == session_id for e in self.entries)


class DatabaseLogBackend(LogBackend):
    name = "database"

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker

    async def append(self, entry: LogEntry) -> None:
        async with self.sessionmaker() as db:
            db.add(
                MigrationExecutionLog(
                    id=entry.log_id,
                    session_id=entry.session_id,
                    timestamp=entry.timestamp,
                    level=entry.level,
                    entity_type=entry.entity_type,
                    batch_number=entry.batch_number,
                    message=entry.message,
                    details=entry.details,
                    performance=entry.performance,
                    context=entry.context,
                )
            )
            await db.commit()

    async def read(self, session_id: str) -> List[LogEntry]:
        async with self.sessionmaker() as db:
            logs = (
                await db.execute(
                    select(MigrationExecutionLog)
                    .where(MigrationExecutionLog.session_id == session_id)
                    .order_by(MigrationExecutionLog.timestamp.desc())
                )
            ).scalars().all()
            batches = (
                await db.execute(
                    select(MigrationControl)
                    .where(MigrationControl.session_id == session_id)
                    .order_by(MigrationControl.created_at.desc())
                )
            ).scalars().all()
        return [self._from_log_row(r) for r in logs] + [self._from_control_row(r) for r in batches]

    async def has_session(self, session_id: str) -> bool:
        async with self.sessionmaker() as db:
            for model in (MigrationControl, MigrationExecutionLog):
                count = (
                    await db.execute(
                        select(func.count()).select_from(model).where(model.session_id == session_id)
                    )
                ).scalar_one()
                if count:
                    return True
        return False

    @staticmethod
    def _from_log_row(row: MigrationExecutionLog) -> LogEntry:
        return LogEntry(
            log_id=row.id,
            timestamp=as_utc(row.timestamp),
            level=_normalize_level(row.level),
            session_id=row.session_id,
            entity_type=row.entity_type,
            batch_number=row.batch_number,
            message=row.message,
            details=row.details,
            performance=row.performance,
            context=row.context or {"sessionId": row.session_id},
        )

    @staticmethod
    def _from_control_row(row: MigrationControl) -> LogEntry:
        if row.status == "completed":
            message = "Batch completed successfully"
        elif row.status == "failed":
            message = row.error_message or "Batch processing failed"
        elif row.status == "running":
            message = "Batch processing started"
        else:
            message = f"Batch status: {row.status}"

        duration_ms = None
        if row.started_at and row.completed_at:
            duration_ms = int((as_utc(row.completed_at) - as_utc(row.started_at)).total_seconds() * 1000)

        timestamp = row.completed_at or row.created_at or row.started_at
        return LogEntry(
            log_id=f"control-{row.id}",
            timestamp=as_utc(timestamp) if timestamp else datetime.now(timezone.utc),
            level="error" if row.status == "failed" else "info",
            session_id=row.session_id,
            entity_type=row.entity_type,
            batch_number=row.batch_number,
            message=message,
            details={
                "status": row.status,
                "recordsProcessed": row.records_processed,
                "recordsFailed": row.records_failed,
                "errorMessage": row.error_message,
                "errorDetails": row.error_details,
            },
            performance={"durationMs": duration_ms, "recordsProcessed": row.records_processed},
            context={"sessionId": row.session_id, "batchId": row.id},
        )


class FileLogBackend(LogBackend):
    """Append-only JSON-lines files, one per session, under ``log_dir``.

    Reads pick up any ``*.log`` / ``*.json`` file whose name carries the
    session id, so text logs dropped there by other tools are merged too.
    """
    name = "file"

    def __init__(self, log_dir: str | os.PathLike):
        self.log_dir = Path(log_dir)

    def path_for(self, session_id: str) -> Path:
        return self.log_dir / f"migration-{session_id}.log"

    def _write(self, entry: LogEntry) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        line = entry.model_dump_json(by_alias=True, exclude_none=True)
        with open(self.path_for(entry.session_id), "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def append(self, entry: LogEntry) -> None:
        await asyncio.to_thread(self._write, entry)

    def _files_for(self, session_id: str) -> List[Path]:
        if not self.log_dir.is_dir():
            return []
        return sorted(
            p for p in self.log_dir.iterdir()
            if p.is_file() and session_id in p.name and p.suffix in (".log", ".json")
        )

    def _read(self, session_id: str) -> List[LogEntry]:
        entries: List[LogEntry] = []
        for path in self._files_for(session_id):
            with open(path, encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    entry = self.parse_line(line, session_id)
                    if entry is not None:
                        entries.append(entry)
        return entries

    async def read(self, session_id: str) -> List[LogEntry]:
        return await asyncio.to_thread(self._read, session_id)

    async def has_session(self, session_id: str) -> bool:
        return bool(await asyncio.to_thread(self._files_for, session_id))

    @staticmethod
    def parse_line(line: str, session_id: str) -> Optional[LogEntry]:
        line = line.strip()
        if not line:
            return None
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            raw = None

        if isinstance(raw, dict):
            if (raw.get("sessionId") or raw.get("session_id")) != session_id:
                return None
            try:
                return normalize_entry(raw)
            except ValueError:
                log.warning("logs.file.unparseable_entry", session_id=session_id)
                return None

        match = _TEXT_LINE.match(line)
        if not match or session_id not in line:
            return None
        try:
            timestamp = as_utc(datetime.fromisoformat(match.group(1).replace("Z", "+00:00")))
        except ValueError:
            return None
        return LogEntry(
            log_id=str(uuid.uuid4()),
            timestamp=timestamp,
            level=_normalize_level(match.group(2)),
            session_id=session_id,
            message=match.group(3),
            context={"sessionId": session_id},
        )


# ── Query validation ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogQuery:
    filters: LogFilters
    limit: int
    offset: int
    format: str = "json"
    download: bool = False


def _parse_bool(raw: str) -> Optional[bool]:
    lowered = raw.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    return None


def _parse_window(
    params: Mapping[str, Optional[str]], errors: List[str], default_limit: int, max_limit: int
) -> Tuple[int, int]:
    limit = default_limit
    if params.get("limit") is not None:
        try:
            limit = int(params["limit"])
        except ValueError:
            limit = -1
        if not 1 <= limit <= max_limit:
            errors.append(f"limit must be a number between 1 and {max_limit}")

    offset = 0
    if params.get("offset") is not None:
        try:
            offset = int(params["offset"])
        except ValueError:
            offset = -1
        if offset < 0:
            errors.append("offset must be a non-negative number")
    return limit, offset


def validate_log_query(
    params: Mapping[str, Optional[str]],
    default_limit: int = 100,
    max_limit: int = 1000,
) -> LogQuery:
    """Validate raw query-string values, collecting every violation."""
    errors: List[str] = []

    level = params.get("level")
    if level is not None and level not in LEVELS:
        errors.append(f"level must be one of: {', '.join(LEVELS)}")

    limit, offset = _parse_window(params, errors, default_limit, max_limit)

    times: Dict[str, Optional[datetime]] = {"startTime": None, "endTime": None}
    for key in times:
        if params.get(key) is not None:
            try:
                times[key] = parse_timestamp(params[key])
            except InvalidTimestampError:
                errors.append(f"{key} must be a valid ISO timestamp")
    if times["startTime"] and times["endTime"] and times["startTime"] > times["endTime"]:
        errors.append("startTime must not be after endTime")

    fmt = params.get("format") or "json"
    if fmt not in ("json", "text"):
        errors.append("format must be either json or text")

    download = False
    if params.get("download") is not None:
        parsed = _parse_bool(params["download"])
        if parsed is None:
            errors.append("download must be a boolean")
        else:
            download = parsed

    entity_type = params.get("entityType")
    if entity_type is not None and not entity_type.strip():
        errors.append("entityType must not be empty")

    if errors:
        raise InvalidQueryParametersError(errors)

    return LogQuery(
        filters=LogFilters(
            level=level,
            entity_type=entity_type,
            start_time=times["startTime"],
            end_time=times["endTime"],
        ),
        limit=limit,
        offset=offset,
        format=fmt,
        download=download,
    )


SEARCH_TYPES = ("message", "recordId", "context")


@dataclass(frozen=True)
class LogSearchQuery:
    text: str
    search_type: str
    case_sensitive: bool
    limit: int
    offset: int


def validate_search_query(
    params: Mapping[str, Optional[str]],
    default_limit: int = 100,
    max_limit: int = 1000,
) -> LogSearchQuery:
    errors: List[str] = []

    text = params.get("q")
    if text is None or not text.strip():
        errors.append('search query parameter "q" is required')

    search_type = params.get("type") or "message"
    if search_type not in SEARCH_TYPES:
        errors.append(f"type must be one of: {', '.join(SEARCH_TYPES)}")

    case_sensitive = False
    if params.get("caseSensitive") is not None:
        parsed = _parse_bool(params["caseSensitive"])
        if parsed is None:
            errors.append("caseSensitive must be a boolean")
        else:
            case_sensitive = parsed

    limit, offset = _parse_window(params, errors, default_limit, max_limit)

    if errors:
        raise InvalidQueryParametersError(errors)
    return LogSearchQuery(text, search_type, case_sensitive, limit, offset)


def _record_ids(value: Any) -> Iterable[str]:
    """Every ``recordId`` value nested anywhere in ``value``."""
    if isinstance(value, Mapping):
        for key, item in value.items():
            if key in ("recordId", "record_id") and item is not None:
                yield str(item)
            else:
                yield from _record_ids(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _record_ids(item)


# ── Rendering ─────────────────────────────────────────────────────────────────

def render_text(entries: Sequence[LogEntry]) -> str:
    blocks = []
    for e in entries:
        line = f"{e.timestamp.isoformat()} [{e.level.upper()}]"
        if e.entity_type:
            line += f" [{e.entity_type}]"
        if e.batch_number is not None:
            line += f" [Batch {e.batch_number}]"
        line += f" {e.message}"
        if e.details:
            line += f"\n  Details: {json.dumps(e.details, default=str)}"
        if e.performance:
            line += f"\n  Performance: {json.dumps(e.performance, default=str)}"
        blocks.append(line)
    return "\n\n".join(blocks)


def download_filename(session_id: str, today: Optional[date] = None) -> str:
    day = (today or datetime.now(timezone.utc).date()).isoformat()
    return f"migration-logs-{session_id}-{day}.log"


# ── Repository ────────────────────────────────────────────────────────────────

class LogRepository:
    def __init__(
        self,
        backends: Sequence[LogBackend],
        read_timeout: float = 30.0,
        download_cap: int = 10_000,
    ):
        self.backends = list(backends)
        self.read_timeout = read_timeout
        self.download_cap = download_cap

    async def record(self, entry: LogEntry) -> None:
        for backend in self.backends:
            if not backend.writable:
                continue
            try:
                await backend.append(entry)
            except (OSError, SQLAlchemyError) as exc:
                log.warning("logs.sink.failed", sink=backend.name, session_id=entry.session_id, error=str(exc))

    async def log(
        self,
        session_id: str,
        level: str,
        message: str,
        entity_type: Optional[str] = None,
        batch_number: Optional[int] = None,
        details: Any = None,
        performance: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> LogEntry:
        entry = LogEntry(
            log_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            level=level,
            session_id=session_id,
            entity_type=entity_type,
            batch_number=batch_number,
            message=message,
            details=details,
            performance=performance,
            context={"sessionId": session_id, **context},
        )
        await self.record(entry)
        return entry

    async def session_exists(self, session_id: str) -> bool:
        for backend in self.backends:
            if await backend.has_session(session_id):
                return True
        return False

    async def _collect(self, session_id: str) -> List[LogEntry]:
        try:
            batches = await asyncio.wait_for(
                asyncio.gather(*(b.read(session_id) for b in self.backends)),
                timeout=self.read_timeout,
            )
        except asyncio.TimeoutError:
            raise LogRetrievalTimeoutError(f"Reading logs for {session_id} exceeded {self.read_timeout}s") from None

        seen = set()
        merged: List[LogEntry] = []
        for entries in batches:
            for entry in entries:
                key = (entry.timestamp, entry.message, entry.session_id)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(entry)
        merged.sort(key=lambda e: e.timestamp, reverse=True)
        return merged

    @staticmethod
    def _matches(entry: LogEntry, filters: LogFilters) -> bool:
        if filters.level and entry.level != filters.level:
            return False
        if filters.entity_type and entry.entity_type != filters.entity_type:
            return False
        if filters.start_time and entry.timestamp < filters.start_time:
            return False
        if filters.end_time and entry.timestamp > filters.end_time:
            return False
        return True

    async def _require_session(self, session_id: str) -> None:
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(
                {"providedId": session_id, "expectedFormat": "UUID (e.g. 550e8400-e29b-41d4-a716-446655440000)"}
            )
        if not await self.session_exists(session_id):
            raise SessionNotFoundError(f"Migration session not found: {session_id}")

    async def get_logs(self, session_id: str, query: LogQuery) -> LogPage:
        await self._require_session(session_id)
        everything = await self._collect(session_id)
        matching = [e for e in everything if self._matches(e, query.filters)]
        page = matching[query.offset:query.offset + query.limit]
        log.info(
            "logs.retrieved", session_id=session_id,
            total=len(everything), filtered=len(matching), returned=len(page),
        )
        return LogPage(
            session_id=session_id,
            total_logs=len(everything),
            filtered_logs=len(matching),
            logs=page,
            pagination=LogPagination(
                limit=query.limit,
                offset=query.offset,
                has_more=query.offset + query.limit < len(matching),
                total_pages=math.ceil(len(matching) / query.limit),
                current_page=query.offset // query.limit + 1,
            ),
            filters=query.filters,
        )

    async def export(self, session_id: str, query: LogQuery) -> List[LogEntry]:
        """All matching entries up to the download cap, ignoring pagination."""
        await self._require_session(session_id)
        everything = await self._collect(session_id)
        return [e for e in everything if self._matches(e, query.filters)][: self.download_cap]

    async def stats(self, session_id: str) -> LogStats:
        await self._require_session(session_id)
        everything = await self._collect(session_id)
        total = len(everything)
        levels = Counter(e.level for e in everything)
        entities = Counter(e.entity_type for e in everything if e.entity_type)
        services = Counter(e.context.get("service") for e in everything if e.context.get("service"))

        time_range = None
        per_minute = 0.0
        if everything:
            # newest-first after _collect
            time_range = LogTimeRange(earliest=everything[-1].timestamp, latest=everything[0].timestamp)
            span_minutes = (time_range.latest - time_range.earliest).total_seconds() / 60
            if total > 1 and span_minutes > 0:
                per_minute = round(total / span_minutes, 2)

        return LogStats(
            session_id=session_id,
            total_entries=total,
            log_levels={level: levels.get(level, 0) for level in LEVELS},
            entities=dict(entities),
            services=dict(services),
            time_range=time_range,
            summary=LogStatsSummary(
                error_rate=round(levels.get("error", 0) / total * 100, 2) if total else 0.0,
                warning_rate=round(levels.get("warn", 0) / total * 100, 2) if total else 0.0,
                most_active_entity=entities.most_common(1)[0][0] if entities else "none",
                avg_logs_per_minute=per_minute,
            ),
        )

    async def search(self, session_id: str, query: LogSearchQuery) -> LogSearchResponse:
        t0 = time.monotonic()
        await self._require_session(session_id)
        everything = await self._collect(session_id)
        needle = query.text if query.case_sensitive else query.text.lower()

        def haystacks(entry: LogEntry) -> List[str]:
            if query.search_type == "recordId":
                return list(_record_ids(entry.details)) + list(_record_ids(entry.context))
            if query.search_type == "context":
                return [json.dumps(entry.context, default=str, sort_keys=True)]
            return [entry.message]

        matches = [
            e for e in everything
            if any(needle in (h if query.case_sensitive else h.lower()) for h in haystacks(e))
        ]
        page = matches[query.offset:query.offset + query.limit]
        log.info(
            "logs.searched", session_id=session_id, search_type=query.search_type,
            scanned=len(everything), matches=len(matches),
        )
        return LogSearchResponse(
            session_id=session_id,
            search_query=query.text,
            search_type=query.search_type,
            case_sensitive=query.case_sensitive,
            results=LogSearchResults(
                logs=page,
                total_matches=len(matches),
                returned=len(page),
                has_more=query.offset + query.limit < len(matches),
            ),
            summary=LogSearchSummary(
                search_time_ms=int((time.monotonic() - t0) * 1000),
                match_rate=round(len(matches) / len(everything) * 100, 2) if everything else 0.0,
                total_scanned=len(everything),
            ),
        )
