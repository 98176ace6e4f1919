from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
import structlog

from diffsync.auth import require_api_key
from diffsync.exceptions import LogRetrievalFailedError, classify
from diffsync.repositories.logs import (
    LogRepository,
    download_filename,
    render_text,
    validate_log_query,
    validate_search_query,
)
from diffsync.schemas import LogPage, LogSearchResponse, LogStats

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/migration",
    tags=["logs"],
    dependencies=[Depends(require_api_key)],
)


def get_log_repository(request: Request) -> LogRepository:
    return request.app.state.log_repository


async def _classified(session_id: str, call):
    try:
        return await call
    except Exception as exc:
        error = classify(exc, fallback=LogRetrievalFailedError)
        if error is not exc:
            log.error("logs.retrieval.failed", session_id=session_id, error=str(exc))
            raise error from exc
        raise


@router.get("/logs/{session_id}", response_model=LogPage)
async def get_logs(
    request: Request,
    session_id: str,
    level: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    start_time: Optional[str] = Query(default=None, alias="startTime"),
    end_time: Optional[str] = Query(default=None, alias="endTime"),
    entity_type: Optional[str] = Query(default=None, alias="entityType"),
    format: Optional[str] = None,
    download: Optional[str] = None,
    logs: LogRepository = Depends(get_log_repository),
):
    # Raw strings: every violation is reported at once, not just the first.
    settings = request.app.state.settings
    query = validate_log_query(
        {
            "level": level,
            "limit": limit,
            "offset": offset,
            "startTime": start_time,
            "endTime": end_time,
            "entityType": entity_type,
            "format": format,
            "download": download,
        },
        default_limit=settings.LOG_DEFAULT_LIMIT,
        max_limit=settings.LOG_MAX_LIMIT,
    )

    if query.download:
        entries = await _classified(session_id, logs.export(session_id, query))
        return PlainTextResponse(
            render_text(entries),
            headers={"Content-Disposition": f'attachment; filename="{download_filename(session_id)}"'},
        )

    page = await _classified(session_id, logs.get_logs(session_id, query))
    if query.format == "text":
        return PlainTextResponse(render_text(page.logs))
    return page


@router.get("/logs/{session_id}/stats", response_model=LogStats)
async def get_log_stats(session_id: str, logs: LogRepository = Depends(get_log_repository)):
    return await _classified(session_id, logs.stats(session_id))


@router.get("/logs/{session_id}/search", response_model=LogSearchResponse)
async def search_logs(
    request: Request,
    session_id: str,
    q: Optional[str] = None,
    type: Optional[str] = None,
    case_sensitive: Optional[str] = Query(default=None, alias="caseSensitive"),
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    logs: LogRepository = Depends(get_log_repository),
):
    settings = request.app.state.settings
    query = validate_search_query(
        {"q": q, "type": type, "caseSensitive": case_sensitive, "limit": limit, "offset": offset},
        default_limit=settings.LOG_DEFAULT_LIMIT,
        max_limit=settings.LOG_MAX_LIMIT,
    )
    return await _classified(session_id, logs.search(session_id, query))
