from __future__ import annotations
from typing import List
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from diffsync.auth import require_api_key
from diffsync.schemas import (
    AcceptedResponse,
    AnalysisStatus,
    DifferentialRequest,
    DifferentialResponse,
    SyncRequest,
    SyncRunSummary,
)
from diffsync.services.scheduler import SyncScheduler
from diffsync.timestamps import parse_timestamp

router = APIRouter(
    prefix="/api/migration",
    tags=["migration"],
    dependencies=[Depends(require_api_key)],
)


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


@router.post(
    "/differential",
    response_model=DifferentialResponse,
    responses={202: {"model": AcceptedResponse}},
)
async def differential(body: DifferentialRequest, scheduler: SyncScheduler = Depends(get_scheduler)):
    """Detect changes since ``sinceTimestamp`` for each requested entity.

    Large or ``asyncMode`` submissions return 202 with a status handle.
    """
    result = await scheduler.submit(body)
    if isinstance(result, AcceptedResponse):
        return JSONResponse(status_code=202, content=result.model_dump(mode="json", by_alias=True))
    return result


@router.get("/differential/status/{analysis_id}", response_model=AnalysisStatus)
async def differential_status(analysis_id: str, scheduler: SyncScheduler = Depends(get_scheduler)):
    return await scheduler.status(analysis_id)


@router.post("/sync", response_model=List[SyncRunSummary])
async def sync(body: SyncRequest, scheduler: SyncScheduler = Depends(get_scheduler)):
    since = parse_timestamp(body.since_timestamp, allow_future=False) if body.since_timestamp else None
    return await scheduler.run_sync(
        body.session_id,
        body.entities,
        since=since,
        include_deletes=body.include_deletes,
        enable_content_hashing=body.enable_content_hashing,
        batch_size=body.batch_size,
    )
