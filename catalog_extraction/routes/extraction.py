from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import ExtractionContext, get_context
from ..schemas import ProgressResponse, RunRequest, RunResponse
from ..services.extraction.errors import ExtractionAlreadyRunningError

router = APIRouter(prefix="/extraction", tags=["extraction"])


@router.post("/run", response_model=RunResponse)
async def run_extraction(
    request: Optional[RunRequest] = None,
    ctx: ExtractionContext = Depends(get_context),
) -> RunResponse:
    """Start extracting every Pending job in the background."""
    concurrency = (request.concurrency if request else None) or ctx.scheduler.concurrency
    pending = len(ctx.store.pending())
    if pending == 0:
        return RunResponse(started=False, pending=0, concurrency=concurrency)
    try:
        ctx.scheduler.start_background(concurrency=concurrency)
    except ExtractionAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RunResponse(started=True, pending=pending, concurrency=concurrency)


@router.get("/progress", response_model=ProgressResponse)
async def extraction_progress(ctx: ExtractionContext = Depends(get_context)) -> ProgressResponse:
    return ProgressResponse(**ctx.scheduler.snapshot())
