from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile

from ..dependencies import ExtractionContext, get_context
from ..schemas import AttributeEditRequest, BulkEditRequest, ReextractRequest, StatsResponse
from ..services.extraction.errors import InvalidTransitionError, UnknownJobError, UnknownKeyError
from ..services.extraction.models import DONE, ERROR, EXTRACTING, PENDING
from ..services.ingestion import ingest_uploads
from .helpers import format_job_row

router = APIRouter(prefix="/jobs", tags=["jobs"])

_STATUSES = {PENDING, EXTRACTING, DONE, ERROR}


@router.post("")
async def upload_images(
    files: Optional[List[UploadFile]] = File(None),
    file: Optional[UploadFile] = File(None),
    ctx: ExtractionContext = Depends(get_context),
) -> Dict[str, Any]:
    uploads: List[UploadFile] = []
    if files:
        uploads.extend(files)
    if file:
        uploads.append(file)
    results = await ingest_uploads(
        ctx.store,
        ctx.resources,
        uploads,
        skip_duplicates=ctx.settings.skip_duplicate_names,
    )
    queued = sum(1 for result in results if result["status"] == "queued")
    return {"queued": queued, "skipped": len(results) - queued, "results": results}


@router.get("")
async def list_jobs(
    status: Optional[str] = Query(None),
    ctx: ExtractionContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    if status is not None and status not in _STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    predicate = (lambda job: job.status == status) if status else None
    return [format_job_row(job, ctx.resources) for job in ctx.store.list(predicate)]


@router.get("/stats", response_model=StatsResponse)
async def job_stats(ctx: ExtractionContext = Depends(get_context)) -> StatsResponse:
    return StatsResponse(**ctx.store.stats())


@router.delete("")
async def clear_jobs(ctx: ExtractionContext = Depends(get_context)) -> Dict[str, Any]:
    if ctx.scheduler.is_running:
        raise HTTPException(status_code=409, detail="Cannot clear jobs while extraction is running")
    removed = await ctx.store.clear()
    return {"status": "cleared", "removed": removed}


@router.post("/reextract")
async def reextract_jobs(
    request: ReextractRequest,
    ctx: ExtractionContext = Depends(get_context),
) -> Dict[str, Any]:
    try:
        jobs = await ctx.store.request_reextract(request.job_ids)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "queued", "jobs": [format_job_row(job, ctx.resources) for job in jobs]}


@router.post("/bulk-edit")
async def bulk_edit(
    request: BulkEditRequest,
    ctx: ExtractionContext = Depends(get_context),
) -> Dict[str, Any]:
    try:
        updated = await ctx.store.apply_bulk_edit(request.job_ids, request.key, request.value)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UnknownKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "updated", "updated": updated, "key": request.key}


@router.delete("/{job_id}")
async def delete_job(job_id: str, ctx: ExtractionContext = Depends(get_context)) -> Dict[str, Any]:
    try:
        await ctx.store.delete(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted", "job_id": job_id}


@router.patch("/{job_id}/attributes/{key}")
async def update_attribute(
    job_id: str,
    key: str,
    request: AttributeEditRequest,
    ctx: ExtractionContext = Depends(get_context),
) -> Dict[str, Any]:
    try:
        job = await ctx.store.update_attribute(job_id, key, request.value)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UnknownKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return format_job_row(job, ctx.resources)


@router.get("/{job_id}/preview")
async def job_preview(job_id: str, ctx: ExtractionContext = Depends(get_context)) -> Response:
    try:
        job = ctx.store.get(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    resource = ctx.resources.get(job.preview_ref)
    if resource is None:
        raise HTTPException(status_code=404, detail="Preview is no longer available")
    return Response(content=resource.data, media_type=resource.media_type)
