from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from fastapi import HTTPException, UploadFile

from ..resources import ResourceRegistry
from ..utils.files import guess_media_type, safe_filename
from .extraction.models import Job
from .extraction.store import RowStore

logger = logging.getLogger(__name__)

Compressor = Callable[[bytes], bytes]


def passthrough(content: bytes) -> bytes:
    return content


async def ingest_image(
    store: RowStore,
    resources: ResourceRegistry,
    content: bytes,
    filename: str,
    *,
    media_type: Optional[str] = None,
    skip_duplicates: bool = True,
    compress: Compressor = passthrough,
) -> Dict[str, Any]:
    """Register one uploaded image as a Pending job.

    The preview buffer is acquired here and owned by the job until it is
    deleted or the store is cleared.
    """
    display_name = safe_filename(filename or "upload.bin")
    if not content:
        raise ValueError(f"Uploaded file '{display_name}' is empty")

    if skip_duplicates:
        existing = store.find_by_source_name(display_name)
        if existing is not None:
            return {"job_id": existing.id, "status": "skipped", "file": display_name, "message": "Image already added"}

    preview = compress(content)
    ref = resources.acquire(preview, guess_media_type(display_name, media_type))
    job = Job.create(str(uuid4()), display_name, ref, store.registry.get())
    try:
        await store.upsert(job)
    except Exception:
        resources.release(ref)
        raise
    logger.info("Queued %s as job %s (%d bytes)", display_name, job.id, len(preview))
    return {"job_id": job.id, "status": "queued", "file": display_name}


async def ingest_uploads(
    store: RowStore,
    resources: ResourceRegistry,
    uploads: Sequence[UploadFile],
    *,
    skip_duplicates: bool = True,
) -> List[Dict[str, Any]]:
    if not uploads:
        raise HTTPException(status_code=400, detail="No files uploaded")

    # read the whole batch first so one bad file queues nothing
    batch = []
    for upload in uploads:
        content = await upload.read()
        await upload.close()
        filename = upload.filename or "upload.bin"
        if not content:
            raise HTTPException(status_code=400, detail=f"Uploaded file '{safe_filename(filename)}' is empty")
        batch.append((content, filename, upload.content_type))

    results: List[Dict[str, Any]] = []
    for content, filename, content_type in batch:
        try:
            result = await ingest_image(
                store,
                resources,
                content,
                filename,
                media_type=content_type,
                skip_duplicates=skip_duplicates,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        results.append(result)
    return results
