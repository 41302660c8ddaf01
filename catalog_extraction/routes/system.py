from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..dependencies import ExtractionContext, get_context

router = APIRouter()


@router.get("/health")
async def health(ctx: ExtractionContext = Depends(get_context)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "model": ctx.settings.vision_model,
        "api_key_configured": bool(ctx.settings.vision_api_key),
        "jobs": len(ctx.store),
        "previews": len(ctx.resources),
        "extraction": ctx.scheduler.snapshot(),
    }


@router.get("/export")
async def export(ctx: ExtractionContext = Depends(get_context)) -> Dict[str, Any]:
    return ctx.store.export_snapshot().to_dict()
