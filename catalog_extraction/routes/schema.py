from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..dependencies import ExtractionContext, get_context
from ..schemas import AllowedValueRequest, SchemaReplaceRequest
from ..services.extraction.errors import InvalidSchemaError, UnknownKeyError
from ..services.extraction.schemas import SchemaItem

router = APIRouter(prefix="/schema", tags=["schema"])


@router.get("")
async def get_schema(ctx: ExtractionContext = Depends(get_context)) -> List[Dict[str, Any]]:
    return ctx.registry.to_dicts()


@router.get("/discoveries")
async def list_discoveries(
    min_frequency: int = Query(2, ge=1),
    min_confidence: int = Query(75, ge=0, le=100),
    ctx: ExtractionContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    """New-discovery values seen across Done jobs, best promotion candidates first."""
    discoveries = ctx.store.discoveries(min_frequency=min_frequency, min_confidence=min_confidence)
    return [discovery.to_dict() for discovery in discoveries]


@router.put("")
async def replace_schema(
    request: SchemaReplaceRequest,
    ctx: ExtractionContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    items = [
        SchemaItem(
            key=item.key.strip(),
            label=item.label or item.key,
            type=item.type,
            allowed_values=tuple(item.allowed_values),
            required=item.required,
            description=item.description,
        )
        for item in request.items
    ]
    try:
        ctx.registry.replace(items)
    except InvalidSchemaError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    await ctx.store.save_schema()
    return ctx.registry.to_dicts()


@router.post("/{key}/values")
async def add_allowed_value(
    key: str,
    request: AllowedValueRequest,
    ctx: ExtractionContext = Depends(get_context),
) -> Dict[str, Any]:
    try:
        await ctx.add_allowed_value(key, request.value.strip())
    except UnknownKeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    item = ctx.registry.find(key)
    return item.to_dict() if item else {}
