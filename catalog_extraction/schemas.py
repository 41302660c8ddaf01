from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

AttributeInput = Union[str, int, float, None]


class SchemaItemModel(BaseModel):
    key: str = Field(min_length=1)
    label: str = ""
    type: str = Field(default="text", pattern="^(text|number|select)$")
    allowed_values: List[str] = Field(default_factory=list)
    required: bool = False
    description: Optional[str] = None


class SchemaReplaceRequest(BaseModel):
    items: List[SchemaItemModel]


class AllowedValueRequest(BaseModel):
    value: str = Field(min_length=1)


class AttributeEditRequest(BaseModel):
    value: AttributeInput = None


class BulkEditRequest(BaseModel):
    job_ids: List[str] = Field(min_length=1)
    key: str
    value: AttributeInput = None


class ReextractRequest(BaseModel):
    job_ids: List[str] = Field(min_length=1)


class RunRequest(BaseModel):
    concurrency: Optional[int] = Field(default=None, ge=1, le=100)


class RunResponse(BaseModel):
    started: bool
    pending: int
    concurrency: int


class ProgressResponse(BaseModel):
    running: bool
    progress: int
    completed: int
    total: int
    last_summary: Optional[Dict[str, Any]] = Field(default=None)


class StatsResponse(BaseModel):
    total: int
    pending: int
    extracting: int
    done: int
    error: int
    success_rate: int
    total_tokens: int = 0
    total_processing_ms: int = 0
    average_processing_ms: int = 0
