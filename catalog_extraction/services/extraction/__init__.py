"""
Image attribute extraction pipeline.

This module provides:
- SchemaRegistry holding the ordered attribute definitions
- ExtractionClient calling the vision model with a retry policy
- RowStore owning every Job and persisting terminal ones
- ExtractionScheduler running pending jobs with bounded concurrency
"""

from .client import ExtractionClient
from .models import AttributeDetail, ExtractionOutcome, Job
from .retry import RetryPolicy
from .scheduler import ExtractionScheduler, JobCompletion, RunSummary
from .schemas import DEFAULT_SCHEMA, SchemaItem, SchemaRegistry
from .store import Discovery, ExportSnapshot, RowStore

__all__ = [
    "AttributeDetail",
    "DEFAULT_SCHEMA",
    "Discovery",
    "ExportSnapshot",
    "ExtractionClient",
    "ExtractionOutcome",
    "ExtractionScheduler",
    "Job",
    "JobCompletion",
    "RetryPolicy",
    "RowStore",
    "RunSummary",
    "SchemaItem",
    "SchemaRegistry",
]
