from __future__ import annotations

from typing import Any, Dict

from ..resources import ResourceRegistry
from ..services.extraction.models import Job


def format_job_row(job: Job, resources: ResourceRegistry) -> Dict[str, Any]:
    row = job.to_dict()
    row["preview_available"] = bool(job.preview_ref and job.preview_ref in resources)
    row["preview_url"] = f"/jobs/{job.id}/preview" if row["preview_available"] else None
    return row
