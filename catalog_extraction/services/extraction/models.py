from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence, Union

from .errors import InvalidTransitionError
from .schemas import SchemaItem, empty_attributes

AttributeValue = Union[str, int, float, None]

PENDING = "Pending"
EXTRACTING = "Extracting"
DONE = "Done"
ERROR = "Error"

JOB_STATUSES = (PENDING, EXTRACTING, DONE, ERROR)
TERMINAL_STATUSES: FrozenSet[str] = frozenset({DONE, ERROR})

_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({EXTRACTING}),
    EXTRACTING: frozenset({DONE, ERROR}),
    DONE: frozenset({PENDING}),
    ERROR: frozenset({PENDING}),
}


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds")


def clamp_confidence(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    # clamp before int() so infinities from 1e999 map to the bounds
    return int(round(max(0.0, min(100.0, number))))


@dataclass
class AttributeDetail:
    schema_value: AttributeValue
    raw_value: Optional[str]
    is_new_discovery: bool = False
    visual_confidence: int = 0
    mapping_confidence: int = 0
    reasoning: Optional[str] = None

    @classmethod
    def user_override(cls, value: AttributeValue, previous: Optional["AttributeDetail"] = None) -> "AttributeDetail":
        """Detail for a value typed in by a user: full confidence, never a discovery."""
        if value is None:
            raw_value = None
        elif previous is not None and previous.raw_value is not None:
            raw_value = previous.raw_value
        else:
            raw_value = str(value)
        return cls(
            schema_value=value,
            raw_value=raw_value,
            is_new_discovery=False,
            visual_confidence=100,
            mapping_confidence=100,
            reasoning=previous.reasoning if previous is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_value": self.schema_value,
            "raw_value": self.raw_value,
            "is_new_discovery": self.is_new_discovery,
            "visual_confidence": self.visual_confidence,
            "mapping_confidence": self.mapping_confidence,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttributeDetail":
        return cls(
            schema_value=data.get("schema_value"),
            raw_value=data.get("raw_value"),
            is_new_discovery=bool(data.get("is_new_discovery", False)),
            visual_confidence=clamp_confidence(data.get("visual_confidence")),
            mapping_confidence=clamp_confidence(data.get("mapping_confidence")),
            reasoning=data.get("reasoning"),
        )


AttributeMap = Dict[str, Optional[AttributeDetail]]


@dataclass
class ExtractionOutcome:
    """A validated result from one successful client invocation."""
    attributes: AttributeMap
    tokens_used: int
    model_used: str
    processing_time_ms: int


@dataclass
class Job:
    id: str
    source_name: str
    preview_ref: Optional[str]
    attributes: AttributeMap
    status: str = PENDING
    error: Optional[str] = None
    error_kind: Optional[str] = None
    tokens_used: Optional[int] = None
    model_used: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def create(cls, job_id: str, source_name: str, preview_ref: Optional[str], schema: Sequence[SchemaItem]) -> "Job":
        return cls(id=job_id, source_name=source_name, preview_ref=preview_ref, attributes=empty_attributes(schema))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: str) -> None:
        if target not in _TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.id, self.status, target)
        self.status = target
        self.updated_at = utc_now()

    def start(self) -> None:
        self.transition(EXTRACTING)

    def succeed(self, outcome: ExtractionOutcome) -> None:
        self.transition(DONE)
        self.attributes = dict(outcome.attributes)
        self.tokens_used = outcome.tokens_used
        self.model_used = outcome.model_used
        self.processing_time_ms = outcome.processing_time_ms
        self.error = None
        self.error_kind = None

    def fail(self, message: str, kind: Optional[str] = None) -> None:
        # attributes from the previous successful attempt stay as last-known-good
        self.transition(ERROR)
        self.error = message
        self.error_kind = kind

    def requeue(self, schema: Sequence[SchemaItem]) -> None:
        self.transition(PENDING)
        self.attributes = empty_attributes(schema)
        self.error = None
        self.error_kind = None

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self.attributes[key] = AttributeDetail.user_override(value, self.attributes.get(key))
        self.updated_at = utc_now()

    def copy(self) -> "Job":
        data = self.to_dict()
        return Job.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_name": self.source_name,
            "preview_ref": self.preview_ref,
            "status": self.status,
            "attributes": {
                key: detail.to_dict() if detail is not None else None
                for key, detail in self.attributes.items()
            },
            "error": self.error,
            "error_kind": self.error_kind,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        raw_attributes = data.get("attributes") or {}
        return cls(
            id=str(data["id"]),
            source_name=str(data.get("source_name") or ""),
            preview_ref=data.get("preview_ref"),
            status=str(data.get("status") or PENDING),
            attributes={
                key: AttributeDetail.from_dict(value) if isinstance(value, Mapping) else None
                for key, value in raw_attributes.items()
            },
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            tokens_used=data.get("tokens_used"),
            model_used=data.get("model_used"),
            processing_time_ms=data.get("processing_time_ms"),
            created_at=str(data.get("created_at") or utc_now()),
            updated_at=str(data.get("updated_at") or utc_now()),
        )
