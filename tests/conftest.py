from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence

import pytest

from catalog_extraction.persistence import MemoryRecordStore
from catalog_extraction.resources import ResourceRegistry
from catalog_extraction.services.extraction.models import AttributeDetail, ExtractionOutcome
from catalog_extraction.services.extraction.schemas import SchemaItem, SchemaRegistry
from catalog_extraction.services.extraction.store import RowStore

IMAGE_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 8


def response_payload(schema: Sequence[SchemaItem], **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for item in schema:
        value = item.allowed_values[0] if item.allowed_values else ("180" if item.type == "number" else "plain")
        payload[item.key] = {
            "schemaValue": value,
            "rawValue": value,
            "isNewDiscovery": False,
            "visualConfidence": 90,
            "mappingConfidence": 80,
        }
    payload.update(overrides)
    return payload


def chat_response(content: Optional[str], *, tokens: int = 120, model: str = "gpt-4o") -> SimpleNamespace:
    message = SimpleNamespace(content=content)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(total_tokens=tokens),
        model=model,
    )


class ScriptedCompletions:
    """Stand-in for ``AsyncOpenAI().chat.completions`` replaying a script of results."""

    def __init__(self, script: List[Any]) -> None:
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        result = self.script.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class ScriptedLLM:
    def __init__(self, script: List[Any]) -> None:
        self.completions = ScriptedCompletions(script)
        self.chat = SimpleNamespace(completions=self.completions)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeExtractor:
    """Duck-typed client for scheduler tests; fails for source names in ``failures``."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None, delay: float = 0.01) -> None:
        self.failures = failures or {}
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self.calls: List[str] = []
        self.discover: Dict[str, str] = {}

    async def extract(self, image: bytes, schema: Sequence[SchemaItem], *, media_type: str = "image/jpeg", label: Optional[str] = None) -> ExtractionOutcome:
        self.calls.append(label or "")
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if label in self.failures:
                raise self.failures[label]
            attributes = {
                item.key: AttributeDetail(schema_value="x", raw_value="x", visual_confidence=90, mapping_confidence=90)
                for item in schema
            }
            for key, value in self.discover.items():
                attributes[key] = AttributeDetail(
                    schema_value=value, raw_value=value, is_new_discovery=True, visual_confidence=90
                )
            return ExtractionOutcome(attributes=attributes, tokens_used=50, model_used="fake", processing_time_ms=10)
        finally:
            self.in_flight -= 1


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry()


@pytest.fixture
def resources() -> ResourceRegistry:
    return ResourceRegistry()


@pytest.fixture
def persistence() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def store(registry: SchemaRegistry, resources: ResourceRegistry, persistence: MemoryRecordStore) -> RowStore:
    return RowStore(registry, resources, persistence)
