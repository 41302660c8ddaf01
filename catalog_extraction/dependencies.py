from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request

from .config import AppSettings, load_settings
from .persistence import PersistenceStore, RecordStore
from .resources import ResourceRegistry
from .services.extraction.client import ExtractionClient
from .services.extraction.scheduler import ExtractionScheduler
from .services.extraction.schemas import SchemaRegistry, SchemaSnapshot
from .services.extraction.store import RowStore

logger = logging.getLogger(__name__)


@dataclass
class ExtractionContext:
    settings: AppSettings
    registry: SchemaRegistry
    resources: ResourceRegistry
    store: RowStore
    client: ExtractionClient
    scheduler: ExtractionScheduler

    async def add_allowed_value(self, key: str, value: str) -> SchemaSnapshot:
        snapshot = self.registry.add_allowed_value(key, value)
        await self.store.save_schema()
        return snapshot


async def build_context(
    settings: AppSettings,
    *,
    persistence: Optional[PersistenceStore] = None,
    client: Optional[ExtractionClient] = None,
) -> ExtractionContext:
    registry = SchemaRegistry()
    resources = ResourceRegistry()
    store = RowStore(registry, resources, persistence or RecordStore(settings.store_path))
    await store.load()
    client = client or ExtractionClient.from_settings(settings)
    if not settings.vision_api_key:
        logger.warning("VISION_API_KEY is not set; extraction requests will be rejected")
    scheduler = ExtractionScheduler(store, client, resources, concurrency=settings.extraction_concurrency)
    return ExtractionContext(
        settings=settings,
        registry=registry,
        resources=resources,
        store=store,
        client=client,
        scheduler=scheduler,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = getattr(app.state, "settings", None) or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.state.context = await build_context(settings)
    yield


def get_context(request: Request) -> ExtractionContext:
    return request.app.state.context
