from __future__ import annotations

import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import AppSettings, load_settings
from .dependencies import lifespan
from .routes import extraction, jobs, schema, system


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Catalog Attribute Extraction", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin, "http://localhost", "http://127.0.0.1"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(system.router)
    app.include_router(schema.router)
    app.include_router(jobs.router)
    app.include_router(extraction.router)
    return app


def main() -> None:
    import uvicorn

    port = int(os.environ.get("BACKEND_PORT", "8000"))
    uvicorn.run("catalog_extraction.app:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
