"""FastAPI entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from zapbridge.channels.wuzapi.router import router as wuzapi_router
from zapbridge.channels.wuzapi.session import router as session_router
from zapbridge.channels.wuzapi.storage import ensure_media_root
from zapbridge.config import get_settings, validate_settings_for_env
from zapbridge.db.migrations.runner import run_migrations
from zapbridge.logging import configure_logging
from zapbridge.routes.health import router as health_router
from zapbridge.routes.ws import router as ws_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    validate_settings_for_env(settings)
    configure_logging(settings.log_level)
    applied = run_migrations()
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))
    logger.info("Serving media from %s", ensure_media_root(settings.public_dir))
    yield


app = FastAPI(title="Zapbridge", version="0.1.0", lifespan=lifespan)

settings = get_settings()
cors_origins = [item.strip() for item in settings.web_cors_origins.split(",") if item.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(health_router)
app.include_router(wuzapi_router)
app.include_router(session_router)
app.include_router(ws_router)

# files are served under the bare names the pipelines store; lifespan creates the directory
app.mount(
    "/public",
    StaticFiles(directory=settings.public_dir, check_dir=False),
    name="public",
)


def run() -> None:
    import uvicorn

    uvicorn.run("zapbridge.main:app", host=settings.bind_host, port=settings.bind_port)
