"""Health and readiness routes."""

import logging
import os
import sqlite3
from pathlib import Path

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from zapbridge.config import get_settings
from zapbridge.db.connection import get_conn, missing_tables

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, bool]:
    return {"ok": True}


@router.get("/readyz")
async def readyz() -> JSONResponse:
    settings = get_settings()
    try:
        with get_conn() as conn:
            missing = missing_tables(conn)
    except sqlite3.Error:
        logger.exception("Readiness: database unreachable")
        db_ok = False
    else:
        if missing:
            logger.warning("Readiness: schema missing tables %s", ", ".join(missing))
        db_ok = not missing

    public_dir = Path(settings.public_dir).expanduser()
    media_ok = public_dir.is_dir() and os.access(public_dir, os.W_OK)

    ok = db_ok and media_ok
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"ok": ok, "db": db_ok, "public_dir": media_ok},
    )
