import asyncio
import logging
import sys
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from prodflow.config import settings
from prodflow.routers import sync
from prodflow.utils.logger import logger

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="ProdFlow Sync API", version="1.0.0")


@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("-> %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("<- %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(sync.router)


@app.on_event("startup")
async def startup_event():
    logger.info("ProdFlow sync API starting up...")
    if settings.RUN_SYNC_LOOP:
        from prodflow.workers import run_sync_loop

        asyncio.create_task(run_sync_loop())
        logger.info("Sync loop started (runs every %s seconds)", settings.SYNC_LOOP_INTERVAL_SECONDS)
    else:
        logger.info("Sync loop disabled; runs are triggered through /api/sync")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from prodflow.database import get_engine

        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )
