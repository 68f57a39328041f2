from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy import get_db
from prodflow.services.meli_token_provider import run_token_refresh_job
from prodflow.services.sync_orchestrator import drain_queue, meli_client_session, orchestrate, sync_tenant
from prodflow.services.sync_workers.runs import list_recent_runs
from prodflow.utils.logger import logger, meli_logger


router = APIRouter(prefix="/api/sync", tags=["sync"])


def require_internal_key(x_internal_api_key: Optional[str] = Header(default=None)) -> None:
    """Shared-secret guard for the trigger endpoints (cron, ops scripts)."""
    expected = settings.INTERNAL_API_KEY
    if expected and x_internal_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_internal_api_key")


def get_meli_client():
    """MercadoLibre client for the request; None builds one per call."""
    return None


class TenantSyncRequest(BaseModel):
    tenantId: str = Field(..., min_length=1)
    page: Optional[int] = Field(default=None, ge=0)


class DrainRequest(BaseModel):
    budget_seconds: Optional[float] = Field(default=None, gt=0)


class SyncRunItem(BaseModel):
    id: str
    tenant_id: str
    status: str
    triggered_by: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    error_message: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None


def _store_unavailable(exc: Exception) -> JSONResponse:
    logger.exception("[sync-api] store unavailable: %s", exc)
    return JSONResponse(
        {"success": False, "error": "store_unavailable", "message": str(exc)},
        status_code=500,
    )


@router.post("/orchestrate", dependencies=[Depends(require_internal_key)])
async def orchestrate_all(api_client=Depends(get_meli_client)):
    """Start runs for every tenant with credentials and drain the queue."""
    try:
        return await orchestrate(api_client=api_client, triggered_by="http")
    except SQLAlchemyError as exc:
        return _store_unavailable(exc)


@router.post("/tenant", dependencies=[Depends(require_internal_key)])
async def sync_one_tenant(
    payload: TenantSyncRequest,
    db: Session = Depends(get_db),
    api_client=Depends(get_meli_client),
):
    try:
        return await sync_tenant(db, payload.tenantId, payload.page, api_client=api_client, triggered_by="http")
    except SQLAlchemyError as exc:
        return _store_unavailable(exc)


@router.post("/queue/drain", dependencies=[Depends(require_internal_key)])
async def drain(payload: Optional[DrainRequest] = None, api_client=Depends(get_meli_client)):
    budget = payload.budget_seconds if payload else None
    try:
        return await drain_queue(budget_seconds=budget, api_client=api_client)
    except SQLAlchemyError as exc:
        return _store_unavailable(exc)


@router.post("/tokens/refresh", dependencies=[Depends(require_internal_key)])
async def refresh_tokens(db: Session = Depends(get_db), api_client=Depends(get_meli_client)):
    async with meli_client_session(api_client) as client:
        return await run_token_refresh_job(db, client, triggered_by="http")


@router.get("/runs", response_model=List[SyncRunItem], dependencies=[Depends(require_internal_key)])
async def recent_runs(
    tenant_id: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    runs = list_recent_runs(db, tenant_id=tenant_id, limit=limit)
    return [
        SyncRunItem(
            id=r.id,
            tenant_id=r.tenant_id,
            status=r.status,
            triggered_by=r.triggered_by,
            started_at=r.started_at.isoformat() if r.started_at else None,
            finished_at=r.finished_at.isoformat() if r.finished_at else None,
            heartbeat_at=r.heartbeat_at.isoformat() if r.heartbeat_at else None,
            error_message=r.error_message,
            summary=r.summary_json,
        )
        for r in runs
    ]


@router.get("/meli/logs", dependencies=[Depends(require_internal_key)])
async def meli_connection_logs(limit: int = Query(default=100, ge=1, le=1000)):
    return {"logs": meli_logger.get_logs(limit)}
