from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy.sync_workers import SyncRun, SyncState
from prodflow.utils.logger import logger

from .state import get_or_create_sync_state


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_run_fresh(run: SyncRun, now: Optional[datetime] = None) -> bool:
    """Running and heartbeat newer than RUN_STALE_MINUTES."""
    now = now or _now_utc()
    cutoff = now - timedelta(minutes=settings.RUN_STALE_MINUTES)
    heartbeat_at = _as_utc(run.heartbeat_at)
    return run.status == "running" and heartbeat_at is not None and heartbeat_at >= cutoff


def get_active_run(db: Session, *, tenant_id: str) -> Optional[SyncRun]:
    """Return the tenant's running run if its heartbeat is fresh."""

    run = (
        db.query(SyncRun)
        .filter(SyncRun.tenant_id == tenant_id, SyncRun.status == "running")
        .order_by(SyncRun.started_at.desc())
        .first()
    )
    if run and is_run_fresh(run):
        return run
    return None


def start_run(db: Session, *, tenant_id: str, triggered_by: str = "unknown") -> Optional[SyncRun]:
    """Start a new run if there is no fresh active run for the tenant.

    Locks the tenant's SyncState row so two callers cannot both see "no
    active run". Returns None if a fresh run is already in progress.
    """

    get_or_create_sync_state(db, tenant_id=tenant_id)
    _ = (
        db.query(SyncState)
        .filter(SyncState.tenant_id == tenant_id)
        .with_for_update()
        .first()
    )

    active = get_active_run(db, tenant_id=tenant_id)
    if active:
        logger.info(f"[sync] Run already active for tenant={tenant_id} run_id={active.id}")
        db.commit()
        return None

    # Stale running rows are closed so they stop showing up as active.
    stale = (
        db.query(SyncRun)
        .filter(SyncRun.tenant_id == tenant_id, SyncRun.status == "running")
        .all()
    )
    for old in stale:
        old.status = "error"
        old.finished_at = _now_utc()
        old.error_message = "stale: no heartbeat"

    run = SyncRun(
        id=str(uuid4()),
        tenant_id=tenant_id,
        status="running",
        triggered_by=triggered_by,
        started_at=_now_utc(),
        heartbeat_at=_now_utc(),
        summary_json=None,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    logger.info(f"[sync] Started run id={run.id} tenant={tenant_id} triggered_by={triggered_by}")
    return run


def heartbeat(db: Session, run: SyncRun) -> None:
    run.heartbeat_at = _now_utc()
    db.commit()


def complete_run(db: Session, run: SyncRun, *, summary: Optional[dict] = None) -> None:
    run.status = "completed"
    run.finished_at = _now_utc()
    run.heartbeat_at = run.finished_at
    if summary is not None:
        run.summary_json = summary
    db.commit()
    logger.info(f"[sync] Completed run id={run.id} tenant={run.tenant_id}")


def fail_run(db: Session, run: SyncRun, *, error_message: str, summary: Optional[dict] = None) -> None:
    run.status = "error"
    run.finished_at = _now_utc()
    run.heartbeat_at = run.finished_at
    run.error_message = error_message
    if summary is not None:
        run.summary_json = summary
    db.commit()
    logger.error(f"[sync] Run id={run.id} tenant={run.tenant_id} failed: {error_message}")


def list_recent_runs(db: Session, *, tenant_id: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
    query = db.query(SyncRun)
    if tenant_id:
        query = query.filter(SyncRun.tenant_id == tenant_id)
    return query.order_by(SyncRun.started_at.desc()).limit(limit).all()
