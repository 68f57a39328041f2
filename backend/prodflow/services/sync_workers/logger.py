from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from prodflow.models_sqlalchemy.sync_workers import SyncWorkerLog


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_event(
    db: Session,
    *,
    run_id: str,
    tenant_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
) -> SyncWorkerLog:
    entry = SyncWorkerLog(
        id=str(uuid4()),
        run_id=run_id,
        tenant_id=tenant_id,
        event_type=event_type,
        timestamp=_now_utc(),
        details_json=details or {},
    )
    db.add(entry)
    db.commit()
    return entry


def log_start(db: Session, *, run_id: str, tenant_id: str, triggered_by: str, batch_size: int) -> None:
    log_event(
        db,
        run_id=run_id,
        tenant_id=tenant_id,
        event_type="start",
        details={"triggered_by": triggered_by, "batch_size": batch_size},
    )


def log_page(
    db: Session,
    *,
    run_id: str,
    tenant_id: str,
    page: int,
    summary: Dict[str, Any],
    has_more: bool,
) -> None:
    log_event(
        db,
        run_id=run_id,
        tenant_id=tenant_id,
        event_type="page",
        details={"page": page, "has_more": has_more, **summary},
    )


def log_done(db: Session, *, run_id: str, tenant_id: str, pages: int, summary: Dict[str, Any]) -> None:
    log_event(
        db,
        run_id=run_id,
        tenant_id=tenant_id,
        event_type="done",
        details={"pages": pages, **summary},
    )


def log_error(
    db: Session,
    *,
    run_id: str,
    tenant_id: str,
    message: str,
    stage: Optional[str] = None,
    page: Optional[int] = None,
) -> None:
    log_event(
        db,
        run_id=run_id,
        tenant_id=tenant_id,
        event_type="error",
        details={"message": message, "stage": stage, "page": page},
    )
