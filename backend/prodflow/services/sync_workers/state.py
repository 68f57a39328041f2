from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from prodflow.models_sqlalchemy.sync_workers import SyncGlobalConfig, SyncState


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_or_create_global_config(db: Session) -> SyncGlobalConfig:
    cfg = db.query(SyncGlobalConfig).first()
    if cfg:
        return cfg
    cfg = SyncGlobalConfig(id=str(uuid4()), sync_enabled=True)
    db.add(cfg)
    db.commit()
    db.refresh(cfg)
    return cfg


def is_sync_globally_enabled(db: Session) -> bool:
    cfg = get_or_create_global_config(db)
    return bool(cfg.sync_enabled)


def set_sync_globally_enabled(db: Session, enabled: bool) -> SyncGlobalConfig:
    cfg = get_or_create_global_config(db)
    cfg.sync_enabled = enabled
    cfg.updated_at = _now_utc()
    db.commit()
    db.refresh(cfg)
    return cfg


def get_or_create_sync_state(db: Session, *, tenant_id: str) -> SyncState:
    state = db.query(SyncState).filter(SyncState.tenant_id == tenant_id).first()
    if state:
        return state

    state = SyncState(
        id=str(uuid4()),
        tenant_id=tenant_id,
        enabled=True,
        cursor_page=0,
        last_run_at=None,
        last_error=None,
    )
    db.add(state)
    db.commit()
    db.refresh(state)
    return state


def mark_sync_page_result(
    db: Session,
    state: SyncState,
    *,
    next_page: Optional[int],
    error: Optional[str] = None,
) -> None:
    """Update sync state after a page.

    - If error is None: move the cursor to ``next_page`` (0 once the run is
      finished) and clear last_error.
    - If error is not None: record last_error but keep the cursor as-is so the
      same page is retried.
    """

    state.last_run_at = _now_utc()
    if error:
        state.last_error = error
    else:
        state.last_error = None
        state.cursor_page = next_page or 0
    state.updated_at = _now_utc()
    db.commit()
