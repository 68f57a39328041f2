"""Durable page queue for sync runs.

A full page of listings schedules the next page as a new ``SyncPageTask``
row instead of recursing in-process. Tasks are claimed one at a time; a task
left ``running`` by a crashed worker becomes claimable again once it is older
than ``RUN_STALE_MINUTES``.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy.sync_workers import SyncPageTask
from prodflow.utils.logger import logger


STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _find_task(db: Session, sync_run_id: str, page: int) -> Optional[SyncPageTask]:
    return (
        db.query(SyncPageTask)
        .filter(SyncPageTask.sync_run_id == sync_run_id, SyncPageTask.page == page)
        .one_or_none()
    )


def enqueue_page(db: Session, *, sync_run_id: str, tenant_id: str, page: int) -> SyncPageTask:
    """Queue ``page`` of a run; returns the existing task if already queued."""

    existing = _find_task(db, sync_run_id, page)
    if existing is not None:
        logger.info("[queue] run=%s page=%s already queued (status=%s)", sync_run_id, page, existing.status)
        return existing

    task = SyncPageTask(
        id=str(uuid4()),
        sync_run_id=sync_run_id,
        tenant_id=tenant_id,
        page=page,
        status=STATUS_PENDING,
        attempts=0,
        created_at=_now_utc(),
    )
    db.add(task)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent enqueue of the same page.
        db.rollback()
        existing = _find_task(db, sync_run_id, page)
        if existing is None:
            raise
        return existing
    db.refresh(task)
    logger.info("[queue] Enqueued run=%s tenant=%s page=%s", sync_run_id, tenant_id, page)
    return task


def claim_next_task(db: Session) -> Optional[SyncPageTask]:
    """Mark the oldest claimable task running and return it."""

    stale_cutoff = _now_utc() - timedelta(minutes=settings.RUN_STALE_MINUTES)
    query = (
        db.query(SyncPageTask)
        .filter(
            or_(
                SyncPageTask.status == STATUS_PENDING,
                and_(SyncPageTask.status == STATUS_RUNNING, SyncPageTask.started_at < stale_cutoff),
            )
        )
        .order_by(SyncPageTask.created_at, SyncPageTask.page)
    )
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)

    task = query.first()
    if task is None:
        db.commit()
        return None

    if task.status == STATUS_RUNNING:
        logger.warning("[queue] Reclaiming stale task id=%s run=%s page=%s", task.id, task.sync_run_id, task.page)

    return start_task(db, task)


def start_task(db: Session, task: SyncPageTask) -> SyncPageTask:
    task.status = STATUS_RUNNING
    task.attempts = (task.attempts or 0) + 1
    task.started_at = _now_utc()
    task.finished_at = None
    db.commit()
    db.refresh(task)
    return task


def complete_task(db: Session, task: SyncPageTask, *, summary: Optional[dict] = None) -> None:
    task.status = STATUS_COMPLETED
    task.finished_at = _now_utc()
    task.last_error = None
    if summary is not None:
        task.summary_json = summary
    db.commit()


def fail_task(db: Session, task: SyncPageTask, *, error: str, retry: bool = True) -> bool:
    """Record a failure; requeue until MAX_PAGE_ATTEMPTS.

    Returns True when the task is now permanently failed.
    """

    task.last_error = error[:2000]
    if retry and (task.attempts or 0) < settings.MAX_PAGE_ATTEMPTS:
        task.status = STATUS_PENDING
        task.started_at = None
        db.commit()
        logger.warning(
            "[queue] task id=%s page=%s failed (attempt %s/%s), requeued: %s",
            task.id, task.page, task.attempts, settings.MAX_PAGE_ATTEMPTS, error,
        )
        return False

    task.status = STATUS_FAILED
    task.finished_at = _now_utc()
    db.commit()
    logger.error("[queue] task id=%s page=%s failed permanently: %s", task.id, task.page, error)
    return True


def defer_task(db: Session, task: SyncPageTask, *, reason: str) -> None:
    """Put a claimed task back without counting the attempt (budget ran out)."""

    task.status = STATUS_PENDING
    task.attempts = max(0, (task.attempts or 0) - 1)
    task.started_at = None
    task.last_error = reason
    db.commit()
    logger.info("[queue] Deferred task id=%s page=%s: %s", task.id, task.page, reason)


def pending_count(db: Session) -> int:
    return db.query(SyncPageTask).filter(SyncPageTask.status == STATUS_PENDING).count()
