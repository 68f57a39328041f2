"""Stock/price sync background loop.

Runs the sync scheduler every SYNC_LOOP_INTERVAL_SECONDS: token refresh,
then a run for every tenant with credentials, then draining the page queue
within the execution budget.

The main FastAPI app starts it on startup when RUN_SYNC_LOOP is enabled;
deployments driven by an external cron call ``POST /api/sync/orchestrate``
instead.

A heartbeat is recorded in the BackgroundWorker table with
worker_name="sync_loop" so it is visible when the loop last ran and whether
it appears stale.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy import new_session
from prodflow.models_sqlalchemy.sync_workers import BackgroundWorker
from prodflow.services.sync_workers import run_cycle_for_all_tenants
from prodflow.utils.logger import logger



WORKER_NAME = "sync_loop"


def _get_or_create_worker_row(db: Session, interval_seconds: int) -> Optional[BackgroundWorker]:
    try:
        worker = (
            db.query(BackgroundWorker)
            .filter(BackgroundWorker.worker_name == WORKER_NAME)
            .one_or_none()
        )
        if worker is None:
            worker = BackgroundWorker(
                id=str(uuid.uuid4()),
                worker_name=WORKER_NAME,
                interval_seconds=interval_seconds,
            )
            db.add(worker)
            db.commit()
            db.refresh(worker)
        return worker
    except Exception as exc:
        db.rollback()
        logger.error("Failed to load/create BackgroundWorker row for sync_loop: %s", exc)
        return None


async def run_sync_once(db_factory=None, **kwargs) -> dict:
    """One full cycle; returns the scheduler summary."""
    return await run_cycle_for_all_tenants(db_factory, triggered_by="loop_scheduler", **kwargs)


async def run_sync_loop(interval_seconds: Optional[int] = None, db_factory=None, max_cycles: Optional[int] = None) -> None:
    interval = interval_seconds or settings.SYNC_LOOP_INTERVAL_SECONDS
    factory = db_factory or new_session
    logger.info("Sync loop started (interval=%s seconds)", interval)

    db = factory()
    worker_row = _get_or_create_worker_row(db, interval)
    if worker_row is not None:
        worker_row.interval_seconds = interval
        db.commit()

    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            if worker_row is not None:
                worker_row.last_started_at = datetime.now(timezone.utc)
                worker_row.last_status = "running"
                worker_row.last_error_message = None
                db.commit()

            try:
                await run_sync_once(factory)
            except Exception as exc:
                logger.error("Sync cycle failed: %s", exc, exc_info=True)
                if worker_row is not None:
                    worker_row.last_status = "error"
                    worker_row.last_error_message = str(exc)[:2000]
                    worker_row.last_finished_at = datetime.now(timezone.utc)
                    worker_row.runs_ok_in_row = 0
                    worker_row.runs_error_in_row = (worker_row.runs_error_in_row or 0) + 1
                    db.commit()
            else:
                if worker_row is not None:
                    worker_row.last_finished_at = datetime.now(timezone.utc)
                    worker_row.last_status = "ok"
                    worker_row.runs_ok_in_row = (worker_row.runs_ok_in_row or 0) + 1
                    worker_row.runs_error_in_row = 0
                    db.commit()

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(interval)
    finally:
        db.close()
