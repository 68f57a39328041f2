"""Per-tenant stock/price sync, one listing page at a time.

Pipeline for a page: aggregate the tenant's stock -> expand virtual SKUs ->
load the listing page -> diff and push. A full page queues the next one in
``sync_page_task``; a short page finishes the run.

Fatal tenant errors (``TokenRefreshError``, ``SyncConfigurationError``) fail
the tenant's run and never reach other tenants.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy import new_session
from prodflow.models_sqlalchemy.sync_workers import SyncPageTask, SyncRun
from prodflow.services import prodflow_store
from prodflow.services.errors import SyncConfigurationError, TokenRefreshError
from prodflow.services.listing_sync import ListingSyncDriver, SyncSummary
from prodflow.services.meli_api_client import MeliApiClient
from prodflow.services.meli_token_provider import TenantTokenSource, get_credential
from prodflow.services.stock_aggregator import load_and_aggregate
from prodflow.services.sync_workers import logger as run_log
from prodflow.services.sync_workers.queue import (
    STATUS_COMPLETED,
    STATUS_RUNNING,
    claim_next_task,
    complete_task,
    defer_task,
    enqueue_page,
    fail_task,
    pending_count,
    start_task,
)
from prodflow.services.sync_workers.runs import complete_run, fail_run, get_active_run, heartbeat, start_run
from prodflow.services.sync_workers.state import (
    get_or_create_sync_state,
    is_sync_globally_enabled,
    mark_sync_page_result,
)
from prodflow.services.virtual_sku_engine import PricingRules, build_virtual_sku_map
from prodflow.utils.logger import logger


DbFactory = Callable[[], Session]

# Lists kept in sync_run.summary_json are capped.
MAX_SUMMARY_ITEMS = 200


@dataclass
class PageResult:
    tenant_id: str
    page: int
    success: bool = True
    summary: SyncSummary = field(default_factory=SyncSummary)
    listings: int = 0
    has_more: bool = False
    deferred: bool = False
    skipped_skus: int = 0
    sync_run_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def next_page(self) -> Optional[int]:
        return self.page + 1 if self.has_more else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "tenant_id": self.tenant_id,
            "sync_run_id": self.sync_run_id,
            "page": self.page,
            "next_page": self.next_page,
            "has_more": self.has_more,
            "listings": self.listings,
            "deferred": self.deferred,
            "skipped_skus": self.skipped_skus,
            "error": self.error,
            **self.summary.to_dict(),
        }


def _deadline(budget_seconds: Optional[float]) -> float:
    budget = settings.EXECUTION_BUDGET_SECONDS if budget_seconds is None else budget_seconds
    return time.monotonic() + budget


@asynccontextmanager
async def meli_client_session(api_client: Optional[MeliApiClient] = None):
    """Yield ``api_client``, or a client over a fresh ``httpx.AsyncClient``."""
    if api_client is not None:
        yield api_client
        return
    async with httpx.AsyncClient(timeout=30.0) as http:
        yield MeliApiClient(http)


async def run_tenant_page(
    db: Session,
    tenant_id: str,
    page: int,
    *,
    api_client: MeliApiClient,
    sync_run_id: Optional[str] = None,
    deadline: Optional[float] = None,
) -> PageResult:
    """Aggregate, expand and sync one page of the tenant's listings.

    Returns a deferred result (nothing written) when the deadline is hit
    while loading stock.
    """

    result = PageResult(tenant_id=tenant_id, page=page, sync_run_id=sync_run_id)

    if get_credential(db, tenant_id) is None:
        raise SyncConfigurationError(tenant_id, "no MercadoLibre credentials")

    rules = PricingRules.from_row(prodflow_store.load_pricing_rules(db, tenant_id))
    if rules.default_markup is None:
        raise SyncConfigurationError(tenant_id, "no default markup configured")

    aggregation = load_and_aggregate(db, tenant_id, deadline)
    if aggregation is None:
        result.deferred = True
        result.success = False
        result.error = "deadline reached while loading stock"
        return result
    result.skipped_skus = len(aggregation.skipped_skus)

    virtual_map = build_virtual_sku_map(aggregation, rules, tenant_id)

    batch_size = settings.SYNC_BATCH_SIZE
    listings = prodflow_store.load_listing_page(db, tenant_id, page, batch_size)
    result.listings = len(listings)
    result.has_more = len(listings) == batch_size

    tokens = TenantTokenSource(db, tenant_id, api_client)
    driver = ListingSyncDriver(api_client.with_token_source(tokens))
    result.summary = await driver.sync_listings(db, tenant_id, listings, virtual_map)

    logger.info(
        "[sync] tenant=%s page=%s listings=%s updated=%s failed=%s has_more=%s",
        tenant_id, page, result.listings, result.summary.updated, result.summary.failed, result.has_more,
    )
    return result


def _merge_run_summary(current: Optional[dict], page: PageResult) -> dict:
    merged = dict(current or {})
    for key in ("processed", "updated", "unchanged", "failed", "skipped"):
        merged[key] = int(merged.get(key, 0)) + getattr(page.summary, key)
    merged["pages"] = int(merged.get("pages", 0)) + 1
    merged["warnings"] = (list(merged.get("warnings", [])) + page.summary.warnings)[:MAX_SUMMARY_ITEMS]
    merged["errors"] = (list(merged.get("errors", [])) + page.summary.errors)[:MAX_SUMMARY_ITEMS]
    return merged


def start_tenant_sync(
    db: Session,
    tenant_id: str,
    *,
    triggered_by: str = "orchestrator",
    enqueue_first_page: bool = True,
) -> Optional[SyncRun]:
    """Start a run for ``tenant_id`` and queue page 0.

    Returns None when syncing is disabled for the tenant or a fresh run is
    already in progress.
    """

    state = get_or_create_sync_state(db, tenant_id=tenant_id)
    if not state.enabled:
        logger.info("[sync] tenant=%s sync disabled, not starting a run", tenant_id)
        return None

    run = start_run(db, tenant_id=tenant_id, triggered_by=triggered_by)
    if run is None:
        return None

    state.cursor_page = 0
    db.commit()
    run_log.log_start(db, run_id=run.id, tenant_id=tenant_id, triggered_by=triggered_by,
                      batch_size=settings.SYNC_BATCH_SIZE)
    if enqueue_first_page:
        enqueue_page(db, sync_run_id=run.id, tenant_id=tenant_id, page=0)
    return run


async def process_task(
    db: Session,
    task: SyncPageTask,
    *,
    api_client: MeliApiClient,
    deadline: Optional[float] = None,
) -> PageResult:
    """Run a claimed page task and advance its run."""

    tenant_id = task.tenant_id
    page = task.page
    run = db.get(SyncRun, task.sync_run_id)

    if run is None or run.status != "running":
        fail_task(db, task, error="run is no longer active", retry=False)
        return PageResult(tenant_id=tenant_id, page=page, success=False, sync_run_id=task.sync_run_id,
                          error="run is no longer active")

    heartbeat(db, run)
    state = get_or_create_sync_state(db, tenant_id=tenant_id)

    try:
        result = await run_tenant_page(
            db, tenant_id, page, api_client=api_client, sync_run_id=run.id, deadline=deadline,
        )
    except (TokenRefreshError, SyncConfigurationError) as exc:
        db.rollback()
        message = f"{type(exc).__name__}: {exc}"
        fail_task(db, task, error=message, retry=False)
        mark_sync_page_result(db, state, next_page=None, error=message)
        run_log.log_error(db, run_id=run.id, tenant_id=tenant_id, message=message, stage="fatal", page=page)
        fail_run(db, run, error_message=message)
        return PageResult(tenant_id=tenant_id, page=page, success=False, sync_run_id=run.id, error=message)
    except Exception as exc:
        db.rollback()
        logger.error("[sync] tenant=%s page=%s failed: %s", tenant_id, page, exc, exc_info=True)
        message = str(exc) or type(exc).__name__
        final = fail_task(db, task, error=message)
        mark_sync_page_result(db, state, next_page=None, error=message)
        run_log.log_error(db, run_id=run.id, tenant_id=tenant_id, message=message, stage="page", page=page)
        if final:
            fail_run(db, run, error_message=f"page {page} failed: {message}", summary=run.summary_json)
        return PageResult(tenant_id=tenant_id, page=page, success=False, sync_run_id=run.id, error=message)

    if result.deferred:
        defer_task(db, task, reason=result.error or "deferred")
        return result

    run.summary_json = _merge_run_summary(run.summary_json, result)
    complete_task(db, task, summary=result.to_dict())
    run_log.log_page(db, run_id=run.id, tenant_id=tenant_id, page=page,
                     summary=result.summary.to_dict(), has_more=result.has_more)

    if result.has_more:
        enqueue_page(db, sync_run_id=run.id, tenant_id=tenant_id, page=page + 1)
        mark_sync_page_result(db, state, next_page=page + 1)
        heartbeat(db, run)
    else:
        mark_sync_page_result(db, state, next_page=0)
        run_log.log_done(db, run_id=run.id, tenant_id=tenant_id, pages=page + 1, summary=run.summary_json)
        complete_run(db, run, summary=run.summary_json)

    return result


async def sync_tenant(
    db: Session,
    tenant_id: str,
    page: Optional[int] = None,
    *,
    api_client: Optional[MeliApiClient] = None,
    budget_seconds: Optional[float] = None,
    triggered_by: str = "manual",
) -> Dict[str, Any]:
    """Process one page for one tenant now (default: page 0 of a new run).

    A page that was already processed for the active run is not processed
    again; its stored summary is returned.
    """

    if not is_sync_globally_enabled(db):
        return {"success": False, "tenant_id": tenant_id, "error": "sync is globally disabled"}

    run = get_active_run(db, tenant_id=tenant_id)
    if run is None:
        run = start_tenant_sync(db, tenant_id, triggered_by=triggered_by, enqueue_first_page=False)
    if run is None:
        return {"success": False, "tenant_id": tenant_id, "error": "sync is disabled for this tenant"}

    page = 0 if page is None else page
    task = enqueue_page(db, sync_run_id=run.id, tenant_id=tenant_id, page=page)
    if task.status == STATUS_COMPLETED:
        return {"success": True, "tenant_id": tenant_id, "sync_run_id": run.id, "page": page,
                "duplicate": True, "summary": task.summary_json}
    if task.status == STATUS_RUNNING:
        return {"success": False, "tenant_id": tenant_id, "sync_run_id": run.id, "page": page,
                "error": "page is already being processed"}

    task = start_task(db, task)
    async with meli_client_session(api_client) as client:
        result = await process_task(db, task, api_client=client, deadline=_deadline(budget_seconds))
    return result.to_dict()


async def _drain_worker(
    db_factory: DbFactory,
    client: MeliApiClient,
    deadline: float,
    results: List[PageResult],
) -> None:
    while time.monotonic() < deadline:
        db = db_factory()
        try:
            task = claim_next_task(db)
            if task is None:
                return
            results.append(await process_task(db, task, api_client=client, deadline=deadline))
        finally:
            db.close()


async def drain_queue(
    db_factory: Optional[DbFactory] = None,
    budget_seconds: Optional[float] = None,
    *,
    workers: int = 1,
    api_client: Optional[MeliApiClient] = None,
) -> Dict[str, Any]:
    """Process queued pages until the queue is empty or the budget is spent."""

    factory = db_factory or new_session
    deadline = _deadline(budget_seconds)
    results: List[PageResult] = []

    async with meli_client_session(api_client) as client:
        await asyncio.gather(*(
            _drain_worker(factory, client, deadline, results) for _ in range(max(1, workers))
        ))

    db = factory()
    try:
        remaining = pending_count(db)
    finally:
        db.close()

    errors = [
        {"tenant_id": r.tenant_id, "page": r.page, "error": r.error}
        for r in results
        if not r.success and not r.deferred
    ]
    logger.info("[sync] Drain finished: pages=%s errors=%s pending=%s", len(results), len(errors), remaining)
    return {
        "pages_processed": len(results),
        "pending": remaining,
        "errors": errors,
        "pages": [r.to_dict() for r in results],
    }


def run_all_tenants(db_factory: Optional[DbFactory] = None, *, triggered_by: str = "orchestrator") -> Dict[str, Any]:
    """Start a run for every tenant with credentials.

    One tenant failing to start is recorded and the others continue.
    """

    factory = db_factory or new_session
    db = factory()
    try:
        if not is_sync_globally_enabled(db):
            logger.info("[sync] Global sync_enabled=false, skipping all tenants")
            return {"success": True, "disabled": True, "tenants": 0, "started": [], "skipped": [], "errors": []}
        tenant_ids = prodflow_store.tenants_with_credentials(db)
    finally:
        db.close()

    started: List[Dict[str, str]] = []
    skipped: List[str] = []
    errors: List[Dict[str, str]] = []

    for tenant_id in tenant_ids:
        db = factory()
        try:
            run = start_tenant_sync(db, tenant_id, triggered_by=triggered_by)
            if run is None:
                skipped.append(tenant_id)
            else:
                started.append({"tenant_id": tenant_id, "sync_run_id": run.id})
        except Exception as exc:
            db.rollback()
            logger.error("[sync] Could not start run for tenant=%s: %s", tenant_id, exc, exc_info=True)
            errors.append({"tenant_id": tenant_id, "error": str(exc)})
        finally:
            db.close()

    logger.info(
        "[sync] Orchestrator: tenants=%s started=%s skipped=%s errors=%s",
        len(tenant_ids), len(started), len(skipped), len(errors),
    )
    return {
        "success": True,
        "disabled": False,
        "tenants": len(tenant_ids),
        "started": started,
        "skipped": skipped,
        "errors": errors,
    }


async def orchestrate(
    db_factory: Optional[DbFactory] = None,
    *,
    budget_seconds: Optional[float] = None,
    workers: Optional[int] = None,
    api_client: Optional[MeliApiClient] = None,
    triggered_by: str = "orchestrator",
) -> Dict[str, Any]:
    """Start runs for all tenants, then drain the queue within the budget."""

    runs = run_all_tenants(db_factory, triggered_by=triggered_by)
    drained = await drain_queue(
        db_factory,
        budget_seconds,
        workers=workers or settings.MAX_CONCURRENT_TENANTS,
        api_client=api_client,
    )
    return {
        **runs,
        "errors": runs["errors"] + drained["errors"],
        "pages_processed": drained["pages_processed"],
        "pending": drained["pending"],
        "pages": drained["pages"],
    }
