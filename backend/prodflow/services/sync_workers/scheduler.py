from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy import new_session
from prodflow.utils.logger import logger

from .state import is_sync_globally_enabled


async def run_cycle_for_all_tenants(
    db_factory: Optional[Callable[[], Session]] = None,
    *,
    api_client=None,
    budget_seconds: Optional[float] = None,
    triggered_by: str = "scheduler",
) -> Dict[str, Any]:
    """Run one sync cycle for every tenant with credentials.

    Tokens are refreshed first so page tasks do not start with an access
    token about to expire, then runs are started and the queue drained with
    up to MAX_CONCURRENT_TENANTS pages in flight.
    """
    from prodflow.services.meli_token_provider import run_token_refresh_job
    from prodflow.services.sync_orchestrator import meli_client_session, orchestrate

    factory = db_factory or new_session

    async with meli_client_session(api_client) as client:
        db = factory()
        try:
            logger.info("Running token refresh job before sync cycle...")
            token_summary = await run_token_refresh_job(db, client, triggered_by=triggered_by)

            if not is_sync_globally_enabled(db):
                logger.info("Global sync_enabled=false - skipping cycle for all tenants")
                return {"status": "disabled", "token_refresh": token_summary}
        finally:
            db.close()

        result = await orchestrate(
            factory,
            budget_seconds=budget_seconds,
            workers=settings.MAX_CONCURRENT_TENANTS,
            api_client=client,
            triggered_by=triggered_by,
        )

    return {"status": "completed", "token_refresh": token_summary, **result}
