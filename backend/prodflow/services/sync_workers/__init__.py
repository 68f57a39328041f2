"""Sync run bookkeeping for the stock/price sync.

- Only one fresh run per tenant (row lock on sync_state + heartbeat).
- Per-tenant enable flag and a global kill switch.
- Durable page queue (sync_page_task) with an explicit page cursor.
- Structured run events in sync_worker_log.

Runs are started by the HTTP trigger endpoints in ``prodflow.routers.sync``
(external cron) or by the in-process loop in ``prodflow.workers.sync_loop``.
"""

from .scheduler import run_cycle_for_all_tenants
