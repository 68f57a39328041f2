from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text, UniqueConstraint, Index
from sqlalchemy.sql import func

from prodflow.models_sqlalchemy import Base, JSONType


class SyncState(Base):
    """Per-tenant sync switch and page cursor.

    ``cursor_page`` is the next listing page to process for the current run so
    a restarted worker resumes where the previous one stopped.
    """

    __tablename__ = "sync_state"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False, unique=True, index=True)

    enabled = Column(Boolean, nullable=False, server_default="true", default=True)
    cursor_page = Column(Integer, nullable=False, server_default="0", default=0)

    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class SyncRun(Base):
    """One full pass over a tenant's listings (all pages).

    Used for locking (only one fresh running run per tenant) and for status
    reporting. ``summary_json`` accumulates the page summaries.
    """

    __tablename__ = "sync_run"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    status = Column(String(32), nullable=False, index=True)  # running, completed, error
    triggered_by = Column(String(32), nullable=False, server_default="unknown", default="unknown")

    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    summary_json = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class SyncPageTask(Base):
    """Queued unit of work: one listing page of one run.

    The unique (sync_run_id, page) pair makes enqueueing idempotent, so a page
    scheduled twice by concurrent callers is still processed once.
    """

    __tablename__ = "sync_page_task"

    id = Column(String(36), primary_key=True)
    sync_run_id = Column(String(36), ForeignKey("sync_run.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    page = Column(Integer, nullable=False)

    status = Column(String(32), nullable=False, index=True)  # pending, running, completed, failed
    attempts = Column(Integer, nullable=False, server_default="0", default=0)
    last_error = Column(Text, nullable=True)
    summary_json = Column(JSONType, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("sync_run_id", "page", name="uq_sync_page_task_run_page"),
        Index("idx_sync_page_task_status_created", "status", "created_at"),
    )


class SyncWorkerLog(Base):
    """Structured events (start, page, done, error) for sync runs."""

    __tablename__ = "sync_worker_log"

    id = Column(String(36), primary_key=True)
    run_id = Column(String(36), ForeignKey("sync_run.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    event_type = Column(String(32), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    details_json = Column(JSONType, nullable=True)


class SyncGlobalConfig(Base):
    """Single-row kill switch for every sync run (maintenance, migrations)."""

    __tablename__ = "sync_global_config"

    id = Column(String(36), primary_key=True)
    sync_enabled = Column(Boolean, nullable=False, server_default="true", default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class BackgroundWorker(Base):
    """Heartbeat + status row for long-running background loops."""

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, server_default="0", default=0)
    runs_error_in_row = Column(Integer, nullable=False, server_default="0", default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class MeliTokenRefreshLog(Base):
    """One row per attempt to renew a tenant's MercadoLibre access token."""

    __tablename__ = "meli_token_refresh_log"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    success = Column(Boolean, nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    old_expires_at = Column(DateTime(timezone=True), nullable=True)
    new_expires_at = Column(DateTime(timezone=True), nullable=True)

    triggered_by = Column(String(32), nullable=False, server_default="sync", default="sync")

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
