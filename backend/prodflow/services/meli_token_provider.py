"""MercadoLibre access tokens for the sync engine.

Single path for obtaining a usable access token for a tenant:

1. load the tenant's ``MeliCredential`` (tokens are decrypted by the model);
2. refresh through ``POST /oauth/token`` when the token is missing or expires
   within ``TOKEN_REFRESH_THRESHOLD_MINUTES``;
3. persist the rotated refresh token and the new expiry, and write one
   ``meli_token_refresh_log`` row per refresh attempt.

``TenantTokenSource`` is what the API client holds; it raises
``TokenRefreshError`` instead of returning error results so the sync driver
can abort the tenant's run.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import httpx
from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy.models import MeliCredential
from prodflow.models_sqlalchemy.sync_workers import MeliTokenRefreshLog
from prodflow.services.errors import MeliApiError, TokenRefreshError
from prodflow.utils.logger import logger


@dataclass
class MeliTokenResult:
    """Result of token retrieval for one tenant."""

    success: bool
    tenant_id: Optional[str] = None

    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    source: Literal["existing", "refreshed", "none"] = "none"

    # SHA256 fingerprint, never the raw token
    token_hash: Optional[str] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _compute_token_hash(token: str) -> str:
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def _normalize_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _expires_soon(credential: MeliCredential, now: datetime, threshold_minutes: int) -> bool:
    expires_at = _normalize_datetime(credential.expires_at)
    if expires_at is None:
        return True
    return (expires_at - now).total_seconds() < threshold_minutes * 60


def get_credential(db: Session, tenant_id: str) -> Optional[MeliCredential]:
    return db.query(MeliCredential).filter(MeliCredential.tenant_id == tenant_id).one_or_none()


async def refresh_credential(
    db: Session,
    credential: MeliCredential,
    api_client,
    *,
    triggered_by: str = "sync",
) -> MeliTokenResult:
    """Exchange the stored refresh token and persist the outcome.

    Always commits: either the new tokens, or ``refresh_error`` plus the failed
    log row.
    """

    now = datetime.now(timezone.utc)
    tenant_id = credential.tenant_id
    log_row = MeliTokenRefreshLog(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        started_at=now,
        old_expires_at=credential.expires_at,
        triggered_by=triggered_by,
    )
    db.add(log_row)

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    payload: Dict[str, Any] = {}

    refresh_token = credential.refresh_token
    if not refresh_token:
        error_code, error_message = "no_refresh_token", "credential has no usable refresh token"
    else:
        try:
            payload = await api_client.exchange_refresh_token(refresh_token)
        except ValueError as exc:
            error_code, error_message = "missing_app_credentials", str(exc)
        except MeliApiError as exc:
            error_code = "invalid_grant" if exc.status_code in (400, 401) else "refresh_failed"
            error_message = f"{exc} body={exc.body}"
        except httpx.TransportError as exc:
            error_code, error_message = "network_error", f"{type(exc).__name__}: {exc}"

    finished = datetime.now(timezone.utc)
    log_row.finished_at = finished

    if error_code:
        credential.refresh_error = error_message
        log_row.success = False
        log_row.error_code = error_code
        log_row.error_message = error_message
        db.commit()
        logger.warning(
            "[meli_token] Refresh failed: tenant=%s code=%s triggered_by=%s",
            tenant_id, error_code, triggered_by,
        )
        return MeliTokenResult(
            success=False,
            tenant_id=tenant_id,
            error_code=error_code,
            error_message=error_message,
        )

    access_token = payload["access_token"]
    expires_in = int(payload.get("expires_in") or 21600)
    new_expires_at = finished + timedelta(seconds=expires_in)

    credential.access_token = access_token
    # ML rotates refresh tokens; keep the old one only if none came back.
    if payload.get("refresh_token"):
        credential.refresh_token = payload["refresh_token"]
    if payload.get("user_id") is not None:
        credential.meli_user_id = str(payload["user_id"])
    credential.expires_at = new_expires_at
    credential.last_refreshed_at = finished
    credential.refresh_error = None

    log_row.success = True
    log_row.new_expires_at = new_expires_at
    db.commit()

    token_hash = _compute_token_hash(access_token)
    logger.info(
        "[meli_token] Refreshed: tenant=%s token_hash=%s expires_at=%s triggered_by=%s",
        tenant_id, token_hash, new_expires_at.isoformat(), triggered_by,
    )
    return MeliTokenResult(
        success=True,
        tenant_id=tenant_id,
        access_token=access_token,
        expires_at=new_expires_at,
        source="refreshed",
        token_hash=token_hash,
    )


async def get_valid_access_token(
    db: Session,
    tenant_id: str,
    api_client,
    *,
    force_refresh: bool = False,
    triggered_by: str = "sync",
) -> MeliTokenResult:
    """Return a usable access token for ``tenant_id``, refreshing if needed."""

    now = datetime.now(timezone.utc)
    credential = get_credential(db, tenant_id)
    if credential is None:
        return MeliTokenResult(
            success=False,
            tenant_id=tenant_id,
            error_code="no_credentials",
            error_message=f"tenant {tenant_id} has no MercadoLibre credentials",
        )

    access_token = credential.access_token
    needs_refresh = (
        force_refresh
        or not access_token
        or _expires_soon(credential, now, settings.TOKEN_REFRESH_THRESHOLD_MINUTES)
    )

    if not needs_refresh:
        return MeliTokenResult(
            success=True,
            tenant_id=tenant_id,
            access_token=access_token,
            expires_at=_normalize_datetime(credential.expires_at),
            source="existing",
            token_hash=_compute_token_hash(access_token),
        )

    logger.info(
        "[meli_token] Refreshing token: tenant=%s force=%s triggered_by=%s",
        tenant_id, force_refresh, triggered_by,
    )
    return await refresh_credential(db, credential, api_client, triggered_by=triggered_by)


class TenantTokenSource:
    """Token holder bound to one tenant for the lifetime of a sync invocation.

    ``refresh`` is serialized: when several in-flight updates get a 401 at the
    same time only the first one exchanges the refresh token, the rest reuse
    the token it obtained. A failed refresh is remembered and re-raised to
    every later caller instead of hitting the OAuth endpoint again.
    """

    def __init__(self, db: Session, tenant_id: str, api_client, *, triggered_by: str = "sync"):
        self.db = db
        self.tenant_id = tenant_id
        self.api_client = api_client
        self.triggered_by = triggered_by
        self._access_token: Optional[str] = None
        self._failure: Optional[TokenRefreshError] = None
        self._lock = asyncio.Lock()

    def _raise_for(self, result: MeliTokenResult) -> None:
        self._access_token = None
        self._failure = TokenRefreshError(
            self.tenant_id,
            result.error_message or "token refresh failed",
            error_code=result.error_code or "refresh_failed",
        )
        raise self._failure

    async def get(self) -> str:
        if self._access_token:
            return self._access_token
        async with self._lock:
            if self._failure is not None:
                raise self._failure
            if self._access_token:
                return self._access_token
            result = await get_valid_access_token(
                self.db, self.tenant_id, self.api_client, triggered_by=self.triggered_by
            )
            if not result.success:
                self._raise_for(result)
            self._access_token = result.access_token
            return self._access_token

    async def refresh(self, stale_token: Optional[str] = None) -> str:
        async with self._lock:
            if self._failure is not None:
                raise self._failure
            if stale_token and self._access_token and self._access_token != stale_token:
                return self._access_token
            result = await get_valid_access_token(
                self.db,
                self.tenant_id,
                self.api_client,
                force_refresh=True,
                triggered_by=self.triggered_by,
            )
            if not result.success:
                self._raise_for(result)
            self._access_token = result.access_token
            return self._access_token


async def run_token_refresh_job(
    db: Session,
    api_client,
    *,
    triggered_by: str = "scheduled",
    threshold_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    """Refresh every credential that expires within the threshold.

    One tenant's failure is recorded and does not stop the others.
    """

    threshold = settings.TOKEN_REFRESH_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes
    now = datetime.now(timezone.utc)

    credentials: List[MeliCredential] = db.query(MeliCredential).order_by(MeliCredential.tenant_id).all()
    due = [c for c in credentials if _expires_soon(c, now, threshold)]

    if not due:
        logger.info("[meli_token] No credentials need refresh (checked=%s)", len(credentials))
        return {"status": "completed", "accounts_checked": len(credentials), "accounts_refreshed": 0, "errors": []}

    refreshed = 0
    errors: List[Dict[str, Any]] = []
    for credential in due:
        try:
            result = await refresh_credential(db, credential, api_client, triggered_by=triggered_by)
        except Exception as exc:
            db.rollback()
            logger.error("[meli_token] Unexpected refresh error: tenant=%s error=%s", credential.tenant_id, exc)
            errors.append({"tenant_id": credential.tenant_id, "error": str(exc)})
            continue
        if result.success:
            refreshed += 1
        else:
            errors.append({
                "tenant_id": credential.tenant_id,
                "error_code": result.error_code,
                "error": result.error_message,
            })

    logger.info(
        "[meli_token] Refresh job done: checked=%s due=%s refreshed=%s errors=%s",
        len(credentials), len(due), refreshed, len(errors),
    )
    return {
        "status": "completed",
        "accounts_checked": len(credentials),
        "accounts_refreshed": refreshed,
        "errors": errors,
    }
