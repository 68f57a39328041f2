"""Diff computed SKUs against listings and push only what changed.

The last synced state stored on each ``MercadoLibreListing`` is the only
input for idempotence: a listing whose stored price, quantity and status
already match the computed target produces no marketplace call.

Marketplace calls for a batch run concurrently; results are written back
afterwards on the caller's session and committed once. One listing failing
never stops the batch. ``TokenRefreshError`` is re-raised after the
confirmed updates of the batch are persisted.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from prodflow.config import settings
from prodflow.models_sqlalchemy.models import MercadoLibreListing
from prodflow.services.errors import MeliApiError, TokenRefreshError, VariationResolutionError
from prodflow.services.meli_api_client import MeliApiClient, MeliUpdateResult
from prodflow.services.virtual_sku_engine import VirtualSku
from prodflow.utils.logger import logger
from prodflow.utils.sku import normalize_sku


STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
PRICE_TOLERANCE = Decimal("0.01")


@dataclass
class ListingDelta:
    listing_id: str
    meli_id: str
    variation_id: Optional[str]
    sku: str
    # Only the fields that differ: price, available_quantity, status.
    fields: Dict[str, Any]
    target_quantity: int
    target_status: str
    target_price: Optional[Decimal]


@dataclass
class SyncSummary:
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "SyncSummary") -> "SyncSummary":
        self.processed += other.processed
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.failed += other.failed
        self.skipped += other.skipped
        self.warnings.extend(other.warnings)
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


def _as_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def compute_listing_delta(listing: MercadoLibreListing, target: VirtualSku) -> Optional[ListingDelta]:
    """Fields of ``listing`` that must change to reach ``target``, or None."""

    unlistable = target.price == 0
    quantity = 0 if unlistable else max(0, target.stock - int(listing.safety_stock or 0))
    status = STATUS_ACTIVE if quantity > 0 else STATUS_PAUSED

    fields: Dict[str, Any] = {}
    if listing.last_synced_quantity is None or int(listing.last_synced_quantity) != quantity:
        fields["available_quantity"] = quantity

    if not unlistable:
        last_price = _as_decimal(listing.last_synced_price)
        # the marketplace raised this exact price to its minimum last time
        requested = _as_decimal(listing.last_requested_price)
        already_clamped = requested is not None and abs(requested - target.price) <= PRICE_TOLERANCE
        if not already_clamped and (last_price is None or abs(last_price - target.price) > PRICE_TOLERANCE):
            fields["price"] = target.price

    # Variations share the item status; it is only managed on plain items.
    if not listing.meli_variation_id and listing.last_synced_status != status:
        fields["status"] = status

    if not fields:
        return None

    return ListingDelta(
        listing_id=listing.id,
        meli_id=listing.meli_id,
        variation_id=listing.meli_variation_id,
        sku=target.sku,
        fields=fields,
        target_quantity=quantity,
        target_status=status,
        target_price=None if unlistable else target.price,
    )


@dataclass
class _ApplyOutcome:
    result: Optional[MeliUpdateResult]
    fields: Dict[str, Any]
    variation_id: Optional[str]


class ListingSyncDriver:
    def __init__(self, api_client: MeliApiClient, max_concurrency: Optional[int] = None):
        self.api_client = api_client
        self.max_concurrency = max_concurrency or settings.MAX_CONCURRENT_UPDATES

    async def _resolve_variation(self, listing: MercadoLibreListing) -> Optional[str]:
        return await self.api_client.get_live_variation_id(listing.meli_id, listing.sku or "")

    async def _apply(self, semaphore: asyncio.Semaphore, listing: MercadoLibreListing, delta: ListingDelta) -> _ApplyOutcome:
        async with semaphore:
            fields = dict(delta.fields)
            stored_variation = listing.meli_variation_id
            variation_id = stored_variation

            try:
                if not variation_id:
                    variation_id = await self._resolve_variation(listing)
                    if variation_id:
                        fields.pop("status", None)
                if not fields:
                    return _ApplyOutcome(None, fields, variation_id)

                result = await self.api_client.update_listing(delta.meli_id, fields, variation_id=variation_id)

                if result.variation_not_found and stored_variation:
                    live = await self._resolve_variation(listing)
                    logger.info(
                        "[listing_sync] %s variation %s unknown to marketplace, re-resolved to %s",
                        listing.meli_id, stored_variation, live,
                    )
                    if live != stored_variation:
                        variation_id = live
                        if live is None:
                            # item no longer has variations
                            fields = dict(delta.fields)
                            fields["status"] = delta.target_status
                        result = await self.api_client.update_listing(delta.meli_id, fields, variation_id=variation_id)

                return _ApplyOutcome(result, fields, variation_id)

            except (VariationResolutionError, MeliApiError, httpx.TransportError) as exc:
                return _ApplyOutcome(
                    MeliUpdateResult(success=False, error_message=str(exc)),
                    fields,
                    variation_id,
                )

    def _store_variation(self, db: Session, listing: MercadoLibreListing, variation_id: Optional[str]) -> None:
        if variation_id == listing.meli_variation_id:
            return
        # ids assigned earlier in this batch are only visible after a flush
        db.flush()
        clash = (
            db.query(MercadoLibreListing.id)
            .filter(
                MercadoLibreListing.tenant_id == listing.tenant_id,
                MercadoLibreListing.meli_id == listing.meli_id,
                MercadoLibreListing.meli_variation_id == variation_id,
                MercadoLibreListing.id != listing.id,
            )
            .first()
        )
        if clash is not None:
            logger.warning(
                "[listing_sync] %s variation %s already mapped to listing %s, keeping stored id",
                listing.meli_id, variation_id, clash[0],
            )
            return
        listing.meli_variation_id = variation_id

    def _write_back(
        self,
        db: Session,
        listing: MercadoLibreListing,
        delta: ListingDelta,
        outcome: _ApplyOutcome,
        summary: SyncSummary,
        now: datetime,
    ) -> None:
        result = outcome.result

        if result is None:
            self._store_variation(db, listing, outcome.variation_id)
            summary.unchanged += 1
            return

        if result.success:
            fields = outcome.fields
            if "price" in fields:
                if result.applied_price is not None:
                    listing.last_synced_price = result.applied_price
                    listing.last_requested_price = fields["price"]
                else:
                    listing.last_synced_price = fields["price"]
                    listing.last_requested_price = None
            if "available_quantity" in fields:
                listing.last_synced_quantity = fields["available_quantity"]
            if "status" in fields:
                listing.last_synced_status = fields["status"]
            listing.last_synced_at = now
            listing.last_sync_error = None
            self._store_variation(db, listing, outcome.variation_id)
            summary.updated += 1
            if result.warning:
                summary.warnings.append(result.warning)
            return

        listing.last_sync_error = (result.error_message or "update failed")[:2000]
        if result.skipped:
            summary.skipped += 1
            summary.warnings.append(f"{listing.meli_id} ({delta.sku}) skipped: {result.error_message}")
            return

        summary.failed += 1
        summary.errors.append({
            "listing_id": listing.id,
            "meli_id": listing.meli_id,
            "sku": delta.sku,
            "status_code": result.status_code,
            "attempts": result.attempts,
            "error": result.error_message,
        })

    async def sync_listings(
        self,
        db: Session,
        tenant_id: str,
        listings: List[MercadoLibreListing],
        virtual_map: Dict[str, VirtualSku],
    ) -> SyncSummary:
        summary = SyncSummary()
        work = []

        for listing in listings:
            summary.processed += 1
            if not listing.sync_enabled:
                summary.skipped += 1
                continue
            sku = normalize_sku(listing.sku)
            target = virtual_map.get(sku) if sku else None
            if target is None:
                # no computed data is not evidence of zero stock
                summary.skipped += 1
                continue
            delta = compute_listing_delta(listing, target)
            if delta is None:
                summary.unchanged += 1
                continue
            work.append((listing, delta))

        if not work:
            logger.info("[listing_sync] tenant=%s nothing to update (%s listings)", tenant_id, len(listings))
            return summary

        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._apply(semaphore, listing, delta) for listing, delta in work),
            return_exceptions=True,
        )

        fatal: Optional[TokenRefreshError] = None
        now = datetime.now(timezone.utc)
        for (listing, delta), outcome in zip(work, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, TokenRefreshError) and fatal is None:
                    fatal = outcome
                elif not isinstance(outcome, TokenRefreshError):
                    logger.error("[listing_sync] unexpected error on %s: %r", listing.meli_id, outcome)
                listing.last_sync_error = str(outcome)[:2000]
                summary.failed += 1
                summary.errors.append({
                    "listing_id": listing.id,
                    "meli_id": listing.meli_id,
                    "sku": delta.sku,
                    "error": str(outcome),
                })
                continue
            self._write_back(db, listing, delta, outcome, summary, now)

        db.commit()

        logger.info(
            "[listing_sync] tenant=%s processed=%s updated=%s unchanged=%s failed=%s skipped=%s",
            tenant_id, summary.processed, summary.updated, summary.unchanged, summary.failed, summary.skipped,
        )
        if fatal is not None:
            raise fatal
        return summary
