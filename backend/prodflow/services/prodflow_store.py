"""Tenant-scoped reads used by the sync pipeline.

Every query filters by tenant. Large tables are read in pages of
``STORE_PAGE_SIZE`` ordered by primary key; paginated loads stop at a soft
deadline and report whether they finished.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy.orm import Query, Session

from prodflow.config import settings
from prodflow.models_sqlalchemy.models import (
    BusinessRules,
    InventoryItem,
    MeliCredential,
    MercadoLibreListing,
    Supplier,
    SupplierStockItem,
)
from prodflow.utils.logger import logger


@dataclass
class LoadResult:
    rows: List = field(default_factory=list)
    complete: bool = True


def deadline_passed(deadline: Optional[float]) -> bool:
    """``deadline`` is a ``time.monotonic()`` timestamp, or None for no limit."""
    return deadline is not None and time.monotonic() >= deadline


def _load_paginated(query: Query, order_column, deadline: Optional[float], page_size: Optional[int] = None) -> LoadResult:
    size = page_size or settings.STORE_PAGE_SIZE
    result = LoadResult()
    offset = 0
    while True:
        if deadline_passed(deadline):
            result.complete = False
            return result
        chunk = query.order_by(order_column).offset(offset).limit(size).all()
        result.rows.extend(chunk)
        if len(chunk) < size:
            return result
        offset += size


def load_inventory(db: Session, tenant_id: str, deadline: Optional[float] = None) -> LoadResult:
    query = db.query(InventoryItem).filter(InventoryItem.tenant_id == tenant_id)
    return _load_paginated(query, InventoryItem.id, deadline)


def load_suppliers(db: Session, tenant_id: str) -> List[Supplier]:
    return db.query(Supplier).filter(Supplier.tenant_id == tenant_id).order_by(Supplier.id).all()


def load_supplier_rows(db: Session, warehouse_ids: Sequence[str], deadline: Optional[float] = None) -> LoadResult:
    """Feed rows of the given warehouses only (the tenant's suppliers)."""
    if not warehouse_ids:
        return LoadResult()
    query = db.query(SupplierStockItem).filter(SupplierStockItem.warehouse_id.in_(list(warehouse_ids)))
    return _load_paginated(query, SupplierStockItem.id, deadline)


def load_pricing_rules(db: Session, tenant_id: str) -> Optional[BusinessRules]:
    return db.query(BusinessRules).filter(BusinessRules.tenant_id == tenant_id).one_or_none()


def load_listing_page(db: Session, tenant_id: str, page: int, page_size: Optional[int] = None) -> List[MercadoLibreListing]:
    size = page_size or settings.SYNC_BATCH_SIZE
    return (
        db.query(MercadoLibreListing)
        .filter(MercadoLibreListing.tenant_id == tenant_id)
        .order_by(MercadoLibreListing.id)
        .offset(page * size)
        .limit(size)
        .all()
    )


def tenants_with_credentials(db: Session) -> List[str]:
    rows = (
        db.query(MeliCredential.tenant_id)
        .filter(MeliCredential._refresh_token.isnot(None))
        .order_by(MeliCredential.tenant_id)
        .all()
    )
    tenant_ids = [r[0] for r in rows]
    logger.info("[store] %s tenants with MercadoLibre credentials", len(tenant_ids))
    return tenant_ids
