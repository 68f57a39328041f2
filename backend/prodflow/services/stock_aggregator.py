"""Merge own inventory and supplier feeds into one stock/cost record per SKU.

Quantities from every source are additive: the same SKU can be fulfilled
from the own warehouse and from any supplier at the same time. Cost comes
from inventory when positive, otherwise from the first supplier row with a
positive cost whose supplier has a markup configured.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from prodflow.services import prodflow_store
from prodflow.utils.logger import logger
from prodflow.utils.sku import normalize_sku


INVENTORY_SOURCE = "inventory"


@dataclass
class AggregatedStock:
    sku: str
    total_stock: int = 0
    base_cost: Optional[Decimal] = None
    # "inventory" or the supplier warehouse id the cost was taken from
    cost_source: Optional[str] = None
    sources: int = 0


@dataclass
class AggregationResult:
    stock: Dict[str, AggregatedStock] = field(default_factory=dict)
    skipped_skus: List[str] = field(default_factory=list)


def _as_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _available(quantity, safety_stock) -> int:
    return max(0, int(quantity or 0) - int(safety_stock or 0))


def supplier_map(suppliers: Iterable) -> Dict[str, object]:
    """Index suppliers by warehouse; a supplier with markup wins a shared warehouse."""
    by_warehouse: Dict[str, object] = {}
    for supplier in suppliers:
        if not supplier.warehouse_id:
            continue
        current = by_warehouse.get(supplier.warehouse_id)
        if current is None or (current.markup is None and supplier.markup is not None):
            by_warehouse[supplier.warehouse_id] = supplier
    return by_warehouse


def aggregate_stock(
    inventory_rows: Iterable,
    supplier_rows: Iterable,
    supplier_by_warehouse: Mapping[str, object],
) -> AggregationResult:
    """Single pass over both sources keyed by normalized SKU."""

    merged: Dict[str, AggregatedStock] = {}
    # SKUs whose cost came from inventory; supplier rows must not replace it.
    inventory_priced = set()
    ignored = 0

    for row in inventory_rows:
        sku = normalize_sku(row.sku)
        if sku is None:
            ignored += 1
            continue
        entry = merged.get(sku)
        if entry is None:
            entry = merged[sku] = AggregatedStock(sku=sku)
        entry.total_stock += _available(row.stock_disponible, getattr(row, "safety_stock", 0))
        entry.sources += 1

        cost = _as_decimal(row.cost_price)
        if cost is not None and cost > 0 and sku not in inventory_priced:
            entry.base_cost = cost
            entry.cost_source = INVENTORY_SOURCE
            inventory_priced.add(sku)

    for row in supplier_rows:
        sku = normalize_sku(row.sku)
        if sku is None:
            ignored += 1
            continue
        supplier = supplier_by_warehouse.get(row.warehouse_id)
        entry = merged.get(sku)
        if entry is None:
            entry = merged[sku] = AggregatedStock(sku=sku)
        entry.total_stock += _available(row.quantity, getattr(supplier, "safety_stock", 0))
        entry.sources += 1

        if entry.base_cost is not None or supplier is None or supplier.markup is None:
            continue
        cost = _as_decimal(row.cost_price)
        if cost is not None and cost > 0:
            entry.base_cost = cost
            entry.cost_source = row.warehouse_id

    result = AggregationResult()
    for sku, entry in merged.items():
        if entry.base_cost is None:
            result.skipped_skus.append(sku)
        else:
            result.stock[sku] = entry

    if ignored:
        logger.debug("[aggregator] %s rows without a usable SKU ignored", ignored)
    if result.skipped_skus:
        logger.info(
            "[aggregator] %s SKUs without a positive cost skipped (e.g. %s)",
            len(result.skipped_skus), ", ".join(result.skipped_skus[:5]),
        )
    return result


def load_and_aggregate(db: Session, tenant_id: str, deadline: Optional[float] = None) -> Optional[AggregationResult]:
    """Load the tenant's sources and aggregate them.

    Returns None when the deadline is hit before every source is loaded; a
    partial aggregation would understate stock.
    """

    inventory = prodflow_store.load_inventory(db, tenant_id, deadline)
    if not inventory.complete:
        logger.warning("[aggregator] tenant=%s deadline hit while loading inventory", tenant_id)
        return None

    suppliers = prodflow_store.load_suppliers(db, tenant_id)
    by_warehouse = supplier_map(suppliers)

    supplier_rows = prodflow_store.load_supplier_rows(db, sorted(by_warehouse), deadline)
    if not supplier_rows.complete:
        logger.warning("[aggregator] tenant=%s deadline hit while loading supplier rows", tenant_id)
        return None

    result = aggregate_stock(inventory.rows, supplier_rows.rows, by_warehouse)
    logger.info(
        "[aggregator] tenant=%s inventory_rows=%s supplier_rows=%s priced_skus=%s skipped=%s",
        tenant_id, len(inventory.rows), len(supplier_rows.rows), len(result.stock), len(result.skipped_skus),
    )
    return result
