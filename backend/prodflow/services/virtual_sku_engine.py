"""Expand aggregated base SKUs into the SKUs actually listed on MercadoLibre.

Each priced base SKU yields:

* the base SKU itself, priced with the tenant's default markup;
* a premium ``-PR`` variant when a premium markup is configured;
* one kit per kit rule (``/X2``, ``/X3``...): stock floored to whole kits,
  price for the bundle minus the rule discount.

Prices are Decimals rounded half-up to cents. A price of exactly 0 means
"do not list" and is never raised to the minimum price.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from prodflow.config import settings
from prodflow.services.errors import SyncConfigurationError
from prodflow.services.stock_aggregator import AggregatedStock, AggregationResult
from prodflow.utils.logger import logger
from prodflow.utils.sku import normalize_sku


PREMIUM_SUFFIX = "-PR"
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

KIND_BASE = "base"
KIND_PREMIUM = "premium"
KIND_KIT = "kit"


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def round_price(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class KitRule:
    suffix: str
    quantity: int
    discount: Decimal = Decimal("0")

    @classmethod
    def parse(cls, raw: Any) -> Optional["KitRule"]:
        """Build a rule from its JSON form; None when the rule is unusable."""
        if not isinstance(raw, dict):
            return None
        suffix = str(raw.get("suffix") or "").strip()
        try:
            quantity = int(raw.get("quantity") or 0)
        except (TypeError, ValueError):
            return None
        discount = _decimal(raw.get("discount")) or Decimal("0")
        if not suffix or quantity <= 0:
            return None
        return cls(suffix=suffix, quantity=quantity, discount=discount)


@dataclass
class PricingRules:
    default_markup: Optional[Decimal] = None
    premium_markup: Optional[Decimal] = None
    kit_rules: List[KitRule] = field(default_factory=list)
    minimum_price: Decimal = field(default_factory=lambda: Decimal(str(settings.MINIMUM_PRICE)))
    max_stock: int = field(default_factory=lambda: settings.MAX_STOCK_ALLOWED)

    @classmethod
    def from_row(cls, row) -> "PricingRules":
        """Rules from a ``business_rules`` row (or None for an unconfigured tenant)."""
        if row is None:
            return cls()

        kit_rules: List[KitRule] = []
        for raw in row.kit_rules or []:
            rule = KitRule.parse(raw)
            if rule is None:
                logger.warning("[pricing] tenant=%s ignoring invalid kit rule %r", row.tenant_id, raw)
                continue
            kit_rules.append(rule)

        rules = cls(
            default_markup=_decimal(row.default_markup),
            premium_markup=_decimal(row.premium_markup),
            kit_rules=kit_rules,
        )
        minimum = _decimal(row.minimum_price)
        if minimum is not None:
            rules.minimum_price = minimum
        return rules


@dataclass
class VirtualSku:
    sku: str
    base_sku: str
    kind: str
    price: Decimal
    stock: int


def _apply_markup(value: Decimal, markup: Decimal) -> Decimal:
    return value * (1 + markup / HUNDRED)


def expand_virtual_skus(entry: AggregatedStock, rules: PricingRules) -> List[VirtualSku]:
    """Virtual SKUs for one aggregated entry, before floor/ceiling clamping."""

    if rules.default_markup is None or entry.base_cost is None:
        return []

    base_price = _apply_markup(entry.base_cost, rules.default_markup)
    base_stock = max(0, entry.total_stock)
    out = [VirtualSku(entry.sku, entry.sku, KIND_BASE, base_price, base_stock)]

    if rules.premium_markup is not None:
        out.append(VirtualSku(
            normalize_sku(entry.sku + PREMIUM_SUFFIX),
            entry.sku,
            KIND_PREMIUM,
            _apply_markup(base_price, rules.premium_markup),
            base_stock,
        ))

    for rule in rules.kit_rules:
        price = round_price(base_price * rule.quantity * (1 - rule.discount / HUNDRED))
        out.append(VirtualSku(
            normalize_sku(entry.sku + rule.suffix),
            entry.sku,
            KIND_KIT,
            price,
            base_stock // rule.quantity,
        ))

    return out


def _finalize(vsku: VirtualSku, rules: PricingRules) -> VirtualSku:
    price = round_price(vsku.price)
    if price < 0:
        price = Decimal("0.00")
    if price != 0 and price < rules.minimum_price:
        price = round_price(rules.minimum_price)
    vsku.price = price
    vsku.stock = min(max(0, int(vsku.stock)), rules.max_stock)
    return vsku


def build_virtual_sku_map(
    aggregation: AggregationResult,
    rules: PricingRules,
    tenant_id: Optional[str] = None,
) -> Dict[str, VirtualSku]:
    """Final sku -> VirtualSku map for a tenant.

    Outputs that land on the same SKU keep the lowest price and add up their
    stock. Raises ``SyncConfigurationError`` when no default markup is set.
    """

    if rules.default_markup is None:
        raise SyncConfigurationError(tenant_id or "?", "no default markup configured")

    merged: Dict[str, VirtualSku] = {}
    for entry in aggregation.stock.values():
        for vsku in expand_virtual_skus(entry, rules):
            existing = merged.get(vsku.sku)
            if existing is None:
                merged[vsku.sku] = vsku
                continue
            existing.price = min(existing.price, vsku.price)
            existing.stock += vsku.stock

    for vsku in merged.values():
        _finalize(vsku, rules)

    logger.info(
        "[pricing] tenant=%s base_skus=%s virtual_skus=%s",
        tenant_id, len(aggregation.stock), len(merged),
    )
    return merged
