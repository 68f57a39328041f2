import time
from decimal import Decimal
from types import SimpleNamespace

from prodflow.services.stock_aggregator import (
    INVENTORY_SOURCE,
    aggregate_stock,
    load_and_aggregate,
    supplier_map,
)


def inv(sku, cost, qty, safety_stock=0):
    return SimpleNamespace(sku=sku, cost_price=cost, stock_disponible=qty, safety_stock=safety_stock)


def feed(warehouse_id, sku, cost, qty):
    return SimpleNamespace(warehouse_id=warehouse_id, sku=sku, cost_price=cost, quantity=qty)


def supplier(warehouse_id, markup, safety_stock=0):
    return SimpleNamespace(warehouse_id=warehouse_id, markup=markup, safety_stock=safety_stock)


def test_stock_is_additive_across_sources():
    suppliers = supplier_map([supplier("W1", Decimal("50"))])
    result = aggregate_stock(
        [inv("X1", Decimal("100"), 5)],
        [feed("W1", "X1", Decimal("90"), 7)],
        suppliers,
    )

    entry = result.stock["X1"]
    assert entry.total_stock == 12
    assert entry.sources == 2


def test_inventory_cost_wins_over_supplier_cost():
    suppliers = supplier_map([supplier("W1", Decimal("50"))])
    result = aggregate_stock(
        [inv("X1", Decimal("100"), 5)],
        [feed("W1", "X1", Decimal("90"), 3)],
        suppliers,
    )

    assert result.stock["X1"].base_cost == Decimal("100")
    assert result.stock["X1"].cost_source == INVENTORY_SOURCE


def test_supplier_cost_used_when_inventory_has_none():
    suppliers = supplier_map([supplier("W1", Decimal("50")), supplier("W2", Decimal("30"))])
    result = aggregate_stock(
        [inv("X1", None, 2), inv("X2", Decimal("0"), 1)],
        [feed("W1", "X1", Decimal("80"), 1), feed("W2", "X1", Decimal("70"), 1), feed("W2", "X2", Decimal("40"), 4)],
        suppliers,
    )

    assert result.stock["X1"].base_cost == Decimal("80")
    assert result.stock["X1"].cost_source == "W1"
    assert result.stock["X1"].total_stock == 4
    assert result.stock["X2"].base_cost == Decimal("40")
    assert result.stock["X2"].total_stock == 5


def test_supplier_without_markup_adds_stock_but_not_cost():
    suppliers = supplier_map([supplier("W1", None), supplier("W2", Decimal("10"))])
    result = aggregate_stock(
        [inv("X1", Decimal("100"), 1)],
        [feed("W1", "X1", Decimal("10"), 4), feed("W1", "ONLY-W1", Decimal("10"), 9), feed("W2", "X2", Decimal("20"), 2)],
        suppliers,
    )

    assert result.stock["X1"].total_stock == 5
    assert result.stock["X1"].base_cost == Decimal("100")
    assert "ONLY-W1" not in result.stock
    assert result.skipped_skus == ["ONLY-W1"]
    assert result.stock["X2"].base_cost == Decimal("20")


def test_skus_are_merged_on_normalized_form():
    result = aggregate_stock(
        [inv("  ABC  1 ", Decimal("10"), 1), inv("ABC 1", Decimal("12"), 2), inv("   ", Decimal("5"), 3)],
        [],
        {},
    )

    assert list(result.stock) == ["ABC 1"]
    assert result.stock["ABC 1"].total_stock == 3
    # first positive inventory cost sticks
    assert result.stock["ABC 1"].base_cost == Decimal("10")


def test_sku_without_positive_cost_is_skipped():
    result = aggregate_stock([inv("X1", None, 10), inv("X2", Decimal("-5"), 1)], [], {})

    assert result.stock == {}
    assert sorted(result.skipped_skus) == ["X1", "X2"]


def test_safety_stock_is_held_back_per_source():
    suppliers = supplier_map([supplier("W1", Decimal("50"), safety_stock=2)])
    result = aggregate_stock(
        [inv("X1", Decimal("100"), 5, safety_stock=10)],
        [feed("W1", "X1", Decimal("90"), 7)],
        suppliers,
    )

    # inventory floors at 0, supplier contributes 7 - 2
    assert result.stock["X1"].total_stock == 5


def test_load_and_aggregate_reads_only_the_tenant_rows(db, seed):
    seed.inventory(db, "tenant-a", "X1", 100, 5)
    seed.inventory(db, "tenant-b", "X1", 1, 500)
    seed.supplier(db, "tenant-a", "WA", markup="50")
    seed.supplier(db, "tenant-b", "WB", markup="50")
    seed.supplier_row(db, "WA", "X1", 90, 3)
    seed.supplier_row(db, "WB", "X1", 1, 1000)

    result = load_and_aggregate(db, "tenant-a")

    assert result.stock["X1"].total_stock == 8
    assert result.stock["X1"].base_cost == Decimal("100")


def test_load_and_aggregate_returns_none_past_deadline(db, seed):
    seed.inventory(db, "tenant-a", "X1", 100, 5)

    assert load_and_aggregate(db, "tenant-a", deadline=time.monotonic() - 1) is None
