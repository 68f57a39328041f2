from decimal import Decimal

import pytest

from prodflow.models_sqlalchemy.models import MercadoLibreListing
from prodflow.services.errors import TokenRefreshError
from prodflow.services.listing_sync import ListingSyncDriver, compute_listing_delta
from prodflow.services.virtual_sku_engine import KIND_BASE, VirtualSku


TENANT = "tenant-a"


def target(sku, price, stock):
    return VirtualSku(sku=sku, base_sku=sku, kind=KIND_BASE, price=Decimal(str(price)), stock=stock)


def vmap(*targets):
    return {t.sku: t for t in targets}


@pytest.fixture
def driver(api_client):
    return ListingSyncDriver(api_client, max_concurrency=4)


def listings(db):
    return db.query(MercadoLibreListing).order_by(MercadoLibreListing.meli_id).all()


def test_delta_for_unsynced_listing_sends_everything():
    listing = MercadoLibreListing(meli_id="MLA1", sku="X1", safety_stock=0)

    delta = compute_listing_delta(listing, target("X1", "500.00", 10))

    assert delta.fields == {"available_quantity": 10, "price": Decimal("500.00"), "status": "active"}


def test_delta_respects_price_tolerance():
    listing = MercadoLibreListing(
        meli_id="MLA1", sku="X1", safety_stock=0,
        last_synced_price=Decimal("500.00"), last_synced_quantity=10, last_synced_status="active",
    )

    assert compute_listing_delta(listing, target("X1", "500.01", 10)) is None
    assert compute_listing_delta(listing, target("X1", "500.02", 10)).fields == {"price": Decimal("500.02")}


def test_delta_subtracts_listing_safety_stock():
    listing = MercadoLibreListing(meli_id="MLA1", sku="X1", safety_stock=3)

    delta = compute_listing_delta(listing, target("X1", 500, 10))

    assert delta.fields["available_quantity"] == 7
    assert delta.target_status == "active"


def test_zero_price_pauses_without_sending_price():
    listing = MercadoLibreListing(
        meli_id="MLA1", sku="X1", safety_stock=0,
        last_synced_price=Decimal("500.00"), last_synced_quantity=4, last_synced_status="active",
    )

    delta = compute_listing_delta(listing, target("X1", 0, 10))

    assert delta.fields == {"available_quantity": 0, "status": "paused"}


def test_variation_listing_never_gets_status():
    listing = MercadoLibreListing(meli_id="MLA1", sku="X1", meli_variation_id="55", safety_stock=0)

    delta = compute_listing_delta(listing, target("X1", 500, 0))

    assert delta.fields == {"available_quantity": 0, "price": Decimal("500")}


async def test_second_sync_with_same_inputs_sends_nothing(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1")
    targets = vmap(target("X1", "500.00", 10))

    first = await driver.sync_listings(db, TENANT, listings(db), targets)
    second = await driver.sync_listings(db, TENANT, listings(db), targets)

    assert first.updated == 1
    assert second.updated == 0
    assert second.unchanged == 1
    assert fake_meli.puts("MLA1") == [{"available_quantity": 10, "price": 500.0, "status": "active"}]

    listing = listings(db)[0]
    assert listing.last_synced_quantity == 10
    assert listing.last_synced_price == Decimal("500.00")
    assert listing.last_synced_status == "active"
    assert listing.last_synced_at is not None


async def test_status_follows_stock_transitions(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1", last_synced_price=Decimal("500.00"),
                 last_synced_quantity=0, last_synced_status="paused")

    await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", "500.00", 5)))
    await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", "500.00", 0)))

    assert fake_meli.puts("MLA1") == [
        {"available_quantity": 5, "status": "active"},
        {"available_quantity": 0, "status": "paused"},
    ]


async def test_price_only_change_does_not_touch_status(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1", last_synced_price=Decimal("500.00"),
                 last_synced_quantity=5, last_synced_status="active")

    await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", "510.00", 5)))

    assert fake_meli.puts("MLA1") == [{"price": 510.0}]


async def test_disabled_and_unknown_listings_are_left_alone(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1", sync_enabled=False)
    seed.listing(db, TENANT, "MLA2", "NOT-COMPUTED", last_synced_quantity=7)

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 10)))

    assert summary.processed == 2
    assert summary.skipped == 2
    assert fake_meli.calls == []
    assert listings(db)[1].last_synced_quantity == 7


async def test_one_failing_listing_does_not_stop_the_batch(db, seed, driver, fake_meli):
    for meli_id, sku in (("MLA1", "X1"), ("MLA2", "X2"), ("MLA3", "X3")):
        seed.listing(db, TENANT, meli_id, sku)
    fake_meli.put_responses["MLA2"] = [(400, {"message": "invalid field"})]

    summary = await driver.sync_listings(
        db, TENANT, listings(db),
        vmap(target("X1", 500, 1), target("X2", 500, 2), target("X3", 500, 3)),
    )

    assert summary.updated == 2
    assert summary.failed == 1
    assert summary.errors[0]["meli_id"] == "MLA2"
    assert summary.errors[0]["status_code"] == 400

    by_id = {l.meli_id: l for l in listings(db)}
    assert by_id["MLA1"].last_synced_quantity == 1
    assert by_id["MLA3"].last_synced_quantity == 3
    assert by_id["MLA2"].last_synced_quantity is None
    assert "400" in by_id["MLA2"].last_sync_error


async def test_non_modifiable_listing_counts_as_skipped(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1")
    fake_meli.put_responses["MLA1"] = [(400, {"cause": [{"code": "field_not_updatable", "message": "locked"}]})]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 1)))

    assert summary.skipped == 1
    assert summary.failed == 0
    assert summary.warnings


async def test_marketplace_minimum_price_is_stored(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1")
    fake_meli.put_responses["MLA1"] = [(400, {
        "cause": [{"code": "item.price.invalid", "message": "The price must be greater than $ 350"}],
    })]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", "120.00", 1)))

    assert summary.updated == 1
    assert summary.warnings
    assert listings(db)[0].last_synced_price == Decimal("350")


async def test_clamped_price_is_not_pushed_again(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1")
    fake_meli.put_responses["MLA1"] = [(400, {
        "cause": [{"code": "item.price.invalid", "message": "The price must be greater than $ 350"}],
    })]
    targets = vmap(target("X1", "120.00", 1))

    await driver.sync_listings(db, TENANT, listings(db), targets)
    second = await driver.sync_listings(db, TENANT, listings(db), targets)

    assert len(fake_meli.puts("MLA1")) == 2
    assert second.updated == 0
    assert second.unchanged == 1
    assert second.warnings == []
    assert listings(db)[0].last_requested_price == Decimal("120.00")


async def test_price_above_the_minimum_clears_the_clamp(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1", last_synced_price=Decimal("350.00"),
                 last_requested_price=Decimal("120.00"), last_synced_quantity=1, last_synced_status="active")

    await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", "400.00", 1)))

    assert fake_meli.puts("MLA1") == [{"price": 400.0}]
    listing = listings(db)[0]
    assert listing.last_synced_price == Decimal("400.00")
    assert listing.last_requested_price is None


async def test_stored_variation_gets_nested_update(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA1", "X1", meli_variation_id="55")

    await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    assert fake_meli.gets() == []
    assert fake_meli.puts("MLA1") == [{"variations": [{"id": 55, "available_quantity": 2, "price": 500.0}]}]


async def test_missing_variation_id_is_resolved_and_stored(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA9", "X1")
    fake_meli.items["MLA9"] = [
        {"id": 76, "attributes": [{"id": "SELLER_SKU", "value_name": "OTHER"}]},
        {"id": 77, "attributes": [{"id": "SELLER_SKU", "value_name": "X1"}]},
    ]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    assert summary.updated == 1
    assert fake_meli.puts("MLA9") == [{"variations": [{"id": 77, "available_quantity": 2, "price": 500.0}]}]
    listing = listings(db)[0]
    assert listing.meli_variation_id == "77"
    assert listing.last_synced_status is None


async def test_listings_sharing_an_item_resolve_to_one_variation(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA9", "X1")
    seed.listing(db, TENANT, "MLA9", "X1")
    fake_meli.items["MLA9"] = [{"id": 77, "attributes": [{"id": "SELLER_SKU", "value_name": "X1"}]}]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    assert summary.updated == 2
    assert summary.failed == 0
    db.expire_all()
    rows = listings(db)
    assert sorted(r.meli_variation_id or "" for r in rows) == ["", "77"]
    assert all(r.last_synced_quantity == 2 for r in rows)
    assert all(r.last_synced_at is not None for r in rows)


async def test_unmatched_variation_is_a_listing_failure(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA9", "X1")
    fake_meli.items["MLA9"] = [{"id": 76, "attributes": [{"id": "SELLER_SKU", "value_name": "OTHER"}]}]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    assert summary.failed == 1
    assert fake_meli.puts() == []
    assert "no variation" in listings(db)[0].last_sync_error


async def test_stale_variation_id_is_re_resolved_once(db, seed, driver, fake_meli):
    seed.listing(db, TENANT, "MLA5", "X1", meli_variation_id="55")
    fake_meli.put_responses["MLA5"] = [(404, {"message": "variation not found"})]
    fake_meli.items["MLA5"] = [{"id": 88, "seller_custom_field": "X1"}]

    summary = await driver.sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    assert summary.updated == 1
    puts = fake_meli.puts("MLA5")
    assert [p["variations"][0]["id"] for p in puts] == [55, 88]
    assert listings(db)[0].meli_variation_id == "88"


async def test_token_failure_is_raised_after_the_batch_is_saved(db, seed, http_client, retry_policy, fake_meli):
    from prodflow.services.meli_api_client import MeliApiClient

    class RevokedTokens:
        async def get(self):
            return "APP_USR-expired"

        async def refresh(self, stale_token=None):
            raise TokenRefreshError(TENANT, "refresh token revoked", error_code="invalid_grant")

    client = MeliApiClient(http_client, token_source=RevokedTokens(), retry_policy=retry_policy, call_delay=0)
    fake_meli.valid_tokens = {"APP_USR-valid"}
    seed.listing(db, TENANT, "MLA1", "X1")

    with pytest.raises(TokenRefreshError):
        await ListingSyncDriver(client).sync_listings(db, TENANT, listings(db), vmap(target("X1", 500, 2)))

    db.expire_all()
    assert "revoked" in listings(db)[0].last_sync_error
