from decimal import Decimal

import pytest

from prodflow.services.errors import MeliApiError, VariationResolutionError
from prodflow.services.meli_api_client import build_update_body, extract_minimum_price


RATE_LIMITED = (429, {"message": "too many requests"})


async def test_update_sends_partial_body(api_client, fake_meli):
    result = await api_client.update_listing("MLA1", {"available_quantity": 3, "status": "active"})

    assert result.success
    assert result.attempts == 1
    assert fake_meli.puts("MLA1") == [{"available_quantity": 3, "status": "active"}]


async def test_rate_limit_retries_with_exponential_backoff_then_gives_up(api_client, fake_meli, sleeps):
    fake_meli.put_responses["MLA1"] = [RATE_LIMITED] * 10

    result = await api_client.update_listing("MLA1", {"available_quantity": 3})

    assert not result.success
    assert result.status_code == 429
    assert result.attempts == 5
    assert len(fake_meli.puts("MLA1")) == 5
    assert sleeps == [1.0, 2.0, 4.0, 8.0]


async def test_conflict_is_retried_until_success(api_client, fake_meli, sleeps):
    fake_meli.put_responses["MLA1"] = [(409, {"message": "conflict"})]

    result = await api_client.update_listing("MLA1", {"available_quantity": 3})

    assert result.success
    assert result.attempts == 2
    assert sleeps == [1.0]


async def test_transport_errors_are_retried(api_client, fake_meli, sleeps):
    fake_meli.connect_errors = 2

    result = await api_client.update_listing("MLA1", {"available_quantity": 3})

    assert result.success
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("status_code", [400, 403, 500])
async def test_other_errors_fail_without_retry(api_client, fake_meli, sleeps, status_code):
    fake_meli.put_responses["MLA1"] = [(status_code, {"message": "nope"})]

    result = await api_client.update_listing("MLA1", {"available_quantity": 3})

    assert not result.success
    assert not result.skipped
    assert result.status_code == status_code
    assert result.attempts == 1
    assert result.error_body == {"message": "nope"}
    assert sleeps == []


async def test_price_too_low_is_retried_once_with_marketplace_minimum(api_client, fake_meli):
    fake_meli.put_responses["MLA1"] = [(400, {
        "message": "Validation error",
        "cause": [{"code": "item.price.invalid", "message": "The price must be greater than $ 350"}],
    })]

    result = await api_client.update_listing("MLA1", {"price": Decimal("120.00"), "available_quantity": 2})

    assert result.success
    assert result.applied_price == Decimal("350")
    assert "350" in result.warning
    assert fake_meli.puts("MLA1") == [
        {"price": 120.0, "available_quantity": 2},
        {"price": 350.0, "available_quantity": 2},
    ]


async def test_price_too_low_twice_is_a_failure(api_client, fake_meli):
    rejection = (400, {"cause": [{"code": "item.price.invalid", "message": "The price must be greater than $ 350"}]})
    fake_meli.put_responses["MLA1"] = [rejection, rejection]

    result = await api_client.update_listing("MLA1", {"price": Decimal("120.00")})

    assert not result.success
    assert len(fake_meli.puts("MLA1")) == 2


async def test_non_modifiable_item_is_skipped(api_client, fake_meli):
    fake_meli.put_responses["MLA1"] = [(400, {"cause": [{"code": "item.price.not_modifiable", "message": "locked"}]})]

    result = await api_client.update_listing("MLA1", {"price": Decimal("500")})

    assert result.skipped
    assert not result.success
    assert result.attempts == 1


async def test_401_refreshes_token_and_resends_once(api_client, fake_meli, static_tokens):
    fake_meli.valid_tokens = {"APP_USR-2"}

    result = await api_client.update_listing("MLA1", {"available_quantity": 1})

    assert result.success
    assert static_tokens.refreshes == 1
    assert len(fake_meli.puts("MLA1")) == 2


async def test_variation_update_nests_price_and_quantity(api_client, fake_meli):
    await api_client.update_listing("MLA1", {"price": Decimal("10.50"), "available_quantity": 2}, variation_id="123")

    assert fake_meli.puts("MLA1") == [{"variations": [{"id": 123, "price": 10.5, "available_quantity": 2}]}]


def test_build_update_body_keeps_status_at_item_level():
    body = build_update_body({"status": "paused", "available_quantity": 0}, variation_id="v-9")

    assert body == {"status": "paused", "variations": [{"id": "v-9", "available_quantity": 0}]}


def test_extract_minimum_price_ignores_other_causes():
    assert extract_minimum_price({"cause": [{"code": "other", "message": "$ 10"}]}) is None
    assert extract_minimum_price("plain text") is None
    assert extract_minimum_price(
        {"cause": [{"code": "item.price.invalid", "message": "The price must be greater than $ 99.90"}]}
    ) == Decimal("99.90")


async def test_live_variation_id_matches_seller_sku(api_client, fake_meli):
    fake_meli.items["MLA2"] = [
        {"id": 11, "attributes": [{"id": "SELLER_SKU", "value_name": "ABC 1"}]},
        {"id": 12, "seller_custom_field": " ABC  2 "},
    ]

    assert await api_client.get_live_variation_id("MLA2", "ABC 1") == "11"
    assert await api_client.get_live_variation_id("MLA2", "ABC 2") == "12"
    with pytest.raises(VariationResolutionError):
        await api_client.get_live_variation_id("MLA2", "ZZZ")


async def test_live_variation_id_is_none_for_plain_items(api_client):
    assert await api_client.get_live_variation_id("MLA3", "ABC 1") is None


async def test_variation_lookup_raises_on_missing_item(api_client, fake_meli):
    fake_meli.missing_items.add("MLA404")

    with pytest.raises(MeliApiError) as excinfo:
        await api_client.get_item_variations("MLA404")
    assert excinfo.value.status_code == 404


async def test_exchange_refresh_token_posts_grant(api_client, fake_meli):
    payload = await api_client.exchange_refresh_token("TG-old")

    assert payload["access_token"] == "APP_USR-new-1"
    method, path, form = fake_meli.calls[-1]
    assert (method, path) == ("POST", "/oauth/token")
    assert form == {
        "grant_type": "refresh_token",
        "client_id": "test-app-id",
        "client_secret": "test-client-secret",
        "refresh_token": "TG-old",
    }


async def test_exchange_refresh_token_rejected(api_client, fake_meli):
    fake_meli.bad_refresh_tokens.add("TG-revoked")

    with pytest.raises(MeliApiError) as excinfo:
        await api_client.exchange_refresh_token("TG-revoked")
    assert excinfo.value.status_code == 400


async def test_exchange_requires_app_credentials(api_client, monkeypatch):
    from prodflow.config import settings

    monkeypatch.setattr(settings, "MELI_CLIENT_SECRET", None)

    with pytest.raises(ValueError):
        await api_client.exchange_refresh_token("TG-old")
