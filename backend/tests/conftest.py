import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import parse_qs

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from prodflow.config import settings
from prodflow.database import Base, SessionLocal, configure_engine
from prodflow.models_sqlalchemy import sync_workers  # noqa: F401
from prodflow.models_sqlalchemy.models import (
    BusinessRules,
    InventoryItem,
    MeliCredential,
    MercadoLibreListing,
    Supplier,
    SupplierStockItem,
)
from prodflow.services.meli_api_client import MeliApiClient
from prodflow.services.retry_policy import RetryPolicy


MELI_BASE_URL = "https://api.mercadolibre.test"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "MELI_APP_ID", "test-app-id")
    monkeypatch.setattr(settings, "MELI_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setattr(settings, "MELI_API_BASE_URL", MELI_BASE_URL)
    monkeypatch.setattr(settings, "UPDATE_CALL_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", None)
    monkeypatch.setattr(settings, "MAX_CONCURRENT_TENANTS", 1)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    configure_engine(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def db_factory(engine):
    return SessionLocal


class FakeMeli:
    """In-memory stand-in for the MercadoLibre Items and OAuth endpoints."""

    def __init__(self):
        # meli_id -> list of variation dicts; unknown ids have no variations
        self.items = {}
        self.missing_items = set()
        # meli_id -> queued (status, body) answers for PUT; default is 200
        self.put_responses = {}
        self.connect_errors = 0
        # when set, PUT/GET with any other bearer token gets 401
        self.valid_tokens = None
        self.bad_refresh_tokens = set()
        self.oauth_unreachable = False
        self.tokens_issued = 0
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/oauth/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.calls.append(("POST", path, form))
            if self.oauth_unreachable:
                raise httpx.ConnectError("connection refused", request=request)
            if form.get("refresh_token") in self.bad_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant", "message": "Error validating grant"})
            self.tokens_issued += 1
            return httpx.Response(200, json={
                "access_token": f"APP_USR-new-{self.tokens_issued}",
                "refresh_token": f"TG-new-{self.tokens_issued}",
                "expires_in": 21600,
                "user_id": 123456,
            })

        if self.connect_errors > 0:
            self.connect_errors -= 1
            raise httpx.ConnectError("connection reset", request=request)

        if request.method == "GET":
            self.calls.append(("GET", path, dict(request.url.params)))
        else:
            self.calls.append((request.method, path, json.loads(request.content or b"{}")))

        if self.valid_tokens is not None:
            bearer = request.headers.get("Authorization", "").replace("Bearer ", "")
            if bearer not in self.valid_tokens:
                return httpx.Response(401, json={"message": "invalid access token", "status": 401})

        meli_id = path.rsplit("/", 1)[-1]
        if request.method == "GET":
            if meli_id in self.missing_items:
                return httpx.Response(404, json={"message": f"Item with id {meli_id} not found"})
            return httpx.Response(200, json={"id": meli_id, "variations": self.items.get(meli_id, [])})

        queued = self.put_responses.get(meli_id)
        if queued:
            status_code, payload = queued.pop(0)
            return httpx.Response(status_code, json=payload)
        return httpx.Response(200, json={"id": meli_id})

    def puts(self, meli_id=None):
        return [
            body for method, path, body in self.calls
            if method == "PUT" and (meli_id is None or path.endswith(f"/{meli_id}"))
        ]

    def gets(self):
        return [path for method, path, _ in self.calls if method == "GET"]


class StaticTokens:
    def __init__(self, token="APP_USR-1"):
        self.token = token
        self.refreshes = 0

    async def get(self):
        return self.token

    async def refresh(self, stale_token=None):
        self.refreshes += 1
        self.token = f"APP_USR-{self.refreshes + 1}"
        return self.token


@pytest.fixture
def fake_meli():
    return FakeMeli()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryPolicy(max_attempts=5, base_delay=1.0, sleep=fake_sleep)


@pytest.fixture
def static_tokens():
    return StaticTokens()


@pytest.fixture
async def http_client(fake_meli):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_meli.handler)) as client:
        yield client


@pytest.fixture
def api_client(http_client, static_tokens, retry_policy):
    return MeliApiClient(
        http_client,
        token_source=static_tokens,
        retry_policy=retry_policy,
        call_delay=0,
        base_url=MELI_BASE_URL,
    )


def _seed_tenant(
    db,
    tenant_id,
    *,
    default_markup="20",
    premium_markup=None,
    kit_rules=None,
    minimum_price="100",
    credentials=True,
    expires_in=timedelta(hours=2),
    refresh_token="TG-old",
):
    if default_markup is not None:
        db.add(BusinessRules(
            tenant_id=tenant_id,
            default_markup=Decimal(default_markup),
            premium_markup=Decimal(premium_markup) if premium_markup is not None else None,
            kit_rules=kit_rules or [],
            minimum_price=Decimal(minimum_price) if minimum_price is not None else None,
        ))
    if credentials:
        cred = MeliCredential(tenant_id=tenant_id, meli_user_id="123456")
        cred.access_token = f"APP_USR-{tenant_id}"
        cred.refresh_token = refresh_token
        cred.expires_at = datetime.now(timezone.utc) + expires_in
        db.add(cred)
    db.commit()


def _add_inventory(db, tenant_id, sku, cost, qty, safety_stock=0):
    item = InventoryItem(
        tenant_id=tenant_id,
        sku=sku,
        cost_price=Decimal(str(cost)) if cost is not None else None,
        stock_disponible=qty,
        safety_stock=safety_stock,
    )
    db.add(item)
    db.commit()
    return item


def _add_supplier(db, tenant_id, warehouse_id, markup="50", safety_stock=0):
    supplier = Supplier(
        tenant_id=tenant_id,
        name=f"supplier {warehouse_id}",
        markup=Decimal(markup) if markup is not None else None,
        warehouse_id=warehouse_id,
        safety_stock=safety_stock,
    )
    db.add(supplier)
    db.commit()
    return supplier


def _add_supplier_row(db, warehouse_id, sku, cost, qty):
    row = SupplierStockItem(
        warehouse_id=warehouse_id,
        sku=sku,
        cost_price=Decimal(str(cost)) if cost is not None else None,
        quantity=qty,
    )
    db.add(row)
    db.commit()
    return row


def _add_listing(db, tenant_id, meli_id, sku, **fields):
    listing = MercadoLibreListing(tenant_id=tenant_id, meli_id=meli_id, sku=sku, **fields)
    db.add(listing)
    db.commit()
    return listing


class Seed:
    tenant = staticmethod(_seed_tenant)
    inventory = staticmethod(_add_inventory)
    supplier = staticmethod(_add_supplier)
    supplier_row = staticmethod(_add_supplier_row)
    listing = staticmethod(_add_listing)


@pytest.fixture
def seed():
    return Seed
