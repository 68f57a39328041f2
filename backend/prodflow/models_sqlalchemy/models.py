from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from prodflow.models_sqlalchemy import Base, JSONType


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeliCredential(Base):
    """OAuth credentials of one tenant's MercadoLibre seller account."""

    __tablename__ = "meli_credentials"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True, index=True)
    meli_user_id = Column(String(64), nullable=True)
    # Physical columns hold ENC:v1: blobs when written through the properties.
    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def access_token(self) -> str | None:
        from prodflow.utils import crypto

        return crypto.decrypt(self._access_token)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        from prodflow.utils import crypto

        self._access_token = crypto.encrypt(value) if value else None

    @property
    def refresh_token(self) -> str | None:
        from prodflow.utils import crypto

        return crypto.decrypt(self._refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        from prodflow.utils import crypto

        self._refresh_token = crypto.encrypt(value) if value else None


class InventoryItem(Base):
    """Own stock of a tenant. Written by order reservation and manual entry."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    sku = Column(Text, nullable=False)
    cost_price = Column(Numeric(14, 2), nullable=True)
    stock_disponible = Column(Integer, nullable=False, server_default="0", default=0)
    safety_stock = Column(Integer, nullable=False, server_default="0", default=0)
    supplier_id = Column(String(36), ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_products_tenant_sku", "tenant_id", "sku"),
    )


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(Text, nullable=True)
    # Percent. A supplier without markup contributes stock but cannot price a SKU.
    markup = Column(Numeric(7, 2), nullable=True)
    warehouse_id = Column(String(36), nullable=True, index=True)
    # Units held back from every row of this supplier's warehouse.
    safety_stock = Column(Integer, nullable=False, server_default="0", default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SupplierStockItem(Base):
    """One normalized row of a supplier feed, landed by the feed importer."""

    __tablename__ = "supplier_stock_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    warehouse_id = Column(String(36), nullable=False)
    sku = Column(Text, nullable=False)
    cost_price = Column(Numeric(14, 2), nullable=True)
    quantity = Column(Integer, nullable=False, server_default="0", default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_supplier_stock_items_warehouse_sku", "warehouse_id", "sku"),
    )


class BusinessRules(Base):
    """Per-tenant pricing configuration (markups and kit rules)."""

    __tablename__ = "business_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True, index=True)
    default_markup = Column(Numeric(7, 2), nullable=True)
    premium_markup = Column(Numeric(7, 2), nullable=True)
    # [{"suffix": "/X3", "quantity": 3, "discount": 10}, ...]
    kit_rules = Column(JSONType, nullable=True)
    minimum_price = Column(Numeric(14, 2), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class MercadoLibreListing(Base):
    """A marketplace listing (item, or item + variation) mapped to one SKU.

    ``last_synced_*`` hold the last state the marketplace confirmed; the sync
    driver relies only on them to decide whether an update is needed.
    """

    __tablename__ = "mercadolibre_listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    meli_id = Column(String(32), nullable=False)
    meli_variation_id = Column(String(32), nullable=True)
    sku = Column(Text, nullable=True)
    title = Column(Text, nullable=True)

    sync_enabled = Column(Boolean, nullable=False, server_default="true", default=True)
    safety_stock = Column(Integer, nullable=False, server_default="0", default=0)

    last_synced_price = Column(Numeric(14, 2), nullable=True)
    # price we asked for when the marketplace raised it to its minimum
    last_requested_price = Column(Numeric(14, 2), nullable=True)
    last_synced_quantity = Column(Integer, nullable=True)
    last_synced_status = Column(String(16), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "meli_id", "meli_variation_id", name="uq_meli_listing_identity"),
        Index("idx_meli_listings_tenant", "tenant_id"),
        Index("idx_meli_listings_tenant_sku", "tenant_id", "sku"),
    )
