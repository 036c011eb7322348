from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Organization(db.Model):
    """Tenant. Locations, products, documents and marketplace channels are org-scoped."""
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "created_at": to_utc_z(self.created_at),
        }


class Location(db.Model):
    """
    Stock-holding place (store, warehouse, deposit).

    Every StockRecord is keyed by (product, location).
    """
    __tablename__ = "locations"
    __table_args__ = (
        db.Index("ix_locations_org_active", "org_id", "active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    is_main = db.Column(db.Boolean, nullable=False, default=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("locations", lazy=True))

    def __repr__(self) -> str:
        return f"<Location id={self.id} name={self.name!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "is_main": self.is_main,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    CACHED AGGREGATE:
    stock_quantity is a materialized SUM(stock_records.quantity) for the product.
    It is written only by stock_ledger.recompute_aggregate, inside the same
    transaction as the StockRecord change it reflects. Never edit it directly.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        db.Index("ix_products_org_name", "org_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    organization = db.relationship("Organization", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "stock_quantity": self.stock_quantity,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
