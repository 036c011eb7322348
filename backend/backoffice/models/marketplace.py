from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..time_utils import to_utc_z
from .inventory import enum_column


class MarketplacePlatform(str, Enum):
    TIENDANUBE = "tiendanube"
    MERCADOLIBRE = "mercadolibre"


class MarketplaceChannel(db.Model):
    """
    Connected external sales channel.

    The OAuth connection flow that fills access_token lives outside this service.
    With location_id set, the channel publishes that location's quantity;
    otherwise the product aggregate (Product.stock_quantity).
    """
    __tablename__ = "marketplace_channels"
    __table_args__ = (
        db.UniqueConstraint("platform", "external_account_id", name="uq_marketplace_channels_account"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    platform = db.Column(enum_column(MarketplacePlatform, length=32), nullable=False)

    # Tiendanube store id / MercadoLibre user id
    external_account_id = db.Column(db.String(64), nullable=False)
    access_token = db.Column(db.Text, nullable=False)

    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    listings = db.relationship("MarketplaceListing", back_populates="channel", cascade="all, delete-orphan", lazy=True)

    def __repr__(self) -> str:
        return f"<MarketplaceChannel id={self.id} platform={self.platform.value} account={self.external_account_id!r}>"

    def to_dict(self) -> dict:
        # access_token is never serialized
        return {
            "id": self.id,
            "org_id": self.org_id,
            "platform": self.platform.value,
            "external_account_id": self.external_account_id,
            "location_id": self.location_id,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
        }


class MarketplaceListing(db.Model):
    """Maps a local product to its remote item (and variant, when the platform has them)."""
    __tablename__ = "marketplace_listings"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "product_id", name="uq_marketplace_listings_channel_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("marketplace_channels.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    external_item_id = db.Column(db.String(64), nullable=False)
    external_variant_id = db.Column(db.String(64), nullable=True)

    channel = db.relationship("MarketplaceChannel", back_populates="listings")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "product_id": self.product_id,
            "external_item_id": self.external_item_id,
            "external_variant_id": self.external_variant_id,
        }
