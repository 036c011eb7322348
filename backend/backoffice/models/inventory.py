from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..time_utils import to_utc_z


class ReferenceType(str, Enum):
    SALE = "SALE"
    PURCHASE = "PURCHASE"
    TRANSFER = "TRANSFER"
    CREDIT_NOTE = "CREDIT_NOTE"
    ADJUSTMENT = "ADJUSTMENT"


class MovementDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"


def enum_column(enum_cls, length: int = 16):
    """String-backed enum column storing member values (portable, no native DB enum)."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class StockRecord(db.Model):
    """
    Quantity of one product at one location.

    INVARIANTS:
    - One row per (product_id, location_id), created on the first movement for the pair.
    - Mutated only by stock_ledger.apply_delta (atomic upsert-increment).
    - Never deleted; zero rows stay for audit continuity.
    - quantity may be negative (negative stock is a caller decision, not a ledger rule).
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "location_id", name="uq_stock_records_product_location"),
        db.Index("ix_stock_records_location", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_records", lazy=True))
    location = db.relationship("Location")

    def __repr__(self) -> str:
        return f"<StockRecord product_id={self.product_id} location_id={self.location_id} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Immutable fact: one quantity change and its cause.

    Append-only: rows are never updated or deleted. Replaying the movements of a
    (product, location) from zero reproduces StockRecord.quantity.

    - direction=OUT decrements location_id (== from_location_id)
    - direction=IN increments location_id (== to_location_id)
    - Transfers fill both from/to; the other side is the counterpart location.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.CheckConstraint(
            "from_location_id IS NOT NULL OR to_location_id IS NOT NULL",
            name="ck_stock_movements_has_location",
        ),
        db.Index("ix_stock_movements_product_location", "product_id", "location_id"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Ledger key this movement changed
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    from_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    to_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    direction = db.Column(enum_column(MovementDirection, length=8), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    reference_type = db.Column(enum_column(ReferenceType), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product")

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.direction == MovementDirection.IN else -self.quantity

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} "
            f"{self.direction.value} {self.quantity} @ {self.location_id} {self.reference_type.value}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "direction": self.direction.value,
            "quantity": self.quantity,
            "delta": self.signed_quantity,
            "reason": self.reason,
            "reference_type": self.reference_type.value,
            "reference_id": self.reference_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
