from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..time_utils import to_utc_z
from .inventory import enum_column


class TransferStatus(str, Enum):
    DRAFT = "draft"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class SaleStatus(str, Enum):
    DRAFT = "draft"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CreditNoteStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    CANCELLED = "cancelled"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"


class Transfer(db.Model):
    """
    Inter-location stock transfer.

    LIFECYCLE:
    1. DRAFT: Created, origin stock untouched
    2. IN_TRANSIT: Origin stock deducted (TRANSFER OUT movements)
    3. RECEIVED: Destination credited with what actually arrived (terminal)
    4. CANCELLED: Terminal; an in-transit cancel returns the deducted stock to origin

    CONCURRENCY: version_id is an optimistic lock. Status claims are flushed before
    any ledger delta so two racing transitions cannot both succeed.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.UniqueConstraint("org_id", "transfer_number", name="uq_transfers_org_number"),
        db.Index("ix_transfers_org_status_created", "org_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    # Human-readable number (e.g., "T-20260115-9F3A61C2")
    transfer_number = db.Column(db.String(32), nullable=False)

    status = db.Column(enum_column(TransferStatus), nullable=False, default=TransferStatus.DRAFT, index=True)

    origin_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    destination_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=False)
    received_by = db.Column(db.String(64), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    origin_location = db.relationship("Location", foreign_keys=[origin_location_id])
    destination_location = db.relationship("Location", foreign_keys=[destination_location_id])
    items = db.relationship(
        "TransferItem",
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferItem.position",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Transfer id={self.id} number={self.transfer_number!r} status={self.status.value}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "transfer_number": self.transfer_number,
            "status": self.status.value,
            "origin_location_id": self.origin_location_id,
            "destination_location_id": self.destination_location_id,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "created_by": self.created_by,
            "received_by": self.received_by,
            "cancelled_by": self.cancelled_by,
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at) if self.dispatched_at else None,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
            "items": [item.to_dict() for item in self.items],
        }


class TransferItem(db.Model):
    """
    Line of a transfer. Owned by its Transfer (cascade delete).

    received_quantity stays None until the transfer is received; a value lower
    than requested_quantity records a discrepancy.
    """
    __tablename__ = "transfer_items"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", "product_id", name="uq_transfer_items_transfer_product"),
        db.CheckConstraint("requested_quantity > 0", name="ck_transfer_items_requested_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    requested_quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=True)

    transfer = db.relationship("Transfer", back_populates="items")
    product = db.relationship("Product")

    @property
    def discrepancy(self) -> int | None:
        if self.received_quantity is None:
            return None
        return self.requested_quantity - self.received_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "requested_quantity": self.requested_quantity,
            "received_quantity": self.received_quantity,
            "discrepancy": self.discrepancy,
        }


class Sale(db.Model):
    """Sale document. Completing it deducts tracked lines from the sale location."""
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    status = db.Column(enum_column(SaleStatus), nullable=False, default=SaleStatus.DRAFT)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship("SaleLine", back_populates="sale", cascade="all, delete-orphan", lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "status": self.status.value,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleLine(db.Model):
    """product_id is None for custom (untracked) items."""
    __tablename__ = "sale_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
        }


class CreditNote(db.Model):
    """
    Credit note (returned goods). Issuing it restocks tracked lines;
    it cannot be cancelled once applied to a sale.
    """
    __tablename__ = "credit_notes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    status = db.Column(enum_column(CreditNoteStatus), nullable=False, default=CreditNoteStatus.DRAFT)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship("CreditNoteLine", back_populates="credit_note", cascade="all, delete-orphan", lazy=True)
    applications = db.relationship(
        "CreditNoteApplication", back_populates="credit_note", cascade="all, delete-orphan", lazy=True
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "sale_id": self.sale_id,
            "status": self.status.value,
            "created_at": to_utc_z(self.created_at),
            "issued_at": to_utc_z(self.issued_at) if self.issued_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "lines": [line.to_dict() for line in self.lines],
            "applications": [app.to_dict() for app in self.applications],
        }


class CreditNoteLine(db.Model):
    __tablename__ = "credit_note_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    credit_note_id = db.Column(
        db.Integer, db.ForeignKey("credit_notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    credit_note = db.relationship("CreditNote", back_populates="lines")

    def to_dict(self) -> dict:
        return {"id": self.id, "product_id": self.product_id, "quantity": self.quantity}


class CreditNoteApplication(db.Model):
    """Credit note used as payment on a sale."""
    __tablename__ = "credit_note_applications"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    credit_note_id = db.Column(
        db.Integer, db.ForeignKey("credit_notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    credit_note = db.relationship("CreditNote", back_populates="applications")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credit_note_id": self.credit_note_id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "created_at": to_utc_z(self.created_at),
        }


class Purchase(db.Model):
    """
    Supplier purchase.

    status replaces a "products received" flag: PENDING purchases never touched
    stock, RECEIVED ones credited location_id with every tracked line.
    """
    __tablename__ = "purchases"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True, index=True)
    status = db.Column(enum_column(PurchaseStatus), nullable=False, default=PurchaseStatus.PENDING)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship("PurchaseLine", back_populates="purchase", cascade="all, delete-orphan", lazy=True)
    payment_allocations = db.relationship("SupplierPaymentAllocation", back_populates="purchase", lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "status": self.status.value,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "lines": [line.to_dict() for line in self.lines],
        }


class PurchaseLine(db.Model):
    """product_id is None for non-stock lines (freight, services)."""
    __tablename__ = "purchase_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    purchase = db.relationship("Purchase", back_populates="lines")

    def to_dict(self) -> dict:
        return {"id": self.id, "product_id": self.product_id, "quantity": self.quantity}


class SupplierPaymentAllocation(db.Model):
    """Part of a supplier payment allocated to a purchase. Blocks purchase deletion."""
    __tablename__ = "supplier_payment_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase = db.relationship("Purchase", back_populates="payment_allocations")
