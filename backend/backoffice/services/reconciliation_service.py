# Overview: Maps business document events (sales, credit notes, purchases, manual adjustments) onto stock ledger deltas.

"""
Reconciliation rules (authoritative)

Every operation here is ONE unit: the document state change and all of its
ledger deltas commit together or not at all (run_with_retry rolls back on any
failure). Marketplace sync is notified only after the commit succeeded.

Stock effects per event (tracked lines only; lines without a product are
custom items and never touch stock):
- Sale completed:          -q at the sale location         (SALE)
- Sale cancelled + revert: +q at the sale location         (CREDIT_NOTE)
- Credit note issued:      +q at the note location         (CREDIT_NOTE)
- Credit note cancelled + revert: -q at the note location  (CREDIT_NOTE)
- Purchase received:       +q at the purchase location     (PURCHASE)
- Purchase deleted after receipt: -q at that location      (PURCHASE)
- Manual adjustment / bulk level edit: signed delta        (ADJUSTMENT)

Preconditions:
- A credit note applied to a sale cannot be cancelled.
- A purchase with supplier payment allocations cannot be deleted.
Whether a cancelled sale returns stock is the caller's decision (revert_stock);
nothing is inferred here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..errors import ConflictError, InvalidStateTransition, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    CreditNote,
    CreditNoteApplication,
    CreditNoteStatus,
    Product,
    Purchase,
    PurchaseStatus,
    ReferenceType,
    Sale,
    SaleStatus,
    StockRecord,
)
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .stock_ledger import MovementMeta, apply_delta, get_quantity


def _notify(product_ids) -> None:
    from .marketplace_sync import notify_stock_changed
    notify_stock_changed(product_ids)


def _load_locked(model, object_id: int, label: str):
    obj = lock_for_update(db.session.query(model).filter_by(id=object_id)).first()
    if obj is None:
        raise NotFoundError(f"{label} {object_id} not found")
    return obj


def _apply_lines(lines, location_id: int, sign: int, meta: MovementMeta) -> list[int]:
    touched = []
    for line in lines:
        if line.product_id is None:
            continue
        apply_delta(line.product_id, location_id, sign * line.quantity, meta)
        touched.append(line.product_id)
    return touched


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------

def complete_sale(sale_id: int, actor: str) -> Sale:
    """DRAFT -> COMPLETED; deducts tracked lines from the sale location."""
    def _op():
        sale = _load_locked(Sale, sale_id, "Sale")
        if sale.status != SaleStatus.DRAFT:
            raise InvalidStateTransition(f"Cannot complete sale {sale.id} in {sale.status.value} status")
        sale.status = SaleStatus.COMPLETED
        sale.completed_at = utcnow()
        db.session.flush()

        touched = _apply_lines(sale.lines, sale.location_id, -1, MovementMeta(
            reason=f"Sale #{sale.id}",
            reference_type=ReferenceType.SALE,
            reference_id=sale.id,
            actor=actor,
        ))
        db.session.commit()
        return sale, touched

    sale, touched = run_with_retry(_op)
    _notify(touched)
    return sale


def cancel_sale(sale_id: int, actor: str, revert_stock: bool) -> Sale:
    """
    COMPLETED -> CANCELLED.

    With revert_stock, every tracked line goes back to the location it was
    sold from.
    """
    def _op():
        sale = _load_locked(Sale, sale_id, "Sale")
        if sale.status != SaleStatus.COMPLETED:
            raise InvalidStateTransition(f"Cannot cancel sale {sale.id} in {sale.status.value} status")
        sale.status = SaleStatus.CANCELLED
        sale.cancelled_at = utcnow()
        db.session.flush()

        touched = []
        if revert_stock:
            touched = _apply_lines(sale.lines, sale.location_id, 1, MovementMeta(
                reason=f"Sale #{sale.id} cancelled",
                reference_type=ReferenceType.CREDIT_NOTE,
                reference_id=sale.id,
                actor=actor,
            ))
        db.session.commit()
        return sale, touched

    sale, touched = run_with_retry(_op)
    _notify(touched)
    return sale


# ---------------------------------------------------------------------------
# Credit notes
# ---------------------------------------------------------------------------

def issue_credit_note(credit_note_id: int, actor: str) -> CreditNote:
    """DRAFT -> ISSUED; returned goods are restocked at the note location."""
    def _op():
        note = _load_locked(CreditNote, credit_note_id, "Credit note")
        if note.status != CreditNoteStatus.DRAFT:
            raise InvalidStateTransition(f"Cannot issue credit note {note.id} in {note.status.value} status")
        note.status = CreditNoteStatus.ISSUED
        note.issued_at = utcnow()
        db.session.flush()

        touched = _apply_lines(note.lines, note.location_id, 1, MovementMeta(
            reason=f"Credit note #{note.id}",
            reference_type=ReferenceType.CREDIT_NOTE,
            reference_id=note.id,
            actor=actor,
        ))
        db.session.commit()
        return note, touched

    note, touched = run_with_retry(_op)
    _notify(touched)
    return note


def apply_credit_note(credit_note_id: int, sale_id: int, amount_cents: int) -> CreditNoteApplication:
    """Use an issued credit note as payment on a sale. No stock effect."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer")

    def _op():
        note = _load_locked(CreditNote, credit_note_id, "Credit note")
        if note.status != CreditNoteStatus.ISSUED:
            raise InvalidStateTransition(f"Cannot apply credit note {note.id} in {note.status.value} status")
        sale = db.session.get(Sale, sale_id)
        if sale is None or sale.org_id != note.org_id:
            raise NotFoundError(f"Sale {sale_id} not found")
        application = CreditNoteApplication(credit_note_id=note.id, sale_id=sale.id, amount_cents=amount_cents)
        db.session.add(application)
        db.session.commit()
        return application

    return run_with_retry(_op)


def cancel_credit_note(credit_note_id: int, actor: str, revert_stock: bool) -> CreditNote:
    """
    ISSUED -> CANCELLED.

    Raises:
        ConflictError: the note was already applied to a sale
    """
    def _op():
        note = _load_locked(CreditNote, credit_note_id, "Credit note")
        if note.status != CreditNoteStatus.ISSUED:
            raise InvalidStateTransition(f"Cannot cancel credit note {note.id} in {note.status.value} status")
        applied = db.session.query(CreditNoteApplication.id).filter_by(credit_note_id=note.id).first()
        if applied is not None:
            raise ConflictError(f"Credit note {note.id} has been applied to a sale and cannot be cancelled")

        note.status = CreditNoteStatus.CANCELLED
        note.cancelled_at = utcnow()
        db.session.flush()

        touched = []
        if revert_stock:
            touched = _apply_lines(note.lines, note.location_id, -1, MovementMeta(
                reason=f"Credit note #{note.id} cancelled",
                reference_type=ReferenceType.CREDIT_NOTE,
                reference_id=note.id,
                actor=actor,
            ))
        db.session.commit()
        return note, touched

    note, touched = run_with_retry(_op)
    _notify(touched)
    return note


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

def receive_purchase(purchase_id: int, actor: str) -> Purchase:
    """PENDING -> RECEIVED; tracked lines enter stock at the purchase location."""
    def _op():
        purchase = _load_locked(Purchase, purchase_id, "Purchase")
        if purchase.status != PurchaseStatus.PENDING:
            raise InvalidStateTransition(f"Purchase {purchase.id} was already received")
        if purchase.location_id is None:
            raise ValidationError(f"Purchase {purchase.id} has no location to receive into")
        purchase.status = PurchaseStatus.RECEIVED
        purchase.received_at = utcnow()
        db.session.flush()

        touched = _apply_lines(purchase.lines, purchase.location_id, 1, MovementMeta(
            reason=f"Purchase #{purchase.id} received",
            reference_type=ReferenceType.PURCHASE,
            reference_id=purchase.id,
            actor=actor,
        ))
        db.session.commit()
        return purchase, touched

    purchase, touched = run_with_retry(_op)
    _notify(touched)
    return purchase


def delete_purchase(purchase_id: int, actor: str) -> None:
    """
    Delete a purchase, first taking back any stock it brought in.

    Raises:
        ConflictError: supplier payments are allocated to the purchase
    """
    def _op():
        purchase = _load_locked(Purchase, purchase_id, "Purchase")
        if purchase.payment_allocations:
            raise ConflictError(f"Purchase {purchase.id} has payment allocations and cannot be deleted")

        touched = []
        if purchase.status == PurchaseStatus.RECEIVED:
            touched = _apply_lines(purchase.lines, purchase.location_id, -1, MovementMeta(
                reason=f"Purchase #{purchase.id} deleted",
                reference_type=ReferenceType.PURCHASE,
                reference_id=purchase.id,
                actor=actor,
            ))
        db.session.delete(purchase)
        db.session.commit()
        return touched

    _notify(run_with_retry(_op))


# ---------------------------------------------------------------------------
# Manual inventory edits
# ---------------------------------------------------------------------------

def adjust_inventory(product_id: int, location_id: int, delta: int, actor: str, reason: str) -> StockRecord:
    """Signed manual correction at one location."""
    def _op():
        record = apply_delta(product_id, location_id, delta, MovementMeta(
            reason=reason,
            reference_type=ReferenceType.ADJUSTMENT,
            actor=actor,
        ))
        db.session.commit()
        return record

    record = run_with_retry(_op)
    _notify([product_id])
    return record


def set_stock_levels(changes: Iterable[dict], actor: str, reason: str = "Stock level update") -> int:
    """
    Bulk absolute edit: bring each (product, location) to the given quantity.

    changes: [{"product_id": int, "location_id": int, "quantity": int}]
    Unchanged pairs write nothing. Returns how many pairs changed.
    """
    targets: dict[tuple[int, int], int] = {}
    for change in changes or []:
        try:
            key = (int(change["product_id"]), int(change["location_id"]))
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Each change needs product_id and location_id")
        quantity = change.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(f"Quantity for product {key[0]} must be a non-negative integer")
        if key in targets:
            raise ValidationError(f"Product {key[0]} at location {key[1]} appears more than once")
        targets[key] = quantity

    def _op():
        updated = []
        for (product_id, location_id), target in targets.items():
            # lock first so the delta is computed against a stable quantity
            product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            delta = target - get_quantity(product_id, location_id)
            if delta == 0:
                continue
            apply_delta(product_id, location_id, delta, MovementMeta(
                reason=reason,
                reference_type=ReferenceType.ADJUSTMENT,
                actor=actor,
            ))
            updated.append(product_id)
        db.session.commit()
        return updated

    updated = run_with_retry(_op)
    _notify(updated)
    return len(updated)


# ---------------------------------------------------------------------------
# Event entry point
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SaleCompleted:
    sale_id: int
    actor: str


@dataclass(frozen=True)
class SaleCancelled:
    sale_id: int
    actor: str
    revert_stock: bool


@dataclass(frozen=True)
class CreditNoteIssued:
    credit_note_id: int
    actor: str


@dataclass(frozen=True)
class CreditNoteCancelled:
    credit_note_id: int
    actor: str
    revert_stock: bool


@dataclass(frozen=True)
class PurchaseReceived:
    purchase_id: int
    actor: str


@dataclass(frozen=True)
class PurchaseDeleted:
    purchase_id: int
    actor: str


@dataclass(frozen=True)
class InventoryAdjusted:
    product_id: int
    location_id: int
    delta: int
    actor: str
    reason: str


_HANDLERS = {
    SaleCompleted: lambda e: complete_sale(e.sale_id, e.actor),
    SaleCancelled: lambda e: cancel_sale(e.sale_id, e.actor, e.revert_stock),
    CreditNoteIssued: lambda e: issue_credit_note(e.credit_note_id, e.actor),
    CreditNoteCancelled: lambda e: cancel_credit_note(e.credit_note_id, e.actor, e.revert_stock),
    PurchaseReceived: lambda e: receive_purchase(e.purchase_id, e.actor),
    PurchaseDeleted: lambda e: delete_purchase(e.purchase_id, e.actor),
    InventoryAdjusted: lambda e: adjust_inventory(e.product_id, e.location_id, e.delta, e.actor, e.reason),
}


def handle_event(event):
    """Route a domain event to its reconciliation handler."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise ValidationError(f"Unsupported event: {type(event).__name__}")
    return handler(event)
