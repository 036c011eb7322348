# Overview: Minimal document creation (sales, credit notes, purchases, supplier payment allocations).

# Full document CRUD lives in the sales/purchasing modules of the back office;
# these helpers create the rows the reconciliation layer acts on.

from __future__ import annotations

from typing import Iterable

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    CreditNote,
    CreditNoteLine,
    Location,
    Product,
    Purchase,
    PurchaseLine,
    Sale,
    SaleLine,
    SupplierPaymentAllocation,
)
from .concurrency import run_with_retry


def _location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFoundError(f"Location {location_id} not found")
    return location


def _validated_lines(lines: Iterable[dict], org_id: int) -> list[dict]:
    out = []
    for line in lines or []:
        quantity = line.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Line quantity must be a positive integer")
        product_id = line.get("product_id")
        if product_id is not None:
            product = db.session.get(Product, int(product_id))
            if product is None or product.org_id != org_id:
                raise NotFoundError(f"Product {product_id} not found")
            product_id = product.id
        out.append({"product_id": product_id, "quantity": quantity, "description": line.get("description")})
    if not out:
        raise ValidationError("At least one line is required")
    return out


def create_sale(location_id: int, lines: Iterable[dict]) -> Sale:
    """Draft sale; lines without product_id are custom items."""
    def _op():
        location = _location(location_id)
        sale = Sale(org_id=location.org_id, location_id=location.id)
        for line in _validated_lines(lines, location.org_id):
            sale.lines.append(SaleLine(**line))
        db.session.add(sale)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def create_credit_note(
    location_id: int | None,
    lines: Iterable[dict],
    *,
    sale_id: int | None = None,
) -> CreditNote:
    """
    Draft credit note. A note against a sale restocks the sale's location:
    location_id defaults to it and must match it when given.
    """
    def _op():
        if sale_id is not None:
            sale = db.session.get(Sale, sale_id)
            if sale is None:
                raise NotFoundError(f"Sale {sale_id} not found")
            if location_id is not None and location_id != sale.location_id:
                raise ValidationError(
                    f"Credit note location {location_id} does not match sale location {sale.location_id}"
                )
            location = _location(sale.location_id)
        elif location_id is not None:
            location = _location(location_id)
        else:
            raise ValidationError("location_id is required without a sale")

        note = CreditNote(org_id=location.org_id, location_id=location.id, sale_id=sale_id)
        for line in _validated_lines(lines, location.org_id):
            note.lines.append(CreditNoteLine(product_id=line["product_id"], quantity=line["quantity"]))
        db.session.add(note)
        db.session.commit()
        return note

    return run_with_retry(_op)


def create_purchase(
    org_id: int,
    lines: Iterable[dict],
    *,
    location_id: int | None = None,
    notes: str | None = None,
) -> Purchase:
    """Pending purchase. location_id may be set later, but is required to receive."""
    def _op():
        if location_id is not None and _location(location_id).org_id != org_id:
            raise NotFoundError(f"Location {location_id} not found")
        purchase = Purchase(org_id=org_id, location_id=location_id, notes=notes)
        for line in _validated_lines(lines, org_id):
            purchase.lines.append(PurchaseLine(product_id=line["product_id"], quantity=line["quantity"]))
        db.session.add(purchase)
        db.session.commit()
        return purchase

    return run_with_retry(_op)


def allocate_supplier_payment(purchase_id: int, amount_cents: int) -> SupplierPaymentAllocation:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer")

    def _op():
        if db.session.get(Purchase, purchase_id) is None:
            raise NotFoundError(f"Purchase {purchase_id} not found")
        allocation = SupplierPaymentAllocation(purchase_id=purchase_id, amount_cents=amount_cents)
        db.session.add(allocation)
        db.session.commit()
        return allocation

    return run_with_retry(_op)
