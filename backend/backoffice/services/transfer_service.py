# backend/backoffice/services/transfer_service.py
"""
Inter-location transfer service.

WHY: Move stock between locations with accountability. Origin stock leaves
when the transfer is dispatched; destination stock arrives only for what was
actually received.

LIFECYCLE:
1. DRAFT: Created, no stock touched
2. IN_TRANSIT: Dispatched (negative TRANSFER movement per item at origin)
3. RECEIVED: Received at destination (positive TRANSFER movement per received item)
4. CANCELLED: From DRAFT (status only) or IN_TRANSIT (origin restocked)

RECEIVED and CANCELLED are terminal. Every transition locks the transfer row
and bumps its version before any ledger delta, so two racing transitions on
the same transfer cannot both apply.
"""
from __future__ import annotations

import uuid
from typing import Iterable

from sqlalchemy import func

from ..errors import InvalidStateTransition, NotFoundError, ValidationError
from ..extensions import db
from ..models import Location, Product, ReferenceType, StockRecord, Transfer, TransferItem, TransferStatus
from ..time_utils import compact_date, utcnow
from .concurrency import lock_for_update, run_with_retry
from .stock_ledger import MovementMeta, apply_delta


def generate_transfer_number() -> str:
    """T-YYYYMMDD-XXXXXXXX"""
    return f"T-{compact_date()}-{uuid.uuid4().hex[:8].upper()}"


def _positive_int(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{label} must be a positive integer")
    return value


def _normalize_items(items: Iterable[dict]) -> list[tuple[int, int]]:
    normalized: list[tuple[int, int]] = []
    seen: set[int] = set()
    for item in items or []:
        product_id = item.get("product_id")
        if product_id is None:
            raise ValidationError("Each item needs a product_id")
        product_id = int(product_id)
        if product_id in seen:
            raise ValidationError(f"Product {product_id} appears more than once")
        seen.add(product_id)
        normalized.append((product_id, _positive_int(item.get("quantity"), f"Quantity for product {product_id}")))
    if not normalized:
        raise ValidationError("A transfer needs at least one item")
    return normalized


def _coerce_status(status) -> TransferStatus:
    try:
        return TransferStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown transfer status: {status}")


def _load_transfer(transfer_id: int, *, lock: bool = True) -> Transfer:
    query = db.session.query(Transfer).filter_by(id=transfer_id)
    if lock:
        query = lock_for_update(query)
    transfer = query.first()
    if transfer is None:
        raise NotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def _require_status(transfer: Transfer, *allowed: TransferStatus, action: str) -> None:
    if transfer.status not in allowed:
        raise InvalidStateTransition(
            f"Cannot {action} transfer {transfer.transfer_number} in {transfer.status.value} status"
        )


def _require_stocked_at_origin(origin_location_id: int, product_ids: list[int]) -> None:
    stocked = {
        pid for (pid,) in db.session.query(StockRecord.product_id).filter(
            StockRecord.location_id == origin_location_id,
            StockRecord.product_id.in_(product_ids),
            StockRecord.quantity > 0,
        )
    }
    missing = [pid for pid in product_ids if pid not in stocked]
    if missing:
        raise ValidationError(
            f"Products not stocked at origin location {origin_location_id}: {', '.join(map(str, missing))}"
        )


def _deduct_origin(transfer: Transfer, actor: str) -> None:
    for item in transfer.items:
        apply_delta(
            item.product_id,
            transfer.origin_location_id,
            -item.requested_quantity,
            MovementMeta(
                reason=f"Transfer {transfer.transfer_number} dispatched",
                reference_type=ReferenceType.TRANSFER,
                reference_id=transfer.id,
                actor=actor,
                counterpart_location_id=transfer.destination_location_id,
            ),
        )


def _notify(product_ids) -> None:
    from .marketplace_sync import notify_stock_changed
    notify_stock_changed(product_ids)


def create_transfer(
    origin_location_id: int,
    destination_location_id: int,
    items: Iterable[dict],
    actor: str,
    *,
    status=TransferStatus.IN_TRANSIT,
    notes: str | None = None,
) -> Transfer:
    """
    Create a transfer in DRAFT or IN_TRANSIT.

    Args:
        origin_location_id: Location the goods leave
        destination_location_id: Location the goods go to
        items: [{"product_id": int, "quantity": int}]
        actor: Who creates it (recorded on the transfer and its movements)
        status: DRAFT (no stock effect) or IN_TRANSIT (origin deducted now)

    Raises:
        ValidationError: same origin/destination, empty or malformed items,
            duplicate products, or products not stocked at origin
        NotFoundError: unknown location or product
    """
    status = _coerce_status(status)
    if status not in (TransferStatus.DRAFT, TransferStatus.IN_TRANSIT):
        raise ValidationError("A transfer can only be created as draft or in_transit")
    if origin_location_id == destination_location_id:
        raise ValidationError("Origin and destination must be different locations")
    if not str(actor or "").strip():
        raise ValidationError("actor is required")
    normalized = _normalize_items(items)

    def _op():
        origin = db.session.get(Location, origin_location_id)
        if origin is None:
            raise NotFoundError(f"Location {origin_location_id} not found")
        destination = db.session.get(Location, destination_location_id)
        if destination is None or destination.org_id != origin.org_id:
            raise NotFoundError(f"Location {destination_location_id} not found")

        product_ids = [pid for pid, _ in normalized]
        found = {
            pid for (pid,) in db.session.query(Product.id).filter(
                Product.id.in_(product_ids), Product.org_id == origin.org_id
            )
        }
        missing = [pid for pid in product_ids if pid not in found]
        if missing:
            raise NotFoundError(f"Products not found: {', '.join(map(str, missing))}")
        _require_stocked_at_origin(origin.id, product_ids)

        transfer = Transfer(
            org_id=origin.org_id,
            transfer_number=generate_transfer_number(),
            status=status,
            origin_location_id=origin.id,
            destination_location_id=destination.id,
            notes=notes,
            created_by=str(actor),
        )
        for position, (product_id, quantity) in enumerate(normalized):
            transfer.items.append(TransferItem(product_id=product_id, requested_quantity=quantity, position=position))
        db.session.add(transfer)
        db.session.flush()  # Get ID for movement references

        if status == TransferStatus.IN_TRANSIT:
            transfer.dispatched_at = utcnow()
            _deduct_origin(transfer, str(actor))

        db.session.commit()
        return transfer

    transfer = run_with_retry(_op)
    if transfer.status == TransferStatus.IN_TRANSIT:
        _notify([pid for pid, _ in normalized])
    return transfer


def dispatch_transfer(transfer_id: int, actor: str) -> Transfer:
    """DRAFT -> IN_TRANSIT, deducting origin stock."""
    def _op():
        transfer = _load_transfer(transfer_id)
        _require_status(transfer, TransferStatus.DRAFT, action="dispatch")
        _require_stocked_at_origin(transfer.origin_location_id, [item.product_id for item in transfer.items])

        transfer.status = TransferStatus.IN_TRANSIT
        transfer.dispatched_at = utcnow()
        db.session.flush()  # claim the transition (version bump) before touching stock

        _deduct_origin(transfer, str(actor))
        db.session.commit()
        return transfer

    transfer = run_with_retry(_op)
    _notify([item.product_id for item in transfer.items])
    return transfer


def receive_transfer(transfer_id: int, received_items: Iterable[dict], actor: str) -> Transfer:
    """
    IN_TRANSIT -> RECEIVED. Single-shot: a second receipt fails.

    Args:
        received_items: [{"product_id": int, "quantity": int}]; items of the
            transfer not listed are recorded as received 0.

    Raises:
        InvalidStateTransition: transfer is not IN_TRANSIT
        ValidationError: unknown item, duplicate item, negative quantity or
            more received than requested
    """
    received_items = list(received_items or [])

    def _op():
        transfer = _load_transfer(transfer_id)
        _require_status(transfer, TransferStatus.IN_TRANSIT, action="receive")

        by_product = {item.product_id: item for item in transfer.items}
        received: dict[int, int] = {}
        for entry in received_items:
            product_id = entry.get("product_id")
            if product_id is None or int(product_id) not in by_product:
                raise ValidationError(f"Product {product_id} is not part of this transfer")
            product_id = int(product_id)
            if product_id in received:
                raise ValidationError(f"Product {product_id} appears more than once")
            quantity = entry.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
                raise ValidationError(f"Received quantity for product {product_id} must be a non-negative integer")
            if quantity > by_product[product_id].requested_quantity:
                raise ValidationError(
                    f"Received quantity for product {product_id} exceeds requested "
                    f"({quantity} > {by_product[product_id].requested_quantity})"
                )
            received[product_id] = quantity

        transfer.status = TransferStatus.RECEIVED
        transfer.received_at = utcnow()
        transfer.received_by = str(actor)
        db.session.flush()  # claim the transition (version bump) before touching stock

        for item in transfer.items:
            item.received_quantity = received.get(item.product_id, 0)
            if item.received_quantity > 0:
                apply_delta(
                    item.product_id,
                    transfer.destination_location_id,
                    item.received_quantity,
                    MovementMeta(
                        reason=f"Transfer {transfer.transfer_number} received",
                        reference_type=ReferenceType.TRANSFER,
                        reference_id=transfer.id,
                        actor=actor,
                        counterpart_location_id=transfer.origin_location_id,
                    ),
                )

        db.session.commit()
        return transfer

    transfer = run_with_retry(_op)
    _notify([item.product_id for item in transfer.items if item.received_quantity])
    return transfer


def cancel_transfer(transfer_id: int, actor: str, reason: str | None = None) -> Transfer:
    """
    Cancel from DRAFT (status only) or IN_TRANSIT (requested quantities go
    back to origin).
    """
    def _op():
        transfer = _load_transfer(transfer_id)
        _require_status(transfer, TransferStatus.DRAFT, TransferStatus.IN_TRANSIT, action="cancel")
        was_in_transit = transfer.status == TransferStatus.IN_TRANSIT

        transfer.status = TransferStatus.CANCELLED
        transfer.cancelled_at = utcnow()
        transfer.cancelled_by = str(actor)
        transfer.cancellation_reason = reason
        db.session.flush()

        if was_in_transit:
            for item in transfer.items:
                apply_delta(
                    item.product_id,
                    transfer.origin_location_id,
                    item.requested_quantity,
                    MovementMeta(
                        reason=f"Transfer {transfer.transfer_number} cancelled",
                        reference_type=ReferenceType.TRANSFER,
                        reference_id=transfer.id,
                        actor=actor,
                        counterpart_location_id=transfer.destination_location_id,
                    ),
                )

        db.session.commit()
        return transfer, was_in_transit

    transfer, restocked = run_with_retry(_op)
    if restocked:
        _notify([item.product_id for item in transfer.items])
    return transfer


def get_transfer(transfer_id: int) -> Transfer:
    return _load_transfer(transfer_id, lock=False)


def list_transfers(org_id: int, statuses=None) -> list[Transfer]:
    query = db.session.query(Transfer).filter_by(org_id=org_id)
    if statuses:
        query = query.filter(Transfer.status.in_([_coerce_status(s) for s in statuses]))
    return query.order_by(Transfer.created_at.desc(), Transfer.id.desc()).all()


def get_products_by_location(location_id: int) -> list[dict]:
    """Products with positive stock at a location (what can be transferred from it)."""
    if db.session.get(Location, location_id) is None:
        raise NotFoundError(f"Location {location_id} not found")
    rows = (
        db.session.query(Product, StockRecord.quantity)
        .join(StockRecord, StockRecord.product_id == Product.id)
        .filter(StockRecord.location_id == location_id, StockRecord.quantity > 0)
        .order_by(func.lower(Product.name).asc(), Product.id.asc())
        .all()
    )
    return [
        {"product_id": product.id, "sku": product.sku, "name": product.name, "quantity": int(quantity)}
        for product, quantity in rows
    ]
