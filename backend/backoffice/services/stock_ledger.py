# Overview: Stock ledger: per-location quantities, the append-only movement log and the cached product aggregate.

"""
Stock Ledger Invariants (authoritative)

State:
- StockRecord(product, location).quantity is the only mutable quantity.
- StockMovement rows are append-only; every quantity change writes exactly one.
- Product.stock_quantity == SUM(StockRecord.quantity) for the product, always,
  as seen by any committed reader.

Write path (apply_delta):
1. Lock the product row (serializes units touching the same product and keeps
   the aggregate recomputation consistent under READ COMMITTED).
2. INSERT ... ON CONFLICT DO UPDATE SET quantity = quantity + delta
   (no read-modify-write in Python).
3. Insert the movement.
4. Recompute the aggregate with a single UPDATE ... SET = (SELECT SUM ...).

All four steps run in the caller's transaction; apply_delta never commits.
apply_stock_delta is the standalone unit: retry-wrapped, committed, and
followed by a marketplace sync notification.

Negative quantities are allowed and logged at WARNING; callers that want to
prevent them check availability first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from flask import current_app
from sqlalchemy import and_, case, func, select, update

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Location, MovementDirection, Product, ReferenceType, StockMovement, StockRecord
from .concurrency import lock_for_update, run_with_retry


@dataclass(frozen=True)
class MovementMeta:
    """Why a delta happened and who caused it."""

    reason: str
    reference_type: ReferenceType
    actor: str
    reference_id: str | int | None = None
    # Other side of a transfer movement
    counterpart_location_id: int | None = None


def _validate(delta, meta: MovementMeta) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer")
    if delta == 0:
        raise ValidationError("delta must be non-zero")
    if meta is None:
        raise ValidationError("movement metadata is required")
    if not isinstance(meta.reference_type, ReferenceType):
        raise ValidationError("reference_type must be a ReferenceType")
    if not (meta.reason or "").strip():
        raise ValidationError("reason is required")
    if not (str(meta.actor or "")).strip():
        raise ValidationError("actor is required")


def _load_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _load_location(location_id: int, org_id: int | None = None) -> Location:
    location = db.session.get(Location, location_id)
    if location is None or (org_id is not None and location.org_id != org_id):
        raise NotFoundError(f"Location {location_id} not found")
    return location


def _dialect_insert():
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for stock upsert: {dialect}")
    return insert


def _upsert_increment(product_id: int, location_id: int, delta: int) -> None:
    table = StockRecord.__table__
    stmt = _dialect_insert()(table).values(product_id=product_id, location_id=location_id, quantity=delta)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.product_id, table.c.location_id],
        set_={"quantity": table.c.quantity + delta, "updated_at": func.now()},
    )
    db.session.execute(stmt)


def recompute_aggregate(product_id: int) -> int:
    """
    Write SUM(stock_records.quantity) into products.stock_quantity.

    One UPDATE with a scalar subquery; runs in the caller's transaction.
    """
    total = (
        select(func.coalesce(func.sum(StockRecord.quantity), 0))
        .where(StockRecord.product_id == product_id)
        .scalar_subquery()
    )
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=total)
        .execution_options(synchronize_session=False)
    )
    product = db.session.get(Product, product_id)
    if product is not None:
        db.session.expire(product, ["stock_quantity"])
        return int(product.stock_quantity)
    return 0


def apply_delta(product_id: int, location_id: int, delta: int, meta: MovementMeta) -> StockRecord:
    """
    Apply a signed quantity change to (product, location).

    Writes the record, one movement and the refreshed aggregate. Does NOT
    commit: the caller owns the transaction.

    Raises:
        ValidationError: zero/non-integer delta or incomplete metadata
        NotFoundError: unknown product or location, or a location outside
            the product's organization
    """
    _validate(delta, meta)

    product = _load_product(product_id, lock=True)
    _load_location(location_id, org_id=product.org_id)
    if meta.counterpart_location_id is not None:
        _load_location(meta.counterpart_location_id, org_id=product.org_id)

    _upsert_increment(product_id, location_id, delta)

    direction = MovementDirection.IN if delta > 0 else MovementDirection.OUT
    if direction == MovementDirection.IN:
        from_location_id, to_location_id = meta.counterpart_location_id, location_id
    else:
        from_location_id, to_location_id = location_id, meta.counterpart_location_id

    db.session.add(StockMovement(
        product_id=product_id,
        location_id=location_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        direction=direction,
        quantity=abs(delta),
        reason=meta.reason.strip(),
        reference_type=meta.reference_type,
        reference_id=str(meta.reference_id) if meta.reference_id is not None else None,
        created_by=str(meta.actor),
    ))

    record = (
        db.session.query(StockRecord)
        .filter_by(product_id=product_id, location_id=location_id)
        .populate_existing()
        .one()
    )

    recompute_aggregate(product_id)

    if record.quantity < 0:
        current_app.logger.warning(
            "Stock for product %s at location %s is negative (%s) after %s %s",
            product_id, location_id, record.quantity, meta.reference_type.value, meta.reference_id,
        )
    return record


def apply_stock_delta(product_id: int, location_id: int, delta: int, meta: MovementMeta) -> StockRecord:
    """Standalone atomic unit around apply_delta: retried, committed, then synced."""
    from .marketplace_sync import notify_stock_changed

    def _op():
        record = apply_delta(product_id, location_id, delta, meta)
        db.session.commit()
        return record

    record = run_with_retry(_op)
    notify_stock_changed([product_id])
    return record


def get_quantity(product_id: int, location_id: int) -> int:
    """Current quantity at a location; 0 when the pair has no record yet."""
    qty = (
        db.session.query(StockRecord.quantity)
        .filter_by(product_id=product_id, location_id=location_id)
        .scalar()
    )
    return int(qty or 0)


def get_stock_by_location(product_id: int) -> list[tuple[int, int]]:
    _load_product(product_id)
    rows = (
        db.session.query(StockRecord.location_id, StockRecord.quantity)
        .filter_by(product_id=product_id)
        .order_by(StockRecord.location_id.asc())
        .all()
    )
    return [(int(location_id), int(quantity)) for location_id, quantity in rows]


def list_movements(product_id: int, location_id: int | None = None, limit: int = 200) -> list[StockMovement]:
    """Movement history, newest first."""
    _load_product(product_id)
    query = db.session.query(StockMovement).filter_by(product_id=product_id)
    if location_id is not None:
        query = query.filter_by(location_id=location_id)
    limit = max(1, min(int(limit), 1000))
    return query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()


def _signed_movement_quantity():
    return case(
        (StockMovement.direction == MovementDirection.IN, StockMovement.quantity),
        else_=-StockMovement.quantity,
    )


def replay_quantity(product_id: int, location_id: int) -> int:
    """Quantity rebuilt from zero by replaying the movement log."""
    total = (
        db.session.query(func.coalesce(func.sum(_signed_movement_quantity()), 0))
        .filter(StockMovement.product_id == product_id, StockMovement.location_id == location_id)
        .scalar()
    )
    return int(total or 0)


def find_drift(org_id: int | None = None) -> list[dict]:
    """
    Audit the ledger.

    Returns one entry per inconsistency:
    - kind "aggregate": Product.stock_quantity != SUM(records)
    - kind "record": StockRecord.quantity != replayed movements
    """
    drift: list[dict] = []

    sums = (
        db.session.query(
            StockRecord.product_id.label("product_id"),
            func.sum(StockRecord.quantity).label("total"),
        )
        .group_by(StockRecord.product_id)
        .subquery()
    )
    agg_q = db.session.query(Product, func.coalesce(sums.c.total, 0)).outerjoin(
        sums, sums.c.product_id == Product.id
    )
    if org_id is not None:
        agg_q = agg_q.filter(Product.org_id == org_id)
    for product, total in agg_q.all():
        if int(product.stock_quantity) != int(total):
            drift.append({
                "kind": "aggregate",
                "product_id": product.id,
                "expected": int(total),
                "actual": int(product.stock_quantity),
            })

    replayed = (
        db.session.query(
            StockMovement.product_id.label("product_id"),
            StockMovement.location_id.label("location_id"),
            func.sum(_signed_movement_quantity()).label("replayed"),
        )
        .group_by(StockMovement.product_id, StockMovement.location_id)
        .subquery()
    )
    rec_q = (
        db.session.query(StockRecord, func.coalesce(replayed.c.replayed, 0))
        .outerjoin(
            replayed,
            and_(
                replayed.c.product_id == StockRecord.product_id,
                replayed.c.location_id == StockRecord.location_id,
            ),
        )
    )
    if org_id is not None:
        rec_q = rec_q.join(Product, Product.id == StockRecord.product_id).filter(Product.org_id == org_id)
    for record, total in rec_q.all():
        if int(record.quantity) != int(total):
            drift.append({
                "kind": "record",
                "product_id": record.product_id,
                "location_id": record.location_id,
                "expected": int(total),
                "actual": int(record.quantity),
            })

    return drift


def check_stock_availability(location_id: int, items: Iterable[dict]) -> list[dict]:
    """
    Shortages for a prospective sale or transfer at one location.

    items: [{"product_id": int | None, "quantity": int}]; entries without a
    product (custom lines) are ignored. Quantities for a repeated product are
    summed before comparing.
    """
    _load_location(location_id)

    requested: dict[int, int] = {}
    for item in items:
        product_id = item.get("product_id")
        if product_id is None:
            continue
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"Invalid quantity for product {product_id}")
        requested[int(product_id)] = requested.get(int(product_id), 0) + quantity

    shortages = []
    for product_id, qty in requested.items():
        available = get_quantity(product_id, location_id)
        if available < qty:
            shortages.append({
                "product_id": product_id,
                "requested": qty,
                "available": available,
                "shortage": qty - available,
            })
    return shortages
