import pytest

from backoffice.errors import ConflictError, InvalidStateTransition, NotFoundError, ValidationError
from backoffice.models import (
    CreditNote,
    CreditNoteLine,
    CreditNoteStatus,
    Product,
    Purchase,
    PurchaseLine,
    PurchaseStatus,
    ReferenceType,
    Sale,
    SaleLine,
    SaleStatus,
    StockMovement,
)
from backoffice.services import documents_service, reconciliation_service, stock_ledger
from backoffice.services.reconciliation_service import (
    InventoryAdjusted,
    PurchaseDeleted,
    PurchaseReceived,
    SaleCancelled,
    SaleCompleted,
    handle_event,
)


ACTOR = "tester"


def _aggregate(db_session, product_id):
    return db_session.get(Product, product_id).stock_quantity


def _repoint(db_session, line, product):
    """Point an existing document line at another product (bypasses creation checks)."""
    line.product_id = product.id
    db_session.commit()


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------

def test_complete_sale_deducts_tracked_lines_only(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 10)
    sale = documents_service.create_sale(loc_a.id, [
        {"product_id": product.id, "quantity": 3},
        {"product_id": None, "quantity": 1, "description": "Gift wrapping"},
    ])

    sale = reconciliation_service.complete_sale(sale.id, ACTOR)

    assert sale.status == SaleStatus.COMPLETED
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 7
    movement = db_session.query(StockMovement).filter_by(reference_type=ReferenceType.SALE).one()
    assert movement.quantity == 3
    assert movement.reference_id == str(sale.id)


def test_complete_sale_twice_is_rejected(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 10)
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    reconciliation_service.complete_sale(sale.id, ACTOR)

    with pytest.raises(InvalidStateTransition):
        reconciliation_service.complete_sale(sale.id, ACTOR)
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 9


def test_sale_may_drive_stock_negative(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 1)
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 3}])

    reconciliation_service.complete_sale(sale.id, ACTOR)

    assert stock_ledger.get_quantity(product.id, loc_a.id) == -2
    assert _aggregate(db_session, product.id) == -2


@pytest.mark.parametrize("revert, expected", [(True, 10), (False, 6)])
def test_cancel_sale_revert_is_caller_decision(db_session, product, loc_a, seed_stock, revert, expected):
    seed_stock(product.id, loc_a.id, 10)
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 4}])
    reconciliation_service.complete_sale(sale.id, ACTOR)

    sale = reconciliation_service.cancel_sale(sale.id, ACTOR, revert_stock=revert)

    assert sale.status == SaleStatus.CANCELLED
    assert stock_ledger.get_quantity(product.id, loc_a.id) == expected
    credit_moves = db_session.query(StockMovement).filter_by(reference_type=ReferenceType.CREDIT_NOTE).count()
    assert credit_moves == (1 if revert else 0)


def test_cancel_draft_sale_is_rejected(db_session, product, loc_a):
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    with pytest.raises(InvalidStateTransition):
        reconciliation_service.cancel_sale(sale.id, ACTOR, revert_stock=True)


# ---------------------------------------------------------------------------
# Credit notes
# ---------------------------------------------------------------------------

def test_credit_note_issue_and_cancel_with_revert(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 2)
    note = documents_service.create_credit_note(loc_a.id, [{"product_id": product.id, "quantity": 2}])

    note = reconciliation_service.issue_credit_note(note.id, ACTOR)
    assert note.status == CreditNoteStatus.ISSUED
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 4

    note = reconciliation_service.cancel_credit_note(note.id, ACTOR, revert_stock=True)
    assert note.status == CreditNoteStatus.CANCELLED
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 2
    assert stock_ledger.find_drift() == []


def test_applied_credit_note_cannot_be_cancelled(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 5)
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    note = documents_service.create_credit_note(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    reconciliation_service.issue_credit_note(note.id, ACTOR)
    reconciliation_service.apply_credit_note(note.id, sale.id, 1500)

    with pytest.raises(ConflictError, match="applied"):
        reconciliation_service.cancel_credit_note(note.id, ACTOR, revert_stock=True)
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 6


def test_apply_requires_issued_note(db_session, product, loc_a):
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    note = documents_service.create_credit_note(loc_a.id, [{"product_id": product.id, "quantity": 1}])
    with pytest.raises(InvalidStateTransition):
        reconciliation_service.apply_credit_note(note.id, sale.id, 100)


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

def test_purchase_receive_then_delete(db_session, product, loc_a):
    purchase = documents_service.create_purchase(
        loc_a.org_id, [{"product_id": product.id, "quantity": 10}], location_id=loc_a.id
    )

    purchase = reconciliation_service.receive_purchase(purchase.id, ACTOR)
    assert purchase.status == PurchaseStatus.RECEIVED
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 10
    assert _aggregate(db_session, product.id) == 10

    purchase_id = purchase.id
    reconciliation_service.delete_purchase(purchase_id, ACTOR)

    assert stock_ledger.get_quantity(product.id, loc_a.id) == 0
    assert _aggregate(db_session, product.id) == 0
    assert db_session.get(Purchase, purchase_id) is None
    assert db_session.query(StockMovement).filter_by(reference_type=ReferenceType.PURCHASE).count() == 2


def test_purchase_with_payment_allocation_cannot_be_deleted(db_session, product, loc_a):
    purchase = documents_service.create_purchase(
        loc_a.org_id, [{"product_id": product.id, "quantity": 10}], location_id=loc_a.id
    )
    reconciliation_service.receive_purchase(purchase.id, ACTOR)
    documents_service.allocate_supplier_payment(purchase.id, 5000)

    with pytest.raises(ConflictError, match="payment allocations"):
        reconciliation_service.delete_purchase(purchase.id, ACTOR)

    assert stock_ledger.get_quantity(product.id, loc_a.id) == 10
    assert db_session.get(Purchase, purchase.id) is not None


def test_delete_pending_purchase_touches_no_stock(db_session, product, loc_a):
    purchase = documents_service.create_purchase(
        loc_a.org_id, [{"product_id": product.id, "quantity": 10}], location_id=loc_a.id
    )
    reconciliation_service.delete_purchase(purchase.id, ACTOR)

    assert db_session.query(StockMovement).count() == 0


def test_purchase_without_location_cannot_be_received(db_session, product, org):
    purchase = documents_service.create_purchase(org.id, [{"product_id": product.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        reconciliation_service.receive_purchase(purchase.id, ACTOR)
    assert db_session.get(Purchase, purchase.id).status == PurchaseStatus.PENDING


# ---------------------------------------------------------------------------
# Manual edits
# ---------------------------------------------------------------------------

def test_adjust_inventory(db_session, product, loc_a):
    record = reconciliation_service.adjust_inventory(product.id, loc_a.id, 6, ACTOR, "Found in backroom")
    assert record.quantity == 6
    movement = db_session.query(StockMovement).one()
    assert movement.reference_type == ReferenceType.ADJUSTMENT
    assert movement.reason == "Found in backroom"


def test_set_stock_levels_skips_unchanged_pairs(db_session, make_product, loc_a, loc_b, seed_stock):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    seed_stock(shirt.id, loc_a.id, 5)
    seed_stock(mug.id, loc_a.id, 2)
    before = db_session.query(StockMovement).count()

    updated = reconciliation_service.set_stock_levels([
        {"product_id": shirt.id, "location_id": loc_a.id, "quantity": 5},
        {"product_id": mug.id, "location_id": loc_a.id, "quantity": 7},
        {"product_id": mug.id, "location_id": loc_b.id, "quantity": 1},
    ], ACTOR)

    assert updated == 2
    assert db_session.query(StockMovement).count() == before + 2
    assert stock_ledger.get_quantity(mug.id, loc_a.id) == 7
    assert stock_ledger.get_quantity(mug.id, loc_b.id) == 1
    assert _aggregate(db_session, mug.id) == 8


def test_set_stock_levels_is_all_or_nothing(db_session, product, loc_a, seed_stock):
    seed_stock(product.id, loc_a.id, 5)
    with pytest.raises(NotFoundError):
        reconciliation_service.set_stock_levels([
            {"product_id": product.id, "location_id": loc_a.id, "quantity": 1},
            {"product_id": 987654, "location_id": loc_a.id, "quantity": 1},
        ], ACTOR)
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 5


# ---------------------------------------------------------------------------
# Event routing
# ---------------------------------------------------------------------------

def test_handle_event_routes_to_handlers(db_session, product, loc_a):
    purchase = documents_service.create_purchase(
        loc_a.org_id, [{"product_id": product.id, "quantity": 4}], location_id=loc_a.id
    )
    handle_event(PurchaseReceived(purchase_id=purchase.id, actor=ACTOR))
    sale = documents_service.create_sale(loc_a.id, [{"product_id": product.id, "quantity": 3}])
    handle_event(SaleCompleted(sale_id=sale.id, actor=ACTOR))
    handle_event(SaleCancelled(sale_id=sale.id, actor=ACTOR, revert_stock=True))
    handle_event(InventoryAdjusted(product_id=product.id, location_id=loc_a.id, delta=-1, actor=ACTOR, reason="Broken"))

    assert stock_ledger.get_quantity(product.id, loc_a.id) == 3

    handle_event(PurchaseDeleted(purchase_id=purchase.id, actor=ACTOR))
    assert stock_ledger.get_quantity(product.id, loc_a.id) == -1
    assert stock_ledger.find_drift() == []


def test_handle_event_rejects_unknown_event(db_session):
    with pytest.raises(ValidationError):
        handle_event(object())


# ---------------------------------------------------------------------------
# Ledger failure rolls back the document transition
# ---------------------------------------------------------------------------

@pytest.fixture
def foreign_product(make_product, other_org):
    return make_product(sku="FOREIGN", org_id=other_org.id)


def test_complete_sale_failure_leaves_sale_draft(db_session, make_product, loc_a, seed_stock, foreign_product):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    seed_stock(shirt.id, loc_a.id, 10)
    sale = documents_service.create_sale(loc_a.id, [
        {"product_id": shirt.id, "quantity": 3},
        {"product_id": mug.id, "quantity": 1},
    ])
    _repoint(db_session, db_session.query(SaleLine).filter_by(sale_id=sale.id, product_id=mug.id).one(), foreign_product)
    before = db_session.query(StockMovement).count()

    with pytest.raises(NotFoundError):
        reconciliation_service.complete_sale(sale.id, ACTOR)

    assert db_session.get(Sale, sale.id).status == SaleStatus.DRAFT
    assert stock_ledger.get_quantity(shirt.id, loc_a.id) == 10
    assert _aggregate(db_session, shirt.id) == 10
    assert db_session.query(StockMovement).count() == before


def test_cancel_credit_note_failure_leaves_note_issued(db_session, make_product, loc_a, foreign_product):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    note = documents_service.create_credit_note(loc_a.id, [
        {"product_id": shirt.id, "quantity": 2},
        {"product_id": mug.id, "quantity": 1},
    ])
    reconciliation_service.issue_credit_note(note.id, ACTOR)
    line = db_session.query(CreditNoteLine).filter_by(credit_note_id=note.id, product_id=mug.id).one()
    _repoint(db_session, line, foreign_product)
    before = db_session.query(StockMovement).count()

    with pytest.raises(NotFoundError):
        reconciliation_service.cancel_credit_note(note.id, ACTOR, revert_stock=True)

    assert db_session.get(CreditNote, note.id).status == CreditNoteStatus.ISSUED
    assert stock_ledger.get_quantity(shirt.id, loc_a.id) == 2
    assert db_session.query(StockMovement).count() == before


def test_receive_purchase_failure_leaves_purchase_pending(db_session, make_product, loc_a, foreign_product):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    purchase = documents_service.create_purchase(loc_a.org_id, [
        {"product_id": shirt.id, "quantity": 6},
        {"product_id": mug.id, "quantity": 4},
    ], location_id=loc_a.id)
    line = db_session.query(PurchaseLine).filter_by(purchase_id=purchase.id, product_id=mug.id).one()
    _repoint(db_session, line, foreign_product)

    with pytest.raises(NotFoundError):
        reconciliation_service.receive_purchase(purchase.id, ACTOR)

    assert db_session.get(Purchase, purchase.id).status == PurchaseStatus.PENDING
    assert stock_ledger.get_quantity(shirt.id, loc_a.id) == 0
    assert _aggregate(db_session, shirt.id) == 0
    assert db_session.query(StockMovement).count() == 0


def test_delete_purchase_failure_keeps_purchase_and_stock(db_session, make_product, loc_a, foreign_product):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    purchase = documents_service.create_purchase(loc_a.org_id, [
        {"product_id": shirt.id, "quantity": 6},
        {"product_id": mug.id, "quantity": 4},
    ], location_id=loc_a.id)
    reconciliation_service.receive_purchase(purchase.id, ACTOR)
    line = db_session.query(PurchaseLine).filter_by(purchase_id=purchase.id, product_id=mug.id).one()
    _repoint(db_session, line, foreign_product)
    before = db_session.query(StockMovement).count()

    with pytest.raises(NotFoundError):
        reconciliation_service.delete_purchase(purchase.id, ACTOR)

    assert db_session.get(Purchase, purchase.id) is not None
    assert stock_ledger.get_quantity(shirt.id, loc_a.id) == 6
    assert stock_ledger.get_quantity(mug.id, loc_a.id) == 4
    assert db_session.query(StockMovement).count() == before


# ---------------------------------------------------------------------------
# Credit note location
# ---------------------------------------------------------------------------

def test_credit_note_for_sale_defaults_to_sale_location(db_session, product, loc_b):
    sale = documents_service.create_sale(loc_b.id, [{"product_id": product.id, "quantity": 1}])

    note = documents_service.create_credit_note(None, [{"product_id": product.id, "quantity": 1}], sale_id=sale.id)
    reconciliation_service.issue_credit_note(note.id, ACTOR)

    assert note.location_id == loc_b.id
    assert stock_ledger.get_quantity(product.id, loc_b.id) == 1


def test_credit_note_location_must_match_sale(db_session, product, loc_a, loc_b):
    sale = documents_service.create_sale(loc_b.id, [{"product_id": product.id, "quantity": 1}])

    with pytest.raises(ValidationError, match="does not match"):
        documents_service.create_credit_note(loc_a.id, [{"product_id": product.id, "quantity": 1}], sale_id=sale.id)


def test_credit_note_needs_location_or_sale(db_session, product):
    with pytest.raises(ValidationError):
        documents_service.create_credit_note(None, [{"product_id": product.id, "quantity": 1}])
