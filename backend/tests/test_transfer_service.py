import re

import pytest

from backoffice.errors import InvalidStateTransition, NotFoundError, ValidationError
from backoffice.models import MovementDirection, Product, ReferenceType, StockMovement, TransferItem, TransferStatus
from backoffice.services import stock_ledger, transfer_service


ACTOR = "tester"


def _aggregate(db_session, product_id):
    return db_session.get(Product, product_id).stock_quantity


def test_transfer_a_to_b_scenario(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 20)

    transfer = transfer_service.create_transfer(
        loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 8}], ACTOR
    )
    assert transfer.status == TransferStatus.IN_TRANSIT
    assert re.fullmatch(r"T-\d{8}-[0-9A-F]{8}", transfer.transfer_number)
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 12
    assert stock_ledger.get_quantity(product.id, loc_b.id) == 0
    assert _aggregate(db_session, product.id) == 12

    transfer = transfer_service.receive_transfer(transfer.id, [{"product_id": product.id, "quantity": 8}], ACTOR)
    assert transfer.status == TransferStatus.RECEIVED
    assert transfer.received_at is not None
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 12
    assert stock_ledger.get_quantity(product.id, loc_b.id) == 8
    assert _aggregate(db_session, product.id) == 20

    moves = (
        db_session.query(StockMovement)
        .filter_by(reference_type=ReferenceType.TRANSFER)
        .order_by(StockMovement.id)
        .all()
    )
    assert [(m.direction, m.location_id, m.from_location_id, m.to_location_id) for m in moves] == [
        (MovementDirection.OUT, loc_a.id, loc_a.id, loc_b.id),
        (MovementDirection.IN, loc_b.id, loc_a.id, loc_b.id),
    ]
    assert [m.signed_quantity for m in moves] == [-8, 8]
    assert all(m.reference_id == str(transfer.id) for m in moves)
    assert stock_ledger.find_drift() == []


def test_partial_receipt_records_discrepancy(db_session, make_product, loc_a, loc_b, seed_stock):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    seed_stock(shirt.id, loc_a.id, 10)
    seed_stock(mug.id, loc_a.id, 4)

    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [
        {"product_id": shirt.id, "quantity": 5},
        {"product_id": mug.id, "quantity": 2},
    ], ACTOR)

    transfer = transfer_service.receive_transfer(transfer.id, [{"product_id": shirt.id, "quantity": 3}], ACTOR)

    items = {item.product_id: item for item in transfer.items}
    assert items[shirt.id].received_quantity == 3
    assert items[shirt.id].discrepancy == 2
    assert items[mug.id].received_quantity == 0
    assert stock_ledger.get_quantity(shirt.id, loc_b.id) == 3
    assert stock_ledger.get_quantity(mug.id, loc_b.id) == 0
    # no movement for the missing goods
    assert db_session.query(StockMovement).filter_by(product_id=mug.id, location_id=loc_b.id).count() == 0


def test_receipt_is_single_shot(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 5)
    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 5}], ACTOR)
    transfer_service.receive_transfer(transfer.id, [{"product_id": product.id, "quantity": 5}], ACTOR)

    with pytest.raises(InvalidStateTransition):
        transfer_service.receive_transfer(transfer.id, [{"product_id": product.id, "quantity": 5}], ACTOR)
    assert stock_ledger.get_quantity(product.id, loc_b.id) == 5


def test_receive_rejects_more_than_requested(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 5)
    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 2}], ACTOR)

    with pytest.raises(ValidationError):
        transfer_service.receive_transfer(transfer.id, [{"product_id": product.id, "quantity": 3}], ACTOR)
    with pytest.raises(ValidationError):
        transfer_service.receive_transfer(transfer.id, [{"product_id": product.id, "quantity": -1}], ACTOR)

    assert transfer_service.get_transfer(transfer.id).status == TransferStatus.IN_TRANSIT
    assert stock_ledger.get_quantity(product.id, loc_b.id) == 0


def test_cancel_in_transit_restores_origin(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 9)
    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 4}], ACTOR)
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 5

    transfer = transfer_service.cancel_transfer(transfer.id, ACTOR, reason="Truck broke down")

    assert transfer.status == TransferStatus.CANCELLED
    assert transfer.cancellation_reason == "Truck broke down"
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 9
    assert _aggregate(db_session, product.id) == 9

    compensation = (
        db_session.query(StockMovement)
        .filter_by(reference_type=ReferenceType.TRANSFER, direction=MovementDirection.IN)
        .one()
    )
    assert compensation.location_id == loc_a.id
    assert compensation.from_location_id == loc_b.id
    assert compensation.to_location_id == loc_a.id
    assert stock_ledger.find_drift() == []


def test_draft_lifecycle(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 3)
    transfer = transfer_service.create_transfer(
        loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 2}], ACTOR, status="draft"
    )
    assert transfer.status == TransferStatus.DRAFT
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 3

    transfer = transfer_service.dispatch_transfer(transfer.id, ACTOR)
    assert transfer.status == TransferStatus.IN_TRANSIT
    assert transfer.dispatched_at is not None
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 1


def test_cancel_draft_touches_no_stock(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 3)
    transfer = transfer_service.create_transfer(
        loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 2}], ACTOR, status=TransferStatus.DRAFT
    )
    movements_before = db_session.query(StockMovement).count()

    transfer_service.cancel_transfer(transfer.id, ACTOR)

    assert db_session.query(StockMovement).count() == movements_before
    assert stock_ledger.get_quantity(product.id, loc_a.id) == 3


def test_terminal_states_reject_transitions(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 3)
    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 1}], ACTOR)
    transfer_service.cancel_transfer(transfer.id, ACTOR)

    with pytest.raises(InvalidStateTransition):
        transfer_service.cancel_transfer(transfer.id, ACTOR)
    with pytest.raises(InvalidStateTransition):
        transfer_service.receive_transfer(transfer.id, [], ACTOR)
    with pytest.raises(InvalidStateTransition):
        transfer_service.dispatch_transfer(transfer.id, ACTOR)


@pytest.mark.parametrize("items, message", [
    ([], "at least one item"),
    ([{"product_id": 1, "quantity": 0}], "positive integer"),
    ([{"product_id": 1, "quantity": 2}, {"product_id": 1, "quantity": 1}], "more than once"),
])
def test_create_rejects_malformed_items(db_session, loc_a, loc_b, items, message):
    with pytest.raises(ValidationError, match=message):
        transfer_service.create_transfer(loc_a.id, loc_b.id, items, ACTOR)


def test_create_rejects_same_location(db_session, product, loc_a):
    with pytest.raises(ValidationError):
        transfer_service.create_transfer(loc_a.id, loc_a.id, [{"product_id": product.id, "quantity": 1}], ACTOR)


def test_create_requires_stock_at_origin(db_session, product, loc_a, loc_b):
    with pytest.raises(ValidationError, match="not stocked"):
        transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 1}], ACTOR)
    assert transfer_service.list_transfers(loc_a.org_id) == []


def test_create_unknown_location(db_session, product, loc_a):
    with pytest.raises(NotFoundError):
        transfer_service.create_transfer(loc_a.id, 424242, [{"product_id": product.id, "quantity": 1}], ACTOR)


def test_list_transfers_by_status(db_session, product, loc_a, loc_b, seed_stock):
    seed_stock(product.id, loc_a.id, 10)
    draft = transfer_service.create_transfer(
        loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 1}], ACTOR, status="draft"
    )
    moving = transfer_service.create_transfer(loc_a.id, loc_b.id, [{"product_id": product.id, "quantity": 1}], ACTOR)

    assert {t.id for t in transfer_service.list_transfers(loc_a.org_id)} == {draft.id, moving.id}
    assert [t.id for t in transfer_service.list_transfers(loc_a.org_id, statuses=["in_transit"])] == [moving.id]


def test_products_by_location_lists_positive_stock_only(db_session, make_product, loc_a, seed_stock):
    shirt = make_product(sku="SHIRT", name="Shirt")
    mug = make_product(sku="MUG", name="Mug")
    seed_stock(shirt.id, loc_a.id, 2)
    seed_stock(mug.id, loc_a.id, 1)
    seed_stock(mug.id, loc_a.id, -1)

    rows = transfer_service.get_products_by_location(loc_a.id)
    assert rows == [{"product_id": shirt.id, "sku": "SHIRT", "name": "Shirt", "quantity": 2}]


def test_failed_receipt_leaves_transfer_in_transit(db_session, make_product, other_org, loc_a, loc_b, seed_stock):
    shirt = make_product(sku="SHIRT")
    mug = make_product(sku="MUG")
    foreign = make_product(sku="FOREIGN", org_id=other_org.id)
    seed_stock(shirt.id, loc_a.id, 10)
    seed_stock(mug.id, loc_a.id, 4)
    transfer = transfer_service.create_transfer(loc_a.id, loc_b.id, [
        {"product_id": shirt.id, "quantity": 5},
        {"product_id": mug.id, "quantity": 2},
    ], ACTOR)
    # Second item now points at a product the destination cannot hold
    item = db_session.query(TransferItem).filter_by(transfer_id=transfer.id, product_id=mug.id).one()
    item.product_id = foreign.id
    db_session.commit()
    before = db_session.query(StockMovement).count()

    with pytest.raises(NotFoundError):
        transfer_service.receive_transfer(transfer.id, [
            {"product_id": shirt.id, "quantity": 5},
            {"product_id": foreign.id, "quantity": 2},
        ], ACTOR)

    transfer = transfer_service.get_transfer(transfer.id)
    assert transfer.status == TransferStatus.IN_TRANSIT
    assert all(i.received_quantity is None for i in transfer.items)
    assert stock_ledger.get_quantity(shirt.id, loc_b.id) == 0
    assert stock_ledger.get_quantity(shirt.id, loc_a.id) == 5
    assert db_session.query(StockMovement).count() == before
