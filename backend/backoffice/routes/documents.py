# Overview: Flask API routes for sales, credit notes and purchases: stock-affecting document events.

from flask import Blueprint, jsonify, g

from ..decorators import require_actor
from ..errors import ValidationError
from ..services import documents_service, reconciliation_service
from . import error_response, json_body


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")
credit_notes_bp = Blueprint("credit_notes", __name__, url_prefix="/api/credit-notes")
purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")


def _revert_flag(data: dict) -> bool:
    value = data["revert_stock"]
    if not isinstance(value, bool):
        raise ValidationError("revert_stock must be true or false")
    return value


# =============================================================================
# SALES
# =============================================================================

@sales_bp.post("")
@require_actor
def create_sale_route():
    """Body: {"location_id": int, "lines": [{"product_id": int|null, "quantity": int, "description": str}]}"""
    data = json_body()
    try:
        sale = documents_service.create_sale(int(data["location_id"]), data["lines"])
        return jsonify(sale.to_dict()), 201
    except Exception as e:
        return error_response(e)


@sales_bp.post("/<int:sale_id>/complete")
@require_actor
def complete_sale_route(sale_id: int):
    try:
        return jsonify(reconciliation_service.complete_sale(sale_id, g.actor_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


@sales_bp.post("/<int:sale_id>/cancel")
@require_actor
def cancel_sale_route(sale_id: int):
    """Body: {"revert_stock": bool} (required: the caller decides whether goods come back)."""
    data = json_body()
    try:
        sale = reconciliation_service.cancel_sale(sale_id, g.actor_id, _revert_flag(data))
        return jsonify(sale.to_dict()), 200
    except Exception as e:
        return error_response(e)


# =============================================================================
# CREDIT NOTES
# =============================================================================

@credit_notes_bp.post("")
@require_actor
def create_credit_note_route():
    """Body: {"location_id": int (optional with sale_id), "sale_id": int (optional), "lines": [...]}"""
    data = json_body()
    try:
        location_id = data.get("location_id")
        sale_id = data.get("sale_id")
        note = documents_service.create_credit_note(
            int(location_id) if location_id is not None else None,
            data["lines"],
            sale_id=int(sale_id) if sale_id is not None else None,
        )
        return jsonify(note.to_dict()), 201
    except Exception as e:
        return error_response(e)


@credit_notes_bp.post("/<int:credit_note_id>/issue")
@require_actor
def issue_credit_note_route(credit_note_id: int):
    try:
        return jsonify(reconciliation_service.issue_credit_note(credit_note_id, g.actor_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


@credit_notes_bp.post("/<int:credit_note_id>/apply")
@require_actor
def apply_credit_note_route(credit_note_id: int):
    """Body: {"sale_id": int, "amount_cents": int}"""
    data = json_body()
    try:
        application = reconciliation_service.apply_credit_note(
            credit_note_id, int(data["sale_id"]), data["amount_cents"]
        )
        return jsonify(application.to_dict()), 201
    except Exception as e:
        return error_response(e)


@credit_notes_bp.post("/<int:credit_note_id>/cancel")
@require_actor
def cancel_credit_note_route(credit_note_id: int):
    """Body: {"revert_stock": bool}"""
    data = json_body()
    try:
        note = reconciliation_service.cancel_credit_note(credit_note_id, g.actor_id, _revert_flag(data))
        return jsonify(note.to_dict()), 200
    except Exception as e:
        return error_response(e)


# =============================================================================
# PURCHASES
# =============================================================================

@purchases_bp.post("")
@require_actor
def create_purchase_route():
    """Body: {"org_id": int, "location_id": int (optional), "lines": [...], "notes": str}"""
    data = json_body()
    try:
        purchase = documents_service.create_purchase(
            int(data["org_id"]),
            data["lines"],
            location_id=data.get("location_id"),
            notes=data.get("notes"),
        )
        return jsonify(purchase.to_dict()), 201
    except Exception as e:
        return error_response(e)


@purchases_bp.post("/<int:purchase_id>/receive")
@require_actor
def receive_purchase_route(purchase_id: int):
    try:
        return jsonify(reconciliation_service.receive_purchase(purchase_id, g.actor_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


@purchases_bp.post("/<int:purchase_id>/payments")
@require_actor
def allocate_payment_route(purchase_id: int):
    """Body: {"amount_cents": int}"""
    data = json_body()
    try:
        allocation = documents_service.allocate_supplier_payment(purchase_id, data["amount_cents"])
        return jsonify({"id": allocation.id, "purchase_id": purchase_id, "amount_cents": allocation.amount_cents}), 201
    except Exception as e:
        return error_response(e)


@purchases_bp.delete("/<int:purchase_id>")
@require_actor
def delete_purchase_route(purchase_id: int):
    """
    Returns:
        204: Deleted (received stock taken back)
        409: Payment allocations exist
    """
    try:
        reconciliation_service.delete_purchase(purchase_id, g.actor_id)
        return "", 204
    except Exception as e:
        return error_response(e)
