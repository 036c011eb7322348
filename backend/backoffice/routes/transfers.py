# backend/backoffice/routes/transfers.py
"""
Inter-location transfer API routes.
"""
from flask import Blueprint, request, jsonify, g

from ..decorators import require_actor
from ..models import TransferStatus
from ..services import transfer_service
from . import error_response, json_body


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


@transfers_bp.route("", methods=["POST"])
@require_actor
def create_transfer():
    """
    Create a transfer.

    Request body:
    {
        "origin_location_id": int,
        "destination_location_id": int,
        "items": [{"product_id": int, "quantity": int}],
        "status": "draft" | "in_transit" (optional, default in_transit),
        "notes": str (optional)
    }

    Returns:
        201: Transfer created
        400: Invalid request
        404: Unknown location or product
    """
    data = json_body()
    try:
        transfer = transfer_service.create_transfer(
            int(data["origin_location_id"]),
            int(data["destination_location_id"]),
            data["items"],
            g.actor_id,
            status=data.get("status") or TransferStatus.IN_TRANSIT,
            notes=data.get("notes"),
        )
        return jsonify(transfer.to_dict()), 201
    except Exception as e:
        return error_response(e)


@transfers_bp.route("", methods=["GET"])
def list_transfers():
    """Query: org_id (required), status (repeatable)."""
    org_id = request.args.get("org_id", type=int)
    if org_id is None:
        return jsonify({"error": "org_id is required"}), 400
    try:
        transfers = transfer_service.list_transfers(org_id, statuses=request.args.getlist("status") or None)
        return jsonify({"items": [t.to_dict() for t in transfers]}), 200
    except Exception as e:
        return error_response(e)


@transfers_bp.route("/<int:transfer_id>", methods=["GET"])
def get_transfer(transfer_id: int):
    try:
        return jsonify(transfer_service.get_transfer(transfer_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


@transfers_bp.route("/<int:transfer_id>/dispatch", methods=["POST"])
@require_actor
def dispatch_transfer(transfer_id: int):
    """
    Dispatch a draft transfer (DRAFT -> IN_TRANSIT).

    Returns:
        200: Dispatched
        409: Not in DRAFT
    """
    try:
        return jsonify(transfer_service.dispatch_transfer(transfer_id, g.actor_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


@transfers_bp.route("/<int:transfer_id>/receive", methods=["POST"])
@require_actor
def receive_transfer(transfer_id: int):
    """
    Receive an in-transit transfer.

    Request body:
    {
        "items": [{"product_id": int, "quantity": int}]
    }
    Items left out are recorded as received 0.

    Returns:
        200: Received
        400: Invalid quantities
        409: Not IN_TRANSIT (already received or cancelled)
    """
    data = json_body()
    try:
        transfer = transfer_service.receive_transfer(transfer_id, data.get("items") or [], g.actor_id)
        return jsonify(transfer.to_dict()), 200
    except Exception as e:
        return error_response(e)


@transfers_bp.route("/<int:transfer_id>/cancel", methods=["POST"])
@require_actor
def cancel_transfer(transfer_id: int):
    """
    Cancel a draft or in-transit transfer.

    Request body:
    {
        "reason": str (optional)
    }
    """
    data = json_body()
    try:
        transfer = transfer_service.cancel_transfer(transfer_id, g.actor_id, reason=data.get("reason"))
        return jsonify(transfer.to_dict()), 200
    except Exception as e:
        return error_response(e)
