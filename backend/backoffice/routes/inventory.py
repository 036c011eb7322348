# Overview: Flask API routes for inventory; validates input and returns JSON responses.

from flask import Blueprint, jsonify, request, g

from ..decorators import require_actor
from ..models import ReferenceType
from ..services import stock_ledger, reconciliation_service, transfer_service
from . import error_response, json_body


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/adjust")
@require_actor
def adjust_stock_route():
    """
    Apply a manual signed delta at one location.

    Request body:
    {
        "product_id": int,
        "location_id": int,
        "delta": int (non-zero),
        "reason": str
    }
    """
    data = json_body()
    try:
        record = stock_ledger.apply_stock_delta(
            int(data["product_id"]),
            int(data["location_id"]),
            data["delta"],
            stock_ledger.MovementMeta(
                reason=data.get("reason") or "",
                reference_type=ReferenceType.ADJUSTMENT,
                actor=g.actor_id,
            ),
        )
        return jsonify(record.to_dict()), 201
    except Exception as e:
        return error_response(e)


@inventory_bp.get("/products/<int:product_id>/stock")
def product_stock_route(product_id: int):
    try:
        by_location = stock_ledger.get_stock_by_location(product_id)
        return jsonify({
            "product_id": product_id,
            "stock_quantity": sum(qty for _, qty in by_location),
            "locations": [{"location_id": loc, "quantity": qty} for loc, qty in by_location],
        }), 200
    except Exception as e:
        return error_response(e)


@inventory_bp.get("/products/<int:product_id>/movements")
def product_movements_route(product_id: int):
    location_id = request.args.get("location_id", type=int)
    limit = request.args.get("limit", default=200, type=int)
    try:
        movements = stock_ledger.list_movements(product_id, location_id=location_id, limit=limit)
        return jsonify({"items": [m.to_dict() for m in movements]}), 200
    except Exception as e:
        return error_response(e)


@inventory_bp.post("/levels")
@require_actor
def set_levels_route():
    """
    Bulk absolute stock edit.

    Request body:
    {
        "changes": [{"product_id": int, "location_id": int, "quantity": int}],
        "reason": str (optional)
    }
    """
    data = json_body()
    try:
        kwargs = {"reason": data["reason"]} if data.get("reason") else {}
        updated = reconciliation_service.set_stock_levels(data["changes"], g.actor_id, **kwargs)
        return jsonify({"updated": updated}), 200
    except Exception as e:
        return error_response(e)


@inventory_bp.post("/availability")
def availability_route():
    data = json_body()
    try:
        shortages = stock_ledger.check_stock_availability(int(data["location_id"]), data.get("items") or [])
        return jsonify({"available": not shortages, "shortages": shortages}), 200
    except Exception as e:
        return error_response(e)


@inventory_bp.get("/locations/<int:location_id>/products")
def location_products_route(location_id: int):
    try:
        return jsonify({"items": transfer_service.get_products_by_location(location_id)}), 200
    except Exception as e:
        return error_response(e)
