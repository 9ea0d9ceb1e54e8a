# Overview: Flask API routes for sales and products; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json, get_idempotency_key
from ..errors import LedgerError
from ..services import inventory_service, sales_service
from ..validation import (
    optional_datetime,
    optional_int,
    optional_str,
    require_amount_cents,
    require_int,
    require_list,
    require_str,
)


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")
products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@sales_bp.post("/")
@require_json
def create_sale_route():
    """
    Record a completed sale.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2, "unit_price_cents": 1500}],
        "payment_method": "cash",  (cash, card, bank_transfer, bnpl)
        "customer_id": 7,  (required for bnpl)
        "notes": "...",  (optional)
        "sale_date": "...",  (optional ISO-8601)
        "due_date": "..."  (optional, bnpl only)
    }
    """
    try:
        data = request.get_json()
        result = sales_service.create_sale(
            items=require_list(data, "items"),
            payment_method=require_str(data, "payment_method", max_length=32),
            customer_id=optional_int(data, "customer_id"),
            notes=optional_str(data, "notes"),
            sale_date=optional_datetime(data, "sale_date"),
            due_date=optional_datetime(data, "due_date"),
            idempotency_key=get_idempotency_key(),
        )
        return jsonify({"sale": result}), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        return jsonify({"sale": sales_service.get_sale(sale_id)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load sale")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/")
@require_json
def create_product_route():
    try:
        data = request.get_json()
        product = inventory_service.create_product(
            sku=require_str(data, "sku", max_length=64),
            name=require_str(data, "name"),
            price_cents=require_amount_cents(data, "price_cents"),
            stock_quantity=optional_int(data, "stock_quantity") or 0,
        )
        return jsonify({"product": product.to_dict()}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = inventory_service.get_product(product_id)
        movements = inventory_service.get_stock_movements(product_id)
        return jsonify({
            "product": product.to_dict(),
            "stock_movements": [m.to_dict() for m in movements],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/<int:product_id>/adjust")
@require_json
def adjust_stock_route(product_id: int):
    """
    Manual stock correction.

    Request body:
    {
        "delta": -2,  (non-zero; negative removes stock)
        "notes": "Counted short"  (optional)
    }
    """
    try:
        data = request.get_json()
        product = inventory_service.adjust_stock(
            product_id,
            require_int(data, "delta"),
            notes=optional_str(data, "notes"),
        )
        return jsonify({"product": product.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500
