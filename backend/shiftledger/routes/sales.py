# Overview: Flask API routes for sales; parses input and returns JSON responses.

# backend/shiftledger/routes/sales.py
from flask import Blueprint, request, jsonify, current_app

from ..services import sales_ledger_service
from ..services.sales_ledger_service import SaleError, SaleNotFoundError, SaleSagaError
from ..services.shift_service import ShiftError, NoOpenShiftError
from ..validation import ValidationError, coerce_int, require_object


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@sales_bp.post("")
def create_sale_route():
    """
    Record a sale against an open shift.

    Request body:
    {
        "shift_id": 1,
        "cart": [{"product_id": 1, "quantity": 2, "discount_cents": 0}],
        "payment": {"payment_method_id": 1, "amount_paid_cents": 20000, "reference": null},
        "customer_name": "...", "customer_phone": "...", "notes": "..." (optional),
        "idempotency_key": "OFF-..." (optional; replays return the same sale)
    }

    Responses:
    - 201: sale recorded
    - 400: validation failure (nothing persisted)
    - 409: shift not open (nothing persisted)
    - 500: sale partially recorded; body names the invoice and steps
    """
    try:
        data = require_object(request.get_json(silent=True))

        sale = sales_ledger_service.create_sale(
            coerce_int(data.get("shift_id"), "shift_id", minimum=1),
            data.get("cart"),
            data.get("payment"),
            operator_id=coerce_int(data.get("operator_id"), "operator_id", required=False, minimum=1),
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            notes=data.get("notes"),
            idempotency_key=data.get("idempotency_key"),
        )

        return jsonify({"sale": sale.to_dict(include_lines=True)}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NoOpenShiftError as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except SaleSagaError as e:
        return jsonify({"error": str(e), "details": e.details}), 500
    except SaleError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<invoice_number>")
def get_sale_route(invoice_number: str):
    sale = sales_ledger_service.get_sale_by_invoice_number(invoice_number)
    if not sale:
        return jsonify({"error": "Sale not found"}), 404
    return jsonify({"sale": sale.to_dict(include_lines=True)}), 200


@sales_bp.post("/<invoice_number>/resume")
def resume_sale_route(invoice_number: str):
    try:
        sale = sales_ledger_service.resume_sale(invoice_number)
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except SaleSagaError as e:
        return jsonify({"error": str(e), "details": e.details}), 500
    except Exception:
        current_app.logger.exception("Failed to resume sale")
        return jsonify({"error": "Internal server error"}), 500
