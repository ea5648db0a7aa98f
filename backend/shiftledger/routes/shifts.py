# Overview: Flask API routes for shift operations; parses input and returns JSON responses.

# backend/shiftledger/routes/shifts.py
"""
Shift API Routes

DESIGN:
- Shift lifecycle: open -> close (immutable once closed)
- Expenses recorded against an open shift reduce its expected cash
- Operators identify themselves with operator_id (no auth layer here)
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import shift_service, expense_service, ledger_service
from ..services.shift_service import (
    ShiftError,
    ShiftNotFoundError,
    ShiftAlreadyOpenError,
    NoOpenShiftError,
)
from ..services.expense_service import ExpenseError
from ..validation import ValidationError, coerce_int, coerce_cents, optional_str, require_object


shifts_bp = Blueprint("shifts", __name__, url_prefix="/api/shifts")


def _shift_error_response(e: ShiftError):
    if isinstance(e, ShiftNotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ShiftAlreadyOpenError):
        return jsonify({"error": str(e), "details": {"shift_id": e.shift_id}}), 409
    if isinstance(e, NoOpenShiftError):
        return jsonify({"error": str(e)}), 409
    return jsonify({"error": str(e)}), 400


@shifts_bp.post("/")
@shifts_bp.post("")
def open_shift_route():
    """
    Open a shift.

    Request body:
    {
        "store_id": 1,
        "operator_id": 1,
        "opening_balance_cents": 50000,
        "notes": "Morning float" (optional)
    }
    """
    try:
        data = require_object(request.get_json(silent=True))

        shift = shift_service.open_shift(
            store_id=coerce_int(data.get("store_id"), "store_id", minimum=1),
            operator_id=coerce_int(data.get("operator_id"), "operator_id", minimum=1),
            opening_balance_cents=coerce_cents(data.get("opening_balance_cents"), "opening_balance_cents"),
            notes=optional_str(data.get("notes"), "notes"),
        )

        return jsonify({"shift": shift.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ShiftError as e:
        return _shift_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open shift")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.get("/")
@shifts_bp.get("")
def list_shifts_route():
    """Query params: store_id (required), status (optional OPEN/CLOSED), limit (default 50)."""
    try:
        store_id = coerce_int(request.args.get("store_id"), "store_id", minimum=1)
        limit = coerce_int(request.args.get("limit"), "limit", required=False, minimum=1, maximum=500) or 50
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    status = (request.args.get("status") or "").upper() or None
    shifts = shift_service.list_shifts(store_id, status=status, limit=limit)
    return jsonify({"shifts": [s.to_dict() for s in shifts]}), 200


@shifts_bp.get("/current")
def current_shift_route():
    """Query params: operator_id, store_id. 404 when the operator has no open shift."""
    try:
        operator_id = coerce_int(request.args.get("operator_id"), "operator_id", minimum=1)
        store_id = coerce_int(request.args.get("store_id"), "store_id", minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    shift = shift_service.get_open_shift(operator_id, store_id)
    if not shift:
        return jsonify({"error": "No open shift"}), 404
    return jsonify({"shift": shift.to_dict()}), 200


@shifts_bp.get("/<int:shift_id>")
def get_shift_route(shift_id: int):
    shift = shift_service.get_shift(shift_id)
    if not shift:
        return jsonify({"error": "Shift not found"}), 404
    return jsonify({"shift": shift.to_dict()}), 200


@shifts_bp.post("/<int:shift_id>/close")
def close_shift_route(shift_id: int):
    """
    Close a shift with the counted cash.

    Request body:
    {
        "closing_balance_cents": 61500,
        "operator_id": 1 (optional; must own the shift when given),
        "notes": "..." (optional)
    }
    """
    try:
        data = require_object(request.get_json(silent=True))

        shift = shift_service.close_shift(
            shift_id,
            coerce_cents(data.get("closing_balance_cents"), "closing_balance_cents"),
            optional_str(data.get("notes"), "notes"),
            operator_id=coerce_int(data.get("operator_id"), "operator_id", required=False, minimum=1),
        )

        return jsonify({
            "shift": shift.to_dict(),
            "expected_balance_cents": shift.expected_balance_cents,
            "difference_cents": shift.difference_cents,
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ShiftError as e:
        return _shift_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close shift")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.get("/<int:shift_id>/summary")
def shift_summary_route(shift_id: int):
    try:
        summary = shift_service.get_shift_summary(shift_id)
        if request.args.get("verify", "").lower() in ("1", "true", "yes"):
            summary["verification"] = shift_service.verify_shift_aggregates(shift_id)
        return jsonify(summary), 200
    except ShiftError as e:
        return _shift_error_response(e)


@shifts_bp.post("/<int:shift_id>/expenses")
def record_expense_route(shift_id: int):
    """
    Record an expense paid from the till during this shift.

    Request body:
    {
        "operator_id": 1,
        "amount_cents": 2500,
        "category": "Supplies",
        "description": "..." (optional),
        "reference": "..." (optional)
    }
    """
    try:
        data = require_object(request.get_json(silent=True))

        shift = shift_service.get_shift(shift_id)
        if not shift:
            return jsonify({"error": "Shift not found"}), 404

        expense = expense_service.record_expense(
            store_id=shift.store_id,
            operator_id=coerce_int(data.get("operator_id"), "operator_id", minimum=1),
            amount_cents=coerce_cents(data.get("amount_cents"), "amount_cents", allow_zero=False),
            category=optional_str(data.get("category"), "category", max_length=64) or "",
            shift_id=shift_id,
            description=optional_str(data.get("description"), "description"),
            reference=optional_str(data.get("reference"), "reference", max_length=128),
        )

        return jsonify({"expense": expense.to_dict()}), 201

    except (ValidationError, ExpenseError) as e:
        return jsonify({"error": str(e)}), 400
    except ShiftError as e:
        return _shift_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record expense")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.get("/<int:shift_id>/expenses")
def list_expenses_route(shift_id: int):
    shift = shift_service.get_shift(shift_id)
    if not shift:
        return jsonify({"error": "Shift not found"}), 404
    expenses = expense_service.list_expenses(store_id=shift.store_id, shift_id=shift_id)
    return jsonify({"expenses": [e.to_dict() for e in expenses]}), 200


@shifts_bp.get("/<int:shift_id>/events")
def list_shift_events_route(shift_id: int):
    """Audit trail for a shift, oldest first. Optional ?category=sales|shift|expense."""
    shift = shift_service.get_shift(shift_id)
    if not shift:
        return jsonify({"error": "Shift not found"}), 404
    events = ledger_service.get_events(
        shift.store_id,
        shift_id=shift_id,
        event_category=request.args.get("category") or None,
    )
    return jsonify({"events": [e.to_dict() for e in events]}), 200
