# backend/shiftledger/routes/reconciliation.py
from flask import Blueprint, request, jsonify, current_app

from ..services import reconciliation_service
from ..services.reconciliation_service import ReconciliationError, TaskNotFoundError
from ..services.sales_ledger_service import SaleSagaError


reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


@reconciliation_bp.get("/tasks")
def list_tasks_route():
    """Query params: store_id (optional), status (default OPEN; "all" for every task)."""
    store_id = request.args.get("store_id", type=int)
    status = request.args.get("status", "OPEN").upper()

    tasks = reconciliation_service.list_tasks(
        store_id=store_id,
        status=None if status == "ALL" else status,
    )
    return jsonify({"tasks": [t.to_dict() for t in tasks]}), 200


@reconciliation_bp.post("/tasks/<int:task_id>/resume")
def resume_task_route(task_id: int):
    try:
        sale = reconciliation_service.resume_task(task_id)
        task = reconciliation_service.get_task(task_id)
        return jsonify({"sale": sale.to_dict(), "task": task.to_dict()}), 200
    except TaskNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ReconciliationError as e:
        return jsonify({"error": str(e)}), 409
    except SaleSagaError as e:
        return jsonify({"error": str(e), "details": e.details}), 500
    except Exception:
        current_app.logger.exception("Failed to resume reconciliation task")
        return jsonify({"error": "Internal server error"}), 500
