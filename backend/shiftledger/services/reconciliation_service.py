"""
Reconciliation tasks for partially recorded sales.

A task is opened when a sale saga stops after its header was written. It
stays OPEN until the sale is resumed to completion.
"""

from ..extensions import db
from ..models import ReconciliationTask, Sale
from shiftledger.time_utils import utcnow
from .ledger_service import append_ledger_event


class ReconciliationError(Exception):
    """Raised for reconciliation task errors."""
    pass


class TaskNotFoundError(ReconciliationError):
    pass


def open_task(*, sale: Sale, failed_step: str, last_completed_step: str, error_message: str | None) -> ReconciliationTask:
    """
    Open (or re-arm) the task for a failed saga step and commit it.

    A sale has at most one OPEN task; a repeated failure updates it and
    bumps attempts.
    """
    task = db.session.query(ReconciliationTask).filter_by(
        sale_id=sale.id,
        status="OPEN",
    ).first()

    if task:
        task.failed_step = failed_step
        task.last_completed_step = last_completed_step
        task.error_message = error_message
        task.attempts += 1
    else:
        task = ReconciliationTask(
            store_id=sale.store_id,
            sale_id=sale.id,
            invoice_number=sale.invoice_number,
            failed_step=failed_step,
            last_completed_step=last_completed_step,
            error_message=error_message,
            status="OPEN",
            attempts=1,
            created_at=utcnow(),
        )
        db.session.add(task)

    db.session.flush()

    append_ledger_event(
        store_id=sale.store_id,
        event_type="sale.saga_failed",
        event_category="sales",
        entity_type="reconciliation_task",
        entity_id=task.id,
        shift_id=sale.shift_id,
        sale_id=sale.id,
        note=(error_message or "")[:255] or None,
        payload=f"failed_step={failed_step},last_completed_step={last_completed_step}",
    )

    db.session.commit()
    return task


def resolve_tasks_for_sale(sale: Sale) -> int:
    """Mark every OPEN task of a sale RESOLVED. Does not commit."""
    tasks = db.session.query(ReconciliationTask).filter_by(
        sale_id=sale.id,
        status="OPEN",
    ).all()
    now = utcnow()
    for task in tasks:
        task.status = "RESOLVED"
        task.resolved_at = now
    return len(tasks)


def get_task(task_id: int) -> ReconciliationTask | None:
    return db.session.get(ReconciliationTask, task_id)


def list_tasks(*, store_id: int | None = None, status: str | None = "OPEN") -> list[ReconciliationTask]:
    query = db.session.query(ReconciliationTask)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(ReconciliationTask.created_at, ReconciliationTask.id).all()


def resume_task(task_id: int) -> Sale:
    """Resume the sale behind a task; the task resolves when the saga completes."""
    # Imported here: the ledger opens tasks through this module
    from .sales_ledger_service import resume_sale

    task = get_task(task_id)
    if not task:
        raise TaskNotFoundError("Reconciliation task not found")
    if task.status != "OPEN":
        raise ReconciliationError(f"Reconciliation task {task_id} is already {task.status}")

    return resume_sale(task.invoice_number)
