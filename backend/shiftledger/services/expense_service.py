"""
Expense recording

Cash paid out of the till during a shift. The expense row and the shift's
total_expenses_cents increment commit together.
"""

from ..extensions import db
from ..models import Expense, Store, User
from shiftledger.time_utils import utcnow
from .ledger_service import append_ledger_event
from .shift_service import increment_expense_aggregate, require_open_shift


class ExpenseError(Exception):
    """Raised for expense recording errors."""
    pass


def record_expense(
    *,
    store_id: int,
    operator_id: int,
    amount_cents: int,
    category: str,
    shift_id: int | None = None,
    description: str | None = None,
    reference: str | None = None,
) -> Expense:
    if amount_cents is None or amount_cents <= 0:
        raise ExpenseError("Expense amount must be positive")
    if not category or not category.strip():
        raise ExpenseError("Expense category is required")

    if not db.session.get(Store, store_id):
        raise ExpenseError("Store not found")
    if not db.session.get(User, operator_id):
        raise ExpenseError("Operator not found")

    if shift_id is not None:
        shift = require_open_shift(shift_id)
        if shift.store_id != store_id:
            raise ExpenseError("Shift does not belong to store")

    expense = Expense(
        store_id=store_id,
        shift_id=shift_id,
        operator_id=operator_id,
        amount_cents=amount_cents,
        category=category.strip(),
        description=description,
        reference=reference,
        created_at=utcnow(),
    )
    db.session.add(expense)

    try:
        db.session.flush()
        if shift_id is not None:
            increment_expense_aggregate(shift_id, amount_cents)

        append_ledger_event(
            store_id=store_id,
            event_type="expense.recorded",
            event_category="expense",
            entity_type="expense",
            entity_id=expense.id,
            actor_user_id=operator_id,
            shift_id=shift_id,
            occurred_at=expense.created_at,
            note=expense.category,
            payload=f"amount_cents={amount_cents}",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return expense


def list_expenses(*, store_id: int, shift_id: int | None = None) -> list[Expense]:
    query = db.session.query(Expense).filter_by(store_id=store_id)
    if shift_id is not None:
        query = query.filter_by(shift_id=shift_id)
    return query.order_by(Expense.created_at).all()
