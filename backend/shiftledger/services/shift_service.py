"""
Shift Management Service

WHY: Each shift is a period of cash accountability for one operator at one
store. Opening records the float; closing counts the drawer and computes
the over/short difference against what the till should hold.

DESIGN PRINCIPLES:
- At most one OPEN shift per (operator, store), checked here and backed by
  a partial unique index
- Shifts are immutable once closed (no reopen)
- Aggregates are running counters changed only by SQL-side increments
- Close re-reads the persisted row; a concurrent increment bumps version_id
  so a close computed from older values fails its version check and retries
"""

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Shift, Store, User, Sale, Expense
from shiftledger.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event
from .payment_classifier import BUCKET_CASH, BUCKET_CARD, BUCKET_OTHER


class ShiftError(Exception):
    """Raised for shift management errors."""
    pass


class ShiftNotFoundError(ShiftError):
    pass


class ShiftAlreadyOpenError(ShiftError):
    """An OPEN shift already exists for this operator at this store."""
    def __init__(self, message: str, shift_id: int | None = None):
        super().__init__(message)
        self.shift_id = shift_id


class NoOpenShiftError(ShiftError):
    """The operation needs an OPEN shift and there is none."""
    pass


class ShiftValidationError(ShiftError):
    pass


_BUCKET_COLUMNS = {
    BUCKET_CASH: "cash_sales_cents",
    BUCKET_CARD: "card_sales_cents",
    BUCKET_OTHER: "other_sales_cents",
}


# =============================================================================
# LIFECYCLE
# =============================================================================

def open_shift(
    store_id: int,
    operator_id: int,
    opening_balance_cents: int,
    notes: str | None = None,
) -> Shift:
    """
    Open a new shift with all aggregates zeroed.

    Raises:
        ShiftAlreadyOpenError: If the operator already has an OPEN shift at the store
        ShiftValidationError: If the store/operator is unknown or the float is negative
    """
    if opening_balance_cents is None or opening_balance_cents < 0:
        raise ShiftValidationError("Opening balance must be zero or positive")

    store = db.session.get(Store, store_id)
    if not store:
        raise ShiftValidationError("Store not found")

    operator = db.session.get(User, operator_id)
    if not operator:
        raise ShiftValidationError("Operator not found")
    if not operator.is_active:
        raise ShiftValidationError("Operator is inactive")

    existing_open = get_open_shift(operator_id, store_id)
    if existing_open:
        raise ShiftAlreadyOpenError(
            f"Operator already has an open shift (shift {existing_open.id})",
            shift_id=existing_open.id,
        )

    shift = Shift(
        store_id=store_id,
        operator_id=operator_id,
        status="OPEN",
        opening_balance_cents=opening_balance_cents,
        total_sales_cents=0,
        total_expenses_cents=0,
        cash_sales_cents=0,
        card_sales_cents=0,
        other_sales_cents=0,
        transactions_count=0,
        opened_at=utcnow(),
        notes=notes,
    )
    db.session.add(shift)

    try:
        db.session.flush()
    except IntegrityError:
        # Lost the race against a concurrent open for the same pair
        db.session.rollback()
        winner = get_open_shift(operator_id, store_id)
        raise ShiftAlreadyOpenError(
            "Operator already has an open shift",
            shift_id=winner.id if winner else None,
        )

    append_ledger_event(
        store_id=store_id,
        event_type="shift.opened",
        event_category="shift",
        entity_type="shift",
        entity_id=shift.id,
        actor_user_id=operator_id,
        shift_id=shift.id,
        occurred_at=shift.opened_at,
        payload=f"opening_balance_cents={opening_balance_cents}",
    )

    db.session.commit()
    return shift


def close_shift(
    shift_id: int,
    closing_balance_cents: int,
    notes: str | None = None,
    *,
    operator_id: int | None = None,
) -> Shift:
    """
    Close a shift and calculate the cash difference.

    expected = opening balance + cash sales - expenses
    difference = closing balance - expected

    IMMUTABLE: Once closed, the shift cannot be reopened and no further
    sales post against it.

    Raises:
        NoOpenShiftError: If the shift is not OPEN
    """
    if closing_balance_cents is None or closing_balance_cents < 0:
        raise ShiftValidationError("Closing balance must be zero or positive")

    def _op():
        shift = (
            lock_for_update(db.session.query(Shift).filter_by(id=shift_id))
            .populate_existing()
            .first()
        )

        if not shift:
            raise ShiftNotFoundError("Shift not found")

        if not shift.is_open:
            raise NoOpenShiftError(f"Shift {shift_id} is not open")

        if operator_id is not None and shift.operator_id != operator_id:
            raise ShiftError("Only the shift owner can close this shift")

        expected = expected_balance_cents(shift)
        difference = closing_balance_cents - expected

        shift.status = "CLOSED"
        shift.closed_at = utcnow()
        shift.closing_balance_cents = closing_balance_cents
        shift.expected_balance_cents = expected
        shift.difference_cents = difference
        if notes:
            shift.notes = notes

        append_ledger_event(
            store_id=shift.store_id,
            event_type="shift.closed",
            event_category="shift",
            entity_type="shift",
            entity_id=shift.id,
            actor_user_id=operator_id or shift.operator_id,
            shift_id=shift.id,
            occurred_at=shift.closed_at,
            note=notes,
            payload=f"expected_cents={expected},closing_cents={closing_balance_cents},difference_cents={difference}",
        )

        db.session.commit()
        return shift

    return run_with_retry(_op)


def close_current_shift(
    operator_id: int,
    store_id: int,
    closing_balance_cents: int,
    notes: str | None = None,
) -> Shift:
    """Close the operator's open shift at the store."""
    shift = get_open_shift(operator_id, store_id)
    if not shift:
        raise NoOpenShiftError("No open shift for this operator at this store")
    return close_shift(shift.id, closing_balance_cents, notes, operator_id=operator_id)


def expected_balance_cents(shift: Shift) -> int:
    return shift.opening_balance_cents + shift.cash_sales_cents - shift.total_expenses_cents


# =============================================================================
# LOOKUPS
# =============================================================================

def get_shift(shift_id: int | None) -> Shift | None:
    if not shift_id:
        return None
    return db.session.get(Shift, shift_id)


def get_open_shift(operator_id: int, store_id: int) -> Shift | None:
    """Get the currently open shift for an operator at a store, if any."""
    return db.session.query(Shift).filter_by(
        operator_id=operator_id,
        store_id=store_id,
        status="OPEN",
    ).first()


def require_open_shift(shift_id: int) -> Shift:
    """Return the persisted shift, or raise NoOpenShiftError unless it is OPEN."""
    shift = db.session.query(Shift).filter_by(id=shift_id).populate_existing().first()
    if not shift or not shift.is_open:
        raise NoOpenShiftError(f"Shift {shift_id} is not open")
    return shift


def list_shifts(store_id: int, status: str | None = None, limit: int = 50) -> list[Shift]:
    query = db.session.query(Shift).filter_by(store_id=store_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Shift.opened_at.desc()).limit(limit).all()


# =============================================================================
# AGGREGATE INCREMENTS
# =============================================================================

def increment_sale_aggregates(shift_id: int, *, total_cents: int, bucket: str) -> None:
    """
    Add one sale to the shift's running totals in a single UPDATE.

    Only applies while the shift is OPEN. Does not commit.

    Raises:
        NoOpenShiftError: If the shift closed (or never existed)
    """
    column = _BUCKET_COLUMNS.get(bucket)
    if column is None:
        raise ShiftError(f"Unknown payment bucket {bucket!r}")

    values = {
        "total_sales_cents": Shift.total_sales_cents + total_cents,
        column: getattr(Shift, column) + total_cents,
        "transactions_count": Shift.transactions_count + 1,
        "version_id": Shift.version_id + 1,
    }
    _apply_increment(shift_id, values)


def increment_expense_aggregate(shift_id: int, amount_cents: int) -> None:
    """Add an expense to the shift's running total. Does not commit."""
    values = {
        "total_expenses_cents": Shift.total_expenses_cents + amount_cents,
        "version_id": Shift.version_id + 1,
    }
    _apply_increment(shift_id, values)


def _apply_increment(shift_id: int, values: dict) -> None:
    stmt = (
        update(Shift)
        .where(Shift.id == shift_id, Shift.status == "OPEN")
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise NoOpenShiftError(f"Shift {shift_id} is not open")


# =============================================================================
# REPORTING
# =============================================================================

def get_shift_summary(shift_id: int) -> dict:
    """
    Shift details plus counts and the cash the till should hold right now.
    """
    shift = get_shift(shift_id)
    if not shift:
        raise ShiftNotFoundError("Shift not found")

    sales_count = db.session.query(func.count(Sale.id)).filter_by(
        shift_id=shift_id, status="COMPLETED"
    ).scalar()
    pending_count = db.session.query(func.count(Sale.id)).filter_by(
        shift_id=shift_id, status="PENDING"
    ).scalar()
    expenses_count = db.session.query(func.count(Expense.id)).filter_by(shift_id=shift_id).scalar()

    return {
        "shift": shift.to_dict(),
        "sales_count": int(sales_count or 0),
        "pending_sales_count": int(pending_count or 0),
        "expenses_count": int(expenses_count or 0),
        "expected_balance_cents": (
            shift.expected_balance_cents if shift.status == "CLOSED" else expected_balance_cents(shift)
        ),
        "is_closed": shift.status == "CLOSED",
    }


def verify_shift_aggregates(shift_id: int) -> dict:
    """
    Re-derive the shift's totals from its completed sales and expenses and
    compare them with the stored running counters.

    Returns:
        - consistent: True when every counter matches
        - stored / derived: the two sets of values
        - mismatches: {field: {"stored": x, "derived": y}}
    """
    shift = db.session.query(Shift).filter_by(id=shift_id).populate_existing().first()
    if not shift:
        raise ShiftNotFoundError("Shift not found")

    bucket_rows = (
        db.session.query(
            Sale.payment_bucket,
            func.coalesce(func.sum(Sale.total_cents), 0),
            func.count(Sale.id),
        )
        .filter(Sale.shift_id == shift_id, Sale.status == "COMPLETED")
        .group_by(Sale.payment_bucket)
        .all()
    )
    by_bucket = {bucket: int(total) for bucket, total, _ in bucket_rows}
    count = sum(int(n) for _, _, n in bucket_rows)

    expenses_total = db.session.query(
        func.coalesce(func.sum(Expense.amount_cents), 0)
    ).filter(Expense.shift_id == shift_id).scalar()

    derived = {
        "total_sales_cents": sum(by_bucket.values()),
        "cash_sales_cents": by_bucket.get(BUCKET_CASH, 0),
        "card_sales_cents": by_bucket.get(BUCKET_CARD, 0),
        "other_sales_cents": by_bucket.get(BUCKET_OTHER, 0),
        "transactions_count": count,
        "total_expenses_cents": int(expenses_total or 0),
    }
    stored = {field: getattr(shift, field) for field in derived}

    mismatches = {
        field: {"stored": stored[field], "derived": derived[field]}
        for field in derived
        if stored[field] != derived[field]
    }

    return {
        "shift_id": shift_id,
        "consistent": not mismatches,
        "stored": stored,
        "derived": derived,
        "mismatches": mismatches,
    }
