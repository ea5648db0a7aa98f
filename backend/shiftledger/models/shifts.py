from __future__ import annotations

from ..extensions import db
from shiftledger.time_utils import to_utc_z


class Shift(db.Model):
    """
    One working session for one operator at one store.

    LIFECYCLE:
    - OPEN: Sales and expenses accumulate into the running aggregates
    - CLOSED: Cash counted, expected balance and difference computed

    IMMUTABLE: Once closed, a shift cannot be reopened or modified.

    The aggregate columns are running counters. They are only changed by
    SQL-side increments (total_sales_cents = total_sales_cents + :delta) so
    concurrent sales against the same shift cannot lose updates. Every
    increment also bumps version_id, which makes a close that read older
    values fail its version check and retry.
    """
    __tablename__ = "shifts"
    __table_args__ = (
        # At most one OPEN shift per (operator, store)
        db.Index(
            "uq_shifts_open_operator_store",
            "operator_id",
            "store_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
        db.Index("ix_shifts_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    # Cash counts (all amounts in cents)
    opening_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_balance_cents = db.Column(db.Integer, nullable=True)
    expected_balance_cents = db.Column(db.Integer, nullable=True)  # opening + cash sales - expenses
    difference_cents = db.Column(db.Integer, nullable=True)  # closing - expected

    # Running aggregates
    total_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    total_expenses_cents = db.Column(db.Integer, nullable=False, default=0)
    cash_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    card_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    other_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    transactions_count = db.Column(db.Integer, nullable=False, default=0)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("shifts", lazy=True))
    operator = db.relationship("User", backref=db.backref("shifts", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "operator_id": self.operator_id,
            "status": self.status,
            "opening_balance_cents": self.opening_balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "expected_balance_cents": self.expected_balance_cents,
            "difference_cents": self.difference_cents,
            "total_sales_cents": self.total_sales_cents,
            "total_expenses_cents": self.total_expenses_cents,
            "cash_sales_cents": self.cash_sales_cents,
            "card_sales_cents": self.card_sales_cents,
            "other_sales_cents": self.other_sales_cents,
            "transactions_count": self.transactions_count,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "notes": self.notes,
            "version_id": self.version_id,
        }


class Expense(db.Model):
    """Cash paid out of the till. Counts against the shift's expected balance."""
    __tablename__ = "expenses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=True)
    reference = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    shift = db.relationship("Shift", backref=db.backref("expenses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "shift_id": self.shift_id,
            "operator_id": self.operator_id,
            "amount_cents": self.amount_cents,
            "category": self.category,
            "description": self.description,
            "reference": self.reference,
            "created_at": to_utc_z(self.created_at),
        }
