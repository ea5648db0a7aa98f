from __future__ import annotations

from ..extensions import db
from shiftledger.time_utils import to_utc_z


class PaymentMethod(db.Model):
    """
    Configured way to pay at a store.

    KINDS:
    - CASH: Physical currency (counts toward the till's expected cash)
    - CARD: Credit/debit card
    - BANK_TRANSFER: Bank app transfer, confirmed with a reference
    - MOBILE_MONEY: Wallet/mobile payment
    - OTHER: Anything else

    Classification into cash/card/other buckets keys off `kind`, which is
    assigned when the method is configured. Display names are free text and
    may be localized or renamed without affecting shift totals.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_payment_methods_store_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(64), nullable=False)
    name_en = db.Column(db.String(64), nullable=True)
    kind = db.Column(db.String(32), nullable=False, index=True)
    requires_reference = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("payment_methods", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "name_en": self.name_en,
            "kind": self.kind,
            "requires_reference": self.requires_reference,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
            "created_at": to_utc_z(self.created_at),
        }


class Sale(db.Model):
    """
    One completed checkout, written as a saga.

    SAGA STEPS (saga_step holds the last completed one):
    - HEADER: invoice number allocated, sale row inserted as PENDING
    - LINES: line items inserted
    - STOCK: product stock decremented
    - SHIFT: shift aggregates incremented, sale COMPLETED

    A PENDING sale is a partially recorded sale. It always has an open
    ReconciliationTask or a request still in flight.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        db.UniqueConstraint("store_id", "idempotency_key", name="uq_sales_store_idempotency_key"),
        db.Index("ix_sales_shift_status", "shift_id", "status"),
        db.Index("ix_sales_store_status_created", "store_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Human-readable, store-unique (e.g., "INV-001-20260118-000042")
    invoice_number = db.Column(db.String(64), nullable=False)
    # Caller-supplied key for retry/replay detection (offline temp id)
    idempotency_key = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, COMPLETED
    saga_step = db.Column(db.String(16), nullable=False, default="HEADER")

    # Totals (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    # Payment snapshot
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=True, index=True)
    payment_kind = db.Column(db.String(32), nullable=False)
    payment_bucket = db.Column(db.String(16), nullable=False)  # CASH, CARD, OTHER
    payment_reference = db.Column(db.String(128), nullable=True)

    customer_name = db.Column(db.String(128), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Priced lines captured with the header (JSON); the LINES step inserts from it
    cart_snapshot = db.Column(db.Text, nullable=False, default="[]")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    shift = db.relationship("Shift", backref=db.backref("sales", lazy=True))
    payment_method = db.relationship("PaymentMethod")

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "shift_id": self.shift_id,
            "operator_id": self.operator_id,
            "invoice_number": self.invoice_number,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "saga_step": self.saga_step,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "change_cents": self.change_cents,
            "payment_method_id": self.payment_method_id,
            "payment_kind": self.payment_kind,
            "payment_bucket": self.payment_bucket,
            "payment_reference": self.payment_reference,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in sorted(self.lines, key=lambda l: l.line_number)]
        return data


class SaleLine(db.Model):
    """Individual line items on a sale (ordered by line_number)."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_lines_sale_line_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)  # Snapshot at sale time

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)  # Per unit
    line_total_cents = db.Column(db.Integer, nullable=False)  # quantity * unit price, before discount

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("lines", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "created_at": to_utc_z(self.created_at),
        }
