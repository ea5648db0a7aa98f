"""
Sales Ledger - shift-scoped sale recording

WHY: A checkout touches four things (sale header, line items, product stock,
shift totals). Each is written by its own saga step in its own transaction,
so a failure part way leaves a PENDING sale that says exactly how far it
got instead of a silent divergence between the shift and its sales.

SAGA STEPS (Sale.saga_step holds the last completed one):
- HEADER: invoice number allocated, sale inserted PENDING with priced lines
- LINES: SaleLine rows inserted from the captured lines
- STOCK: stock decremented per line (clamped at zero)
- SHIFT: shift aggregates incremented atomically, sale COMPLETED

Every step after HEADER first claims itself with a compare-and-set on
saga_step and commits the claim together with its work. A replayed or
concurrent resume therefore never applies a step twice.
"""

import json

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Sale, SaleLine, Product, PaymentMethod, Store
from shiftledger.time_utils import utcnow
from shiftledger.validation import ValidationError, coerce_int, coerce_cents, optional_str
from .concurrency import run_with_retry
from .document_service import next_invoice_number
from .inventory_service import decrement_stock
from .ledger_service import append_ledger_event
from .payment_classifier import PaymentClassifier
from .reconciliation_service import open_task, resolve_tasks_for_sale
from .shift_service import get_shift, require_open_shift, increment_sale_aggregates


STEP_HEADER = "HEADER"
STEP_LINES = "LINES"
STEP_STOCK = "STOCK"
STEP_SHIFT = "SHIFT"

SAGA_STEPS = (STEP_HEADER, STEP_LINES, STEP_STOCK, STEP_SHIFT)


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class EmptyCartError(SaleError):
    pass


class InvalidLineError(SaleError):
    pass


class InsufficientPaymentError(SaleError):
    pass


class PaymentMethodError(SaleError):
    pass


class PaymentReferenceRequiredError(PaymentMethodError):
    pass


class SaleNotFoundError(SaleError):
    pass


class SaleSagaError(SaleError):
    """
    A sale was partially recorded.

    Carries the invoice number, the step that failed, the last step that
    landed and the reconciliation task opened for it.
    """
    def __init__(
        self,
        invoice_number: str,
        failed_step: str,
        last_completed_step: str,
        task_id: int | None = None,
    ):
        super().__init__(
            f"Sale {invoice_number} partially recorded: {failed_step} failed after {last_completed_step}",
            details={
                "invoice_number": invoice_number,
                "failed_step": failed_step,
                "last_completed_step": last_completed_step,
                "reconciliation_task_id": task_id,
            },
        )
        self.invoice_number = invoice_number
        self.failed_step = failed_step
        self.last_completed_step = last_completed_step
        self.task_id = task_id


# =============================================================================
# TOTALS
# =============================================================================

def compute_totals(lines: list[dict], *, tax_enabled: bool, tax_rate_bps: int) -> dict:
    """
    subtotal = sum of line totals (quantity x unit price)
    discount = sum of per-unit discount x quantity
    tax      = (subtotal - discount) x rate, rounded half-up to the cent
    total    = subtotal - discount + tax
    """
    subtotal = sum(line["line_total_cents"] for line in lines)
    discount = sum(line["discount_cents"] * line["quantity"] for line in lines)

    taxable = subtotal - discount
    tax = 0
    if tax_enabled and tax_rate_bps:
        tax = (taxable * tax_rate_bps + 5000) // 10000

    return {
        "subtotal_cents": subtotal,
        "discount_cents": discount,
        "tax_cents": tax,
        "total_cents": taxable + tax,
    }


# =============================================================================
# VALIDATION
# =============================================================================

def _price_lines(store_id: int, cart) -> list[dict]:
    if not cart:
        raise EmptyCartError("Cart is empty")
    if not isinstance(cart, (list, tuple)):
        raise InvalidLineError("Cart must be a list of items")

    priced = []
    for index, item in enumerate(cart, start=1):
        if not isinstance(item, dict):
            raise InvalidLineError("Cart item must be an object", details={"line_number": index})

        try:
            product_id = coerce_int(item.get("product_id"), "product_id", minimum=1)
            quantity = coerce_int(item.get("quantity"), "quantity")
            discount = coerce_cents(item.get("discount_cents"), "discount_cents", required=False) or 0
        except ValidationError as exc:
            raise InvalidLineError(str(exc), details={"line_number": index})

        if quantity <= 0:
            raise InvalidLineError(
                "Quantity must be positive",
                details={"line_number": index, "quantity": quantity},
            )

        product = db.session.get(Product, product_id)
        if not product or product.store_id != store_id or not product.is_active:
            raise InvalidLineError("Product not found", details={"line_number": index, "product_id": product_id})
        if product.price_cents is None:
            raise InvalidLineError("Product has no price", details={"line_number": index, "product_id": product_id})
        if discount > product.price_cents:
            raise InvalidLineError(
                "Discount exceeds unit price",
                details={"line_number": index, "unit_price_cents": product.price_cents, "discount_cents": discount},
            )

        priced.append({
            "line_number": index,
            "product_id": product.id,
            "product_name": product.name,
            "quantity": quantity,
            "unit_price_cents": product.price_cents,
            "discount_cents": discount,
            "line_total_cents": quantity * product.price_cents,
        })

    return priced


def _resolve_payment_method(store_id: int, payment: dict) -> PaymentMethod:
    try:
        method_id = coerce_int(payment.get("payment_method_id"), "payment_method_id", minimum=1)
    except ValidationError as exc:
        raise PaymentMethodError(str(exc))

    method = db.session.get(PaymentMethod, method_id)
    if not method or method.store_id != store_id or not method.is_active:
        raise PaymentMethodError("Payment method not found", details={"payment_method_id": method_id})
    return method


def _prepare_sale(shift, cart, payment) -> dict:
    """Validate the request against persisted state and price it. No writes."""
    if not isinstance(payment, dict):
        raise PaymentMethodError("Payment is required")

    store = db.session.get(Store, shift.store_id)
    lines = _price_lines(shift.store_id, cart)
    totals = compute_totals(lines, tax_enabled=store.tax_enabled, tax_rate_bps=store.tax_rate_bps)

    method = _resolve_payment_method(shift.store_id, payment)
    reference = optional_str(payment.get("reference"), "reference", max_length=128)
    if method.requires_reference and not reference:
        raise PaymentReferenceRequiredError(
            f"Payment method {method.name} requires a transaction reference",
            details={"payment_method_id": method.id},
        )

    amount_paid = coerce_cents(payment.get("amount_paid_cents"), "amount_paid_cents", required=False)
    if amount_paid is None:
        amount_paid = totals["total_cents"]
    elif amount_paid < totals["total_cents"]:
        raise InsufficientPaymentError(
            "Amount paid is less than total",
            details={"total_cents": totals["total_cents"], "amount_paid_cents": amount_paid},
        )

    classifier = PaymentClassifier.from_config(current_app.config)

    return {
        "lines": lines,
        **totals,
        "amount_paid_cents": amount_paid,
        "change_cents": amount_paid - totals["total_cents"],
        "payment_method_id": method.id,
        "payment_kind": method.kind,
        "payment_bucket": classifier.classify(method),
        "payment_reference": reference,
    }


# =============================================================================
# ENTRY POINTS
# =============================================================================

def create_sale(
    shift,
    cart,
    payment,
    *,
    operator_id: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
) -> Sale:
    """
    Record a sale against an open shift.

    `shift` may be a Shift or its id; either way the persisted row is what
    gets checked. A known idempotency_key returns (or finishes) the sale it
    already produced instead of recording a second one.

    Raises:
        NoOpenShiftError: If the shift is not OPEN (nothing persisted)
        SaleError: Validation failures (nothing persisted)
        SaleSagaError: A step after HEADER failed; a reconciliation task is open
    """
    shift_id = getattr(shift, "id", shift)
    idempotency_key = optional_str(idempotency_key, "idempotency_key", max_length=64)

    if idempotency_key and shift_id:
        known_shift = get_shift(shift_id)
        if known_shift is not None:
            existing = get_sale_by_idempotency_key(known_shift.store_id, idempotency_key)
            if existing is not None:
                return resume_sale(existing.invoice_number)

    open_shift = require_open_shift(shift_id)
    store_id = open_shift.store_id
    draft = _prepare_sale(open_shift, cart, payment)

    header = {
        "store_id": store_id,
        "shift_id": open_shift.id,
        "operator_id": operator_id or open_shift.operator_id,
        "idempotency_key": idempotency_key,
        "customer_name": optional_str(customer_name, "customer_name", max_length=128),
        "customer_phone": optional_str(customer_phone, "customer_phone", max_length=32),
        "notes": optional_str(notes, "notes"),
    }

    try:
        sale_id = _record_header(header, draft)
    except IntegrityError:
        db.session.rollback()
        existing = get_sale_by_idempotency_key(store_id, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        return resume_sale(existing.invoice_number)

    return _advance_saga(sale_id)


def resume_sale(invoice_number: str) -> Sale:
    """
    Continue a sale's remaining saga steps and resolve its open tasks.

    Completed sales are returned unchanged, which makes replays safe.
    """
    sale = get_sale_by_invoice_number(invoice_number)
    if not sale:
        raise SaleNotFoundError("Sale not found", details={"invoice_number": invoice_number})

    if sale.status != "COMPLETED":
        sale = _advance_saga(sale.id)

    if resolve_tasks_for_sale(sale):
        db.session.commit()
    return sale


def get_sale_by_invoice_number(invoice_number: str) -> Sale | None:
    return db.session.query(Sale).filter_by(invoice_number=invoice_number).populate_existing().first()


def get_sale_by_idempotency_key(store_id: int, idempotency_key: str) -> Sale | None:
    return db.session.query(Sale).filter_by(
        store_id=store_id,
        idempotency_key=idempotency_key,
    ).populate_existing().first()


def list_sales(*, shift_id: int, status: str | None = None) -> list[Sale]:
    query = db.session.query(Sale).filter_by(shift_id=shift_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Sale.id).all()


# =============================================================================
# SAGA
# =============================================================================

def _record_header(header: dict, draft: dict) -> int:
    def _op():
        now = utcnow()
        invoice_number = next_invoice_number(header["store_id"], when=now)

        sale = Sale(
            **header,
            invoice_number=invoice_number,
            status="PENDING",
            saga_step=STEP_HEADER,
            subtotal_cents=draft["subtotal_cents"],
            discount_cents=draft["discount_cents"],
            tax_cents=draft["tax_cents"],
            total_cents=draft["total_cents"],
            amount_paid_cents=draft["amount_paid_cents"],
            change_cents=draft["change_cents"],
            payment_method_id=draft["payment_method_id"],
            payment_kind=draft["payment_kind"],
            payment_bucket=draft["payment_bucket"],
            payment_reference=draft["payment_reference"],
            cart_snapshot=json.dumps(draft["lines"]),
            created_at=now,
        )
        db.session.add(sale)
        db.session.flush()

        append_ledger_event(
            store_id=sale.store_id,
            event_type="sale.started",
            event_category="sales",
            entity_type="sale",
            entity_id=sale.id,
            actor_user_id=sale.operator_id,
            shift_id=sale.shift_id,
            sale_id=sale.id,
            occurred_at=now,
            note=invoice_number,
        )

        db.session.commit()
        return sale.id

    return run_with_retry(_op)


def _load_sale(sale_id: int) -> Sale:
    return db.session.query(Sale).filter_by(id=sale_id).populate_existing().one()


def _claim_step(sale_id: int, previous: str, step: str) -> bool:
    stmt = (
        update(Sale)
        .where(Sale.id == sale_id, Sale.saga_step == previous)
        .values(saga_step=step)
        .execution_options(synchronize_session="fetch")
    )
    return bool(db.session.execute(stmt).rowcount)


def _run_step(sale_id: int, previous: str, step: str) -> bool:
    if not _claim_step(sale_id, previous, step):
        # Another resume got there first; caller re-reads saga_step
        db.session.rollback()
        return False

    sale = db.session.get(Sale, sale_id)
    _STEP_HANDLERS[step](sale)
    db.session.commit()
    return True


def _advance_saga(sale_id: int) -> Sale:
    while True:
        sale = _load_sale(sale_id)
        position = SAGA_STEPS.index(sale.saga_step)
        if position == len(SAGA_STEPS) - 1:
            return sale

        previous = sale.saga_step
        step = SAGA_STEPS[position + 1]

        def _op():
            return _run_step(sale_id, previous, step)

        try:
            run_with_retry(_op)
        except Exception as exc:
            db.session.rollback()
            raise _saga_failed(sale_id, step, exc) from exc


def _saga_failed(sale_id: int, step: str, exc: Exception) -> SaleSagaError:
    sale = _load_sale(sale_id)
    last_completed = sale.saga_step

    task = open_task(
        sale=sale,
        failed_step=step,
        last_completed_step=last_completed,
        error_message=f"{type(exc).__name__}: {exc}",
    )

    current_app.logger.error(
        "Sale %s partially recorded: step %s failed after %s (reconciliation task %s): %s",
        sale.invoice_number,
        step,
        last_completed,
        task.id,
        exc,
    )

    return SaleSagaError(sale.invoice_number, step, last_completed, task.id)


def _apply_lines(sale: Sale) -> None:
    for item in json.loads(sale.cart_snapshot):
        db.session.add(SaleLine(
            sale_id=sale.id,
            line_number=item["line_number"],
            product_id=item["product_id"],
            product_name=item["product_name"],
            quantity=item["quantity"],
            unit_price_cents=item["unit_price_cents"],
            discount_cents=item["discount_cents"],
            line_total_cents=item["line_total_cents"],
            created_at=sale.created_at,
        ))
    db.session.flush()


def _apply_stock(sale: Sale) -> None:
    # Product order keeps row locks in a consistent sequence across sales
    lines = (
        db.session.query(SaleLine)
        .filter_by(sale_id=sale.id)
        .order_by(SaleLine.product_id, SaleLine.line_number)
        .all()
    )
    for line in lines:
        decrement_stock(
            store_id=sale.store_id,
            product_id=line.product_id,
            quantity=line.quantity,
            sale_id=sale.id,
            invoice_number=sale.invoice_number,
            actor_user_id=sale.operator_id,
        )


def _apply_shift(sale: Sale) -> None:
    increment_sale_aggregates(
        sale.shift_id,
        total_cents=sale.total_cents,
        bucket=sale.payment_bucket,
    )

    sale.status = "COMPLETED"
    sale.completed_at = utcnow()

    append_ledger_event(
        store_id=sale.store_id,
        event_type="sale.completed",
        event_category="sales",
        entity_type="sale",
        entity_id=sale.id,
        actor_user_id=sale.operator_id,
        shift_id=sale.shift_id,
        sale_id=sale.id,
        occurred_at=sale.completed_at,
        note=sale.invoice_number,
        payload=f"total_cents={sale.total_cents},bucket={sale.payment_bucket}",
    )


_STEP_HANDLERS = {
    STEP_LINES: _apply_lines,
    STEP_STOCK: _apply_stock,
    STEP_SHIFT: _apply_shift,
}
