# Overview: Flask CLI command groups for bootstrap, shifts, offline queue, inventory, and reconciliation.

# backend/shiftledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--store "Main Store"] [--tax-bps 1500]
#   Idempotent bootstrap: default store, cashier operator, payment methods.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Shifts:
# - python -m flask shifts open --store-id 1 --operator-id 1 --opening-balance-cents 50000
# - python -m flask shifts current --store-id 1 --operator-id 1
# - python -m flask shifts close --shift-id 1 --closing-balance-cents 61500
# - python -m flask shifts verify --shift-id 1
#   Re-derive the shift totals from its sales and expenses and report mismatches.
#
# Offline queue (device side; OFFLINE_STORAGE_PATH, OFFLINE_SYNC_URL):
# - python -m flask offline status
# - python -m flask offline capture --shift-id 1 --payment-method-id 1 --item 3:2 --item 5:1
# - python -m flask offline sync
# - python -m flask offline toggle
# - python -m flask offline clear --yes
#
# Inventory:
# - python -m flask inventory oversold --store-id 1
#   Stock decrements clamped at zero, oldest first (stock follow-up list).
#
# Reconciliation:
# - python -m flask reconcile list [--store-id 1] [--all]
# - python -m flask reconcile resume --task-id 1
# - python -m flask reconcile resume --invoice INV-001-20260118-000042

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, User, PaymentMethod
from .services import shift_service, reconciliation_service, inventory_service
from .services.shift_service import ShiftError
from .services.sales_ledger_service import SaleError, resume_sale
from .services.reconciliation_service import ReconciliationError
from .time_utils import to_utc_z
from .offline import (
    OfflineQueue,
    OfflineSyncError,
    JsonFileStorage,
    HttpLedgerTransport,
    LocalLedgerTransport,
)


# Seeded payment methods: (name, English name, kind, requires reference)
DEFAULT_PAYMENT_METHODS = [
    ("كاش", "Cash", "CASH", False),
    ("بنكك", "Bankak", "BANK_TRANSFER", True),
    ("فوري", "Fawry", "MOBILE_MONEY", True),
]


def _fmt_cents(cents: int | None) -> str:
    if cents is None:
        return "-"
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store', 'store_name', default='Main Store', help='Store name')
@click.option('--store-code', default='MAIN', help='Store code')
@click.option('--currency', default='SDG', help='Currency code')
@click.option('--tax-bps', type=int, default=1500, help='Tax rate in basis points (1500 = 15%)')
@click.option('--operator', 'operator_username', default='cashier', help='Default operator username')
@with_appcontext
def init_system(store_name, store_code, currency, tax_bps, operator_username):
    """
    Initialize the ledger: default store, operator and payment methods.

    Safe to run repeatedly; existing rows are kept.
    """
    click.echo("START Initializing shiftledger...")

    store = db.session.query(Store).filter_by(code=store_code).first()
    if not store:
        store = Store(
            name=store_name,
            code=store_code,
            currency=currency,
            tax_enabled=tax_bps > 0,
            tax_rate_bps=tax_bps,
        )
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    operator = db.session.query(User).filter_by(username=operator_username).first()
    if not operator:
        operator = User(store_id=store.id, username=operator_username, display_name=operator_username.title())
        db.session.add(operator)
        db.session.commit()
        click.echo(f"PASS Created operator: {operator.username} (ID: {operator.id})")
    else:
        click.echo(f"PASS Using existing operator: {operator.username} (ID: {operator.id})")

    for sort_order, (name, name_en, kind, requires_reference) in enumerate(DEFAULT_PAYMENT_METHODS):
        existing = db.session.query(PaymentMethod).filter_by(store_id=store.id, name=name).first()
        if existing:
            click.echo(f"WARN  Payment method '{name_en}' already exists, skipping...")
            continue
        db.session.add(PaymentMethod(
            store_id=store.id,
            name=name,
            name_en=name_en,
            kind=kind,
            requires_reference=requires_reference,
            sort_order=sort_order,
        ))
        click.echo(f"PASS Created payment method: {name_en} ({kind})")
    db.session.commit()

    click.echo("DONE shiftledger initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


# =============================================================================
# SHIFTS
# =============================================================================

@click.group('shifts')
def shifts_group():
    """Shift lifecycle commands."""


@shifts_group.command('open')
@click.option('--store-id', type=int, required=True)
@click.option('--operator-id', type=int, required=True)
@click.option('--opening-balance-cents', type=int, required=True)
@click.option('--notes', default=None)
@with_appcontext
def open_shift_cli(store_id, operator_id, opening_balance_cents, notes):
    try:
        shift = shift_service.open_shift(store_id, operator_id, opening_balance_cents, notes)
    except ShiftError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Opened shift {shift.id} with float {_fmt_cents(shift.opening_balance_cents)}")


@shifts_group.command('current')
@click.option('--store-id', type=int, required=True)
@click.option('--operator-id', type=int, required=True)
@with_appcontext
def current_shift_cli(store_id, operator_id):
    shift = shift_service.get_open_shift(operator_id, store_id)
    if not shift:
        click.echo("No open shift")
        return
    _print_shift(shift)


@shifts_group.command('close')
@click.option('--shift-id', type=int, required=True)
@click.option('--closing-balance-cents', type=int, required=True)
@click.option('--notes', default=None)
@with_appcontext
def close_shift_cli(shift_id, closing_balance_cents, notes):
    try:
        shift = shift_service.close_shift(shift_id, closing_balance_cents, notes)
    except ShiftError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    _print_shift(shift)


@shifts_group.command('verify')
@click.option('--shift-id', type=int, required=True)
@with_appcontext
def verify_shift_cli(shift_id):
    try:
        report = shift_service.verify_shift_aggregates(shift_id)
    except ShiftError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    if report["consistent"]:
        click.echo(f"PASS Shift {shift_id} aggregates match its sales and expenses")
        return
    click.echo(f"FAIL Shift {shift_id} aggregates diverge:")
    for field, values in report["mismatches"].items():
        click.echo(f"   {field}: stored={values['stored']} derived={values['derived']}")
    raise SystemExit(1)


def _print_shift(shift):
    click.echo(f"Shift {shift.id} [{shift.status}] operator={shift.operator_id} store={shift.store_id}")
    click.echo(f"   opened:      {shift.opened_at}")
    click.echo(f"   opening:     {_fmt_cents(shift.opening_balance_cents)}")
    click.echo(f"   sales:       {_fmt_cents(shift.total_sales_cents)} ({shift.transactions_count} transactions)")
    click.echo(f"     cash:      {_fmt_cents(shift.cash_sales_cents)}")
    click.echo(f"     card:      {_fmt_cents(shift.card_sales_cents)}")
    click.echo(f"     other:     {_fmt_cents(shift.other_sales_cents)}")
    click.echo(f"   expenses:    {_fmt_cents(shift.total_expenses_cents)}")
    if shift.status == "CLOSED":
        click.echo(f"   closing:     {_fmt_cents(shift.closing_balance_cents)}")
        click.echo(f"   expected:    {_fmt_cents(shift.expected_balance_cents)}")
        click.echo(f"   difference:  {_fmt_cents(shift.difference_cents)}")


# =============================================================================
# OFFLINE QUEUE
# =============================================================================

def _offline_queue() -> OfflineQueue:
    app = current_app._get_current_object()
    storage = JsonFileStorage(app.config["OFFLINE_STORAGE_PATH"])
    sync_url = app.config.get("OFFLINE_SYNC_URL")
    if sync_url:
        transport = HttpLedgerTransport(sync_url, timeout=float(app.config.get("OFFLINE_SYNC_TIMEOUT", 10)))
    else:
        transport = LocalLedgerTransport(app)
    return OfflineQueue(storage, transport)


@click.group('offline')
def offline_group():
    """Device-side offline sale queue."""


@offline_group.command('status')
@with_appcontext
def offline_status_cli():
    queue = _offline_queue()
    status = queue.status()
    click.echo(f"Offline mode: {'ON' if status['offline_mode'] else 'OFF'}")
    click.echo(f"Pending sales: {status['pending_count']}")
    click.echo(f"Last sync: {status['last_sync_at'] or 'never'}")
    for entry in queue.entries:
        error = f" last_error={entry.last_error}" if entry.last_error else ""
        click.echo(f"   {entry.temp_id} captured={entry.captured_at} attempts={entry.attempts}{error}")


@offline_group.command('capture')
@click.option('--shift-id', type=int, required=True)
@click.option('--payment-method-id', type=int, required=True)
@click.option('--item', 'items', multiple=True, required=True, help='PRODUCT_ID:QUANTITY (repeatable)')
@click.option('--amount-paid-cents', type=int, default=None)
@click.option('--reference', default=None)
@with_appcontext
def offline_capture_cli(shift_id, payment_method_id, items, amount_paid_cents, reference):
    cart = []
    for item in items:
        product_id, sep, quantity = item.partition(":")
        if not sep or not product_id.isdigit() or not quantity.isdigit():
            click.echo(f"FAIL Invalid --item {item!r}; expected PRODUCT_ID:QUANTITY")
            raise SystemExit(1)
        cart.append({"product_id": int(product_id), "quantity": int(quantity)})

    payment = {"payment_method_id": payment_method_id, "reference": reference}
    if amount_paid_cents is not None:
        payment["amount_paid_cents"] = amount_paid_cents

    entry = _offline_queue().capture({"shift_id": shift_id, "cart": cart, "payment": payment})
    click.echo(f"PASS Captured {entry.temp_id}")


@offline_group.command('sync')
@with_appcontext
def offline_sync_cli():
    queue = _offline_queue()
    try:
        result = queue.sync()
    except OfflineSyncError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    for synced in result.synced:
        click.echo(f"PASS {synced['temp_id']} -> {synced['invoice_number']}")
    for failed in result.failed:
        click.echo(f"FAIL {failed['temp_id']}: {failed['error']}")
    click.echo(f"DONE {len(result.synced)} synced, {len(result.failed)} failed, {queue.pending_count} pending")
    if not result.ok:
        raise SystemExit(1)


@offline_group.command('toggle')
@with_appcontext
def offline_toggle_cli():
    enabled = _offline_queue().toggle_offline_mode()
    click.echo(f"Offline mode {'ON' if enabled else 'OFF'}")


@offline_group.command('clear')
@click.option('--yes', is_flag=True, help='Confirm dropping unsynced sales')
@with_appcontext
def offline_clear_cli(yes):
    if not yes:
        click.echo("FAIL Refusing to clear without --yes")
        raise SystemExit(1)
    dropped = _offline_queue().clear()
    click.echo(f"PASS Cleared offline data ({dropped} unsynced sales dropped)")


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Stock follow-up commands."""


@inventory_group.command('oversold')
@click.option('--store-id', type=int, required=True)
@with_appcontext
def inventory_oversold_cli(store_id):
    movements = inventory_service.get_oversold_movements(store_id)
    if not movements:
        click.echo("No oversold movements")
        return
    for m in movements:
        click.echo(
            f"{m.invoice_number or '-'} product={m.product_id} "
            f"requested={m.quantity_requested} applied={m.quantity_applied} at {to_utc_z(m.occurred_at)}"
        )


# =============================================================================
# RECONCILIATION
# =============================================================================

@click.group('reconcile')
def reconcile_group():
    """Partially recorded sales."""


@reconcile_group.command('list')
@click.option('--store-id', type=int, default=None)
@click.option('--all', 'show_all', is_flag=True, help='Include resolved tasks')
@with_appcontext
def reconcile_list_cli(store_id, show_all):
    tasks = reconciliation_service.list_tasks(store_id=store_id, status=None if show_all else "OPEN")
    if not tasks:
        click.echo("No reconciliation tasks")
        return
    for task in tasks:
        click.echo(
            f"{task.id:>5} [{task.status}] {task.invoice_number} "
            f"failed={task.failed_step} last_completed={task.last_completed_step} attempts={task.attempts}"
        )
        if task.error_message:
            click.echo(f"      {task.error_message}")


@reconcile_group.command('resume')
@click.option('--task-id', type=int, default=None)
@click.option('--invoice', 'invoice_number', default=None)
@with_appcontext
def reconcile_resume_cli(task_id, invoice_number):
    if bool(task_id) == bool(invoice_number):
        click.echo("FAIL Pass exactly one of --task-id or --invoice")
        raise SystemExit(1)
    try:
        if task_id:
            sale = reconciliation_service.resume_task(task_id)
        else:
            sale = resume_sale(invoice_number)
    except (ReconciliationError, SaleError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Sale {sale.invoice_number} is {sale.status}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(shifts_group)
    app.cli.add_command(offline_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(reconcile_group)
