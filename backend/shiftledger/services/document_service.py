# Overview: Invoice number allocation from per-store document sequences.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from shiftledger.time_utils import utcnow


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def allocate_sequence_number(*, store_id: int, document_type: str) -> int:
    """
    Atomically allocate the next number for a store/type inside the caller's transaction.

    The counter is bumped with a SQL-side increment, so two allocations can
    never observe the same value. The caller commits (together with the
    document that uses the number).
    """
    if not store_id:
        raise DocumentSequenceError("store_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == store_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current_number(store_id, document_type) - 1

    seq = DocumentSequence(store_id=store_id, document_type=document_type, next_number=2)
    try:
        # Savepoint: a concurrent first allocation must not discard the caller's work
        with db.session.begin_nested():
            db.session.add(seq)
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current_number(store_id, document_type) - 1


def _current_number(store_id: int, document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )


def format_invoice_number(store_id: int, number: int, when: datetime | None = None, prefix: str | None = None) -> str:
    """
    INV-<store>-<YYYYMMDD>-<seq>.

    The date part is informational; uniqueness comes from the store's
    monotonic sequence, not from the timestamp.
    """
    when = when or utcnow()
    if prefix is None:
        prefix = current_app.config.get("INVOICE_PREFIX", "INV")
    return f"{prefix}-{store_id:03d}-{when:%Y%m%d}-{number:06d}"


def next_invoice_number(store_id: int, when: datetime | None = None) -> str:
    number = allocate_sequence_number(store_id=store_id, document_type="SALE_INVOICE")
    return format_invoice_number(store_id, number, when)
