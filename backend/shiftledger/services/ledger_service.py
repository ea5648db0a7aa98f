# Overview: Append-only audit events for shift, sale, inventory and expense changes.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import LedgerEvent
from shiftledger.time_utils import utcnow
"""
Ledger event invariants:

- Append-only audit log for cross-cutting domain events.
- No domain/business logic in the event log itself.
- Events are written inside the same DB transaction as the change they record
  (callers flush here and commit with their own step).
- occurred_at is business time; created_at is system time (DB default).
"""


def append_ledger_event(
    *,
    store_id: int,
    event_type: str,
    event_category: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    shift_id: int | None = None,
    sale_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[str] = None,
) -> LedgerEvent:
    ev = LedgerEvent(
        store_id=store_id,
        event_type=event_type,
        event_category=event_category,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        shift_id=shift_id,
        sale_id=sale_id,
        occurred_at=occurred_at or utcnow(),
        note=note[:255] if note else None,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def get_events(
    store_id: int,
    *,
    shift_id: int | None = None,
    sale_id: int | None = None,
    event_category: str | None = None,
) -> list[LedgerEvent]:
    query = db.session.query(LedgerEvent).filter_by(store_id=store_id)
    if shift_id is not None:
        query = query.filter_by(shift_id=shift_id)
    if sale_id is not None:
        query = query.filter_by(sale_id=sale_id)
    if event_category:
        query = query.filter_by(event_category=event_category)
    return query.order_by(LedgerEvent.occurred_at, LedgerEvent.id).all()
