# Overview: Ways the offline queue reaches the sales ledger (in-process or HTTP).

from __future__ import annotations

import logging
from typing import Any

import httpx
from flask import Flask, has_app_context
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """
    A sale could not be recorded through the transport.

    retryable is True when the ledger may not have seen the outcome (no
    connection, dropped response, database trouble, partially recorded
    sale). Replaying the same idempotency key later is then safe. A
    rejected request (validation, closed shift) is not retryable.
    """
    def __init__(
        self,
        message: str,
        details: dict | None = None,
        status_code: int | None = None,
        *,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.details = details or {}
        self.status_code = status_code
        self.retryable = retryable


class LocalLedgerTransport:
    """Calls the ledger directly inside the Flask app."""

    def __init__(self, app: Flask):
        self.app = app

    def is_online(self) -> bool:
        return True

    def submit_sale(self, payload: dict) -> dict:
        if has_app_context():
            return self._submit(payload)
        with self.app.app_context():
            return self._submit(payload)

    def _submit(self, payload: dict) -> dict:
        from ..extensions import db
        from ..services.sales_ledger_service import SaleError, SaleSagaError, create_sale
        from ..services.shift_service import ShiftError
        from ..validation import ValidationError

        try:
            sale = create_sale(
                payload.get("shift_id"),
                payload.get("cart"),
                payload.get("payment"),
                operator_id=payload.get("operator_id"),
                customer_name=payload.get("customer_name"),
                customer_phone=payload.get("customer_phone"),
                notes=payload.get("notes"),
                idempotency_key=payload.get("idempotency_key"),
            )
        except SaleSagaError as exc:
            raise TransportError(str(exc), details=exc.details, retryable=True) from exc
        except SaleError as exc:
            raise TransportError(str(exc), details=exc.details) from exc
        except (ShiftError, ValidationError) as exc:
            raise TransportError(str(exc)) from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise TransportError(f"Ledger database error: {exc}", retryable=True) from exc
        return sale.to_dict()


class HttpLedgerTransport:
    """
    Posts sales to a running shiftledger server.

    Connectivity is checked with GET /api/health; sales go to POST /api/sales.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def is_online(self) -> bool:
        try:
            response = self.client.get("/api/health")
        except httpx.HTTPError as exc:
            logger.info("Ledger at %s unreachable: %s", self.base_url, exc)
            return False
        return response.status_code == 200

    def submit_sale(self, payload: dict) -> dict:
        try:
            response = self.client.post("/api/sales", json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {self.base_url} failed: {exc}", retryable=True) from exc

        data = _json_body(response)
        if response.status_code in (200, 201):
            return data.get("sale", data)

        raise TransportError(
            data.get("error") or f"HTTP {response.status_code}",
            details=data.get("details"),
            status_code=response.status_code,
            retryable=response.status_code >= 500,
        )

    def close(self) -> None:
        self.client.close()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
