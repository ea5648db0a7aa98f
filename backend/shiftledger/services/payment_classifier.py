# Overview: Maps a payment method to the cash/card/other bucket used for shift totals.

"""
Payment classification

Pure mapping from a payment method's configured `kind` to the aggregation
bucket. No database access and no state beyond the mapping it was built
with.

BUCKETS:
- CASH: counts toward the till's expected cash at shift close
- CARD: card and bank-app payments
- OTHER: everything else
"""

from __future__ import annotations

from typing import Any, Mapping

BUCKET_CASH = "CASH"
BUCKET_CARD = "CARD"
BUCKET_OTHER = "OTHER"

BUCKETS = (BUCKET_CASH, BUCKET_CARD, BUCKET_OTHER)

KIND_CASH = "CASH"
KIND_CARD = "CARD"
KIND_BANK_TRANSFER = "BANK_TRANSFER"
KIND_MOBILE_MONEY = "MOBILE_MONEY"
KIND_OTHER = "OTHER"

VALID_KINDS = [
    KIND_CASH,
    KIND_CARD,
    KIND_BANK_TRANSFER,
    KIND_MOBILE_MONEY,
    KIND_OTHER,
]

DEFAULT_BUCKETS: dict[str, str] = {
    KIND_CASH: BUCKET_CASH,
    KIND_CARD: BUCKET_CARD,
    KIND_BANK_TRANSFER: BUCKET_CARD,
    KIND_MOBILE_MONEY: BUCKET_OTHER,
    KIND_OTHER: BUCKET_OTHER,
}


class PaymentClassificationError(ValueError):
    """Raised for an unusable kind or bucket mapping."""


def parse_bucket_overrides(raw: str | None) -> dict[str, str]:
    """Parse "KIND=BUCKET,KIND=BUCKET" into a mapping."""
    overrides: dict[str, str] = {}
    if not raw:
        return overrides
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise PaymentClassificationError(f"Invalid bucket override {part!r}; expected KIND=BUCKET")
        kind, bucket = (p.strip().upper() for p in part.split("=", 1))
        if bucket not in BUCKETS:
            raise PaymentClassificationError(f"Unknown bucket {bucket!r} for kind {kind!r}")
        overrides[kind] = bucket
    return overrides


class PaymentClassifier:
    def __init__(self, mapping: Mapping[str, str] | None = None):
        self.mapping = dict(DEFAULT_BUCKETS)
        if mapping:
            for kind, bucket in mapping.items():
                if bucket not in BUCKETS:
                    raise PaymentClassificationError(f"Unknown bucket {bucket!r} for kind {kind!r}")
                self.mapping[kind.upper()] = bucket

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PaymentClassifier":
        return cls(parse_bucket_overrides(config.get("PAYMENT_KIND_BUCKETS")))

    def classify(self, payment_method: Any) -> str:
        """
        Return CASH, CARD or OTHER for a payment method.

        Accepts a PaymentMethod row, a dict with a "kind" key, or a bare kind
        string. Kinds without a mapping fall into OTHER. The display name is
        never consulted.
        """
        kind = _kind_of(payment_method)
        return self.mapping.get(kind, BUCKET_OTHER)


def _kind_of(payment_method: Any) -> str:
    if isinstance(payment_method, str):
        kind = payment_method
    elif isinstance(payment_method, Mapping):
        kind = payment_method.get("kind")
    else:
        kind = getattr(payment_method, "kind", None)
    if not kind:
        raise PaymentClassificationError("Payment method has no kind")
    return str(kind).strip().upper()


def classify(payment_method: Any) -> str:
    """Classify with the default mapping."""
    return PaymentClassifier().classify(payment_method)
