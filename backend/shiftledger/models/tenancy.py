from __future__ import annotations

from ..extensions import db
from shiftledger.time_utils import to_utc_z


class Store(db.Model):
    """
    Store (one till location) owning products, payment methods and shifts.

    Tax settings live here and are read at sale time, so a settings change
    applies to the next sale without touching open shifts.
    """
    __tablename__ = "stores"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    currency = db.Column(db.String(8), nullable=False, default="SDG")

    tax_enabled = db.Column(db.Boolean, nullable=False, default=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)  # Basis points (e.g., 1500 = 15%)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "currency": self.currency,
            "tax_enabled": self.tax_enabled,
            "tax_rate_bps": self.tax_rate_bps,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
