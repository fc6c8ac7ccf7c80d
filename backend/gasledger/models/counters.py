from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Counter(db.Model):
    """
    Durable (key, year)-scoped integer counter.

    WHY: Every numbering namespace (unified invoices, RC-NO receipts, legacy
    cylinder invoices) needs an increment-and-fetch that concurrent request
    handlers can share without any in-process state.

    Rows are created on first use and never deleted; seq only moves forward
    except through the explicit admin initialisation path.
    """
    __tablename__ = "counters"
    __table_args__ = (
        db.UniqueConstraint("key", "year", name="uq_counters_key_year"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    seq = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "year": self.year,
            "seq": self.seq,
            "updated_at": to_utc_z(self.updated_at),
        }
