from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

# Admin-side rows use employee_id 0; NULL would not participate in the unique key.
ADMIN_SCOPE = 0


class DailyAggregate(db.Model):
    """
    Per-day, per-product(, per-employee) rollup of ledger-affecting events.

    A rebuildable projection, not primary state: rows are only ever changed
    by additive increments, or deleted and replayed by the rebuild utility.
    """
    __tablename__ = "daily_aggregates"
    __table_args__ = (
        db.UniqueConstraint("date", "product_id", "employee_id", name="uq_daily_aggregates_key"),
        db.Index("ix_daily_aggregates_employee_date", "employee_id", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, nullable=False, default=ADMIN_SCOPE)

    product_name = db.Column(db.String(255), nullable=True)
    product_category = db.Column(db.String(16), nullable=True)

    gas_sales_qty = db.Column(db.Integer, nullable=False, default=0)
    gas_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    full_cylinder_sales_qty = db.Column(db.Integer, nullable=False, default=0)
    full_cylinder_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    empty_cylinder_sales_qty = db.Column(db.Integer, nullable=False, default=0)
    empty_cylinder_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    deposit_qty = db.Column(db.Integer, nullable=False, default=0)
    deposit_cents = db.Column(db.Integer, nullable=False, default=0)
    return_qty = db.Column(db.Integer, nullable=False, default=0)
    return_cents = db.Column(db.Integer, nullable=False, default=0)
    refill_qty = db.Column(db.Integer, nullable=False, default=0)
    refill_cents = db.Column(db.Integer, nullable=False, default=0)
    transfer_gas_qty = db.Column(db.Integer, nullable=False, default=0)
    transfer_empty_qty = db.Column(db.Integer, nullable=False, default=0)
    received_back_qty = db.Column(db.Integer, nullable=False, default=0)
    purchase_gas_qty = db.Column(db.Integer, nullable=False, default=0)
    purchase_full_qty = db.Column(db.Integer, nullable=False, default=0)
    purchase_empty_qty = db.Column(db.Integer, nullable=False, default=0)
    event_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def total_cylinder_sales_qty(self) -> int:
        return self.full_cylinder_sales_qty + self.empty_cylinder_sales_qty

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat() if self.date else None,
            "product_id": self.product_id,
            "employee_id": self.employee_id or None,
            "product_name": self.product_name,
            "product_category": self.product_category,
            "gas_sales_qty": self.gas_sales_qty,
            "gas_sales_cents": self.gas_sales_cents,
            "full_cylinder_sales_qty": self.full_cylinder_sales_qty,
            "full_cylinder_sales_cents": self.full_cylinder_sales_cents,
            "empty_cylinder_sales_qty": self.empty_cylinder_sales_qty,
            "empty_cylinder_sales_cents": self.empty_cylinder_sales_cents,
            "total_cylinder_sales_qty": self.total_cylinder_sales_qty,
            "deposit_qty": self.deposit_qty,
            "deposit_cents": self.deposit_cents,
            "return_qty": self.return_qty,
            "return_cents": self.return_cents,
            "refill_qty": self.refill_qty,
            "refill_cents": self.refill_cents,
            "transfer_gas_qty": self.transfer_gas_qty,
            "transfer_empty_qty": self.transfer_empty_qty,
            "received_back_qty": self.received_back_qty,
            "purchase_gas_qty": self.purchase_gas_qty,
            "purchase_full_qty": self.purchase_full_qty,
            "purchase_empty_qty": self.purchase_empty_qty,
            "event_count": self.event_count,
            "updated_at": to_utc_z(self.updated_at),
        }
