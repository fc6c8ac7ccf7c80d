from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

ASSIGNMENT_ASSIGNED = "assigned"
ASSIGNMENT_RECEIVED = "received"
ASSIGNMENT_CONSUMED = "consumed"
ASSIGNMENT_RETURNED = "returned"
ASSIGNMENT_REJECTED = "rejected"

RETURN_PENDING = "pending"
RETURN_ACCEPTED = "accepted"
RETURN_REJECTED = "rejected"

STOCK_TYPE_GAS = "gas"
STOCK_TYPE_EMPTY = "empty"


class StockAssignment(db.Model):
    """
    A batch of admin stock handed to one employee.

    LIFECYCLE: assigned -> received -> consumed | returned, or assigned -> rejected.

    remaining_quantity is drawn down FIFO (oldest created_at first) as the
    employee sells; it never goes below zero.
    """
    __tablename__ = "stock_assignments"
    __table_args__ = (
        db.Index("ix_assignments_pool", "employee_id", "product_id", "status", "created_at"),
        db.CheckConstraint("remaining_quantity >= 0", name="ck_assignments_remaining_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    assigned_by = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    remaining_quantity = db.Column(db.Integer, nullable=False)
    least_price_cents = db.Column(db.Integer, nullable=False, default=0)

    category = db.Column(db.String(16), nullable=True)
    cylinder_status = db.Column(db.String(16), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=ASSIGNMENT_ASSIGNED, index=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", lazy="joined")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def consumed_quantity(self) -> int:
        return self.quantity - self.remaining_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "product_id": self.product_id,
            "assigned_by": self.assigned_by,
            "quantity": self.quantity,
            "remaining_quantity": self.remaining_quantity,
            "least_price_cents": self.least_price_cents,
            "category": self.category,
            "cylinder_status": self.cylinder_status,
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "received_at": to_utc_z(self.received_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "returned_at": to_utc_z(self.returned_at),
        }


class EmployeeInventory(db.Model):
    """
    Employee-side stock view for one product.

    No unique constraint on (employee_id, product_id): older data holds
    duplicate rows, which the reconciliation service merges.
    """
    __tablename__ = "employee_inventory"
    __table_args__ = (
        db.Index("ix_employee_inventory_employee_product", "employee_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    assigned_quantity = db.Column(db.Integer, nullable=False, default=0)
    current_stock = db.Column(db.Integer, nullable=False, default=0)
    available_full = db.Column(db.Integer, nullable=False, default=0)
    available_empty = db.Column(db.Integer, nullable=False, default=0)
    least_price_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", lazy="joined")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "product_id": self.product_id,
            "assigned_quantity": self.assigned_quantity,
            "current_stock": self.current_stock,
            "available_full": self.available_full,
            "available_empty": self.available_empty,
            "least_price_cents": self.least_price_cents,
            "updated_at": to_utc_z(self.updated_at),
        }


class ReturnTransaction(db.Model):
    """
    Employee -> admin stock send-back awaiting admin acceptance.

    stock_type 'gas' returns gas held in a full cylinder (cylinder_product_id),
    'empty' returns empty cylinders of product_id.
    """
    __tablename__ = "return_transactions"
    __table_args__ = (
        db.Index("ix_returns_employee_created", "employee_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    cylinder_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    stock_type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RETURN_PENDING, index=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "product_id": self.product_id,
            "cylinder_product_id": self.cylinder_product_id,
            "stock_type": self.stock_type,
            "quantity": self.quantity,
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at),
        }
