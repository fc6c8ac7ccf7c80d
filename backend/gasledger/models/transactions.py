from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

CYLINDER_FULL = "full"
CYLINDER_EMPTY = "empty"

CYLINDER_TX_DEPOSIT = "deposit"
CYLINDER_TX_REFILL = "refill"
CYLINDER_TX_RETURN = "return"
CYLINDER_TX_TYPES = (CYLINDER_TX_DEPOSIT, CYLINDER_TX_REFILL, CYLINDER_TX_RETURN)


class Sale(db.Model):
    """
    Admin-side sale document.

    invoice_number is unique within this table; uniqueness across Sale,
    EmployeeSale and CylinderTransaction is the invoice registry's job.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_created", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)
    received_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default="cleared")
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship("SaleItem", backref="sale", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "total_cents": self.total_cents,
            "received_cents": self.received_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    category = db.Column(db.String(16), nullable=False)
    # Only meaningful for cylinder lines
    cylinder_status = db.Column(db.String(16), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "category": self.category,
            "cylinder_status": self.cylinder_status,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class EmployeeSale(db.Model):
    """Sale recorded by an employee against their assigned stock."""
    __tablename__ = "employee_sales"
    __table_args__ = (
        db.Index("ix_employee_sales_employee_created", "employee_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)
    received_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default="cleared")
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship("EmployeeSaleItem", backref="sale", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "employee_id": self.employee_id,
            "customer_id": self.customer_id,
            "total_cents": self.total_cents,
            "received_cents": self.received_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class EmployeeSaleItem(db.Model):
    __tablename__ = "employee_sale_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("employee_sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    category = db.Column(db.String(16), nullable=False)
    cylinder_status = db.Column(db.String(16), nullable=True)
    # Cylinder that held the gas; converts full -> empty in the employee's view
    cylinder_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    # Units the assignment pool could not cover (oversell under the "warn" policy)
    unassigned_quantity = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "category": self.category,
            "cylinder_status": self.cylinder_status,
            "cylinder_product_id": self.cylinder_product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "unassigned_quantity": self.unassigned_quantity,
        }


class CylinderTransaction(db.Model):
    """
    Deposit / refill / return document for cylinders.

    A return may point at the deposit it settles (linked_deposit_id); the
    deposit's status is recomputed from the sum of its linked returns.
    """
    __tablename__ = "cylinder_transactions"
    __table_args__ = (
        db.Index("ix_cylinder_tx_type_created", "type", "created_at"),
        db.Index("ix_cylinder_tx_employee_created", "employee_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    type = db.Column(db.String(16), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    gas_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="pending")
    linked_deposit_id = db.Column(db.Integer, db.ForeignKey("cylinder_transactions.id"), nullable=True, index=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "type": self.type,
            "customer_id": self.customer_id,
            "product_id": self.product_id,
            "gas_product_id": self.gas_product_id,
            "employee_id": self.employee_id,
            "quantity": self.quantity,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "linked_deposit_id": self.linked_deposit_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class PurchaseOrder(db.Model):
    """Supplier purchase; stock moves only when the order is received."""
    __tablename__ = "purchase_orders"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    supplier = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    cylinder_status = db.Column(db.String(16), nullable=True)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "supplier": self.supplier,
            "quantity": self.quantity,
            "cylinder_status": self.cylinder_status,
            "unit_cost_cents": self.unit_cost_cents,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "received_at": to_utc_z(self.received_at),
        }
