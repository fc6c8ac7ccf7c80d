from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

CATEGORY_GAS = "gas"
CATEGORY_CYLINDER = "cylinder"
PRODUCT_CATEGORIES = (CATEGORY_GAS, CATEGORY_CYLINDER)


class Product(db.Model):
    """
    Product master data plus the canonical admin-side stock figures.

    STOCK FIELDS:
    - current_stock is the headline on-hand figure for every product.
    - Cylinders additionally split stock into available_full / available_empty,
      and current_stock is kept equal to their sum by the stock ledger.

    The stock columns are a derived cache of the transaction documents; the
    optimistic version column makes concurrent check-then-write updates fail
    loudly (StaleDataError) instead of silently losing one of the writes.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_name", "category", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    # Optional, but unique when present
    product_code = db.Column(db.String(64), nullable=True, unique=True)
    category = db.Column(db.String(16), nullable=False, index=True)
    cylinder_size = db.Column(db.String(16), nullable=True)

    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    least_price_cents = db.Column(db.Integer, nullable=False, default=0)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    available_full = db.Column(db.Integer, nullable=False, default=0)
    available_empty = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_cylinder(self) -> bool:
        return self.category == CATEGORY_CYLINDER

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} category={self.category} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "product_code": self.product_code,
            "category": self.category,
            "cylinder_size": self.cylinder_size,
            "cost_price_cents": self.cost_price_cents,
            "least_price_cents": self.least_price_cents,
            "current_stock": self.current_stock,
            "available_full": self.available_full,
            "available_empty": self.available_empty,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Employee(db.Model):
    __tablename__ = "employees"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Customer(db.Model):
    __tablename__ = "customers"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }
