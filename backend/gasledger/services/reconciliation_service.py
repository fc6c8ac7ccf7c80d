# backend/gasledger/services/reconciliation_service.py
"""
Duplicate-row reconciliation.

Older data (and past races) left several assignment / inventory rows for
what is one employee + product identity. merge_duplicates() collapses each
group into its oldest row:
- quantities of the other rows are summed into the oldest row first,
- the other rows are deleted after, in the same unit of work.

A second run finds single-row groups only and changes nothing.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from ..extensions import db
from ..models import EmployeeInventory, Product, StockAssignment
from ..models.stock import ASSIGNMENT_RECEIVED
from ..validation import ValidationError
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)

SCOPE_ASSIGNMENTS = "assignments"
SCOPE_INVENTORY = "inventory"
SCOPE_ALL = "all"
MERGE_SCOPES = (SCOPE_ASSIGNMENTS, SCOPE_INVENTORY, SCOPE_ALL)

ASSIGNMENT_SUM_FIELDS = ("quantity", "remaining_quantity")
INVENTORY_SUM_FIELDS = ("assigned_quantity", "current_stock", "available_full", "available_empty")


@dataclass
class MergeReport:
    merged_groups: int = 0
    deleted_records: int = 0

    def __add__(self, other: "MergeReport") -> "MergeReport":
        return MergeReport(
            self.merged_groups + other.merged_groups,
            self.deleted_records + other.deleted_records,
        )

    def to_dict(self) -> dict:
        return {"merged_groups": self.merged_groups, "deleted_records": self.deleted_records}


def _product_signature(product: Product) -> tuple:
    return ((product.name or "").strip().lower(), product.product_code or "")


def _collapse(groups: dict, sum_fields: tuple[str, ...], label: str) -> MergeReport:
    report = MergeReport()
    for key, rows in groups.items():
        if len(rows) < 2:
            continue
        rows.sort(key=lambda r: (r.created_at, r.id))
        canonical, duplicates = rows[0], rows[1:]
        for field in sum_fields:
            total = sum(getattr(row, field) or 0 for row in rows)
            setattr(canonical, field, total)
        # Sum-in must reach the database before any delete does.
        db.session.flush()
        for row in duplicates:
            db.session.delete(row)
        db.session.flush()
        report.merged_groups += 1
        report.deleted_records += len(duplicates)
        logger.info(
            "[RECONCILE] Merged %d duplicate %s row(s) into %s for %s",
            len(duplicates), label, canonical.id, key,
        )
    return report


def _merge_assignments() -> MergeReport:
    groups: dict[tuple, list[StockAssignment]] = defaultdict(list)
    rows = (
        db.session.query(StockAssignment)
        .filter(StockAssignment.status == ASSIGNMENT_RECEIVED)
        .order_by(StockAssignment.created_at.asc(), StockAssignment.id.asc())
    )
    for row in rows:
        key = (row.employee_id, *_product_signature(row.product), row.cylinder_status or "")
        groups[key].append(row)
    return _collapse(groups, ASSIGNMENT_SUM_FIELDS, "assignment")


def _merge_inventory() -> MergeReport:
    groups: dict[tuple, list[EmployeeInventory]] = defaultdict(list)
    rows = db.session.query(EmployeeInventory).order_by(EmployeeInventory.created_at.asc(), EmployeeInventory.id.asc())
    for row in rows:
        groups[(row.employee_id, *_product_signature(row.product))].append(row)
    return _collapse(groups, INVENTORY_SUM_FIELDS, "inventory")


def merge_duplicates(scope: str = SCOPE_ALL) -> MergeReport:
    """Collapse duplicate rows for scope ('assignments', 'inventory' or 'all')."""
    if scope not in MERGE_SCOPES:
        raise ValidationError(f"scope must be one of: {', '.join(MERGE_SCOPES)}")

    def _op():
        report = MergeReport()
        if scope in (SCOPE_ASSIGNMENTS, SCOPE_ALL):
            report = report + _merge_assignments()
        if scope in (SCOPE_INVENTORY, SCOPE_ALL):
            report = report + _merge_inventory()
        db.session.commit()
        return report

    report = run_with_retry(_op)
    logger.info("[RECONCILE] %s: %d group(s) merged, %d row(s) deleted", scope, report.merged_groups, report.deleted_records)
    return report
