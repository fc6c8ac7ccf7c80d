# backend/gasledger/services/invoice_service.py
"""
Invoice numbering.

NAMESPACES (deliberately separate, never cross-checked):
- unified_invoice_counter: one numeric invoice space shared by Sale,
  EmployeeSale and CylinderTransaction. Zero-padded to 4 digits, grows
  naturally past 9999.
- rc_no_counter: collection receipts (RC-NO), starting at 0001.
- cylinder_invoice: legacy "INV-<year>-CM-<seq>" cylinder numbers.

All three are (key, year) counters; the counter row holds the LAST number
issued, so a counter at seq=S issues S+1 next.

FAILURE SEMANTICS:
- The counter increment is the primary guarantee; if the store is
  unavailable the error propagates and the caller must abort.
- The cross-table uniqueness check is a safety net; read errors there are
  logged and verification is skipped.
- Repeated collisions end in a timestamp-derived number ("TS-<millis>")
  that is logged for manual review. It is non-numeric on purpose so it
  never feeds back into the highest-invoice scan.
"""
from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Sale, EmployeeSale, CylinderTransaction
from ..time_utils import utcnow
from ..validation import ValidationError
from .counter_service import CounterStore

logger = logging.getLogger(__name__)

UNIFIED_INVOICE_KEY = "unified_invoice_counter"
INVOICE_START_KEY = "invoice_start"
RC_NO_KEY = "rc_no_counter"
LEGACY_CYLINDER_KEY = "cylinder_invoice"

# Settings rows are not year-scoped
SETTINGS_YEAR = 0

DEFAULT_START_NUMBER = 10000

INVOICED_MODELS = (Sale, EmployeeSale, CylinderTransaction)


def format_sequence(seq: int, pad: int = 4) -> str:
    return str(seq).zfill(pad)


def timestamp_fallback_number() -> str:
    return f"TS-{int(time.time() * 1000)}"


class InvoiceNumberRegistry:
    """
    Mints invoice numbers that are unique across every invoiced collection.

    The counter store is injected; the registry itself holds no sequence
    state, so any number of instances may run in any number of workers.
    """

    def __init__(
        self,
        counters: CounterStore | None = None,
        *,
        start_number: int = DEFAULT_START_NUMBER,
        max_attempts: int = 3,
        pad_width: int = 4,
        year: int | None = None,
    ):
        self.counters = counters or CounterStore()
        self.start_number = start_number
        self.max_attempts = max(1, max_attempts)
        self.pad_width = pad_width
        self._year = year

    @property
    def year(self) -> int:
        return self._year or utcnow().year

    def configured_start(self) -> int:
        """Persisted invoice_start setting, else the constructor default."""
        stored = self.counters.current(INVOICE_START_KEY, SETTINGS_YEAR)
        return stored or self.start_number

    def highest_existing_number(self) -> int | None:
        """Highest purely numeric invoice number across all invoiced tables."""
        highest = None
        for model in INVOICED_MODELS:
            column = model.invoice_number
            rows = (
                db.session.query(column)
                .filter(column.not_like("%-%"))
                .order_by(func.length(column).desc(), column.desc())
                .limit(50)
                .all()
            )
            for (value,) in rows:
                if value and value.isdigit():
                    number = int(value)
                    highest = number if highest is None else max(highest, number)
                    break
        return highest

    def seed_value(self) -> int:
        """
        Counter value to seed a fresh year with (the last issued number).

        Next issued = max(highest existing + 1, configured start).
        """
        start = self.configured_start()
        highest = self.highest_existing_number()
        next_number = start if highest is None else max(highest + 1, start)
        return next_number - 1

    def is_unique(self, invoice_number: str) -> bool:
        """
        True when no invoiced table holds invoice_number.

        Store read errors count as unique: this check is only a safety net.
        """
        try:
            found_in = [
                model.__tablename__
                for model in INVOICED_MODELS
                if db.session.query(model.id).filter_by(invoice_number=invoice_number).first() is not None
            ]
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("[INVOICE] Uniqueness check failed for %s; skipping verification", invoice_number, exc_info=True)
            return True

        if found_in:
            logger.error("[INVOICE] Duplicate invoice number detected: %s (found in %s)", invoice_number, ", ".join(found_in))
            return False
        return True

    def _increment(self) -> int:
        year = self.year
        initial = 0
        if self.counters.get(UNIFIED_INVOICE_KEY, year) is None:
            initial = self.seed_value()
            logger.info("[INVOICE] Lazily seeding counter for %s at %d", year, initial)
        return self.counters.increment(UNIFIED_INVOICE_KEY, year, initial=initial)

    def next_invoice_number(self) -> str:
        for attempt in range(1, self.max_attempts + 1):
            # Store failures here are fatal and propagate to the caller.
            seq = self._increment()
            invoice_number = format_sequence(seq, self.pad_width)
            if self.is_unique(invoice_number):
                logger.debug("[INVOICE] Issued %s (year %s)", invoice_number, self.year)
                return invoice_number
            logger.warning("[INVOICE] Attempt %d: %s already exists, retrying", attempt, invoice_number)

        fallback = timestamp_fallback_number()
        logger.error(
            "[INVOICE] %d collisions in a row; issued timestamp fallback %s, flag for manual review",
            self.max_attempts,
            fallback,
        )
        return fallback

    def initialize(self) -> int:
        """
        Admin initialisation: move the counter up to the seed value.

        Never moves it down. Returns the next invoice number that will be issued.
        """
        year = self.year
        seq = self.counters.raise_to(UNIFIED_INVOICE_KEY, year, self.seed_value())
        logger.info("[INVOICE] Counter for %s initialised at %d", year, seq)
        return seq + 1

    def set_start_number(self, start_number: int) -> int:
        if start_number <= 0:
            raise ValidationError("start number must be positive")
        self.counters.set(INVOICE_START_KEY, SETTINGS_YEAR, start_number)
        return self.initialize()

    def status(self) -> dict:
        year = self.year
        counter = self.counters.get(UNIFIED_INVOICE_KEY, year)
        if counter is None:
            return {"exists": False, "year": year}
        return {
            "exists": True,
            "year": year,
            "current_sequence": counter.seq,
            "next_invoice": format_sequence(counter.seq + 1, self.pad_width),
            "updated_at": counter.to_dict()["updated_at"],
        }


def get_registry(counters: CounterStore | None = None) -> InvoiceNumberRegistry:
    """Registry configured from the current app."""
    if not has_app_context():
        return InvoiceNumberRegistry(counters)
    config = current_app.config
    return InvoiceNumberRegistry(
        counters,
        start_number=config.get("INVOICE_START_NUMBER", DEFAULT_START_NUMBER),
        max_attempts=config.get("INVOICE_MAX_ATTEMPTS", 3),
        pad_width=config.get("INVOICE_PAD_WIDTH", 4),
    )


def next_invoice_number() -> str:
    return get_registry().next_invoice_number()


def next_rc_number(counters: CounterStore | None = None) -> str:
    """Collection receipt number; its own namespace, starting at 0001."""
    counters = counters or CounterStore()
    seq = counters.increment(RC_NO_KEY, utcnow().year)
    return format_sequence(seq)


def next_legacy_cylinder_invoice(counters: CounterStore | None = None) -> str:
    """Legacy INV-<year>-CM-<seq> number; never checked against the unified space."""
    counters = counters or CounterStore()
    year = utcnow().year
    seq = counters.increment(LEGACY_CYLINDER_KEY, year)
    return f"INV-{year}-CM-{seq}"
