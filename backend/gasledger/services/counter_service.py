# Overview: Service-layer operations for durable counters; encapsulates the atomic increment primitive.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Counter
from .concurrency import run_with_retry


class CounterError(Exception):
    """Raised when counter operations fail."""
    pass


class CounterStore:
    """
    (key, year)-scoped counters backed by the counters table.

    increment() is the only operation that must be atomic: it is a single
    UPDATE ... SET seq = seq + 1 RETURNING seq, with an INSERT fallback
    whose race is settled by the (key, year) unique constraint.

    Each call commits its own unit of work, so it must not be invoked with
    unrelated pending changes in the session.
    """

    def get(self, key: str, year: int) -> Counter | None:
        return db.session.query(Counter).filter_by(key=key, year=year).first()

    def current(self, key: str, year: int) -> int | None:
        counter = self.get(key, year)
        return counter.seq if counter else None

    def increment(self, key: str, year: int, *, initial: int = 0) -> int:
        """
        Atomically increment and return the new value.

        A missing row is created holding initial + 1.
        """
        if not key:
            raise CounterError("counter key is required")

        def _op() -> int:
            stmt = (
                update(Counter)
                .where(Counter.key == key, Counter.year == year)
                .values(seq=Counter.seq + 1)
                .returning(Counter.seq)
            )
            seq = db.session.execute(stmt).scalar()
            if seq is None:
                db.session.add(Counter(key=key, year=year, seq=initial + 1))
                try:
                    db.session.flush()
                    seq = initial + 1
                except IntegrityError:
                    # Another handler inserted the row first; increment theirs.
                    db.session.rollback()
                    seq = db.session.execute(stmt).scalar()
                    if seq is None:
                        raise
            db.session.commit()
            return seq

        return run_with_retry(_op)

    def raise_to(self, key: str, year: int, seq: int) -> int:
        """
        Move the counter up to seq, never down. Creates the row if missing.

        Returns the counter value after the call.
        """
        def _op() -> int:
            stmt = (
                update(Counter)
                .where(Counter.key == key, Counter.year == year, Counter.seq < seq)
                .values(seq=seq)
            )
            result = db.session.execute(stmt)
            if not result.rowcount and self.get(key, year) is None:
                db.session.add(Counter(key=key, year=year, seq=seq))
                try:
                    db.session.flush()
                except IntegrityError:
                    db.session.rollback()
                    db.session.execute(stmt)
            db.session.commit()
            return self.current(key, year)

        return run_with_retry(_op)

    def set(self, key: str, year: int, seq: int) -> int:
        """Unconditional write; reserved for settings rows, not sequences."""
        def _op() -> int:
            counter = self.get(key, year)
            if counter is None:
                counter = Counter(key=key, year=year, seq=seq)
                db.session.add(counter)
            else:
                counter.seq = seq
            db.session.commit()
            return counter.seq

        return run_with_retry(_op)
