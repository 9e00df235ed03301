# Overview: Atomic per-theater order counters and order-number formatting.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import OrderSequence


def format_order_number(prefix: str, theater_id: int, number: int) -> str:
    return f"{prefix}-{theater_id:03d}-{number:06d}"


def next_order_sequence(theater_id: int) -> int:
    """
    Atomically allocate the next order sequence number for a theater.

    The increment is a single UPDATE ... SET next_number = next_number + 1,
    so concurrent allocators serialize on the row. The first allocation
    inserts the row; a concurrent first insert loses on the unique
    constraint and the caller's transaction is retried.

    Does not commit.
    """
    if not theater_id:
        raise ValueError("theater_id is required")

    stmt = (
        update(OrderSequence)
        .where(OrderSequence.theater_id == theater_id)
        .values(next_number=OrderSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(OrderSequence.next_number)
            .filter_by(theater_id=theater_id)
            .scalar()
        )
        return current - 1

    db.session.add(OrderSequence(theater_id=theater_id, next_number=2))
    db.session.flush()
    return 1
