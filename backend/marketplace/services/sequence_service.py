# Overview: Month-keyed order number allocation.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import OrderSequence
from marketplace.time_utils import month_prefix, utcnow


def _bump(prefix: str) -> int | None:
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.prefix == prefix)
        .values(next_number=OrderSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(OrderSequence.next_number)
        .filter_by(prefix=prefix)
        .scalar()
    )
    return current - 1


def next_order_number(now: datetime | None = None, pad: int = 4) -> str:
    """
    Atomically allocate the next order number for the current month.

    Format: ORD + YYYY + MM + zero-padded sequence, e.g. ORD2026100001.
    The counter row is bumped with a single UPDATE; the first order of a
    month inserts it. Call this before any other write in the transaction:
    losing the insert race rolls the session back.
    """
    prefix = f"{current_app.config['ORDER_NUMBER_PREFIX']}{month_prefix(now or utcnow())}"

    next_num = _bump(prefix)
    if next_num is None:
        db.session.add(OrderSequence(prefix=prefix, next_number=2))
        try:
            db.session.flush()
            next_num = 1
        except IntegrityError:
            db.session.rollback()
            next_num = _bump(prefix)
            if next_num is None:
                raise

    return f"{prefix}{next_num:0{pad}d}"
