"""Shared service utilities: UUID coercion, unique-key upsert, money and
timestamp helpers."""
from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def parse_uuid(value: Any) -> uuid.UUID | None:
    """Like coerce_uuid, but returns None for blank or malformed values.

    Processor metadata is free-form text, so callers treat a bad id the same
    as a missing one.
    """
    if value is None or value == "":
        return None
    try:
        return coerce_uuid(value)
    except (TypeError, ValueError):
        return None


def get_or_create(
    db: Session,
    model: type[T],
    defaults: dict[str, Any] | None = None,
    **keys: Any,
) -> tuple[T, bool]:
    """Fetch the row matching the unique ``keys`` or insert it.

    The unique constraint on ``keys`` decides concurrent inserts: the loser
    gets an IntegrityError, rolls back its SAVEPOINT and re-reads the winner's
    row. Pending work elsewhere in the session is kept.
    Returns ``(row, created)``.
    """
    stmt = select(model).filter_by(**keys)
    item = db.scalars(stmt).first()
    if item is not None:
        return item, False
    item = model(**keys, **(defaults or {}))
    try:
        with db.begin_nested():
            db.add(item)
    except IntegrityError:
        logger.info(
            "Concurrent insert for %s %s; using existing row", model.__name__, keys
        )
        return db.scalars(stmt).one(), False
    return item, True


def from_unix(value: Any) -> datetime | None:
    """Convert a processor unix timestamp to an aware datetime."""
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def current_month(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).strftime("%Y-%m")


def format_money(cents: int | float) -> str:
    """Render minor units as dollars: 50000 -> "$500", 125050 -> "$1,250.50"."""
    amount = round(float(cents) / 100, 2)
    if amount == int(amount):
        return f"${int(amount):,}"
    return f"${amount:,.2f}"


def to_cents(amount: float) -> int:
    return int(round(amount * 100))
