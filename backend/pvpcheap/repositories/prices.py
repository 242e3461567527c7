from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pvpcheap.db.models import Price


def list_prices_between(db: Session, *, start: datetime, end: datetime) -> list[Price]:
    return list(
        db.scalars(
            select(Price)
            .where(Price.timestamp >= start, Price.timestamp < end)
            .order_by(Price.timestamp.asc())
        )
    )


def get_price_at(db: Session, *, ts: datetime) -> float | None:
    row = db.get(Price, ts)
    if row is None:
        return None
    return float(row.price)
