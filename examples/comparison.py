"""Before/after comparison: lazy per-row loading vs sqla-batchloads.

Shows how many statements the same report costs when every order
fetches its own lines and sellables, versus one batched load.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_batchloads import Query, eager

from .models import GiftCard, Order, OrderLine, Product


# 1 + N + M statements: one per order for its lines, one per line for its sellable


def order_report_naive(session: orm.Session) -> list[dict[str, Any]]:
    report = []
    for order in session.scalars(sa.select(Order)):
        lines = session.scalars(sa.select(OrderLine).where(OrderLine.order_id == order.id)).all()
        titles = []
        for line in lines:
            model = {"Product": Product, "GiftCard": GiftCard}[line.sellable_type]
            titles.append(session.get(model, line.sellable_id).title)
        report.append({"order": order.id, "items": titles})

    return report


# 1 + 1 + (number of sellable types) statements, whatever the row counts


def order_report_batched(session: orm.Session) -> list[dict[str, Any]]:
    orders = Query(Order).eager_load("lines", eager("sellable")).run(session)
    return [
        {"order": order.id, "items": [line.sellable.title for line in order.lines if line.sellable]}
        for order in orders
    ]
