"""Basic sqla-batchloads usage examples.

Demonstrates initialization, simple loads, dotted paths,
conditions, custom row classes and async execution.

NOTE: This file is illustrative; it will not run standalone
without a database and seeded data.
"""

from __future__ import annotations

import logging
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_batchloads import Query, ResultRow, add_conditions, eager, get_registry, init_registry, sqla_load

from .models import Base, Customer, Order, OrderLine, Product


# ── 1. Initialize once at startup ────────────────────────────────────

engine = sa.create_engine("sqlite:///shop.db")


def setup() -> None:
    Base.metadata.create_all(engine)

    # Call once: collects every relationship of every mapped class
    init_registry(get_registry(Base))

    # every batched statement is logged at DEBUG
    logging.getLogger("sqla_batchloads").setLevel(logging.DEBUG)


# ── 2. Simple loads ──────────────────────────────────────────────────


def get_orders_with_customer(session: orm.Session) -> list[ResultRow]:
    # 2 statements: orders, then customers WHERE id IN (...)
    return Query(Order).eager_load("customer").run(session)


def get_orders_with_all(session: orm.Session) -> list[ResultRow]:
    return sqla_load(session, model=Order, loads=("customer", "lines"))


# ── 3. Dotted / nested paths ─────────────────────────────────────────


def get_customers_deep(session: orm.Session) -> list[ResultRow]:
    # one statement per level, plus one per sellable type present
    return sqla_load(session, model=Customer, loads=("orders.lines.sellable",))


def get_orders_nested(session: orm.Session) -> list[ResultRow]:
    return Query(Order).eager_load("lines", eager("sellable")).run(session)


# ── 4. Conditions ────────────────────────────────────────────────────


def get_orders_with_expensive_lines(session: orm.Session) -> list[ResultRow]:
    return sqla_load(
        session,
        model=Order,
        loads=("lines",),
        conditions={
            "lines": add_conditions(OrderLine.price > 100),  # noqa: PLR2004
        },
    )


# ── 5. Extending an existing query ──────────────────────────────────


def get_recent_orders(session: orm.Session) -> list[ResultRow]:
    base = sa.select(Order).where(Order.placed_on >= sa.func.date("now", "-30 day")).order_by(Order.id)
    return sqla_load(session, model=Order, loads=("lines",), query=base)


def get_order_ids_only(session: orm.Session) -> list[ResultRow]:
    # only the selected columns are fetched; ``id`` is enough to load lines
    return Query(sa.select(Order.id)).eager_load("lines").run(session)


# ── 6. Custom row classes ────────────────────────────────────────────


class OrderRow(ResultRow):
    __slots__ = ()

    def total(self) -> Decimal:
        return sum((line.price for line in self.lines), Decimal("0"))


def get_order_totals(session: orm.Session) -> dict[int, Decimal]:
    orders = Query(Order, use=OrderRow).eager_load("lines").run(session)
    return {order.id: order.total() for order in orders}


# ── 7. Many-to-many ─────────────────────────────────────────────────


def get_products_with_tags(session: orm.Session) -> list[dict]:
    # 3 statements: products, product_tags, tags
    products = Query(Product).eager_load("tags").run(session)
    return [product.to_dict() for product in products]


# ── 8. Async ────────────────────────────────────────────────────────


async def get_orders_async(session: AsyncSession) -> list[ResultRow]:
    return await Query(Order).loads("customer", "lines.sellable").arun(session)
