from __future__ import annotations

import datetime
import os
from collections.abc import AsyncIterator, Iterator
from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_batchloads import sqla_cache_clear
from sqla_batchloads.registry import Registry, get_registry, init_registry

from .models import (
    Base,
    Category,
    Customer,
    Department,
    Director,
    Employee,
    LineItem,
    Manager,
    Office,
    Order,
    Spline,
    User,
    Widget,
    WidgetDetail,
    offices_users,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_registry() -> None:
    """Initialize the Registry singleton with the test models.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Registry()
    except RuntimeError:
        Registry.reset()
        init_registry(get_registry(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[tuple[str, str]]:
    """Yield ``(sync_dsn, async_dsn)`` for the selected backend."""
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest", driver="psycopg")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn, dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db", f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: tuple[str, str]) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config[0], echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def connection(engine: sa.Engine) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def session(connection: sa.Connection) -> Iterator[orm.Session]:
    sess = orm.Session(bind=connection, expire_on_commit=False)
    yield sess
    sess.close()


def seed(session: orm.Session) -> dict[str, list[Base]]:
    foo = Category(id=1, name="Foo")
    bar = Category(id=2, name="Bar")
    session.add_all([foo, bar])
    session.flush()

    widgets = [
        Widget(id=1, name="Widget A", category_id=1),
        Widget(id=2, name="Widget B", category_id=1),
        Widget(id=3, name="Widget C", category_id=2),
        Widget(id=4, name="Widget D", category_id=None),
    ]
    splines = [
        Spline(id=1, name="Spline A", category_id=1),
        Spline(id=2, name="Spline B", category_id=2),
    ]
    session.add_all([*widgets, *splines])
    session.flush()

    details = [
        WidgetDetail(id=1, widget_id=1, body="Detail A"),
        WidgetDetail(id=2, widget_id=2, body="Detail B"),
        WidgetDetail(id=3, widget_id=3, body="Detail C"),
    ]
    session.add_all(details)
    session.flush()

    customers = [Customer(id=1, name="Alice"), Customer(id=2, name="Bob")]
    session.add_all(customers)
    session.flush()

    orders = [
        Order(id=1000, date=datetime.date(2017, 2, 28), amount=Decimal("56.72"), customer_id=1),
        Order(id=1001, date=datetime.date(2017, 3, 1), amount=Decimal("12.50"), customer_id=2),
        Order(id=1002, date=datetime.date(2017, 3, 2), amount=Decimal("0.00"), customer_id=None),
    ]
    session.add_all(orders)
    session.flush()

    line_items = [
        LineItem(id=5000, order_id=1000, item_id=1, item_type="Widget", amount=Decimal("10.00")),
        LineItem(id=5001, order_id=1000, item_id=2, item_type="Widget", amount=Decimal("20.00")),
        LineItem(id=5002, order_id=1000, item_id=1, item_type="Spline", amount=Decimal("5.00")),
        LineItem(id=6000, order_id=1001, item_id=2, item_type="Spline", amount=Decimal("12.50")),
        LineItem(id=6001, order_id=1001, item_id=None, item_type=None, amount=Decimal("0.00")),
        LineItem(id=6002, order_id=1001, item_id=99, item_type="Gadget", amount=Decimal("1.00")),
    ]
    session.add_all(line_items)
    session.flush()

    users = [
        User(id=1, username="bob"),
        User(id=2, username="sue"),
        User(id=3, username="craig"),
        User(id=4, username="dave", active=False),
    ]
    offices = [Office(id=100, name="Foo"), Office(id=101, name="Bar"), Office(id=102, name="Zorp")]
    session.add_all([*users, *offices])
    session.flush()

    session.execute(
        offices_users.insert().values([
            {"user_id": 1, "office_id": 100},
            {"user_id": 1, "office_id": 101},
            {"user_id": 2, "office_id": 101},
            {"user_id": 2, "office_id": 102},
            {"user_id": 3, "office_id": 100},
        ])
    )
    session.flush()

    departments = [Department(id=1, name="Eng"), Department(id=2, name="Ops")]
    session.add_all(departments)
    session.flush()

    employees = [
        Manager(id=1, name="ann", department_id=1),
        Employee(id=2, name="ben", department_id=1),
        Director(id=3, name="cat", department_id=2),
        Employee(id=4, name="dan", department_id=2),
        Manager(id=5, name="eve", department_id=1),
    ]
    session.add_all(employees)
    session.flush()
    session.expunge_all()

    return {
        "categories": [foo, bar],
        "widgets": widgets,
        "splines": splines,
        "details": details,
        "customers": customers,
        "orders": orders,
        "line_items": line_items,
        "users": users,
        "offices": offices,
        "departments": departments,
        "employees": employees,
    }


@pytest.fixture
def seed_data(session: orm.Session) -> dict[str, list[Base]]:
    return seed(session)


@pytest.fixture
def statements(connection: sa.Connection, seed_data: dict[str, list[Base]]) -> Iterator[list[str]]:
    """SQL of every statement the connection sends to the driver after seeding."""
    issued: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany) -> None:  # noqa: ANN001
        issued.append(statement)

    sa.event.listen(connection, "before_cursor_execute", _record)
    yield issued
    sa.event.remove(connection, "before_cursor_execute", _record)


def _seed_sync(conn: sa.Connection) -> None:
    with orm.Session(bind=conn) as session:
        seed(session)


@pytest.fixture(scope="session")
async def async_engine(db_config: tuple[str, str], engine: sa.Engine) -> AsyncIterator[AsyncEngine]:
    # tables are created by the sync ``engine`` fixture on the same database
    async_engine = create_async_engine(db_config[1], echo=False)
    yield async_engine
    await async_engine.dispose()


@pytest.fixture
async def async_connection(async_engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    async with async_engine.connect() as conn:
        trans = await conn.begin()
        await conn.run_sync(_seed_sync)
        yield conn
        await trans.rollback()


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    sqla_cache_clear()


@pytest.fixture
def reset_registry_singleton() -> Iterator[None]:
    saved = Registry._Registry__instance  # type: ignore[attr-defined]
    yield
    Registry._Registry__instance = saved  # type: ignore[attr-defined]
