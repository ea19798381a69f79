from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from sqla_batchloads import Query, UnknownAssociation, eager

from ..models import Order, User

pytestmark = pytest.mark.anyio


class TestAsyncRun:
    async def test_connection(self, async_connection: AsyncConnection) -> None:
        log: list[str] = []
        orders = await (
            Query(sa.select(Order).order_by(Order.id), query_logger=log)
            .eager_load("customer")
            .eager_load("line_items", eager("item"))
            .arun(async_connection)
        )

        assert [o.id for o in orders] == [1000, 1001, 1002]
        assert orders[0].customer.name == "Alice"
        assert sorted(i.item.name for i in orders[0].line_items) == ["Spline A", "Widget A", "Widget B"]
        assert len(log) == 5

    async def test_session(self, async_connection: AsyncConnection) -> None:
        async with AsyncSession(bind=async_connection) as session:
            users = await Query(User).eager_load("offices").arun(session)

        by_name = {u.username: u for u in users}
        assert sorted(o.name for o in by_name["bob"].offices) == ["Bar", "Foo"]
        assert by_name["dave"].offices == []

    async def test_to_dict(self, async_connection: AsyncConnection) -> None:
        orders = await Query(sa.select(Order).where(Order.id == 1001)).loads("customer").arun(async_connection)

        assert orders[0].to_dict()["customer"] == {"id": 2, "name": "Bob"}

    async def test_errors_propagate(self, async_connection: AsyncConnection) -> None:
        with pytest.raises(UnknownAssociation):
            await Query(Order).eager_load("owner").arun(async_connection)
