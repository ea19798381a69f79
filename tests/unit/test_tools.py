from __future__ import annotations

import datetime

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import sqlite
from sqlalchemy.dialects.postgresql.psycopg import PGDialect_psycopg

from sqla_batchloads import SchemaMismatch
from sqla_batchloads.rows import build_row_shape, materialize
from sqla_batchloads.tools import (
    add_conditions,
    column_caster,
    distinct_values,
    get_primary_key,
    inheritance_criteria,
    group_rows,
    index_rows,
    key_value,
    raw_select,
    render_sql,
)

from ..models import Category, Director, Employee, Manager, Order, User, Widget


DIALECT = sqlite.dialect()


def _widgets(*raw: tuple[object, ...]) -> list:
    shape = build_row_shape(Widget, ["id", "name", "category_id"], dialect=DIALECT)
    return [materialize(values, shape) for values in raw]


class TestInheritanceCriteria:
    def test_plain_model_has_none(self) -> None:
        assert inheritance_criteria(Order) == ()

    def test_base_of_hierarchy_has_none(self) -> None:
        assert inheritance_criteria(Employee) == ()

    def test_subclass_includes_descendants(self) -> None:
        (criterion,) = inheritance_criteria(Manager)

        assert render_sql(criterion, DIALECT) == "employees.kind IN ('manager', 'director')"

    def test_leaf_subclass(self) -> None:
        (criterion,) = inheritance_criteria(Director)

        assert render_sql(criterion, DIALECT) == "employees.kind IN ('director')"


class TestGetPrimaryKey:
    def test_user_pk(self) -> None:
        pk = get_primary_key(User)
        assert pk.name == "id"

    def test_cached(self) -> None:
        assert get_primary_key(Order) is get_primary_key(Order)


class TestColumnCaster:
    def test_sqlite_date(self) -> None:
        cast = column_caster(Order.__table__.c.date, DIALECT)

        assert cast is not None
        assert cast("2017-02-28") == datetime.date(2017, 2, 28)

    def test_plain_string_has_no_cast(self) -> None:
        assert column_caster(Category.__table__.c.name, DIALECT) is None

    def test_driver_typed_numeric_falls_back_to_identity(self) -> None:
        # the driver already returns Decimal, nothing to do
        assert column_caster(Order.__table__.c.amount, PGDialect_psycopg()) is None


class TestAddConditions:
    def test_adds_where(self) -> None:
        scope = add_conditions(Category.name == "Foo")
        query = scope(sa.select(Category.id))
        rendered = render_sql(query, DIALECT)

        assert "WHERE categories.name = 'Foo'" in rendered

    def test_multiple(self) -> None:
        scope = add_conditions(Category.name == "Foo", Category.id > 1)
        rendered = render_sql(scope(sa.select(Category.id)), DIALECT)

        assert "categories.name = 'Foo' AND categories.id > 1" in rendered


class TestRawSelect:
    def test_labels_keep_column_names(self) -> None:
        query = raw_select(list(Order.__table__.c))

        assert [c.name for c in query.selected_columns] == ["id", "date", "amount", "customer_id"]

    def test_no_result_processing(self) -> None:
        query = raw_select([Order.__table__.c.date])

        assert isinstance(query.selected_columns[0].type, sa.types.NullType)


class TestRenderSql:
    def test_literal_binds(self) -> None:
        query = sa.select(Category.id).where(Category.id.in_([1, 2]))

        assert render_sql(query, DIALECT).endswith("WHERE categories.id IN (1, 2)")


class TestBatchingHelpers:
    def test_distinct_values_skip_nulls(self) -> None:
        widgets = _widgets((1, "A", 5), (2, "B", None), (3, "C", 10), (4, "D", 5))

        assert distinct_values(widgets, "category_id") == [5, 10]

    def test_index_rows_last_wins(self) -> None:
        widgets = _widgets((1, "A", 5), (2, "B", 5))

        assert index_rows(widgets, "category_id")[5].id == 2

    def test_group_rows_keeps_order(self) -> None:
        widgets = _widgets((1, "A", 5), (2, "B", 10), (3, "C", 5))
        groups = group_rows(widgets, "category_id")

        assert [w.id for w in groups[5]] == [1, 3]
        assert [w.id for w in groups[10]] == [2]

    def test_key_value_not_selected(self) -> None:
        shape = build_row_shape(Widget, ["id"], dialect=DIALECT)
        row = materialize((1,), shape)

        with pytest.raises(SchemaMismatch) as exc:
            key_value(row, "category_id")

        assert exc.value.column == "category_id"
        assert exc.value.model is Widget
