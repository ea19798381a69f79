from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.engine import Dialect

from .exceptions import SchemaMismatch


if TYPE_CHECKING:
    from .rows import ResultRow

CastFn = Callable[[Any], Any]


@lru_cache
def _get_primary_key(model: type[Any]) -> sa.Column[Any]:
    """Return the first primary-key column for *model* (cached)."""
    return next(iter(sa.inspect(model).primary_key))


@lru_cache
def _get_inheritance_criteria(model: type[Any]) -> tuple[sa.ColumnElement[bool], ...]:
    """Return the discriminator filter of a single-table subclass (cached)."""
    mapper = sa.inspect(model)
    if not mapper.single or mapper.polymorphic_on is None:
        return ()

    identities = [
        sub.polymorphic_identity
        for sub in mapper.self_and_descendants
        if sub.polymorphic_identity is not None
    ]
    return (mapper.polymorphic_on.in_(identities),)


@lru_cache(maxsize=512)
def _column_caster(type_: sa.types.TypeEngine[Any], dialect: Dialect) -> CastFn | None:
    try:
        return type_.dialect_impl(dialect).result_processor(dialect, None)
    except (TypeError, sa.exc.InvalidRequestError):
        # processors that dispatch on the driver type code; such drivers
        # already return Python values
        return None


def inheritance_criteria(model: type[Any]) -> tuple[sa.ColumnElement[bool], ...]:
    """WHERE conditions restricting a shared table to the rows of *model*.

    Only single-table inheritance subclasses have one: the discriminator
    column limited to the identities of the class and its descendants.
    """
    return _get_inheritance_criteria(model)


def get_primary_key(model: type[Any]) -> sa.Column[Any]:
    """Get the primary key column for a SQLAlchemy model.

    Polymorphic references always point at this column of their target.
    """
    return _get_primary_key(model)


def column_caster(column: sa.ColumnElement[Any], dialect: Dialect) -> CastFn | None:
    """Return the function converting a raw driver value of *column* to Python.

    This is the same result processor SQLAlchemy would run while fetching the
    row; ``None`` means the driver value is already the Python value.
    """
    return _column_caster(column.type, dialect)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a scope that adds WHERE conditions to a batched query.

    Example:
        >>> scope = add_conditions(Category.name == "Foo")
        >>> Query(Widget).eager_load("category", scope=scope)
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def raw_columns(columns: Iterable[sa.Column[Any]]) -> list[sa.Label[Any]]:
    """Wrap *columns* so the driver value is returned without type processing.

    Casting happens later, per column, when a row attribute is first read.
    """
    return [sa.type_coerce(column, sa.types.NullType()).label(column.name) for column in columns]


def raw_select(columns: Sequence[sa.Column[Any]]) -> sa.Select[Any]:
    return sa.select(*raw_columns(columns))


def render_sql(statement: sa.ClauseElement, dialect: Dialect) -> str:
    """Compile *statement* for *dialect*, inlining bound values where possible."""
    try:
        return str(statement.compile(dialect=dialect, compile_kwargs={"literal_binds": True}))
    except (sa.exc.CompileError, NotImplementedError):
        return str(statement.compile(dialect=dialect))


def key_value(row: ResultRow, column: str) -> Any:
    """Read a key column from *row*, failing if the parent query did not select it."""
    try:
        return row.get(column)
    except KeyError:
        raise SchemaMismatch(row.shape.model, column, "was not selected") from None


def distinct_values(rows: Iterable[ResultRow], column: str) -> list[Any]:
    """Distinct non-null values of *column* across *rows*, in first-seen order."""
    seen: dict[Any, None] = {}
    for row in rows:
        value = key_value(row, column)
        if value is not None:
            seen[value] = None

    return list(seen)


def index_rows(rows: Iterable[ResultRow], column: str) -> dict[Any, ResultRow]:
    """Map *column* value to row. When several rows share a value the last one wins."""
    return {key_value(row, column): row for row in rows}


def group_rows(rows: Iterable[ResultRow], column: str) -> dict[Any, list[ResultRow]]:
    """Map *column* value to the rows carrying it, keeping their order."""
    groups: dict[Any, list[ResultRow]] = {}
    for row in rows:
        groups.setdefault(key_value(row, column), []).append(row)

    return groups
