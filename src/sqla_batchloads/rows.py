from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.engine import Dialect

from .exceptions import SchemaMismatch, UnknownAssociation
from .tools import column_caster


_MISSING: Final = object()


@lru_cache(maxsize=256)
def mapped_columns(model: type[Any]) -> tuple[sa.Column[Any], ...]:
    """Table columns mapped on *model*, in table order."""
    mapper = sa.inspect(model, raiseerr=False)
    if not isinstance(mapper, orm.Mapper):
        raise TypeError(f"{model!r} is not a mapped class")

    mapped = {id(column) for column in mapper.columns if isinstance(column, sa.Column)}
    return tuple(column for column in mapper.local_table.columns if id(column) in mapped)


@lru_cache(maxsize=256)
def column_lookup(model: type[Any]) -> Mapping[str, tuple[str, sa.Column[Any]]]:
    """Map both database names and attribute keys to ``(attribute key, column)``."""
    mapper = sa.inspect(model)
    lookup: dict[str, tuple[str, sa.Column[Any]]] = {}
    for key, column in mapper.columns.items():
        if isinstance(column, sa.Column) and column.table is mapper.local_table:
            lookup[column.name] = (key, column)

    for key, column in list(lookup.values()):
        lookup.setdefault(key, (key, column))

    return lookup


@dataclass(frozen=True, slots=True)
class RowShape:
    """Shared description of every row in one result set.

    ``columns`` are database column names in the order raw values arrive,
    ``keys`` the matching mapped attribute keys. ``index`` resolves either
    spelling to a position.
    """

    model: type[Any]
    columns: tuple[str, ...]
    keys: tuple[str, ...]
    casts: tuple[Callable[[Any], Any] | None, ...]
    associations: tuple[str, ...]
    row_class: type[ResultRow]
    index: Mapping[str, int] = field(default_factory=dict, compare=False)

    def __contains__(self, name: object) -> bool:
        return name in self.index

    def __len__(self) -> int:
        return len(self.columns)


def build_row_shape(
    model: type[Any],
    column_names: Iterable[str],
    association_names: Iterable[str] = (),
    *,
    dialect: Dialect,
    use: type[ResultRow] | None = None,
) -> RowShape:
    """Build the shape used to materialize every row of one query.

    Args:
        model: Mapped class holding the column and type information.
        column_names: Columns in the order the query returns them. Either the
            database name or the mapped attribute key is accepted.
        association_names: Associations that will be eager loaded into the rows.
        dialect: Dialect whose result processors cast raw values.
        use: Optional ``ResultRow`` subclass instantiated for every row.

    Raises:
        SchemaMismatch: A column does not exist on *model*.
        TypeError: *use* is not a ``ResultRow`` subclass.
    """
    row_class = ResultRow if use is None else use
    if not (isinstance(row_class, type) and issubclass(row_class, ResultRow)):
        raise TypeError(f"use must be a subclass of ResultRow, got {use!r}")

    lookup = column_lookup(model)
    columns: list[str] = []
    keys: list[str] = []
    casts: list[Callable[[Any], Any] | None] = []
    for name in column_names:
        if name not in lookup:
            raise SchemaMismatch(model, name)

        key, column = lookup[name]
        columns.append(column.name)
        keys.append(key)
        casts.append(column_caster(column, dialect))

    index: dict[str, int] = {name: idx for idx, name in enumerate(columns)}
    for idx, key in enumerate(keys):
        index.setdefault(key, idx)

    return RowShape(
        model=model,
        columns=tuple(columns),
        keys=tuple(keys),
        casts=tuple(casts),
        associations=tuple(dict.fromkeys(association_names)),
        row_class=row_class,
        index=index,
    )


def materialize(raw_values: Sequence[Any], shape: RowShape) -> ResultRow:
    """Create one row of *shape* from the raw driver values of a record."""
    if len(raw_values) != len(shape.columns):
        raise ValueError(
            f"Expected {len(shape.columns)} values for {shape.model.__name__}, "
            f"got {len(raw_values)}"
        )

    return shape.row_class(shape, raw_values)


class ResultRow:
    """A read-only record holding raw column values, cast on first access.

    Columns are available as attributes (``row.name``), by item
    (``row["name"]``) or through :meth:`get`. Eager-loaded associations are
    available as attributes or through :meth:`association`.

    Attribute access falls back to columns only for names the row API does not
    define. A column called ``shape``, ``raw_values``, ``get``, ``association``,
    ``set_association``, ``to_dict`` or ``to_hash`` is read with
    ``row["shape"]``; ``row.shape`` stays the :class:`RowShape`.

    Subclass it and pass the subclass as ``use=`` to add your own methods::

        class OrderRow(ResultRow):
            def total(self) -> Decimal:
                return sum(item.amount for item in self.line_items)
    """

    __slots__ = ("_associations", "_cache", "_raw", "_shape")

    def __init__(self, shape: RowShape, raw_values: Sequence[Any]) -> None:
        self._shape = shape
        self._raw = tuple(raw_values)
        self._cache: list[Any] = [_MISSING] * len(self._raw)
        self._associations: dict[str, Any] = {}

    @property
    def shape(self) -> RowShape:
        return self._shape

    @property
    def raw_values(self) -> tuple[Any, ...]:
        return self._raw

    def get(self, name: str) -> Any:
        """Return the cast value of column *name*.

        Raises:
            KeyError: The column is not part of this row.
        """
        try:
            idx = self._shape.index[name]
        except KeyError:
            raise KeyError(
                f"Column `{name}` was not selected for `{self._shape.model.__name__}`"
            ) from None

        return self._value(idx)

    def _value(self, idx: int) -> Any:
        value = self._cache[idx]
        if value is _MISSING:
            raw = self._raw[idx]
            cast = self._shape.casts[idx]
            value = raw if raw is None or cast is None else cast(raw)
            self._cache[idx] = value

        return value

    __getitem__ = get

    def __len__(self) -> int:
        return len(self._raw)

    def association(self, name: str) -> Any:
        """Return the eager-loaded value of association *name*.

        A single row or ``None`` for to-one associations, a list for to-many ones.

        Raises:
            UnknownAssociation: *name* was not eager loaded for this row.
        """
        if name not in self._shape.associations:
            raise UnknownAssociation(self._shape.model, name)

        return self._associations.get(name)

    def set_association(self, name: str, value: Any) -> None:
        if name not in self._shape.associations:
            raise UnknownAssociation(self._shape.model, name)

        self._associations[name] = value

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)

        shape = self._shape
        if name in shape.index:
            return self.get(name)
        if name in shape.associations:
            return self._associations.get(name)

        raise AttributeError(
            f"{type(self).__name__} for `{shape.model.__name__}` has no column "
            f"or association `{name}`"
        )

    def to_dict(self, symbolize_names: bool = False) -> dict[str, Any]:
        """Return the row and its loaded associations as plain nested dicts.

        Args:
            symbolize_names: Key columns by mapped attribute key instead of
                database column name.
        """
        names = self._shape.keys if symbolize_names else self._shape.columns
        data: dict[str, Any] = {name: self._value(idx) for idx, name in enumerate(names)}
        for name in self._shape.associations:
            value = self._associations.get(name)
            if isinstance(value, list):
                data[name] = [row.to_dict(symbolize_names=symbolize_names) for row in value]
            elif value is None:
                data[name] = None
            else:
                data[name] = value.to_dict(symbolize_names=symbolize_names)

        return data

    to_hash = to_dict

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResultRow):
            return NotImplemented

        return (
            self._shape == other._shape
            and self._raw == other._raw
            and self._associations == other._associations
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        values = ", ".join(f"{key}={raw!r}" for key, raw in zip(self._shape.keys, self._raw))
        return f"<{type(self).__name__} {self._shape.model.__name__}({values})>"
