from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.engine import Connection, Dialect

from .exceptions import QueryExecutionFailure, SchemaMismatch
from .loaders import LoadRequest, Scope, get_loader
from .registry import Registry, _describe
from .relationships import RelationshipKind
from .rows import ResultRow, RowShape, build_row_shape, column_lookup, mapped_columns, materialize
from .tools import (
    _column_caster,
    _get_inheritance_criteria,
    _get_primary_key,
    inheritance_criteria,
    raw_columns,
    render_sql,
)


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession


logger = logging.getLogger("sqla_batchloads")

Bind = Union[Connection, orm.Session]
Source = Union[type[Any], sa.Select[Any]]


@dataclass(frozen=True, slots=True)
class EagerLoad:
    """One node of an eager-load tree.

    ``scope`` narrows the batched child query, ``use`` is the ``ResultRow``
    subclass the children are built with and ``children`` are loaded onto the
    rows this node produces.
    """

    name: str
    scope: Scope | None = None
    use: type[ResultRow] | None = None
    children: tuple[EagerLoad, ...] = ()

    def merged(self, other: EagerLoad) -> EagerLoad:
        """Combine two nodes for the same relationship; *other* wins on scope and use."""
        return replace(
            self,
            scope=other.scope if other.scope is not None else self.scope,
            use=other.use if other.use is not None else self.use,
            children=merge_loads((*self.children, *other.children)),
        )


def eager(
    name: str,
    *children: EagerLoad,
    scope: Scope | None = None,
    use: type[ResultRow] | None = None,
) -> EagerLoad:
    """Build an eager-load node.

    Example:
        >>> eager("line_items", eager("item"), scope=add_conditions(LineItem.amount > 0))
    """
    return EagerLoad(name=name, scope=scope, use=use, children=merge_loads(children))


def merge_loads(nodes: Iterable[EagerLoad]) -> tuple[EagerLoad, ...]:
    """Collapse nodes naming the same relationship into one, keeping first-seen order."""
    merged: dict[str, EagerLoad] = {}
    for node in nodes:
        current = merged.get(node.name)
        merged[node.name] = node if current is None else current.merged(node)

    return tuple(merged.values())


def parse_loads(
    paths: Iterable[str],
    conditions: Mapping[str, Scope] | None = None,
    uses: Mapping[str, type[ResultRow]] | None = None,
) -> tuple[EagerLoad, ...]:
    """Turn dotted paths like ``"line_items.item"`` into an eager-load tree.

    ``conditions`` and ``uses`` are looked up by full dotted path first, then
    by bare relationship name.
    """
    conditions = conditions or {}
    uses = uses or {}
    nodes: list[EagerLoad] = []
    for path in paths:
        parts = path.split(".")
        if not all(parts):
            raise ValueError(f"Invalid load path {path!r}")

        node: EagerLoad | None = None
        for depth in range(len(parts), 0, -1):
            prefix = ".".join(parts[:depth])
            name = parts[depth - 1]
            node = EagerLoad(
                name=name,
                scope=conditions.get(prefix, conditions.get(name)),
                use=uses.get(prefix, uses.get(name)),
                children=(node,) if node is not None else (),
            )
        nodes.append(node)

    return merge_loads(nodes)


def _dialect(bind: Bind) -> Dialect:
    if isinstance(bind, orm.Session):
        return bind.get_bind().dialect

    return bind.dialect


def _root_statement(source: Source) -> tuple[type[Any], sa.Select[Any], tuple[str, ...]]:
    """Return the model, the raw-valued statement and its column names for *source*."""
    if not isinstance(source, sa.Select):
        columns = mapped_columns(source)
        statement = sa.select(*raw_columns(columns)).where(*inheritance_criteria(source))
        return source, statement, tuple(c.name for c in columns)

    model = next(
        (d["entity"] for d in source.column_descriptions if d.get("entity") is not None),
        None,
    )
    if model is None:
        raise TypeError("query must select from a mapped model")

    lookup = column_lookup(model)
    table = sa.inspect(model).local_table
    columns: list[sa.Column[Any]] = []
    for selected in source.selected_columns:
        name = getattr(selected, "name", None) or selected.key
        if getattr(selected, "table", None) is not table or name not in lookup:
            raise SchemaMismatch(model, str(name))
        columns.append(lookup[name][1])

    statement = source.with_only_columns(*raw_columns(columns), maintain_column_froms=True)
    statement = statement.where(*inheritance_criteria(model))
    return model, statement, tuple(c.name for c in columns)


class _Run:
    """State of one ``Query.run`` invocation: the bind and the shapes built so far."""

    __slots__ = ("bind", "dialect", "query_logger", "registry", "shapes")

    def __init__(
        self,
        bind: Bind,
        registry: Registry,
        query_logger: list[str] | None,
    ) -> None:
        self.bind = bind
        self.dialect = _dialect(bind)
        self.registry = registry
        self.query_logger = query_logger
        self.shapes: dict[tuple[Any, ...], RowShape] = {}

    def execute(self, statement: sa.Select[Any]) -> Sequence[sa.Row[Any]]:
        if self.query_logger is not None or logger.isEnabledFor(logging.DEBUG):
            sql = render_sql(statement, self.dialect)
            logger.debug("%s", sql)
            if self.query_logger is not None:
                self.query_logger.append(sql)

        try:
            return self.bind.execute(statement).all()
        except sa.exc.DBAPIError as exc:
            raise QueryExecutionFailure(statement, f"Eager load query failed: {exc.orig}") from exc

    def shape(
        self,
        model: type[Any],
        columns: Sequence[str],
        loads: Sequence[EagerLoad],
        use: type[ResultRow] | None,
    ) -> RowShape:
        names = tuple(node.name for node in loads)
        key = (model, tuple(columns), names, use)
        if (shape := self.shapes.get(key)) is None:
            shape = build_row_shape(model, columns, names, dialect=self.dialect, use=use)
            self.shapes[key] = shape

        return shape

    def materialize(self, statement: sa.Select[Any], shape: RowShape) -> list[ResultRow]:
        return [materialize(raw, shape) for raw in self.execute(statement)]

    def validate(self, model: type[Any], loads: Sequence[EagerLoad]) -> None:
        """Fail before any I/O when a statically known model lacks a requested relationship."""
        for node in loads:
            relationship = self.registry.relationship(model, node.name)
            if relationship.kind is not RelationshipKind.POLYMORPHIC_BELONGS_TO:
                self.validate(relationship.target, node.children)

    def apply(self, parents: Sequence[ResultRow], node: EagerLoad) -> None:
        groups: dict[type[Any], list[ResultRow]] = {}
        for row in parents:
            groups.setdefault(row.shape.model, []).append(row)

        for model, group in groups.items():
            relationship = self.registry.relationship(model, node.name)
            loader = get_loader(relationship, node.scope)
            children = loader.load(group, _NodeExecutor(self, node))
            for child in node.children:
                self.apply(children, child)

    def run(self, query: Query) -> list[ResultRow]:
        model, statement, columns = _root_statement(query.source)
        self.validate(model, query.eager_loads)
        shape = self.shape(model, columns, query.eager_loads, query.use)
        rows = self.materialize(statement, shape)
        for node in query.eager_loads:
            self.apply(rows, node)

        return rows


class _NodeExecutor:
    """Executor handed to the loader of one eager-load node."""

    __slots__ = ("node", "run")

    def __init__(self, run: _Run, node: EagerLoad) -> None:
        self.run = run
        self.node = node

    def execute(self, statement: sa.Select[Any]) -> Sequence[sa.Row[Any]]:
        return self.run.execute(statement)

    def fetch(self, request: LoadRequest) -> list[ResultRow]:
        shape = self.run.shape(request.model, request.columns, self.node.children, self.node.use)
        return self.run.materialize(request.statement, shape)


class Query:
    """A root query plus the tree of relationships to eager load onto its rows.

    Example::

        orders = (
            Query(sa.select(Order).where(Order.customer_id == 42), query_logger=log)
            .eager_load("customer")
            .eager_load("line_items", eager("item"))
            .run(session)
        )

    Every relationship costs one batched statement per nesting level,
    regardless of how many parent rows there are (two for many-to-many, one
    per type present for polymorphic references).
    """

    __slots__ = ("_loads", "query_logger", "registry", "source", "use")

    def __init__(
        self,
        source: Source,
        *,
        registry: Registry | None = None,
        use: type[ResultRow] | None = None,
        query_logger: list[str] | None = None,
    ) -> None:
        self.source = source
        self.registry = registry
        self.use = use
        self.query_logger = query_logger
        self._loads: tuple[EagerLoad, ...] = ()

    @property
    def eager_loads(self) -> tuple[EagerLoad, ...]:
        return self._loads

    def eager_load(
        self,
        name: str | EagerLoad,
        *children: EagerLoad,
        scope: Scope | None = None,
        use: type[ResultRow] | None = None,
    ) -> Self:
        """Add a relationship (with nested *children*) to load; returns ``self``."""
        node = name if isinstance(name, EagerLoad) else eager(name, *children, scope=scope, use=use)
        self._loads = merge_loads((*self._loads, node))
        return self

    def loads(
        self,
        *paths: str,
        conditions: Mapping[str, Scope] | None = None,
        uses: Mapping[str, type[ResultRow]] | None = None,
    ) -> Self:
        """Add dotted relationship paths to load; returns ``self``."""
        self._loads = merge_loads((*self._loads, *parse_loads(paths, conditions, uses)))
        return self

    def run(self, bind: Bind) -> list[ResultRow]:
        """Execute the root query and every eager load through *bind*."""
        registry = self.registry if self.registry is not None else Registry()
        return _Run(bind, registry, self.query_logger).run(self)

    async def arun(self, bind: AsyncConnection | AsyncSession) -> list[ResultRow]:
        """Async variant of :meth:`run`; the batches are issued through ``run_sync``."""
        return await bind.run_sync(self.run)


def sqla_load(
    bind: Bind,
    *,
    model: type[Any],
    loads: tuple[str, ...] = (),
    conditions: Mapping[str, Scope] | None = None,
    uses: Mapping[str, type[ResultRow]] | None = None,
    use: type[ResultRow] | None = None,
    query: sa.Select[Any] | None = None,
    registry: Registry | None = None,
    query_logger: list[str] | None = None,
) -> list[ResultRow]:
    """Run a query for *model* with batched eager loading of dotted *loads*.

    Args:
        bind: Connection or Session to execute through.
        model: Mapped class of the root rows.
        loads: Relationship paths to eager load, e.g. ``("line_items.item",)``.
        conditions: Scopes keyed by dotted path or relationship name.
        uses: ``ResultRow`` subclasses keyed by dotted path or relationship name.
        use: ``ResultRow`` subclass for the root rows.
        query: Existing select to run instead of selecting every row of *model*.
        registry: Registry to resolve relationships with. Defaults to the singleton.
        query_logger: List receiving the SQL of every statement issued.

    Examples:
        Nested loads with a condition::

            orders = sqla_load(
                session,
                model=Order,
                loads=("customer", "line_items.item"),
                conditions={"line_items": add_conditions(LineItem.amount > 0)},
            )

        Extending an existing query::

            base = sa.select(Order).where(Order.customer_id == 42).order_by(Order.date)
            orders = sqla_load(session, model=Order, loads=("line_items",), query=base)
    """
    return (
        Query(
            query if query is not None else model,
            registry=registry,
            use=use,
            query_logger=query_logger,
        )
        .loads(*loads, conditions=conditions, uses=uses)
        .run(bind)
    )


_CACHED = (
    _describe,
    mapped_columns,
    column_lookup,
    _column_caster,
    _get_primary_key,
    _get_inheritance_criteria,
)


def sqla_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal metadata caches."""
    return {fn.__name__: fn.cache_info() for fn in _CACHED}


def sqla_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in _CACHED:
        fn.cache_clear()
