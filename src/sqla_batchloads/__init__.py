"""Batched eager loading of SQLAlchemy relationships into lightweight rows.

sqla_batchloads runs a query and resolves the relationships you ask for with
one batched ``IN (...)`` statement per relationship and nesting level, never
one statement per parent row. Results are ``ResultRow`` objects that keep the
raw driver values and cast a column only when it is first read.

Initialize the registry once at startup with your declarative base, then::

    orders = sqla_load(session, model=Order, loads=("customer", "line_items.item"))
"""

from ._version import __version__, __version_tuple__
from .core import (
    EagerLoad,
    Query,
    eager,
    merge_loads,
    parse_loads,
    sqla_cache_clear,
    sqla_cache_info,
    sqla_load,
)
from .exceptions import BatchLoadError, QueryExecutionFailure, SchemaMismatch, UnknownAssociation
from .loaders import (
    BelongsTo,
    Habtm,
    HasMany,
    HasOne,
    Loader,
    LoadRequest,
    PolymorphicBelongsTo,
    get_loader,
)
from .registry import Registry, get_registry, init_registry
from .relationships import Relationship, RelationshipKind, polymorphic_relationship
from .rows import ResultRow, RowShape, build_row_shape, materialize
from .tools import add_conditions, get_primary_key, inheritance_criteria


__all__ = (
    "BatchLoadError",
    "BelongsTo",
    "EagerLoad",
    "Habtm",
    "HasMany",
    "HasOne",
    "LoadRequest",
    "Loader",
    "PolymorphicBelongsTo",
    "Query",
    "QueryExecutionFailure",
    "Registry",
    "Relationship",
    "RelationshipKind",
    "ResultRow",
    "RowShape",
    "SchemaMismatch",
    "UnknownAssociation",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "build_row_shape",
    "eager",
    "get_loader",
    "get_primary_key",
    "get_registry",
    "inheritance_criteria",
    "init_registry",
    "materialize",
    "merge_loads",
    "parse_loads",
    "polymorphic_relationship",
    "sqla_cache_clear",
    "sqla_cache_info",
    "sqla_load",
)
