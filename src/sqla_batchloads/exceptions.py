from __future__ import annotations

from typing import Any


class BatchLoadError(Exception):
    """Base class for every error raised by sqla_batchloads."""


class SchemaMismatch(BatchLoadError):
    """A requested column or key is not available on a model.

    Raised while building a row shape (unknown column), while resolving
    relationship metadata (composite keys) and while batching (a key column
    needed by a loader was not selected by the parent query).
    """

    def __init__(self, model: type[Any] | str, column: str, reason: str = "does not exist") -> None:
        self.model = model
        self.column = column
        model_name = model if isinstance(model, str) else model.__name__
        super().__init__(f"Column `{column}` {reason} on model `{model_name}`")


class UnknownAssociation(BatchLoadError):
    """An eager load names a relationship the row's model does not declare."""

    def __init__(self, model: type[Any] | str, name: str) -> None:
        self.model = model
        self.name = name
        model_name = model if isinstance(model, str) else model.__name__
        super().__init__(f"No relationship `{name}` on model `{model_name}`")


class QueryExecutionFailure(BatchLoadError):
    """The database rejected a statement issued by the engine.

    The original driver error is chained as ``__cause__``.
    """

    def __init__(self, statement: Any, message: str) -> None:
        self.statement = statement
        super().__init__(message)
