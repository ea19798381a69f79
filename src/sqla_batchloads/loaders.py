from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Final, Protocol

import sqlalchemy as sa

from .relationships import Relationship, RelationshipKind
from .rows import ResultRow, mapped_columns
from .tools import (
    distinct_values,
    get_primary_key,
    group_rows,
    index_rows,
    inheritance_criteria,
    key_value,
    raw_select,
)


logger = logging.getLogger(__name__)

Scope = Callable[[sa.Select[Any]], sa.Select[Any]]


@dataclass(frozen=True, slots=True)
class LoadRequest:
    """One batched statement a loader wants executed.

    ``columns`` names the selected columns of ``model`` in statement order, so
    the caller can build the row shape the results are materialized with.
    """

    model: type[Any]
    statement: sa.Select[Any]
    columns: tuple[str, ...]
    type_tag: str | None = None


class Executor(Protocol):
    """What a loader needs from the query runner."""

    def execute(self, statement: sa.Select[Any]) -> Sequence[Sequence[Any]]: ...

    def fetch(self, request: LoadRequest) -> list[ResultRow]: ...


class Loader(ABC):
    """Base class of the eager-loading strategies.

    A loader is bound to one relationship (and an optional scope narrowing the
    child query) and holds no rows between :meth:`build_query` and
    :meth:`merge`: everything it needs is passed in.
    """

    __slots__ = ("relationship", "scope")

    def __init__(self, relationship: Relationship, scope: Scope | None = None) -> None:
        self.relationship = relationship
        self.scope = scope

    @property
    def name(self) -> str:
        return self.relationship.name

    @abstractmethod
    def build_query(self, parents: Sequence[ResultRow]) -> list[LoadRequest]:
        """Return the statements fetching every child of *parents*. Nothing is executed."""

    @abstractmethod
    def merge(self, children: Sequence[ResultRow], parents: Sequence[ResultRow]) -> None:
        """Write the association slot of every parent, in place."""

    def load(self, parents: Sequence[ResultRow], executor: Executor) -> list[ResultRow]:
        """Query, materialize and merge the children of *parents*; return the children."""
        requests = self.build_query(parents) if parents else []
        children = [row for request in requests for row in executor.fetch(request)]
        self.merge(children, parents)
        self._log_merge(children, parents)
        return children

    def _request(
        self,
        model: type[Any],
        column: str,
        values: Sequence[Any],
        type_tag: str | None = None,
    ) -> LoadRequest:
        columns = mapped_columns(model)
        query = raw_select(columns).where(*inheritance_criteria(model))
        if self.relationship.criteria:
            query = query.where(*self.relationship.criteria)
        if self.scope is not None:
            query = self.scope(query)

        key = next(c for c in columns if c.name == column)
        return LoadRequest(
            model=model,
            statement=query.where(key.in_(values)),
            columns=tuple(c.name for c in columns),
            type_tag=type_tag,
        )

    def _log_merge(self, children: Sequence[ResultRow], parents: Sequence[ResultRow]) -> None:
        logger.debug(
            "Merged %d row(s) into %s.%s of %d parent(s)",
            len(children),
            self.relationship.model.__name__,
            self.name,
            len(parents),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.relationship.model.__name__}.{self.name}>"


class BelongsTo(Loader):
    """Many-to-one: the parent holds the key of a single child."""

    __slots__ = ()

    def build_query(self, parents: Sequence[ResultRow]) -> list[LoadRequest]:
        rel = self.relationship
        values = distinct_values(parents, rel.parent_key)
        if not values:
            return []

        return [self._request(rel.target, rel.child_key, values)]

    def merge(self, children: Sequence[ResultRow], parents: Sequence[ResultRow]) -> None:
        rel = self.relationship
        by_key = index_rows(children, rel.child_key)
        for parent in parents:
            key = key_value(parent, rel.parent_key)
            parent.set_association(rel.name, None if key is None else by_key.get(key))


class HasOne(BelongsTo):
    """One-to-one seen from the side the child's key points at."""

    __slots__ = ()


class HasMany(BelongsTo):
    """One-to-many: every child carrying the parent's key, in query order."""

    __slots__ = ()

    def merge(self, children: Sequence[ResultRow], parents: Sequence[ResultRow]) -> None:
        rel = self.relationship
        groups = group_rows(children, rel.child_key)
        for parent in parents:
            key = key_value(parent, rel.parent_key)
            parent.set_association(rel.name, [] if key is None else groups.get(key, []))


class Habtm(Loader):
    """Many-to-many through a join table.

    Loading takes two statements: the join table is read first to learn which
    child keys each parent links to, then the children themselves are fetched.
    """

    __slots__ = ()

    def build_link_query(self, parents: Sequence[ResultRow]) -> sa.Select[Any] | None:
        rel = self.relationship
        values = distinct_values(parents, rel.parent_key)
        if not values:
            return None

        join_parent = rel.join_table.c[rel.join_parent_key]
        join_child = rel.join_table.c[rel.join_child_key]
        return sa.select(join_parent, join_child).where(join_parent.in_(values))

    def build_query(
        self,
        parents: Sequence[ResultRow],
        links: Sequence[tuple[Any, Any]] = (),
    ) -> list[LoadRequest]:
        values = list(dict.fromkeys(child for _, child in links if child is not None))
        if not values:
            return []

        rel = self.relationship
        return [self._request(rel.target, rel.child_key, values)]

    def merge(  # type: ignore[override]
        self,
        children: Sequence[ResultRow],
        parents: Sequence[ResultRow],
        links: Sequence[tuple[Any, Any]] = (),
    ) -> None:
        rel = self.relationship
        linked: dict[Any, set[Any]] = {}
        for parent_key, child_key in links:
            linked.setdefault(parent_key, set()).add(child_key)

        # first occurrence of each child key, in query order
        ordered: dict[Any, ResultRow] = {}
        for child in children:
            ordered.setdefault(key_value(child, rel.child_key), child)

        position = {ckey: idx for idx, ckey in enumerate(ordered)}
        for parent in parents:
            key = key_value(parent, rel.parent_key)
            wanted = linked.get(key, set()) if key is not None else set()
            keys = sorted((ckey for ckey in wanted if ckey in position), key=position.__getitem__)
            parent.set_association(rel.name, [ordered[ckey] for ckey in keys])

    def load(self, parents: Sequence[ResultRow], executor: Executor) -> list[ResultRow]:
        links: list[tuple[Any, Any]] = []
        link_query = self.build_link_query(parents) if parents else None
        if link_query is not None:
            links = [(row[0], row[1]) for row in executor.execute(link_query)]

        requests = self.build_query(parents, links)
        children = [row for request in requests for row in executor.fetch(request)]
        self.merge(children, parents, links)
        self._log_merge(children, parents)
        return children


class PolymorphicBelongsTo(Loader):
    """Belongs-to whose target table is named by a type column on the parent.

    Parents are partitioned by type tag and each tag present gets exactly one
    statement against its own table. Tags that name no known model resolve to
    ``None`` without being queried.
    """

    __slots__ = ()

    def _partition(self, parents: Sequence[ResultRow]) -> dict[Any, list[Any]]:
        rel = self.relationship
        groups: dict[Any, dict[Any, None]] = {}
        for parent in parents:
            tag = key_value(parent, rel.type_column)
            key = key_value(parent, rel.parent_key)
            if tag is not None and key is not None:
                groups.setdefault(tag, {})[key] = None

        return {tag: list(keys) for tag, keys in groups.items()}

    def build_query(self, parents: Sequence[ResultRow]) -> list[LoadRequest]:
        requests: list[LoadRequest] = []
        for tag, values in self._partition(parents).items():
            target = self.relationship.targets.get(tag)
            if target is None:
                logger.debug("Skipping unknown %s type %r", self.name, tag)
                continue

            requests.append(self._request(target, get_primary_key(target).name, values, tag))

        return requests

    def merge(self, children: Sequence[ResultRow], parents: Sequence[ResultRow]) -> None:
        rel = self.relationship
        by_model: dict[type[Any], dict[Any, ResultRow]] = {}
        for child in children:
            model = child.shape.model
            by_model.setdefault(model, {})[key_value(child, get_primary_key(model).name)] = child

        for parent in parents:
            tag = key_value(parent, rel.type_column)
            key = key_value(parent, rel.parent_key)
            target = rel.targets.get(tag) if tag is not None else None
            value = None
            if target is not None and key is not None:
                value = by_model.get(target, {}).get(key)
            parent.set_association(rel.name, value)


LOADERS: Final[dict[RelationshipKind, type[Loader]]] = {
    RelationshipKind.BELONGS_TO: BelongsTo,
    RelationshipKind.HAS_ONE: HasOne,
    RelationshipKind.HAS_MANY: HasMany,
    RelationshipKind.HABTM: Habtm,
    RelationshipKind.POLYMORPHIC_BELONGS_TO: PolymorphicBelongsTo,
}


def get_loader(relationship: Relationship, scope: Scope | None = None) -> Loader:
    """Instantiate the loader strategy matching *relationship*'s kind."""
    return LOADERS[relationship.kind](relationship, scope)
