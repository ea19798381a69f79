from __future__ import annotations

from collections.abc import Mapping, Sequence
from functools import lru_cache
from types import MappingProxyType
from typing import Any, ClassVar, Union, final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql.elements import BooleanClauseList
from sqlalchemy.sql.visitors import iterate

from .exceptions import SchemaMismatch, UnknownAssociation
from .relationships import Relationship, RelationshipKind, polymorphic_relationship


Declaration = Union[orm.RelationshipProperty[Any], polymorphic_relationship]
Graph = Mapping[type[Any], Sequence[Declaration]]


@final
class Registry:
    """Singleton holding the relationship declarations of every mapped model.

    The registry is the engine's view of the schema: it answers which
    relationships a model declares and turns a declaration into the
    :class:`~sqla_batchloads.relationships.Relationship` a loader works from.
    """

    __instance: ClassVar[Registry | None] = None
    _graph: Graph

    def __new__(cls, graph: Graph | None = None) -> Registry:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if graph is not None:
                instance.set_graph(graph)

            cls.__instance = instance

        if not getattr(cls.__instance, "_graph", None):
            raise RuntimeError("Registry is not initialized or empty")

        return cls.__instance

    @classmethod
    def from_graph(cls, graph: Graph) -> Registry:
        """Build a standalone registry that does not touch the singleton."""
        instance = super().__new__(cls)
        instance.set_graph(graph)
        return instance

    def get(self, model: type[Any]) -> Sequence[Declaration]:
        """Declarations of *model*, or an empty sequence for unknown models."""
        return self.graph.get(model, ())

    def __getitem__(self, model: type[Any]) -> Sequence[Declaration]:
        return self.graph[model]

    @property
    def graph(self) -> Graph:
        """The underlying model-to-declarations mapping (read-only)."""
        return self._graph

    @property
    def models(self) -> Mapping[str, type[Any]]:
        return {model.__name__: model for model in self.graph}

    def set_graph(self, graph: Graph) -> None:
        self._graph = graph

    def relationship(self, model: type[Any], name: str) -> Relationship:
        """Resolve relationship *name* declared on *model*.

        Raises:
            UnknownAssociation: *model* declares no such relationship.
            SchemaMismatch: The relationship cannot be batched (composite keys,
                join conditions involving other parent columns).
        """
        for declaration in self.get(model):
            if declaration.key == name:
                return _describe(declaration, self, model)

        raise UnknownAssociation(model, name)

    def relationships(self, model: type[Any]) -> tuple[Relationship, ...]:
        return tuple(_describe(declaration, self, model) for declaration in self.get(model))

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls.__instance = None


def _polymorphic_declarations(model: type[Any]) -> list[polymorphic_relationship]:
    found: dict[str, polymorphic_relationship] = {}
    for klass in model.__mro__:
        for attr in vars(klass).values():
            if isinstance(attr, polymorphic_relationship):
                found.setdefault(attr.key, attr)

    return list(found.values())


def get_registry(base: type[orm.DeclarativeBase]) -> Graph:
    """Collect relationship declarations from a SQLAlchemy declarative base.

    Every mapper in the base's registry contributes its ORM relationships
    plus any :class:`polymorphic_relationship` attributes.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    return MappingProxyType({
        mapper.class_: (
            *mapper.relationships.values(),
            *_polymorphic_declarations(mapper.class_),
        )
        for mapper in base.registry.mappers
    })


def init_registry(graph: Graph) -> None:
    """Initialize the global Registry singleton.

    Call once during application startup::

        >>> from myapp.models import Base
        >>> init_registry(get_registry(Base))
    """
    Registry(graph)


def _single_pair(
    prop: orm.RelationshipProperty[Any],
    pairs: Sequence[tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]]],
) -> tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]]:
    if len(pairs) != 1:
        names = ", ".join(local.name for local, _ in pairs)
        raise SchemaMismatch(prop.parent.class_, names, "is a composite key, which is not supported")

    return pairs[0]


def _lift_criteria(
    prop: orm.RelationshipProperty[Any],
    pair: tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]],
) -> tuple[sa.ColumnElement[bool], ...]:
    """Return the parts of a custom ``primaryjoin`` that filter only the target table."""
    join = prop.primaryjoin
    clauses = list(join.clauses) if isinstance(join, BooleanClauseList) else [join]
    keys = {(column.table, column.name) for column in pair}
    target = prop.target
    criteria: list[sa.ColumnElement[bool]] = []
    for clause in clauses:
        columns = [el for el in iterate(clause) if isinstance(el, sa.Column)]
        if any((column.table, column.name) in keys for column in columns):
            continue
        if any(column.table is not target for column in columns):
            raise SchemaMismatch(
                prop.parent.class_, prop.key, "has a join condition that cannot be batched"
            )
        criteria.append(clause)

    return tuple(criteria)


def _resolve_targets(
    declaration: polymorphic_relationship, registry: Registry, model: type[Any]
) -> Mapping[str, type[Any]]:
    models = registry.models
    if declaration.targets is None:
        return MappingProxyType(dict(models))

    targets: dict[str, type[Any]] = {}
    for tag, target in declaration.targets.items():
        if isinstance(target, str):
            if target not in models:
                raise SchemaMismatch(
                    model, declaration.type_column, f"references unknown model `{target}`"
                )
            target = models[target]
        targets[tag] = target

    return MappingProxyType(targets)


@lru_cache(maxsize=1028)
def _describe(declaration: Declaration, registry: Registry, owner: type[Any]) -> Relationship:
    if isinstance(declaration, polymorphic_relationship):
        model = owner
        return Relationship(
            name=declaration.key,
            kind=RelationshipKind.POLYMORPHIC_BELONGS_TO,
            model=model,
            parent_key=declaration.key_column,
            type_column=declaration.type_column,
            targets=_resolve_targets(declaration, registry, model),
        )

    prop = declaration
    model = prop.parent.class_
    target = prop.mapper.class_

    if prop.direction is orm.MANYTOMANY:
        if not isinstance(prop.secondary, sa.Table):
            raise SchemaMismatch(model, prop.key, "uses a secondary selectable that is not a table")

        parent_column, join_parent = _single_pair(prop, prop.synchronize_pairs)
        child_column, join_child = _single_pair(prop, prop.secondary_synchronize_pairs)
        return Relationship(
            name=prop.key,
            kind=RelationshipKind.HABTM,
            model=model,
            parent_key=parent_column.name,
            target=target,
            child_key=child_column.name,
            join_table=prop.secondary,
            join_parent_key=join_parent.name,
            join_child_key=join_child.name,
        )

    pair = _single_pair(prop, prop.local_remote_pairs)
    local, remote = pair
    if prop.direction is orm.MANYTOONE:
        kind = RelationshipKind.BELONGS_TO
    elif prop.uselist:
        kind = RelationshipKind.HAS_MANY
    else:
        kind = RelationshipKind.HAS_ONE

    return Relationship(
        name=prop.key,
        kind=kind,
        model=model,
        parent_key=local.name,
        target=target,
        child_key=remote.name,
        criteria=_lift_criteria(prop, pair),
    )
