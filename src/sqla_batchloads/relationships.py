from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa


class RelationshipKind(str, enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    HABTM = "has_and_belongs_to_many"
    POLYMORPHIC_BELONGS_TO = "polymorphic_belongs_to"


_COLLECTIONS = frozenset({RelationshipKind.HAS_MANY, RelationshipKind.HABTM})


@dataclass(frozen=True, slots=True)
class Relationship:
    """Loader-facing description of one declared relationship.

    Keys are stored as database column names. ``parent_key`` always lives on
    the owning ``model``; ``child_key`` lives on ``target`` (or, for
    polymorphic belongs-to, is the primary key of whichever target the
    ``type_column`` names). Many-to-many relationships additionally carry the
    join table and its two key columns.
    """

    name: str
    kind: RelationshipKind
    model: type[Any]
    parent_key: str
    target: type[Any] | None = None
    child_key: str | None = None
    join_table: sa.Table | None = None
    join_parent_key: str | None = None
    join_child_key: str | None = None
    type_column: str | None = None
    targets: Mapping[str, type[Any]] = field(default_factory=dict, compare=False)
    criteria: tuple[sa.ColumnElement[bool], ...] = field(default=(), compare=False)

    @property
    def collection(self) -> bool:
        """Whether the association slot holds a list rather than a single row."""
        return self.kind in _COLLECTIONS

    def __repr__(self) -> str:
        return f"<Relationship {self.model.__name__}.{self.name} ({self.kind.value})>"


class polymorphic_relationship:  # noqa: N801
    """Declare a polymorphic belongs-to reference on a mapped class.

    SQLAlchemy has no native construct for "the row this id points to lives
    in the table named by another column", so the reference is declared as a
    plain class attribute and picked up by :func:`~sqla_batchloads.get_registry`::

        class LineItem(Base):
            __tablename__ = "line_items"

            item_id: orm.Mapped[int]
            item_type: orm.Mapped[str]

            item = polymorphic_relationship("item_type", "item_id")

    ``targets`` maps stored type tags to model classes (or class names). When
    omitted, a tag resolves to the mapped class of the same name.
    """

    __slots__ = ("key", "key_column", "targets", "type_column")

    def __init__(
        self,
        type_column: str,
        key_column: str,
        targets: Mapping[str, type[Any] | str] | None = None,
    ) -> None:
        self.type_column = type_column
        self.key_column = key_column
        self.targets = dict(targets) if targets is not None else None
        self.key = ""

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.key = name

    def __repr__(self) -> str:
        return f"<polymorphic_relationship {self.key!r} on {self.type_column!r}/{self.key_column!r}>"
