"""Collection descriptors registered on a query set."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, TypeAlias

if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement

    from flash_hydrate.keys import KeyBy
    from flash_hydrate.queryset import MappedQuerySet
    from flash_hydrate.scope import JoinScope

JoinCondition: TypeAlias = (
    "tuple[str, str] | Callable[[JoinScope], ColumnElement[bool]]"
)


class CollectionMode(Enum):
    """How many children a collection holds per parent."""

    MANY = "many"
    ONE = "one"
    ONE_OR_THROW = "one_or_throw"

    @property
    def is_many(self) -> bool:
        return self is CollectionMode.MANY


class JoinMethod(Enum):
    """SQL join used to attach a nested query set to its parent."""

    INNER_JOIN = "inner_join"
    LEFT_JOIN = "left_join"
    CROSS_JOIN = "cross_join"
    INNER_JOIN_LATERAL = "inner_join_lateral"
    LEFT_JOIN_LATERAL = "left_join_lateral"
    CROSS_JOIN_LATERAL = "cross_join_lateral"

    @property
    def is_lateral(self) -> bool:
        return self.value.endswith("_lateral")

    @property
    def is_outer(self) -> bool:
        return self in (JoinMethod.LEFT_JOIN, JoinMethod.LEFT_JOIN_LATERAL)

    @property
    def is_cross(self) -> bool:
        return self in (JoinMethod.CROSS_JOIN, JoinMethod.CROSS_JOIN_LATERAL)

    @property
    def is_filtering(self) -> bool:
        """Inner and cross joins can drop parent rows; left joins never do."""
        return not self.is_outer


@dataclass(frozen=True)
class JoinCollection:
    """
    A nested query set joined into the parent's SQL.

    Attributes:
        method: The SQL join to use.
        mode: Cardinality of the collection in the hydrated output.
        query_set: The nested query set, aliased under the collection key.
        condition: Two ``alias.column`` references compared for equality,
            a callable building the ON clause from a ``JoinScope``, or
            ``None`` for cross joins.
    """

    method: JoinMethod
    mode: CollectionMode
    query_set: MappedQuerySet
    condition: JoinCondition | None = None


@dataclass(frozen=True)
class AttachCollection:
    """
    A collection loaded by a separate fetch after the main query.

    Attributes:
        mode: Cardinality of the collection in the hydrated output.
        fetch_fn: Called once with every parent row of the level.
        match_child: Key of the fetched rows matched against the parent.
        match_parent: Key of the parent rows; ``None`` means the parent's
            own ``key_by``.
    """

    mode: CollectionMode
    fetch_fn: Callable[[list[dict[str, Any]]], Any]
    match_child: KeyBy
    match_parent: KeyBy | None = None


Collection: TypeAlias = "JoinCollection | AttachCollection"
