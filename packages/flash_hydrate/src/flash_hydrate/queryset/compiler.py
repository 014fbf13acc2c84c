from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
)

from sqlalchemy import func, literal_column, select, true

from flash_hydrate.collections import JoinCollection
from flash_hydrate.exceptions import UnresolvedReferenceError
from flash_hydrate.prefixes import make_prefix
from flash_hydrate.scope import JoinScope

from .base import QuerySetBase

if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.sql import ColumnElement, FromClause, Select

logger = logging.getLogger(__name__)


@dataclass
class SelectParts:
    """Mutable scratch state while a single SELECT is being assembled."""

    from_clause: FromClause
    scope: JoinScope
    columns: list[ColumnElement[Any]] = field(default_factory=list)
    criteria: list[ColumnElement[bool]] = field(default_factory=list)

    def to_select(self) -> Select:
        return select(*self.columns).select_from(self.from_clause).where(*self.criteria)


class QuerySetCompiler(QuerySetBase):
    """
    Compiles a query set and its collection tree into SQLAlchemy statements.

    The planner picks one of three shapes:

    1. No join collections and no ordering: the base query with
       limit/offset applied directly.
    2. No limit and no offset: the fully joined query. Row explosion is
       harmless without a pagination boundary.
    3. Otherwise a cardinality-one query (one row per root entity) is
       paginated first, then the collections of many are joined on top of
       that already bounded page.
    """

    def _join_collections(self) -> dict[str, JoinCollection]:
        return {
            key: collection
            for key, collection in self._collections.items()
            if isinstance(collection, JoinCollection)
        }

    def _is_cardinality_one(self) -> bool:
        """
        Whether this query set yields at most one row per root entity, even
        when nested into a parent. Attaches never affect it.
        """
        return all(
            _is_cardinality_one_collection(collection)
            for collection in self._join_collections().values()
        )

    def _aliased_base(self) -> FromClause:
        return self._base_query.subquery(self.base_alias)

    def _base_parts(self, base: FromClause) -> SelectParts:
        scope = JoinScope(self.base_alias).with_source(self.base_alias, base)
        return SelectParts(from_clause=base, scope=scope, columns=list(base.c))

    def _nested_source(self, key: str, collection: JoinCollection) -> FromClause:
        query = collection.query_set._to_query(nested=True)
        if collection.method.is_lateral:
            return query.lateral(key)
        return query.subquery(key)

    def _join_condition(
        self, collection: JoinCollection, scope: JoinScope
    ) -> ColumnElement[bool]:
        condition = collection.condition
        if collection.method.is_cross or condition is None:
            return true()
        if callable(condition):
            return condition(scope)
        left, right = condition
        return scope.eq(left, right)

    def _add_collection_as_join(
        self,
        parts: SelectParts,
        key: str,
        collection: JoinCollection,
        hoist: bool = True,
    ) -> None:
        """
        Join a nested query set onto ``parts``.

        With ``hoist`` the nested columns are selected as ``<key>$$<column>``.
        Deeper levels already carry their own prefixes, so relabelling at
        each level builds the full path.
        """
        source = self._nested_source(key, collection)
        parts.scope = parts.scope.with_source(key, source)
        onclause = self._join_condition(collection, parts.scope)
        parts.from_clause = parts.from_clause.join(
            source, onclause, isouter=collection.method.is_outer
        )
        if hoist:
            prefix = make_prefix("", key)
            parts.columns.extend(
                column.label(f"{prefix}{column.key}") for column in source.c
            )

    def _add_collection_as_exists(
        self, parts: SelectParts, key: str, collection: JoinCollection
    ) -> None:
        """
        Replace a filtering join of many with ``WHERE EXISTS``.

        The join is replayed onto a single-row dummy source so that the
        existence effect on the parent rows is kept without multiplying them.
        """
        dummy = select(literal_column("1").label("_")).subquery("__")
        replay = SelectParts(from_clause=dummy, scope=parts.scope)
        self._add_collection_as_join(replay, key, collection, hoist=False)
        exists_query = select(literal_column("1")).select_from(replay.from_clause)
        parts.criteria.append(exists_query.exists())

    def _apply_limit_and_offset(self, query: Select) -> Select:
        if self._limit is not None:
            query = query.limit(self._limit)
        if self._offset is not None:
            query = query.offset(self._offset)
        return query

    def _apply_ordering(self, query: Select, scope: JoinScope) -> Select:
        if not self._ordering:
            return query

        joins = self._join_collections()
        clauses = []
        for term in self._ordering:
            alias = term.alias or self.base_alias
            collection = joins.get(alias) if alias != self.base_alias else None
            if collection is not None and not _is_cardinality_one_collection(
                collection
            ):
                raise UnresolvedReferenceError(
                    term.reference, "cannot order by a collection of many"
                )
            column = scope.column(alias, term.column)
            clauses.append(column.desc() if term.descending else column.asc())
        return query.order_by(*clauses)

    def _to_cardinality_one_parts(self) -> SelectParts:
        """
        One row per root entity, with every filtering join still in effect.

        Cardinality-one collections are joined and hoisted. Filtering joins
        of many become EXISTS predicates. Left joins of many are omitted
        since they can never drop a root row.
        """
        parts = self._base_parts(self._aliased_base())
        for key, collection in self._join_collections().items():
            if _is_cardinality_one_collection(collection):
                self._add_collection_as_join(parts, key, collection)
            elif collection.method.is_filtering:
                self._add_collection_as_exists(parts, key, collection)
        return parts

    def _to_joined_query(self, nested: bool) -> Select:
        parts = self._base_parts(self._aliased_base())
        for key, collection in self._join_collections().items():
            self._add_collection_as_join(parts, key, collection)

        query = parts.to_select()
        # ORDER BY inside a subquery is not guaranteed without LIMIT/OFFSET
        if not nested:
            query = self._apply_ordering(query, parts.scope)
        return query

    def _to_query(self, nested: bool) -> Select:
        joins = self._join_collections()

        if not joins and not self._ordering:
            logger.debug("Query set '%s': paginating base query", self.base_alias)
            return self._apply_limit_and_offset(self._base_query)

        if self._limit is None and self._offset is None:
            logger.debug("Query set '%s': using joined query", self.base_alias)
            return self._to_joined_query(nested)

        logger.debug(
            "Query set '%s': paginating cardinality-one query", self.base_alias
        )
        inner = self._to_cardinality_one_parts()
        paginated = self._apply_limit_and_offset(
            self._apply_ordering(inner.to_select(), inner.scope)
        )
        wrapped = paginated.subquery(self.base_alias)

        parts = self._base_parts(wrapped)
        for key, collection in joins.items():
            if _is_cardinality_one_collection(collection):
                # Already hoisted into the paginated base under its prefix
                parts.scope = parts.scope.with_source(
                    key, wrapped, make_prefix("", key)
                )

        for key, collection in joins.items():
            if not _is_cardinality_one_collection(collection):
                self._add_collection_as_join(parts, key, collection)

        query = parts.to_select()
        if not nested:
            query = self._apply_ordering(query, parts.scope)
        return query

    def to_base_query(self) -> Select:
        """Return the base query as given, without joins or pagination."""
        return self._base_query

    def to_joined_query(self) -> Select:
        """
        Return the base query with every join collection applied.

        No limit or offset is applied since joins of many would make them
        count rows instead of root entities.
        """
        return self._to_joined_query(nested=False)

    def to_query(self) -> Select:
        """
        Return the statement ``execute`` runs.

        Example:
            >>> qs = query_set("users", select(users)).left_join_many(
            ...     "posts", select(posts), "users.id", "posts.user_id"
            ... ).limit(2)
            >>> print(qs.to_query())
            # SELECT users.*, posts.id AS "posts$$id", ...
            # FROM (SELECT ... LIMIT 2) AS users
            # LEFT OUTER JOIN (SELECT ...) AS posts ON users.id = posts.user_id
        """
        return self._to_query(nested=False)

    def to_count_query(self) -> Select:
        """Return a query counting root entities, ignoring limit and offset."""
        query = self._to_cardinality_one_parts().to_select()
        return query.with_only_columns(func.count().label("count"))

    def to_exists_query(self) -> Select:
        """Return a query checking whether any root entity matches."""
        query = self._to_cardinality_one_parts().to_select()
        return select(query.exists().label("exists"))

    def compile(self, dialect: Dialect | None = None) -> Any:
        """Compile ``to_query()``, optionally for a specific dialect."""
        return self.to_query().compile(dialect=dialect)


def _is_cardinality_one_collection(collection: JoinCollection) -> bool:
    return not collection.mode.is_many and collection.query_set._is_cardinality_one()
