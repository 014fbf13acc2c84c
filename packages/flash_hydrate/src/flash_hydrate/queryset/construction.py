from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    TypeAlias,
)

from sqlalchemy.sql import Select

from flash_hydrate.collections import (
    AttachCollection,
    CollectionMode,
    JoinCollection,
    JoinMethod,
)
from flash_hydrate.exceptions import CollectionNotFoundError, InvalidCompositionError
from flash_hydrate.hydrator import Hydrator
from flash_hydrate.keys import DEFAULT_KEY_BY, normalize_key_by

from .execution import MappedQuerySet

if TYPE_CHECKING:
    from flash_hydrate.collections import Collection, JoinCondition
    from flash_hydrate.hydrator import FetchFn, HydratorBase
    from flash_hydrate.keys import KeyBy

logger = logging.getLogger(__name__)

NestedArg: TypeAlias = MappedQuerySet | Select | Callable[..., MappedQuerySet | Select]
"""A query set, a ``Select`` or a factory ``fn(init)`` returning either."""


class QuerySetConstruction(MappedQuerySet):
    """
    Registration of join and attach collections and hydration configuration.

    Every method returns a new query set; registering a collection under an
    existing name replaces it, whatever its kind, and keeps its position.
    """

    def _add_collection(self, key: str, collection: Collection) -> Any:
        hydrator = self._require_hydrator()
        if isinstance(collection, JoinCollection):
            hydrator = hydrator.has(
                collection.mode, key, collection.query_set.hydrator
            )
        else:
            hydrator = hydrator.attach(
                collection.mode,
                key,
                collection.fetch_fn,
                match_child=collection.match_child,
                match_parent=collection.match_parent,
            )

        collections = dict(self._collections)
        collections[key] = collection
        logger.debug(
            "Query set '%s': registered %s collection '%s'",
            self.base_alias,
            collection.mode.value,
            key,
        )
        return self._clone(collections=collections, hydrator=hydrator)

    def _require_hydrator(self) -> Hydrator:
        if not isinstance(self._hydrator, Hydrator):
            msg = f"Query set '{self.base_alias}' is mapped and cannot be configured"
            raise InvalidCompositionError(msg)
        return self._hydrator

    def _resolve_nested(self, key: str, nested: NestedArg) -> MappedQuerySet:
        """
        Turn a query set, ``Select`` or factory into a query set aliased as
        ``key``.
        """
        if isinstance(nested, MappedQuerySet):
            return nested
        if isinstance(nested, Select):
            return self.__class__(key, nested)
        if callable(nested):

            def init(query: Select, key_by: KeyBy = DEFAULT_KEY_BY) -> Any:
                return self.__class__(key, query, key_by)

            resolved = nested(init)
            if isinstance(resolved, (MappedQuerySet, Select)):
                return self._resolve_nested(key, resolved)

        msg = f"Collection '{key}' needs a query set, a select or a factory"
        raise InvalidCompositionError(msg)

    # --- Joins ---

    def _add_join(
        self,
        method: JoinMethod,
        mode: CollectionMode,
        key: str,
        nested: NestedArg,
        on_a: str | Callable[..., Any] | None = None,
        on_b: str | None = None,
    ) -> Any:
        condition: JoinCondition | None
        if method.is_cross:
            condition = None
        elif callable(on_a) and on_b is None:
            condition = on_a
        elif isinstance(on_a, str) and isinstance(on_b, str):
            condition = (on_a, on_b)
        else:
            msg = (
                f"Join '{key}' needs two column references or a callable "
                "building the join condition"
            )
            raise InvalidCompositionError(msg)

        collection = JoinCollection(
            method=method,
            mode=mode,
            query_set=self._resolve_nested(key, nested),
            condition=condition,
        )
        return self._add_collection(key, collection)

    def inner_join_one(self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None):
        """
        Inner join a single child per parent. Parents without one are dropped.

        Example:
            >>> qs.inner_join_one(
            ...     "profile",
            ...     lambda init: init(select(profiles)),
            ...     "profile.user_id",
            ...     "users.id",
            ... )
        """
        return self._add_join(
            JoinMethod.INNER_JOIN, CollectionMode.ONE, key, nested, on_a, on_b
        )

    def inner_join_many(self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None):
        """Inner join many children. Parents without children are dropped."""
        return self._add_join(
            JoinMethod.INNER_JOIN, CollectionMode.MANY, key, nested, on_a, on_b
        )

    def left_join_one(self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None):
        """Left join a single child per parent, ``None`` when missing."""
        return self._add_join(
            JoinMethod.LEFT_JOIN, CollectionMode.ONE, key, nested, on_a, on_b
        )

    def left_join_one_or_throw(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        """
        Left join a single child per parent.

        A missing child raises ``ExpectedOneItemError`` during hydration
        instead of dropping the parent.
        """
        return self._add_join(
            JoinMethod.LEFT_JOIN, CollectionMode.ONE_OR_THROW, key, nested, on_a, on_b
        )

    def left_join_many(self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None):
        """
        Left join many children, ``[]`` when there are none.

        Example:
            >>> qs.left_join_many(
            ...     "posts", select(posts), "users.id", "posts.user_id"
            ... )
        """
        return self._add_join(
            JoinMethod.LEFT_JOIN, CollectionMode.MANY, key, nested, on_a, on_b
        )

    def cross_join_many(self, key: str, nested: NestedArg):
        """Pair every parent with every row of ``nested``."""
        return self._add_join(JoinMethod.CROSS_JOIN, CollectionMode.MANY, key, nested)

    def inner_join_lateral_one(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        """
        Lateral variant of ``inner_join_one``.

        The nested query may reference the parent by its alias, e.g. with
        ``literal_column("users.id")``.
        """
        return self._add_join(
            JoinMethod.INNER_JOIN_LATERAL, CollectionMode.ONE, key, nested, on_a, on_b
        )

    def inner_join_lateral_many(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        return self._add_join(
            JoinMethod.INNER_JOIN_LATERAL, CollectionMode.MANY, key, nested, on_a, on_b
        )

    def left_join_lateral_one(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        return self._add_join(
            JoinMethod.LEFT_JOIN_LATERAL, CollectionMode.ONE, key, nested, on_a, on_b
        )

    def left_join_lateral_one_or_throw(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        return self._add_join(
            JoinMethod.LEFT_JOIN_LATERAL,
            CollectionMode.ONE_OR_THROW,
            key,
            nested,
            on_a,
            on_b,
        )

    def left_join_lateral_many(
        self, key: str, nested: NestedArg, on_a: Any, on_b: Any = None
    ):
        """
        Lateral variant of ``left_join_many``, typically used for a limited
        number of children per parent.

        Example:
            >>> latest = (
            ...     select(posts)
            ...     .where(posts.c.user_id == literal_column("users.id"))
            ...     .order_by(posts.c.id.desc())
            ...     .limit(2)
            ... )
            >>> qs.left_join_lateral_many("posts", latest, lambda scope: true())
        """
        return self._add_join(
            JoinMethod.LEFT_JOIN_LATERAL, CollectionMode.MANY, key, nested, on_a, on_b
        )

    def cross_join_lateral_many(self, key: str, nested: NestedArg):
        return self._add_join(
            JoinMethod.CROSS_JOIN_LATERAL, CollectionMode.MANY, key, nested
        )

    # --- Attaches ---

    def _add_attach(
        self,
        mode: CollectionMode,
        key: str,
        fetch_fn: FetchFn,
        match_child: KeyBy,
        match_parent: KeyBy | None,
        to_parent: KeyBy | None,
    ) -> Any:
        if not callable(fetch_fn):
            msg = f"Attach '{key}' needs a callable fetch function"
            raise InvalidCompositionError(msg)
        if match_parent is not None and to_parent is not None:
            msg = f"Attach '{key}' got both match_parent and to_parent"
            raise InvalidCompositionError(msg)

        parent = match_parent if match_parent is not None else to_parent
        collection = AttachCollection(
            mode=mode,
            fetch_fn=fetch_fn,
            match_child=normalize_key_by(match_child),
            match_parent=normalize_key_by(parent) if parent is not None else None,
        )
        return self._add_collection(key, collection)

    def attach_many(
        self,
        key: str,
        fetch_fn: FetchFn,
        *,
        match_child: KeyBy,
        match_parent: KeyBy | None = None,
        to_parent: KeyBy | None = None,
    ):
        """
        Attach children loaded by ``fetch_fn`` after the main query.

        ``fetch_fn`` is called once with every distinct parent row and may
        return rows, an awaitable of rows, a query set or a ``Select``; the
        last two run on the same session.

        Example:
            >>> async def fetch_posts(users_rows):
            ...     ids = [u["id"] for u in users_rows]
            ...     return query_set("posts", select(posts)).where(
            ...         posts.c.user_id.in_(ids)
            ...     )
            >>> qs.attach_many("posts", fetch_posts, match_child="user_id")
        """
        return self._add_attach(
            CollectionMode.MANY, key, fetch_fn, match_child, match_parent, to_parent
        )

    def attach_one(
        self,
        key: str,
        fetch_fn: FetchFn,
        *,
        match_child: KeyBy,
        match_parent: KeyBy | None = None,
        to_parent: KeyBy | None = None,
    ):
        return self._add_attach(
            CollectionMode.ONE, key, fetch_fn, match_child, match_parent, to_parent
        )

    def attach_one_or_throw(
        self,
        key: str,
        fetch_fn: FetchFn,
        *,
        match_child: KeyBy,
        match_parent: KeyBy | None = None,
        to_parent: KeyBy | None = None,
    ):
        return self._add_attach(
            CollectionMode.ONE_OR_THROW,
            key,
            fetch_fn,
            match_child,
            match_parent,
            to_parent,
        )

    # --- Modification ---

    def modify(self, key_or_fn: Any, fn: Callable[[Any], Any] | None = None) -> Any:
        """
        Rewrite the base query, or one registered collection.

        ``modify(fn)`` passes the base query to ``fn``. ``modify(key, fn)``
        replaces a join's nested query set with ``fn(nested)``, or composes
        ``fn`` after an attach's fetch function.

        Example:
            >>> qs.modify("posts", lambda posts_qs: posts_qs.where(posts.c.id > 3))

        Raises:
            CollectionNotFoundError: If ``key`` is not registered.
            InvalidCompositionError: If ``fn`` is missing.
        """
        if fn is None and callable(key_or_fn):
            return super().modify(key_or_fn)

        key = key_or_fn
        collection = self._collections.get(key)
        if collection is None:
            raise CollectionNotFoundError(key)
        if not callable(fn):
            msg = f"modify('{key}') requires a modifier function"
            raise InvalidCompositionError(msg)

        if isinstance(collection, JoinCollection):
            nested = self._resolve_nested(key, fn(collection.query_set))
            return self._add_collection(key, replace(collection, query_set=nested))

        original = collection.fetch_fn

        async def fetch(parents: list[dict[str, Any]]) -> Any:
            result = original(parents)
            if inspect.isawaitable(result):
                result = await result
            modified = fn(result)
            if inspect.isawaitable(modified):
                modified = await modified
            return modified

        return self._add_collection(key, replace(collection, fetch_fn=fetch))

    # --- Hydration configuration ---

    def extras(self, **extras: Callable[[dict[str, Any]], Any]) -> Any:
        """
        Add computed fields to each root entity.

        Example:
            >>> qs.extras(handle=lambda row: f"@{row['username']}")
        """
        return self._clone(hydrator=self._require_hydrator().extras(**extras))

    def map_fields(self, **mappings: Callable[[Any], Any]) -> Any:
        """Transform the value of selected columns."""
        return self._clone(hydrator=self._require_hydrator().map_fields(**mappings))

    def omit(self, *keys: str) -> Any:
        """Drop selected columns from the output, e.g. after using them in extras."""
        return self._clone(hydrator=self._require_hydrator().omit(*keys))

    def with_(self, hydrator: HydratorBase) -> Any:
        """Merge the configuration of a standalone hydrator."""
        return self._clone(hydrator=self._require_hydrator().extend(hydrator))
