from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Callable,
)

from sqlalchemy.sql import Select

from flash_hydrate.exceptions import InvalidCompositionError
from flash_hydrate.keys import DEFAULT_KEY_BY

from .construction import QuerySetConstruction
from .execution import MappedQuerySet
from .ordering import OrderTerm

if TYPE_CHECKING:
    from flash_hydrate.keys import KeyBy


class QuerySet(QuerySetConstruction):
    """
    Lazy, immutable composition of a root query and its related collections.

    A QuerySet wraps a SQLAlchemy ``Select`` aliased under a name, plus a
    tree of joined sub-query sets and attached collections. Each
    transformation returns a new QuerySet; nothing is sent to the database
    until an execution method is awaited. Rows come back flat and are
    hydrated into nested dictionaries, and ``limit``/``offset`` always count
    root entities, never joined rows.

    Execution happens only through terminal methods such as:
        - execute()
        - execute_take_first()
        - execute_take_first_or_throw()
        - execute_count()
        - execute_exists()
        - paginate()

    Notes:
        - QuerySets are safe to reuse and chain.
        - Methods never mutate the original instance.
        - ``map()`` returns a ``MappedQuerySet`` which no longer accepts
          joins, attaches or hydration configuration.

    Examples:
        >>> users_qs = (
        ...     query_set("users", select(users.c.id, users.c.username))
        ...     .left_join_one(
        ...         "profile",
        ...         lambda init: init(select(profiles)),
        ...         "profile.user_id",
        ...         "users.id",
        ...     )
        ...     .left_join_many("posts", select(posts), "users.id", "posts.user_id")
        ...     .limit(2)
        ... )
        >>> await users_qs.execute(db)
        [{'id': 1, 'username': 'alice', 'profile': {...}, 'posts': [...]}, ...]
    """


def query_set(
    alias: str,
    query: Select | Callable[[], Select],
    key_by: KeyBy = DEFAULT_KEY_BY,
) -> QuerySet:
    """
    Create a QuerySet from a base query aliased as ``alias``.

    Args:
        alias: Name the base query is selected as. Join conditions and
            ordering refer to it, e.g. ``"users.id"``.
        query: A ``Select``, or a callable returning one.
        key_by: Column(s) identifying a root entity.
    """
    if not isinstance(query, Select) and callable(query):
        query = query()
    if not isinstance(query, Select):
        msg = f"Query set '{alias}' needs a SELECT statement"
        raise InvalidCompositionError(msg)
    return QuerySet(alias, query, key_by)


select_as = query_set

__all__ = [
    "MappedQuerySet",
    "OrderTerm",
    "QuerySet",
    "query_set",
    "select_as",
]
