from __future__ import annotations

import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
)

from flash_hydrate.config import hydrate_settings
from flash_hydrate.exceptions import InvalidCompositionError, NoResultError
from flash_hydrate.schemas import PaginatedResponse

from .compiler import QuerySetCompiler
from .ordering import OrderTerm

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql import ColumnElement, Select

    from flash_hydrate.schemas import PaginationParams

logger = logging.getLogger(__name__)


class MappedQuerySet(QuerySetCompiler):
    """
    Query set whose output shape is final.

    This is what ``QuerySet.map`` returns. Joins, attaches and hydration
    configuration are not available any more; the base query can still be
    modified, pagination and ordering changed, and the query executed.
    """

    # --- Base query and pagination ---

    def modify(self, fn: Callable[[Select], Select]) -> Any:
        """
        Rewrite the base query, e.g. to add filters or extra columns.

        Example:
            >>> qs.modify(lambda q: q.where(users.c.id > 5))
        """
        if not callable(fn):
            msg = "modify() requires a callable receiving the base query"
            raise InvalidCompositionError(msg)
        return self._clone(base_query=fn(self._base_query))

    def where(self, *criteria: ColumnElement[bool]) -> Any:
        """
        Add WHERE criteria to the base query.

        Example:
            >>> qs.where(users.c.username.like("a%"))
        """
        return self._clone(base_query=self._base_query.where(*criteria))

    def limit(self, count: int | None) -> Any:
        """
        Limit the number of root entities returned.

        Joined child rows never count towards the limit.

        Example:
            >>> users = await qs.limit(10).execute(db)
        """
        _validate_bound("limit", count)
        return self._clone(limit=count)

    def offset(self, count: int | None) -> Any:
        """Skip ``count`` root entities."""
        _validate_bound("offset", count)
        return self._clone(offset=count)

    def clear_limit(self) -> Any:
        return self._clone(limit=None)

    def clear_offset(self) -> Any:
        return self._clone(offset=None)

    def order_by(self, *terms: str | tuple[str, str]) -> Any:
        """
        Add ORDER BY terms for the root entities.

        Terms are ``"col"``, ``"-col"``, ``"alias.col"`` where alias is the
        base alias or a cardinality-one collection, or ``(field, direction)``
        pairs as produced by ``PaginationParams.get_ordering()``.

        Example:
            >>> qs.order_by("-id", "profile.bio")
        """
        parsed = tuple(OrderTerm.parse(term) for term in terms)
        return self._clone(ordering=self._ordering + parsed)

    def clear_order_by(self) -> Any:
        return self._clone(ordering=())

    # --- Hydration ---

    def map(self, transform: Callable[[Any], Any]) -> MappedQuerySet:
        """
        Transform every hydrated root entity.

        This is terminal: the result only supports ``map``, base query
        changes, pagination and execution.

        Example:
            >>> names = await qs.map(lambda user: user["username"]).execute(db)
        """
        return self._clone_as(MappedQuerySet, hydrator=self._hydrator.map(transform))

    # --- Execution ---

    def _log_statement(self, statement: Select) -> None:
        if hydrate_settings.LOG_COMPILED_SQL:
            logger.debug("Query set '%s' SQL:\n%s", self.base_alias, statement)

    async def execute(self, db: AsyncSession) -> list[Any]:
        """
        Execute the query and hydrate the rows into nested entities.

        Example:
            >>> users = await qs.execute(db)
            >>> users[0]["posts"][0]["title"]
            'Post 1'
        """
        statement = self.to_query()
        self._log_statement(statement)

        result = await db.execute(statement)
        rows = [dict(row) for row in result.mappings()]
        logger.debug("Query set '%s' fetched %d rows", self.base_alias, len(rows))

        return await self._hydrator.hydrate(rows, db=db, auto_include=True)

    async def execute_take_first(self, db: AsyncSession) -> Any | None:
        """
        Return the first hydrated entity, or ``None``.

        The whole query runs through ``execute`` so nested collections of
        the first entity are complete.
        """
        results = await self.execute(db)
        return results[0] if results else None

    async def execute_take_first_or_throw(
        self,
        db: AsyncSession,
        error: Callable[[Select], BaseException] | None = None,
    ) -> Any:
        """
        Return the first hydrated entity or raise.

        Args:
            db: The session to run the query on.
            error: Exception class or factory called with the compiled
                statement. Defaults to ``NoResultError``.

        Raises:
            NoResultError: If nothing matched and no ``error`` was given.
        """
        results = await self.execute(db)
        if not results:
            factory = error or NoResultError
            raise factory(self.to_query())
        return results[0]

    async def execute_count(
        self, db: AsyncSession, cast: Callable[[Any], Any] | None = None
    ) -> Any:
        """
        Count root entities matching the query.

        Limit and offset are ignored, and joins of many never inflate the
        count.
        """
        statement = self.to_count_query()
        self._log_statement(statement)
        count = (await db.execute(statement)).scalar_one()
        return cast(count) if cast else count

    async def execute_exists(self, db: AsyncSession) -> bool:
        """Whether any root entity matches, ignoring limit and offset."""
        statement = self.to_exists_query()
        self._log_statement(statement)
        return bool((await db.execute(statement)).scalar_one())

    async def paginate(
        self, db: AsyncSession, params: PaginationParams
    ) -> PaginatedResponse[Any]:
        """
        Execute one page described by ``params`` along with the total count.

        Example:
            >>> page = await qs.paginate(db, PaginationParams(page=2, limit=20))
            >>> page.total, len(page.items)
            (45, 20)
        """
        offset = params.get_offset()
        qs = self.order_by(*params.get_ordering()).limit(params.limit).offset(offset)

        total = await qs.execute_count(db)
        items = await qs.execute(db)
        return PaginatedResponse[Any](
            items=items, total=total, limit=params.limit, offset=offset
        )


def _validate_bound(name: str, count: int | None) -> None:
    if count is None:
        return
    if isinstance(count, bool) or not isinstance(count, int):
        msg = f"{name} must be an integer or None"
        raise TypeError(msg)
    if count < 0:
        msg = f"{name} cannot be negative"
        raise ValueError(msg)
