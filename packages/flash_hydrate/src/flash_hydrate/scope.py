from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

from flash_hydrate.exceptions import UnresolvedReferenceError
from flash_hydrate.prefixes import apply_prefix

if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement, FromClause


class ScopedColumns:
    """Attribute and item access to the columns of one alias in a ``JoinScope``."""

    def __init__(self, scope: JoinScope, alias: str):
        self._scope = scope
        self._alias = alias

    def __getattr__(self, name: str) -> ColumnElement[Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._scope.column(self._alias, name)

    def __getitem__(self, name: str) -> ColumnElement[Any]:
        return self._scope.column(self._alias, name)


class JoinScope:
    """
    Resolves ``alias.column`` references against the FROM sources in play.

    Each alias maps to a FROM clause and the prefix its columns carry in that
    clause. A cardinality-one collection folded into a paginated base lives
    in the base's FROM clause under ``<key>$$``, so ``profile.id`` still
    resolves after the base query has been wrapped.

    Example:
        >>> def on(scope):
        ...     return scope["users"].id == scope.ref("posts.user_id")
    """

    def __init__(
        self,
        default_alias: str,
        sources: Mapping[str, tuple[FromClause, str]] | None = None,
    ):
        self.default_alias = default_alias
        self._sources: dict[str, tuple[FromClause, str]] = dict(sources or {})

    def with_source(
        self, alias: str, from_clause: FromClause, prefix: str = ""
    ) -> JoinScope:
        """Return a new scope that also resolves ``alias``."""
        sources = dict(self._sources)
        sources[alias] = (from_clause, prefix)
        return JoinScope(self.default_alias, sources)

    def __contains__(self, alias: object) -> bool:
        return alias in self._sources

    def __getitem__(self, alias: str) -> ScopedColumns:
        if alias not in self._sources:
            raise UnresolvedReferenceError(alias, "unknown alias")
        return ScopedColumns(self, alias)

    def column(self, alias: str, name: str) -> ColumnElement[Any]:
        reference = f"{alias}.{name}"
        source = self._sources.get(alias)
        if source is None:
            raise UnresolvedReferenceError(reference, "unknown alias")

        from_clause, prefix = source
        try:
            return from_clause.c[apply_prefix(prefix, name)]
        except KeyError:
            raise UnresolvedReferenceError(reference, "unknown column") from None

    def ref(self, reference: str) -> ColumnElement[Any]:
        """
        Resolve ``"alias.column"``, or a bare ``"column"`` of the default alias.
        """
        alias, dot, name = reference.partition(".")
        if not dot:
            return self.column(self.default_alias, alias)
        return self.column(alias, name)

    def eq(self, left: str, right: str) -> ColumnElement[bool]:
        return self.ref(left) == self.ref(right)
