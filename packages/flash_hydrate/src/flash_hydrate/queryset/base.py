from __future__ import annotations

from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Mapping,
    Sequence,
    Type,
    TypeVar,
)

from flash_hydrate.hydrator import Hydrator
from flash_hydrate.keys import DEFAULT_KEY_BY, normalize_key_by

if TYPE_CHECKING:
    from sqlalchemy.sql import Select

    from flash_hydrate.collections import Collection
    from flash_hydrate.hydrator import HydratorBase
    from flash_hydrate.keys import KeyBy

    from .ordering import OrderTerm

Q = TypeVar("Q", bound="QuerySetBase")


class QuerySetBase:
    """
    Fundamental state and identity for a QuerySet.

    This base class holds everything shared across the QuerySet layers: the
    base alias and query, the entity key, the ordered map of registered
    collections, pagination, ordering and the hydrator built alongside.
    Instances are never mutated after construction.
    """

    def __init__(
        self,
        base_alias: str,
        base_query: Select,
        key_by: KeyBy = DEFAULT_KEY_BY,
        *,
        collections: Mapping[str, Collection] | None = None,
        hydrator: HydratorBase | None = None,
        limit: int | None = None,
        offset: int | None = None,
        ordering: Sequence[OrderTerm] = (),
    ):
        self.base_alias: str = base_alias
        self.key_by = normalize_key_by(key_by)
        self._base_query: Select = base_query
        self._collections: dict[str, Collection] = dict(collections or {})
        self._hydrator: HydratorBase = (
            hydrator if hydrator is not None else Hydrator(self.key_by)
        )
        self._limit = limit
        self._offset = offset
        self._ordering: tuple[OrderTerm, ...] = tuple(ordering)

    def _state(self) -> dict[str, Any]:
        return {
            "base_alias": self.base_alias,
            "base_query": self._base_query,
            "key_by": self.key_by,
            "collections": self._collections,
            "hydrator": self._hydrator,
            "limit": self._limit,
            "offset": self._offset,
            "ordering": self._ordering,
        }

    def _clone(self, **overrides: Any) -> Any:
        """
        Return a new instance of the current class with ``overrides`` applied.

        Using self.__class__ ensures that the top-most class in the
        inheritance chain is instantiated, preserving all capabilities
        (construction, execution, etc.) in the resulting object.
        """
        return self._clone_as(self.__class__, **overrides)

    def _clone_as(self, cls: Type[Q], **overrides: Any) -> Q:
        state = self._state()
        state.update(overrides)
        return cls(**state)

    @property
    def collections(self) -> Mapping[str, Collection]:
        """Registered collections, in join replay order."""
        return MappingProxyType(self._collections)

    @property
    def hydrator(self) -> HydratorBase:
        return self._hydrator

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.base_alias!r} "
            f"collections={list(self._collections)}>"
        )
