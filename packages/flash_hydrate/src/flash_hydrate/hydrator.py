"""
Hydration of flat, prefixed rows into nested dictionaries.

A hydrator mirrors the collection tree of a query set. Each node knows the
key of its entity, the fields to keep, transform or drop, computed extras,
nested child hydrators and attach fetch wiring. Hydrators are immutable:
every configuration call returns a new hydrator.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Hashable,
    Iterable,
    Mapping,
    Sequence,
    TypeAlias,
)

from sqlalchemy.sql import Select

from flash_hydrate.collections import CollectionMode
from flash_hydrate.config import hydrate_settings
from flash_hydrate.exceptions import (
    CardinalityViolationError,
    ExpectedOneItemError,
    InvalidCompositionError,
    KeyByMismatchError,
)
from flash_hydrate.keys import (
    DEFAULT_KEY_BY,
    KeyBy,
    get_key,
    group_by_key,
    normalize_key_by,
)
from flash_hydrate.prefixes import (
    apply_prefix,
    get_prefixed_value,
    local_columns,
    make_prefix,
    strip_prefix,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

FieldSpec: TypeAlias = bool | Callable[[Any], Any]
FetchFn: TypeAlias = Callable[[list[dict[str, Any]]], Any]
AttachedData: TypeAlias = dict[str, dict[Hashable, list[Any]]]


@dataclass(frozen=True)
class ChildCollection:
    """A nested hydrator reading columns under ``prefix``."""

    mode: CollectionMode
    prefix: str
    hydrator: HydratorBase


@dataclass(frozen=True)
class AttachedCollection:
    """An externally fetched collection matched to parents by key."""

    mode: CollectionMode
    fetch_fn: FetchFn
    match_child: KeyBy
    match_parent: KeyBy | None = None


@dataclass
class HydrationContext:
    """State shared by one ``hydrate`` call and nothing else."""

    db: AsyncSession | None = None
    auto_include: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def require_db(self) -> AsyncSession:
        if self.db is None:
            msg = "A fetch function returned a query, but no database session was given"
            raise InvalidCompositionError(msg)
        return self.db


def apply_collection_mode(
    outputs: Sequence[Any] | None, mode: CollectionMode, key: str
) -> Any:
    """
    Shape the children of one parent according to the collection mode.

    ``many`` always yields a list. ``one`` yields the child or ``None`` and
    ``one_or_throw`` raises ``ExpectedOneItemError`` when there is no child.
    Either single mode raises ``CardinalityViolationError`` on several
    children instead of picking one.
    """
    if mode is CollectionMode.MANY:
        return list(outputs) if outputs else []

    if not outputs:
        if mode is CollectionMode.ONE_OR_THROW:
            raise ExpectedOneItemError(key)
        return None

    if len(outputs) > 1:
        raise CardinalityViolationError(key, len(outputs))
    return outputs[0]


async def resolve_fetched(result: Any, context: HydrationContext) -> list[Any]:
    """
    Normalize what a fetch function returned into a list of rows.

    Query sets and selects run on the session of the current hydration.
    They are serialized on the context lock because one ``AsyncSession``
    cannot run statements concurrently.
    """
    from flash_hydrate.queryset import MappedQuerySet

    if inspect.isawaitable(result):
        result = await result

    if isinstance(result, MappedQuerySet):
        db = context.require_db()
        async with context.lock:
            return await result.execute(db)

    if isinstance(result, Select):
        db = context.require_db()
        async with context.lock:
            rows = await db.execute(result)
            return [dict(row) for row in rows.mappings()]

    if result is None:
        return []
    return list(result)


async def _run_fetch(
    collection: AttachedCollection,
    parents: list[dict[str, Any]],
    context: HydrationContext,
) -> list[Any]:
    return await resolve_fetched(collection.fetch_fn(parents), context)


class HydratorBase:
    """
    State and hydration algorithm shared by mapped and unmapped hydrators.
    """

    def __init__(
        self,
        key_by: KeyBy = DEFAULT_KEY_BY,
        *,
        fields: Mapping[str, FieldSpec] | None = None,
        extras: Mapping[str, Callable[[dict[str, Any]], Any]] | None = None,
        collections: Mapping[str, ChildCollection] | None = None,
        attached: Mapping[str, AttachedCollection] | None = None,
        transforms: Sequence[Callable[[Any], Any]] = (),
    ):
        self.key_by = normalize_key_by(key_by)
        self._fields: dict[str, FieldSpec] = dict(fields or {})
        self._extras: dict[str, Callable[[dict[str, Any]], Any]] = dict(extras or {})
        self._collections: dict[str, ChildCollection] = dict(collections or {})
        self._attached: dict[str, AttachedCollection] = dict(attached or {})
        self._transforms: tuple[Callable[[Any], Any], ...] = tuple(transforms)

    def _state(self) -> dict[str, Any]:
        return {
            "key_by": self.key_by,
            "fields": self._fields,
            "extras": self._extras,
            "collections": self._collections,
            "attached": self._attached,
            "transforms": self._transforms,
        }

    def _clone(self, **overrides: Any) -> Any:
        """Return a new hydrator of the same class with ``overrides`` applied."""
        state = self._state()
        state.update(overrides)
        return self.__class__(**state)

    @property
    def is_mapped(self) -> bool:
        return bool(self._transforms)

    def map(self, transform: Callable[[Any], Any]) -> MappedHydrator:
        """
        Transform each hydrated entity of this level.

        The transform runs after fields, extras and collections are in place
        and its return value replaces the entity. Mapping is terminal: the
        returned hydrator only supports ``map`` and ``hydrate``.
        """
        state = self._state()
        state["transforms"] = self._transforms + (transform,)
        return MappedHydrator(**state)

    async def hydrate(
        self,
        rows: Iterable[Mapping[str, Any]] | Mapping[str, Any],
        *,
        db: AsyncSession | None = None,
        auto_include: bool = False,
    ) -> Any:
        """
        Hydrate flat rows into nested entities.

        Attach fetch functions run first, each exactly once with the distinct
        parent rows of its level. Everything after that is synchronous.

        Args:
            rows: Flat rows, or a single row.
            db: Session used when a fetch function returns a query.
            auto_include: Include every column of each level, not only the
                configured fields.

        Returns:
            A list of entities, or one entity (or ``None``) for a single row.
        """
        single = isinstance(rows, Mapping)
        row_list = [rows] if single else list(rows)

        context = HydrationContext(db=db, auto_include=auto_include)
        attached = await self._fetch_attached(row_list, context)
        entities = self._hydrate_many("", row_list, attached, context)
        logger.debug("Hydrated %d rows into %d entities", len(row_list), len(entities))

        if single:
            return entities[0] if entities else None
        return entities

    async def _fetch_attached(
        self, rows: list[Mapping[str, Any]], context: HydrationContext
    ) -> AttachedData:
        jobs: list[tuple[str, AttachedCollection, list[dict[str, Any]]]] = []
        self._collect_fetches("", rows, jobs)
        if not jobs:
            return {}

        logger.debug("Fetching %d attached collections", len(jobs))
        if hydrate_settings.CONCURRENT_ATTACH_FETCH:
            try:
                # A failing fetch cancels and awaits its siblings
                async with asyncio.TaskGroup() as group:
                    tasks = [
                        group.create_task(_run_fetch(collection, parents, context))
                        for _, collection, parents in jobs
                    ]
            except ExceptionGroup as exc_group:
                raise exc_group.exceptions[0]
            results = [task.result() for task in tasks]
        else:
            results = [
                await _run_fetch(collection, parents, context)
                for _, collection, parents in jobs
            ]

        return {
            map_key: group_by_key("", outputs, collection.match_child)
            for (map_key, collection, _), outputs in zip(jobs, results)
        }

    def _collect_fetches(
        self,
        prefix: str,
        rows: list[Mapping[str, Any]],
        jobs: list[tuple[str, AttachedCollection, list[dict[str, Any]]]],
    ) -> None:
        if self._attached:
            groups = group_by_key(prefix, rows, self.key_by)
            parents = [strip_prefix(prefix, group[0]) for group in groups.values()]
            for key, collection in self._attached.items():
                jobs.append((apply_prefix(prefix, key), collection, parents))

        for child in self._collections.values():
            child.hydrator._collect_fetches(prefix + child.prefix, rows, jobs)

    def _hydrate_many(
        self,
        prefix: str,
        rows: list[Mapping[str, Any]],
        attached: AttachedData,
        context: HydrationContext,
    ) -> list[Any]:
        groups = group_by_key(prefix, rows, self.key_by)
        return [
            self._hydrate_one(prefix, group, attached, context)
            for group in groups.values()
        ]

    def _hydrate_one(
        self,
        prefix: str,
        group: list[Mapping[str, Any]],
        attached: AttachedData,
        context: HydrationContext,
    ) -> Any:
        # The first row is representative for the level's own columns
        row = group[0]
        entity: dict[str, Any] = {}

        if context.auto_include:
            for name in local_columns(prefix, row):
                entity[name] = get_prefixed_value(prefix, row, name)

        for name, spec in self._fields.items():
            if spec is False:
                entity.pop(name, None)
                continue
            value = get_prefixed_value(prefix, row, name)
            entity[name] = value if spec is True else spec(value)

        if self._extras:
            view = strip_prefix(prefix, row)
            for name, extra in self._extras.items():
                entity[name] = extra(view)

        for key, child in self._collections.items():
            outputs = child.hydrator._hydrate_many(
                prefix + child.prefix, group, attached, context
            )
            entity[key] = apply_collection_mode(outputs, child.mode, key)

        for key, collection in self._attached.items():
            parent_key = get_key(prefix, row, collection.match_parent or self.key_by)
            matches = attached.get(apply_prefix(prefix, key), {}).get(parent_key)
            entity[key] = apply_collection_mode(matches, collection.mode, key)

        result: Any = entity
        for transform in self._transforms:
            result = transform(result)
        return result


class MappedHydrator(HydratorBase):
    """A hydrator whose output shape is final. Only ``map`` remains."""


class Hydrator(HydratorBase):
    """
    Configurable hydrator.

    Example:
        >>> users = (
        ...     create_hydrator("id")
        ...     .fields(id=True, username=str.upper)
        ...     .extras(handle=lambda row: f"@{row['username']}")
        ...     .has_many("posts", lambda create: create().fields(id=True, title=True))
        ... )
        >>> await users.hydrate(rows)
    """

    def fields(self, **spec: FieldSpec) -> Hydrator:
        """
        Include fields as is (``True``), transform them (a callable) or drop
        them (``False``).
        """
        for name, value in spec.items():
            if not isinstance(value, bool) and not callable(value):
                msg = f"Field '{name}' must be a bool or a callable"
                raise InvalidCompositionError(msg)
        return self._clone(fields={**self._fields, **spec})

    def map_fields(self, **mappings: Callable[[Any], Any]) -> Hydrator:
        """Transform the value of existing fields."""
        for name, value in mappings.items():
            if not callable(value):
                msg = f"Field mapping '{name}' must be callable"
                raise InvalidCompositionError(msg)
        return self._clone(fields={**self._fields, **mappings})

    def omit(self, *keys: str) -> Hydrator:
        """Drop fields from the output, e.g. columns only selected for extras."""
        return self._clone(fields={**self._fields, **dict.fromkeys(keys, False)})

    def extras(self, **extras: Callable[[dict[str, Any]], Any]) -> Hydrator:
        """Add fields computed from the level's unprefixed row."""
        for name, value in extras.items():
            if not callable(value):
                msg = f"Extra '{name}' must be callable"
                raise InvalidCompositionError(msg)
        return self._clone(extras={**self._extras, **extras})

    def extend(self, other: HydratorBase) -> Hydrator:
        """
        Merge another hydrator's configuration into this one.

        Both must use the same ``key_by``; on conflicting names ``other`` wins.

        Raises:
            InvalidCompositionError: If ``other`` is mapped.
            KeyByMismatchError: If the keys differ.
        """
        if not isinstance(other, Hydrator):
            msg = "Cannot extend with a mapped hydrator"
            raise InvalidCompositionError(msg)
        if other.key_by != self.key_by:
            raise KeyByMismatchError(self.key_by, other.key_by)

        collections = {
            k: v for k, v in self._collections.items() if k not in other._attached
        }
        attached = {
            k: v for k, v in self._attached.items() if k not in other._collections
        }
        return self._clone(
            fields={**self._fields, **other._fields},
            extras={**self._extras, **other._extras},
            collections={**collections, **other._collections},
            attached={**attached, **other._attached},
        )

    def has(
        self,
        mode: CollectionMode | str,
        key: str,
        hydrator: HydratorBase | Callable[..., HydratorBase],
        prefix: str | None = None,
    ) -> Hydrator:
        """
        Register a nested collection read from columns under ``prefix``.

        Args:
            mode: ``"many"``, ``"one"`` or ``"one_or_throw"``.
            key: Output field name; replaces any collection of the same name.
            hydrator: Child hydrator, or a factory called with
                ``create_hydrator``.
            prefix: Column prefix, ``"<key>$$"`` by default.
        """
        if not isinstance(hydrator, HydratorBase):
            hydrator = hydrator(create_hydrator)
        child = ChildCollection(
            mode=CollectionMode(mode),
            prefix=prefix if prefix is not None else make_prefix("", key),
            hydrator=hydrator,
        )
        attached = {k: v for k, v in self._attached.items() if k != key}
        return self._clone(
            collections={**self._collections, key: child},
            attached=attached,
        )

    def has_many(self, key: str, hydrator: Any, prefix: str | None = None) -> Hydrator:
        return self.has(CollectionMode.MANY, key, hydrator, prefix)

    def has_one(self, key: str, hydrator: Any, prefix: str | None = None) -> Hydrator:
        return self.has(CollectionMode.ONE, key, hydrator, prefix)

    def has_one_or_throw(
        self, key: str, hydrator: Any, prefix: str | None = None
    ) -> Hydrator:
        return self.has(CollectionMode.ONE_OR_THROW, key, hydrator, prefix)

    def attach(
        self,
        mode: CollectionMode | str,
        key: str,
        fetch_fn: FetchFn,
        *,
        match_child: KeyBy,
        match_parent: KeyBy | None = None,
    ) -> Hydrator:
        """
        Register a collection loaded by ``fetch_fn``.

        ``fetch_fn`` receives every distinct parent row of this level once
        per hydration. Fetched rows are grouped by ``match_child`` and
        matched against the parent's ``match_parent`` (its key by default).
        """
        collection = AttachedCollection(
            mode=CollectionMode(mode),
            fetch_fn=fetch_fn,
            match_child=normalize_key_by(match_child),
            match_parent=(
                normalize_key_by(match_parent) if match_parent is not None else None
            ),
        )
        collections = {k: v for k, v in self._collections.items() if k != key}
        return self._clone(
            collections=collections,
            attached={**self._attached, key: collection},
        )

    def attach_many(self, key: str, fetch_fn: FetchFn, **keys: Any) -> Hydrator:
        return self.attach(CollectionMode.MANY, key, fetch_fn, **keys)

    def attach_one(self, key: str, fetch_fn: FetchFn, **keys: Any) -> Hydrator:
        return self.attach(CollectionMode.ONE, key, fetch_fn, **keys)

    def attach_one_or_throw(
        self, key: str, fetch_fn: FetchFn, **keys: Any
    ) -> Hydrator:
        return self.attach(CollectionMode.ONE_OR_THROW, key, fetch_fn, **keys)


def create_hydrator(key_by: KeyBy = DEFAULT_KEY_BY) -> Hydrator:
    """Create an empty hydrator keyed by ``key_by``."""
    return Hydrator(key_by)


async def hydrate_data(
    rows: Iterable[Mapping[str, Any]] | Mapping[str, Any],
    hydrator: HydratorBase | Callable[..., HydratorBase],
    *,
    db: AsyncSession | None = None,
) -> Any:
    """
    Hydrate ``rows`` with ``hydrator``, or with the hydrator a factory builds.

    Example:
        >>> await hydrate_data(rows, lambda create: create().fields(id=True))
    """
    if not isinstance(hydrator, HydratorBase):
        hydrator = hydrator(create_hydrator)
    return await hydrator.hydrate(rows, db=db)
