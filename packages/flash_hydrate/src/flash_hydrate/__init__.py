from .collections import AttachCollection, CollectionMode, JoinCollection, JoinMethod
from .config import HydrateSettings, hydrate_settings
from .exceptions import (
    CardinalityViolationError,
    CollectionNotFoundError,
    ExpectedOneItemError,
    FlashHydrateError,
    InvalidCompositionError,
    KeyByMismatchError,
    NoResultError,
    NotFoundError,
    UnresolvedReferenceError,
)
from .hydrator import Hydrator, MappedHydrator, create_hydrator, hydrate_data
from .queryset import MappedQuerySet, QuerySet, query_set, select_as
from .schemas import PaginatedResponse, PaginationParams
from .scope import JoinScope

__all__ = [
    "AttachCollection",
    "CardinalityViolationError",
    "CollectionMode",
    "CollectionNotFoundError",
    "ExpectedOneItemError",
    "FlashHydrateError",
    "HydrateSettings",
    "Hydrator",
    "InvalidCompositionError",
    "JoinCollection",
    "JoinMethod",
    "JoinScope",
    "KeyByMismatchError",
    "MappedHydrator",
    "MappedQuerySet",
    "NoResultError",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "QuerySet",
    "UnresolvedReferenceError",
    "create_hydrator",
    "hydrate_data",
    "hydrate_settings",
    "query_set",
    "select_as",
]
