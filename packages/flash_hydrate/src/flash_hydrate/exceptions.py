from typing import Any


class FlashHydrateError(Exception):
    """Base class for all Flash Hydrate exceptions."""


class NotFoundError(FlashHydrateError, ValueError):
    """Raised when a result was required but none was found."""


class NoResultError(NotFoundError):
    """
    Raised by ``execute_take_first_or_throw`` when the query returned no rows.

    The compiled statement is kept on the instance for inspection.
    """

    def __init__(self, statement: Any = None):
        self.statement = statement
        super().__init__("Query returned no result")


class ExpectedOneItemError(NotFoundError):
    """Raised when a ``one_or_throw`` collection has no matching child."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Expected one item in collection '{key}', but found none")


class CardinalityViolationError(FlashHydrateError, ValueError):
    """Raised when a ``one`` or ``one_or_throw`` collection matches several children."""

    def __init__(self, key: str, count: int):
        self.key = key
        self.count = count
        super().__init__(
            f"Expected at most one item in collection '{key}', but found {count}"
        )


class InvalidCompositionError(FlashHydrateError, TypeError):
    """Raised when a query set or hydrator is configured incorrectly."""


class CollectionNotFoundError(InvalidCompositionError):
    """Raised when a collection name is not registered on a query set."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Collection '{key}' is not registered")


class KeyByMismatchError(InvalidCompositionError):
    """Raised when extending a hydrator with one keyed by different columns."""

    def __init__(self, expected: Any, actual: Any):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Cannot extend hydrator keyed by {expected!r} with {actual!r}")


class UnresolvedReferenceError(InvalidCompositionError):
    """Raised when an ``alias.column`` reference cannot be found in scope."""

    def __init__(self, reference: str, reason: str = "not found in scope"):
        self.reference = reference
        super().__init__(f"Cannot resolve '{reference}': {reason}")
