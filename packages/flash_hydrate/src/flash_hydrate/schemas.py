"""
Pydantic schemas for paginated query set results.
"""

from typing import Annotated, Generic, List, Literal, Self, Tuple, TypeAlias, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from flash_hydrate.config import hydrate_settings

SortDirection: TypeAlias = Literal["asc", "desc"]
OrderingInstruction: TypeAlias = Tuple[str, SortDirection]

T = TypeVar("T")


class PaginationParams(BaseModel):
    """
    Pagination and ordering parameters for ``QuerySet.paginate``.

    Examples
    --------
    Page-based offset calculation::

        >>> params = PaginationParams(page=3, limit=10)
        >>> params.get_offset()
        20

    Multi-field ordering parsing, including collection columns::

        >>> params = PaginationParams(ordering="-users.username,id")
        >>> params.get_ordering()
        [('users.username', 'desc'), ('id', 'asc')]
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )
    limit: Annotated[
        int,
        Field(
            default_factory=lambda: hydrate_settings.DEFAULT_PAGE_SIZE,
            description="Root entities per page",
        ),
    ]

    page: Annotated[
        int | None, Field(default=None, description="1-indexed page number")
    ]

    offset: Annotated[int, Field(default=0, description="Raw skip count")]

    ordering: Annotated[
        str | None, Field(default=None, description="Format: 'field1,-alias.field2'")
    ]

    @model_validator(mode="after")
    def _clamp_to_page_sizes(self) -> Self:
        """Keep ``limit`` within ``1..MAX_PAGE_SIZE`` so it is a valid ``QuerySet.limit``."""
        self.limit = min(max(self.limit, 1), hydrate_settings.MAX_PAGE_SIZE)
        self.offset = max(self.offset, 0)
        return self

    def get_offset(self) -> int:
        """Number of root entities to skip; a positive ``page`` wins over ``offset``."""
        if self.page and self.page > 0:
            return (self.page - 1) * self.limit
        return self.offset

    def get_ordering(self) -> List[OrderingInstruction]:
        """
        Split ``ordering`` into the terms accepted by ``QuerySet.order_by``.

        >>> PaginationParams(ordering="-profile.bio, id").get_ordering()
        [('profile.bio', 'desc'), ('id', 'asc')]
        """
        terms = (part.strip() for part in (self.ordering or "").split(","))
        return [
            (term.removeprefix("-"), "desc" if term.startswith("-") else "asc")
            for term in terms
            if term.removeprefix("-")
        ]


class PaginatedResponse(BaseModel, Generic[T]):
    """
    One page of hydrated root entities.

    ``total`` counts root entities matching the query regardless of
    ``limit``/``offset``, so it is never inflated by joined child rows.

    Example:
        >>> page = PaginatedResponse[dict](
        ...     items=[{"id": 1, "username": "alice"}], total=10, limit=1
        ... )
        >>> page.has_next
        True
    """

    model_config = ConfigDict(from_attributes=True)

    items: list[T] = Field(..., description="Hydrated entities in the current page")
    total: int = Field(..., description="Total number of root entities")
    limit: int = Field(default=50, description="Maximum entities per page")
    offset: int = Field(default=0, description="Number of entities skipped")

    @property
    def has_next(self) -> bool:
        return self.offset + len(self.items) < self.total
