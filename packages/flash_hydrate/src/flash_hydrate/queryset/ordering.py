from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from flash_hydrate.exceptions import InvalidCompositionError


@dataclass(frozen=True)
class OrderTerm:
    """
    One ORDER BY term of a query set.

    ``alias`` is ``None`` for a column of the base query, otherwise the base
    alias or the key of a cardinality-one join collection.
    """

    alias: str | None
    column: str
    descending: bool = False

    @classmethod
    def parse(cls, term: Any) -> OrderTerm:
        """
        Parse ``"col"``, ``"-col"``, ``"alias.col"`` or ``(field, direction)``.

        >>> OrderTerm.parse("-profile.bio")
        OrderTerm(alias='profile', column='bio', descending=True)
        >>> OrderTerm.parse(("username", "asc"))
        OrderTerm(alias=None, column='username', descending=False)
        """
        if isinstance(term, OrderTerm):
            return term

        if isinstance(term, str):
            descending = term.startswith("-")
            name = term[1:] if descending else term
        elif isinstance(term, tuple) and len(term) == 2:
            name, direction = term
            if direction not in ("asc", "desc"):
                msg = f"Unsupported sort direction {direction!r}"
                raise InvalidCompositionError(msg)
            descending = direction == "desc"
        else:
            msg = f"Unsupported ordering term {term!r}"
            raise InvalidCompositionError(msg)

        alias, dot, column = name.partition(".")
        if not dot:
            alias, column = "", alias
        if not column:
            msg = f"Ordering term {term!r} names no column"
            raise InvalidCompositionError(msg)
        return cls(alias or None, column, descending)

    @property
    def reference(self) -> str:
        return f"{self.alias}.{self.column}" if self.alias else self.column
