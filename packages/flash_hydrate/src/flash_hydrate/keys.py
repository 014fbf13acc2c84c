from typing import Any, Hashable, Iterable, Sequence, TypeAlias, TypeVar

from flash_hydrate.prefixes import get_prefixed_value

KeyBy: TypeAlias = str | Sequence[str]

R = TypeVar("R")

DEFAULT_KEY_BY = "id"


def normalize_key_by(key_by: KeyBy) -> str | tuple[str, ...]:
    """
    Return ``key_by`` as a column name or a tuple of column names.

    A one-element sequence collapses to its single name.
    """
    if isinstance(key_by, str):
        return key_by
    names = tuple(key_by)
    if not names:
        msg = "key_by must name at least one column"
        raise ValueError(msg)
    if len(names) == 1:
        return names[0]
    return names


def is_key_nil(key: Any) -> bool:
    """A nil key means the row carries no entity at that level."""
    return key is None


def get_key(prefix: str, row: Any, key_by: KeyBy) -> Hashable | None:
    """
    Extract the entity key of ``row`` at the level identified by ``prefix``.

    Composite keys come back as tuples. Any null component nullifies the
    whole key.

    Example:
        >>> get_key("", {"id": 1}, "id")
        1
        >>> get_key("posts$$", {"posts$$a": 1, "posts$$b": 2}, ("a", "b"))
        (1, 2)
        >>> get_key("", {"a": 1, "b": None}, ("a", "b")) is None
        True
    """
    if isinstance(key_by, str):
        return get_prefixed_value(prefix, row, key_by)

    values = []
    for name in key_by:
        value = get_prefixed_value(prefix, row, name)
        if is_key_nil(value):
            return None
        values.append(value)
    return tuple(values)


def group_by_key(
    prefix: str,
    rows: Iterable[R],
    key_by: KeyBy,
) -> dict[Hashable, list[R]]:
    """
    Partition rows into buckets of equal key.

    Buckets keep first-seen order, as do the rows inside each bucket. Rows
    with a nil key are skipped.
    """
    groups: dict[Hashable, list[R]] = {}
    for row in rows:
        key = get_key(prefix, row, key_by)
        if is_key_nil(key):
            continue
        groups.setdefault(key, []).append(row)
    return groups
