"""
Column prefix convention for flattened rows.

Columns belonging to a joined collection are selected as ``<key>$$<column>``,
recursively, so ``posts$$comments$$id`` is the ``id`` of a comment nested
under a post. A prefix always carries its trailing separator (``posts$$``)
and the root level uses the empty prefix.
"""

from typing import Any, Iterator, Mapping

SEP = "$$"


def make_prefix(prefix: str, key: str) -> str:
    """
    Build the prefix of a child collection.

    >>> make_prefix("", "posts")
    'posts$$'
    >>> make_prefix("posts$$", "comments")
    'posts$$comments$$'
    """
    return f"{prefix}{key}{SEP}"


def apply_prefix(prefix: str, key: str) -> str:
    return f"{prefix}{key}" if prefix else key


def has_prefix(prefix: str, key: str) -> bool:
    return key.startswith(prefix)


def has_any_prefix(key: str) -> bool:
    return SEP in key


def remove_prefix(prefix: str, key: str) -> str:
    return key[len(prefix) :]


def get_prefixed_value(prefix: str, row: Any, key: str) -> Any:
    """
    Read ``key`` at the level identified by ``prefix``.

    Mappings are read by item and anything else by attribute, so fetched
    attach rows may be ORM instances or pydantic models.
    """
    name = apply_prefix(prefix, key)
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def strip_prefix(prefix: str, row: Mapping[str, Any]) -> dict[str, Any]:
    """
    Return the part of ``row`` under ``prefix`` with the prefix removed.

    >>> strip_prefix("posts$$", {"id": 1, "posts$$id": 7, "posts$$c$$id": 9})
    {'id': 7, 'c$$id': 9}
    """
    if not prefix:
        return dict(row)
    return {
        remove_prefix(prefix, name): value
        for name, value in row.items()
        if has_prefix(prefix, name)
    }


def local_columns(prefix: str, row: Mapping[str, Any]) -> Iterator[str]:
    """Yield the unprefixed names of the columns owned directly by a level."""
    for name in row:
        if not has_prefix(prefix, name):
            continue
        local = remove_prefix(prefix, name)
        if not has_any_prefix(local):
            yield local
