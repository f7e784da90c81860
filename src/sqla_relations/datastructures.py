from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self, TypedDict
else:
    from typing_extensions import Self, TypedDict


K = TypeVar("K")
V = TypeVar("V")
M = TypeVar("M")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for the per-type maps a relation is configured with (morph map,
    eager loads, counts, constraints) so a configured relation can be shared
    without its registrations being mutated behind its back.

    Example:
        >>> fd = frozendict({"post": Post})
        >>> fd.copy(video=Video)
        <frozendict {'post': <class 'Post'>, 'video': <class 'Video'>}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def merge(self, other: Mapping[K, V]) -> Self:
        """Return a new frozendict where keys of *other* win over ours."""
        return type(self)({**self._dict, **other})

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # values may be unhashable (tuples of loader options, lists); hash lazily
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class ModelDictionary(Generic[M]):
    """Two-level ``type key -> foreign key -> [models]`` grouping.

    Built once per eager batch by the morph-to relation and thrown away after
    matching. Keys are expected to be normalized with
    :func:`~sqla_relations.keys.dictionary_key` by the caller.
    """

    __slots__ = ("_groups",)

    def __init__(self) -> None:
        self._groups: dict[Any, dict[Any, list[M]]] = {}

    def add(self, type_key: Any, key: Any, model: M) -> None:
        self._groups.setdefault(type_key, {}).setdefault(key, []).append(model)

    def types(self) -> list[Any]:
        return list(self._groups)

    def group(self, type_key: Any) -> dict[Any, list[M]]:
        return self._groups.get(type_key, {})

    def get(self, type_key: Any, key: Any) -> list[M]:
        return self._groups.get(type_key, {}).get(key, [])

    def __contains__(self, type_key: object) -> bool:
        return type_key in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __bool__(self) -> bool:
        return bool(self._groups)

    def as_dict(self) -> dict[Any, dict[Any, list[M]]]:
        """Return a shallow copy of the grouping as plain dicts."""
        return {type_key: dict(group) for type_key, group in self._groups.items()}


class ToggleChanges(TypedDict):
    """Keys attached and detached by ``BelongsToMany.toggle``."""

    attached: list[Any]
    detached: list[Any]


class SyncChanges(TypedDict):
    """Keys attached, detached and updated by ``BelongsToMany.sync``."""

    attached: list[Any]
    detached: list[Any]
    updated: list[Any]
