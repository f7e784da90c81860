from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, final

from sqlalchemy import orm

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .tools import get_table_name


MORPH_ALIAS_ATTRIBUTE = "__morph_alias__"


@final
class MorphRegistry:
    """Bidirectional map between morph discriminators and model classes.

    A registry is handed to every polymorphic relation at construction time;
    it is the only place a discriminator stored in a ``*_type`` column is
    turned back into a class. Registries are immutable: ``with_models``
    returns a new instance.

    Example:
        >>> registry = MorphRegistry({"post": Post, "video": Video})
        >>> registry.resolve("post")
        <class 'Post'>
        >>> registry.alias_for(Video)
        'video'
    """

    __slots__ = ("_by_alias", "_by_class")

    def __init__(self, morph_map: Mapping[str, type[orm.DeclarativeBase]] | None = None) -> None:
        self._by_alias: frozendict[str, type[orm.DeclarativeBase]] = frozendict(morph_map or {})
        by_class: dict[type[orm.DeclarativeBase], str] = {}
        for alias, model in self._by_alias.items():
            if model in by_class:
                raise ConfigurationError(
                    f"{model.__name__} is registered under both {by_class[model]!r} and {alias!r}"
                )
            by_class[model] = alias
        self._by_class: frozendict[type[orm.DeclarativeBase], str] = frozendict(by_class)

    def get(self, alias: str) -> type[orm.DeclarativeBase] | None:
        """Return the class registered under *alias*, or ``None``."""
        return self._by_alias.get(alias)

    def __getitem__(self, alias: str) -> type[orm.DeclarativeBase]:
        return self._by_alias[alias]

    def __contains__(self, alias: object) -> bool:
        return alias in self._by_alias

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_alias)

    def __len__(self) -> int:
        return len(self._by_alias)

    @property
    def morph_map(self) -> Mapping[str, type[orm.DeclarativeBase]]:
        """The underlying discriminator-to-class mapping (read-only)."""
        return self._by_alias

    def resolve(self, alias: Any) -> type[orm.DeclarativeBase]:
        """Resolve a stored discriminator to its model class.

        Raises:
            ConfigurationError: If nothing is registered under *alias*.
        """
        model = self._by_alias.get(alias)
        if model is None:
            raise ConfigurationError(
                f"No model registered for morph type {alias!r}. "
                f"Registered: {sorted(self._by_alias)}"
            )

        return model

    def alias_for(self, model: type[orm.DeclarativeBase] | orm.DeclarativeBase) -> str:
        """Return the discriminator stored for *model* (a class or an instance).

        Raises:
            ConfigurationError: If the class is not registered.
        """
        cls = model if isinstance(model, type) else type(model)
        for candidate in cls.__mro__:
            if (alias := self._by_class.get(candidate)) is not None:
                return alias

        raise ConfigurationError(f"{cls.__name__} is not registered in the morph map")

    def with_models(self, morph_map: Mapping[str, type[orm.DeclarativeBase]]) -> MorphRegistry:
        """Return a new registry extended (or overridden) by *morph_map*."""
        return MorphRegistry(self._by_alias.merge(morph_map))


def get_morph_map(
    base: type[orm.DeclarativeBase],
) -> Mapping[str, type[orm.DeclarativeBase]]:
    """Build a discriminator map from every mapper of a declarative base.

    Each class is registered under its ``__morph_alias__`` attribute when it
    declares one, otherwise under its table name.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen dictionary mapping discriminators to model classes.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.

    Example:
        >>> registry = MorphRegistry(get_morph_map(Base))
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    return frozendict({
        getattr(mapper.class_, MORPH_ALIAS_ATTRIBUTE, None) or get_table_name(mapper.class_): mapper.class_
        for mapper in base.registry.mappers
        if mapper.local_table is not None and not mapper.inherits
    })
