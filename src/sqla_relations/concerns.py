from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from .belongs_to_many import BelongsToMany
from .exceptions import ConfigurationError
from .has_one import HasOne, MorphOne
from .morph_to import MorphTo
from .morph_to_many import MorphToMany
from .tools import get_key_name


if TYPE_CHECKING:
    import sqlalchemy as sa
    from sqlalchemy import orm

    from .pivot import Pivot
    from .registry import MorphRegistry

R = TypeVar("R", bound="orm.DeclarativeBase")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(name: str) -> str:
    """``BlogPost`` -> ``blog_post``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


class HasRelations:
    """Relation factories for declarative models.

    Mix into the declarative base (or single models) and build relations
    from an instance. Key names default to the usual conventions:
    ``<snake class name>_id`` foreign keys, ``<name>_type``/``<name>_id``
    morph columns and a pivot table named after both classes in
    alphabetical order.

    Polymorphic factories need a :class:`~sqla_relations.registry.MorphRegistry`;
    pass one explicitly or set ``__morph_registry__`` on the base once all
    models are declared.

    Example:
        >>> class Base(HasRelations, orm.DeclarativeBase):
        ...     pass
        >>> Base.__morph_registry__ = MorphRegistry(get_morph_map(Base))
        >>> post.belongs_to_many(Tag, relation_name="tags").sync([1, 2])
    """

    __morph_registry__: ClassVar[MorphRegistry | None] = None

    def _morph_registry(self, registry: MorphRegistry | None) -> MorphRegistry:
        registry = registry or type(self).__morph_registry__
        if registry is None:
            raise ConfigurationError(
                f"{type(self).__name__} has no morph registry: pass registry= or set __morph_registry__"
            )

        return registry

    def get_foreign_key(self) -> str:
        return f"{snake_case(type(self).__name__)}_{get_key_name(type(self))}"

    def joining_table(self, related: type[Any]) -> str:
        return "_".join(sorted([snake_case(related.__name__), snake_case(type(self).__name__)]))

    def has_one(
        self,
        related: type[R],
        foreign_key: str | None = None,
        local_key: str | None = None,
        *,
        relation_name: str,
        session: orm.Session | None = None,
    ) -> HasOne[Any, R]:
        return HasOne(
            self,  # type: ignore[arg-type]
            related,
            foreign_key or self.get_foreign_key(),
            local_key or get_key_name(type(self)),
            relation_name=relation_name,
            session=session,
        )

    def morph_one(
        self,
        related: type[R],
        name: str,
        type_: str | None = None,
        id_: str | None = None,
        local_key: str | None = None,
        *,
        relation_name: str,
        registry: MorphRegistry | None = None,
        session: orm.Session | None = None,
    ) -> MorphOne[Any, R]:
        return MorphOne(
            self,  # type: ignore[arg-type]
            related,
            type_ or f"{name}_type",
            id_ or f"{name}_id",
            local_key or get_key_name(type(self)),
            registry=self._morph_registry(registry),
            relation_name=relation_name,
            session=session,
        )

    def morph_to(
        self,
        name: str,
        type_: str | None = None,
        id_: str | None = None,
        owner_key: str | None = None,
        *,
        registry: MorphRegistry | None = None,
        session: orm.Session | None = None,
    ) -> MorphTo[Any]:
        """The inverse of ``morph_one``; *name* is also the relation name."""
        return MorphTo(
            self,  # type: ignore[arg-type]
            morph_type=type_ or f"{name}_type",
            foreign_key=id_ or f"{name}_id",
            registry=self._morph_registry(registry),
            relation_name=name,
            owner_key=owner_key,
            session=session,
        )

    def belongs_to_many(
        self,
        related: type[R],
        table: sa.Table | str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
        *,
        relation_name: str,
        using: type[Pivot] | None = None,
        touch_parent: bool = False,
        touch_related: bool = False,
        session: orm.Session | None = None,
    ) -> BelongsToMany[Any, R]:
        return BelongsToMany(
            self,  # type: ignore[arg-type]
            related,
            table if table is not None else self.joining_table(related),
            foreign_pivot_key or self.get_foreign_key(),
            related_pivot_key or f"{snake_case(related.__name__)}_{get_key_name(related)}",
            parent_key or get_key_name(type(self)),
            related_key or get_key_name(related),
            relation_name=relation_name,
            session=session,
            using=using,
            touch_parent=touch_parent,
            touch_related=touch_related,
        )

    def morph_to_many(
        self,
        related: type[R],
        name: str,
        table: sa.Table | str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
        *,
        relation_name: str,
        inverse: bool = False,
        registry: MorphRegistry | None = None,
        using: type[Pivot] | None = None,
        touch_parent: bool = False,
        touch_related: bool = False,
        session: orm.Session | None = None,
    ) -> MorphToMany[Any, R]:
        """Many-to-many through a polymorphic pivot, ``<name>s`` by default."""
        return MorphToMany(
            self,  # type: ignore[arg-type]
            related,
            name,
            table if table is not None else f"{name}s",
            foreign_pivot_key or f"{name}_id",
            related_pivot_key or f"{snake_case(related.__name__)}_{get_key_name(related)}",
            parent_key or get_key_name(type(self)),
            related_key or get_key_name(related),
            registry=self._morph_registry(registry),
            relation_name=relation_name,
            inverse=inverse,
            session=session,
            using=using,
            touch_parent=touch_parent,
            touch_related=touch_related,
        )

    def morphed_by_many(
        self,
        related: type[R],
        name: str,
        table: sa.Table | str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
        *,
        relation_name: str,
        registry: MorphRegistry | None = None,
        using: type[Pivot] | None = None,
        session: orm.Session | None = None,
    ) -> MorphToMany[Any, R]:
        """The inverse of ``morph_to_many``: the pivot rows typed as *related*."""
        return self.morph_to_many(
            related,
            name,
            table,
            foreign_pivot_key or self.get_foreign_key(),
            related_pivot_key or f"{name}_id",
            parent_key,
            related_key,
            relation_name=relation_name,
            inverse=True,
            registry=registry,
            using=using,
            session=session,
        )
