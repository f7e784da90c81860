from __future__ import annotations

import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .belongs_to_many import BelongsToMany
from .exceptions import ConfigurationError
from .pivot import MorphPivot, Pivot
from .tools import get_column


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .registry import MorphRegistry

P = TypeVar("P", bound=orm.DeclarativeBase)
R = TypeVar("R", bound=orm.DeclarativeBase)


class MorphToMany(BelongsToMany[P, R]):
    """Many-to-many relation through a pivot table shared by several parent types.

    The pivot stores ``<name>_type`` next to the keys. Every read, write and
    delete of the relation is scoped to the rows whose discriminator is
    ``morph_class``: the parent's alias, or the related model's alias for the
    inverse side (``morphed_by_many``).

    Example:
        >>> tags = MorphToMany(post, Tag, "taggable", "taggables", "taggable_id", "tag_id",
        ...                    registry=registry, relation_name="tags")
        >>> tags.sync([1, 2])
        {'attached': [1, 2], 'detached': [], 'updated': []}
    """

    __slots__ = ("inverse", "morph_class", "morph_type")

    def __init__(
        self,
        parent: P,
        related: type[R],
        name: str,
        table: sa.Table | str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        parent_key: str = "id",
        related_key: str = "id",
        *,
        registry: MorphRegistry,
        relation_name: str,
        inverse: bool = False,
        session: orm.Session | None = None,
        using: type[Pivot] | None = None,
        touch_parent: bool = False,
        touch_related: bool = False,
    ) -> None:
        super().__init__(
            parent,
            related,
            table,
            foreign_pivot_key,
            related_pivot_key,
            parent_key,
            related_key,
            relation_name=relation_name,
            session=session,
            using=using,
            touch_parent=touch_parent,
            touch_related=touch_related,
        )
        self.morph_type = get_column(self.table, f"{name}_type").key
        self.morph_class = registry.alias_for(related if inverse else parent)
        self.inverse = inverse
        if using is None:
            self.pivot_class = MorphPivot
        else:
            self._check_pivot_class(using)

    @staticmethod
    def _check_pivot_class(pivot_class: type[Pivot]) -> None:
        if not issubclass(pivot_class, MorphPivot):
            raise ConfigurationError(
                f"{pivot_class.__name__} must extend MorphPivot to be used by a morph-to-many relation"
            )

    def using(self, pivot_class: type[Pivot]) -> Self:
        self._check_pivot_class(pivot_class)
        return super().using(pivot_class)

    def _pivot_scope(self) -> list[sa.ColumnElement[bool]]:
        return [*super()._pivot_scope(), self.table.c[self.morph_type] == self.morph_class]

    def _default_pivot_columns(self) -> list[str]:
        return [*super()._default_pivot_columns(), self.morph_type]

    def base_attach_record(self, key: Any) -> dict[str, Any]:
        return {**super().base_attach_record(key), self.morph_type: self.morph_class}

    def new_pivot(self, attributes: Mapping[str, Any] | None = None, exists: bool = False) -> Pivot:
        pivot = super().new_pivot(attributes, exists)
        if isinstance(pivot, MorphPivot):
            pivot.set_morph_type(self.morph_type).set_morph_class(self.morph_class)

        return pivot

    def get_morph_type(self) -> str:
        return self.morph_type

    def get_morph_class(self) -> str:
        return self.morph_class
