from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .keys import compare_keys, dictionary_key
from .one_of_many import CanBeOneOfMany
from .relation import Relation, set_relation
from .tools import get_column, get_primary_key, unique_scalars


if TYPE_CHECKING:
    from .registry import MorphRegistry

P = TypeVar("P", bound=orm.DeclarativeBase)
R = TypeVar("R", bound=orm.DeclarativeBase)


class HasOneOrMany(Relation[P, R]):
    """Relation whose related rows carry a foreign key to the parent."""

    __slots__ = ("_base_query", "_wheres", "foreign_key", "local_key", "query")

    def __init__(
        self,
        parent: P,
        related: type[R],
        foreign_key: str,
        local_key: str = "id",
        *,
        relation_name: str,
        session: orm.Session | None = None,
    ) -> None:
        super().__init__(parent, related, relation_name=relation_name, session=session)
        self.foreign_key = foreign_key
        self.local_key = local_key
        get_column(related, foreign_key)

        self._base_query: sa.Select[Any] = sa.select(related)
        self.query: sa.Select[Any] = self._base_query
        self._wheres: list[sa.ColumnElement[bool]] = self.get_constraints()

    @property
    def foreign_column(self) -> sa.Column[Any]:
        return get_column(self.related, self.foreign_key)

    def get_parent_key(self) -> Any:
        return getattr(self.parent, self.local_key)

    def get_constraints(self) -> list[sa.ColumnElement[bool]]:
        """Constraints binding the related rows to the single parent."""
        key = self.get_parent_key()
        if key is None:
            return []

        return [self.foreign_column == key]

    def get_query(self) -> sa.Select[Any]:
        return self.query.where(*self._wheres)

    def add_eager_constraints(self, models: Sequence[P]) -> None:
        keys = list(
            dict.fromkeys(
                key
                for model in models
                if (key := getattr(model, self.local_key)) is not None
            )
        )
        self._wheres = [self.foreign_column.in_(keys)]

    def get_eager(self, session: orm.Session | None = None) -> Sequence[R]:
        return unique_scalars(self._session_for(session).execute(self.get_query()))


class HasOne(CanBeOneOfMany, HasOneOrMany[P, R]):
    """One related row per parent, optionally narrowed by ``of_many``.

    Example:
        >>> relation = HasOne(user, Visit, "user_id", relation_name="latest_visit")
        >>> relation.latest_of_many("visited_at").get_results()
        <Visit ...>
    """

    __slots__ = ("_one_of_many_subquery", "_relation_alias")

    def __init__(
        self,
        parent: P,
        related: type[R],
        foreign_key: str,
        local_key: str = "id",
        *,
        relation_name: str,
        session: orm.Session | None = None,
    ) -> None:
        self._one_of_many_subquery: sa.Subquery | None = None
        self._relation_alias: str | None = None
        super().__init__(
            parent,
            related,
            foreign_key,
            local_key,
            relation_name=relation_name,
            session=session,
        )

    def get_results(self, session: orm.Session | None = None) -> R | None:
        if self.get_parent_key() is None:
            return None

        return self._session_for(session).scalars(self.get_query()).first()

    def match(self, models: Sequence[P], results: Sequence[R]) -> Sequence[P]:
        dictionary = {dictionary_key(getattr(result, self.foreign_key)): result for result in results}
        for model in models:
            key = dictionary_key(getattr(model, self.local_key))
            if key in dictionary:
                set_relation(model, self.relation_name, dictionary[key])

        return models

    def get_one_of_many_group_columns(self) -> Sequence[sa.Column[Any]]:
        return [self.foreign_column]

    def is_(self, model: Any, session: orm.Session | None = None) -> bool:
        """Whether *model* is the row this relation points at.

        For one-of-many relations the model must also be the row the aggregate
        picked, which costs one ``EXISTS`` query.
        """
        if model is None:
            return False

        if getattr(type(model), "__table__", None) is not self.related.__table__:
            return False

        if not compare_keys(self.get_parent_key(), getattr(model, self.foreign_key, None)):
            return False

        if not self.is_one_of_many():
            return True

        key = get_primary_key(self.related)
        query = self.get_query().where(key == getattr(model, key.key))
        return bool(self._session_for(session).scalar(sa.select(query.exists())))

    def is_not(self, model: Any, session: orm.Session | None = None) -> bool:
        return not self.is_(model, session)


class MorphOne(HasOne[P, R]):
    """``HasOne`` whose related rows also carry the parent's morph discriminator.

    Example:
        >>> relation = MorphOne(post, Image, "imageable_type", "imageable_id", registry=registry,
        ...                     relation_name="image")
    """

    __slots__ = ("morph_class", "morph_type")

    def __init__(
        self,
        parent: P,
        related: type[R],
        morph_type: str,
        foreign_key: str,
        local_key: str = "id",
        *,
        registry: MorphRegistry,
        relation_name: str,
        session: orm.Session | None = None,
    ) -> None:
        self.morph_type = morph_type
        self.morph_class = registry.alias_for(parent)
        get_column(related, morph_type)
        super().__init__(
            parent,
            related,
            foreign_key,
            local_key,
            relation_name=relation_name,
            session=session,
        )

    @property
    def morph_column(self) -> sa.Column[Any]:
        return get_column(self.related, self.morph_type)

    def get_constraints(self) -> list[sa.ColumnElement[bool]]:
        constraints = super().get_constraints()
        if constraints:
            constraints.append(self.morph_column == self.morph_class)

        return constraints

    def add_eager_constraints(self, models: Sequence[P]) -> None:
        super().add_eager_constraints(models)
        self._wheres.append(self.morph_column == self.morph_class)

    def add_one_of_many_subquery_constraints(self, query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(self.morph_column == self.morph_class)

    def get_one_of_many_group_columns(self) -> Sequence[sa.Column[Any]]:
        return [self.foreign_column, self.morph_column]

    def is_(self, model: Any, session: orm.Session | None = None) -> bool:
        if model is not None and getattr(model, self.morph_type, None) != self.morph_class:
            return False

        return super().is_(model, session)
