from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .exceptions import ConfigurationError


P = TypeVar("P", bound=orm.DeclarativeBase)
R = TypeVar("R", bound=orm.DeclarativeBase)


def set_relation(model: Any, name: str, value: Any) -> None:
    """Hang a resolved relation value on *model* under *name*."""
    setattr(model, name, value)


def get_relation(model: Any, name: str, default: Any = None) -> Any:
    return getattr(model, name, default)


class Relation(ABC, Generic[P, R]):
    """Base of every relation descriptor.

    A relation borrows its parent instance and never owns it. Statements are
    executed through an explicit session when one is given, otherwise through
    the session the parent is attached to.

    Subclasses implement the eager-loading protocol used by :meth:`eager_load`:
    ``init_relation`` -> ``add_eager_constraints`` -> ``get_eager`` -> ``match``.
    ``HasOne``, ``MorphOne``, ``MorphTo`` and ``BelongsToMany`` all implement it.
    """

    __slots__ = ("_session", "parent", "related", "relation_name")

    def __init__(
        self,
        parent: P,
        related: type[R],
        *,
        relation_name: str,
        session: orm.Session | None = None,
    ) -> None:
        if not relation_name:
            raise ConfigurationError("relation_name is required")

        self.parent = parent
        self.related = related
        self.relation_name = relation_name
        self._session = session

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {type(self.parent).__name__}.{self.relation_name}"
            f" -> {getattr(self.related, '__name__', self.related)}>"
        )

    @property
    def session(self) -> orm.Session:
        """Session used to run statements.

        Raises:
            ConfigurationError: If no session was given and the parent is detached.
        """
        if self._session is not None:
            return self._session

        session = orm.object_session(self.parent)
        if session is None:
            raise ConfigurationError(
                f"{type(self).__name__} '{self.relation_name}' has no session: pass one "
                f"explicitly or attach {type(self.parent).__name__} to a session"
            )

        return session

    def _session_for(self, session: orm.Session | None) -> orm.Session:
        return session if session is not None else self.session

    @abstractmethod
    def get_query(self) -> sa.Select[Any]:
        raise NotImplementedError

    @abstractmethod
    def get_results(self, session: orm.Session | None = None) -> Any:
        raise NotImplementedError

    def init_relation(self, models: Sequence[P]) -> Sequence[P]:
        """Set the empty value of the relation on every model."""
        for model in models:
            set_relation(model, self.relation_name, None)

        return models

    @abstractmethod
    def add_eager_constraints(self, models: Sequence[P]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_eager(self, session: orm.Session | None = None) -> Sequence[Any]:
        raise NotImplementedError

    @abstractmethod
    def match(self, models: Sequence[P], results: Sequence[Any]) -> Sequence[P]:
        raise NotImplementedError

    def eager_load(self, models: Sequence[P], session: orm.Session | None = None) -> Sequence[P]:
        """Resolve the relation for a batch of parents in as few queries as possible.

        Args:
            models: Parent instances, usually the result of one query.
            session: Session override; defaults to the relation's session.

        Returns:
            The same parents, each carrying the relation under ``relation_name``.
        """
        if not models:
            return models

        self.init_relation(models)
        self.add_eager_constraints(models)
        return self.match(models, self.get_eager(session))
