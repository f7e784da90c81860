from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

import sqlalchemy as sa

from .exceptions import ConfigurationError
from .tools import get_column, get_primary_key, get_table_name


if TYPE_CHECKING:
    from sqlalchemy import orm

logger = logging.getLogger(__name__)

DEFAULT_ONE_OF_MANY_AGGREGATE: Final[str] = "MAX"
_SUPPORTED_AGGREGATES: Final[frozenset[str]] = frozenset({"min", "max"})

_Constraint = Callable[[sa.Select[Any]], sa.Select[Any]]


def _normalize_aggregate(aggregate: Any) -> str:
    if not isinstance(aggregate, str) or aggregate.lower() not in _SUPPORTED_AGGREGATES:
        raise ConfigurationError(
            f"Invalid aggregate {aggregate!r} used within one-of-many relation. "
            "Available aggregates: MIN, MAX"
        )

    return aggregate.lower()


class CanBeOneOfMany:
    """Restrict a one-to-many relation to a single row per group.

    Mixed into :class:`~sqla_relations.has_one.HasOne`. The host relation owns
    the state this mixin works on (``related``, ``relation_name``, ``query``
    and the ``_one_of_many*`` slots) and provides the group columns through
    :meth:`get_one_of_many_group_columns`.

    ``of_many`` builds one aggregate subquery per column. The first one picks
    ``MIN``/``MAX`` of the first column per group; every following one is
    joined to the previous step and takes the ``MIN`` of its column among the
    rows that survived, so ties end on the primary key::

        SELECT visits.* FROM visits
        JOIN (SELECT min(visits.id) AS id_aggregate, visits.user_id
              FROM visits
              JOIN (SELECT max(visits.visited_at) AS visited_at_aggregate, visits.user_id
                    FROM visits GROUP BY visits.user_id) AS latest_visit_visited_at
                ON latest_visit_visited_at.visited_at_aggregate = visits.visited_at
               AND latest_visit_visited_at.user_id = visits.user_id
              GROUP BY visits.user_id) AS latest_visit
          ON latest_visit.id_aggregate = visits.id AND latest_visit.user_id = visits.user_id
        WHERE visits.user_id = :user_id
    """

    __slots__ = ()

    if TYPE_CHECKING:
        related: type[orm.DeclarativeBase]
        relation_name: str
        query: sa.Select[Any]
        _base_query: sa.Select[Any]
        _one_of_many_subquery: sa.Subquery | None
        _relation_alias: str | None

    def get_one_of_many_group_columns(self) -> Sequence[sa.Column[Any]]:
        """Columns of the related table the aggregate is computed per."""
        raise NotImplementedError

    def add_one_of_many_subquery_constraints(self, query: sa.Select[Any]) -> sa.Select[Any]:
        """Hook applied to every aggregate subquery (e.g. a morph type filter)."""
        return query

    def of_many(
        self,
        column: str | Sequence[str] | Mapping[str, str] = "id",
        aggregate: str = DEFAULT_ONE_OF_MANY_AGGREGATE,
        relation: str | None = None,
        *,
        constraint: _Constraint | None = None,
    ) -> Any:
        """Turn the relation into a one-of-many relation.

        Args:
            column: A column name, a sequence of names (each aggregated with
                *aggregate*) or a mapping ``column -> aggregate``.
            aggregate: ``"MIN"`` or ``"MAX"``, case-insensitive.
            relation: Alias of the joined subquery; defaults to the relation name.
            constraint: Callback receiving the first aggregate ``Select``.

        Returns:
            The relation, for chaining.

        Raises:
            ConfigurationError: If an aggregate is not MIN or MAX, or a column
                does not exist on the related table.

        Example:
            >>> user.has_one(Visit, relation_name="latest_visit").of_many("visited_at", "max")
        """
        columns = self._resolve_one_of_many_columns(column, aggregate)
        self._relation_alias = relation or self.relation_name

        table = self.related.__table__
        group_columns = self.get_one_of_many_group_columns()
        alias = self.get_relation_name()

        previous: sa.Subquery | None = None
        previous_column = ""
        for index, (name, function) in enumerate(columns.items()):
            function = function if index == 0 else "min"
            target = get_column(table, name)
            query = (
                sa.select(
                    getattr(sa.func, function)(target).label(f"{name}_aggregate"),
                    *group_columns,
                )
                .select_from(table)
                .group_by(*group_columns)
            )
            query = self.add_one_of_many_subquery_constraints(query)
            if index == 0 and constraint is not None:
                query = constraint(query)

            if previous is not None:
                query = query.join(
                    previous,
                    self._one_of_many_join_condition(previous, previous_column, group_columns),
                )

            is_last = index == len(columns) - 1
            previous = query.subquery(alias if is_last else f"{alias}_{name}")
            previous_column = name

        assert previous is not None
        self._one_of_many_subquery = previous
        self.query = self._base_query.join(
            previous,
            self._one_of_many_join_condition(previous, previous_column, group_columns),
        )
        logger.debug(
            "one-of-many %s on %s: %s",
            alias,
            get_table_name(self.related),
            ", ".join(f"{c} {a}" for c, a in columns.items()),
        )
        return self

    def latest_of_many(
        self,
        columns: str | Sequence[str] = "id",
        relation: str | None = None,
    ) -> Any:
        """Shorthand for ``of_many`` with every column aggregated by ``MAX``."""
        return self.of_many(self._map_columns(columns, "MAX"), "MAX", relation)

    def oldest_of_many(
        self,
        columns: str | Sequence[str] = "id",
        relation: str | None = None,
    ) -> Any:
        """Shorthand for ``of_many`` with every column aggregated by ``MIN``."""
        return self.of_many(self._map_columns(columns, "MIN"), "MIN", relation)

    def is_one_of_many(self) -> bool:
        return self._one_of_many_subquery is not None

    def get_one_of_many_subquery(self) -> sa.Subquery | None:
        """The aggregate subquery the relation query is joined with, if any."""
        return self._one_of_many_subquery

    def get_relation_name(self) -> str:
        """Alias of the joined subquery.

        ``<relation>_of_many`` is used when the relation is named after the
        related table, so the alias does not shadow it.
        """
        alias = self._relation_alias or self.relation_name
        if alias == get_table_name(self.related):
            return f"{alias}_of_many"

        return alias

    def qualify_sub_select_column(self, column: str) -> sa.ColumnElement[Any]:
        """Column of the joined aggregate subquery, e.g. ``"visited_at_aggregate"``.

        Raises:
            ConfigurationError: If the relation is not one-of-many.
        """
        if self._one_of_many_subquery is None:
            raise ConfigurationError(f"Relation '{self.relation_name}' is not a one-of-many relation")

        return self._one_of_many_subquery.c[column]

    def _resolve_one_of_many_columns(
        self,
        column: str | Sequence[str] | Mapping[str, str],
        aggregate: str,
    ) -> dict[str, str]:
        aggregate = _normalize_aggregate(aggregate)
        columns = dict(self._map_columns(column, aggregate)) if not isinstance(column, Mapping) else dict(column)
        if not columns:
            raise ConfigurationError("of_many() needs at least one column")

        for name, function in columns.items():
            columns[name] = _normalize_aggregate(function)

        key = get_primary_key(self.related).key
        if key not in columns:
            columns[key] = "min"

        return columns

    @staticmethod
    def _map_columns(columns: str | Sequence[str], aggregate: str) -> dict[str, str]:
        if isinstance(columns, str):
            return {columns: aggregate}

        return dict.fromkeys(columns, aggregate)

    def _one_of_many_join_condition(
        self,
        subquery: sa.Subquery,
        column: str,
        group_columns: Sequence[sa.Column[Any]],
    ) -> sa.ColumnElement[bool]:
        table = self.related.__table__
        return sa.and_(
            subquery.c[f"{column}_aggregate"] == table.c[column],
            *(subquery.c[group.key] == table.c[group.key] for group in group_columns),
        )
