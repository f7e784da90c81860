from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from sqlalchemy.orm.strategy_options import _AbstractLoad

T = TypeVar("T", bound=orm.DeclarativeBase)
_R = TypeVar("_R")


def unique_scalars(result: sa.Result[tuple[_R]]) -> Sequence[_R]:
    """Shorthand for ``result.unique().scalars().all()``.

    Per-type morph queries may carry ``joinedload`` options supplied through
    ``morph_with``; uniquing keeps one entity per row in that case.
    """
    return result.unique().scalars().all()


def _mapped_table(model: type[T]) -> sa.Table:
    table = getattr(model, "__table__", None)
    if not isinstance(table, sa.Table):
        raise ConfigurationError(f"{getattr(model, '__name__', model)!r} is not mapped to a table")

    return table


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    columns = list(_mapped_table(model).primary_key)
    if not columns:
        raise ConfigurationError(f"{model.__name__} has no primary key")

    return columns[0]


@lru_cache
def _get_table_name(model: type[T]) -> str:
    return _mapped_table(model).name


@lru_cache
def _get_column_type(model: type[T], column: str) -> type | None:
    """Return the Python type declared for *column* of *model* (cached)."""
    return column_python_type(get_column(model, column))


def get_table_name(model: type[T]) -> str:
    """Name of the table *model* is mapped to; the morph map falls back to it.

    Raises:
        ConfigurationError: If *model* is not mapped to a table.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """First primary-key column of *model*; single-column keys are assumed."""
    return _get_primary_key(model)


def get_key_name(model: type[T]) -> str:
    """Get the attribute name of the model's (first) primary key column."""
    column = get_primary_key(model)
    return sa.inspect(model).get_property_by_column(column).key


def get_key_type(model: type[T], column: str | None = None) -> type | None:
    """Get the Python type of *column* (the primary key by default).

    Returns ``None`` when the column type does not declare a Python type.
    """
    return _get_column_type(model, column or get_primary_key(model).key)


def column_python_type(column: sa.ColumnElement[Any]) -> type | None:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def get_column(model: type[T] | sa.Table, name: str) -> sa.Column[Any]:
    """Look up a column of a model's table (or of a plain table) by name.

    Raises:
        ConfigurationError: If the table has no such column.
    """
    table = model if isinstance(model, sa.Table) else model.__table__
    try:
        return table.c[name]
    except KeyError:
        raise ConfigurationError(
            f"Column {name!r} not found in table {table.name!r}. "
            f"Available: {[c.key for c in table.c]}"
        ) from None


def column_values(table: sa.Table, values: Mapping[str, Any]) -> dict[str, Any]:
    """Return *values* as a statement parameter set, rejecting unknown columns.

    Raises:
        ConfigurationError: If a key is not a column of *table*.
    """
    unknown = [key for key in values if key not in table.c]
    if unknown:
        raise ConfigurationError(
            f"Unknown column(s) {unknown} for table {table.name!r}. "
            f"Available: {[c.key for c in table.c]}"
        )

    return dict(values)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a function that adds WHERE conditions to a select query.

    Meant for the per-type callbacks of ``MorphTo.constrain`` and for the
    ``constraint`` argument of ``of_many``.

    Example:
        >>> relation.constrain({Post: add_conditions(Post.published.is_(True))})
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def fresh_timestamp() -> datetime:
    """Current UTC time, used for pivot timestamps and touches."""
    return datetime.now(timezone.utc)


def resolve_relationship_path(
    model: type[T],
    dotted: str,
) -> Sequence[orm.RelationshipProperty[Any]]:
    """Resolve ``'comments.author'`` into the chain of relationship properties.

    Each segment must be a direct relationship key on the current model.

    Raises:
        ConfigurationError: If a segment is not a relationship.
    """
    result: list[orm.RelationshipProperty[Any]] = []
    current_cls: type[Any] = model
    for segment in dotted.split("."):
        relationship = sa.inspect(current_cls).relationships.get(segment)
        if relationship is None:
            raise ConfigurationError(
                f"No relationship '{segment}' on {current_cls.__name__} "
                f"(resolving '{dotted}' from {model.__name__})"
            )
        result.append(relationship)
        current_cls = relationship.mapper.class_

    return result


def build_loader(
    model: type[T],
    path: str,
    strategy: Callable[..., _AbstractLoad] = orm.selectinload,
) -> _AbstractLoad:
    """Turn a (dotted) relationship path into a chained loader option.

    ``build_loader(Post, "comments.author")`` is
    ``selectinload(Post.comments).selectinload(Comment.author)``.
    """
    load: _AbstractLoad | None = None
    for relationship in resolve_relationship_path(model, path):
        attribute = getattr(relationship.parent.class_, relationship.key)
        load = strategy(attribute) if load is None else getattr(load, strategy.__name__)(attribute)

    assert load is not None
    return load


def relationship_count(model: type[T], key: str) -> sa.Label[int]:
    """Build a correlated ``count()`` of a relationship, labelled ``<key>_count``.

    Many-to-many relationships are counted on their secondary table.
    """
    relationship = resolve_relationship_path(model, key)[0]
    source = (
        relationship.secondary
        if relationship.secondary is not None
        else relationship.mapper.local_table
    )

    return (
        sa.select(sa.func.count())
        .select_from(source)
        .where(relationship.primaryjoin)
        .correlate(relationship.parent.local_table)
        .scalar_subquery()
        .label(f"{key}_count")
    )


def cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for the model introspection caches."""
    return {
        fn.__name__: fn.cache_info()
        for fn in (_get_primary_key, _get_table_name, _get_column_type)
    }


def cache_clear() -> None:
    """Clear the model introspection caches."""
    for fn in (_get_primary_key, _get_table_name, _get_column_type):
        fn.cache_clear()
