from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Final, TypeVar

import sqlalchemy as sa
from sqlalchemy import exc, orm

from .datastructures import SyncChanges, ToggleChanges
from .exceptions import ConfigurationError
from .keys import cast_key, dictionary_key
from .pivot import CREATED_AT, UPDATED_AT, Pivot
from .relation import Relation, set_relation
from .tools import column_values, fresh_timestamp, get_column, get_key_name, get_key_type, get_primary_key


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=orm.DeclarativeBase)
R = TypeVar("R", bound=orm.DeclarativeBase)

DEFAULT_PIVOT_ACCESSOR: Final[str] = "pivot"


def _is_model(value: Any) -> bool:
    return isinstance(sa.inspect(value, raiseerr=False), orm.InstanceState)


class BelongsToMany(Relation[P, R]):
    """Many-to-many relation reconciled through a pivot table.

    The write operations (``attach``, ``detach``, ``sync``, ``toggle`` and
    ``update_existing_pivot``) never open a transaction of their own: wrap
    several of them in ``session.begin()`` to make them atomic. Each one
    touches the configured owners at most once, and only when a pivot row
    was actually inserted, updated or deleted.

    Keys returned in change sets are cast to the Python type of the related
    key column, so ``sync(["1", 2])`` reports ``[1, 2]`` for an integer key.

    Example:
        >>> tags = BelongsToMany(post, Tag, "post_tag", "post_id", "tag_id", relation_name="tags")
        >>> tags.sync({1: {"role": "main"}, 2: {}})
        {'attached': [2], 'detached': [3], 'updated': [1]}
    """

    __slots__ = (
        "_eager_query",
        "_pivot_wheres",
        "accessor",
        "created_at_column",
        "foreign_pivot_key",
        "parent_key",
        "pivot_class",
        "pivot_columns",
        "pivot_values",
        "related_key",
        "related_pivot_key",
        "table",
        "timestamps",
        "touch_parent",
        "touch_related",
        "updated_at_column",
        "using_custom_class",
    )

    def __init__(
        self,
        parent: P,
        related: type[R],
        table: sa.Table | str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        parent_key: str = "id",
        related_key: str = "id",
        *,
        relation_name: str,
        session: orm.Session | None = None,
        using: type[Pivot] | None = None,
        touch_parent: bool = False,
        touch_related: bool = False,
    ) -> None:
        super().__init__(parent, related, relation_name=relation_name, session=session)
        self.table = self._resolve_table(parent, table)
        get_column(self.table, foreign_pivot_key)
        get_column(self.table, related_pivot_key)

        self.foreign_pivot_key = foreign_pivot_key
        self.related_pivot_key = related_pivot_key
        self.parent_key = parent_key
        self.related_key = related_key
        self.pivot_class: type[Pivot] = using or Pivot
        self.using_custom_class = using is not None
        self.touch_parent = touch_parent
        self.touch_related = touch_related

        self.accessor = DEFAULT_PIVOT_ACCESSOR
        self.pivot_columns: list[str] = []
        self.pivot_values: dict[str, Any] = {}
        self._pivot_wheres: list[sa.ColumnElement[bool]] = []
        self._eager_query: sa.Select[Any] | None = None
        self.timestamps = False
        self.created_at_column = CREATED_AT
        self.updated_at_column = UPDATED_AT

    @staticmethod
    def _resolve_table(parent: Any, table: sa.Table | str) -> sa.Table:
        if isinstance(table, sa.Table):
            return table

        if not isinstance(table, str):
            raise TypeError(f"Pivot table must be a Table or a table name, got {type(table).__name__}")

        resolved = type(parent).metadata.tables.get(table)
        if resolved is None:
            raise ConfigurationError(f"Pivot table {table!r} is not defined in {type(parent).__name__}'s metadata")

        return resolved

    # configuration

    def using(self, pivot_class: type[Pivot]) -> Self:
        """Persist pivot rows through *pivot_class* so its lifecycle hooks run."""
        self.pivot_class = pivot_class
        self.using_custom_class = True
        return self

    def as_(self, accessor: str) -> Self:
        self.accessor = accessor
        return self

    def with_pivot(self, *columns: str) -> Self:
        for column in columns:
            get_column(self.table, column)
            if column not in self.pivot_columns:
                self.pivot_columns.append(column)

        return self

    def with_timestamps(self, created_at: str | None = None, updated_at: str | None = None) -> Self:
        self.timestamps = True
        self.created_at_column = created_at or CREATED_AT
        self.updated_at_column = updated_at or UPDATED_AT
        return self.with_pivot(self.created_at_column, self.updated_at_column)

    def with_pivot_value(self, column: str, value: Any) -> Self:
        """Filter pivot queries on *column* and write *value* on every attach."""
        self.pivot_values[column] = value
        return self.where_pivot(column, value)

    def where_pivot(self, column: str, value: Any) -> Self:
        self._pivot_wheres.append(get_column(self.table, column) == value)
        return self

    def where_pivot_in(self, column: str, values: Iterable[Any]) -> Self:
        self._pivot_wheres.append(get_column(self.table, column).in_(list(values)))
        return self

    def where_pivot_null(self, column: str) -> Self:
        self._pivot_wheres.append(get_column(self.table, column).is_(None))
        return self

    # reading

    def get_parent_key(self) -> Any:
        return getattr(self.parent, self.parent_key)

    def _pivot_scope(self) -> list[sa.ColumnElement[bool]]:
        """Pivot conditions shared by every parent of the relation."""
        return list(self._pivot_wheres)

    def _pivot_conditions(self) -> list[sa.ColumnElement[bool]]:
        return [self.table.c[self.foreign_pivot_key] == self.get_parent_key(), *self._pivot_scope()]

    def _default_pivot_columns(self) -> list[str]:
        return [self.foreign_pivot_key, self.related_pivot_key]

    def _pivot_select_columns(self) -> list[sa.Column[Any]]:
        names = dict.fromkeys([*self._default_pivot_columns(), *self.pivot_columns])
        return [self.table.c[name] for name in names]

    def _select_related(self, *conditions: sa.ColumnElement[bool]) -> sa.Select[Any]:
        related_column = get_column(self.related, self.related_key)
        return (
            sa.select(self.related)
            .join(self.table, self.table.c[self.related_pivot_key] == related_column)
            .where(*conditions)
        )

    def get_query(self) -> sa.Select[Any]:
        return self._select_related(*self._pivot_conditions())

    def _rows_with_pivots(self, query: sa.Select[Any], session: orm.Session | None) -> list[tuple[R, Pivot]]:
        columns = self._pivot_select_columns()
        query = query.add_columns(*(column.label(f"pivot_{column.name}") for column in columns))

        rows = []
        for row in self._session_for(session).execute(query):
            attributes = {column.name: value for column, value in zip(columns, row[1:])}
            rows.append((row[0], self.new_existing_pivot(attributes)))

        return rows

    def get_results(self, session: orm.Session | None = None) -> list[R]:
        """Load the related rows; each one carries its pivot under the accessor.

        The pivot is set as a plain attribute on the instance, so two relations
        sharing a related instance in the same session overwrite each other's.
        """
        results = []
        for model, pivot in self._rows_with_pivots(self.get_query(), session):
            setattr(model, self.accessor, pivot)
            results.append(model)

        return results

    # eager loading

    def init_relation(self, models: Sequence[P]) -> Sequence[P]:
        for model in models:
            set_relation(model, self.relation_name, [])

        return models

    def add_eager_constraints(self, models: Sequence[P]) -> None:
        keys = list(
            dict.fromkeys(
                key
                for model in models
                if (key := getattr(model, self.parent_key)) is not None
            )
        )
        self._eager_query = self._select_related(
            self.table.c[self.foreign_pivot_key].in_(keys),
            *self._pivot_scope(),
        )

    def get_eager(self, session: orm.Session | None = None) -> list[tuple[R, Pivot]]:
        """Related rows of every constrained parent, each paired with its pivot."""
        query = self._eager_query if self._eager_query is not None else self.get_query()
        return self._rows_with_pivots(query, session)

    def match(self, models: Sequence[P], results: Sequence[tuple[R, Pivot]]) -> Sequence[P]:
        """Hang on every parent the list of related rows its pivot rows point at.

        A related row attached to several parents of the batch is one instance
        in the session; its accessor keeps the pivot of the last parent matched.
        """
        dictionary: dict[Any, list[R]] = {}
        for model, pivot in results:
            setattr(model, self.accessor, pivot)
            key = dictionary_key(pivot.get_attribute(self.foreign_pivot_key))
            dictionary.setdefault(key, []).append(model)

        for model in models:
            related = dictionary.get(dictionary_key(getattr(model, self.parent_key)))
            if related is not None:
                set_relation(model, self.relation_name, related)

        return models

    def get_currently_attached_pivots(self) -> list[Pivot]:
        rows = self.session.execute(sa.select(self.table).where(*self._pivot_conditions())).mappings()
        return [self.new_existing_pivot(dict(row)) for row in rows]

    def _current_pivot(self, key: Any) -> Pivot | None:
        row = (
            self.session.execute(
                sa.select(self.table).where(
                    *self._pivot_conditions(),
                    self.table.c[self.related_pivot_key] == key,
                )
            )
            .mappings()
            .first()
        )
        return self.new_existing_pivot(dict(row)) if row is not None else None

    def all_related_ids(self) -> list[Any]:
        """Related keys of every pivot row of the parent."""
        query = sa.select(self.table.c[self.related_pivot_key]).where(*self._pivot_conditions())
        return list(dict.fromkeys(self._cast_key(key) for key in self.session.scalars(query)))

    def new_pivot(self, attributes: Mapping[str, Any] | None = None, exists: bool = False) -> Pivot:
        factory = self.pivot_class.from_raw_attributes if self.using_custom_class else self.pivot_class.from_attributes
        pivot = factory(self.parent, attributes or {}, self.table, exists, session=self._session)
        pivot.set_pivot_keys(self.foreign_pivot_key, self.related_pivot_key)
        pivot.relation = self
        return pivot

    def new_existing_pivot(self, attributes: Mapping[str, Any] | None = None) -> Pivot:
        return self.new_pivot(attributes, exists=True)

    # id parsing

    def _cast_key(self, key: Any) -> Any:
        return cast_key(key, get_key_type(self.related, self.related_key))

    def _parse_id(self, value: Any) -> Any:
        return getattr(value, self.related_key) if _is_model(value) else value

    def parse_ids(self, value: Any) -> list[Any]:
        """Flatten a key, a model, a mapping or an iterable of those into keys."""
        if value is None:
            return []

        if _is_model(value):
            return [self._parse_id(value)]

        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            return [value]

        return [self._parse_id(item) for item in value]

    def format_records_list(self, ids: Any) -> dict[Any, dict[str, Any]]:
        """Normalize *ids* into ``{cast key: per-id attributes}``, keeping order."""
        if isinstance(ids, Mapping):
            return {
                self._cast_key(self._parse_id(key)): dict(attributes or {})
                for key, attributes in ids.items()
            }

        return {self._cast_key(key): {} for key in self.parse_ids(ids)}

    # writing

    def _cast_attributes(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        if self.using_custom_class:
            return dict(self.new_pivot().fill(attributes).attributes)

        return dict(attributes)

    def _add_timestamps(self, record: dict[str, Any], exists: bool = False) -> dict[str, Any]:
        if not self.timestamps:
            return record

        now = fresh_timestamp()
        if not exists and self.created_at_column in self.table.c:
            record.setdefault(self.created_at_column, now)
        if self.updated_at_column in self.table.c:
            record.setdefault(self.updated_at_column, now)

        return record

    def base_attach_record(self, key: Any) -> dict[str, Any]:
        return {
            self.related_pivot_key: key,
            self.foreign_pivot_key: self.get_parent_key(),
            **self.pivot_values,
        }

    def format_attach_records(
        self,
        records: Mapping[Any, Mapping[str, Any]],
        attributes: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        formatted = []
        for key, own in records.items():
            record = self.base_attach_record(key)
            record.update(self._cast_attributes({**own, **attributes}))
            formatted.append(self._add_timestamps(record))

        return formatted

    def attach(self, ids: Any, attributes: Mapping[str, Any] | None = None, touch: bool = True) -> Self:
        """Insert one pivot row per id.

        Args:
            ids: A key, a related model, an iterable of either or a mapping
                ``key -> attributes``.
            attributes: Extra pivot attributes, overriding per-id ones.
            touch: Touch the configured owners afterwards.

        Returns:
            The relation, for chaining.

        Raises:
            StoreError: On a duplicate pair when the pivot table has a unique key.
        """
        records = self.format_attach_records(self.format_records_list(ids), attributes or {})
        if not records:
            return self

        if self.using_custom_class:
            for record in records:
                self.new_pivot(record).save()
        else:
            self._insert_records(records)

        if touch:
            self.touch_if_touching()

        return self

    def _insert_records(self, records: Sequence[Mapping[str, Any]]) -> None:
        # executemany needs the same keys in every parameter set
        batches: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for record in records:
            values = column_values(self.table, record)
            batches.setdefault(tuple(sorted(values)), []).append(values)

        for batch in batches.values():
            self.session.execute(sa.insert(self.table), batch)

    def detach(self, ids: Any = None, touch: bool = True) -> int:
        """Delete pivot rows of the parent, all of them when *ids* is ``None``.

        Returns:
            The number of deleted rows; ``0`` for an empty id set.
        """
        keys: list[Any] | None = None
        if ids is not None:
            keys = list(self.format_records_list(ids))
            if not keys:
                return 0

        if self.using_custom_class and keys is not None and not self._pivot_wheres:
            results = self._detach_using_custom_class(keys)
        else:
            query = sa.delete(self.table).where(*self._pivot_conditions())
            if keys is not None:
                query = query.where(self.table.c[self.related_pivot_key].in_(keys))
            results = self.session.execute(query).rowcount

        if touch and results:
            self.touch_if_touching()

        return results

    def _detach_using_custom_class(self, keys: Sequence[Any]) -> int:
        parent_key = self.get_parent_key()
        return sum(
            self.new_existing_pivot(
                {self.foreign_pivot_key: parent_key, self.related_pivot_key: key}
            ).delete(touch=False)
            for key in keys
        )

    def sync(self, ids: Any, detaching: bool = True) -> SyncChanges:
        """Make the parent's pivot rows match *ids*.

        Rows for missing keys are deleted (when *detaching*), new keys are
        attached in one batch and existing rows are updated only when the
        supplied attributes differ from the stored ones.
        """
        changes: SyncChanges = {"attached": [], "detached": [], "updated": []}
        records = self.format_records_list(ids)
        current = {self._cast_key(pivot.get_attribute(self.related_pivot_key)): pivot
                   for pivot in self.get_currently_attached_pivots()}

        if detaching:
            detach = [key for key in current if key not in records]
            if detach:
                self.detach(detach, touch=False)
                changes["detached"] = detach

        attached, updated = self._attach_new(records, current)
        changes["attached"] = attached
        changes["updated"] = updated

        if changes["attached"] or changes["detached"] or changes["updated"]:
            self.touch_if_touching()

        logger.debug("sync %s: %s", self.relation_name, changes)
        return changes

    def _attach_new(
        self,
        records: Mapping[Any, Mapping[str, Any]],
        current: Mapping[Any, Pivot],
    ) -> tuple[list[Any], list[Any]]:
        to_attach: dict[Any, Mapping[str, Any]] = {}
        updated: list[Any] = []
        for key, attributes in records.items():
            if key not in current:
                to_attach[key] = attributes
            elif attributes and self._update_loaded_pivot(current[key], key, attributes):
                updated.append(key)

        if to_attach:
            self.attach(to_attach, touch=False)

        return list(to_attach), updated

    def _update_loaded_pivot(self, pivot: Pivot, key: Any, attributes: Mapping[str, Any]) -> bool:
        pivot.fill(attributes)
        if not pivot.is_dirty(*attributes):
            return False

        if self.using_custom_class and not self._pivot_wheres:
            return pivot.save()

        values = self._add_timestamps(self._cast_attributes(pivot.get_dirty()), exists=True)
        values = column_values(self.table, values)
        self.session.execute(
            sa.update(self.table)
            .where(*self._pivot_conditions(), self.table.c[self.related_pivot_key] == key)
            .values(values)
        )
        pivot.sync_original()
        return True

    def sync_without_detaching(self, ids: Any) -> SyncChanges:
        return self.sync(ids, detaching=False)

    def sync_with_pivot_values(
        self,
        ids: Any,
        values: Mapping[str, Any],
        detaching: bool = True,
    ) -> SyncChanges:
        """Sync *ids*, giving every one of them the same pivot *values*."""
        return self.sync({key: dict(values) for key in self.parse_ids(ids)}, detaching)

    def toggle(self, ids: Any, touch: bool = True) -> ToggleChanges:
        """Detach the given ids that are attached and attach the others."""
        changes: ToggleChanges = {"attached": [], "detached": []}
        records = self.format_records_list(ids)
        current = set(self.all_related_ids())

        detach = [key for key in records if key in current]
        if detach:
            self.detach(detach, touch=False)
            changes["detached"] = detach

        attach = {key: attributes for key, attributes in records.items() if key not in current}
        if attach:
            self.attach(attach, touch=False)
            changes["attached"] = list(attach)

        if touch and (changes["attached"] or changes["detached"]):
            self.touch_if_touching()

        logger.debug("toggle %s: %s", self.relation_name, changes)
        return changes

    def update_existing_pivot(self, id_: Any, attributes: Mapping[str, Any], touch: bool = True) -> int:
        """Update the pivot row of one related key.

        Returns:
            The number of updated rows.
        """
        key = self._cast_key(self._parse_id(id_))
        if self.using_custom_class and not self._pivot_wheres:
            return self._update_existing_pivot_using_custom_class(key, attributes, touch)

        values = self._add_timestamps(self._cast_attributes(attributes), exists=True)
        values = column_values(self.table, values)
        updated = self.session.execute(
            sa.update(self.table)
            .where(*self._pivot_conditions(), self.table.c[self.related_pivot_key] == key)
            .values(values)
        ).rowcount

        if touch and updated:
            self.touch_if_touching()

        return updated

    def _update_existing_pivot_using_custom_class(
        self,
        key: Any,
        attributes: Mapping[str, Any],
        touch: bool,
    ) -> int:
        pivot = self._current_pivot(key)
        if pivot is None:
            return 0

        pivot.fill(attributes)
        updated = pivot.is_dirty() and pivot.save()
        if touch and updated:
            self.touch_if_touching()

        return int(updated)

    def save(self, model: R, pivot_attributes: Mapping[str, Any] | None = None, touch: bool = True) -> R:
        """Persist *model* and attach it to the parent."""
        self.session.add(model)
        self.session.flush()
        self.attach(model, pivot_attributes, touch)
        return model

    def create(
        self,
        attributes: Mapping[str, Any] | None = None,
        joining: Mapping[str, Any] | None = None,
        touch: bool = True,
    ) -> R:
        """Create a related model from *attributes* and attach it with *joining*."""
        return self.save(self.related(**(attributes or {})), joining, touch)

    # touching

    def touch_if_touching(self) -> None:
        """Refresh ``updated_at`` of the owners this relation is configured to touch.

        Runs in a savepoint; a failure is logged and leaves the pivot change alone.
        """
        if self.touch_parent:
            self._touch_quietly(self._touch_parent)
        if self.touch_related:
            self._touch_quietly(self._touch_related)

    def _touch_quietly(self, touch: Callable[[], None]) -> None:
        try:
            with self.session.begin_nested():
                touch()
        except exc.SQLAlchemyError as e:
            logger.warning("Touch of relation '%s' failed: %s", self.relation_name, e)

    def _touch_parent(self) -> None:
        model = type(self.parent)
        if UPDATED_AT not in model.__table__.c:
            return

        self.session.execute(
            sa.update(model)
            .where(get_primary_key(model) == getattr(self.parent, get_key_name(model)))
            .values({UPDATED_AT: fresh_timestamp()})
        )

    def _touch_related(self) -> None:
        if UPDATED_AT not in self.related.__table__.c:
            return

        ids = self.all_related_ids()
        if not ids:
            return

        self.session.execute(
            sa.update(self.related)
            .where(get_column(self.related, self.related_key).in_(ids))
            .values({UPDATED_AT: fresh_timestamp()})
        )
