from __future__ import annotations

import sys
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Final

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .keys import cast_key
from .tools import column_python_type, column_values, fresh_timestamp, get_column


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .belongs_to_many import BelongsToMany

CREATED_AT: Final[str] = "created_at"
UPDATED_AT: Final[str] = "updated_at"
_QUEUEABLE_SEPARATOR: Final[str] = ":"
_CASTABLE_TYPES: Final[tuple[type, ...]] = (int, float, str)


class Pivot:
    """One row of a pivot (join) table.

    A pivot row is not a mapped entity: it lives on a plain ``sa.Table`` and
    is identified by the ``(foreign_key, related_key)`` pair. A populated
    ``key_name`` attribute switches identity to that single column instead.

    Subclass it and pass the subclass to ``BelongsToMany.using`` to get
    per-row lifecycle hooks. Each hook is a method named after its event
    (``saving``, ``creating``, ``created``, ``updating``, ``updated``,
    ``saved``, ``deleting``, ``deleted``); returning ``False`` from
    ``saving``, ``creating``, ``updating`` or ``deleting`` cancels the write.

    Example:
        >>> class TaggedPivot(Pivot):
        ...     casts = frozendict(priority=int)
        ...
        ...     def creating(self) -> bool | None:
        ...         self.set_attribute("role", self.get_attribute("role") or "member")
    """

    key_name: ClassVar[str] = "id"
    casts: ClassVar[Mapping[str, Callable[[Any], Any]]] = frozendict()
    created_at_column: ClassVar[str] = CREATED_AT
    updated_at_column: ClassVar[str] = UPDATED_AT

    def __init__(
        self,
        table: sa.Table,
        *,
        pivot_parent: orm.DeclarativeBase | None = None,
        exists: bool = False,
        session: orm.Session | None = None,
    ) -> None:
        self.table = table
        self.pivot_parent = pivot_parent
        self.exists = exists
        self.timestamps = False
        self.attributes: dict[str, Any] = {}
        self.original: dict[str, Any] = {}
        self.foreign_key: str | None = None
        self.related_key: str | None = None
        self.relation: BelongsToMany[Any, Any] | None = None
        self._session = session

    @classmethod
    def from_attributes(
        cls,
        parent: orm.DeclarativeBase | None,
        attributes: Mapping[str, Any],
        table: sa.Table,
        exists: bool = False,
        *,
        session: orm.Session | None = None,
    ) -> Self:
        """Create a pivot row, running *attributes* through ``casts``."""
        instance = cls(table, pivot_parent=parent, exists=exists, session=session)
        instance.timestamps = instance.has_timestamp_attributes(attributes)
        instance.fill(attributes).sync_original()
        return instance

    @classmethod
    def from_raw_attributes(
        cls,
        parent: orm.DeclarativeBase | None,
        attributes: Mapping[str, Any],
        table: sa.Table,
        exists: bool = False,
        *,
        session: orm.Session | None = None,
    ) -> Self:
        """Create a pivot row from values exactly as read from the store."""
        instance = cls.from_attributes(parent, {}, table, exists, session=session)
        instance.timestamps = instance.has_timestamp_attributes(attributes)
        instance.attributes = {**instance.original, **attributes}
        if exists:
            instance.sync_original()

        return instance

    @property
    def session(self) -> orm.Session:
        if self._session is not None:
            return self._session

        session = orm.object_session(self.pivot_parent) if self.pivot_parent is not None else None
        if session is None:
            raise ConfigurationError(f"Pivot row of '{self.table.name}' is not bound to a session")

        return session

    def set_pivot_keys(self, foreign_key: str, related_key: str) -> Self:
        self.foreign_key = foreign_key
        self.related_key = related_key
        return self

    def fill(self, attributes: Mapping[str, Any]) -> Self:
        for key, value in attributes.items():
            self.set_attribute(key, value)

        return self

    def set_attribute(self, key: str, value: Any) -> Self:
        cast = self.casts.get(key)
        self.attributes[key] = cast(value) if cast is not None and value is not None else value
        return self

    def get_attribute(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.attributes[key]

    def get_original(self, key: str | None = None, default: Any = None) -> Any:
        if key is None:
            return dict(self.original)

        return self.original.get(key, default)

    def sync_original(self) -> Self:
        self.original = dict(self.attributes)
        return self

    def get_dirty(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.attributes.items()
            if key not in self.original or not self.original_is_equivalent(key, value)
        }

    def original_is_equivalent(self, key: str, value: Any) -> bool:
        """Whether *value* matches the original of *key* once both take the column's type.

        ``"4"`` and ``4`` are equal on an integer column; ``"5"`` and ``"05"``
        differ on a string one.
        """
        original = self.original.get(key)
        if value == original:
            return True

        if value is None or original is None or key not in self.table.c:
            return False

        key_type = column_python_type(self.table.c[key])
        if key_type not in _CASTABLE_TYPES:
            return False

        return bool(cast_key(value, key_type) == cast_key(original, key_type))

    def is_dirty(self, *keys: str) -> bool:
        dirty = self.get_dirty()
        if not keys:
            return bool(dirty)

        return any(key in dirty for key in keys)

    def get_key(self) -> Any:
        return self.attributes.get(self.key_name)

    def has_timestamp_attributes(self, attributes: Mapping[str, Any] | None = None) -> bool:
        return self.created_at_column in (self.attributes if attributes is None else attributes)

    def _uses_single_key(self) -> bool:
        return self.key_name in self.table.c and self.get_key() is not None

    def _identity(self) -> tuple[Any, ...]:
        if self._uses_single_key():
            return (self.table.name, self.get_original(self.key_name, self.get_key()))

        if self.foreign_key is None or self.related_key is None:
            raise ConfigurationError(
                f"Pivot row of '{self.table.name}' has neither a '{self.key_name}' "
                "value nor pivot keys to identify it"
            )

        return (
            self.table.name,
            self.get_original(self.foreign_key, self.get_attribute(self.foreign_key)),
            self.get_original(self.related_key, self.get_attribute(self.related_key)),
        )

    def _identity_conditions(self) -> list[sa.ColumnElement[bool]]:
        """WHERE clause addressing this row, built from its original key values."""
        identity = self._identity()
        if len(identity) == 2:
            return [self.table.c[self.key_name] == identity[1]]

        assert self.foreign_key is not None and self.related_key is not None
        return [
            self.table.c[self.foreign_key] == identity[1],
            self.table.c[self.related_key] == identity[2],
        ]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Pivot):
            return NotImplemented

        return self._identity() == other._identity()

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.table.name} {self.attributes!r}>"

    # lifecycle hooks, overridden by subclasses

    def saving(self) -> bool | None:
        return None

    def saved(self) -> None:
        return None

    def creating(self) -> bool | None:
        return None

    def created(self) -> None:
        return None

    def updating(self) -> bool | None:
        return None

    def updated(self) -> None:
        return None

    def deleting(self) -> bool | None:
        return None

    def deleted(self) -> None:
        return None

    def _fire(self, event: str) -> bool:
        return getattr(self, event)() is not False

    def _column_values(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        return column_values(self.table, attributes)

    def _update_timestamps(self) -> None:
        now = fresh_timestamp()
        if self.updated_at_column in self.table.c and not self.is_dirty(self.updated_at_column):
            self.set_attribute(self.updated_at_column, now)

        if (
            not self.exists
            and self.created_at_column in self.table.c
            and not self.is_dirty(self.created_at_column)
        ):
            self.set_attribute(self.created_at_column, now)

    def save(self) -> bool:
        """Insert the row, or update its dirty attributes when it exists.

        Returns:
            ``False`` if a hook cancelled the write, ``True`` otherwise.
        """
        if not self._fire("saving"):
            return False

        saved = self._perform_update() if self.exists else self._perform_insert()
        if saved:
            self.saved()
            self.sync_original()

        return saved

    def _perform_insert(self) -> bool:
        if not self._fire("creating"):
            return False

        if self.timestamps:
            self._update_timestamps()

        self.session.execute(sa.insert(self.table).values(self._column_values(self.attributes)))
        self.exists = True
        self.created()
        return True

    def _perform_update(self) -> bool:
        if not self._fire("updating"):
            return False

        if self.timestamps and self.is_dirty():
            self._update_timestamps()

        dirty = self._column_values(self.get_dirty())
        if dirty:
            self.session.execute(
                sa.update(self.table).where(*self._identity_conditions()).values(dirty)
            )
            self.updated()

        return True

    def delete(self, *, touch: bool = True) -> int:
        """Delete the row by its identity.

        Returns:
            ``1`` if a row was removed, ``0`` otherwise (including a
            cancelled ``deleting`` hook).
        """
        if not self._fire("deleting"):
            return 0

        result = self.session.execute(sa.delete(self.table).where(*self._identity_conditions()))
        self.exists = False
        removed = 1 if result.rowcount else 0
        if removed and touch:
            self.touch_owners()

        self.deleted()
        return removed

    def touch_owners(self) -> None:
        if self.relation is not None:
            self.relation.touch_if_touching()

    def get_queueable_id(self) -> Any:
        """Identity that survives serialization.

        Composite rows encode as ``"<fk>:<fk value>:<rk>:<rk value>"``.
        """
        if self._uses_single_key():
            return self.get_key()

        _, foreign_value, related_value = self._identity()
        return _QUEUEABLE_SEPARATOR.join(
            [str(self.foreign_key), str(foreign_value), str(self.related_key), str(related_value)]
        )

    def new_query_for_restoration(self, ids: Any) -> sa.Select[Any]:
        """Build a select restoring the row(s) behind queueable ids.

        Raises:
            ConfigurationError: If a composite id does not split into exactly
                four segments.
        """
        if isinstance(ids, (list, tuple, set, frozenset)):
            return self._new_query_for_collection_restoration(list(ids))

        query = sa.select(self.table)
        if not isinstance(ids, str) or _QUEUEABLE_SEPARATOR not in ids:
            return query.where(self.table.c[self.key_name] == ids)

        return query.where(*self._decode_queueable_id(ids))

    def _new_query_for_collection_restoration(self, ids: Sequence[Any]) -> sa.Select[Any]:
        query = sa.select(self.table)
        if not ids or not isinstance(ids[0], str) or _QUEUEABLE_SEPARATOR not in ids[0]:
            return query.where(self.table.c[self.key_name].in_(ids))

        return query.where(sa.or_(*(sa.and_(*self._decode_queueable_id(id_)) for id_ in ids)))

    def _decode_queueable_id(self, queueable_id: str) -> list[sa.ColumnElement[bool]]:
        segments = queueable_id.split(_QUEUEABLE_SEPARATOR)
        if len(segments) != 4:
            raise ConfigurationError(
                f"Ambiguous pivot identity {queueable_id!r}: expected "
                "'<foreign key>:<value>:<related key>:<value>'"
            )

        foreign_key, foreign_value, related_key, related_value = segments
        foreign_column = get_column(self.table, foreign_key)
        related_column = get_column(self.table, related_key)
        return [
            foreign_column == cast_key(foreign_value, column_python_type(foreign_column)),
            related_column == cast_key(related_value, column_python_type(related_column)),
        ]


class MorphPivot(Pivot):
    """Pivot row of a polymorphic many-to-many table.

    The discriminator column (``morph_type``) and the value this relation
    writes into it (``morph_class``) are part of the row identity, so saving
    or deleting a row never reaches rows of another type sharing the same
    pair of keys. Neither is written from the attributes.
    """

    def __init__(
        self,
        table: sa.Table,
        *,
        pivot_parent: orm.DeclarativeBase | None = None,
        exists: bool = False,
        session: orm.Session | None = None,
    ) -> None:
        super().__init__(table, pivot_parent=pivot_parent, exists=exists, session=session)
        self.morph_type: str | None = None
        self.morph_class: Any = None

    def set_morph_type(self, morph_type: str) -> Self:
        get_column(self.table, morph_type)
        self.morph_type = morph_type
        return self

    def get_morph_type(self) -> str | None:
        return self.morph_type

    def set_morph_class(self, morph_class: Any) -> Self:
        self.morph_class = morph_class
        return self

    def _identity(self) -> tuple[Any, ...]:
        identity = super()._identity()
        if len(identity) == 2:
            return identity

        return (*identity, self.morph_type, self.morph_class)

    def _identity_conditions(self) -> list[sa.ColumnElement[bool]]:
        conditions = super()._identity_conditions()
        if self.morph_type is not None:
            conditions.append(self.table.c[self.morph_type] == self.morph_class)

        return conditions

    def get_queueable_id(self) -> Any:
        """Identity that survives serialization.

        Composite rows encode as
        ``"<fk>:<fk value>:<rk>:<rk value>:<morph type>:<morph class>"``.
        """
        if self._uses_single_key():
            return self.get_key()

        return _QUEUEABLE_SEPARATOR.join(
            [str(super().get_queueable_id()), str(self.morph_type), str(self.morph_class)]
        )

    def _decode_queueable_id(self, queueable_id: str) -> list[sa.ColumnElement[bool]]:
        segments = queueable_id.split(_QUEUEABLE_SEPARATOR)
        if len(segments) != 6:
            raise ConfigurationError(
                f"Ambiguous pivot identity {queueable_id!r}: expected "
                "'<foreign key>:<value>:<related key>:<value>:<morph type>:<morph class>'"
            )

        conditions = super()._decode_queueable_id(_QUEUEABLE_SEPARATOR.join(segments[:4]))
        conditions.append(get_column(self.table, segments[4]) == segments[5])
        return conditions
