from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import ModelDictionary, frozendict
from .exceptions import ConfigurationError
from .keys import cast_key, compare_keys, dictionary_key
from .relation import Relation, set_relation
from .tools import build_loader, get_column, get_key_name, get_key_type, relationship_count


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from sqlalchemy.orm.strategy_options import _AbstractLoad

    from .registry import MorphRegistry

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=orm.DeclarativeBase)

_TypeKey = Union[str, type[orm.DeclarativeBase]]
_Constraint = Callable[[sa.Select[Any]], sa.Select[Any]]


class MorphTo(Relation[P, Any]):
    """Polymorphic belongs-to: the parent stores a discriminator and a key.

    Eager loading groups the parents by discriminator and issues exactly one
    query per distinct discriminator, then hangs every result on all the
    parents that share its ``(type, key)``::

        relation = MorphTo(comments[0], morph_type="commentable_type",
                           foreign_key="commentable_id", registry=registry,
                           relation_name="commentable")
        relation.morph_with({Post: ["author"]}).eager_load(comments)

    Per-type behaviour (extra loads, counts and constraints) only applies to
    the query of that type and is keyed by class or by discriminator.
    """

    __slots__ = (
        "_constraints",
        "_dictionary",
        "_eager_load_counts",
        "_eager_loads",
        "_models",
        "foreign_key",
        "morph_type",
        "owner_key",
        "registry",
    )

    def __init__(
        self,
        parent: P,
        *,
        morph_type: str,
        foreign_key: str,
        registry: MorphRegistry,
        relation_name: str,
        owner_key: str | None = None,
        session: orm.Session | None = None,
    ) -> None:
        current = getattr(parent, morph_type, None)
        related = registry.get(dictionary_key(current)) if current is not None else None
        super().__init__(parent, related or type(parent), relation_name=relation_name, session=session)

        self.morph_type = morph_type
        self.foreign_key = foreign_key
        self.owner_key = owner_key
        self.registry = registry
        self._dictionary: ModelDictionary[P] = ModelDictionary()
        self._models: list[P] = []
        self._eager_loads: frozendict[type[orm.DeclarativeBase], tuple[_AbstractLoad, ...]] = frozendict()
        self._eager_load_counts: frozendict[type[orm.DeclarativeBase], tuple[sa.Label[int], ...]] = frozendict()
        self._constraints: frozendict[type[orm.DeclarativeBase], _Constraint] = frozendict()

    # per-type configuration

    def _resolve_type(self, type_key: _TypeKey) -> type[orm.DeclarativeBase]:
        return type_key if isinstance(type_key, type) else self.registry.resolve(type_key)

    def morph_with(self, loads: Mapping[_TypeKey, Sequence[str | _AbstractLoad] | str]) -> Self:
        """Register extra eager loads for the query of each given type.

        Loads are relationship names, dotted paths (``"comments.author"``) or
        ready loader options.

        Raises:
            ConfigurationError: If a relationship name does not exist on the type.
        """
        resolved = {}
        for type_key, paths in loads.items():
            model = self._resolve_type(type_key)
            resolved[model] = tuple(
                build_loader(model, path) if isinstance(path, str) else path
                for path in ([paths] if isinstance(paths, str) else paths)
            )

        self._eager_loads = self._eager_loads.merge(resolved)
        return self

    def morph_with_count(self, counts: Mapping[_TypeKey, Sequence[str] | str]) -> Self:
        """Register relationship counts set as ``<relationship>_count`` on each result."""
        resolved = {}
        for type_key, names in counts.items():
            model = self._resolve_type(type_key)
            resolved[model] = tuple(
                relationship_count(model, name)
                for name in ([names] if isinstance(names, str) else names)
            )

        self._eager_load_counts = self._eager_load_counts.merge(resolved)
        return self

    def constrain(self, callbacks: Mapping[_TypeKey, _Constraint]) -> Self:
        """Register a callback receiving (and returning) the query of each given type."""
        resolved = {self._resolve_type(type_key): callback for type_key, callback in callbacks.items()}
        self._constraints = self._constraints.merge(resolved)
        return self

    # eager loading

    def add_eager_constraints(self, models: Sequence[P]) -> None:
        self._models = list(models)
        self._dictionary = ModelDictionary()
        for model in models:
            morph_type = getattr(model, self.morph_type)
            if morph_type is None:
                continue

            self._dictionary.add(
                dictionary_key(morph_type),
                dictionary_key(getattr(model, self.foreign_key)),
                model,
            )

    def get_dictionary(self) -> ModelDictionary[P]:
        return self._dictionary

    def get_eager(self, session: orm.Session | None = None) -> Sequence[P]:
        """Run one query per discriminator and match the results to the parents."""
        for type_key in self._dictionary.types():
            self.match_to_morph_parents(type_key, self.get_results_by_type(type_key, session))

        return self._models

    def match(self, models: Sequence[P], results: Sequence[Any]) -> Sequence[P]:
        # matched per type inside get_eager
        return models

    def _owner_key_for(self, model: type[orm.DeclarativeBase]) -> str:
        return self.owner_key or get_key_name(model)

    def _cast_group(self, type_key: Any, model: type[orm.DeclarativeBase]) -> dict[Any, list[P]]:
        """The dictionary bucket of one type, re-keyed by the target's key type."""
        key_type = get_key_type(model, self._owner_key_for(model))
        group: dict[Any, list[P]] = {}
        for key, parents in self._dictionary.group(type_key).items():
            if key is None or (key_type is str and not key):
                continue

            group.setdefault(cast_key(key, key_type), []).extend(parents)

        return group

    def gather_keys_by_type(self, type_key: Any) -> list[Any]:
        """Distinct foreign keys collected for *type_key*, cast to the target's key type."""
        return list(self._cast_group(type_key, self.registry.resolve(type_key)))

    def _build_query(self, model: type[orm.DeclarativeBase], keys: Sequence[Any]) -> sa.Select[Any]:
        counts = self._eager_load_counts.get(model, ())
        query = (
            sa.select(model, *counts)
            .where(get_column(model, self._owner_key_for(model)).in_(keys))
            .options(*self._eager_loads.get(model, ()))
        )
        if (constraint := self._constraints.get(model)) is not None:
            query = constraint(query)

        return query

    def _execute(
        self,
        model: type[orm.DeclarativeBase],
        keys: Sequence[Any],
        session: orm.Session | None,
    ) -> list[Any]:
        counts = self._eager_load_counts.get(model, ())
        results = []
        for row in self._session_for(session).execute(self._build_query(model, keys)).unique():
            instance = row[0]
            for count, value in zip(counts, row[1:]):
                setattr(instance, count.name, value)
            results.append(instance)

        return results

    def get_results_by_type(self, type_key: Any, session: orm.Session | None = None) -> list[Any]:
        model = self.registry.resolve(type_key)
        keys = self.gather_keys_by_type(type_key)
        if not keys:
            return []

        results = self._execute(model, keys, session)
        logger.debug(
            "morph_to %s: %d %s key(s) -> %d row(s)",
            self.relation_name,
            len(keys),
            type_key,
            len(results),
        )
        return results

    def match_to_morph_parents(self, type_key: Any, results: Sequence[Any]) -> None:
        model = self.registry.resolve(type_key)
        owner_key = self._owner_key_for(model)
        group = self._cast_group(type_key, model)
        key_type = get_key_type(model, owner_key)
        for result in results:
            owner_value = cast_key(dictionary_key(getattr(result, owner_key)), key_type)
            for parent in group.get(owner_value, ()):
                set_relation(parent, self.relation_name, result)

    # single parent

    def _current_target(self) -> tuple[type[orm.DeclarativeBase], Any] | None:
        morph_type = getattr(self.parent, self.morph_type)
        key = getattr(self.parent, self.foreign_key)
        if morph_type is None or key is None or key == "":
            return None

        model = self.registry.resolve(dictionary_key(morph_type))
        key_type = get_key_type(model, self._owner_key_for(model))
        return model, cast_key(dictionary_key(key), key_type)

    def get_query(self) -> sa.Select[Any]:
        """Query of the row the parent currently references.

        Raises:
            ConfigurationError: If the parent references nothing.
        """
        target = self._current_target()
        if target is None:
            raise ConfigurationError(
                f"MorphTo '{self.relation_name}' of {type(self.parent).__name__} references no model"
            )

        model, key = target
        return self._build_query(model, [key])

    def get_results(self, session: orm.Session | None = None) -> Any:
        """Load the related row of the parent, or ``None`` when it references nothing."""
        target = self._current_target()
        if target is None:
            return None

        model, key = target
        results = self._execute(model, [key], session)
        return results[0] if results else None

    def associate(self, model: orm.DeclarativeBase | None) -> P:
        """Point the parent at *model* in memory; nothing is written.

        Raises:
            ConfigurationError: If the class of *model* is not registered.
        """
        if model is None:
            return self.dissociate()

        owner_key = self.owner_key
        if not owner_key or getattr(model, owner_key, None) is None:
            owner_key = get_key_name(type(model))

        morph_type = self.registry.alias_for(model)
        setattr(self.parent, self.foreign_key, getattr(model, owner_key))
        setattr(self.parent, self.morph_type, morph_type)
        set_relation(self.parent, self.relation_name, model)
        self.related = type(model)
        return self.parent

    def dissociate(self) -> P:
        setattr(self.parent, self.foreign_key, None)
        setattr(self.parent, self.morph_type, None)
        set_relation(self.parent, self.relation_name, None)
        return self.parent

    def is_(self, model: Any) -> bool:
        """Whether the parent references *model* by discriminator and key."""
        if model is None:
            return False

        try:
            alias = self.registry.alias_for(model)
        except ConfigurationError:
            return False

        owner_key = self._owner_key_for(type(model))
        return compare_keys(getattr(self.parent, self.foreign_key), getattr(model, owner_key)) and (
            dictionary_key(getattr(self.parent, self.morph_type)) == alias
        )

    def is_not(self, model: Any) -> bool:
        return not self.is_(model)
