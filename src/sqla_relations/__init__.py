"""Polymorphic, one-of-many and pivot relations for SQLAlchemy declarative models.

sqla_relations resolves polymorphic ``morph_to`` relations in one query per
discriminator, narrows one-to-many relations to a single row per parent with
``latest_of_many`` / ``oldest_of_many`` and reconciles many-to-many pivot
tables (plain or polymorphic) with ``attach`` / ``detach`` / ``sync`` /
``toggle``. Statements run through the ``orm.Session`` the parent belongs
to; transactions stay with the caller.
"""

from ._version import __version__, __version_tuple__
from .belongs_to_many import DEFAULT_PIVOT_ACCESSOR, BelongsToMany
from .concerns import HasRelations
from .datastructures import ModelDictionary, SyncChanges, ToggleChanges, frozendict
from .exceptions import ConfigurationError, StoreError
from .has_one import HasOne, HasOneOrMany, MorphOne
from .keys import cast_key, compare_keys, dictionary_key
from .morph_to import MorphTo
from .morph_to_many import MorphToMany
from .one_of_many import DEFAULT_ONE_OF_MANY_AGGREGATE, CanBeOneOfMany
from .pivot import CREATED_AT, UPDATED_AT, MorphPivot, Pivot
from .registry import MorphRegistry, get_morph_map
from .relation import Relation, get_relation, set_relation
from .tools import (
    add_conditions,
    cache_clear,
    cache_info,
    get_primary_key,
    get_table_name,
    unique_scalars,
)


__all__ = (
    "CREATED_AT",
    "DEFAULT_ONE_OF_MANY_AGGREGATE",
    "DEFAULT_PIVOT_ACCESSOR",
    "UPDATED_AT",
    "BelongsToMany",
    "CanBeOneOfMany",
    "ConfigurationError",
    "HasOne",
    "HasOneOrMany",
    "HasRelations",
    "ModelDictionary",
    "MorphOne",
    "MorphPivot",
    "MorphRegistry",
    "MorphTo",
    "MorphToMany",
    "Pivot",
    "Relation",
    "StoreError",
    "SyncChanges",
    "ToggleChanges",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "cache_clear",
    "cache_info",
    "cast_key",
    "compare_keys",
    "dictionary_key",
    "frozendict",
    "get_morph_map",
    "get_primary_key",
    "get_relation",
    "get_table_name",
    "set_relation",
    "unique_scalars",
)
