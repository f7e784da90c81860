from __future__ import annotations

import enum
import numbers
import re
from typing import Any, Final

from .exceptions import ConfigurationError


_INTEGER_RE: Final = re.compile(r"^\s*[+-]?\d+\s*$")


def dictionary_key(value: Any) -> Any:
    """Normalize a model attribute so it can be used as a dictionary key.

    Scalars (``None``, ``str``, ``bytes`` and numbers) pass through unchanged.
    Enum members are replaced by their underlying value, and any other object
    whose class defines ``__str__`` is stringified (``UUID``, ``datetime``...).

    Args:
        value: Attribute value read from a model.

    Returns:
        A hashable value suitable for dictionary lookups.

    Raises:
        ConfigurationError: If the value is an object without a string
            representation of its own.

    Example:
        >>> dictionary_key(Color.RED)
        'red'
        >>> dictionary_key(uuid.UUID(int=1))
        '00000000-0000-0000-0000-000000000001'
    """
    if value is None or isinstance(value, (str, bytes, numbers.Number)):
        return value

    if isinstance(value, enum.Enum):
        return dictionary_key(value.value)

    if type(value).__str__ is not object.__str__:
        return str(value)

    raise ConfigurationError(
        f"Model attribute value {value!r} is an object without a string "
        "representation and cannot be used as a dictionary key."
    )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INTEGER_RE.match(value):
        return int(value)

    return None


def compare_keys(first: Any, second: Any) -> bool:
    """Compare two key values coming from possibly different drivers.

    Either side ``None`` or empty never matches. When either side parses as an
    integer both are compared as integers, so ``5``, ``"5"`` and ``"05"`` are
    the same key. Everything else uses plain equality.
    """
    if first is None or second is None or first == "" or second == "":
        return False

    first_int, second_int = _as_int(first), _as_int(second)
    if first_int is not None or second_int is not None:
        return first_int is not None and first_int == second_int

    return bool(first == second)


def cast_key(value: Any, key_type: type | None) -> Any:
    """Swap *value* to the Python type a model declares for its key.

    Only ``int``, ``float`` and ``str`` are swapped; values that do not parse
    are returned as they are.
    """
    if value is None or key_type is None:
        return value

    value = dictionary_key(value)
    if key_type is int and not isinstance(value, bool):
        return as_int if (as_int := _as_int(value)) is not None else value

    if key_type is float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return value

    if key_type is str:
        return value.decode() if isinstance(value, bytes) else str(value)

    return value
