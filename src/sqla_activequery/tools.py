from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final, TypeVar, Union

import sqlalchemy as sa

from .exceptions import ConfigurationError, InvalidFilterError


if TYPE_CHECKING:
    from .record import Record


T = TypeVar("T", bound="Record")
_R = TypeVar("_R")

IndexBy = Union[str, Callable[[Any], Any], None]

_ALIASED_NAME: Final[re.Pattern[str]] = re.compile(r"^(.*?)(?:\s+AS\s+|\s+)(\w+)$", re.IGNORECASE)
_COLUMN_REFERENCE: Final[re.Pattern[str]] = re.compile(r"^(?:([A-Za-z_]\w*)\.)?([A-Za-z_]\w*)$")


def column(name: str) -> sa.ColumnElement[Any]:
    """Build a column reference usable in WHERE/ON clauses.

    Qualified names (``"o.customer_id"``) are rendered verbatim through
    ``literal_column`` so that they never pull an implicit FROM entry into the
    statement; bare names go through ``sa.column`` and get quoted as needed.
    """
    if "." in name:
        return sa.literal_column(name)

    return sa.column(name)


def split_alias(name: str) -> tuple[str, str | None]:
    """Split ``"orders o"`` / ``"orders AS o"`` into ``("orders", "o")``.

    Returns ``(name, None)`` when no alias is present.
    """
    name = name.strip()
    if (match := _ALIASED_NAME.match(name)) is not None:
        return match.group(1), match.group(2)

    return name, None


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return ``__tablename__`` for *model* (cached)."""
    result = getattr(model, "__tablename__", None)
    if not result:
        raise ConfigurationError(f"Cannot determine tablename for {model.__name__}")

    return result


@lru_cache
def _get_primary_key(model: type[T]) -> tuple[str, ...]:
    """Return the declared primary-key column names of *model* (cached)."""
    return tuple(getattr(model, "__primary_key__", ()))


def get_table_name(model: type[T]) -> str:
    """Get the table name declared by a record type.

    Raises:
        ConfigurationError: If the record type declares no ``__tablename__``.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> tuple[str, ...]:
    """Get the primary-key column names declared by a record type.

    An empty tuple means the type has no primary key; callers that need one
    raise ``ConfigurationError`` themselves.
    """
    return _get_primary_key(model)


def is_associative(condition: Mapping[Any, Any]) -> bool:
    """Tell named-column filters apart from positional value lists.

    A mapping is associative when every key is a ``str`` and positional when
    every key is an ``int``.  Anything mixed is rejected.

    Raises:
        InvalidFilterError: If the mapping mixes ``int`` and ``str`` keys.
    """
    if not condition:
        return False

    kinds = {isinstance(key, str) for key in condition}
    if len(kinds) > 1:
        raise InvalidFilterError(
            f"Condition mixes positional and named keys: {sorted(map(repr, condition))}"
        )

    return kinds.pop()


def filter_condition(
    condition: Mapping[str, Any],
    aliases: Iterable[str],
    columns: Sequence[str] = (),
) -> dict[str, Any]:
    """Validate the keys of an associative filter against an allow-list.

    Each key must be ``column`` or ``alias.column`` where ``alias`` is one of
    *aliases* and ``column`` is one of *columns* (or, when the record type
    declares no columns, any identifier not starting with a digit).

    Raises:
        InvalidFilterError: On the first key that is not an allowed reference.
    """
    allowed_aliases = set(aliases)
    allowed_columns = set(columns)
    result: dict[str, Any] = {}

    for key, value in condition.items():
        match = _COLUMN_REFERENCE.match(key) if isinstance(key, str) else None
        if (
            match is None
            or (match.group(1) is not None and match.group(1) not in allowed_aliases)
            or (allowed_columns and match.group(2) not in allowed_columns)
        ):
            raise InvalidFilterError(f"Key {key!r} is not a column name and can not be used as a filter")

        result[key] = list(value) if isinstance(value, (list, tuple, set, frozenset)) else value

    return result


def get_value(model: Any, name: str) -> Any:
    """Read a column (or, for array rows, a populated relation) from a record or row dict."""
    return model.get(name)


def get_model_key(model: Any, columns: Sequence[str]) -> Any:
    """Bucket key of *model* for the given link columns.

    A single column yields the raw value; composite links yield a tuple so that
    the key stays hashable and order-sensitive.
    """
    if len(columns) == 1:
        return _normalize_key(get_value(model, columns[0]))

    return tuple(_normalize_key(get_value(model, name)) for name in columns)


def _normalize_key(value: Any) -> Any:
    if isinstance(value, (list, dict, set)):
        return repr(value)

    return value


def index_models(models: Sequence[_R], index_by: IndexBy) -> list[_R] | dict[Any, _R]:
    """Re-key a population result.

    ``None`` keeps the sequence; a column name or a callable produce a dict,
    last write winning on duplicate keys.
    """
    if index_by is None:
        return list(models)

    if callable(index_by):
        return {index_by(model): model for model in models}

    return {get_value(model, index_by): model for model in models}
