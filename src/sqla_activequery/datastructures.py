from __future__ import annotations

import sys
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa


if TYPE_CHECKING:
    from .core import ActiveQuery


K = TypeVar("K")
V = TypeVar("V")

Condition = Union[Mapping[str, Any], str, sa.ColumnElement[bool], sa.TextClause]
RelationCallback = Callable[["ActiveQuery[Any]"], Any]


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, insertion-ordered mapping with hash support.

    Used for everything that describes a relation and must not change once
    declared: relation links (``target column -> source column``), the
    per-class relation registry and the path/callback pairs of a ``join_with``
    request.  The hash is computed lazily, so values only need to be hashable
    when the mapping itself is hashed.

    Example:
        >>> link = frozendict({"customer_id": "id"})
        >>> link["customer_id"]
        'id'
        >>> link.copy(region_id="region_id")
        <frozendict {'customer_id': 'id', 'region_id': 'region_id'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Create a new frozendict with additional or replaced items."""
        return type(self)(self, **add_or_replace)

    def __or__(self, other: Mapping[K, V]) -> Self:
        return type(self)({**self._dict, **other})

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


@dataclass(slots=True, frozen=True)
class JoinClause:
    """One JOIN of a statement: ``<join_type> <table> ON <on>``.

    ``table`` keeps the textual form it was declared with (``"orders"`` or
    ``"orders o"``) because target-table identity is what join de-duplication
    keys on.
    """

    join_type: str
    table: str
    on: sa.ColumnElement[bool] | sa.TextClause | None = None

    def same_as(self, other: JoinClause) -> bool:
        """Structural equality: same join type, same target and equivalent ON clause."""
        if self.join_type != other.join_type or self.table != other.table:
            return False

        if self.on is None or other.on is None:
            return self.on is other.on

        return self.on.compare(other.on)


class ViaRelation(NamedTuple):
    """Indirection through a sibling relation declared on the same record type."""

    name: str
    query: ActiveQuery[Any]
    callable_used: bool = False


@dataclass(slots=True, frozen=True)
class JoinWithRequest:
    """A pending ``join_with`` call, compiled into joins by ``JoinBuilder``.

    ``relations`` maps each relation path (``"orders.items"``) to an optional
    callback that customizes the relation query before it is joined.
    """

    relations: frozendict[str, RelationCallback | None]
    eager_loading: bool | tuple[str, ...]
    join_type: str | frozendict[str, str]
