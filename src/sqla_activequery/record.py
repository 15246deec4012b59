from __future__ import annotations

import sys
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import UnknownRelationError
from .node import Node, RecordIdentifier
from .tools import get_primary_key, get_table_name


if TYPE_CHECKING:
    from .core import ActiveQuery

R = TypeVar("R", bound="Record")
RelationBuilder = Callable[[Any], "ActiveQuery[Any]"]

_RELATION_MARKER = "__sqla_relation__"


def relation(method: Callable[[R], ActiveQuery[Any]]) -> Callable[[R], ActiveQuery[Any]]:
    """Mark a record method as a relation declaration.

    The method must return the relational query built by ``has_one`` or
    ``has_many``; it is collected into the class' ``__relations__`` mapping
    under its own name::

        class Customer(Record):
            __tablename__ = "customers"
            __primary_key__ = ("id",)

            @relation
            def orders(self) -> ActiveQuery[Order]:
                return self.has_many(Order, {"customer_id": "id"}).inverse_of("customer")
    """
    setattr(method, _RELATION_MARKER, True)
    return method


class Record:
    """A typed row of one table plus the relations populated for it.

    Subclasses declare ``__tablename__``, ``__primary_key__`` and optionally
    ``__columns__`` (the allow-list for filter keys).  Relations are methods
    decorated with :func:`relation`; they are looked up explicitly by name in
    ``__relations__``, never through attribute access.

    Column values are readable as ``record["col"]``, ``record.get("col")`` or
    ``record.col``; populated relations through ``get_related(name)``.
    """

    __tablename__: ClassVar[str]
    __primary_key__: ClassVar[tuple[str, ...]] = ()
    __columns__: ClassVar[tuple[str, ...]] = ()
    __relations__: ClassVar[frozendict[str, RelationBuilder]] = frozendict()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)

        relations = dict(cls.__relations__)
        relations.update(
            (name, value) for name, value in vars(cls).items() if getattr(value, _RELATION_MARKER, False)
        )
        cls.__relations__ = frozendict(relations)
        Node().register(cls)

    def __init__(
        self,
        connection: sa.Connection | None = None,
        factory: RecordFactory | None = None,
        table_name: str = "",
    ) -> None:
        self.connection = connection
        self.factory = factory
        self._table_name = table_name
        self._attributes: dict[str, Any] = {}
        self._related: dict[str, Any] = {}

    @classmethod
    def find(cls, connection: sa.Connection) -> ActiveQuery[Self]:
        """Start a query for this record type on *connection*."""
        from .core import ActiveQuery

        return ActiveQuery(cls, connection)

    @classmethod
    def primary_key(cls) -> tuple[str, ...]:
        return get_primary_key(cls)

    @property
    def table_name(self) -> str:
        """The table this instance maps to (honours a factory-supplied override)."""
        return self._table_name or get_table_name(type(self))

    # -- attributes ----------------------------------------------------------

    def populate_record(self, row: Mapping[str, Any]) -> None:
        self._attributes.update(row)

    @property
    def attributes(self) -> dict[str, Any]:
        return dict(self._attributes)

    def get(self, name: str, default: Any = None) -> Any:
        return self._attributes.get(name, default)

    def get_primary_key(self, as_mapping: bool = False) -> Any:
        """Primary-key value: a scalar for single-column keys, else a tuple (or a dict with *as_mapping*)."""
        keys = self.primary_key()
        if as_mapping:
            return {key: self.get(key) for key in keys}

        return self.get(keys[0]) if len(keys) == 1 else tuple(self.get(key) for key in keys)

    def __getitem__(self, name: str) -> Any:
        return self._attributes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._attributes

    def __getattr__(self, name: str) -> Any:
        attributes = self.__dict__.get("_attributes", {})
        if name in attributes:
            return attributes[name]

        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._attributes!r}>"

    # -- relations -----------------------------------------------------------

    def get_relation(self, name: str) -> ActiveQuery[Any]:
        """Build the relational query declared under *name*.

        Raises:
            UnknownRelationError: If the record type declares no such relation.
        """
        try:
            builder = type(self).__relations__[name]
        except KeyError:
            raise UnknownRelationError(type(self), name) from None

        return builder(self)

    def has_one(self, target: RecordIdentifier, link: Mapping[str, str]) -> ActiveQuery[Any]:
        """Declare a to-one relation; *link* maps target columns to columns of this record."""
        return self._create_relation_query(target, link, multiple=False)

    def has_many(self, target: RecordIdentifier, link: Mapping[str, str]) -> ActiveQuery[Any]:
        """Declare a to-many relation; *link* maps target columns to columns of this record."""
        return self._create_relation_query(target, link, multiple=True)

    def _create_relation_query(
        self, target: RecordIdentifier, link: Mapping[str, str], *, multiple: bool
    ) -> ActiveQuery[Any]:
        from .core import ActiveQuery

        query: ActiveQuery[Any] = ActiveQuery(target, self.connection, factory=self.factory)
        query.primary_model = self

        return query.link(link).multiple(multiple)

    def get_related(self, name: str) -> Any:
        """Value of relation *name*, querying it lazily on first access."""
        if name in self._related:
            return self._related[name]

        value = self.get_relation(name).find_for(name, self)
        self.populate_relation(name, value)

        return value

    def populate_relation(self, name: str, value: Any) -> None:
        self._related[name] = value

    def is_relation_populated(self, name: str) -> bool:
        return name in self._related

    def reset_relation(self, name: str) -> None:
        self._related.pop(name, None)

    @property
    def related_records(self) -> dict[str, Any]:
        return dict(self._related)


class RecordFactory:
    """Creates empty record instances for queries.

    Subclass and override ``create`` to plug in dependency injection; whatever
    it raises propagates to the caller unchanged.
    """

    def create(
        self,
        record_type: RecordIdentifier,
        table_name: str = "",
        connection: sa.Connection | None = None,
    ) -> Record:
        model = Node().resolve(record_type)

        return model(connection=connection, factory=self, table_name=table_name)
