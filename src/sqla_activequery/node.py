from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar, Union, final

from .datastructures import frozendict
from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .record import Record, RelationBuilder

RecordIdentifier = Union[str, "type[Record]"]


@final
class Node:
    """Singleton registry of record types.

    Every ``Record`` subclass registers itself here when the class is created,
    so relation targets can be named by string (``has_many("Order", ...)``)
    before the target class is defined, and a record factory can be handed a
    plain identifier instead of a class.
    """

    __instance: ClassVar[Node | None] = None
    _records: dict[str, type[Record]]

    def __new__(cls) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            instance._records = {}
            cls.__instance = instance

        return cls.__instance

    def register(self, model: type[Record]) -> None:
        """Register *model* under its class name and its qualified name."""
        self._records[model.__name__] = model
        self._records[f"{model.__module__}.{model.__qualname__}"] = model

    def resolve(self, identifier: RecordIdentifier) -> type[Record]:
        """Turn a record identifier (class or registered name) into the class.

        Raises:
            ConfigurationError: If a string identifier names no registered record type.
        """
        if not isinstance(identifier, str):
            return identifier

        try:
            return self._records[identifier]
        except KeyError:
            raise ConfigurationError(
                f"Unknown record type {identifier!r}. Registered: {sorted(self._records)}"
            ) from None

    def get(self, identifier: RecordIdentifier) -> Mapping[str, RelationBuilder]:
        """Get the relations declared by a record type, empty if it is not registered.

        Args:
            identifier: Record class or registered name.

        Returns:
            Mapping of relation name to relation builder.
        """
        model = self._records.get(identifier) if isinstance(identifier, str) else identifier
        if model is None:
            return frozendict()

        return model.__relations__

    def __getitem__(self, identifier: RecordIdentifier) -> Mapping[str, RelationBuilder]:
        """Look up relations of *identifier*, raising ``ConfigurationError`` if it is unknown."""
        return self.resolve(identifier).__relations__

    @property
    def records(self) -> Mapping[str, type[Record]]:
        """Registered record types keyed by name (read-only)."""
        return frozendict(self._records)

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, dropping every registration (primarily for tests)."""
        cls.__instance = None
