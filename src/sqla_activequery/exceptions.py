from __future__ import annotations

from typing import Any


class ActiveQueryError(Exception):
    """Base class for every error raised by sqla_activequery itself.

    Errors coming from the database driver (``sqlalchemy.exc.DBAPIError``) or
    from a record factory are never wrapped and propagate unchanged.
    """


class ConfigurationError(ActiveQueryError, ValueError):
    """A record type or relation is declared in a way that can not be resolved.

    Raised for unknown record identifiers, missing primary keys, invalid links,
    unsupported join types and relation graphs nested deeper than
    ``MAX_RELATION_DEPTH``.  These are programming errors and are never retried.
    """


class UnknownRelationError(ConfigurationError):
    """A relation name was requested that the record type does not declare."""

    def __init__(self, record_type: type[Any], name: str) -> None:
        self.record_type = record_type
        self.name = name
        super().__init__(
            f"{record_type.__name__} has no relation named {name!r}. "
            f"Declared: {sorted(getattr(record_type, '__relations__', ()))}"
        )


class InvalidFilterError(ActiveQueryError, ValueError):
    """A structured filter contains a key that is not an allowed column reference."""
