"""Active-record style relational queries on top of SQLAlchemy Core.

sqla_activequery maps table rows to ``Record`` subclasses whose relations are
declared as methods returning ``has_one`` / ``has_many`` queries.  An
``ActiveQuery`` joins relations into the main statement with ``join_with`` or
eager-loads them with ``with_`` in one extra query per relation, partitioning
the results back to their owners (including ``via`` junctions and inverse
back-references).
"""

from ._version import __version__, __version_tuple__
from .core import MAX_RELATION_DEPTH, ActiveQuery, JoinBuilder
from .datastructures import JoinClause, JoinWithRequest, ViaRelation, frozendict
from .exceptions import ActiveQueryError, ConfigurationError, InvalidFilterError, UnknownRelationError
from .node import Node
from .query import Query, compile_condition
from .record import Record, RecordFactory, relation
from .tools import get_primary_key, get_table_name, is_associative


__all__ = (
    "MAX_RELATION_DEPTH",
    "ActiveQuery",
    "ActiveQueryError",
    "ConfigurationError",
    "InvalidFilterError",
    "JoinBuilder",
    "JoinClause",
    "JoinWithRequest",
    "Node",
    "Query",
    "Record",
    "RecordFactory",
    "UnknownRelationError",
    "ViaRelation",
    "__version__",
    "__version_tuple__",
    "compile_condition",
    "frozendict",
    "get_primary_key",
    "get_table_name",
    "is_associative",
    "relation",
)
