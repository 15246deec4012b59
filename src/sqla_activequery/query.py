from __future__ import annotations

import copy
import logging
import sys
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Final, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy.sql.expression import Grouping

from .datastructures import Condition, JoinClause, frozendict
from .exceptions import ConfigurationError
from .tools import IndexBy, column, index_models, split_alias


logger = logging.getLogger(__name__)

JOIN_TYPES: Final[frozendict[str, frozendict[str, bool]]] = frozendict({
    "JOIN": frozendict(),
    "INNER JOIN": frozendict(),
    "LEFT JOIN": frozendict(isouter=True),
    "LEFT OUTER JOIN": frozendict(isouter=True),
    "FULL JOIN": frozendict(full=True),
    "FULL OUTER JOIN": frozendict(full=True),
})
DEFAULT_BATCH_SIZE: Final[int] = 100

Statement = Union[sa.Select[Any], sa.CompoundSelect, sa.TextClause]
ColumnSpec = Union[str, sa.ColumnElement[Any]]


def compile_condition(condition: Condition | None) -> sa.ColumnElement[bool] | None:
    """Turn any supported condition format into a SQLAlchemy boolean clause.

    * ``{"col": value}`` -- ``=``; ``None`` becomes ``IS NULL``, a list/tuple/set
      becomes ``IN`` and a ``Query`` becomes ``IN (subquery)``.  Several keys are
      combined with ``AND``.
    * a raw SQL string -- wrapped in parentheses; ``:name`` placeholders are
      bound from the query ``params``.
    * any SQLAlchemy clause -- used as is.
    """
    if condition is None:
        return None

    if isinstance(condition, str):
        return Grouping(sa.text(condition))

    if isinstance(condition, sa.TextClause):
        return Grouping(condition)

    if isinstance(condition, Mapping):
        clauses = [_hash_clause(key, value) for key, value in condition.items()]
        if not clauses:
            return None

        return clauses[0] if len(clauses) == 1 else sa.and_(*clauses)

    if isinstance(condition, sa.ColumnElement):
        return condition

    raise TypeError(f"Unsupported condition type: {type(condition).__name__}")


def _hash_clause(key: str, value: Any) -> sa.ColumnElement[bool]:
    col = column(key)
    if value is None:
        return col.is_(None)

    if isinstance(value, Query):
        return col.in_(value.build_sql())

    if isinstance(value, (list, tuple, set, frozenset)):
        return col.in_(list(value))

    return col == value


def _and(left: sa.ColumnElement[bool] | None, right: sa.ColumnElement[bool] | None) -> sa.ColumnElement[bool] | None:
    if left is None:
        return right

    return left if right is None else sa.and_(left, right)


def _or(left: sa.ColumnElement[bool] | None, right: sa.ColumnElement[bool] | None) -> sa.ColumnElement[bool] | None:
    if left is None:
        return right

    return left if right is None else sa.or_(left, right)


def _from_clause(table: str, alias: str | None) -> sa.FromClause:
    schema, _, name = table.rpartition(".")
    clause = sa.table(name, schema=schema or None)

    return clause.alias(alias) if alias and alias != table else clause


def _select_column(spec: ColumnSpec) -> sa.ColumnElement[Any]:
    return sa.literal_column(spec) if isinstance(spec, str) else spec


def _order_column(spec: ColumnSpec) -> Any:
    return sa.text(spec) if isinstance(spec, str) else spec


class Query:
    """Generic, dialect-independent SELECT state compiled to SQLAlchemy Core.

    Every setter mutates the query and returns it so calls can be chained.
    ``build()`` turns the state into an ``sa.Select`` and the execution helpers
    (``all``, ``one``, ``scalar``, ``column``, ``count``, ``exists``, ``batch``,
    ``each``) run it on the bound ``sqlalchemy.Connection``, returning plain
    row dicts.
    """

    def __init__(self, connection: sa.Connection | None = None) -> None:
        self.connection = connection
        self._select: list[ColumnSpec] = []
        self._distinct = False
        self._from: list[tuple[str, str | None]] = []
        self._where: sa.ColumnElement[bool] | None = None
        self._joins: list[JoinClause] = []
        self._order_by: list[ColumnSpec] = []
        self._group_by: list[ColumnSpec] = []
        self._having: sa.ColumnElement[bool] | None = None
        self._limit: int | None = None
        self._offset: int | None = None
        self._unions: list[tuple[Query, bool]] = []
        self._params: dict[str, Any] = {}
        self._index_by: IndexBy = None
        self._emulate_execution = False

    # -- state ---------------------------------------------------------------

    def select(self, *columns: ColumnSpec) -> Self:
        self._select = list(columns)
        return self

    def add_select(self, *columns: ColumnSpec) -> Self:
        self._select.extend(columns)
        return self

    def distinct(self, value: bool = True) -> Self:
        self._distinct = value
        return self

    def from_(self, *tables: str | Mapping[str, str]) -> Self:
        """Set the FROM tables: ``"customers"``, ``"customers c"`` or ``{"c": "customers"}``."""
        self._from = []
        for table in tables:
            if isinstance(table, Mapping):
                self._from.extend((name, alias) for alias, name in table.items())
            else:
                self._from.append(split_alias(table))

        return self

    def where(self, condition: Condition | None, params: Mapping[str, Any] | None = None) -> Self:
        self._where = compile_condition(condition)
        return self.add_params(params)

    def and_where(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        self._where = _and(self._where, compile_condition(condition))
        return self.add_params(params)

    def or_where(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        self._where = _or(self._where, compile_condition(condition))
        return self.add_params(params)

    def join(
        self,
        join_type: str,
        table: str,
        on: Condition | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Self:
        """Append ``<join_type> <table> ON <on>``.

        Raises:
            ConfigurationError: If *join_type* is not one of ``JOIN_TYPES``.
        """
        join_type = " ".join(join_type.upper().split())
        if join_type not in JOIN_TYPES:
            raise ConfigurationError(f"Unsupported join type {join_type!r}. Use one of {list(JOIN_TYPES)}")

        self._joins.append(JoinClause(join_type, table, compile_condition(on)))
        return self.add_params(params)

    def inner_join(self, table: str, on: Condition | None = None, params: Mapping[str, Any] | None = None) -> Self:
        return self.join("INNER JOIN", table, on, params)

    def left_join(self, table: str, on: Condition | None = None, params: Mapping[str, Any] | None = None) -> Self:
        return self.join("LEFT JOIN", table, on, params)

    def order_by(self, *columns: ColumnSpec) -> Self:
        self._order_by = list(columns)
        return self

    def add_order_by(self, *columns: ColumnSpec) -> Self:
        self._order_by.extend(columns)
        return self

    def group_by(self, *columns: ColumnSpec) -> Self:
        self._group_by = list(columns)
        return self

    def add_group_by(self, *columns: ColumnSpec) -> Self:
        self._group_by.extend(columns)
        return self

    def having(self, condition: Condition | None, params: Mapping[str, Any] | None = None) -> Self:
        self._having = compile_condition(condition)
        return self.add_params(params)

    def and_having(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        self._having = _and(self._having, compile_condition(condition))
        return self.add_params(params)

    def limit(self, value: int | None) -> Self:
        self._limit = value
        return self

    def offset(self, value: int | None) -> Self:
        self._offset = value
        return self

    def union(self, query: Query, all_: bool = False) -> Self:
        self._unions.append((query, all_))
        return self

    def params(self, params: Mapping[str, Any]) -> Self:
        self._params = dict(params)
        return self

    def add_params(self, params: Mapping[str, Any] | None) -> Self:
        if params:
            self._params.update(params)

        return self

    def index_by(self, value: IndexBy) -> Self:
        """Key ``all()`` results by a column name or by the return value of a callable."""
        self._index_by = value
        return self

    def emulate_execution(self, value: bool = True) -> Self:
        """Make every execution method return an empty result without touching the database."""
        self._emulate_execution = value
        return self

    @property
    def joins(self) -> Sequence[JoinClause]:
        return tuple(self._joins)

    @property
    def where_clause(self) -> sa.ColumnElement[bool] | None:
        return self._where

    def get_tables_used_in_from(self) -> dict[str, str]:
        """Tables of the FROM part keyed by alias (the table name when unaliased)."""
        return {alias or table: table for table, alias in self._from}

    def _clone(self) -> Self:
        clone = copy.copy(self)
        clone._select = list(self._select)
        clone._from = list(self._from)
        clone._joins = list(self._joins)
        clone._order_by = list(self._order_by)
        clone._group_by = list(self._group_by)
        clone._unions = list(self._unions)
        clone._params = dict(self._params)

        return clone

    # -- compilation ---------------------------------------------------------

    def build(self) -> sa.Select[Any] | sa.CompoundSelect:
        """Compile the current state into a SQLAlchemy statement.

        Joins are attached to the first FROM table in declaration order.

        Raises:
            ConfigurationError: If joins are present without a FROM table.
        """
        froms = [_from_clause(table, alias) for table, alias in self._from]
        if self._joins:
            if not froms:
                raise ConfigurationError("A JOIN requires a FROM table")

            target = froms[0]
            for join in self._joins:
                table, alias = split_alias(join.table)
                onclause = join.on if join.on is not None else sa.true()
                target = target.join(_from_clause(table, alias), onclause, **JOIN_TYPES[join.join_type])
            froms[0] = target

        stmt = sa.select(*([_select_column(c) for c in self._select] or [sa.literal_column("*")]))
        if froms:
            stmt = stmt.select_from(*froms)
        if self._distinct:
            stmt = stmt.distinct()
        if self._where is not None:
            stmt = stmt.where(self._where)
        if self._group_by:
            stmt = stmt.group_by(*(_order_column(c) for c in self._group_by))
        if self._having is not None:
            stmt = stmt.having(self._having)
        if self._order_by:
            stmt = stmt.order_by(*(_order_column(c) for c in self._order_by))
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset is not None:
            stmt = stmt.offset(self._offset)

        if not self._unions:
            return stmt

        compound: sa.Select[Any] | sa.CompoundSelect = stmt
        for query, all_ in self._unions:
            compound = (sa.union_all if all_ else sa.union)(compound, query.build_sql())

        return compound

    def build_sql(self) -> Statement:
        """The executable statement for this query (hook for subclasses that prepare first)."""
        return self.build()

    def _statement(self) -> tuple[Statement, dict[str, Any]]:
        return self.build_sql(), self._params

    def _execute(self, stmt: Statement, params: Mapping[str, Any], **options: Any) -> sa.CursorResult[Any]:
        if self.connection is None:
            raise ConfigurationError(f"{type(self).__name__} is not bound to a connection")

        logger.debug("Executing %s with %r", stmt, params)

        return self.connection.execute(stmt, dict(params), execution_options=options or None)

    # -- execution -----------------------------------------------------------

    def all(self) -> list[dict[str, Any]] | dict[Any, dict[str, Any]]:
        """Execute and return every row as a dict, keyed by ``index_by`` when set."""
        return index_models(self._fetch_rows(), self._index_by)

    def _fetch_rows(self) -> list[dict[str, Any]]:
        if self._emulate_execution:
            return []

        stmt, params = self._statement()

        return [dict(row) for row in self._execute(stmt, params).mappings()]

    def one(self) -> dict[str, Any] | None:
        """Execute and return the first row as a dict, or ``None``."""
        if self._emulate_execution:
            return None

        stmt, params = self._statement()
        row = self._execute(stmt, params).mappings().first()

        return None if row is None else dict(row)

    def scalar(self) -> Any:
        if self._emulate_execution:
            return None

        stmt, params = self._statement()

        return self._execute(stmt, params).scalar()

    def column(self) -> list[Any]:
        """Values of the first selected column."""
        if self._emulate_execution:
            return []

        stmt, params = self._statement()

        return list(self._execute(stmt, params).scalars())

    def count(self) -> int:
        """Number of rows the query would return (ordering is dropped)."""
        if self._emulate_execution:
            return 0

        stmt, params = self._statement()
        if isinstance(stmt, sa.TextClause):
            inner = stmt.columns().subquery("c")
        elif isinstance(stmt, sa.Select):
            inner = stmt.order_by(None).subquery("c")
        else:
            inner = stmt.subquery("c")

        return int(self._execute(sa.select(sa.func.count()).select_from(inner), params).scalar_one())

    def exists(self) -> bool:
        if self._emulate_execution:
            return False

        stmt, params = self._statement()
        inner = stmt.columns() if isinstance(stmt, sa.TextClause) else stmt

        return bool(self._execute(sa.select(inner.exists()), params).scalar())

    def populate(self, rows: Sequence[dict[str, Any]], index_by: IndexBy = None) -> list[Any] | dict[Any, Any]:
        """Convert fetched rows into the query's result format (plain rows here)."""
        return index_models(rows, index_by)

    def batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[list[Any] | dict[Any, Any]]:
        """Stream the result in chunks of *batch_size*, each passed through ``populate``."""
        if self._emulate_execution:
            return

        stmt, params = self._statement()
        with self._execute(stmt, params, stream_results=True) as result:
            for partition in result.mappings().partitions(batch_size):
                yield self.populate([dict(row) for row in partition], self._index_by)

    def each(self, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[Any]:
        """Stream the result one item at a time, fetching *batch_size* rows per round trip."""
        for chunk in self.batch(batch_size):
            yield from (chunk.values() if isinstance(chunk, dict) else chunk)
