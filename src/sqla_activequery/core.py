from __future__ import annotations

import logging
import sys
import warnings
from collections import deque
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any, Final, Generic, TypeVar, Union

import sqlalchemy as sa


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .datastructures import JoinClause, JoinWithRequest, RelationCallback, ViaRelation, frozendict
from .exceptions import ConfigurationError
from .node import RecordIdentifier
from .query import DEFAULT_BATCH_SIZE, Query, Statement
from .record import Record, RecordFactory
from .relation import ActiveRelationMixin, ViaMap
from .tools import IndexBy, filter_condition, index_models, is_associative, split_alias


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)

MAX_RELATION_DEPTH: Final[int] = 16
DEFAULT_JOIN_TYPE: Final[str] = "LEFT JOIN"
FALLBACK_JOIN_TYPE: Final[str] = "INNER JOIN"

WithSpec = Union[str, Iterable[str], Mapping[str, Union[RelationCallback, None]]]


def _with_items(relations: WithSpec) -> Iterator[tuple[str, RelationCallback | None]]:
    if isinstance(relations, str):
        yield relations, None
    elif isinstance(relations, Mapping):
        yield from relations.items()
    else:
        for name in relations:
            yield name, None


def _aliased(callback: RelationCallback | None, alias: str) -> RelationCallback:
    def apply(query: ActiveQuery[Any]) -> None:
        query.alias(alias)
        if callback is not None:
            callback(query)

    return apply


class ActiveQuery(ActiveRelationMixin, Query, Generic[T]):
    """Query returning typed records, with relation joining and eager loading.

    The query is declarative: ``with_``, ``join_with`` and the relational
    setters only record intent.  ``prepare()`` compiles that intent into a new,
    fully resolved query (joins, relational filter, FROM/SELECT defaults)
    without touching this one, so building the SQL any number of times yields
    the same statement.

    Example:
        >>> query = Customer.find(connection).with_("orders.items").join_with("profile")
        >>> customers = query.where({"status": 1}).all_populate()
        >>> customers[0].get_related("orders")
    """

    def __init__(
        self,
        model: RecordIdentifier,
        connection: sa.Connection | None = None,
        *,
        factory: RecordFactory | None = None,
        table_name: str = "",
    ) -> None:
        super().__init__(connection)
        self.model = model
        self.factory = factory if factory is not None else RecordFactory()
        self.table_name = table_name
        self.primary_model: Record | None = None

        self._sql: str | None = None
        self._with: dict[str, RelationCallback | None] = {}
        self._join_with: list[JoinWithRequest] = []
        self._as_array: bool | None = None
        self._prepared = False
        self._depth = 0

        self._link: frozendict[str, str] = frozendict()
        self._multiple = False
        self._via: ActiveQuery[Any] | ViaRelation | None = None
        self._via_map: ViaMap | None = None
        self._inverse_of: str | None = None
        self._on: sa.ColumnElement[bool] | None = None

    # -- declaration ---------------------------------------------------------

    def with_(self, *relations: WithSpec) -> Self:
        """Eager-load the named relations after the main query.

        Accepts names, dotted paths (``"orders.items"``), iterables of them or
        a ``{path: callback}`` mapping whose callbacks customize each relation
        query before it runs.
        """
        for spec in relations:
            for name, callback in _with_items(spec):
                if callback is not None or name not in self._with:
                    self._with[name] = callback

        return self

    def join_with(
        self,
        relations: WithSpec,
        eager_loading: bool | Iterable[str] = True,
        join_type: str | Mapping[str, str] = DEFAULT_JOIN_TYPE,
    ) -> Self:
        """Join the named relations into the main query.

        Args:
            relations: Relation paths, optionally aliased (``"orders o"``), or
                a ``{path: callback}`` mapping.
            eager_loading: ``True`` to also eager-load every joined relation,
                ``False`` for none, or the paths that should be loaded.
            join_type: One join type for all relations or a ``{path: type}``
                mapping; paths missing from the mapping use ``INNER JOIN``.
        """
        resolved: dict[str, RelationCallback | None] = {}
        for name, callback in _with_items(relations):
            path, alias = split_alias(name)
            resolved[path] = _aliased(callback, alias) if alias is not None else callback

        self._join_with.append(
            JoinWithRequest(
                relations=frozendict(resolved),
                eager_loading=eager_loading if isinstance(eager_loading, bool) else tuple(eager_loading),
                join_type=join_type if isinstance(join_type, str) else frozendict(join_type),
            )
        )

        return self

    def inner_join_with(self, relations: WithSpec, eager_loading: bool | Iterable[str] = True) -> Self:
        return self.join_with(relations, eager_loading, "INNER JOIN")

    def alias(self, alias: str) -> Self:
        """Alias the primary table, keeping any other FROM entries as they are."""
        if len(self._from) < 2:
            table, _ = self._get_table_name_and_alias()
            self._from = [(table, alias)]
            return self

        table_name = self._record_instance().table_name
        self._from = [(table, alias if table == table_name else current) for table, current in self._from]

        return self

    def as_array(self, value: bool | None = True) -> Self:
        """Return plain row dicts instead of records."""
        self._as_array = value
        return self

    @property
    def with_relations(self) -> Mapping[str, RelationCallback | None]:
        return frozendict(self._with)

    @property
    def join_with_requests(self) -> Sequence[JoinWithRequest]:
        return tuple(self._join_with)

    @property
    def sql(self) -> str | None:
        return self._sql

    def get_tables_used_in_from(self) -> dict[str, str]:
        if not self._from:
            table = self._record_instance().table_name
            return {table: table}

        return super().get_tables_used_in_from()

    def _get_table_name_and_alias(self) -> tuple[str, str]:
        """``(table, alias)`` of the primary table; the alias defaults to the table name."""
        if not self._from:
            table = self._record_instance().table_name
            return table, table

        table, alias = self._from[0]

        return table, alias or table

    def _record_instance(self) -> Record:
        return self.factory.create(self.model, self.table_name, self.connection)

    def _clone(self) -> Self:
        clone = super()._clone()
        clone._with = dict(self._with)
        clone._join_with = list(self._join_with)

        return clone

    # -- compilation ---------------------------------------------------------

    def prepare(self) -> Self:
        """Compile the declarative state into a new, fully resolved query.

        * pending ``join_with`` requests become joins (merging the joined
          relations' conditions) and, when requested, ``with_`` entries;
        * FROM defaults to the record's table and, when joins exist, SELECT
          defaults to ``<alias>.*``;
        * for a relation, the owner filter (including the ``via`` hop) and the
          ``on_condition`` are added to WHERE.

        ``self`` is never modified.
        """
        if self._prepared:
            return self

        query = self._clone()

        if query._join_with:
            JoinBuilder(query, self._depth).build(query._join_with)
            query._join_with = []

        if not query._from:
            query._from = [(query._record_instance().table_name, None)]

        if not query._select and query._joins:
            _, alias = query._get_table_name_and_alias()
            query._select = [f"{alias}.*"]

        if query.primary_model is not None:
            query._apply_relational_filter()

        if query._on is not None:
            query.and_where(query._on)

        query._prepared = True

        return query

    def build_sql(self) -> Statement:
        if self._sql is not None:
            return sa.text(self._sql)

        return self.prepare().build()

    def _compiled(self) -> Self:
        if self._sql is None:
            return self.prepare()

        if self._join_with:
            warnings.warn(
                "join_with() has no effect on a query built with find_by_sql(); its relations are not loaded",
                stacklevel=3,
            )

        return self

    # -- execution -----------------------------------------------------------

    def all(self) -> list[dict[str, Any]] | dict[Any, dict[str, Any]]:
        """Raw row dicts of the compiled query, without record population."""
        return Query.all(self._compiled())

    def one(self) -> dict[str, Any] | None:
        return Query.one(self._compiled())

    def scalar(self) -> Any:
        return Query.scalar(self._compiled())

    def column(self) -> list[Any]:
        return Query.column(self._compiled())

    def count(self) -> int:
        """Row count of the compiled query, including params merged in from joined relations."""
        return Query.count(self._compiled())

    def exists(self) -> bool:
        return Query.exists(self._compiled())

    def all_populate(self) -> list[T] | dict[Any, T] | list[dict[str, Any]] | dict[Any, dict[str, Any]]:
        """Execute and return populated records (or row dicts with ``as_array``)."""
        query = self._compiled()

        return query.populate(query._fetch_rows(), query._index_by)

    def one_populate(self) -> T | dict[str, Any] | None:
        """Execute and return the first populated record, or ``None``."""
        query = self._compiled()
        row = Query.one(query)
        if row is None:
            return None

        models = query.populate([row])

        return models[0] if models else None

    def batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[list[Any] | dict[Any, Any]]:
        """Stream populated records in chunks; eager loading runs once per chunk."""
        return Query.batch(self._compiled(), batch_size)

    def each(self, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[Any]:
        return Query.each(self._compiled(), batch_size)

    # -- population ----------------------------------------------------------

    def populate(self, rows: Sequence[dict[str, Any]], index_by: IndexBy = None) -> list[Any] | dict[Any, Any]:
        """Turn fetched rows into records.

        Rows duplicated by to-many joins collapse to one record per primary
        key, requested relations are eager-loaded, the inverse relation of a
        lazily loaded relation is pointed back at its owner and the result is
        finally keyed by *index_by*.
        """
        if not rows:
            return [] if index_by is None else {}

        models = self._create_models(rows)

        if self._joins and self._index_by is None:
            models = self._remove_duplicated_models(models)

        if self._with:
            self._find_with(self._with, models)

        if self._inverse_of is not None and self.primary_model is not None:
            self._add_inverse_relations(models)

        return index_models(models, index_by)

    def _create_models(self, rows: Sequence[Mapping[str, Any]]) -> list[Any]:
        if self._as_array:
            return [dict(row) for row in rows]

        models = []
        for row in rows:
            model = self._record_instance()
            model.populate_record(row)
            models.append(model)

        return models

    def _remove_duplicated_models(self, models: list[Any]) -> list[Any]:
        """Keep the first record per primary key; rows lacking a key value are kept as they are.

        Raises:
            ConfigurationError: If the record type declares no primary key.
        """
        instance = self._record_instance()
        keys = instance.primary_key()
        if not keys:
            raise ConfigurationError(f"Primary key of {type(instance).__name__} can not be empty")

        seen: set[Any] = set()
        unique = []
        for model in models:
            values = [model.get(key) for key in keys]
            if any(value is None for value in values):
                unique.append(model)
                continue

            key = values[0] if len(values) == 1 else tuple(values)
            if key in seen:
                continue

            seen.add(key)
            unique.append(model)

        return unique

    def _find_with(self, with_: Mapping[str, RelationCallback | None], models: list[Any]) -> None:
        """Eager-load *with_* for *models*, level by level, one query per relation.

        Raises:
            ConfigurationError: If relation paths nest deeper than ``MAX_RELATION_DEPTH``.
        """
        pending: deque[tuple[ActiveQuery[Any], Mapping[str, RelationCallback | None], list[Any], int]] = deque(
            [(self, with_, models, self._depth + 1)]
        )

        while pending:
            owner_query, relations, owners, depth = pending.popleft()
            if depth > MAX_RELATION_DEPTH:
                raise ConfigurationError(f"Relation nesting exceeds the maximum depth of {MAX_RELATION_DEPTH}")

            primary = owners[0] if isinstance(owners[0], Record) else owner_query._record_instance()
            for name, (relation, children) in owner_query._normalize_relations(primary, relations).items():
                if relation._as_array is None:
                    relation._as_array = owner_query._as_array
                relation._depth = depth

                logger.debug("Eager loading %r for %d %s rows", name, len(owners), type(primary).__name__)
                related = [model for model in relation.populate_relation(name, owners) if model is not None]
                if children and related:
                    pending.append((relation, children, related, depth + 1))

    def _normalize_relations(
        self, model: Record, with_: Mapping[str, RelationCallback | None]
    ) -> dict[str, tuple[ActiveQuery[Any], dict[str, RelationCallback | None]]]:
        """Group dotted paths by their first segment.

        Each relation is built once; its remaining path segments, together with
        whatever it declares in its own ``with_``, become its child paths.
        """
        relations: dict[str, tuple[ActiveQuery[Any], dict[str, RelationCallback | None]]] = {}
        for path, callback in with_.items():
            name, _, child = path.partition(".")
            if name not in relations:
                relation = model.get_relation(name)
                relation.primary_model = None
                children = dict(relation._with)
                relation._with = {}
                relations[name] = (relation, children)

            relation, children = relations[name]
            if child:
                children[child] = callback
            elif callback is not None:
                callback(relation)

        return relations

    # -- finders -------------------------------------------------------------

    def find_by_condition(self, condition: Any) -> Self:
        """Filter by primary key value(s) or by a ``{column: value}`` mapping.

        A scalar, a sequence or a mapping with ``int`` keys is matched against
        the first primary-key column.  A mapping with ``str`` keys is a column
        filter whose keys must name columns of this record (optionally prefixed
        with the table name or a FROM alias).  Numeric-looking string keys such
        as ``"0"`` are not column names and are rejected, never read as positions.

        Raises:
            InvalidFilterError: On a key outside the allow-list or mixed key kinds.
            ConfigurationError: If a primary-key lookup is requested for a record
                type without a primary key.
        """
        model = self._record_instance()

        if isinstance(condition, sa.ColumnElement):
            return self.where(condition)

        if isinstance(condition, Mapping) and is_associative(condition):
            aliases = {model.table_name, *self.get_tables_used_in_from()}
            return self.where(filter_condition(condition, aliases, type(model).__columns__))

        if isinstance(condition, Mapping):
            values = list(condition.values())
        elif isinstance(condition, (list, tuple, set, frozenset)):
            values = list(condition)
        else:
            values = [condition]

        keys = model.primary_key()
        if not keys:
            raise ConfigurationError(f"{type(model).__name__} must have a primary key")

        key = keys[0]
        if self._joins or self._join_with:
            key = f"{model.table_name}.{key}"

        return self.where({key: values[0] if len(values) == 1 else values})

    def find_one(self, condition: Any) -> T | dict[str, Any] | None:
        return self.find_by_condition(condition).one_populate()

    def find_all(self, condition: Any) -> list[T] | dict[Any, T] | list[dict[str, Any]] | dict[Any, dict[str, Any]]:
        return self.find_by_condition(condition).all_populate()

    def find_by_sql(self, sql: str, params: Mapping[str, Any] | None = None) -> Self:
        """Use *sql* verbatim; the builder state (joins, WHERE, FROM) is ignored."""
        self._sql = sql
        return self.params(params or {})


class JoinBuilder:
    """Compiles ``join_with`` requests of an ``ActiveQuery`` into joins.

    Every relation path is resolved segment by segment; a prefix shared by
    several paths of one request resolves to a single relation and therefore
    a single join.  ``via`` relations expand into two joins (owner to
    intermediate, intermediate to target).  The joined relation's WHERE,
    HAVING, ORDER BY, GROUP BY, params, joins and unions are merged into the
    query being built.
    """

    __slots__ = ("_depth", "_query")

    def __init__(self, query: ActiveQuery[Any], depth: int = 0) -> None:
        if depth > MAX_RELATION_DEPTH:
            raise ConfigurationError(f"Relation nesting exceeds the maximum depth of {MAX_RELATION_DEPTH}")

        self._query = query
        self._depth = depth

    def build(self, requests: Sequence[JoinWithRequest]) -> None:
        query = self._query
        explicit = query._joins
        query._joins = []

        model = query._record_instance()
        for request in requests:
            self._join_relations(model, request)
            query.with_(self._eager_relations(request))

        query._joins = self._unique_joins(query._joins) + explicit

    def _join_relations(self, model: Record, request: JoinWithRequest) -> None:
        relations: dict[str, ActiveQuery[Any]] = {}

        for path, callback in request.relations.items():
            primary_model = model
            parent: ActiveQuery[Any] = self._query
            prefix = ""
            segments = path.split(".")

            for position, name in enumerate(segments):
                full_name = f"{prefix}.{name}" if prefix else name
                relation = relations.get(full_name)

                if relation is None:
                    relation = primary_model.get_relation(name)
                    if position == len(segments) - 1:
                        if callback is not None:
                            callback(relation)
                        if relation._join_with:
                            relation = self._resolve_nested(relation)
                    relations[full_name] = relation
                    self._join_with_relation(parent, relation, self._join_type(request.join_type, full_name))

                primary_model = relation._record_instance()
                parent = relation
                prefix = full_name

    def _resolve_nested(self, relation: ActiveQuery[Any]) -> ActiveQuery[Any]:
        nested = relation._clone()
        JoinBuilder(nested, self._depth + 1).build(nested._join_with)
        nested._join_with = []

        return nested

    def _join_with_relation(self, parent: ActiveQuery[Any], child: ActiveQuery[Any], join_type: str) -> None:
        pending: list[tuple[ActiveQuery[Any], ActiveQuery[Any], bool]] = [(parent, child, True)]

        while pending:
            left, right, expand_via = pending.pop()
            via = right._via if expand_via else None
            if via is not None:
                intermediate = via.query if isinstance(via, ViaRelation) else via
                pending.append((intermediate, right, False))
                pending.append((left, intermediate, True))
                continue

            self._append_join(left, right, join_type)

    def _append_join(self, parent: ActiveQuery[Any], child: ActiveQuery[Any], join_type: str) -> None:
        query = self._query
        _, parent_alias = parent._get_table_name_and_alias()
        child_table, child_alias = child._get_table_name_and_alias()

        terms = [
            sa.literal_column(f"{parent_alias}.{parent_column}") == sa.literal_column(f"{child_alias}.{child_column}")
            for child_column, parent_column in child._link.items()
        ]
        if child._on is not None:
            terms.append(child._on)
        if not terms:
            raise ConfigurationError(f"Cannot join {child_table!r}: the relation has neither a link nor an ON condition")

        table = child_table if child_alias == child_table else f"{child_table} {child_alias}"
        logger.debug("Joining %s %s to %s", join_type, table, parent_alias)
        query.join(join_type, table, terms[0] if len(terms) == 1 else sa.and_(*terms))

        if child._where is not None:
            query.and_where(child._where)
        if child._having is not None:
            query.and_having(child._having)
        if child._order_by:
            query.add_order_by(*child._order_by)
        if child._group_by:
            query.add_group_by(*child._group_by)
        query.add_params(child._params)
        query._joins.extend(child._joins)
        query._unions.extend(child._unions)

    @staticmethod
    def _join_type(join_type: str | Mapping[str, str], name: str) -> str:
        if isinstance(join_type, str):
            return join_type

        return join_type.get(name, FALLBACK_JOIN_TYPE)

    @staticmethod
    def _eager_relations(request: JoinWithRequest) -> dict[str, RelationCallback | None]:
        if request.eager_loading is True:
            return dict(request.relations)

        if request.eager_loading is False:
            return {}

        return {name: callback for name, callback in request.relations.items() if name in request.eager_loading}

    @staticmethod
    def _unique_joins(joins: list[JoinClause]) -> list[JoinClause]:
        """Drop structurally equal joins, then keep the first join per target table."""
        unique: list[JoinClause] = []
        for join in joins:
            if not any(join.same_as(seen) for seen in unique):
                unique.append(join)

        by_table: dict[str, JoinClause] = {}
        for join in unique:
            by_table.setdefault(join.table, join)

        return list(by_table.values())
