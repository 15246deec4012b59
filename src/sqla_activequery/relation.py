from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .datastructures import Condition, ViaRelation, frozendict
from .exceptions import ConfigurationError
from .query import compile_condition
from .record import Record, RecordFactory
from .tools import column, get_model_key, get_value, index_models


if TYPE_CHECKING:
    from .core import ActiveQuery

logger = logging.getLogger(__name__)

ViaMap = dict[Any, dict[Any, bool]]


def get_related(model: Any, name: str) -> Any:
    """Populated value of relation *name* on a record or an array row."""
    if isinstance(model, Record):
        return model.related_records.get(name)

    return model.get(name)


def set_related(model: Any, name: str, value: Any) -> None:
    """Store *value* as relation *name* on a record or an array row."""
    if isinstance(model, Record):
        model.populate_relation(name, value)
    else:
        model[name] = value


def as_list(result: Sequence[Any] | Mapping[Any, Any]) -> list[Any]:
    return list(result.values()) if isinstance(result, Mapping) else list(result)


def _via_query(via: ActiveQuery[Any] | ViaRelation) -> ActiveQuery[Any]:
    return via.query if isinstance(via, ViaRelation) else via


def _map_via(mapping: ViaMap, via_map: ViaMap) -> ViaMap:
    """Compose two via maps so keys of the far side reach the owner keys directly."""
    result: ViaMap = {}
    for key, link_keys in mapping.items():
        owners: dict[Any, bool] = {}
        for link_key in link_keys:
            owners.update(via_map.get(link_key, {}))
        result[key] = owners

    return result


class ActiveRelationMixin:
    """Relational side of ``ActiveQuery``.

    A query becomes a relation when a record builds it through ``has_one`` or
    ``has_many``: it then carries a ``link`` (target column -> owner column), a
    multiplicity, an optional indirection (``via`` / ``via_table``) and an
    optional inverse relation name.  This mixin owns everything that filters
    such a query by its owners and distributes the fetched rows back to them.
    """

    if TYPE_CHECKING:
        connection: sa.Connection | None
        factory: RecordFactory
        primary_model: Record | None
        _link: frozendict[str, str]
        _multiple: bool
        _via: ActiveQuery[Any] | ViaRelation | None
        _via_map: ViaMap | None
        _inverse_of: str | None
        _on: sa.ColumnElement[bool] | None
        _as_array: bool | None
        _index_by: Any
        _joins: list[Any]
        _join_with: list[Any]
        _params: dict[str, Any]

        def _clone(self) -> Self: ...
        def _record_instance(self) -> Record: ...
        def _get_table_name_and_alias(self) -> tuple[str, str]: ...
        def and_where(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self: ...
        def add_params(self, params: Mapping[str, Any] | None) -> Self: ...
        def emulate_execution(self, value: bool = True) -> Self: ...
        def all_populate(self) -> list[Any] | dict[Any, Any]: ...
        def one_populate(self) -> Any: ...

    # -- declaration ---------------------------------------------------------

    def link(self, link: Mapping[str, str]) -> Self:
        """Set the ``{target column: owner column}`` mapping of the relation."""
        self._link = frozendict(link)
        return self

    def multiple(self, value: bool = True) -> Self:
        self._multiple = value
        return self

    @property
    def is_multiple(self) -> bool:
        return self._multiple

    @property
    def relation_link(self) -> frozendict[str, str]:
        return self._link

    @property
    def via_relation(self) -> ActiveQuery[Any] | ViaRelation | None:
        return self._via

    @property
    def on_clause(self) -> sa.ColumnElement[bool] | None:
        return self._on

    def inverse_of(self, name: str) -> Self:
        """Name the relation on the target type that points back at the owner.

        Populating this relation then also fills that inverse relation on every
        loaded record with the owner instance itself, so navigating back does
        not hit the database.
        """
        self._inverse_of = name
        return self

    def via(self, name: str, callback: Callable[[ActiveQuery[Any]], Any] | None = None) -> Self:
        """Reach the target through the sibling relation *name* of the owner.

        Raises:
            ConfigurationError: If the query was not built by a record relation.
        """
        if self.primary_model is None:
            raise ConfigurationError("via() is only available on relations declared by a record")

        relation = self.primary_model.get_relation(name)
        self._via = ViaRelation(name, relation, callback is not None)
        if callback is not None:
            callback(relation)

        return self

    def via_table(
        self,
        table: str,
        link: Mapping[str, str],
        callback: Callable[[ActiveQuery[Any]], Any] | None = None,
    ) -> Self:
        """Reach the target through the junction *table*.

        *link* maps junction columns to owner columns; the relation's own link
        then maps target columns to junction columns.  Junction rows are always
        fetched as plain dicts.
        """
        from .core import ActiveQuery

        owner = self.primary_model if self.primary_model is not None else self._record_instance()
        relation: ActiveQuery[Any] = ActiveQuery(type(owner), self.connection, factory=self.factory)
        relation.from_(table).link(link).multiple(True).as_array()
        self._via = relation
        if callback is not None:
            callback(relation)

        return self

    def on_condition(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        """Extra condition for the relation.

        It goes into the ON clause when the relation is joined and into WHERE
        when the relation is queried on its own.
        """
        self._on = compile_condition(condition)
        return self.add_params(params)

    def and_on_condition(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        clause = compile_condition(condition)
        self._on = clause if self._on is None else sa.and_(self._on, clause)
        return self.add_params(params)

    def or_on_condition(self, condition: Condition, params: Mapping[str, Any] | None = None) -> Self:
        clause = compile_condition(condition)
        self._on = clause if self._on is None else sa.or_(self._on, clause)
        return self.add_params(params)

    # -- lazy loading --------------------------------------------------------

    def find_for(self, name: str, model: Record) -> Any:
        """Related records of *model* for relation *name* (a list or a single record)."""
        logger.debug("Lazy loading %r for %s", name, type(model).__name__)

        return self.all_populate() if self._multiple else self.one_populate()

    def _apply_relational_filter(self) -> None:
        """Restrict the query to the rows related to ``primary_model``."""
        owner = self.primary_model
        if owner is None:
            return

        if isinstance(self._via, ViaRelation):
            via = self._via
            if via.query._multiple:
                if via.callable_used:
                    via_models = as_list(via.query.all_populate())
                elif owner.is_relation_populated(via.name):
                    via_models = as_list(owner.get_related(via.name) or [])
                else:
                    via_models = as_list(via.query.all_populate())
                    owner.populate_relation(via.name, via_models)
            else:
                if via.callable_used:
                    via_model = via.query.one_populate()
                elif owner.is_relation_populated(via.name):
                    via_model = owner.get_related(via.name)
                else:
                    via_model = via.query.one_populate()
                    owner.populate_relation(via.name, via_model)
                via_models = [] if via_model is None else [via_model]
            self._filter_by_models(via_models)
        elif self._via is not None:
            self._filter_by_models(self._via._find_junction_rows([owner]))
        else:
            self._filter_by_models([owner])

    # -- eager loading -------------------------------------------------------

    def populate_relation(self, name: str, primary_models: list[Any]) -> list[Any]:
        """Load relation *name* for all *primary_models* with one query and attach the results.

        Returns the loaded related records (without ``None`` placeholders).

        Raises:
            ConfigurationError: If the relation has no link.
        """
        if not self._link:
            raise ConfigurationError(f"Invalid link for relation {name!r}: it must be a non-empty mapping")

        query = self._clone()
        query.primary_model = None
        via_query: ActiveQuery[Any] | None = None
        via_models: list[Any] | None = None

        if isinstance(self._via, ViaRelation):
            via_query = self._via.query
            if via_query._as_array is None:
                via_query._as_array = self._as_array
            via_query.primary_model = None
            via_models = via_query.populate_relation(self._via.name, primary_models)
            query._filter_by_models(via_models)
        elif self._via is not None:
            via_query = self._via
            via_models = via_query._find_junction_rows(primary_models)
            query._filter_by_models(via_models)
        else:
            query._filter_by_models(primary_models)

        if not self._multiple and len(primary_models) == 1:
            model = query.one_populate()
            set_related(primary_models[0], name, model)
            if model is None:
                return []

            if self._inverse_of is not None:
                self._populate_inverse_relation(primary_models, [model], name)
            return [model]

        index_by = query._index_by
        query._index_by = None
        models = as_list(query.all_populate())
        buckets = self._build_buckets(models, self._link, via_models, via_query)
        if index_by is not None and self._multiple:
            buckets = {key: index_models(bucket, index_by) for key, bucket in buckets.items()}

        link = list(self._link.values())
        if via_query is not None:
            deep = via_query
            while deep._via is not None:
                deep = _via_query(deep._via)
            link = list(deep._link.values())

        for owner in primary_models:
            set_related(owner, name, self._owner_value(owner, link, buckets, index_by))

        if self._inverse_of is not None:
            self._populate_inverse_relation(primary_models, models, name)

        return models

    def _owner_value(self, owner: Any, link: list[str], buckets: dict[Any, Any], index_by: Any) -> Any:
        keys = get_value(owner, link[0]) if self._multiple and len(link) == 1 else None
        if isinstance(keys, (list, tuple)):
            merged: Any = {} if index_by is not None else []
            for key in keys:
                bucket = buckets.get(key)
                if bucket is None:
                    continue
                if index_by is not None:
                    merged.update(bucket)
                else:
                    merged.extend(bucket)
            return merged

        value = buckets.get(get_model_key(owner, link))
        if value is not None:
            return value

        if not self._multiple:
            return None

        return {} if index_by is not None else []

    def _build_buckets(
        self,
        models: list[Any],
        link: Mapping[str, str],
        via_models: list[Any] | None = None,
        via_query: ActiveQuery[Any] | None = None,
        check_multiple: bool = True,
    ) -> dict[Any, Any]:
        """Partition *models* by the owner key they belong to.

        Through a junction, a via map ``{target key: {owner key: True}}`` is
        built first; duplicate junction rows collapse in it so a related record
        lands in each owner's bucket once.
        """
        mapping: ViaMap | None = None
        if via_models is not None and via_query is not None:
            mapping = {}
            owner_columns = list(via_query._link)
            target_columns = list(link.values())
            for via_model in via_models:
                owner_key = get_model_key(via_model, owner_columns)
                target_key = get_model_key(via_model, target_columns)
                mapping.setdefault(target_key, {})[owner_key] = True

            via_query._via_map = mapping
            next_via = via_query._via
            while next_via is not None:
                next_query = _via_query(next_via)
                mapping = _map_via(mapping, next_query._via_map or {})
                next_via = next_query._via

        buckets: dict[Any, Any] = {}
        link_columns = list(link)
        for model in models:
            key = get_model_key(model, link_columns)
            if mapping is None:
                buckets.setdefault(key, []).append(model)
                continue

            for owner_key in mapping.get(key, ()):
                buckets.setdefault(owner_key, []).append(model)

        if check_multiple and not self._multiple:
            return {key: bucket[0] for key, bucket in buckets.items()}

        return buckets

    def _populate_inverse_relation(self, primary_models: list[Any], models: list[Any], primary_name: str) -> None:
        name = self._inverse_of
        if not models or not primary_models or name is None:
            return

        model = models[0]
        inverse = (model if isinstance(model, Record) else self._record_instance()).get_relation(name)

        if inverse._multiple:
            buckets = self._build_buckets(primary_models, inverse._link, check_multiple=False)
            owner_columns = list(inverse._link.values())
            for model in models:
                set_related(model, name, buckets.get(get_model_key(model, owner_columns), []))
            return

        for owner in primary_models:
            value = get_related(owner, primary_name)
            if self._multiple:
                related = as_list(value or [])
            else:
                related = [] if value is None else [value]
            for model in related:
                set_related(model, name, owner)

    def _add_inverse_relations(self, models: list[Any]) -> None:
        """Point the inverse relation of every lazily loaded record back at ``primary_model``."""
        inverse = None
        for model in models:
            if inverse is None:
                inverse = (model if isinstance(model, Record) else self._record_instance()).get_relation(
                    self._inverse_of
                )
            set_related(model, self._inverse_of, [self.primary_model] if inverse._multiple else self.primary_model)

    # -- filtering -----------------------------------------------------------

    def _filter_by_models(self, models: list[Any]) -> None:
        """Add ``IN`` over the owners' link values; no values at all means no rows."""
        if not self._link:
            raise ConfigurationError("Invalid link: it must be a non-empty mapping")

        attributes = self._prefix_key_columns(list(self._link))
        sources = list(self._link.values())

        if len(attributes) == 1:
            values: list[Any] = []
            for model in models:
                value = get_value(model, sources[0])
                if value is None:
                    continue
                if isinstance(value, (list, tuple)):
                    values.extend(value)
                else:
                    values.append(value)
            values = list(dict.fromkeys(values))
            if not values:
                self.emulate_execution()
            self.and_where(column(attributes[0]).in_(values))
            return

        rows: list[tuple[Any, ...]] = []
        for model in models:
            key = tuple(get_value(model, source) for source in sources)
            if any(value is None for value in key):
                continue
            rows.append(key)
        rows = list(dict.fromkeys(rows))
        if not rows:
            self.emulate_execution()
        self.and_where(sa.tuple_(*(column(name) for name in attributes)).in_(rows))

    def _prefix_key_columns(self, attributes: list[str]) -> list[str]:
        if not (self._joins or self._join_with):
            return attributes

        _, alias = self._get_table_name_and_alias()

        return [name if "." in name else f"{alias}.{name}" for name in attributes]

    def _find_junction_rows(self, primary_models: list[Any]) -> list[Any]:
        if not primary_models:
            return []

        query = self._clone()
        query._filter_by_models(primary_models)
        query._as_array = True

        return as_list(query.all_populate())
