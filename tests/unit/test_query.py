from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa

from sqla_activequery import ConfigurationError, Query, compile_condition


def _sql(stmt: Any) -> str:
    return " ".join(str(stmt.compile(compile_kwargs={"literal_binds": True})).split())


class TestCompileCondition:
    def test_none(self) -> None:
        assert compile_condition(None) is None

    def test_hash_equality(self) -> None:
        assert _sql(compile_condition({"status": 1})) == "status = 1"

    def test_hash_null_and_in(self) -> None:
        sql = _sql(compile_condition({"parent_id": None, "id": [1, 2]}))
        assert sql == "parent_id IS NULL AND id IN (1, 2)"

    def test_hash_qualified_column(self) -> None:
        assert _sql(compile_condition({"customers.id": 3})) == "customers.id = 3"

    def test_hash_subquery(self) -> None:
        inner = Query().select("customer_id").from_("orders")
        sql = _sql(compile_condition({"id": inner}))
        assert sql == "id IN (SELECT customer_id FROM orders)"

    def test_raw_string_is_grouped(self) -> None:
        assert _sql(compile_condition("total > 100")) == "(total > 100)"

    def test_clause_passes_through(self) -> None:
        clause = sa.column("id") > 1
        assert compile_condition(clause) is clause

    def test_unsupported(self) -> None:
        with pytest.raises(TypeError):
            compile_condition(42)  # type: ignore[arg-type]


class TestQueryBuild:
    def test_defaults_to_star(self) -> None:
        assert _sql(Query().from_("customers").build()) == "SELECT * FROM customers"

    def test_full_statement(self) -> None:
        query = (
            Query()
            .select("status", "count(*) AS n")
            .from_("customers c")
            .where({"status": [1, 2]})
            .and_where("c.email IS NOT NULL")
            .group_by("status")
            .having("count(*) > 1")
            .order_by("status DESC")
            .limit(10)
            .offset(5)
        )
        sql = _sql(query.build())

        assert sql.startswith("SELECT status, count(*) AS n FROM customers AS c WHERE status IN (1, 2) AND (c.email IS NOT NULL)")
        assert "GROUP BY status HAVING (count(*) > 1) ORDER BY status DESC" in sql
        assert sql.endswith("LIMIT 10 OFFSET 5")

    def test_or_where(self) -> None:
        query = Query().from_("customers").where({"status": 1}).or_where({"status": 2})
        assert _sql(query.where_clause) == "status = 1 OR status = 2"

    def test_from_mapping(self) -> None:
        query = Query().from_({"c": "customers"})
        assert query.get_tables_used_in_from() == {"c": "customers"}

    def test_joins_attach_to_first_table(self) -> None:
        query = (
            Query()
            .from_("customers")
            .left_join("orders o", "o.customer_id = customers.id")
            .inner_join("profiles", {"profiles.customer_id": sa.literal_column("customers.id")})
        )
        sql = _sql(query.build())

        assert "FROM customers LEFT OUTER JOIN orders AS o ON (o.customer_id = customers.id)" in sql
        assert "JOIN profiles ON profiles.customer_id = customers.id" in sql

    def test_join_type_is_normalized(self) -> None:
        query = Query().from_("customers").join("left   outer join", "orders", "orders.customer_id = customers.id")
        assert query.joins[0].join_type == "LEFT OUTER JOIN"

    def test_unsupported_join_type(self) -> None:
        with pytest.raises(ConfigurationError, match="Unsupported join type"):
            Query().join("CROSS APPLY", "orders")

    def test_join_without_from(self) -> None:
        with pytest.raises(ConfigurationError, match="FROM"):
            Query().inner_join("orders", "1 = 1").build()

    def test_union(self) -> None:
        query = Query().from_("customers").union(Query().from_("archived_customers"), all_=True)
        assert _sql(query.build()) == "SELECT * FROM customers UNION ALL SELECT * FROM archived_customers"

    def test_params_merge(self) -> None:
        query = Query().where("status = :status", {"status": 1}).and_where("name = :name", {"name": "x"})
        assert query._params == {"status": 1, "name": "x"}

    def test_clone_is_independent(self) -> None:
        query = Query().from_("customers").where({"status": 1})
        clone = query._clone()
        clone.and_where({"name": "alice"}).add_order_by("id")

        assert _sql(query.where_clause) == "status = 1"
        assert query._order_by == []


class TestQueryExecution:
    def test_unbound(self) -> None:
        with pytest.raises(ConfigurationError, match="not bound"):
            Query().from_("customers").all()

    def test_emulated_execution_skips_database(self) -> None:
        query = Query().from_("customers").emulate_execution()

        assert query.all() == []
        assert query.one() is None
        assert query.count() == 0
        assert query.exists() is False
        assert list(query.each()) == []

    def test_rows(self, connection: sa.Connection) -> None:
        rows = Query(connection).select("id", "name").from_("customers").order_by("id").all()
        assert rows[0] == {"id": 1, "name": "alice"}
        assert len(rows) == 3

    def test_index_by(self, connection: sa.Connection) -> None:
        rows = Query(connection).from_("customers").index_by("name").all()
        assert set(rows) == {"alice", "bob", "carol"}

    def test_scalar_helpers(self, connection: sa.Connection) -> None:
        query = Query(connection).select("name").from_("customers").where({"status": 1}).order_by("id")

        assert query.count() == 2
        assert query.exists()
        assert query.column() == ["alice", "bob"]
        assert query.scalar() == "alice"
        assert query.one() == {"name": "alice"}

    def test_bound_text_params(self, connection: sa.Connection) -> None:
        rows = Query(connection).from_("orders").where("total > :min", {"min": 50}).all()
        assert [row["id"] for row in rows] == [1]

    def test_batch(self, connection: sa.Connection) -> None:
        chunks = list(Query(connection).from_("items").order_by("id").batch(3))
        assert [len(chunk) for chunk in chunks] == [3, 1]
