from __future__ import annotations

import pytest
import sqlalchemy as sa

from ..models import Customer, Order


class TestFindBySql:
    def test_records_from_raw_sql(self, connection: sa.Connection) -> None:
        customers = Customer.find(connection).find_by_sql(
            "SELECT * FROM customers WHERE status = :status ORDER BY id", {"status": 1}
        ).all_populate()

        assert [customer.name for customer in customers] == ["alice", "bob"]
        assert all(isinstance(customer, Customer) for customer in customers)

    def test_builder_state_is_ignored(self, connection: sa.Connection) -> None:
        query = Customer.find(connection).where({"id": 3}).limit(1).find_by_sql("SELECT * FROM customers")

        assert len(query.all_populate()) == 3
        assert str(query.build_sql()) == "SELECT * FROM customers"

    def test_eager_loading_still_applies(self, connection: sa.Connection) -> None:
        customers = (
            Customer.find(connection)
            .with_("orders")
            .find_by_sql("SELECT * FROM customers WHERE id = :id", {"id": 1})
            .all_populate()
        )

        assert len(customers[0].get_related("orders")) == 2

    def test_one(self, connection: sa.Connection) -> None:
        order = Order.find(connection).find_by_sql("SELECT * FROM orders WHERE total > 100").one_populate()

        assert order.id == 1

    def test_index_by(self, connection: sa.Connection) -> None:
        customers = Customer.find(connection).find_by_sql("SELECT * FROM customers").index_by("name").all_populate()

        assert set(customers) == {"alice", "bob", "carol"}

    def test_join_with_is_reported_as_ignored(self, connection: sa.Connection) -> None:
        query = Customer.find(connection).join_with("orders").find_by_sql("SELECT * FROM customers")

        with pytest.warns(UserWarning, match="find_by_sql"):
            customers = query.all_populate()

        assert not customers[0].is_relation_populated("orders")

    def test_count(self, connection: sa.Connection) -> None:
        assert Customer.find(connection).find_by_sql("SELECT * FROM customers WHERE status = 1").count() == 2
