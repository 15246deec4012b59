from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_activequery import ConfigurationError, UnknownRelationError

from ..models import Category, Customer, Order


def _by_name(records: list[Customer]) -> dict[str, Customer]:
    return {record.name: record for record in records}


class TestWith:
    def test_has_many(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_("orders").all_populate())

        assert sorted(order.id for order in customers["alice"].get_related("orders")) == [1, 2]
        assert [order.id for order in customers["bob"].get_related("orders")] == [3]
        assert customers["carol"].get_related("orders") == []

    def test_has_one(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_("profile").all_populate())

        assert customers["alice"].get_related("profile").bio == "Alice bio"
        assert customers["carol"].is_relation_populated("profile")
        assert customers["carol"].get_related("profile") is None

    def test_single_owner_to_one(self, connection: sa.Connection, statements: list[str]) -> None:
        order = Order.find(connection).with_("customer").find_one(3)

        assert order.get_related("customer").name == "bob"
        assert len(statements) == 2

    def test_one_query_per_relation(self, connection: sa.Connection, statements: list[str]) -> None:
        customers = Customer.find(connection).with_("orders.items", "profile").all_populate()

        # customers, orders, order_items junction, items, profiles
        assert len(statements) == 5

        statements.clear()
        for customer in customers:
            for order in customer.get_related("orders"):
                order.get_related("items")
            customer.get_related("profile")
        assert statements == []

    def test_nested_paths(self, connection: sa.Connection) -> None:
        alice = Customer.find(connection).with_("orders.items.category").find_one(1)
        orders = {order.id: order for order in alice.get_related("orders")}

        assert sorted(item.name for item in orders[1].get_related("items")) == ["book", "pen"]
        assert [item.name for item in orders[2].get_related("items")] == ["book"]
        categories = {item.name: item.get_related("category").name for item in orders[1].get_related("items")}
        assert categories == {"book": "stationery", "pen": "pens"}

    def test_sibling_paths_share_parent(self, connection: sa.Connection, statements: list[str]) -> None:
        Customer.find(connection).with_("orders.items", "orders.order_items").all_populate()

        assert sum("FROM orders" in statement for statement in statements) == 1

    def test_callback_customizes_relation(self, connection: sa.Connection) -> None:
        customers = _by_name(
            Customer.find(connection).with_({"orders": lambda q: q.and_where("total < :cap", {"cap": 100})}).all_populate()
        )

        assert [order.id for order in customers["alice"].get_related("orders")] == [2]

    def test_relation_declared_with(self, connection: sa.Connection) -> None:
        alice = Customer.find(connection).with_("orders_with_items").find_one(1)
        orders = alice.get_related("orders_with_items")

        assert all(order.is_relation_populated("items") for order in orders)

    def test_on_condition_filters_eager_query(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_("large_orders").all_populate())

        assert [order.id for order in customers["alice"].get_related("large_orders")] == [1]
        assert customers["bob"].get_related("large_orders") == []

    def test_and_on_condition_filters_eager_query(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_("mid_orders").all_populate())

        assert [order.id for order in customers["alice"].get_related("mid_orders")] == [2]
        assert [order.id for order in customers["bob"].get_related("mid_orders")] == [3]
        assert customers["carol"].get_related("mid_orders") == []

    def test_or_on_condition_filters_eager_query(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_("outlier_orders").all_populate())

        assert sorted(order.id for order in customers["alice"].get_related("outlier_orders")) == [1, 2]
        assert customers["bob"].get_related("outlier_orders") == []

    def test_or_on_condition_stays_scoped_to_owner(self, connection: sa.Connection) -> None:
        bob = Customer.find(connection).find_one(2)

        assert bob.get_related("outlier_orders") == []

    def test_index_by_in_relation(self, connection: sa.Connection) -> None:
        customers = _by_name(Customer.find(connection).with_({"orders": lambda q: q.index_by("id")}).all_populate())

        assert set(customers["alice"].get_related("orders")) == {1, 2}
        assert customers["carol"].get_related("orders") == {}

    def test_as_array_is_inherited(self, connection: sa.Connection) -> None:
        rows = Customer.find(connection).as_array().with_("orders").order_by("id").all_populate()

        assert isinstance(rows[0], dict)
        assert sorted(order["id"] for order in rows[0]["orders"]) == [1, 2]
        assert isinstance(rows[0]["orders"][0], dict)

    def test_no_owners_no_queries(self, connection: sa.Connection, statements: list[str]) -> None:
        assert Customer.find(connection).where({"status": 99}).with_("orders").all_populate() == []
        assert len(statements) == 1


class TestWithErrors:
    def test_unknown_relation(self, connection: sa.Connection) -> None:
        with pytest.raises(UnknownRelationError, match="Declared:"):
            Customer.find(connection).with_("invoices").all_populate()

    def test_depth_limit(self, connection: sa.Connection) -> None:
        path = ".".join(["children", "parent"] * 9)

        with pytest.raises(ConfigurationError, match="maximum depth"):
            Category.find(connection).with_(path).where({"id": 1}).all_populate()

    def test_depth_within_limit(self, connection: sa.Connection) -> None:
        path = ".".join(["children", "parent"] * 8)
        root = Category.find(connection).with_(path).find_one(1)

        assert [child.id for child in root.get_related("children")] == [2]
