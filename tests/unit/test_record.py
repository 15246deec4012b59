from __future__ import annotations

import pytest

from sqla_activequery import ActiveQuery, UnknownRelationError

from ..models import Customer, Order, OrderItem


class TestRelationRegistry:
    def test_relations_collected_from_decorated_methods(self) -> None:
        assert {"orders", "profile", "wishlist", "bought_items"} <= set(Customer.__relations__)

    def test_unknown_relation(self) -> None:
        with pytest.raises(UnknownRelationError, match="has no relation named 'invoices'") as exc:
            Customer().get_relation("invoices")

        assert exc.value.name == "invoices"
        assert exc.value.record_type is Customer

    def test_has_many_builds_relational_query(self) -> None:
        customer = Customer()
        query = customer.get_relation("orders")

        assert isinstance(query, ActiveQuery)
        assert query.primary_model is customer
        assert query.is_multiple
        assert query.relation_link == {"customer_id": "id"}

    def test_has_one_is_not_multiple(self) -> None:
        assert not Order().get_relation("customer").is_multiple

    def test_via_table_builds_junction_query(self) -> None:
        via = Order().get_relation("items").via_relation

        assert isinstance(via, ActiveQuery)
        assert via.get_tables_used_in_from() == {"order_items": "order_items"}
        assert via.relation_link == {"order_id": "id"}


class TestRecordAttributes:
    def test_access_styles(self) -> None:
        customer = Customer()
        customer.populate_record({"id": 1, "name": "alice"})

        assert customer["name"] == "alice"
        assert customer.get("name") == "alice"
        assert customer.name == "alice"
        assert "id" in customer
        assert customer.get("missing") is None

    def test_missing_attribute(self) -> None:
        with pytest.raises(AttributeError):
            _ = Customer().nope

    def test_primary_key_values(self) -> None:
        row = OrderItem()
        row.populate_record({"order_id": 1, "item_id": 2})

        assert row.get_primary_key() == (1, 2)
        assert row.get_primary_key(as_mapping=True) == {"order_id": 1, "item_id": 2}

    def test_populated_relation_is_not_queried_again(self) -> None:
        customer = Customer()
        customer.populate_relation("orders", [])

        assert customer.is_relation_populated("orders")
        assert customer.get_related("orders") == []

        customer.reset_relation("orders")
        assert not customer.is_relation_populated("orders")
