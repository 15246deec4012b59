from __future__ import annotations

import pytest

from sqla_activequery.datastructures import frozendict


class TestFrozendictInit:
    def test_from_dict(self) -> None:
        link: frozendict[str, str] = frozendict({"customer_id": "id"})
        assert link["customer_id"] == "id"

    def test_from_kwargs(self) -> None:
        link: frozendict[str, str] = frozendict(order_id="id", item_id="item_id")
        assert link["item_id"] == "item_id"

    def test_empty(self) -> None:
        assert len(frozendict()) == 0

    def test_keeps_insertion_order(self) -> None:
        link: frozendict[str, str] = frozendict([("b", "1"), ("a", "2")])
        assert list(link) == ["b", "a"]


class TestFrozendictImmutability:
    def test_no_setitem(self) -> None:
        link: frozendict[str, str] = frozendict({"customer_id": "id"})
        with pytest.raises(TypeError):
            link["customer_id"] = "other"  # type: ignore[index]

    def test_no_delitem(self) -> None:
        link: frozendict[str, str] = frozendict({"customer_id": "id"})
        with pytest.raises(TypeError):
            del link["customer_id"]  # type: ignore[attr-defined]


class TestFrozendictHash:
    def test_equal_mappings_hash_equal(self) -> None:
        first: frozendict[str, int] = frozendict({"a": 1, "b": 2})
        second: frozendict[str, int] = frozendict({"b": 2, "a": 1})
        assert hash(first) == hash(second)

    def test_usable_in_set(self) -> None:
        assert len({frozendict({"a": 1}), frozendict({"a": 1})}) == 1

    def test_unhashable_values_only_fail_when_hashed(self) -> None:
        relations: frozendict[str, list[int]] = frozendict({"orders": [1]})
        assert relations["orders"] == [1]
        with pytest.raises(TypeError):
            hash(relations)


class TestFrozendictEquality:
    def test_equal_to_dict(self) -> None:
        assert frozendict({"a": 1}) == {"a": 1}

    def test_not_equal_to_other_types(self) -> None:
        assert frozendict({"a": 1}) != [("a", 1)]


class TestFrozendictCopy:
    def test_copy_adds_without_touching_source(self) -> None:
        link: frozendict[str, str] = frozendict({"order_id": "id"})
        extended = link.copy(item_id="item_id")
        assert extended == {"order_id": "id", "item_id": "item_id"}
        assert "item_id" not in link

    def test_or_merges_right_to_left(self) -> None:
        merged = frozendict({"a": 1, "b": 2}) | {"b": 3}
        assert isinstance(merged, frozendict)
        assert merged == {"a": 1, "b": 3}

    def test_repr(self) -> None:
        assert repr(frozendict({"a": 1})) == "<frozendict {'a': 1}>"
