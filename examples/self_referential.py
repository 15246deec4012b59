"""Self-referential relation loading example.

Demonstrates loading parent/children on the same record type (Category).
"""

from __future__ import annotations

import sqlalchemy as sa

from .models import Category


def get_categories_with_children(connection: sa.Connection) -> list[Category]:
    return Category.find(connection).with_("children").all_populate()


def get_categories_with_grandparent(connection: sa.Connection) -> list[Category]:
    return Category.find(connection).with_("parent.parent").all_populate()


# joining the same table twice needs an alias for the joined side


def get_subcategories_of(connection: sa.Connection, name: str) -> list[Category]:
    return Category.find(connection).inner_join_with("parent p").where({"p.name": name}).all_populate()
