"""Minimal records for sqla-activequery examples."""

from __future__ import annotations

import sqlalchemy as sa

from sqla_activequery import ActiveQuery, Record, relation


metadata = sa.MetaData()

sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100)),
)
sa.Table(
    "posts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(200)),
    sa.Column("author_id", sa.Integer, sa.ForeignKey("users.id")),
)
sa.Table(
    "roles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(50)),
    sa.Column("level", sa.Integer),
)
sa.Table(
    "user_roles",
    metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
)
sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100)),
    sa.Column("parent_id", sa.Integer, sa.ForeignKey("categories.id"), nullable=True),
)


class User(Record):
    __tablename__ = "users"
    __primary_key__ = ("id",)
    __columns__ = ("id", "name")

    @relation
    def posts(self) -> ActiveQuery[Post]:
        return self.has_many(Post, {"author_id": "id"}).inverse_of("author")

    @relation
    def roles(self) -> ActiveQuery[Role]:
        return self.has_many("Role", {"id": "role_id"}).via_table("user_roles", {"user_id": "id"})


class Post(Record):
    __tablename__ = "posts"
    __primary_key__ = ("id",)

    @relation
    def author(self) -> ActiveQuery[User]:
        return self.has_one(User, {"id": "author_id"})


class Role(Record):
    __tablename__ = "roles"
    __primary_key__ = ("id",)


class Category(Record):
    __tablename__ = "categories"
    __primary_key__ = ("id",)

    @relation
    def parent(self) -> ActiveQuery[Category]:
        return self.has_one(Category, {"id": "parent_id"})

    @relation
    def children(self) -> ActiveQuery[Category]:
        return self.has_many(Category, {"parent_id": "id"})
