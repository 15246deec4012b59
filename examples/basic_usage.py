"""Basic sqla-activequery usage examples.

Demonstrates eager loading, dotted paths, joins, junction tables,
primary-key lookups, raw SQL and batched iteration.

NOTE: This file is illustrative, it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from collections.abc import Iterator

import sqlalchemy as sa

from .models import Post, User, metadata


# ── 1. Setup ─────────────────────────────────────────────────────────

engine = sa.create_engine("sqlite://")


def setup() -> None:
    metadata.create_all(engine)


# ── 2. Eager loading: one extra query per relation ───────────────────


def get_users_with_posts(connection: sa.Connection) -> list[User]:
    return User.find(connection).with_("posts").all_populate()


def get_users_with_everything(connection: sa.Connection) -> list[User]:
    return User.find(connection).with_("posts", "roles").all_populate()


# ── 3. Dotted paths ─────────────────────────────────────────────────


def get_posts_with_author_roles(connection: sa.Connection) -> list[Post]:
    return Post.find(connection).with_("author.roles").all_populate()


# ── 4. Customizing a relation query ─────────────────────────────────


def get_users_with_senior_roles(connection: sa.Connection) -> list[User]:
    return User.find(connection).with_({"roles": lambda q: q.where("level > :level", {"level": 3})}).all_populate()


# ── 5. Joining relations ────────────────────────────────────────────


def get_authors_of(connection: sa.Connection, title: str) -> list[User]:
    # joined for filtering, posts are still eager-loaded in full
    return User.find(connection).inner_join_with("posts p").where({"p.title": title}).all_populate()


def get_admins(connection: sa.Connection) -> list[User]:
    return User.find(connection).join_with("roles", eager_loading=False).where({"roles.name": "admin"}).all_populate()


# ── 6. Lookups ──────────────────────────────────────────────────────


def get_user(connection: sa.Connection, user_id: int) -> User | None:
    return User.find(connection).find_one(user_id)


def get_users_by_name(connection: sa.Connection, name: str) -> list[User]:
    return User.find(connection).find_all({"name": name})


# ── 7. Raw SQL ──────────────────────────────────────────────────────


def get_prolific_users(connection: sa.Connection) -> list[User]:
    return (
        User.find(connection)
        .with_("posts")
        .find_by_sql(
            "SELECT * FROM users WHERE id IN (SELECT author_id FROM posts GROUP BY author_id HAVING count(*) > :n)",
            {"n": 10},
        )
        .all_populate()
    )


# ── 8. Batches ──────────────────────────────────────────────────────


def iter_users(connection: sa.Connection) -> Iterator[User]:
    yield from User.find(connection).with_("posts").order_by("id").each(500)
