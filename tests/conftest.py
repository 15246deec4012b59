from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from sqla_activequery import Node, Record

from .models import SEED, AuditLog, Category, Customer, Item, Order, OrderItem, Profile, metadata


RECORDS: tuple[type[Record], ...] = (AuditLog, Category, Customer, Item, Order, OrderItem, Profile)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db-url",
        default="sqlite://",
        help="Database URL to run the integration cases against",
    )


@pytest.fixture(scope="session")
def db_url(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db-url")

    return value


@pytest.fixture(autouse=True)
def _register_records() -> None:
    """Make sure every test record type is resolvable by name.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    node = Node()
    for model in RECORDS:
        node.register(model)


@pytest.fixture(scope="session")
def engine(db_url: str) -> Iterator[sa.Engine]:
    options: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        options = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

    engine = sa.create_engine(db_url, **options)
    metadata.create_all(engine)
    with engine.begin() as conn:
        for table, rows in SEED.items():
            conn.execute(table.insert(), rows)

    yield engine

    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def connection(engine: sa.Engine) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def statements(engine: sa.Engine) -> Iterator[list[str]]:
    """Collect every SQL statement sent to the database while the test runs."""
    captured: list[str] = []

    def before_cursor_execute(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        captured.append(statement)

    sa.event.listen(engine, "before_cursor_execute", before_cursor_execute)
    yield captured
    sa.event.remove(engine, "before_cursor_execute", before_cursor_execute)


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]
