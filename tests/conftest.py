from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import date
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import MorphRegistry, cache_clear

from .models import (
    Base,
    Comment,
    Document,
    Image,
    Post,
    Tag,
    User,
    Video,
    Visit,
    post_tag,
    taggables,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def postgres_container(db_backend: str) -> Iterator[Any]:
    if db_backend != "postgres":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer(image="postgres:latest")
    if os.name == "nt":
        pg.get_container_host_ip = lambda: "127.0.0.1"
    with pg:
        yield pg


@pytest.fixture(scope="session")
def db_config(
    db_backend: str,
    postgres_container: Any,
    tmp_path_factory: pytest.TempPathFactory,
) -> dict[str, str]:
    """Sync and async DSNs of the same database."""
    match db_backend:
        case "postgres":
            pg = postgres_container
            address = (
                f"{pg.username}:{pg.password}"
                f"@{pg.get_container_host_ip()}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
            )
            return {
                "sync": f"postgresql+psycopg://{address}",
                "async": f"postgresql+asyncpg://{address}",
            }

        case _:
            tmp = tmp_path_factory.mktemp("db")
            return {
                "sync": f"sqlite:///{tmp}/test.db",
                "async": f"sqlite+aiosqlite:///{tmp}/test.db",
            }


def enable_sqlite_savepoints(engine: sa.Engine) -> None:
    """Let pysqlite emit BEGIN itself so SAVEPOINT works (SQLAlchemy recipe)."""

    @sa.event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @sa.event.listens_for(engine, "begin")
    def _do_begin(conn: sa.Connection) -> None:
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session")
def engine(db_config: dict[str, str]) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config["sync"], echo=False)
    if engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    with engine.begin() as conn:
        Base.metadata.create_all(conn)
    yield
    with engine.begin() as conn:
        Base.metadata.drop_all(conn)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def session(connection: sa.Connection) -> Iterator[orm.Session]:
    sess = orm.Session(bind=connection, expire_on_commit=False)
    yield sess
    sess.close()


@pytest.fixture
def registry() -> MorphRegistry:
    registry = Base.__morph_registry__
    assert registry is not None

    return registry


@pytest.fixture
def seed_data(session: orm.Session) -> dict[str, list[Base]]:
    alice = User(id=1, name="alice")
    bob = User(id=2, name="bob")
    charlie = User(id=3, name="charlie")
    session.add_all([alice, bob, charlie])
    session.flush()

    visits = [
        Visit(id=1, user_id=1, visited_on=date(2020, 1, 1)),
        Visit(id=2, user_id=1, visited_on=date(2021, 1, 1)),
        Visit(id=3, user_id=2, visited_on=date(2019, 1, 1)),
    ]
    session.add_all(visits)

    post1 = Post(id=1, title="Alice Post 1", author_id=1)
    post2 = Post(id=2, title="Alice Post 2", author_id=1)
    post3 = Post(id=3, title="Bob Post 1", author_id=2)
    video = Video(id=1, title="Intro")
    document = Document(id="doc-1", title="Data sheet")
    session.add_all([post1, post2, post3, video, document])

    tags = [Tag(id=i, name=name) for i, name in enumerate(["python", "sql", "orm", "async"], start=1)]
    session.add_all(tags)
    session.flush()

    session.execute(
        post_tag.insert(),
        [
            {"post_id": 1, "tag_id": 1, "role": "main", "priority": 1},
            {"post_id": 1, "tag_id": 2, "role": None, "priority": None},
            {"post_id": 1, "tag_id": 3, "role": None, "priority": None},
            {"post_id": 3, "tag_id": 1, "role": None, "priority": None},
        ],
    )
    session.execute(
        taggables.insert(),
        [
            {"tag_id": 1, "taggable_type": "post", "taggable_id": 1, "role": "main"},
            {"tag_id": 2, "taggable_type": "post", "taggable_id": 1, "role": None},
            {"tag_id": 2, "taggable_type": "video", "taggable_id": 1, "role": None},
            {"tag_id": 4, "taggable_type": "video", "taggable_id": 1, "role": "cover"},
        ],
    )

    comments = [
        Comment(id=1, body="first", commentable_type="post", commentable_id="1"),
        Comment(id=2, body="second", commentable_type="post", commentable_id="1"),
        Comment(id=3, body="on video", commentable_type="video", commentable_id="1"),
        Comment(id=4, body="on doc", commentable_type="document", commentable_id="doc-1"),
        Comment(id=5, body="orphan", commentable_type=None, commentable_id=None),
        Comment(id=6, body="other post", commentable_type="post", commentable_id="3"),
    ]
    images = [
        Image(id=1, url="https://example.com/p1-a.jpg", imageable_type="post", imageable_id=1),
        Image(id=2, url="https://example.com/p1-b.jpg", imageable_type="post", imageable_id=1),
        Image(id=3, url="https://example.com/v1.jpg", imageable_type="video", imageable_id=1),
    ]
    session.add_all([*comments, *images])
    session.flush()

    session.expunge_all()

    return {
        "users": [alice, bob, charlie],
        "visits": visits,
        "posts": [post1, post2, post3],
        "videos": [video],
        "documents": [document],
        "tags": tags,
        "comments": comments,
        "images": images,
    }


@pytest.fixture
def select_counter(connection: sa.Connection) -> Iterator[list[str]]:
    """Collects every SELECT sent through the test connection."""
    statements: list[str] = []

    def _count(
        conn: sa.Connection,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        if statement.lstrip().upper().startswith("SELECT"):
            statements.append(statement)

    sa.event.listen(connection, "before_cursor_execute", _count)
    yield statements
    sa.event.remove(connection, "before_cursor_execute", _count)


@pytest.fixture
def pivot_rows(session: orm.Session) -> Callable[[int], dict[int, dict[str, Any]]]:
    """Reads the post_tag rows of one post straight from the table, keyed by tag id."""

    def _rows(post_id: int) -> dict[int, dict[str, Any]]:
        rows = session.execute(sa.select(post_tag).where(post_tag.c.post_id == post_id)).mappings()
        return {row["tag_id"]: dict(row) for row in rows}

    return _rows


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()
