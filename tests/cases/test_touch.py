from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import BelongsToMany

from ..models import Base, Post, Tag


PivotRows = Callable[[int], dict[int, dict[str, Any]]]


@pytest.fixture
def post(session: orm.Session, seed_data: dict[str, list[Base]]) -> Post:
    post = session.get(Post, 1)
    assert post is not None

    return post


def _post_updated_at(session: orm.Session) -> Any:
    return session.scalar(sa.select(Post.updated_at).where(Post.id == 1))


def _tags_updated_at(session: orm.Session) -> dict[int, Any]:
    return dict(session.execute(sa.select(Tag.id, Tag.updated_at)).tuples().all())


class TestTouch:
    def test_touch_parent(self, post: Post, session: orm.Session) -> None:
        post.belongs_to_many(Tag, relation_name="tags", touch_parent=True).attach(4)
        assert _post_updated_at(session) is not None

    def test_touch_related(self, post: Post, session: orm.Session) -> None:
        post.belongs_to_many(Tag, relation_name="tags", touch_related=True).detach(3)

        touched = _tags_updated_at(session)
        assert touched[1] is not None
        assert touched[2] is not None
        # no longer attached
        assert touched[3] is None
        assert touched[4] is None

    def test_no_touch_without_changes(self, post: Post, session: orm.Session) -> None:
        relation = post.belongs_to_many(Tag, relation_name="tags", touch_parent=True, touch_related=True)

        assert relation.sync([1, 2, 3]) == {"attached": [], "detached": [], "updated": []}
        assert relation.detach(4) == 0
        assert _post_updated_at(session) is None
        assert set(_tags_updated_at(session).values()) == {None}

    def test_touch_disabled(self, post: Post, session: orm.Session) -> None:
        post.belongs_to_many(Tag, relation_name="tags", touch_parent=True).attach(4, touch=False)
        assert _post_updated_at(session) is None

    def test_touch_once_per_call(self, post: Post, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[str] = []
        monkeypatch.setattr(BelongsToMany, "_touch_parent", lambda self: calls.append(self.relation_name))

        post.belongs_to_many(Tag, relation_name="tags", touch_parent=True).sync([2, 4])
        assert calls == ["tags"]

    def test_pivot_delete_touches(self, post: Post, session: orm.Session) -> None:
        relation = post.belongs_to_many(Tag, relation_name="tags", touch_parent=True)
        pivot = relation.get_currently_attached_pivots()[0]

        assert pivot.delete() == 1
        assert _post_updated_at(session) is not None

    def test_failure_is_logged(
        self,
        post: Post,
        pivot_rows: PivotRows,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        def _broken_touch(self: BelongsToMany[Post, Tag]) -> None:
            self.session.execute(sa.text("UPDATE missing_table SET updated_at = NULL"))

        monkeypatch.setattr(BelongsToMany, "_touch_parent", _broken_touch)

        with caplog.at_level(logging.WARNING, logger="sqla_relations.belongs_to_many"):
            post.belongs_to_many(Tag, relation_name="tags", touch_parent=True).attach(4)

        assert "Touch of relation 'tags' failed" in caplog.text
        assert 4 in pivot_rows(1)
