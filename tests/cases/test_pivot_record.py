from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import ConfigurationError, Pivot

from ..models import Base, Post, post_tag


PivotRows = Callable[[int], dict[int, dict[str, Any]]]


@pytest.fixture
def post(session: orm.Session, seed_data: dict[str, list[Base]]) -> Post:
    post = session.get(Post, 1)
    assert post is not None

    return post


def _pivot(post: Post, attributes: dict[str, Any], exists: bool = False) -> Pivot:
    return Pivot.from_attributes(post, attributes, post_tag, exists).set_pivot_keys("post_id", "tag_id")


class TestPivotSave:
    def test_insert(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 4, "role": "extra"})

        assert pivot.save() is True
        assert pivot.exists
        assert not pivot.is_dirty()
        assert pivot_rows(1)[4]["role"] == "extra"

    def test_insert_rejects_unknown_attributes(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 4, "note": "not a column"})
        with pytest.raises(ConfigurationError, match=r"Unknown column\(s\) \['note'\]"):
            pivot.save()

        assert pivot.exists is False
        assert 4 not in pivot_rows(1)

    def test_insert_with_timestamps(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 4})
        pivot.timestamps = True
        pivot.save()

        row = pivot_rows(1)[4]
        assert row["created_at"] is not None
        assert row["updated_at"] is not None

    def test_update_dirty_values(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 2, "role": None}, exists=True)
        pivot.set_attribute("role", "secondary")

        assert pivot.save() is True
        assert pivot_rows(1)[2]["role"] == "secondary"
        assert pivot_rows(1)[1]["role"] == "main"

    def test_update_moves_row(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 3}, exists=True)
        pivot.set_attribute("tag_id", 4)
        pivot.save()

        assert set(pivot_rows(1)) == {1, 2, 4}

    def test_update_without_changes_writes_nothing(
        self, post: Post, session: orm.Session, pivot_rows: PivotRows
    ) -> None:
        stamp = datetime(2020, 1, 1)
        session.execute(sa.update(post_tag).where(post_tag.c.tag_id == 2).values(updated_at=stamp))
        pivot = _pivot(post, {"post_id": 1, "tag_id": 2}, exists=True)
        pivot.timestamps = True

        assert pivot.save() is True
        assert pivot_rows(1)[2]["updated_at"].replace(tzinfo=None) == stamp

    def test_unbound_pivot(self) -> None:
        pivot = Pivot(post_tag)

        with pytest.raises(ConfigurationError, match="not bound to a session"):
            pivot.save()


class TestPivotDelete:
    def test_delete(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 2}, exists=True)

        assert pivot.delete() == 1
        assert not pivot.exists
        assert set(pivot_rows(1)) == {1, 3}

    def test_delete_uses_original_keys(self, post: Post, pivot_rows: PivotRows) -> None:
        pivot = _pivot(post, {"post_id": 1, "tag_id": 2}, exists=True)
        pivot.set_attribute("tag_id", 3)

        assert pivot.delete() == 1
        assert set(pivot_rows(1)) == {1, 3}

    def test_delete_missing_row(self, post: Post) -> None:
        assert _pivot(post, {"post_id": 1, "tag_id": 4}, exists=True).delete() == 0

    def test_delete_without_identity(self, post: Post) -> None:
        pivot = Pivot.from_attributes(post, {"role": "main"}, post_tag, exists=True)

        with pytest.raises(ConfigurationError, match="identify"):
            pivot.delete()


class TestRestoration:
    def test_restore_from_queueable_id(self, post: Post, session: orm.Session) -> None:
        queueable_id = _pivot(post, {"post_id": 1, "tag_id": 1}, exists=True).get_queueable_id()

        row = session.execute(Pivot(post_tag).new_query_for_restoration(queueable_id)).mappings().one()
        assert row["role"] == "main"

    def test_restore_collection(self, post: Post, session: orm.Session) -> None:
        ids = [
            _pivot(post, {"post_id": 1, "tag_id": tag_id}, exists=True).get_queueable_id()
            for tag_id in (1, 3)
        ]

        rows = session.execute(Pivot(post_tag).new_query_for_restoration(ids)).mappings().all()
        assert sorted(row["tag_id"] for row in rows) == [1, 3]
