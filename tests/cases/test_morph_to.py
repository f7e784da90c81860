from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import ConfigurationError, MorphRegistry, MorphTo, get_relation

from ..models import Base, Comment, Document, Post, User, Video, Visit


@pytest.fixture
def comments(session: orm.Session, seed_data: dict[str, list[Base]]) -> list[Comment]:
    return list(session.scalars(sa.select(Comment).order_by(Comment.id)))


def _by_id(comments: list[Comment]) -> dict[int, Comment]:
    return {comment.id: comment for comment in comments}


class TestEagerLoad:
    def test_one_query_per_type(self, comments: list[Comment], select_counter: list[str]) -> None:
        batch = comments[:3]
        select_counter.clear()

        batch[0].morph_to("commentable").eager_load(batch)

        assert len(select_counter) == 2
        first, second, third = (get_relation(comment, "commentable") for comment in batch)
        assert isinstance(first, Post)
        assert first is second
        assert isinstance(third, Video)
        assert third.id == 1

    def test_every_type_resolved(self, comments: list[Comment], select_counter: list[str]) -> None:
        select_counter.clear()
        comments[0].morph_to("commentable").eager_load(comments)

        # post, video and document
        assert len(select_counter) == 3
        loaded = {comment.id: get_relation(comment, "commentable") for comment in comments}
        assert loaded[1].title == "Alice Post 1"
        assert loaded[6].title == "Bob Post 1"
        assert isinstance(loaded[4], Document)
        assert loaded[4].id == "doc-1"
        assert loaded[5] is None

    def test_missing_target(self, comments: list[Comment], session: orm.Session) -> None:
        session.execute(sa.update(Comment).where(Comment.id == 6).values(commentable_id="99"))
        comment = session.get(Comment, 6, populate_existing=True)
        assert comment is not None

        comment.morph_to("commentable").eager_load([comment])
        assert get_relation(comment, "commentable") is None

    def test_empty_batch(self, comments: list[Comment], select_counter: list[str]) -> None:
        select_counter.clear()

        assert comments[0].morph_to("commentable").eager_load([]) == []
        assert select_counter == []

    def test_unknown_type(self, session: orm.Session) -> None:
        comment = Comment(id=10, body="lost", commentable_type="missing", commentable_id="1")

        with pytest.raises(ConfigurationError, match="missing"):
            comment.morph_to("commentable").eager_load([comment], session=session)

    def test_dictionary(self, comments: list[Comment]) -> None:
        relation = comments[0].morph_to("commentable")
        relation.add_eager_constraints(comments)
        dictionary = relation.get_dictionary()

        assert dictionary.types() == ["post", "video", "document"]
        assert [c.id for c in dictionary.get("post", "1")] == [1, 2]
        assert relation.gather_keys_by_type("post") == [1, 3]
        assert relation.gather_keys_by_type("document") == ["doc-1"]


class TestPerTypeConfiguration:
    def test_morph_with(self, comments: list[Comment]) -> None:
        comments[0].morph_to("commentable").morph_with({Post: "author"}).eager_load(comments)

        by_id = _by_id(comments)
        assert by_id[1].commentable.author.name == "alice"
        assert by_id[6].commentable.author.name == "bob"

    def test_morph_with_alias_key(self, comments: list[Comment]) -> None:
        relation = comments[0].morph_to("commentable").morph_with({"post": ["author"]})
        relation.eager_load(comments)

        assert _by_id(comments)[2].commentable.author.name == "alice"

    def test_morph_with_unknown_relationship(self, comments: list[Comment]) -> None:
        with pytest.raises(ConfigurationError, match="No relationship"):
            comments[0].morph_to("commentable").morph_with({Video: "author"})

    def test_morph_with_count(self, comments: list[Comment]) -> None:
        comments[0].morph_to("commentable").morph_with_count({Post: "tags"}).eager_load(comments)

        by_id = _by_id(comments)
        assert by_id[1].commentable.tags_count == 3
        assert by_id[6].commentable.tags_count == 1
        assert not hasattr(by_id[3].commentable, "tags_count")

    def test_constrain(self, comments: list[Comment]) -> None:
        relation = comments[0].morph_to("commentable").constrain({Post: lambda query: query.where(Post.id != 3)})
        relation.eager_load(comments)

        by_id = _by_id(comments)
        assert by_id[1].commentable.id == 1
        assert by_id[6].commentable is None
        assert isinstance(by_id[3].commentable, Video)


class TestSingleParent:
    def test_get_results(self, comments: list[Comment]) -> None:
        by_id = _by_id(comments)

        document = by_id[4].morph_to("commentable").get_results()
        assert isinstance(document, Document)
        assert document.title == "Data sheet"
        assert by_id[5].morph_to("commentable").get_results() is None

    def test_get_query(self, comments: list[Comment], session: orm.Session) -> None:
        query = _by_id(comments)[4].morph_to("commentable").get_query()
        assert session.scalars(query).one().title == "Data sheet"

    def test_get_query_without_target(self, comments: list[Comment]) -> None:
        with pytest.raises(ConfigurationError, match="'commentable' of Comment references no model"):
            _by_id(comments)[5].morph_to("commentable").get_query()

    def test_related_class(self, comments: list[Comment]) -> None:
        by_id = _by_id(comments)

        assert by_id[3].morph_to("commentable").related is Video
        assert by_id[5].morph_to("commentable").related is Comment

    def test_associate(self, comments: list[Comment], session: orm.Session) -> None:
        comment = _by_id(comments)[5]
        video = session.get(Video, 1)
        relation = comment.morph_to("commentable")

        assert relation.associate(video) is comment
        assert comment.commentable_type == "video"
        assert comment.commentable_id == 1
        assert get_relation(comment, "commentable") is video
        assert relation.related is Video
        assert relation.is_(video)

    def test_associate_unregistered(self, comments: list[Comment], session: orm.Session) -> None:
        relation = comments[0].morph_to("commentable", registry=MorphRegistry({"post": Post}))

        with pytest.raises(ConfigurationError, match="Video is not registered"):
            relation.associate(session.get(Video, 1))

        assert comments[0].commentable_type == "post"

    def test_is_unregistered(self, comments: list[Comment], session: orm.Session) -> None:
        relation = comments[0].morph_to("commentable", registry=MorphRegistry({"post": Post}))
        assert relation.is_not(session.get(Video, 1))

    def test_dissociate(self, comments: list[Comment]) -> None:
        comment = comments[0]
        relation = comment.morph_to("commentable")

        assert relation.associate(None) is comment
        assert comment.commentable_type is None
        assert comment.commentable_id is None
        assert get_relation(comment, "commentable") is None

    def test_is(self, comments: list[Comment], session: orm.Session) -> None:
        relation = comments[0].morph_to("commentable")
        post1, post2 = session.get(Post, 1), session.get(Post, 2)
        video, user = session.get(Video, 1), session.get(User, 1)

        assert relation.is_(post1)
        assert relation.is_not(post2)
        # same key, other type
        assert relation.is_not(video)
        assert relation.is_not(user)
        assert relation.is_not(session.get(Visit, 1))
        assert relation.is_not(None)

    def test_explicit_construction(self, comments: list[Comment], registry: MorphRegistry) -> None:
        relation = MorphTo(
            comments[2],
            morph_type="commentable_type",
            foreign_key="commentable_id",
            registry=registry,
            relation_name="target",
        )

        assert isinstance(relation.get_results(), Video)
