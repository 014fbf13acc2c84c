import pytest
from flash_hydrate import UnresolvedReferenceError, query_set
from sqlalchemy import literal_column, select, true
from sqlalchemy.dialects import postgresql

from .models import comments, posts, profiles, users


def users_set():
    return query_set("users", select(users.c.id, users.c.username))


def posts_nested(init):
    return init(select(posts.c.id, posts.c.user_id))


def profile_nested(init):
    return init(select(profiles.c.id, profiles.c.user_id, profiles.c.bio))


class TestQueryShapes:
    """Tests for the statement chosen for each combination of options."""

    def test_plain_query_set_paginates_base_query(self):
        """Without joins or ordering the base query is used as is."""
        sql = str(users_set().limit(5).to_query())

        assert "LIMIT" in sql
        assert "JOIN" not in sql
        assert "AS users" not in sql

    def test_joined_query_without_pagination(self):
        """Without limit or offset, every join is applied directly."""
        sql = str(
            users_set()
            .left_join_many("posts", posts_nested, "users.id", "posts.user_id")
            .to_query()
        )

        assert "LEFT OUTER JOIN" in sql
        assert "posts$$id" in sql
        assert "LIMIT" not in sql
        assert "EXISTS" not in sql

    def test_filtering_join_of_many_becomes_exists_under_limit(self):
        """The page is chosen on a cardinality-one query, joins come after."""
        sql = str(
            users_set()
            .inner_join_many("posts", posts_nested, "users.id", "posts.user_id")
            .limit(3)
            .to_query()
        )

        assert "EXISTS" in sql
        assert sql.index("LIMIT") < sql.rindex("JOIN")

    def test_one_join_is_hoisted_into_paginated_base(self):
        sql = str(
            users_set()
            .left_join_one("profile", profile_nested, "profile.user_id", "users.id")
            .left_join_many("posts", posts_nested, "profile.user_id", "posts.user_id")
            .limit(3)
            .to_query()
        )

        assert "profile$$bio" in sql
        assert "EXISTS" not in sql
        assert sql.index("profile$$bio") < sql.index("LIMIT")

    def test_nested_prefixes_accumulate(self):
        """Columns of deeper levels carry every collection key on the path."""

        def posts_with_comments(init):
            return posts_nested(init).left_join_many(
                "comments",
                lambda init: init(select(comments.c.id, comments.c.post_id)),
                "posts.id",
                "comments.post_id",
            )

        sql = str(
            users_set()
            .left_join_many("posts", posts_with_comments, "users.id", "posts.user_id")
            .to_query()
        )

        assert "posts$$comments$$id" in sql

    def test_nested_ordering_only_emitted_with_nested_limit(self):
        """ORDER BY inside a joined subquery is only kept next to a LIMIT."""
        unlimited = str(
            users_set()
            .left_join_many(
                "posts",
                lambda init: posts_nested(init).order_by("-id"),
                "users.id",
                "posts.user_id",
            )
            .to_query()
        )
        limited = str(
            users_set()
            .left_join_many(
                "posts",
                lambda init: posts_nested(init).order_by("-id").limit(1),
                "users.id",
                "posts.user_id",
            )
            .to_query()
        )

        assert "ORDER BY" not in unlimited
        assert "ORDER BY" in limited


class TestCountAndExistsQueries:
    def test_count_query_omits_left_joins_of_many(self):
        """Left joins of many can never drop a root row."""
        sql = str(
            users_set()
            .left_join_many("posts", posts_nested, "users.id", "posts.user_id")
            .limit(2)
            .to_count_query()
        )

        assert "count(*)" in sql
        assert "posts" not in sql
        assert "LIMIT" not in sql

    def test_count_query_keeps_filtering_joins(self):
        sql = str(
            users_set()
            .inner_join_many("posts", posts_nested, "users.id", "posts.user_id")
            .to_count_query()
        )

        assert "EXISTS" in sql

    def test_exists_query(self):
        sql = str(users_set().where(users.c.id > 3).to_exists_query())

        assert "EXISTS" in sql


class TestLateralJoins:
    """Lateral joins compiled for PostgreSQL."""

    def test_left_join_lateral_many(self):
        def latest_posts(init):
            return init(
                select(posts.c.id, posts.c.user_id)
                .where(posts.c.user_id == literal_column("users.id"))
                .order_by(posts.c.id.desc())
                .limit(2)
            )

        compiled = (
            users_set()
            .left_join_lateral_many("latest", latest_posts, lambda scope: true())
            .compile(postgresql.dialect())
        )
        sql = str(compiled)

        assert "LEFT OUTER JOIN LATERAL" in sql
        assert "latest$$id" in sql

    def test_cross_join_lateral_many(self):
        def latest_post(init):
            return init(
                select(posts.c.id)
                .where(posts.c.user_id == literal_column("users.id"))
                .limit(1)
            )

        sql = str(
            users_set()
            .cross_join_lateral_many("latest", latest_post)
            .compile(postgresql.dialect())
        )

        assert "JOIN LATERAL" in sql
        assert "ON true" in sql

    def test_inner_join_lateral_one_with_columns(self):
        sql = str(
            users_set()
            .inner_join_lateral_one(
                "profile", profile_nested, "profile.user_id", "users.id"
            )
            .compile(postgresql.dialect())
        )

        assert "JOIN LATERAL" in sql
        assert "profile.user_id = users.id" in sql


class TestReferences:
    """Tests for resolution of alias.column references."""

    def test_unknown_alias_in_condition(self):
        qs = users_set().left_join_many(
            "posts", posts_nested, "accounts.id", "posts.user_id"
        )

        with pytest.raises(UnresolvedReferenceError, match="accounts.id"):
            qs.to_query()

    def test_unknown_column_in_condition(self):
        qs = users_set().left_join_many(
            "posts", posts_nested, "users.email", "posts.user_id"
        )

        with pytest.raises(UnresolvedReferenceError, match="unknown column"):
            qs.to_query()

    def test_ordering_by_collection_of_many_is_rejected(self):
        """Ordering roots by a column of a many collection is ambiguous."""
        qs = (
            users_set()
            .left_join_many("posts", posts_nested, "users.id", "posts.user_id")
            .order_by("posts.id")
        )

        with pytest.raises(UnresolvedReferenceError, match="collection of many"):
            qs.to_query()

        with pytest.raises(UnresolvedReferenceError, match="collection of many"):
            qs.limit(1).to_query()
