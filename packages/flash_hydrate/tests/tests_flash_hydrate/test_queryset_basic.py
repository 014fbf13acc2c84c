import logging

import pytest
from flash_hydrate import (
    NoResultError,
    PaginationParams,
    create_hydrator,
    hydrate_settings,
    query_set,
)
from sqlalchemy import select

from .models import USERNAMES, post_ids_of, posts, users

pytestmark = pytest.mark.asyncio


class UserMissing(Exception):
    pass


def posts_nested(init):
    return init(select(posts.c.id, posts.c.user_id, posts.c.title))


class TestExecute:
    """Tests for executing query sets without collections."""

    async def test_execute_returns_root_columns(self, db_session, users_qs):
        """Every selected column of the base query is included."""
        result = await users_qs.execute(db_session)

        assert result == [
            {"id": i, "username": name} for i, name in enumerate(USERNAMES, start=1)
        ]

    async def test_limit_and_offset_on_plain_base_query(self, db_session):
        """Without joins or ordering, pagination applies to the base query."""
        qs = query_set(
            "users", select(users.c.id, users.c.username).order_by(users.c.id)
        )

        result = await qs.limit(2).offset(1).execute(db_session)

        assert [user["username"] for user in result] == ["bob", "carol"]

    async def test_where_and_modify(self, db_session, users_qs):
        """where adds criteria and modify may rewrite the whole base query."""
        filtered = await users_qs.where(users.c.username.like("a%")).execute(
            db_session
        )
        extended = await (
            users_qs.modify(lambda q: q.add_columns(users.c.email))
            .where(users.c.id == 2)
            .execute(db_session)
        )

        assert filtered == [{"id": 1, "username": "alice"}]
        assert extended == [{"id": 2, "username": "bob", "email": "bob@example.com"}]

    async def test_custom_key_by(self, db_session):
        """Root entities may be keyed by a column other than id."""
        qs = query_set(
            "users", select(users.c.username, users.c.email), key_by="username"
        ).order_by("username")

        result = await qs.limit(2).execute(db_session)

        assert result == [
            {"username": "alice", "email": "alice@example.com"},
            {"username": "bob", "email": "bob@example.com"},
        ]

    async def test_compiled_sql_is_logged_when_enabled(
        self, db_session, users_qs, monkeypatch, caplog
    ):
        monkeypatch.setattr(hydrate_settings, "LOG_COMPILED_SQL", True)
        caplog.set_level(logging.DEBUG, logger="flash_hydrate")

        await users_qs.limit(1).execute(db_session)

        assert "Query set 'users' SQL" in caplog.text


class TestTakeFirst:
    """Tests for single entity execution."""

    async def test_execute_take_first(self, db_session, users_qs):
        """The first entity is returned, or None when nothing matched."""
        first = await users_qs.where(users.c.id > 5).execute_take_first(db_session)
        missing = await users_qs.where(users.c.id > 100).execute_take_first(
            db_session
        )

        assert first == {"id": 6, "username": "frank"}
        assert missing is None

    async def test_take_first_keeps_all_children(self, db_session, users_qs):
        """Children of the first entity are not cut by the single result."""
        first = await users_qs.left_join_many(
            "posts", posts_nested, "users.id", "posts.user_id"
        ).execute_take_first(db_session)

        assert first["username"] == "alice"
        assert sorted(post["id"] for post in first["posts"]) == post_ids_of(1)

    async def test_take_first_or_throw_default_error(self, db_session, users_qs):
        """NoResultError is raised and carries the executed statement."""
        qs = users_qs.where(users.c.id > 100)

        with pytest.raises(NoResultError) as exc_info:
            await qs.execute_take_first_or_throw(db_session)

        assert exc_info.value.statement is not None

    async def test_take_first_or_throw_custom_error(self, db_session, users_qs):
        """A custom exception class or factory replaces NoResultError."""
        qs = users_qs.where(users.c.id > 100)

        with pytest.raises(UserMissing):
            await qs.execute_take_first_or_throw(db_session, UserMissing)

        with pytest.raises(LookupError, match="no user"):
            await qs.execute_take_first_or_throw(
                db_session, lambda statement: LookupError("no user")
            )

    async def test_take_first_or_throw_returns_entity(self, db_session, users_qs):
        user = await users_qs.execute_take_first_or_throw(db_session)

        assert user == {"id": 1, "username": "alice"}


class TestCountAndExists:
    """Tests for counting and existence checks."""

    async def test_count_ignores_pagination(self, db_session, users_qs):
        """Limit and offset never affect the total."""
        assert await users_qs.execute_count(db_session) == 10
        assert await users_qs.limit(2).offset(3).execute_count(db_session) == 10
        assert await users_qs.execute_count(db_session, cast=str) == "10"

    async def test_count_is_not_inflated_by_joins_of_many(self, db_session, users_qs):
        """Left joins of many never change the number of root entities."""
        left = users_qs.left_join_many(
            "posts", posts_nested, "users.id", "posts.user_id"
        )
        inner = users_qs.inner_join_many(
            "posts",
            lambda init: posts_nested(init).where(posts.c.id > 12),
            "users.id",
            "posts.user_id",
        )

        assert await left.execute_count(db_session) == 10
        assert await inner.execute_count(db_session) == 3
        assert await inner.limit(1).execute_count(db_session) == 3

    async def test_exists(self, db_session, users_qs):
        assert await users_qs.execute_exists(db_session) is True
        assert await users_qs.where(users.c.id > 100).execute_exists(db_session) is False

    async def test_exists_ignores_pagination(self, db_session, users_qs):
        """A page past the end or of size zero does not hide matching rows."""
        recent_posts = users_qs.inner_join_many(
            "posts",
            lambda init: posts_nested(init).where(posts.c.id > 12),
            "users.id",
            "posts.user_id",
        )

        assert await users_qs.offset(100).execute_exists(db_session) is True
        assert await users_qs.limit(0).execute_exists(db_session) is True
        assert await recent_posts.limit(1).offset(5).execute_exists(db_session) is True
        assert (
            await recent_posts.where(users.c.id > 5).limit(1).execute_exists(db_session)
            is False
        )


class TestPaginate:
    """Tests for paginate()."""

    async def test_paginate_with_page_and_ordering(self, db_session, users_qs):
        """Ordering from the params applies and total counts every user."""
        params = PaginationParams(page=2, limit=3, ordering="-id")

        page = await users_qs.clear_order_by().paginate(db_session, params)

        assert [user["id"] for user in page.items] == [7, 6, 5]
        assert page.total == 10
        assert page.limit == 3
        assert page.offset == 3
        assert page.has_next is True

    async def test_paginate_with_joins(self, db_session, users_qs):
        """Each page holds complete root entities."""
        qs = users_qs.left_join_many(
            "posts", posts_nested, "users.id", "posts.user_id"
        )

        page = await qs.paginate(db_session, PaginationParams(limit=4, offset=8))

        assert [user["id"] for user in page.items] == [9, 10]
        assert page.total == 10
        assert page.has_next is False

    async def test_paginate_uses_clamped_limit(self, db_session, users_qs, monkeypatch):
        """A requested page size above the maximum is cut to the maximum."""
        monkeypatch.setattr(hydrate_settings, "MAX_PAGE_SIZE", 4)

        page = await users_qs.paginate(
            db_session, PaginationParams(limit=100)
        )

        assert page.limit == 4
        assert len(page.items) == 4
        assert page.has_next is True


class TestShaping:
    """Tests for root level hydration configuration."""

    async def test_extras_and_omit(self, db_session, users_qs):
        """Extras see the raw row; omitted columns are dropped from output."""
        result = await (
            users_qs.extras(handle=lambda row: f"@{row['username']}")
            .omit("username")
            .where(users.c.id == 1)
            .execute(db_session)
        )

        assert result == [{"id": 1, "handle": "@alice"}]

    async def test_map_fields(self, db_session, users_qs):
        result = await users_qs.map_fields(username=str.upper).limit(2).execute(
            db_session
        )

        assert [user["username"] for user in result] == ["ALICE", "BOB"]

    async def test_with_merges_hydrator(self, db_session, users_qs):
        """A standalone hydrator's configuration is merged in."""
        extra = create_hydrator().extras(initial=lambda row: row["username"][0])

        result = await users_qs.with_(extra).where(users.c.id == 3).execute(db_session)

        assert result == [{"id": 3, "username": "carol", "initial": "c"}]

    async def test_map_chain(self, db_session, users_qs):
        """Maps compose in order and run after hydration."""
        result = await (
            users_qs.map(lambda user: user["username"])
            .map(str.upper)
            .limit(3)
            .execute(db_session)
        )

        assert result == ["ALICE", "BOB", "CAROL"]

    async def test_mapped_query_set_keeps_pagination(self, db_session, users_qs):
        """A mapped query set can still be filtered, paged and counted."""
        mapped = users_qs.map(lambda user: user["id"])

        assert await mapped.where(users.c.id > 7).execute(db_session) == [8, 9, 10]
        assert await mapped.offset(8).execute(db_session) == [9, 10]
        assert await mapped.execute_count(db_session) == 10
