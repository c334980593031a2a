"""Tests for user storage."""

import pytest

from partnermatch.core.errors import ErrorCode
from partnermatch.persistence.users import User, UserRole, parse_tags


class TestParseTags:
    def test_json_array(self):
        assert parse_tags('["go", "rust"]') == ["go", "rust"]

    @pytest.mark.parametrize("raw", [None, "", "   ", "not json", '{"a": 1}'])
    def test_blank_or_malformed(self, raw):
        assert parse_tags(raw) == []


class TestUser:
    def test_is_admin(self):
        assert User(id=1, user_account="a", role=UserRole.ADMIN).is_admin
        assert not User(id=1, user_account="a").is_admin

    def test_to_dict(self):
        data = User(id=3, user_account="acct", tags=["x"]).to_dict()

        assert data["id"] == 3
        assert data["tags"] == ["x"]
        assert data["role"] == 0


class TestUserStore:
    """Integration tests for UserStore (requires database)."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, user_store):
        created = await user_store.create_user("alice", username="Alice", tags=["go", "rust"])

        fetched = await user_store.get_user(created.id)
        assert fetched.user_account == "alice"
        assert fetched.username == "Alice"
        assert fetched.tags == ["go", "rust"]
        assert fetched.role == UserRole.NORMAL

    @pytest.mark.asyncio
    async def test_duplicate_account(self, user_store):
        await user_store.create_user("alice")

        with pytest.raises(ValueError):
            await user_store.create_user("alice")

    @pytest.mark.asyncio
    async def test_soft_delete_hides_user(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        user = await user_store.create_user("alice", tags=["go"])

        assert (await user_store.soft_delete_user(user.id, admin.id)).value
        assert (await user_store.soft_delete_user(user.id, admin.id)).value is False
        assert await user_store.get_user(user.id) is None
        assert await user_store.get_users_by_ids([user.id]) == []
        assert await user_store.list_tag_projections() == []
        assert await user_store.count_users() == 1

    @pytest.mark.asyncio
    async def test_tag_projections(self, user_store):
        a = await user_store.create_user("a", tags=["go"])
        await user_store.create_user("b")
        c = await user_store.create_user("c", tags=[])

        projections = await user_store.list_tag_projections()

        assert projections == [(a.id, ["go"]), (c.id, [])]

    @pytest.mark.asyncio
    async def test_get_users_by_ids(self, user_store):
        a = await user_store.create_user("a")
        b = await user_store.create_user("b")

        users = await user_store.get_users_by_ids([b.id, a.id, 999])

        assert sorted(u.id for u in users) == [a.id, b.id]
        assert await user_store.get_users_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_list_users_paginates(self, user_store):
        for name in ["a", "b", "c"]:
            await user_store.create_user(name)

        page = await user_store.list_users(limit=2, offset=1)

        assert [u.user_account for u in page] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_search_requires_every_tag(self, user_store):
        both = await user_store.create_user("a", tags=["java", "go"])
        await user_store.create_user("b", tags=["java"])
        await user_store.create_user("c", tags=["javascript", "go"])

        result = await user_store.search_users_by_tags(["java", "go"])

        assert [u.id for u in result.value] == [both.id]

    @pytest.mark.asyncio
    async def test_search_without_tags(self, user_store):
        result = await user_store.search_users_by_tags([])

        assert result.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_is_admin(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        user = await user_store.create_user("user")

        assert await user_store.is_admin(admin.id)
        assert not await user_store.is_admin(user.id)
        assert not await user_store.is_admin(999)


class TestUpdateUser:
    """Tests for UserStore.update_user."""

    @pytest.mark.asyncio
    async def test_self_update(self, user_store):
        user = await user_store.create_user("alice", tags=["go"])

        result = await user_store.update_user(
            user.id, {"username": "Al", "tags": ["rust"]}, user.id
        )

        assert result.success
        assert result.value.username == "Al"
        assert result.value.tags == ["rust"]

    @pytest.mark.asyncio
    async def test_admin_update(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        user = await user_store.create_user("alice")

        result = await user_store.update_user(user.id, {"email": "a@example.com"}, admin.id)

        assert result.value.email == "a@example.com"

    @pytest.mark.asyncio
    async def test_other_user_rejected(self, user_store):
        alice = await user_store.create_user("alice")
        bob = await user_store.create_user("bob")

        result = await user_store.update_user(alice.id, {"username": "hacked"}, bob.id)

        assert result.code == ErrorCode.UNAUTHORIZED
        assert (await user_store.get_user(alice.id)).username is None

    @pytest.mark.asyncio
    async def test_role_not_updatable(self, user_store):
        user = await user_store.create_user("alice")

        result = await user_store.update_user(user.id, {"user_role": 1}, user.id)

        assert result.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, user_store):
        user = await user_store.create_user("alice")

        result = await user_store.update_user(user.id, {}, user.id)

        assert result.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_unknown_target(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)

        result = await user_store.update_user(999, {"username": "x"}, admin.id)

        assert result.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_deleted_requester_rejected(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        user = await user_store.create_user("alice")
        await user_store.soft_delete_user(user.id, admin.id)

        result = await user_store.update_user(user.id, {"username": "ghost"}, user.id)

        assert result.code == ErrorCode.NOT_FOUND


class TestSoftDeleteUser:
    """Tests for UserStore.soft_delete_user authorization."""

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, user_store):
        alice = await user_store.create_user("alice")
        bob = await user_store.create_user("bob")

        result = await user_store.soft_delete_user(alice.id, bob.id)

        assert result.code == ErrorCode.UNAUTHORIZED
        assert await user_store.get_user(alice.id) is not None

    @pytest.mark.asyncio
    async def test_self_delete_requires_admin(self, user_store):
        alice = await user_store.create_user("alice")

        result = await user_store.soft_delete_user(alice.id, alice.id)

        assert result.code == ErrorCode.UNAUTHORIZED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [0, -3])
    async def test_invalid_id(self, user_store, user_id):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)

        result = await user_store.soft_delete_user(user_id, admin.id)

        assert result.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_role_read_from_store(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        other_admin = await user_store.create_user("ops", role=UserRole.ADMIN)
        alice = await user_store.create_user("alice")
        await user_store.soft_delete_user(admin.id, other_admin.id)

        result = await user_store.soft_delete_user(alice.id, admin.id)

        assert result.code == ErrorCode.NOT_FOUND
        assert await user_store.get_user(alice.id) is not None


class TestSearchUsersByUsername:
    """Tests for UserStore.search_users_by_username."""

    @pytest.mark.asyncio
    async def test_substring_match(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        ann = await user_store.create_user("a1", username="Annabel")
        joanna = await user_store.create_user("a2", username="Joanna")
        await user_store.create_user("a3", username="Bob")

        result = await user_store.search_users_by_username("ann", admin.id)

        assert [u.id for u in result.value] == [ann.id, joanna.id]

    @pytest.mark.asyncio
    async def test_blank_text_lists_everyone(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        await user_store.create_user("a1", username="Annabel")

        result = await user_store.search_users_by_username("  ", admin.id)

        assert len(result.value) == 2

    @pytest.mark.asyncio
    async def test_wildcards_are_literal(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        await user_store.create_user("a1", username="Annabel")

        result = await user_store.search_users_by_username("%", admin.id)

        assert result.value == []

    @pytest.mark.asyncio
    async def test_deleted_users_hidden(self, user_store):
        admin = await user_store.create_user("root", role=UserRole.ADMIN)
        ann = await user_store.create_user("a1", username="Annabel")
        await user_store.soft_delete_user(ann.id, admin.id)

        result = await user_store.search_users_by_username("Ann", admin.id)

        assert result.value == []

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, user_store):
        alice = await user_store.create_user("alice", username="Alice")

        result = await user_store.search_users_by_username("Ali", alice.id)

        assert result.code == ErrorCode.UNAUTHORIZED
