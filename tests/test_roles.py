"""Role administration: guards around the default administrator role, conflicts,
soft deletion and permission cache invalidation."""

from datetime import datetime, timedelta

import pytest

from warden.service.permissions import PermissionResolver
from warden.service.result import Err, ErrorKind, Ok
from warden.service.roles import RoleService
from warden.storage.errors import ConstraintViolation
from warden.storage.keys import permissions_key
from warden.storage.memory import MemoryStore
from warden.storage.memory_cache import MemoryCache
from warden.storage.models import RolePatch, RoleQuery


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_permission("*:*:*", permission_id=1)
    store.create_permission("user:list", permission_id=2)
    store.create_permission("role:list", permission_id=3)
    store.create_role("admin", permission_ids=[1], role_id=1)
    store.create_role("editor", permission_ids=[2], role_id=2)
    store.create_role("viewer", permission_ids=[3], role_id=3)
    store.create_user("admin", "hash", role_ids=[1], user_id="u-admin")
    store.create_user("ed", "hash", role_ids=[2], user_id="u-ed")
    return store


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def resolver(store, cache, settings):
    return PermissionResolver(store, cache, settings)


@pytest.fixture
def roles(store, resolver, settings):
    return RoleService(store, resolver, settings)


class TestCreate:
    async def test_creates_role_with_permissions(self, roles, store):
        result = await roles.create("auditor", description="read only", permission_ids=[2, 3, 2])

        assert isinstance(result, Ok)
        role = store.get_role(result.value.id)
        assert role.name == "auditor"
        assert role.description == "read only"
        assert role.permission_ids == [2, 3]
        assert role.disabled is False

    async def test_duplicate_name_conflicts(self, roles):
        result = await roles.create("editor")
        assert result == Err(ErrorKind.CONFLICT, "The name already exists")

    async def test_name_check_is_case_sensitive(self, roles):
        assert isinstance(await roles.create("Editor"), Ok)

    async def test_name_of_deleted_role_can_be_reused(self, roles):
        assert isinstance(await roles.remove(3), Ok)
        assert isinstance(await roles.create("viewer"), Ok)

    async def test_race_with_concurrent_create_maps_to_conflict(self, roles, store, monkeypatch):
        monkeypatch.setattr(store, "find_role_by_name", lambda name, exclude_id=None: None)

        def _raise(*args, **kwargs):
            raise ConstraintViolation("role name already exists", {"field": "name"})

        monkeypatch.setattr(store, "create_role", _raise)
        result = await roles.create("fresh")
        assert isinstance(result, Err)
        assert result.kind is ErrorKind.CONFLICT


class TestFind:
    async def test_find_all_excludes_deleted(self, roles):
        await roles.remove(3)
        page = await roles.find_all(RoleQuery())

        assert {r.name for r in page.list} == {"admin", "editor"}
        assert page.total == 2

    async def test_find_all_filters(self, roles, store):
        store.create_role("Senior Editor", disabled=True)

        by_keyword = await roles.find_all(RoleQuery(keyword="EDIT"))
        assert {r.name for r in by_keyword.list} == {"editor", "Senior Editor"}

        disabled_only = await roles.find_all(RoleQuery(disabled=True))
        assert [r.name for r in disabled_only.list] == ["Senior Editor"]

        future = datetime.utcnow() + timedelta(days=1)
        assert (await roles.find_all(RoleQuery(begin_time=future))).total == 0

    async def test_find_all_paginates_and_orders(self, roles, store):
        base = datetime(2024, 1, 1)
        for index, role in enumerate(store.roles.values()):
            role.created_at = base + timedelta(minutes=index)

        first = await roles.find_all(RoleQuery(page=1, page_size=2, sort="asc"))
        second = await roles.find_all(RoleQuery(page=2, page_size=2, sort="asc"))
        newest = await roles.find_all(RoleQuery(page=1, page_size=1, sort="desc"))

        assert [r.name for r in first.list] == ["admin", "editor"]
        assert [r.name for r in second.list] == ["viewer"]
        assert first.total == second.total == 3
        assert [r.name for r in newest.list] == ["viewer"]

    async def test_find_one(self, roles):
        result = await roles.find_one(2)
        assert isinstance(result, Ok)
        assert result.value.permission_ids == [2]

    async def test_find_one_missing_or_deleted(self, roles):
        await roles.remove(3)
        assert (await roles.find_one(3)).kind is ErrorKind.NOT_FOUND
        assert (await roles.find_one(999)).kind is ErrorKind.NOT_FOUND


class TestUpdate:
    @pytest.mark.parametrize(
        "patch",
        [
            RolePatch(),
            RolePatch(description="x"),
            RolePatch(disabled=True),
            RolePatch(name="root"),
            RolePatch(permissions=None),
        ],
    )
    async def test_default_admin_role_is_immutable(self, roles, store, patch):
        result = await roles.update(1, patch)

        assert isinstance(result, Err)
        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        role = store.get_role(1)
        assert role.name == "admin"
        assert role.permission_ids == [1]
        assert role.disabled is False

    async def test_role_named_like_default_is_immutable(self, tmp_path):
        from warden.config import Settings

        settings = Settings(shared_fs_root=str(tmp_path), default_role_name="superuser")
        store = MemoryStore()
        store.create_role("placeholder", role_id=1)
        store.create_role("superuser", role_id=7)
        service = RoleService(store, PermissionResolver(store, MemoryCache(), settings), settings)

        result = await service.update(7, RolePatch(description="changed"))
        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        assert store.get_role(7).description is None

    async def test_missing_role(self, roles):
        assert (await roles.update(999, RolePatch(description="x"))).kind is ErrorKind.NOT_FOUND

    async def test_name_collision(self, roles):
        result = await roles.update(2, RolePatch(name="viewer"))
        assert result == Err(ErrorKind.CONFLICT, "The name already exists")

    async def test_keeping_own_name_is_not_a_conflict(self, roles, store):
        assert isinstance(await roles.update(2, RolePatch(name="editor", description="d")), Ok)
        assert store.get_role(2).description == "d"

    async def test_permissions_are_replaced(self, roles, store):
        assert isinstance(await roles.update(2, RolePatch(permissions=[3])), Ok)
        assert store.get_role(2).permission_ids == [3]

    @pytest.mark.parametrize("cleared", [None, []])
    async def test_explicit_empty_permissions_clear(self, roles, store, cleared):
        assert isinstance(await roles.update(2, RolePatch(permissions=cleared)), Ok)
        assert store.get_role(2).permission_ids == []

    async def test_absent_permissions_are_left_alone(self, roles, store):
        assert isinstance(await roles.update(2, RolePatch(description="x")), Ok)
        assert store.get_role(2).permission_ids == [2]

    async def test_disabling_invalidates_assigned_users(self, roles, resolver, cache):
        assert await resolver.find_user_permissions("u-ed") == {"user:list"}
        assert await cache.get_ttl(permissions_key("u-ed")) > 0

        assert isinstance(await roles.update(2, RolePatch(disabled=True)), Ok)

        assert await cache.get_ttl(permissions_key("u-ed")) == -2
        assert await resolver.find_user_permissions("u-ed") == set()

    async def test_permission_change_invalidates_assigned_users(self, roles, resolver, cache):
        await resolver.find_user_permissions("u-ed")
        assert isinstance(await roles.update(2, RolePatch(permissions=[2, 3])), Ok)

        assert await cache.get_ttl(permissions_key("u-ed")) == -2
        assert await resolver.find_user_permissions("u-ed") == {"user:list", "role:list"}

    async def test_description_change_keeps_cache(self, roles, resolver, cache):
        await resolver.find_user_permissions("u-ed")
        assert isinstance(await roles.update(2, RolePatch(description="new")), Ok)
        assert await cache.get_ttl(permissions_key("u-ed")) > 0


class TestRemove:
    async def test_unassigned_role_is_soft_deleted(self, roles, store):
        assert isinstance(await roles.remove(3), Ok)

        assert store.get_role(3) is None
        assert store.roles[3].deleted is True

    async def test_assigned_role_is_not_acceptable(self, roles, store):
        result = await roles.remove(2)

        assert isinstance(result, Err)
        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        assert store.roles[2].deleted is False

    async def test_deleted_users_do_not_block(self, roles, store):
        store.delete_user("u-ed")
        assert isinstance(await roles.remove(2), Ok)

    async def test_default_admin_role_cannot_be_deleted(self, roles, store):
        store.assign_roles("u-admin", [])
        result = await roles.remove(1)

        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        assert store.roles[1].deleted is False

    async def test_missing_or_already_deleted(self, roles):
        assert (await roles.remove(999)).kind is ErrorKind.NOT_FOUND
        assert isinstance(await roles.remove(3), Ok)
        assert (await roles.remove(3)).kind is ErrorKind.NOT_FOUND


class TestBatchRemove:
    async def test_deletes_all(self, roles, store):
        store.create_role("temp", role_id=4)
        assert isinstance(await roles.batch_remove([3, 4]), Ok)
        assert store.roles[3].deleted and store.roles[4].deleted

    async def test_duplicate_ids_are_collapsed(self, roles, store):
        assert isinstance(await roles.batch_remove([3, 3]), Ok)
        assert store.roles[3].deleted

    async def test_unknown_id_deletes_nothing(self, roles, store):
        result = await roles.batch_remove([3, 999])

        assert result.kind is ErrorKind.NOT_FOUND
        assert store.roles[3].deleted is False

    async def test_any_assigned_role_blocks_batch(self, roles, store):
        result = await roles.batch_remove([2, 3])

        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        assert store.roles[2].deleted is False
        assert store.roles[3].deleted is False

    async def test_batch_containing_admin_role(self, roles, store):
        result = await roles.batch_remove([3, 1])

        assert result.kind is ErrorKind.NOT_ACCEPTABLE
        assert store.roles[3].deleted is False

    async def test_empty_batch(self, roles):
        assert (await roles.batch_remove([])).kind is ErrorKind.NOT_FOUND
