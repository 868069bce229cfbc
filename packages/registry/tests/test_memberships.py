"""Tests for organization membership and role ordering."""

import pytest

from trust_registry.errors import ForbiddenError
from trust_shared.schemas.common import ROLE_ORDER, Role, role_at_least


class TestRoleOrdering:
    def test_total_order(self):
        assert ROLE_ORDER == [Role.MEMBER, Role.ADMIN, Role.OWNER]
        assert role_at_least(Role.OWNER, Role.ADMIN)
        assert role_at_least(Role.ADMIN, Role.ADMIN)
        assert not role_at_least(Role.MEMBER, Role.ADMIN)
        assert role_at_least("owner", "member")


@pytest.fixture
def members(registry):
    return registry.org_members


async def test_add_and_has_role(members):
    await members.add("7", "u1", Role.ADMIN)
    assert await members.has_role("7", "u1", Role.MEMBER)
    assert await members.has_role("7", "u1", Role.ADMIN)
    assert not await members.has_role("7", "u1", Role.OWNER)
    assert not await members.has_role("7", "u2", Role.MEMBER)
    assert not await members.has_role("70", "u1", Role.MEMBER)


async def test_add_is_upsert(members, clock):
    created = await members.add("7", "u1", Role.MEMBER)
    updated = await members.add("7", "u1", Role.ADMIN)
    assert updated.role == Role.ADMIN
    assert updated.created_at == created.created_at
    assert len(await members.list_members("7")) == 1
    assert (await members.get("7", "u1")).role == Role.ADMIN


async def test_actor_authorization(members):
    await members.add("7", "owner", Role.OWNER)
    await members.add("7", "admin", Role.ADMIN)
    await members.add("7", "member", Role.MEMBER)

    with pytest.raises(ForbiddenError):
        await members.add("7", "u9", Role.MEMBER, acting_user_id="member")
    with pytest.raises(ForbiddenError):
        await members.add("7", "u9", Role.OWNER, acting_user_id="admin")

    await members.add("7", "u9", Role.MEMBER, acting_user_id="admin")
    await members.add("7", "u10", Role.OWNER, acting_user_id="owner")
    assert await members.has_role("7", "u10", Role.OWNER)


async def test_remove_is_idempotent(members):
    await members.add("7", "u1")
    await members.remove("7", "u1")
    await members.remove("7", "u1")
    assert await members.get("7", "u1") is None
    assert await members.list_orgs("u1") == []


async def test_remove_authorization(members):
    await members.add("7", "admin", Role.ADMIN)
    await members.add("7", "u1")
    await members.add("7", "u2")

    with pytest.raises(ForbiddenError):
        await members.remove("7", "u2", acting_user_id="u1")
    # Leaving is always allowed
    await members.remove("7", "u1", acting_user_id="u1")
    await members.remove("7", "u2", acting_user_id="admin")
    assert [m.user_id for m in await members.list_members("7")] == ["admin"]


async def test_list_orgs(members):
    await members.add("7", "u1")
    await members.add("8", "u1", Role.OWNER)
    await members.add("8", "u2")
    orgs = {m.org_id: m.role for m in await members.list_orgs("u1")}
    assert orgs == {"7": Role.MEMBER, "8": Role.OWNER}


async def test_admin_cannot_change_an_owner(members):
    await members.add("7", "owner", Role.OWNER)
    await members.add("7", "admin", Role.ADMIN)

    with pytest.raises(ForbiddenError):
        await members.add("7", "owner", Role.MEMBER, acting_user_id="admin")
    with pytest.raises(ForbiddenError):
        await members.remove("7", "owner", acting_user_id="admin")
    assert (await members.get("7", "owner")).role == Role.OWNER


async def test_owner_can_change_another_owner(members):
    await members.add("7", "o1", Role.OWNER)
    await members.add("7", "o2", Role.OWNER)

    demoted = await members.add("7", "o2", Role.ADMIN, acting_user_id="o1")
    assert demoted.role == Role.ADMIN
    await members.add("7", "o2", Role.OWNER, acting_user_id="o1")
    await members.remove("7", "o2", acting_user_id="o1")
    assert await members.get("7", "o2") is None


async def test_owner_may_leave(members):
    await members.add("7", "owner", Role.OWNER)
    await members.remove("7", "owner", acting_user_id="owner")
    assert await members.get("7", "owner") is None
