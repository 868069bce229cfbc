"""
Organization membership store.

One record per (org, user) plus a per-user index row. ``upsert_ops`` lets the
invitation store fold a membership write into its own transaction.
"""

from __future__ import annotations

from typing import Optional

import structlog

from trust_shared.schemas.common import Role, role_at_least
from trust_shared.schemas.organizations import OrgMembership

from .clock import Clock
from .config import Settings
from .errors import ConflictError, ForbiddenError
from .gateway import (
    ABSENT,
    CompareAndSet,
    Delete,
    Operation,
    PersistenceGateway,
    Put,
    key_prefix,
    make_key,
)

log = structlog.get_logger()


def _member_key(org_id: str, user_id: str) -> str:
    return make_key("org_member", org_id, user_id)


def _user_index_key(user_id: str, org_id: str) -> str:
    return make_key("user_org", user_id, org_id)


class OrgMembershipStore:
    def __init__(self, gateway: PersistenceGateway, settings: Settings, clock: Clock):
        self._gateway = gateway
        self._settings = settings
        self._clock = clock

    async def add(
        self,
        org_id: str,
        user_id: str,
        role: Role = Role.MEMBER,
        *,
        acting_user_id: Optional[str] = None,
    ) -> OrgMembership:
        """Create the membership or overwrite the role of an existing one.

        With ``acting_user_id`` the actor needs admin, or owner when the
        membership grants owner or currently is owner. Without it the caller
        is trusted.
        """
        role = Role(role)
        if acting_user_id is not None:
            current = await self.get(org_id, user_id)
            touches_owner = role == Role.OWNER or (
                current is not None and current.role == Role.OWNER
            )
            needed = Role.OWNER if touches_owner else Role.ADMIN
            if not await self.has_role(org_id, acting_user_id, needed):
                raise ForbiddenError(f"{needed.value} role required to add members")

        for _ in range(self._settings.cas_max_attempts):
            ops, membership = await self.upsert_ops(org_id, user_id, role)
            if not ops:
                return membership
            if await self._gateway.transaction(ops):
                log.info(
                    "org_member.added", org_id=org_id, user_id=user_id, role=role.value
                )
                return membership

        raise ConflictError(f"membership of {user_id} in {org_id} is being modified")

    async def upsert_ops(
        self, org_id: str, user_id: str, role: Role
    ) -> tuple[list[Operation], OrgMembership]:
        """Gateway ops that upsert the membership at its current version.

        Returns no ops when the membership already has ``role``.
        """
        stored = await self._gateway.get(_member_key(org_id, user_id))
        now = self._clock.now()
        if stored is not None:
            membership = OrgMembership.model_validate(stored.value)
            if membership.role == role:
                return [], membership
            membership.role = role
            membership.updated_at = now
            version = stored.version
        else:
            membership = OrgMembership(
                org_id=org_id, user_id=user_id, role=role, created_at=now, updated_at=now
            )
            version = ABSENT

        return [
            CompareAndSet(
                _member_key(org_id, user_id), version, membership.model_dump(mode="json")
            ),
            Put(_user_index_key(user_id, org_id), {"org_id": org_id}),
        ], membership

    async def remove(
        self, org_id: str, user_id: str, *, acting_user_id: Optional[str] = None
    ) -> None:
        """Remove a membership; removing a non-member is a no-op.

        An actor may always remove themselves; removing others needs admin,
        and removing an owner needs owner.
        """
        if acting_user_id is not None and acting_user_id != user_id:
            current = await self.get(org_id, user_id)
            needed = (
                Role.OWNER
                if current is not None and current.role == Role.OWNER
                else Role.ADMIN
            )
            if not await self.has_role(org_id, acting_user_id, needed):
                raise ForbiddenError(f"{needed.value} role required to remove this member")

        key = _member_key(org_id, user_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._gateway.get(key)
            if stored is None:
                return
            if await self._gateway.transaction([
                Delete(key, stored.version),
                Delete(_user_index_key(user_id, org_id)),
            ]):
                log.info("org_member.removed", org_id=org_id, user_id=user_id)
                return

        raise ConflictError(f"membership of {user_id} in {org_id} is being modified")

    async def get(self, org_id: str, user_id: str) -> OrgMembership | None:
        stored = await self._gateway.get(_member_key(org_id, user_id))
        if stored is None:
            return None
        return OrgMembership.model_validate(stored.value)

    async def has_role(self, org_id: str, user_id: str, min_role: Role) -> bool:
        membership = await self.get(org_id, user_id)
        return membership is not None and role_at_least(membership.role, min_role)

    async def list_members(self, org_id: str) -> list[OrgMembership]:
        return [
            OrgMembership.model_validate(r.value)
            for r in await self._gateway.scan(key_prefix("org_member", org_id))
        ]

    async def list_orgs(self, user_id: str) -> list[OrgMembership]:
        memberships = []
        for pointer in await self._gateway.scan(key_prefix("user_org", user_id)):
            membership = await self.get(pointer.value["org_id"], user_id)
            if membership is not None:
                memberships.append(membership)
        return memberships
