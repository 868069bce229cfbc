"""
Organization invitation store.

State machine: pending → accepted | declined | revoked | expired. All
non-pending states are terminal.

Concurrency:
- At most one pending invitation per (org, recipient), enforced by a pending
  marker record claimed with an insert-if-absent compare-and-set.
- Every transition compare-and-sets the invitation at the version it read;
  a losing caller re-reads, finds a terminal state and gets
  InvalidTransitionError.
- Acceptance writes the invitation, clears the marker and upserts the
  membership in one gateway transaction.

Expiry is evaluated lazily: any read of a pending invitation past its
``expires_at`` persists it as expired before it is returned or acted upon.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import structlog

from trust_shared.schemas.common import Role, role_at_least
from trust_shared.schemas.organizations import (
    InvitationState,
    OrgInvitation,
    can_transition,
    is_email_recipient,
    normalize_recipient,
)

from .clock import Clock
from .config import Settings
from .errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from .gateway import (
    ABSENT,
    CompareAndSet,
    Delete,
    Operation,
    PersistenceGateway,
    Put,
    Record,
    key_prefix,
    make_key,
)
from .memberships import OrgMembershipStore

log = structlog.get_logger()

# Extra ops to commit with a transition (e.g. the membership on acceptance)
ExtraOps = Callable[[OrgInvitation], Awaitable[list[Operation]]]
Guard = Callable[[OrgInvitation], Awaitable[None]]


def _invitation_key(invitation_id: str) -> str:
    return make_key("org_invitation", invitation_id)


def _pending_key(org_id: str, recipient: str) -> str:
    return make_key("org_invitation_pending", org_id, recipient)


def _org_index_key(org_id: str, invitation_id: str) -> str:
    return make_key("org_invitation_org", org_id, invitation_id)


def _recipient_index_key(recipient: str, invitation_id: str) -> str:
    return make_key("org_invitation_recipient", recipient, invitation_id)


class OrgInvitationStore:
    def __init__(
        self,
        gateway: PersistenceGateway,
        memberships: OrgMembershipStore,
        settings: Settings,
        clock: Clock,
    ):
        self._gateway = gateway
        self._memberships = memberships
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def invite(
        self,
        org_id: str,
        inviter_id: str,
        recipient: str,
        ttl: Optional[timedelta] = None,
        *,
        role: Role = Role.MEMBER,
    ) -> OrgInvitation:
        """Invite ``recipient`` (a user id or e-mail address) into an org."""
        role = Role(role)
        recipient = normalize_recipient(recipient)
        if not recipient:
            raise ValueError("recipient must not be empty")

        inviter = await self._memberships.get(org_id, inviter_id)
        if inviter is None or not role_at_least(inviter.role, Role.ADMIN):
            raise ForbiddenError("admin role required to invite members")
        if not role_at_least(inviter.role, role):
            raise ForbiddenError(f"cannot invite with role {role.value}")
        if not is_email_recipient(recipient) and await self._memberships.get(
            org_id, recipient
        ):
            raise ConflictError(f"{recipient} is already a member of {org_id}")

        if ttl is None:
            ttl = timedelta(hours=self._settings.invitation_default_ttl_hours)
        marker_key = _pending_key(org_id, recipient)

        for _ in range(self._settings.cas_max_attempts):
            marker = await self._gateway.get(marker_key)
            marker_version = ABSENT
            if marker is not None:
                current = await self._load(marker.value["invitation_id"])
                if current is not None and current.state == InvitationState.PENDING:
                    raise ConflictError(
                        f"{recipient} already has a pending invitation to {org_id}"
                    )
                # Stale marker: overwrite it at the version read. If loading
                # the old invitation just expired it, the marker is gone and
                # the CAS below fails into a fresh read.
                marker_version = marker.version

            now = self._clock.now()
            invitation = OrgInvitation(
                id=str(uuid.uuid4()),
                org_id=org_id,
                inviter_user_id=inviter_id,
                recipient=recipient,
                role=role,
                created_at=now,
                expires_at=now + ttl,
            )
            committed = await self._gateway.transaction([
                CompareAndSet(marker_key, marker_version, {"invitation_id": invitation.id}),
                CompareAndSet(
                    _invitation_key(invitation.id), ABSENT, invitation.model_dump(mode="json")
                ),
                Put(_org_index_key(org_id, invitation.id), {"invitation_id": invitation.id}),
                Put(
                    _recipient_index_key(recipient, invitation.id),
                    {"invitation_id": invitation.id},
                ),
            ])
            if committed:
                log.info(
                    "org_invitation.created",
                    invitation_id=invitation.id,
                    org_id=org_id,
                    inviter_id=inviter_id,
                    role=role.value,
                )
                return invitation

        raise ConflictError(f"invitation for {recipient} is being created concurrently")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def accept(self, invitation_id: str, responding_user_id: str) -> OrgInvitation:
        """Accept and create the membership, atomically."""

        async def guard(invitation: OrgInvitation) -> None:
            self._check_recipient(invitation, responding_user_id)

        async def membership_ops(invitation: OrgInvitation) -> list[Operation]:
            ops, _ = await self._memberships.upsert_ops(
                invitation.org_id, responding_user_id, invitation.role
            )
            return ops

        return await self._transition(
            invitation_id,
            InvitationState.ACCEPTED,
            responder=responding_user_id,
            guard=guard,
            extra_ops=membership_ops,
        )

    async def decline(
        self, invitation_id: str, responding_user_id: Optional[str] = None
    ) -> OrgInvitation:
        async def guard(invitation: OrgInvitation) -> None:
            if responding_user_id is not None:
                self._check_recipient(invitation, responding_user_id)

        return await self._transition(
            invitation_id,
            InvitationState.DECLINED,
            responder=responding_user_id,
            guard=guard,
        )

    async def revoke(self, invitation_id: str, acting_user_id: str) -> OrgInvitation:
        """Withdraw an invitation; the inviter or an org admin may do so."""

        async def guard(invitation: OrgInvitation) -> None:
            if acting_user_id == invitation.inviter_user_id:
                return
            if not await self._memberships.has_role(
                invitation.org_id, acting_user_id, Role.ADMIN
            ):
                raise ForbiddenError("only the inviter or an org admin can revoke")

        return await self._transition(
            invitation_id,
            InvitationState.REVOKED,
            responder=acting_user_id,
            guard=guard,
        )

    async def mark_notified(self, invitation_id: str) -> OrgInvitation:
        """Record that the recipient was notified (pending invitations only)."""
        key = _invitation_key(invitation_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._read(invitation_id)
            invitation = await self._observe(stored)
            if invitation.state != InvitationState.PENDING:
                raise InvalidTransitionError(
                    f"invitation {invitation_id} is {invitation.state.value}"
                )
            invitation.notified_at = self._clock.now()
            if await self._gateway.compare_and_set(
                key, stored.version, invitation.model_dump(mode="json")
            ):
                return invitation

        raise ConflictError(f"invitation {invitation_id} is being modified concurrently")

    async def _transition(
        self,
        invitation_id: str,
        target: InvitationState,
        *,
        responder: Optional[str],
        guard: Guard,
        extra_ops: Optional[ExtraOps] = None,
    ) -> OrgInvitation:
        key = _invitation_key(invitation_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._read(invitation_id)
            invitation = await self._observe(stored)
            if invitation.state == InvitationState.EXPIRED:
                raise ExpiredError(f"invitation {invitation_id} has expired")
            if not can_transition(invitation.state, target):
                raise InvalidTransitionError(
                    f"invitation {invitation_id} is already {invitation.state.value}"
                )
            await guard(invitation)

            updated = invitation.model_copy(
                update={
                    "state": target,
                    "responded_at": self._clock.now(),
                    "responded_by_user_id": responder,
                }
            )
            ops: list[Operation] = [
                CompareAndSet(key, stored.version, updated.model_dump(mode="json"))
            ]
            ops += await self._marker_release_ops(invitation)
            if extra_ops is not None:
                ops += await extra_ops(invitation)

            if await self._gateway.transaction(ops):
                log.info(
                    f"org_invitation.{target.value}",
                    invitation_id=invitation_id,
                    org_id=invitation.org_id,
                    user_id=responder,
                )
                return updated
            # Lost a race; re-read decides whether anything is left to do

        raise ConflictError(f"invitation {invitation_id} is being modified concurrently")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, invitation_id: str) -> OrgInvitation:
        return await self._observe(await self._read(invitation_id))

    async def get_pending(self, org_id: str, recipient: str) -> OrgInvitation | None:
        marker = await self._gateway.get(_pending_key(org_id, normalize_recipient(recipient)))
        if marker is None:
            return None
        invitation = await self._load(marker.value["invitation_id"])
        if invitation is None or invitation.state != InvitationState.PENDING:
            return None
        return invitation

    async def list_for_org(self, org_id: str) -> list[OrgInvitation]:
        return await self._list(key_prefix("org_invitation_org", org_id))

    async def list_for_recipient(self, recipient: str) -> list[OrgInvitation]:
        return await self._list(
            key_prefix("org_invitation_recipient", normalize_recipient(recipient))
        )

    async def _list(self, prefix: str) -> list[OrgInvitation]:
        invitations = []
        for pointer in await self._gateway.scan(prefix):
            invitation = await self._load(pointer.value["invitation_id"])
            if invitation is not None:
                invitations.append(invitation)
        invitations.sort(key=lambda i: i.created_at, reverse=True)
        return invitations

    async def _read(self, invitation_id: str) -> Record:
        stored = await self._gateway.get(_invitation_key(invitation_id))
        if stored is None:
            raise NotFoundError(f"invitation {invitation_id} not found")
        return stored

    async def _load(self, invitation_id: str) -> OrgInvitation | None:
        stored = await self._gateway.get(_invitation_key(invitation_id))
        if stored is None:
            return None
        return await self._observe(stored)

    async def _observe(self, stored: Record) -> OrgInvitation:
        """Parse a stored invitation, persisting lazy expiry when due.

        Never returns a logically expired invitation as pending.
        """
        invitation = OrgInvitation.model_validate(stored.value)
        if invitation.is_terminal:
            return invitation
        if not invitation.is_past_expiry(self._clock.now()):
            return invitation

        expired = invitation.model_copy(update={"state": InvitationState.EXPIRED})
        ops: list[Operation] = [
            CompareAndSet(stored.key, stored.version, expired.model_dump(mode="json"))
        ]
        ops += await self._marker_release_ops(invitation)
        if await self._gateway.transaction(ops):
            log.info(
                "org_invitation.expired",
                invitation_id=invitation.id,
                org_id=invitation.org_id,
            )
            return expired

        # Someone else moved it first; report what they stored, unless that
        # is still the same pending row (marker changed under us)
        latest = await self._gateway.get(stored.key)
        if latest is None:
            return expired
        current = OrgInvitation.model_validate(latest.value)
        return current if current.is_terminal else expired

    async def _marker_release_ops(self, invitation: OrgInvitation) -> list[Operation]:
        """Ops that free the (org, recipient) pending slot held by ``invitation``."""
        marker_key = _pending_key(invitation.org_id, invitation.recipient)
        marker = await self._gateway.get(marker_key)
        if marker is None or marker.value.get("invitation_id") != invitation.id:
            return []
        return [Delete(marker_key, marker.version)]

    @staticmethod
    def _check_recipient(invitation: OrgInvitation, user_id: str) -> None:
        # E-mail recipients are verified by the caller before responding
        if not is_email_recipient(invitation.recipient) and invitation.recipient != user_id:
            raise ForbiddenError("invitation is addressed to a different user")
